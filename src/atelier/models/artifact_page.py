"""
ArtifactPage model for paginated artifact content.
"""

from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from atelier.models.base import Base, JSONType, TimestampMixin

if TYPE_CHECKING:
    from atelier.models.artifact import Artifact


class ArtifactPage(Base, TimestampMixin):
    """
    One page of a generated story.

    Pages belong to a single generation cycle and are deleted whenever the
    parent artifact is regenerated.

    Attributes:
        id: Unique identifier (UUID)
        artifact_id: Parent artifact reference
        page_number: 1-based position in the story
        text: Page text
        image_prompt: Prompt for the page illustration
        layout_data: Rendering hints (JSON)
    """

    __tablename__ = "artifact_pages"
    __table_args__ = (UniqueConstraint("artifact_id", "page_number"),)

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    artifact_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("artifacts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    image_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    layout_data: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )

    artifact: Mapped["Artifact"] = relationship("Artifact", back_populates="pages")

    def __repr__(self) -> str:
        return f"<ArtifactPage {self.artifact_id}#{self.page_number}>"
