"""
Input model for the prompts that originate generation requests.
"""

from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from atelier.models.base import Base, JSONType, TimestampMixin

if TYPE_CHECKING:
    from atelier.models.artifact import Artifact


class Input(Base, TimestampMixin):
    """
    Immutable prompt and metadata behind one or more artifacts.

    Attributes:
        id: Unique identifier (UUID)
        owner_id: Identifier of the owning user (provisioned elsewhere)
        prompt: Free-form prompt text
        input_meta: Structured request details (JSON, column "metadata")
    """

    __tablename__ = "inputs"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    owner_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    prompt: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    input_meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
        doc="JSON: character details, app slug, style hints",
    )

    artifacts: Mapped[list["Artifact"]] = relationship(
        "Artifact",
        back_populates="input",
    )

    def __repr__(self) -> str:
        return f"<Input {self.id}>"
