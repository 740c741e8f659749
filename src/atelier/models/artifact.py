"""
Artifact model for generated deliverables.

An artifact is produced from an Input by a content strategy and may own
paginated child rows and derived assets (text, audio, video). Its status
follows the lifecycle in atelier.services.lifecycle.
"""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.orm.attributes import flag_modified

from atelier.models.base import Base, JSONType, TimestampMixin, enum_values, utcnow
from atelier.models.enums import ArtifactStatus, ContentFamily

if TYPE_CHECKING:
    from atelier.models.artifact_page import ArtifactPage
    from atelier.models.derived_asset import DerivedAsset
    from atelier.models.input import Input

# Family-specific keys kept in the metadata bag, cleared on regeneration
FAMILY_RESULT_KEYS = ("plotline", "character_json", "monologue_text")


class Artifact(Base, TimestampMixin):
    """
    Artifact model representing a generated deliverable.

    Lifecycle: draft -> pending -> generating -> completed | failed,
    with completed and failed re-entering generating on regeneration.

    Attributes:
        id: Unique identifier (UUID)
        input_id: Source Input reference
        owner_id: Identifier of the owning user
        content_family: Strategy used to generate the content
        status: Current lifecycle status
        title: Generated title
        subtitle: Generated subtitle
        description: Generated description or monologue text
        input_tokens: Prompt tokens consumed by the last cycle
        output_tokens: Completion tokens produced by the last cycle
        total_tokens: Total tokens for the last cycle
        cost_usd: Monetary cost of the last cycle
        generation_time_seconds: Wall time of the last cycle
        ai_model: Model identifier used
        ai_provider: Provider identifier used
        error_message: Failure message when status is failed
        has_video: Whether a rendered video is attached
        video_asset_id: Derived asset holding the rendered video
        video_generated_at: When the video was attached
        metadata: Generation bookkeeping (JSON)
    """

    __tablename__ = "artifacts"

    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    input_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("inputs.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    owner_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    content_family: Mapped[ContentFamily] = mapped_column(
        Enum(
            ContentFamily,
            name="content_family",
            native_enum=False,
            length=20,
            values_callable=enum_values,
        ),
        nullable=False,
        default=ContentFamily.STORY,
    )
    status: Mapped[ArtifactStatus] = mapped_column(
        Enum(
            ArtifactStatus,
            name="artifact_status",
            native_enum=False,
            length=20,
            values_callable=enum_values,
        ),
        nullable=False,
        default=ArtifactStatus.DRAFT,
        index=True,
    )

    # Generation results
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    subtitle: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 6), nullable=True)
    generation_time_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    ai_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ai_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Video attachment
    has_video: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    video_asset_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    video_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    artifact_meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
        doc="JSON: generation_count, processing_started_at, completed_at, failed_at, family results",
    )

    # Relationships
    input: Mapped["Input"] = relationship("Input", back_populates="artifacts")
    pages: Mapped[list["ArtifactPage"]] = relationship(
        "ArtifactPage",
        back_populates="artifact",
        order_by="ArtifactPage.page_number",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    derived_assets: Mapped[list["DerivedAsset"]] = relationship(
        "DerivedAsset",
        back_populates="artifact",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        """Return string representation of the artifact."""
        return f"<Artifact {self.id} [{self.status.value}]>"

    @property
    def generation_count(self) -> int:
        return int((self.artifact_meta or {}).get("generation_count", 0))

    def update_meta(self, clear: tuple[str, ...] = (), **values: Any) -> None:
        """
        Merge values into the metadata bag and drop the keys in clear.

        Reassigns the dict so the JSON column is always flushed.
        """
        meta = dict(self.artifact_meta or {})
        for key in clear:
            meta.pop(key, None)
        meta.update(values)
        self.artifact_meta = meta
        flag_modified(self, "artifact_meta")

    def reset_results(self) -> None:
        """Null every generation-result field ahead of a new cycle."""
        self.title = None
        self.subtitle = None
        self.description = None
        self.input_tokens = None
        self.output_tokens = None
        self.total_tokens = None
        self.cost_usd = None
        self.generation_time_seconds = None
        self.ai_model = None
        self.ai_provider = None
        self.error_message = None
        self.has_video = False
        self.video_asset_id = None
        self.video_generated_at = None

    def begin_cycle(self, regenerate: bool) -> None:
        """
        Enter a generation cycle.

        Increments generation_count and stamps processing_started_at. The
        caller is responsible for validating the status transition.
        """
        self.status = ArtifactStatus.GENERATING
        self.error_message = None
        self.update_meta(
            clear=("completed_at", "failed_at", *FAMILY_RESULT_KEYS),
            generation_count=self.generation_count + 1,
            processing_started_at=utcnow().isoformat(),
            regenerate=regenerate,
        )

    def mark_completed(self) -> None:
        self.status = ArtifactStatus.COMPLETED
        self.error_message = None
        self.update_meta(completed_at=utcnow().isoformat())

    def mark_failed(self, error_message: str) -> None:
        """
        Mark the artifact failed with a human-readable message.

        Args:
            error_message: Description of the failure
        """
        self.status = ArtifactStatus.FAILED
        self.error_message = error_message
        self.update_meta(failed_at=utcnow().isoformat())
