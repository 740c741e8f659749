"""
DerivedAsset model for media produced from a completed artifact.

Derived assets are produced by the stages of the derived-asset pipeline
(text -> audio -> video). Each artifact holds at most one asset per kind.
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Enum,
    Float,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from atelier.models.base import Base, JSONType, TimestampMixin, enum_values
from atelier.models.enums import DerivedAssetKind

if TYPE_CHECKING:
    from atelier.models.artifact import Artifact


class DerivedAsset(Base, TimestampMixin):
    """
    DerivedAsset model representing one stage output for an artifact.

    Attributes:
        id: Unique identifier (UUID)
        artifact_id: Parent artifact reference
        kind: Asset kind (text, audio, video)
        source_asset_id: Asset of the prior stage this one was produced from
        storage_bucket: Bucket name for S3/MinIO
        storage_key: Object key within bucket
        uri: s3:// URI of the object
        mime_type: MIME type of the asset
        file_size_bytes: File size in bytes
        cost_usd: Cost of producing the asset
        duration_seconds: Playback duration for audio/video
        generation_time_seconds: Wall time spent producing the asset
        provider: Service that generated the asset
        model: Model identifier used by the provider
        metadata: Provider-specific metadata (JSON)
    """

    __tablename__ = "derived_assets"
    __table_args__ = (UniqueConstraint("artifact_id", "kind"),)

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
    kind: Mapped[DerivedAssetKind] = mapped_column(
        Enum(
            DerivedAssetKind,
            name="derived_asset_kind",
            native_enum=False,
            length=20,
            values_callable=enum_values,
        ),
        nullable=False,
        index=True,
    )
    source_asset_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("derived_assets.id", ondelete="SET NULL"),
        nullable=True,
        doc="Asset of the prior stage this one was produced from",
    )

    # Storage location
    storage_bucket: Mapped[str | None] = mapped_column(String(255), nullable=True)
    storage_key: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    uri: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Telemetry
    cost_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 6), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    generation_time_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)

    asset_meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
        doc="JSON: provider-specific metadata",
    )

    artifact: Mapped["Artifact"] = relationship("Artifact", back_populates="derived_assets")

    def __repr__(self) -> str:
        """Return string representation of the asset."""
        return f"<DerivedAsset {self.id} [{self.kind.value}]>"
