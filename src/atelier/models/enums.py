"""
Enum definitions for Atelier database models.

These enums define the valid values for status fields and type fields
throughout the pipeline. They are stored by value in string columns.
"""

import enum


class ArtifactStatus(str, enum.Enum):
    """
    Artifact lifecycle status values.

    completed and failed are re-enterable through regeneration.

    Attributes:
        DRAFT: Created but not yet submitted
        PENDING: Submitted, waiting for a worker
        GENERATING: A worker is producing content
        COMPLETED: Content generated successfully
        FAILED: Generation failed (see error_message)
    """

    DRAFT = "draft"
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class ContentFamily(str, enum.Enum):
    """
    Content families a generation strategy can produce.

    Attributes:
        STORY: Paginated narrative with plotline and illustrated pages
        MONOLOGUE: Short spoken piece that feeds the audio and video stages
    """

    STORY = "story"
    MONOLOGUE = "monologue"


class DerivedAssetKind(str, enum.Enum):
    """
    Kinds of derived assets, in pipeline order.

    Attributes:
        TEXT: Narrative text materialized as a blob
        AUDIO: Narrated audio synthesized from the text
        VIDEO: Rendered video built from the audio
    """

    TEXT = "text"
    AUDIO = "audio"
    VIDEO = "video"


class ProvisionalResourceStatus(str, enum.Enum):
    """
    Provisional upload status values.

    Attributes:
        PENDING: Uploaded, awaiting commitment to an owner
        COMMITTED: Attached to its owner, no longer expires
        EXPIRED: Passed expires_at without being committed
    """

    PENDING = "pending"
    COMMITTED = "committed"
    EXPIRED = "expired"
