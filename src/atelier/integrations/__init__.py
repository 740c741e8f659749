"""
External service integrations for Atelier.

This module provides clients for:
- OpenAI: Text generation and speech synthesis
- S3/MinIO: Blob storage for derived assets and provisional uploads
- Render service: Still-plus-narration video rendering
- Social platform: Timeline sync for connected accounts
"""

from atelier.integrations.base_client import SyncBaseHTTPClient, UsageMetrics
from atelier.integrations.openai_client import (
    CompletionResult,
    OpenAIClient,
    SpeechResult,
    TokenUsage,
    get_openai_client,
)
from atelier.integrations.render_client import (
    RenderClient,
    RenderedVideo,
    RenderJob,
    RenderStatus,
    get_render_client,
)
from atelier.integrations.social_client import SocialClient, TimelinePost, get_social_client
from atelier.integrations.storage_client import StorageClient, UploadResult, get_storage_client

__all__ = [
    "SyncBaseHTTPClient",
    "UsageMetrics",
    "OpenAIClient",
    "get_openai_client",
    "CompletionResult",
    "SpeechResult",
    "TokenUsage",
    "RenderClient",
    "get_render_client",
    "RenderJob",
    "RenderStatus",
    "RenderedVideo",
    "SocialClient",
    "get_social_client",
    "TimelinePost",
    "StorageClient",
    "get_storage_client",
    "UploadResult",
]
