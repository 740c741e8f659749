"""
Video render service client.

The render service composes a still image (or a solid background) with a
narration track into an MP4. Jobs are asynchronous: submit, poll until the
render finishes, then download the output.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

import httpx

from atelier.core.config import Settings, get_settings
from atelier.core.exceptions import ExternalServiceError
from atelier.integrations.base_client import SyncBaseHTTPClient

logger = logging.getLogger(__name__)

RENDER_COST_PER_SECOND_USD = Decimal("0.002")
DEFAULT_FPS = 30
FALLBACK_BACKGROUND = "black"


class RenderStatus(str, Enum):
    """Render job status values."""

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RenderJob:
    """
    Render job as reported by the service.

    Attributes:
        render_id: Service-side job identifier
        status: Current job status
        output_url: Download URL for the finished video
        duration_seconds: Length of the rendered video
        error_message: Failure details when status is failed
    """

    render_id: str
    status: RenderStatus = RenderStatus.QUEUED
    output_url: str | None = None
    duration_seconds: float | None = None
    error_message: str | None = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "RenderJob":
        """Create RenderJob from API response."""
        status_mapping = {
            "queued": RenderStatus.QUEUED,
            "pending": RenderStatus.QUEUED,
            "processing": RenderStatus.PROCESSING,
            "running": RenderStatus.PROCESSING,
            "succeeded": RenderStatus.SUCCEEDED,
            "completed": RenderStatus.SUCCEEDED,
            "failed": RenderStatus.FAILED,
            "error": RenderStatus.FAILED,
        }
        status_str = (data.get("status") or "queued").lower()

        return cls(
            render_id=data.get("id") or data.get("render_id", ""),
            status=status_mapping.get(status_str, RenderStatus.QUEUED),
            output_url=data.get("output_url"),
            duration_seconds=data.get("duration"),
            error_message=data.get("error"),
        )


@dataclass
class RenderedVideo:
    """A downloaded render with its cost."""

    video_data: bytes
    content_type: str
    render_id: str
    duration_seconds: float
    fps: int
    cost_usd: Decimal

    @property
    def file_size_bytes(self) -> int:
        return len(self.video_data)


class RenderClient(SyncBaseHTTPClient):
    """
    Client for the video render service.

    Example:
        ```python
        client = RenderClient()
        job = client.submit_render(
            audio_url=audio_url,
            image_url=None,  # renders on a black background
            duration_seconds=14,
        )
        video = client.render_and_download(job)
        ```
    """

    def __init__(
        self,
        api_key: str | None = None,
        settings: Settings | None = None,
        base_url: str | None = None,
        max_retries: int = 3,
        timeout: float = 60.0,
        poll_interval: float = 5.0,
        max_poll_time: float = 600.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the render client.

        Args:
            api_key: Render service API key (uses settings if not provided)
            settings: Application settings instance
            base_url: Service base URL (uses settings if not provided)
            max_retries: Maximum number of retry attempts
            timeout: Request timeout in seconds
            poll_interval: Interval between status polls (seconds)
            max_poll_time: Maximum time to poll for completion
            transport: Optional httpx transport
            sleep: Wait function for retries and status polls
        """
        settings = settings or get_settings()
        super().__init__(
            base_url=base_url or settings.render_api_url,
            api_key=api_key or settings.render_api_key,
            settings=settings,
            max_retries=max_retries,
            timeout=timeout,
            transport=transport,
            sleep=sleep,
        )
        self._poll_interval = poll_interval
        self._max_poll_time = max_poll_time

    @property
    def service_name(self) -> str:
        return "Render"

    @property
    def provider(self) -> str:
        return "render"

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def submit_render(
        self,
        audio_url: str,
        duration_seconds: float,
        image_url: str | None = None,
        caption: str | None = None,
        fps: int = DEFAULT_FPS,
    ) -> RenderJob:
        """
        Submit a render of a still image over a narration track.

        Args:
            audio_url: Readable URL of the narration audio
            duration_seconds: Output length in seconds
            image_url: Readable URL of the source image; None renders on black
            caption: Optional caption burned into the video
            fps: Output frame rate

        Returns:
            RenderJob for the submitted render
        """
        payload: dict[str, Any] = {
            "audio_url": audio_url,
            "duration_seconds": duration_seconds,
            "fps": fps,
            "format": "mp4",
        }
        if image_url:
            payload["image_url"] = image_url
        else:
            payload["background"] = FALLBACK_BACKGROUND
        if caption:
            payload["caption"] = caption

        response = self._post("renders", json_data=payload)
        job = RenderJob.from_api_response(response.json())

        logger.info(
            "Render submitted",
            extra={
                "render_id": job.render_id,
                "duration_seconds": duration_seconds,
                "has_image": image_url is not None,
            },
        )
        return job

    def get_render_status(self, render_id: str) -> RenderJob:
        response = self._get(f"renders/{render_id}")
        job = RenderJob.from_api_response(response.json())
        job.render_id = render_id
        return job

    def wait_for_render(self, render_id: str) -> RenderJob:
        """
        Poll until the render finishes.

        Raises:
            ExternalServiceError: If the render fails or polling times out
        """
        start_time = time.time()

        while True:
            job = self.get_render_status(render_id)

            if job.status == RenderStatus.SUCCEEDED:
                return job

            if job.status == RenderStatus.FAILED:
                raise ExternalServiceError(
                    service=self.service_name,
                    message=f"Video render failed: {job.error_message}",
                    original_error=job.error_message,
                )

            elapsed = time.time() - start_time
            if elapsed >= self._max_poll_time:
                raise ExternalServiceError(
                    service=self.service_name,
                    message=f"Video render timed out after {elapsed:.0f} seconds",
                )

            logger.debug(
                "Render still processing",
                extra={"render_id": render_id, "status": job.status.value, "elapsed_seconds": elapsed},
            )
            self._sleep(self._poll_interval)

    def render_and_download(self, job: RenderJob, fps: int = DEFAULT_FPS) -> RenderedVideo:
        """
        Wait for a submitted render and download its output.

        Args:
            job: Job returned by submit_render
            fps: Frame rate the render was submitted with

        Returns:
            RenderedVideo with bytes and cost
        """
        finished = self.wait_for_render(job.render_id)
        if not finished.output_url:
            raise ExternalServiceError(
                service=self.service_name,
                message="No video URL available for download",
            )

        try:
            response = self._client.get(finished.output_url, timeout=300.0)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                service=self.service_name,
                message="Failed to download rendered video",
                original_error=str(e),
            ) from e
        video_data = response.content

        duration = float(finished.duration_seconds or 0)
        cost = Decimal(str(duration)) * RENDER_COST_PER_SECOND_USD
        self._total_usage.add_units(int(duration), RENDER_COST_PER_SECOND_USD)

        logger.info(
            "Downloaded rendered video",
            extra={
                "render_id": job.render_id,
                "size_bytes": len(video_data),
                "duration_seconds": duration,
                "cost_usd": float(cost),
            },
        )

        return RenderedVideo(
            video_data=video_data,
            content_type="video/mp4",
            render_id=job.render_id,
            duration_seconds=duration,
            fps=fps,
            cost_usd=cost,
        )


def get_render_client(settings: Settings | None = None) -> RenderClient:
    """Factory function to create a render client."""
    return RenderClient(settings=settings)
