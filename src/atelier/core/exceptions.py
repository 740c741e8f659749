"""
Custom exception classes for the Atelier pipeline.

These exceptions provide structured error handling for the generation
workers. Each carries a machine-readable code so task results and logs
can be filtered without parsing messages.
"""

from typing import Any


class AtelierException(Exception):
    """
    Base exception for all Atelier-specific errors.

    Provides a consistent interface for error handling with support for
    error codes, messages, and additional details.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional error details (optional)
    """

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Human-readable error message
            code: Machine-readable error code
            details: Additional error context
        """
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for task results and logs.

        Returns:
            Dictionary representation of the error
        """
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class NotFoundError(AtelierException):
    """
    Raised when a requested resource is not found.

    Fatal for the job that raised it: retrying will not make the row appear.

    Attributes:
        resource_type: Type of resource that was not found
        resource_id: Identifier of the resource
    """

    def __init__(
        self,
        resource_type: str,
        resource_id: str | None = None,
        message: str | None = None,
    ) -> None:
        """
        Initialize NotFoundError.

        Args:
            resource_type: Type of resource (e.g., "Artifact", "Input")
            resource_id: ID of the resource that was not found
            message: Custom error message (optional)
        """
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"

        self.resource_type = resource_type
        self.resource_id = resource_id

        super().__init__(
            message=message,
            code="NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class ValidationError(AtelierException):
    """Raised when job input fails semantic validation."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize ValidationError.

        Args:
            message: Description of the validation error
            field: Name of the field that failed validation (optional)
            details: Additional validation context
        """
        error_details = details or {}
        if field:
            error_details["field"] = field

        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details=error_details,
        )


class ConflictError(AtelierException):
    """
    Raised when an operation conflicts with the current state.

    Used for concurrent modifications or disallowed state changes.
    """

    def __init__(
        self,
        message: str,
        resource_type: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize ConflictError.

        Args:
            message: Description of the conflict
            resource_type: Type of resource involved in the conflict
            details: Additional conflict context
        """
        error_details = details or {}
        if resource_type:
            error_details["resource_type"] = resource_type

        super().__init__(
            message=message,
            code="CONFLICT",
            details=error_details,
        )


class InvalidTransitionError(ConflictError):
    """Raised when an artifact status change is not in the lifecycle table."""

    def __init__(self, current: str, target: str, artifact_id: str | None = None) -> None:
        self.current = current
        self.target = target
        details: dict[str, Any] = {"current": current, "target": target}
        if artifact_id:
            details["artifact_id"] = artifact_id

        super().__init__(
            message=f"Cannot transition artifact from '{current}' to '{target}'",
            resource_type="Artifact",
            details=details,
        )
        self.code = "INVALID_TRANSITION"


class ExternalServiceError(AtelierException):
    """
    Raised when OpenAI, S3, the render service or the social API fails.

    Raised only after the client's own retries are spent. Celery's task
    retry is the next layer.
    """

    def __init__(
        self,
        service: str,
        message: str,
        original_error: str | None = None,
    ) -> None:
        details: dict[str, Any] = {"service": service}
        if original_error:
            details["original_error"] = original_error

        self.service = service

        super().__init__(
            message=message,
            code="EXTERNAL_SERVICE_ERROR",
            details=details,
        )


class RateLimitError(AtelierException):
    """
    Raised when a quota is exhausted, ours or the peer's.

    retry_after is the number of seconds until a slot frees up, when known.
    Jobs that consult the shared rate limiter turn this into a
    self-reschedule rather than a failure.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: int | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if retry_after:
            details["retry_after"] = retry_after

        self.retry_after = retry_after

        super().__init__(
            message=message,
            code="RATE_LIMIT_EXCEEDED",
            details=details,
        )


class GenerationError(AtelierException):
    """
    Raised when a content strategy fails to produce a result.

    Attributes:
        artifact_id: ID of the artifact being generated
        family: Content family that was dispatched
    """

    def __init__(
        self,
        message: str,
        artifact_id: str | None = None,
        family: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        error_details = details or {}
        if artifact_id:
            error_details["artifact_id"] = artifact_id
        if family:
            error_details["family"] = family

        super().__init__(
            message=message,
            code="GENERATION_ERROR",
            details=error_details,
        )


class PipelineError(AtelierException):
    """
    Raised when a derived-asset pipeline stage fails.

    Used for missing dependencies between stages as well as
    failures inside a stage.
    """

    def __init__(
        self,
        message: str,
        stage: str,
        artifact_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        error_details = details or {}
        error_details["stage"] = stage
        if artifact_id:
            error_details["artifact_id"] = artifact_id

        self.stage = stage

        super().__init__(
            message=message,
            code="PIPELINE_ERROR",
            details=error_details,
        )
