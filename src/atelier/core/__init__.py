"""
Atelier Core Module.

This module contains the foundational components of the pipeline:
- Configuration management
- Database connections and session handling
- Custom exceptions
- Shared rate limiting
"""

from atelier.core.config import Settings, get_settings
from atelier.core.database import get_db_session, init_db
from atelier.core.exceptions import (
    AtelierException,
    ConflictError,
    ExternalServiceError,
    GenerationError,
    InvalidTransitionError,
    NotFoundError,
    PipelineError,
    RateLimitError,
    ValidationError,
)

__all__ = [
    "Settings",
    "get_settings",
    "get_db_session",
    "init_db",
    "AtelierException",
    "ConflictError",
    "ExternalServiceError",
    "GenerationError",
    "InvalidTransitionError",
    "NotFoundError",
    "PipelineError",
    "RateLimitError",
    "ValidationError",
]
