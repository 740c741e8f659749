"""
Atelier - Asynchronous content generation pipeline.

A worker-side system for AI-generated stories and monologues with support for:
- Regenerable artifacts with atomic reset and a strict status lifecycle
- Derived text, narrated audio and rendered video assets
- Rate-limited timeline sync for connected social accounts
- Provisional uploads with deadline-based reaping
- Async task processing with Celery
"""

__version__ = "0.1.0"
