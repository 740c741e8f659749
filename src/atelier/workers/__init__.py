"""
Celery workers for the Atelier content-generation pipeline.

This package provides the Celery infrastructure and tasks for:
- Primary content generation (story and monologue families)
- Derived assets (text -> audio -> video)
- Provisional-resource cleanup on a beat schedule
- Rate-limited social timeline sync

Tasks live in atelier.workers.tasks and are loaded by the worker through
the app's include list. They are not imported here because the services
they call import atelier.workers.queue.

All tasks are idempotent and tolerate duplicate delivery.
"""

from atelier.workers.celery_app import celery_app

__all__ = ["celery_app"]
