"""
Celery tasks for Atelier.

Generation Tasks:
- generate_artifact: Run one generation cycle for an artifact
- run_derived_stage: Produce one derived asset and chain the next stage

Maintenance Tasks:
- reap_expired_resources: Delete provisional uploads past their deadline
- purge_expired_resources: Delete expired uploads past retention

Sync Tasks:
- sync_network: Rate-limited timeline sync for a connected account
"""

from atelier.workers.tasks.derived_assets import run_derived_stage
from atelier.workers.tasks.generation import generate_artifact
from atelier.workers.tasks.maintenance import purge_expired_resources, reap_expired_resources
from atelier.workers.tasks.network_sync import sync_network

__all__ = [
    "generate_artifact",
    "run_derived_stage",
    "reap_expired_resources",
    "purge_expired_resources",
    "sync_network",
]
