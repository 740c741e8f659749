"""
Business logic services for Atelier.

This module provides the core services of the generation pipeline:
- GenerationOrchestrator: Runs generation cycles through content strategies
- DerivedAssetPipeline: Produces text, audio and video from completed artifacts
- ResourceReaper: Purges expired provisional uploads
- ProvisionalUploadService: Creates and commits provisional uploads
- NetworkSyncService: Rate-limited timeline sync for connected accounts
- SubmissionService: Creates artifacts and schedules their generation
"""

from atelier.services.derived_assets import DerivedAssetPipeline, StageOutcome, plan_stages
from atelier.services.generation import (
    GenerationOrchestrator,
    GenerationOutcome,
    GenerationRequest,
)
from atelier.services.lifecycle import can_transition, ensure_transition
from atelier.services.network_sync import NetworkSyncService, SyncResult
from atelier.services.reaper import ReapResult, ResourceReaper
from atelier.services.results import (
    GenerationResult,
    GenerationUsage,
    MonologuePayload,
    StoryPayload,
)
from atelier.services.submission import SubmissionService
from atelier.services.uploads import PendingUpload, ProvisionalUploadService

__all__ = [
    # Generation
    "GenerationOrchestrator",
    "GenerationOutcome",
    "GenerationRequest",
    "GenerationResult",
    "GenerationUsage",
    "StoryPayload",
    "MonologuePayload",
    # Lifecycle
    "can_transition",
    "ensure_transition",
    # Derived assets
    "DerivedAssetPipeline",
    "StageOutcome",
    "plan_stages",
    # Maintenance
    "ResourceReaper",
    "ReapResult",
    "ProvisionalUploadService",
    "PendingUpload",
    # Sync
    "NetworkSyncService",
    "SyncResult",
    # Submission
    "SubmissionService",
]
