"""
SQLAlchemy ORM Models for Atelier.

This module exports all database models and enums used by the pipeline.
All models inherit from Base and include standard timestamp fields.
"""

from atelier.models.artifact import Artifact
from atelier.models.artifact_page import ArtifactPage
from atelier.models.base import Base, TimestampMixin
from atelier.models.connected_account import ConnectedAccount, NetworkPost
from atelier.models.derived_asset import DerivedAsset
from atelier.models.enums import (
    ArtifactStatus,
    ContentFamily,
    DerivedAssetKind,
    ProvisionalResourceStatus,
)
from atelier.models.input import Input
from atelier.models.provisional_resource import ProvisionalResource

__all__ = [
    # Base classes
    "Base",
    "TimestampMixin",
    # Models
    "Input",
    "Artifact",
    "ArtifactPage",
    "DerivedAsset",
    "ProvisionalResource",
    "ConnectedAccount",
    "NetworkPost",
    # Enums
    "ArtifactStatus",
    "ContentFamily",
    "DerivedAssetKind",
    "ProvisionalResourceStatus",
]
