"""Package index access: release metadata, caching and artifact selection."""

from .models import ArtifactDescriptor, ArtifactKind, Release, ReleaseMetadata
from .tags import ArtifactSelector, TargetEnvironment
from .base import MetadataSource
from .client import MetadataClient

__all__ = [
    "ArtifactDescriptor",
    "ArtifactKind",
    "ArtifactSelector",
    "MetadataClient",
    "MetadataSource",
    "Release",
    "ReleaseMetadata",
    "TargetEnvironment",
]
