"""Artifact acquisition: content-addressed store and verifying fetcher."""

from .store import ArtifactStore, hash_file
from .fetcher import ArtifactFetcher

__all__ = ["ArtifactFetcher", "ArtifactStore", "hash_file"]
