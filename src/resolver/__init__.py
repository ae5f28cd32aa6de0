"""Dependency resolution."""

from .models import Resolution, ResolvedPackage
from .engine import Resolver

__all__ = ["Resolution", "ResolvedPackage", "Resolver"]
