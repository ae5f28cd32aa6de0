"""Installing verified artifacts into a project package root."""

from .models import InstalledEntry
from .build import PipWheelBuilder, SourceBuilder
from .installer import Installer

__all__ = ["InstalledEntry", "Installer", "PipWheelBuilder", "SourceBuilder"]
