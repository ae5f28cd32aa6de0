"""Lockfile model and persistence."""

from .model import LockedPackage, Lockfile
from .io import read_lockfile, write_lockfile

__all__ = ["LockedPackage", "Lockfile", "read_lockfile", "write_lockfile"]
