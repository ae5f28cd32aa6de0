"""Typed error model shared by every component.

Each error carries a human-readable message plus an optional context mapping
so callers can log or render details without parsing strings.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence


class PkgflowError(Exception):
    """Base error class that carries an optional context mapping."""

    def __init__(self, message: str, *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def __str__(self) -> str:
        parts = [self.message]
        for key, value in self.context.items():
            if value not in (None, ""):
                parts.append(f"  {key}: {value}")
        return "\n".join(parts)


class ParseError(PkgflowError, ValueError):
    """Malformed version, range or requirement string."""


class ManifestError(PkgflowError):
    """Project manifest is missing or cannot be interpreted."""


class LockfileError(PkgflowError):
    """Persisted lockfile exists but cannot be read."""


class MetadataError(PkgflowError):
    """Index returned a response that could not be decoded."""


class PackageNotFoundError(MetadataError):
    """Index has no such package (HTTP 404)."""


class NetworkError(PkgflowError):
    """Transport failure after all retries were exhausted."""


class DownloadError(NetworkError):
    """Artifact download failed after all retries were exhausted."""


class IntegrityError(PkgflowError):
    """Downloaded bytes do not match the expected digest."""


class InstallError(PkgflowError):
    """Archive is malformed, unsafe, or could not be written to the target."""


class NoCompatibleArtifactError(PkgflowError):
    """No wheel matches the target environment and no sdist exists."""


class Conflict:
    """One unsatisfiable package: the requirements that could not all hold."""

    def __init__(self, name: str, chains: Sequence[str], reason: str):
        self.name = name
        self.chains: List[str] = list(chains)
        self.reason = reason

    def render(self) -> str:
        """Readable multi-line description of this conflict."""
        lines = [f"{self.name}: {self.reason}"]
        lines.extend(f"    {chain}" for chain in self.chains)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "reason": self.reason, "chains": list(self.chains)}

    def __repr__(self) -> str:
        return f"Conflict({self.name!r}, {self.reason!r})"


class UnsatisfiableConstraintsError(PkgflowError):
    """Resolution exhausted every backtracking option."""

    def __init__(self, conflict: Conflict):
        super().__init__(
            f"Unable to find a set of versions satisfying all requirements.\n{conflict.render()}"
        )
        self.conflict = conflict

    def __str__(self) -> str:
        return self.message
