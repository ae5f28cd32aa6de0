"""Data models for requirements flowing into resolution."""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

from .ranges import ANY, VersionRange
from .version import Version

# (package name, chosen version) of the package that declared a requirement.
Parent = Tuple[str, Version]


@dataclass(frozen=True)
class PackageRequirement:
    """A package name plus an acceptable version range.

    ``parent`` is None for requirements declared by the manifest itself and
    the declaring (name, version) for transitive ones.
    """
    name: str  # PEP 503 normalized
    range: VersionRange = ANY
    extras: FrozenSet[str] = field(default_factory=frozenset)
    parent: Optional[Parent] = None
    raw: Optional[str] = None

    @property
    def direct(self) -> bool:
        return self.parent is None

    def describe(self) -> str:
        """Short form used in logs and conflict messages, e.g. ``requests[socks] (>=2.0)``."""
        extras = f"[{','.join(sorted(self.extras))}]" if self.extras else ""
        return f"{self.name}{extras} ({self.range})"

    def to_spec(self) -> str:
        """PEP 508-style requirement string used when persisting dependencies."""
        extras = f"[{','.join(sorted(self.extras))}]" if self.extras else ""
        if self.range.is_any():
            return f"{self.name}{extras}"
        return f"{self.name}{extras} {self.range}"
