"""Mutable search state for the resolver and its decision stack."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from typing import Deque, Dict, FrozenSet, List, Optional, Tuple

from index.models import ArtifactDescriptor, Release
from versioning.models import PackageRequirement
from versioning.ranges import ANY, VersionRange
from versioning.version import Version


@dataclass(frozen=True)
class Candidate:
    """A concrete version under consideration, with the dependencies it brings."""
    name: str
    version: Version
    artifact: ArtifactDescriptor
    dependencies: Tuple[PackageRequirement, ...] = ()
    extras: FrozenSet[str] = field(default_factory=frozenset)
    pinned: bool = False

    def with_extras(self, extras: FrozenSet[str], extra_deps: List[PackageRequirement]) -> "Candidate":
        return replace(self, extras=self.extras | extras, dependencies=self.dependencies + tuple(extra_deps))


@dataclass
class ResolutionState:
    """Frontier, accumulated requirements and the current assignment."""
    frontier: Deque[PackageRequirement] = field(default_factory=deque)
    requirements: Dict[str, Tuple[PackageRequirement, ...]] = field(default_factory=dict)
    assignment: Dict[str, Candidate] = field(default_factory=dict)

    def copy(self) -> "ResolutionState":
        return ResolutionState(
            frontier=deque(self.frontier),
            requirements=dict(self.requirements),
            assignment=dict(self.assignment),
        )

    def constraint(self, name: str) -> VersionRange:
        """Intersection of every range seen so far for ``name``."""
        combined = ANY
        for req in self.requirements.get(name, ()):
            combined = combined.intersect(req.range)
        return combined

    def requested_extras(self, name: str) -> FrozenSet[str]:
        extras: FrozenSet[str] = frozenset()
        for req in self.requirements.get(name, ()):
            extras = extras | req.extras
        return extras

    def is_direct(self, name: str) -> bool:
        return any(req.direct for req in self.requirements.get(name, ()))


@dataclass
class Decision:
    """A point the search can return to.

    ``snapshot`` is the state right before the choice was made. ``remaining``
    holds untried releases, newest first; None means they have not been
    enumerated yet because the first choice came from the lockfile.
    """
    name: str
    range: VersionRange
    snapshot: ResolutionState
    chosen: Optional[Version] = None
    remaining: Optional[List[Release]] = None
