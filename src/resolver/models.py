"""Resolution output models."""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterator, List, Tuple

from index.models import ArtifactDescriptor
from versioning.version import Version


@dataclass(frozen=True)
class ResolvedPackage:
    """One package of a successful resolution."""
    name: str
    version: Version
    artifact: ArtifactDescriptor
    direct: bool
    dependencies: Tuple[str, ...] = ()  # requirement specs declared by this version
    extras: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Resolution:
    """Mapping of package name to its single chosen version, in decision order."""
    packages: Dict[str, ResolvedPackage]

    def __iter__(self) -> Iterator[ResolvedPackage]:
        return iter(self.packages.values())

    def __len__(self) -> int:
        return len(self.packages)

    def __contains__(self, name: object) -> bool:
        return name in self.packages

    def __getitem__(self, name: str) -> ResolvedPackage:
        return self.packages[name]

    def names(self) -> List[str]:
        return list(self.packages)

    def versions(self) -> Dict[str, str]:
        """``{name: version}`` view, handy for logging and comparisons."""
        return {name: str(pkg.version) for name, pkg in self.packages.items()}
