"""Abstract metadata source consumed by the resolver."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable, List

from common.errors import ParseError
from versioning.models import PackageRequirement
from versioning.parser import parse_requirement
from versioning.version import Version
from .models import ReleaseMetadata
from .tags import TargetEnvironment

logger = logging.getLogger(__name__)


class MetadataSource(ABC):
    """Release and dependency information for packages, looked up by name."""

    environment: TargetEnvironment

    @abstractmethod
    def fetch(self, name: str) -> ReleaseMetadata:
        """Return release metadata for a normalized package name.

        Raises:
            PackageNotFoundError: The index does not know the package.
            NetworkError: The index could not be reached.
            MetadataError: The index response could not be decoded.
        """

    @abstractmethod
    def requires_dist(self, name: str, version: Version) -> List[str]:
        """Raw PEP 508 requirement strings declared by one version."""

    def prefetch(self, names: Iterable[str]) -> None:
        """Warm metadata for several packages; a no-op unless overridden."""

    def dependencies(
        self, name: str, version: Version, extras: Iterable[str] = ()
    ) -> List[PackageRequirement]:
        """Requirements of ``name==version`` that apply to the target environment.

        Requirements gated on ``extra == ...`` markers are included only for
        the requested ``extras``. Unparseable entries are skipped with a warning.
        """
        environment = self.environment.marker_environment()
        result: List[PackageRequirement] = []
        seen = set()
        for text in self.requires_dist(name, version):
            try:
                req = parse_requirement(
                    text, parent=(name, version), environment=environment, extras=extras
                )
            except ParseError as e:
                logger.warning("Skipping requirement %r of %s %s: %s", text, name, version, e.message)
                continue
            if req is None or (req.name == name and not req.extras):
                continue
            key = (req.name, req.range, req.extras)
            if key in seen:
                continue
            seen.add(key)
            result.append(req)
        return result

    def extra_dependencies(
        self, name: str, version: Version, extras: Iterable[str]
    ) -> List[PackageRequirement]:
        """Requirements contributed only by ``extras`` on top of the base set."""
        base = {(r.name, r.range, r.extras) for r in self.dependencies(name, version)}
        return [
            r for r in self.dependencies(name, version, extras)
            if (r.name, r.range, r.extras) not in base
        ]
