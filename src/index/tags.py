"""Target environment description and artifact selection."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from packaging import tags as pep425
from packaging.markers import default_environment
from packaging.specifiers import InvalidSpecifier, SpecifierSet

from constants import Constants, TieBreak
from common.errors import NoCompatibleArtifactError
from versioning.version import python_version_tuple
from .models import ArtifactDescriptor, ArtifactKind, Release

logger = logging.getLogger(__name__)

_IMPLEMENTATION_NAMES = {"cp": "cpython", "pp": "pypy"}


@dataclass(frozen=True)
class TargetEnvironment:
    """Interpreter and platform the resolved packages must run on.

    ``platforms`` defaults to the host's platform tags; ``markers`` overrides
    individual PEP 508 marker variables.
    """
    python_version: str = Constants.DEFAULT_PY_VERSION
    implementation: str = "cp"
    platforms: Optional[Tuple[str, ...]] = None
    markers: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @classmethod
    def for_python(cls, python_version: Optional[str], **kwargs) -> "TargetEnvironment":
        return cls(python_version=python_version or Constants.DEFAULT_PY_VERSION, **kwargs)

    @property
    def short_version(self) -> str:
        major, minor = python_version_tuple(self.python_version)
        return f"{major}.{minor}"

    def _platforms(self) -> List[str]:
        if self.platforms is not None:
            return list(self.platforms)
        return list(pep425.platform_tags())

    def supported_tags(self) -> List[pep425.Tag]:
        """Tags this environment accepts, most specific first."""
        version = python_version_tuple(self.python_version)
        platforms = self._platforms()
        if self.implementation == "cp":
            specific = list(pep425.cpython_tags(python_version=version, platforms=platforms))
        else:
            interpreter = f"{self.implementation}{version[0]}{version[1]}"
            specific = list(pep425.generic_tags(interpreter=interpreter, platforms=platforms))
        interpreter = f"{self.implementation}{version[0]}{version[1]}"
        compatible = list(
            pep425.compatible_tags(python_version=version, interpreter=interpreter, platforms=platforms)
        )
        ordered: List[pep425.Tag] = []
        seen = set()
        for tag in specific + compatible:
            if tag not in seen:
                seen.add(tag)
                ordered.append(tag)
        return ordered

    def marker_environment(self) -> Dict[str, str]:
        """PEP 508 marker variables for the target interpreter."""
        env = dict(default_environment())
        major, minor = python_version_tuple(self.python_version)
        full = self.python_version if self.python_version.count(".") >= 2 else f"{major}.{minor}.0"
        env["python_version"] = f"{major}.{minor}"
        env["python_full_version"] = full
        env["implementation_version"] = full
        name = _IMPLEMENTATION_NAMES.get(self.implementation, self.implementation)
        env["implementation_name"] = name
        env["platform_python_implementation"] = "CPython" if name == "cpython" else name.capitalize()
        env.update(dict(self.markers))
        return env

    def accepts_python(self, requires_python: Optional[str]) -> bool:
        """True when the target interpreter satisfies a ``requires_python`` specifier."""
        if not requires_python:
            return True
        try:
            spec = SpecifierSet(requires_python)
        except InvalidSpecifier:
            logger.debug("Ignoring invalid requires_python %r", requires_python)
            return True
        return spec.contains(self.marker_environment()["python_full_version"], prereleases=True)


class ArtifactSelector:
    """Picks the most specific compatible artifact of a release.

    Wheels are ranked by the best position of any of their tags in the target's
    supported tag list. Equal ranks fall back to metadata order, first or last
    according to ``tie_break``. Without a compatible wheel the sdist is used.
    """

    def __init__(self, environment: TargetEnvironment, tie_break: Optional[str] = None):
        self.environment = environment
        self.tie_break = TieBreak(tie_break or Constants.ARTIFACT_TIE_BREAK)
        self._rank = {tag: i for i, tag in enumerate(environment.supported_tags())}

    def _usable(self, artifacts: Sequence[ArtifactDescriptor], release: Release) -> List[ArtifactDescriptor]:
        allow_yanked = release.yanked
        return [
            a for a in artifacts
            if (allow_yanked or not a.yanked) and self.environment.accepts_python(a.requires_python)
        ]

    def _wheel_rank(self, artifact: ArtifactDescriptor) -> Optional[int]:
        ranks = [self._rank[t] for t in artifact.tags if t in self._rank]
        return min(ranks) if ranks else None

    def _pick(self, ranked: List[Tuple[int, int, ArtifactDescriptor]]) -> ArtifactDescriptor:
        if self.tie_break is TieBreak.LAST:
            ranked.sort(key=lambda item: (item[0], -item[1]))
        else:
            ranked.sort(key=lambda item: (item[0], item[1]))
        return ranked[0][2]

    def select(self, name: str, release: Release) -> ArtifactDescriptor:
        """Return the artifact to install for ``release``.

        Raises:
            NoCompatibleArtifactError: When neither a matching wheel nor an sdist exists.
        """
        usable = self._usable(release.artifacts, release)
        wheels = []
        sdists = []
        for position, artifact in enumerate(usable):
            if artifact.kind is ArtifactKind.WHEEL:
                rank = self._wheel_rank(artifact)
                if rank is not None:
                    wheels.append((rank, position, artifact))
            else:
                sdists.append((0, position, artifact))
        if wheels:
            return self._pick(wheels)
        if sdists:
            return self._pick(sdists)
        raise NoCompatibleArtifactError(
            f"No artifact of {name} {release.version} is compatible with the target environment",
            context={
                "package": name,
                "version": str(release.version),
                "python": self.environment.python_version,
            },
        )

    def is_compatible(self, release: Release) -> bool:
        try:
            self.select("", release)
        except NoCompatibleArtifactError:
            return False
        return True
