"""Release metadata models and conversion from the index JSON API."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from packaging.tags import Tag, parse_tag
from packaging.utils import InvalidWheelFilename, parse_wheel_filename

from common.errors import MetadataError, ParseError
from versioning.version import Version, parse_version

logger = logging.getLogger(__name__)

SDIST_SUFFIXES = (".tar.gz", ".tgz", ".zip", ".tar.bz2", ".tar.xz")


class ArtifactKind(Enum):
    """Shape of a distribution file."""
    WHEEL = "wheel"  # prebuilt binary distribution
    SDIST = "sdist"  # source tree requiring a build step


@dataclass(frozen=True)
class ArtifactDescriptor:
    """One downloadable file for a release."""
    filename: str
    version: Version
    kind: ArtifactKind
    url: str
    digest: str  # "<algorithm>:<hex>"
    size: Optional[int] = None
    tags: FrozenSet[Tag] = field(default_factory=frozenset)
    requires_python: Optional[str] = None
    yanked: bool = False

    @property
    def algorithm(self) -> str:
        return self.digest.split(":", 1)[0]

    @property
    def hexdigest(self) -> str:
        return self.digest.split(":", 1)[1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "version": str(self.version),
            "kind": self.kind.value,
            "url": self.url,
            "digest": self.digest,
            "size": self.size,
            "tags": sorted(str(t) for t in self.tags),
            "requires_python": self.requires_python,
            "yanked": self.yanked,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtifactDescriptor":
        tags = set()
        for text in data.get("tags") or []:
            tags.update(parse_tag(text))
        return cls(
            filename=data["filename"],
            version=parse_version(data["version"]),
            kind=ArtifactKind(data["kind"]),
            url=data["url"],
            digest=data["digest"],
            size=data.get("size"),
            tags=frozenset(tags),
            requires_python=data.get("requires_python"),
            yanked=bool(data.get("yanked", False)),
        )


@dataclass(frozen=True)
class Release:
    """All files published for one version."""
    version: Version
    artifacts: Tuple[ArtifactDescriptor, ...]

    @property
    def yanked(self) -> bool:
        return bool(self.artifacts) and all(a.yanked for a in self.artifacts)

    @property
    def requires_python(self) -> Optional[str]:
        for artifact in self.artifacts:
            if artifact.requires_python:
                return artifact.requires_python
        return None


@dataclass(frozen=True)
class ReleaseMetadata:
    """Everything the index publishes for one package, oldest release first."""
    name: str
    releases: Tuple[Release, ...]

    def versions(self) -> List[Version]:
        return [r.version for r in self.releases]

    def release(self, version: Version) -> Optional[Release]:
        for r in self.releases:
            if r.version == version:
                return r
        return None


def _descriptor_from_file(version: Version, entry: Dict[str, Any]) -> Optional[ArtifactDescriptor]:
    """Build a descriptor from one index file record; None for unsupported files."""
    filename = entry.get("filename") or ""
    url = entry.get("url")
    digests = entry.get("digests") or {}
    sha256 = digests.get("sha256")
    if not url or not sha256:
        return None

    if filename.endswith(".whl"):
        try:
            _, _, _, tags = parse_wheel_filename(filename)
        except InvalidWheelFilename:
            logger.debug("Skipping unparseable wheel filename %s", filename)
            return None
        kind = ArtifactKind.WHEEL
    elif filename.endswith(SDIST_SUFFIXES):
        kind = ArtifactKind.SDIST
        tags = frozenset()
    else:
        return None

    return ArtifactDescriptor(
        filename=filename,
        version=version,
        kind=kind,
        url=url,
        digest=f"sha256:{sha256.lower()}",
        size=entry.get("size"),
        tags=frozenset(tags),
        requires_python=entry.get("requires_python") or None,
        yanked=bool(entry.get("yanked", False)),
    )


def from_index_json(name: str, data: Dict[str, Any]) -> ReleaseMetadata:
    """Convert the index's project JSON document into ReleaseMetadata.

    Versions that do not parse and files of unsupported formats are skipped;
    a document without a ``releases`` mapping raises MetadataError.
    """
    releases_data = data.get("releases") if isinstance(data, dict) else None
    if not isinstance(releases_data, dict):
        raise MetadataError("Index response has no releases mapping", context={"package": name})

    releases: List[Release] = []
    for version_text, files in releases_data.items():
        try:
            version = parse_version(version_text)
        except ParseError:
            logger.debug("Skipping invalid version %s of %s", version_text, name)
            continue
        artifacts = tuple(
            d for d in (_descriptor_from_file(version, f) for f in _as_list(files)) if d is not None
        )
        releases.append(Release(version=version, artifacts=artifacts))

    releases.sort(key=lambda r: r.version)
    return ReleaseMetadata(name=name, releases=tuple(releases))


def _as_list(files: Any) -> Iterable[Dict[str, Any]]:
    if isinstance(files, list):
        return [f for f in files if isinstance(f, dict)]
    return []
