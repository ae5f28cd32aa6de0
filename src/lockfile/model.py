"""Lockfile typed model."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from constants import Constants
from common.errors import LockfileError
from index.models import ArtifactDescriptor
from manifest.model import Manifest
from resolver.models import Resolution
from versioning.models import PackageRequirement
from versioning.parser import normalize_name, parse_spec_string
from versioning.version import Version, parse_version


@dataclass(frozen=True)
class LockedPackage:
    """One pinned package: version, exact artifact and declared dependencies."""
    name: str
    version: Version
    artifact: ArtifactDescriptor
    dependencies: Tuple[str, ...] = ()
    extras: Tuple[str, ...] = ()
    direct: bool = False

    @property
    def digest(self) -> str:
        return self.artifact.digest

    def requirements(self) -> List[PackageRequirement]:
        """Declared dependencies as requirements tagged with this package as parent."""
        return [parse_spec_string(text, parent=(self.name, self.version)) for text in self.dependencies]

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "version": str(self.version),
            "digest": self.artifact.digest,
            "direct": self.direct,
            "dependencies": list(self.dependencies),
            "artifact": self.artifact.to_dict(),
        }
        if self.extras:
            data["extras"] = list(self.extras)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockedPackage":
        artifact = ArtifactDescriptor.from_dict(data["artifact"])
        if artifact.digest != data.get("digest", artifact.digest):
            raise LockfileError(
                "Lockfile digest does not match its artifact entry",
                context={"package": data.get("name")},
            )
        return cls(
            name=normalize_name(data["name"]),
            version=parse_version(data["version"]),
            artifact=artifact,
            dependencies=tuple(data.get("dependencies") or ()),
            extras=tuple(data.get("extras") or ()),
            direct=bool(data.get("direct", False)),
        )


@dataclass(frozen=True)
class Lockfile:
    """Persisted record of a successful resolution.

    Never mutated: a lockfile whose ``manifest_hash`` no longer matches the
    manifest is discarded and replaced by a new one.
    """
    manifest_hash: str
    python_version: str
    packages: Tuple[LockedPackage, ...] = field(default_factory=tuple)
    version: int = Constants.LOCK_VERSION

    @classmethod
    def from_resolution(
        cls, resolution: Resolution, manifest: Manifest, include_dev: bool = False
    ) -> "Lockfile":
        packages = tuple(
            LockedPackage(
                name=pkg.name,
                version=pkg.version,
                artifact=pkg.artifact,
                dependencies=tuple(pkg.dependencies),
                extras=tuple(sorted(pkg.extras)),
                direct=pkg.direct,
            )
            for pkg in sorted(resolution, key=lambda p: p.name)
        )
        return cls(
            manifest_hash=manifest.content_hash(include_dev),
            python_version=manifest.python_version,
            packages=packages,
        )

    def is_stale(self, manifest: Manifest, include_dev: bool = False) -> bool:
        return self.manifest_hash != manifest.content_hash(include_dev)

    def pins(self) -> Dict[str, LockedPackage]:
        return {pkg.name: pkg for pkg in self.packages}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "manifest_hash": self.manifest_hash,
            "python_version": self.python_version,
            "package": [pkg.to_dict() for pkg in self.packages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lockfile":
        """Build a lockfile from its persisted form.

        Raises:
            LockfileError: On a missing field, unknown schema version or bad value.
        """
        if not isinstance(data, dict):
            raise LockfileError("Lockfile root is not a mapping")
        schema = data.get("version")
        if schema != Constants.LOCK_VERSION:
            raise LockfileError(f"Unsupported lockfile version: {schema!r}")
        try:
            packages = tuple(LockedPackage.from_dict(p) for p in data.get("package") or [])
            return cls(
                manifest_hash=str(data["manifest_hash"]),
                python_version=str(data["python_version"]),
                packages=packages,
                version=schema,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LockfileError(f"Malformed lockfile: {e}") from e
