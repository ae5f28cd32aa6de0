"""Shared fixtures: an in-memory package index and helpers to build artifacts."""
import hashlib
import io
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from packaging.tags import parse_tag

from common.errors import PackageNotFoundError
from index.base import MetadataSource
from index.models import ArtifactDescriptor, ArtifactKind, Release, ReleaseMetadata
from index.tags import TargetEnvironment
from versioning.parser import parse_requirement
from versioning.version import Version, parse_version

TEST_PLATFORMS = ("manylinux_2_17_x86_64", "linux_x86_64")


def make_environment(python_version: str = "3.11") -> TargetEnvironment:
    return TargetEnvironment(python_version=python_version, platforms=TEST_PLATFORMS)


def wheel_descriptor(
    name: str,
    version: str,
    tag: str = "py3-none-any",
    yanked: bool = False,
    requires_python: Optional[str] = None,
    digest: Optional[str] = None,
    url: Optional[str] = None,
) -> ArtifactDescriptor:
    filename = f"{name.replace('-', '_')}-{version}-{tag}.whl"
    return ArtifactDescriptor(
        filename=filename,
        version=parse_version(version),
        kind=ArtifactKind.WHEEL,
        url=url or f"https://files.example.org/{filename}",
        digest=digest or "sha256:" + hashlib.sha256(filename.encode()).hexdigest(),
        tags=frozenset(parse_tag(tag)),
        requires_python=requires_python,
        yanked=yanked,
    )


class FakeIndex(MetadataSource):
    """In-memory metadata source that records every lookup.

    ``packages`` maps a package name to ``{version: [requires_dist strings]}``.
    """

    def __init__(self, packages: Dict[str, Dict[str, List[str]]], yanked=(), requires_python=None,
                 environment: Optional[TargetEnvironment] = None):
        self.packages = packages
        self.yanked = set(yanked)
        self.requires_python = dict(requires_python or {})
        self.environment = environment or make_environment()
        self.fetch_calls: List[str] = []
        self.requires_calls: List[tuple] = []
        self.prefetched: List[List[str]] = []

    def fetch(self, name: str) -> ReleaseMetadata:
        self.fetch_calls.append(name)
        if name not in self.packages:
            raise PackageNotFoundError(f"Package not found: {name}", context={"package": name})
        versions = sorted(self.packages[name], key=Version)
        releases = tuple(
            Release(
                version=parse_version(v),
                artifacts=(
                    wheel_descriptor(
                        name,
                        v,
                        yanked=(name, v) in self.yanked,
                        requires_python=self.requires_python.get((name, v)),
                    ),
                ),
            )
            for v in versions
        )
        return ReleaseMetadata(name=name, releases=releases)

    def requires_dist(self, name: str, version: Version) -> List[str]:
        self.requires_calls.append((name, str(version)))
        return list(self.packages[name][str(version)])

    def prefetch(self, names) -> None:
        self.prefetched.append(list(names))


def reqs(*texts):
    """Direct requirements from PEP 508 strings."""
    return [parse_requirement(t) for t in texts]


def build_wheel(path: Path, name: str, version: str, files: Dict[str, str], extra_members=None) -> Path:
    """Write a minimal wheel at ``path`` containing ``files`` plus dist-info metadata."""
    dist_info = f"{name}-{version}.dist-info"
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for member, content in files.items():
            zf.writestr(member, content)
        zf.writestr(f"{dist_info}/METADATA", f"Metadata-Version: 2.1\nName: {name}\nVersion: {version}\n")
        zf.writestr(f"{dist_info}/WHEEL", "Wheel-Version: 1.0\nRoot-Is-Purelib: true\nTag: py3-none-any\n")
        for info, content in (extra_members or []):
            zf.writestr(info, content)
    path.write_bytes(buf.getvalue())
    return path


@pytest.fixture
def environment():
    return make_environment()
