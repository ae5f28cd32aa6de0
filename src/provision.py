"""End-to-end provisioning: lock, fetch and install a project's dependencies."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from constants import Constants
from common.errors import PkgflowError
from common.logging_utils import Timer, extra_context, is_debug_enabled
from artifacts.fetcher import ArtifactFetcher
from index.base import MetadataSource
from index.client import MetadataClient
from index.tags import ArtifactSelector, TargetEnvironment
from installer.installer import Installer
from lockfile.io import read_lockfile, write_lockfile
from lockfile.model import LockedPackage, Lockfile
from manifest.model import Manifest
from resolver.engine import Resolver

logger = logging.getLogger(__name__)


@dataclass
class InstallReport:
    """Outcome of a sync: what changed and what failed."""
    installed: List[str] = field(default_factory=list)  # "name==version"
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def _describe(error: Exception) -> str:
    return error.message if isinstance(error, PkgflowError) else str(error)


def package_root(project_dir: Path, python_version: str) -> Path:
    """``<project>/__pypackages__/<X.Y>``."""
    return Path(project_dir) / Constants.PACKAGES_DIR / TargetEnvironment.for_python(python_version).short_version


class Provisioner:
    """Drives resolution, locking, fetching and installation for one project.

    Args:
        source: Metadata source; defaults to a MetadataClient for the
            manifest's python version.
        fetcher: Artifact fetcher; defaults to one on the configured cache.
        installer: Installer; defaults to one building sdists with pip.
        include_dev: Also resolve and install dev requirements.
        max_workers: Concurrent fetch/install workers.
    """

    def __init__(
        self,
        source: Optional[MetadataSource] = None,
        fetcher: Optional[ArtifactFetcher] = None,
        installer: Optional[Installer] = None,
        include_dev: bool = False,
        max_workers: Optional[int] = None,
    ):
        self.source = source
        self.fetcher = fetcher or ArtifactFetcher()
        self.installer = installer or Installer()
        self.include_dev = include_dev
        self.max_workers = max_workers or Constants.MAX_WORKERS

    def _source_for(self, manifest: Manifest) -> MetadataSource:
        if self.source is None:
            self.source = MetadataClient(environment=TargetEnvironment.for_python(manifest.python_version))
        return self.source

    def load_lockfile(self, manifest: Manifest, project_dir: Path) -> Optional[Lockfile]:
        """Current lockfile for ``manifest``, or None when absent or stale."""
        lockfile = read_lockfile(Path(project_dir) / Constants.LOCK_FILE)
        if lockfile is None:
            return None
        if lockfile.is_stale(manifest, self.include_dev) or lockfile.python_version != manifest.python_version:
            logger.info(
                "Discarding stale lockfile",
                extra=extra_context(event="lockfile_stale", component="provision"),
            )
            return None
        return lockfile

    def lock(self, manifest: Manifest, project_dir: Path) -> Lockfile:
        """Resolve ``manifest`` (seeded by any current lockfile) and persist the result."""
        project_dir = Path(project_dir)
        previous = self.load_lockfile(manifest, project_dir)
        source = self._source_for(manifest)
        resolver = Resolver(source, lockfile=previous, selector=ArtifactSelector(source.environment))
        resolution = resolver.resolve(manifest.all_requirements(self.include_dev))
        lockfile = Lockfile.from_resolution(resolution, manifest, self.include_dev)
        if previous is None or previous.to_dict() != lockfile.to_dict():
            write_lockfile(lockfile, project_dir / Constants.LOCK_FILE)
        else:
            logger.debug("Lockfile unchanged")
        return lockfile

    def sync(self, manifest: Manifest, project_dir: Path) -> InstallReport:
        """Make ``__pypackages__`` match the resolution of ``manifest``.

        Packages no longer resolved are removed. A failure to fetch or install
        one package is recorded in the report and does not stop the others.

        Raises:
            UnsatisfiableConstraintsError: Resolution failed; nothing is installed.
        """
        project_dir = Path(project_dir)
        with Timer() as timer:
            lockfile = self.lock(manifest, project_dir)
            root = package_root(project_dir, manifest.python_version)
            report = InstallReport()

            wanted = lockfile.pins()
            current = {entry.name: entry for entry in self.installer.installed(root)}
            for name in sorted(set(current) - set(wanted)):
                try:
                    self.installer.uninstall(name, root)
                    report.removed.append(name)
                except (PkgflowError, OSError) as e:
                    logger.error("Failed to remove %s: %s", name, _describe(e))
                    report.failures[name] = _describe(e)

            todo: List[LockedPackage] = []
            for name, pkg in wanted.items():
                entry = current.get(name)
                if entry is not None and entry.version == pkg.version:
                    report.unchanged.append(f"{name}=={pkg.version}")
                else:
                    todo.append(pkg)

            if todo:
                with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                    futures = {pool.submit(self._install_one, pkg, root): pkg for pkg in todo}
                    for future in as_completed(futures):
                        pkg = futures[future]
                        try:
                            future.result()
                        except (PkgflowError, OSError) as e:
                            logger.error(
                                "Failed to install %s %s: %s",
                                pkg.name,
                                pkg.version,
                                _describe(e),
                                extra=extra_context(
                                    event="install", component="provision", outcome="failure", package=pkg.name
                                ),
                            )
                            report.failures[pkg.name] = _describe(e)
                        else:
                            report.installed.append(f"{pkg.name}=={pkg.version}")
            report.installed.sort()

        logger.info(
            "Sync finished: %d installed, %d removed, %d failed",
            len(report.installed),
            len(report.removed),
            len(report.failures),
            extra=extra_context(
                event="sync",
                component="provision",
                outcome="success" if report.ok else "partial",
                duration_ms=timer.duration_ms(),
            ),
        )
        if is_debug_enabled(logger):
            logger.debug("Unchanged: %s", ", ".join(report.unchanged) or "-")
        return report

    def _install_one(self, pkg: LockedPackage, root: Path) -> None:
        path = self.fetcher.fetch(pkg.artifact)
        self.installer.install(path, pkg, root)
