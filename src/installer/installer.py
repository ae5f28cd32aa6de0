"""Materialize verified artifacts into a project package root.

Layout under ``root`` (``__pypackages__/<X.Y>``):

    lib/                    importable packages and dist-info
    bin/                    scripts shipped in ``<name>.data/scripts``
    .pkgflow/installed/     one JSON record per installed package
    .pkgflow/staging-*      short-lived work areas

Archives are unpacked into a staging area first; files are moved into place
only after the whole archive validated. Replacing a different version moves
the old files into a backup area which is restored if anything fails.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path, PurePosixPath
from typing import Dict, FrozenSet, List, Optional, Tuple

from common.errors import InstallError
from common.logging_utils import Timer, extra_context
from index.models import ArtifactKind
from .build import PipWheelBuilder, SourceBuilder
from .extract import extract_archive, extract_zip
from .models import InstalledEntry, record_path

logger = logging.getLogger(__name__)

LIB_DIR = "lib"
BIN_DIR = "bin"
_LIB_SCHEMES = ("purelib", "platlib")


def _wheel_destination(relative: str) -> str:
    """Map a path inside a wheel to its place under the package root."""
    parts = PurePosixPath(relative).parts
    if len(parts) >= 3 and parts[0].endswith(".data"):
        scheme, rest = parts[1], PurePosixPath(*parts[2:])
        if scheme in _LIB_SCHEMES:
            return f"{LIB_DIR}/{rest}"
        if scheme == "scripts":
            return f"{BIN_DIR}/{rest}"
    return f"{LIB_DIR}/{relative}"


def _is_dist_info(relative: str) -> bool:
    parts = PurePosixPath(relative).parts
    return len(parts) > 2 and parts[0] == LIB_DIR and parts[1].endswith(".dist-info")


def _fix_script(path: Path) -> None:
    with open(path, "rb") as fh:
        head = fh.readline()
        body = fh.read()
    if head.startswith(b"#!python"):
        with open(path, "wb") as fh:
            fh.write(b"#!/usr/bin/env python3" + head[len(b"#!python"):])
            fh.write(body)
    path.chmod(0o755)


def _prune_empty_dirs(root: Path, start: Path) -> None:
    current = start
    while current != root and root in current.parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent


class Installer:
    """Installs, upgrades and removes packages under a package root.

    Args:
        builder: Turns sdists into wheels; defaults to ``pip wheel``.
    """

    def __init__(self, builder: Optional[SourceBuilder] = None):
        self.builder = builder or PipWheelBuilder()
        # One lock per package root; commits and removals in a root are serialized.
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, root: Path) -> threading.Lock:
        key = str(Path(root).resolve())
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def install(self, path: Path, package, root: Path) -> InstalledEntry:
        """Install the artifact at ``path`` for ``package`` into ``root``.

        ``package`` is any object with ``name``, ``version`` and ``artifact``
        (a resolved or locked package).

        Raises:
            InstallError: The archive is unsafe or malformed, the build failed,
                a file belongs to another installed package, or files could
                not be moved into place. The root then still holds the
                previously installed version, if any.
        """
        root = Path(root)
        work = root / ".pkgflow"
        try:
            work.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(dir=work, prefix="staging-"))
        except OSError as e:
            raise InstallError(
                f"Cannot prepare {work}: {e}", context={"package": package.name, "root": str(root)}
            ) from e
        try:
            with Timer() as timer:
                wheel = self._wheel_for(Path(path), package, staging)
                try:
                    content, files = self._stage_wheel(wheel, staging)
                except OSError as e:
                    raise InstallError(
                        f"Failed to stage {package.name} {package.version}: {e}",
                        context={"package": package.name, "root": str(root)},
                    ) from e
                with self._lock_for(root):
                    entry = self._commit(package, root, content, files, staging / "backup")
            logger.info(
                "Installed %s %s",
                package.name,
                package.version,
                extra=extra_context(
                    event="install",
                    component="installer",
                    outcome="success",
                    package=package.name,
                    version=str(package.version),
                    duration_ms=timer.duration_ms(),
                ),
            )
            return entry
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def _wheel_for(self, path: Path, package, staging: Path) -> Path:
        kind = package.artifact.kind
        if kind is ArtifactKind.WHEEL:
            return path
        if kind is ArtifactKind.SDIST:
            source = staging / "source"
            extract_archive(path, source)
            return self.builder.build(source, staging / "dist")
        raise InstallError(f"Unknown artifact kind: {kind}", context={"package": package.name})

    @staticmethod
    def _stage_wheel(wheel: Path, staging: Path) -> Tuple[Path, FrozenSet[str]]:
        unpacked = staging / "wheel"
        unpacked.mkdir(parents=True, exist_ok=True)
        extract_zip(wheel, unpacked)
        content = staging / "content"
        files: List[str] = []
        for dirpath, _dirnames, filenames in os.walk(unpacked):
            for filename in filenames:
                src = Path(dirpath) / filename
                relative = src.relative_to(unpacked).as_posix()
                dest_rel = _wheel_destination(relative)
                dest = content / dest_rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                os.replace(src, dest)
                if dest_rel.startswith(BIN_DIR + "/") and not dest.is_symlink():
                    _fix_script(dest)
                files.append(dest_rel)
        if not any(_is_dist_info(f) for f in files):
            raise InstallError("Wheel has no .dist-info directory", context={"wheel": wheel.name})
        return content, frozenset(files)

    def _commit(
        self, package, root: Path, content: Path, files: FrozenSet[str], backup: Path
    ) -> InstalledEntry:
        previous = InstalledEntry.load(root, package.name)
        self._check_ownership(package, root, files)
        moved_old: List[str] = []
        moved_new: List[str] = []
        try:
            if previous is not None:
                for rel in sorted(previous.files):
                    current = root / rel
                    if not current.exists() and not current.is_symlink():
                        continue
                    saved = backup / rel
                    saved.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(current, saved)
                    moved_old.append(rel)
            for rel in sorted(files):
                dest = root / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                os.replace(content / rel, dest)
                moved_new.append(rel)
            entry = InstalledEntry(name=package.name, version=package.version, root=root, files=files)
            entry.save()
        except BaseException as e:
            self._rollback(root, backup, moved_old, moved_new)
            if isinstance(e, OSError):
                raise InstallError(
                    f"Failed to install {package.name} {package.version}: {e}",
                    context={"package": package.name, "root": str(root)},
                ) from e
            raise
        for rel in moved_old:
            if rel not in files:
                _prune_empty_dirs(root, (root / rel).parent)
        if previous is not None and previous.version != package.version:
            logger.info("Replaced %s %s with %s", package.name, previous.version, package.version)
        return entry

    @staticmethod
    def _check_ownership(package, root: Path, files: FrozenSet[str]) -> None:
        """Refuse to overwrite files recorded for a different package."""
        for other in InstalledEntry.load_all(root):
            if other.name == package.name:
                continue
            clash = sorted(files & other.files)
            if clash:
                raise InstallError(
                    f"{package.name} {package.version} would overwrite files of {other.name} {other.version}",
                    context={"package": package.name, "owner": other.name, "files": ", ".join(clash[:5])},
                )

    @staticmethod
    def _rollback(root: Path, backup: Path, moved_old: List[str], moved_new: List[str]) -> None:
        for rel in reversed(moved_new):
            try:
                (root / rel).unlink()
            except OSError:
                logger.warning("Rollback could not remove %s", rel)
        for rel in reversed(moved_old):
            dest = root / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            os.replace(backup / rel, dest)
        logger.warning("Rolled back installation", extra=extra_context(event="rollback", component="installer"))

    def uninstall(self, name: str, root: Path) -> Optional[InstalledEntry]:
        """Remove every file recorded for ``name``; returns the removed entry or None."""
        root = Path(root)
        with self._lock_for(root):
            entry = InstalledEntry.load(root, name)
            if entry is None:
                return None
            for rel in sorted(entry.files):
                path = root / rel
                try:
                    path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise InstallError(f"Failed to remove {rel}: {e}", context={"package": name}) from e
                _prune_empty_dirs(root, path.parent)
            record_path(root, name).unlink(missing_ok=True)
        logger.info(
            "Removed %s %s",
            entry.name,
            entry.version,
            extra=extra_context(event="uninstall", component="installer", package=name),
        )
        return entry

    @staticmethod
    def installed(root: Path) -> List[InstalledEntry]:
        """All packages recorded under ``root``, sorted by name."""
        return InstalledEntry.load_all(Path(root))
