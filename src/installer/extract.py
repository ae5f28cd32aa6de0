"""Archive extraction that refuses to write outside its destination.

Every member is validated before anything is written, so a rejected archive
leaves the destination untouched. Besides textual checks on names and link
targets, no member may be reached through a symbolic link declared by the
same archive: link chains are how a textually clean archive escapes.
"""

from __future__ import annotations

import os
import shutil
import stat
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Collection, List, Optional

from common.errors import InstallError

FILE, DIR, SYMLINK, HARDLINK = "file", "dir", "symlink", "hardlink"


@dataclass(frozen=True)
class _Member:
    name: str  # normalized, POSIX separators
    kind: str
    link: Optional[str] = None
    mode: int = 0


def _reject(archive: Path, member: str, reason: str) -> InstallError:
    return InstallError(
        f"Unsafe archive member {member!r}: {reason}",
        context={"archive": archive.name, "member": member},
    )


def _is_absolute(name: str) -> bool:
    return name.startswith(("/", "\\")) or bool(PureWindowsPath(name).drive)


def _inside(dest: Path, relative: str) -> bool:
    normalized = os.path.normpath(os.path.join(str(dest), relative))
    return normalized == str(dest) or normalized.startswith(str(dest) + os.sep)


def _parent(name: str) -> str:
    return name.rstrip("/").rpartition("/")[0]


def _through_link(path: str, links: Collection[str]) -> Optional[str]:
    """First declared link that ``path`` traverses, walking components in order."""
    current: List[str] = []
    for part in path.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if current:
                current.pop()
            continue
        current.append(part)
        joined = "/".join(current)
        if joined in links:
            return joined
    return None


def check_member(archive: Path, dest: Path, name: str, link_target: str | None = None) -> str:
    """Validate one member name (and link target) against ``dest``; return its normalized name."""
    if not name or _is_absolute(name):
        raise _reject(archive, name, "absolute path")
    if not _inside(dest, name):
        raise _reject(archive, name, "path escapes the destination")
    if link_target is not None:
        if _is_absolute(link_target):
            raise _reject(archive, name, "link to an absolute path")
        parent = str(PurePosixPath(name).parent)
        if not _inside(dest, os.path.join(parent, link_target)):
            raise _reject(archive, name, "link points outside the destination")
    return str(PurePosixPath(os.path.normpath(name).replace(os.sep, "/")))


def _validate(archive: Path, dest: Path, raw: List[_Member]) -> List[_Member]:
    members: List[_Member] = []
    for m in raw:
        if m.kind == SYMLINK:
            name = check_member(archive, dest, m.name, m.link)
        else:
            name = check_member(archive, dest, m.name)
            if m.kind == HARDLINK:
                check_member(archive, dest, m.link)
        members.append(_Member(name, m.kind, m.link, m.mode))

    links = {m.name for m in members if m.kind == SYMLINK}
    seen = set()
    for m, original in zip(members, raw):
        hop = _through_link(_parent(original.name), links)
        if hop is not None:
            raise _reject(archive, original.name, f"path passes through link {hop!r}")
        if m.name in links and (m.kind != SYMLINK or m.name in seen):
            raise _reject(archive, original.name, "replaces a link")
        seen.add(m.name)
        if m.kind == SYMLINK:
            target = f"{_parent(original.name)}/{m.link}"
            hop = _through_link(_parent(target), links)
            if hop is not None:
                raise _reject(archive, original.name, f"link target passes through link {hop!r}")
        elif m.kind == HARDLINK:
            hop = _through_link(m.link, links)
            if hop is not None:
                raise _reject(archive, original.name, f"hard link target passes through link {hop!r}")
    return members


def _target(archive: Path, dest: Path, name: str) -> Path:
    """Filesystem path for ``name``, re-checked against what is already on disk."""
    if name == ".":
        return dest
    path = dest / name
    parent = path.parent.resolve()
    if parent != dest and dest not in parent.parents:
        raise _reject(archive, name, "path resolves outside the destination")
    if path.is_symlink():
        raise _reject(archive, name, "replaces a link")
    return path


def _zip_is_symlink(info: zipfile.ZipInfo) -> bool:
    return stat.S_ISLNK(info.external_attr >> 16)


def extract_zip(archive: Path, dest: Path) -> None:
    dest = Path(dest).resolve()
    try:
        with zipfile.ZipFile(archive) as zf:
            infos = zf.infolist()
            raw = []
            for info in infos:
                if info.is_dir():
                    raw.append(_Member(info.filename, DIR))
                elif _zip_is_symlink(info):
                    raw.append(_Member(info.filename, SYMLINK, zf.read(info).decode("utf-8")))
                else:
                    raw.append(_Member(info.filename, FILE, mode=(info.external_attr >> 16) & 0o777))
            members = _validate(archive, dest, raw)
            for info, member in zip(infos, members):
                path = _target(archive, dest, member.name)
                if member.kind == DIR:
                    path.mkdir(parents=True, exist_ok=True)
                    continue
                path.parent.mkdir(parents=True, exist_ok=True)
                if member.kind == SYMLINK:
                    os.symlink(member.link, path)
                    continue
                with zf.open(info) as src, open(path, "wb") as out:
                    shutil.copyfileobj(src, out)
                if member.mode & 0o111:
                    path.chmod(member.mode | 0o644)
    except (zipfile.BadZipFile, UnicodeDecodeError) as e:
        raise InstallError(f"Malformed archive {archive.name}: {e}", context={"archive": str(archive)}) from e
    except OSError as e:
        raise InstallError(f"Failed to extract {archive.name}: {e}", context={"archive": str(archive)}) from e


def extract_tar(archive: Path, dest: Path) -> None:
    dest = Path(dest).resolve()
    try:
        with tarfile.open(archive, "r:*") as tf:
            entries = tf.getmembers()
            raw = []
            for entry in entries:
                if entry.issym():
                    raw.append(_Member(entry.name, SYMLINK, entry.linkname))
                elif entry.islnk():
                    raw.append(_Member(entry.name, HARDLINK, entry.linkname))
                elif entry.isdev() or entry.isfifo():
                    raise _reject(archive, entry.name, "special file")
                elif entry.isdir():
                    raw.append(_Member(entry.name, DIR))
                else:
                    raw.append(_Member(entry.name, FILE, mode=entry.mode))
            members = _validate(archive, dest, raw)
            for entry, member in zip(entries, members):
                path = _target(archive, dest, member.name)
                if member.kind == DIR:
                    path.mkdir(parents=True, exist_ok=True)
                    continue
                path.parent.mkdir(parents=True, exist_ok=True)
                if member.kind == SYMLINK:
                    os.symlink(member.link, path)
                elif member.kind == HARDLINK:
                    shutil.copyfile(dest / os.path.normpath(member.link), path)
                else:
                    src = tf.extractfile(entry)
                    if src is None:
                        continue
                    with src, open(path, "wb") as out:
                        shutil.copyfileobj(src, out)
                    if member.mode & 0o111:
                        path.chmod((member.mode & 0o777) | 0o644)
    except tarfile.TarError as e:
        raise InstallError(f"Malformed archive {archive.name}: {e}", context={"archive": str(archive)}) from e
    except OSError as e:
        raise InstallError(f"Failed to extract {archive.name}: {e}", context={"archive": str(archive)}) from e


def extract_archive(archive: Path, dest: Path) -> None:
    """Extract a zip or tar archive (chosen by file name) into ``dest``.

    Raises:
        InstallError: On an unsafe member, a malformed archive or a write failure.
    """
    archive = Path(archive)
    try:
        Path(dest).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise InstallError(f"Cannot create {dest}: {e}", context={"archive": str(archive)}) from e
    if archive.name.endswith((".whl", ".zip")):
        extract_zip(archive, dest)
    elif archive.name.endswith((".tar.gz", ".tgz", ".tar.bz2", ".tar.xz", ".tar")):
        extract_tar(archive, dest)
    else:
        raise InstallError(f"Unsupported archive format: {archive.name}", context={"archive": str(archive)})
