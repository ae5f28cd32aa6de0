"""Records of packages materialized into a project root."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List

from common.errors import InstallError
from versioning.version import Version, parse_version

RECORD_DIR = Path(".pkgflow") / "installed"


def record_path(root: Path, name: str) -> Path:
    return Path(root) / RECORD_DIR / f"{name}.json"


@dataclass(frozen=True)
class InstalledEntry:
    """Files one package version placed under ``root`` (POSIX paths relative to it)."""
    name: str
    version: Version
    root: Path
    files: FrozenSet[str] = field(default_factory=frozenset)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "version": str(self.version), "files": sorted(self.files)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], root: Path) -> "InstalledEntry":
        return cls(
            name=data["name"],
            version=parse_version(data["version"]),
            root=Path(root),
            files=frozenset(data.get("files") or ()),
        )

    def save(self) -> None:
        path = record_path(self.root, self.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{self.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(self.to_dict(), fh, indent=2, sort_keys=True)
        os.replace(tmp, path)

    @classmethod
    def load(cls, root: Path, name: str) -> "InstalledEntry | None":
        path = record_path(root, name)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise InstallError(f"Unreadable install record for {name}: {e}", context={"path": str(path)}) from e
        try:
            return cls.from_dict(data, root)
        except (KeyError, TypeError, ValueError) as e:
            raise InstallError(f"Malformed install record for {name}: {e}", context={"path": str(path)}) from e

    @classmethod
    def load_all(cls, root: Path) -> List["InstalledEntry"]:
        directory = Path(root) / RECORD_DIR
        if not directory.is_dir():
            return []
        entries = []
        for path in sorted(directory.glob("*.json")):
            entry = cls.load(root, path.stem)
            if entry is not None:
                entries.append(entry)
        return entries
