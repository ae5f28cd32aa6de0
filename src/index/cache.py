"""On-disk metadata cache keyed by normalized package name."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """One package's cached index document plus per-version requirement lists."""

    name: str
    project: Dict[str, Any]
    fetched_at: float = field(default_factory=time.time)
    requires: Dict[str, List[str]] = field(default_factory=dict)

    def is_expired(self, ttl: int) -> bool:
        """Check if this entry is older than ``ttl`` seconds."""
        return time.time() - self.fetched_at > ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "fetched_at": self.fetched_at,
            "project": self.project,
            "requires": self.requires,
        }


class MetadataCache:
    """JSON files under ``<root>/metadata/<name>.json``.

    Entries are replaced wholesale on refresh; per-version requirement lists
    are added to an existing entry because a published version's metadata
    never changes.
    """

    def __init__(self, root: str | Path, ttl: int):
        """Initialize the cache.

        Args:
            root: Cache root directory.
            ttl: Seconds after which an entry is considered stale.
        """
        self.root = Path(root) / "metadata"
        self.ttl = ttl
        self._lock = threading.Lock()

    def path_for(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def load(self, name: str, *, allow_stale: bool = False) -> Optional[CacheEntry]:
        """Return the cached entry, or None when missing, unreadable or expired."""
        path = self.path_for(name)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            entry = CacheEntry(
                name=data["name"],
                project=data["project"],
                fetched_at=float(data.get("fetched_at", 0)),
                requires=dict(data.get("requires") or {}),
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable metadata cache entry %s: %s", path, e)
            return None
        if not allow_stale and entry.is_expired(self.ttl):
            logger.debug("Metadata cache entry for %s expired", name)
            return None
        return entry

    def store(self, entry: CacheEntry) -> None:
        """Write an entry atomically; failures are logged, never raised."""
        with self._lock:
            self._write(entry)

    def add_requires(self, name: str, version: str, requires: List[str]) -> None:
        """Record one version's requirement strings in the package entry, if present."""
        with self._lock:
            entry = self.load(name, allow_stale=True)
            if entry is None:
                return
            entry.requires[version] = list(requires)
            self._write(entry)

    def _write(self, entry: CacheEntry) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=f".{entry.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(entry.to_dict(), fh, sort_keys=True)
            os.replace(tmp, self.path_for(entry.name))
        except OSError as e:
            logger.warning("Failed to write metadata cache for %s: %s", entry.name, e)
