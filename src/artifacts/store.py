"""Content-addressed artifact store on the local filesystem."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

from constants import Constants
from common.errors import IntegrityError
from common.logging_utils import extra_context
from index.models import ArtifactDescriptor

logger = logging.getLogger(__name__)


def new_hasher(algorithm: str):
    """Return a hashlib object for ``algorithm``.

    Raises:
        IntegrityError: If the algorithm is not available.
    """
    try:
        return hashlib.new(algorithm)
    except ValueError as e:
        raise IntegrityError(
            f"Unsupported digest algorithm: {algorithm}", context={"algorithm": algorithm}
        ) from e


def hash_file(path: Path, algorithm: str = "sha256") -> str:
    hasher = new_hasher(algorithm)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(Constants.DOWNLOAD_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class ArtifactStore:
    """Verified artifacts laid out as ``<root>/artifacts/<hh>/<hex>/<filename>``.

    Entries are written once with ``os.replace`` and never modified. All
    operations on one digest are serialized by a per-digest lock.
    """

    def __init__(self, root: Optional[str | Path] = None):
        self.root = Path(root or Constants.CACHE_DIR) / "artifacts"
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def path_for(self, descriptor: ArtifactDescriptor) -> Path:
        hexdigest = descriptor.hexdigest
        return self.root / hexdigest[:2] / hexdigest / descriptor.filename

    def lock_for(self, digest: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(digest)
            if lock is None:
                lock = threading.RLock()
                self._locks[digest] = lock
            return lock

    def temp_file(self, descriptor: ArtifactDescriptor) -> Tuple[int, Path]:
        """Open a temporary file on the store's filesystem for an in-flight download."""
        tmp_dir = self.root / ".tmp"
        tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(dir=tmp_dir, prefix=f"{descriptor.hexdigest[:12]}.", suffix=".part")
        return fd, Path(name)

    def lookup(self, descriptor: ArtifactDescriptor) -> Optional[Path]:
        """Return the stored path for ``descriptor`` if present and intact.

        A stored file whose content no longer matches its digest is evicted.
        """
        path = self.path_for(descriptor)
        with self.lock_for(descriptor.digest):
            if not path.is_file():
                return None
            actual = hash_file(path, descriptor.algorithm)
            if actual == descriptor.hexdigest:
                return path
            logger.warning(
                "Evicting corrupt cached artifact %s",
                descriptor.filename,
                extra=extra_context(
                    event="cache_evict",
                    component="artifact_store",
                    expected=descriptor.hexdigest,
                    actual=actual,
                ),
            )
            path.unlink()
            return None

    def insert(self, descriptor: ArtifactDescriptor, source: Path) -> Path:
        """Move a verified file into the store; idempotent per digest."""
        dest = self.path_for(descriptor)
        with self.lock_for(descriptor.digest):
            if dest.is_file() and hash_file(dest, descriptor.algorithm) == descriptor.hexdigest:
                source.unlink(missing_ok=True)
                return dest
            dest.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, dest)
        logger.debug("Stored %s at %s", descriptor.filename, dest)
        return dest
