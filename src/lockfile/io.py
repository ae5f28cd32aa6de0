"""Reading and writing ``pkgflow.lock``."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from common.errors import LockfileError
from common.logging_utils import extra_context
from .model import Lockfile

logger = logging.getLogger(__name__)


def read_lockfile(path: str | Path) -> Optional[Lockfile]:
    """Load a lockfile from disk.

    Returns:
        The parsed lockfile, or None when ``path`` does not exist.

    Raises:
        LockfileError: The file exists but is not a valid lockfile.
    """
    p = Path(path)
    try:
        with open(p, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        raise LockfileError(f"Lockfile is not valid JSON: {e}", context={"path": str(p)}) from e
    except OSError as e:
        raise LockfileError(f"Unable to read lockfile: {e}", context={"path": str(p)}) from e
    lockfile = Lockfile.from_dict(data)
    logger.debug(
        "Loaded lockfile with %d packages",
        len(lockfile.packages),
        extra=extra_context(event="lockfile_read", component="lockfile", path=str(p)),
    )
    return lockfile


def write_lockfile(lockfile: Lockfile, path: str | Path) -> None:
    """Persist ``lockfile`` as sorted JSON, replacing any previous file atomically."""
    p = Path(path)
    directory = p.parent if str(p.parent) else Path(".")
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{p.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(lockfile.to_dict(), fh, indent=2, sort_keys=True)
            fh.write("\n")
        os.replace(tmp, p)
    except OSError as e:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise LockfileError(f"Unable to write lockfile: {e}", context={"path": str(p)}) from e
    logger.info(
        "Wrote lockfile with %d packages",
        len(lockfile.packages),
        extra=extra_context(event="lockfile_write", component="lockfile", outcome="success", path=str(p)),
    )
