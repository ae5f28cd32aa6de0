"""Download and verify distribution artifacts."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Optional

import requests

from constants import Constants
from common.errors import DownloadError, IntegrityError, NetworkError
from common.http_client import backoff_delay, open_stream
from common.logging_utils import Timer, extra_context, safe_url
from index.models import ArtifactDescriptor
from .store import ArtifactStore, new_hasher

logger = logging.getLogger(__name__)


class ArtifactFetcher:
    """Fetch artifacts into a content-addressed store, enforcing their digests.

    Transport failures are retried with exponential backoff up to
    ``retries`` attempts. A digest mismatch is never retried.
    """

    def __init__(self, store: Optional[ArtifactStore] = None, retries: Optional[int] = None):
        self.store = store or ArtifactStore()
        self.retries = retries if retries is not None else Constants.HTTP_RETRY_MAX

    def fetch(self, descriptor: ArtifactDescriptor) -> Path:
        """Return a local path whose content matches ``descriptor.digest``.

        Raises:
            DownloadError: The artifact could not be downloaded or stored.
            IntegrityError: The downloaded bytes do not match the digest.
        """
        try:
            return self._fetch(descriptor)
        except OSError as e:
            raise DownloadError(
                f"Cannot store {descriptor.filename}: {e}",
                context={"url": safe_url(descriptor.url), "store": str(self.store.root)},
            ) from e

    def _fetch(self, descriptor: ArtifactDescriptor) -> Path:
        with self.store.lock_for(descriptor.digest):
            cached = self.store.lookup(descriptor)
            if cached is not None:
                logger.debug("Artifact cache hit for %s", descriptor.filename)
                return cached

            last_error: Optional[NetworkError] = None
            for attempt in range(1, self.retries + 1):
                if attempt > 1:
                    time.sleep(backoff_delay(attempt - 1))
                try:
                    with Timer() as timer:
                        tmp = self._download(descriptor)
                except DownloadError:
                    raise
                except NetworkError as e:
                    last_error = e
                    logger.warning(
                        "Download of %s failed (attempt %d/%d): %s",
                        descriptor.filename,
                        attempt,
                        self.retries,
                        e.message,
                        extra=extra_context(
                            event="download_retry",
                            component="fetcher",
                            attempt=attempt,
                            target=safe_url(descriptor.url),
                        ),
                    )
                    continue
                logger.info(
                    "Downloaded %s",
                    descriptor.filename,
                    extra=extra_context(
                        event="download",
                        component="fetcher",
                        outcome="success",
                        duration_ms=timer.duration_ms(),
                        target=safe_url(descriptor.url),
                    ),
                )
                return self.store.insert(descriptor, tmp)

        raise DownloadError(
            f"Failed to download {descriptor.filename} after {self.retries} attempts",
            context={
                "url": safe_url(descriptor.url),
                "error": last_error.message if last_error else None,
            },
        )

    def _download(self, descriptor: ArtifactDescriptor) -> Path:
        """Stream one attempt into a temporary file, hashing as it goes."""
        hasher = new_hasher(descriptor.algorithm)
        fd, tmp = self.store.temp_file(descriptor)
        size = 0
        try:
            with os.fdopen(fd, "wb") as out:
                response = open_stream(descriptor.url)
                try:
                    for chunk in response.iter_content(chunk_size=Constants.DOWNLOAD_CHUNK_SIZE):
                        if not chunk:
                            continue
                        hasher.update(chunk)
                        out.write(chunk)
                        size += len(chunk)
                except requests.RequestException as e:
                    raise NetworkError(
                        "Connection interrupted during download",
                        context={"url": safe_url(descriptor.url), "error": str(e)},
                    ) from e
                finally:
                    response.close()
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        actual = hasher.hexdigest()
        if actual != descriptor.hexdigest or (descriptor.size is not None and size != descriptor.size):
            tmp.unlink(missing_ok=True)
            raise IntegrityError(
                f"Digest mismatch for {descriptor.filename}",
                context={
                    "expected": descriptor.digest,
                    "actual": f"{descriptor.algorithm}:{actual}",
                    "size": size,
                },
            )
        return tmp
