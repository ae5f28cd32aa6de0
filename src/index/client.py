"""Index metadata client: fetch release metadata with a name-keyed on-disk cache."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiohttp

from constants import Constants
from common.errors import MetadataError, NetworkError, PackageNotFoundError
from common.http_client import get_json
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from versioning.parser import normalize_name
from versioning.version import Version
from .base import MetadataSource
from .cache import CacheEntry, MetadataCache
from .models import ReleaseMetadata, from_index_json
from .tags import TargetEnvironment

logger = logging.getLogger(__name__)

HEADERS_JSON = {"Accept": "application/json"}


def _trim_project(data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the parts of a project document the resolver uses."""
    keep = ("filename", "url", "digests", "size", "requires_python", "yanked", "packagetype")
    releases = {}
    for version, files in (data.get("releases") or {}).items():
        if not isinstance(files, list):
            continue
        releases[version] = [
            {k: f.get(k) for k in keep if k in f} for f in files if isinstance(f, dict)
        ]
    info = data.get("info") or {}
    return {"info": {"name": info.get("name")}, "releases": releases}


class MetadataClient(MetadataSource):
    """Fetches ReleaseMetadata from a JSON index (``<index>/<name>/json``).

    Lookup order is the in-process map, then the on-disk cache, then the
    index. Once loaded, a package's metadata does not change for the
    lifetime of the client.
    """

    def __init__(
        self,
        environment: Optional[TargetEnvironment] = None,
        index_url: Optional[str] = None,
        cache_dir: Optional[str] = None,
        ttl: Optional[int] = None,
    ):
        self.environment = environment or TargetEnvironment()
        self.index_url = (index_url or Constants.INDEX_URL).rstrip("/") + "/"
        self._cache = MetadataCache(
            cache_dir or Constants.CACHE_DIR,
            Constants.METADATA_CACHE_TTL_SEC if ttl is None else ttl,
        )
        self._loaded: Dict[str, ReleaseMetadata] = {}
        self._requires: Dict[Tuple[str, str], List[str]] = {}
        self._lock = threading.Lock()

    def project_url(self, name: str) -> str:
        return f"{self.index_url}{name}/json"

    def release_url(self, name: str, version: Version) -> str:
        return f"{self.index_url}{name}/{version}/json"

    def _remember(self, name: str, entry: CacheEntry) -> ReleaseMetadata:
        metadata = from_index_json(name, entry.project)
        with self._lock:
            self._loaded[name] = metadata
            for version, requires in entry.requires.items():
                self._requires.setdefault((name, version), list(requires))
        return metadata

    def fetch(self, name: str) -> ReleaseMetadata:
        """Return release metadata for ``name``.

        Raises:
            PackageNotFoundError: On HTTP 404.
            NetworkError: When the index is unreachable and nothing is cached.
            MetadataError: On an undecodable response.
        """
        name = normalize_name(name)
        with self._lock:
            loaded = self._loaded.get(name)
        if loaded is not None:
            return loaded

        entry = self._cache.load(name)
        if entry is not None:
            logger.debug(
                "Metadata cache hit",
                extra=extra_context(event="cache_hit", component="metadata_client", target=name),
            )
            return self._remember(name, entry)

        url = self.project_url(name)
        try:
            with Timer() as timer:
                status_code, _, data = get_json(url, headers=HEADERS_JSON)
        except NetworkError:
            stale = self._cache.load(name, allow_stale=True)
            if stale is None:
                raise
            logger.warning("Index unreachable; using stale cached metadata for %s", name)
            return self._remember(name, stale)

        if status_code == 404:
            raise PackageNotFoundError(f"Package not found on index: {name}", context={"url": safe_url(url)})
        if status_code != 200:
            raise MetadataError(
                f"Unexpected HTTP status {status_code} for {name}",
                context={"url": safe_url(url), "status_code": status_code},
            )
        if not isinstance(data, dict):
            raise MetadataError(f"Malformed index response for {name}", context={"url": safe_url(url)})

        if is_debug_enabled(logger):
            logger.debug(
                "Fetched package metadata",
                extra=extra_context(
                    event="metadata_fetch",
                    component="metadata_client",
                    outcome="success",
                    duration_ms=timer.duration_ms(),
                    target=name,
                ),
            )
        return self._accept(name, data)

    def _accept(self, name: str, data: Dict[str, Any]) -> ReleaseMetadata:
        previous = self._cache.load(name, allow_stale=True)
        entry = CacheEntry(
            name=name,
            project=_trim_project(data),
            requires=previous.requires if previous is not None else {},
        )
        metadata = self._remember(name, entry)
        self._cache.store(entry)
        return metadata

    def requires_dist(self, name: str, version: Version) -> List[str]:
        """Requirement strings of one version, loaded once from ``<index>/<name>/<version>/json``.

        Raises:
            PackageNotFoundError: The index has no such version.
            NetworkError, MetadataError: As for ``fetch``.
        """
        name = normalize_name(name)
        key = (name, str(version))
        with self._lock:
            cached = self._requires.get(key)
        if cached is not None:
            return list(cached)

        url = self.release_url(name, version)
        status_code, _, data = get_json(url, headers=HEADERS_JSON)
        if status_code == 404:
            raise PackageNotFoundError(
                f"Release not found on index: {name} {version}", context={"url": safe_url(url)}
            )
        if status_code != 200 or not isinstance(data, dict):
            raise MetadataError(
                f"Malformed release metadata for {name} {version}",
                context={"url": safe_url(url), "status_code": status_code},
            )
        requires = (data.get("info") or {}).get("requires_dist") or []
        if not isinstance(requires, list):
            raise MetadataError(f"Malformed requires_dist for {name} {version}", context={"url": safe_url(url)})
        requires = [str(r) for r in requires]
        with self._lock:
            self._requires[key] = requires
        self._cache.add_requires(name, str(version), requires)
        return list(requires)

    def prefetch(self, names: Iterable[str]) -> None:
        """Concurrently load metadata for independent packages before resolution.

        Successful responses are merged into the in-process map; failures are
        logged and left for ``fetch`` to report when the resolver asks.
        """
        pending = []
        for raw in names:
            name = normalize_name(raw)
            if name in pending or name in self._loaded:
                continue
            if self._cache.load(name) is not None:
                continue
            pending.append(name)
        if len(pending) < 2:
            return
        logger.debug("Prefetching metadata for %d packages", len(pending))
        results = asyncio.run(self._prefetch_async(pending))
        for name, data in results:
            if data is None:
                continue
            try:
                self._accept(name, data)
            except MetadataError as e:
                logger.debug("Prefetch of %s returned unusable metadata: %s", name, e.message)

    async def _prefetch_async(self, names: List[str]) -> List[Tuple[str, Optional[Dict[str, Any]]]]:
        timeout = aiohttp.ClientTimeout(total=Constants.REQUEST_TIMEOUT)
        semaphore = asyncio.Semaphore(max(1, Constants.MAX_WORKERS))
        headers = {"User-Agent": Constants.USER_AGENT, **HEADERS_JSON}
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            return await asyncio.gather(
                *(self._fetch_async(session, semaphore, name) for name in names)
            )

    async def _fetch_async(
        self,
        session: aiohttp.ClientSession,
        semaphore: asyncio.Semaphore,
        name: str,
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        url = self.project_url(name)
        async with semaphore:
            try:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.debug("Prefetch of %s returned HTTP %s", name, response.status)
                        return name, None
                    data = await response.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.debug("Prefetch of %s failed: %s", name, e)
                return name, None
        return name, data if isinstance(data, dict) else None
