# image_rewriter/catalog.py
"""
Live package catalog for the target distribution.

Downloads the APKINDEX snapshot so rewritten 'apk add' commands can be checked
against packages that really exist.
"""

import asyncio
import gzip
import io
import logging
import re
import tarfile
import zlib
from datetime import timedelta
from typing import Callable, Optional

from .cache import TTLCache, utcnow
from .fetcher import APKINDEX_URL_TEMPLATE, FetchError, fetch_bytes
from .models import CatalogPackage

logger = logging.getLogger(__name__)

INDEX_TTL = timedelta(hours=1)
INDEX_MEMBER = "APKINDEX"
INDEX_KEY = "index"
MAX_ALTERNATIVES = 5
MAX_SEARCH_RESULTS = 10


def extract_apkindex(archive: bytes) -> str:
    """
    Pulls the APKINDEX member out of an APKINDEX.tar.gz.

    The file is a signature tar.gz concatenated with the index tar.gz, so the
    tar stream is read with ignore_zeros to walk across both segments.
    """
    data = gzip.decompress(archive)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:", ignore_zeros=True) as tar:
        for member in tar:
            if member.isfile() and member.name.lstrip("./") == INDEX_MEMBER:
                extracted = tar.extractfile(member)
                if extracted is not None:
                    return extracted.read().decode("utf-8", errors="replace")
    return ""


def parse_apkindex(content: str) -> dict[str, CatalogPackage]:
    """Parses blank-line separated P:/V:/T: records. Later duplicates win."""
    packages: dict[str, CatalogPackage] = {}
    current: dict[str, str] = {}

    def flush():
        if current.get("P"):
            packages[current["P"]] = CatalogPackage(
                name=current["P"], version=current.get("V", ""), description=current.get("T", "")
            )
        current.clear()

    for line in content.splitlines():
        if not line.strip():
            flush()
            continue
        field, sep, value = line.partition(":")
        if sep and field in ("P", "V", "T"):
            current[field] = value.strip()
    flush()
    return packages


class CatalogVerifier:
    """Checks mapped package names against the live package index."""

    def __init__(self, arch: str = "x86_64", fetch: Optional[Callable[[], bytes]] = None,
                 ttl: timedelta = INDEX_TTL, clock: Callable = utcnow):
        self.url = APKINDEX_URL_TEMPLATE.format(arch=arch)
        self._fetch = fetch or (lambda: fetch_bytes(self.url, timeout=30))
        self._cache = TTLCache(ttl, clock=clock)

    def _load(self) -> dict[str, CatalogPackage]:
        return parse_apkindex(extract_apkindex(self._fetch()))

    async def packages(self) -> dict[str, CatalogPackage]:
        cached = self._cache.get(INDEX_KEY)
        if cached is not None:
            logger.debug("Using cached package index")
            return cached
        try:
            index = await asyncio.to_thread(self._load)
        except (FetchError, OSError, EOFError, tarfile.TarError, zlib.error) as e:
            logger.warning(f"Failed to load package index from {self.url}: {e}")
            return self._cache.get_stale(INDEX_KEY, {})
        self._cache.set(INDEX_KEY, index)
        logger.info(f"Fetched {len(index)} packages from {self.url}")
        return index

    async def package_exists(self, name: str) -> bool:
        index = await self.packages()
        if not index:
            # no index to check against; do not warn about every package
            return True
        return name in index

    async def verify_mapping(self, source: str, target: str) -> tuple[bool, list[CatalogPackage]]:
        """(exists, alternatives) for a mapped package; alternatives only when it is missing."""
        index = await self.packages()
        if not index or target in index:
            return True, []
        alternatives = []
        for package in index.values():
            stripped = re.sub(r"\d+", "", package.name)
            if source in package.name or target in package.name or (stripped and stripped in source):
                alternatives.append(package)
                if len(alternatives) >= MAX_ALTERNATIVES:
                    break
        return False, alternatives

    async def search(self, query: str) -> list[CatalogPackage]:
        index = await self.packages()
        query = query.lower()
        return [p for p in index.values() if query in p.name.lower()][:MAX_SEARCH_RESULTS]
