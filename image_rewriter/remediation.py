# image_rewriter/remediation.py
"""
Remediation feed cache.

Indexes the OpenVEX feed of CVE-remediated library builds by 'ecosystem:name'
and answers which remediated versions exist for a declared dependency.
"""

import asyncio
import logging
import re
from collections import defaultdict
from datetime import timedelta
from typing import Callable, Optional

from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from .cache import TTLCache, utcnow
from .fetcher import REMEDIATION_FEED_URL, FetchError, fetch_json
from .models import DependencyReference, RemediationRecord

logger = logging.getLogger(__name__)

FEED_TTL = timedelta(hours=1)
FEED_KEY = "feed"

# Caller ecosystem labels -> purl types used in the feed
ECOSYSTEM_MAP = {
    "python": "pypi",
    "javascript": "npm",
    "java": "maven",
}

PURL_TYPE_RE = re.compile(r'pkg:([^/]+)/')
PURL_NAME_RE = re.compile(r'pkg:[^/]+/([^@?#]+)')
PURL_VERSION_RE = re.compile(r'@([^?#]+)')


def normalize_ecosystem(ecosystem: str) -> str:
    return ECOSYSTEM_MAP.get(ecosystem.lower(), ecosystem.lower())


def _normalize_name(name: str, ecosystem: str) -> str:
    if ecosystem == "pypi":
        return canonicalize_name(name)
    if ecosystem == "maven":
        # gradle coordinates are group:artifact, purls use group/artifact
        return name.replace(":", "/")
    return name


def parse_purl(purl: str) -> tuple[str, str, str]:
    """'pkg:pypi/requests@2.28.1' -> ('pypi', 'requests', '2.28.1')."""
    ecosystem = PURL_TYPE_RE.search(purl)
    name = PURL_NAME_RE.search(purl)
    version = PURL_VERSION_RE.search(purl.split("/", 1)[-1])
    return (
        ecosystem.group(1) if ecosystem else "unknown",
        name.group(1) if name else purl,
        version.group(1) if version else "",
    )


def _statement_identifier(statement: dict) -> Optional[str]:
    products = statement.get("products") or []
    if not products or not isinstance(products[0], dict):
        return None
    identifiers = products[0].get("identifiers") or []
    if isinstance(identifiers, dict):
        # OpenVEX also allows {"purl": "pkg:..."}
        return identifiers.get("purl")
    if not identifiers:
        return None
    first = identifiers[0]
    if isinstance(first, dict):
        return first.get("purl")
    return first if isinstance(first, str) else None


def index_feed(document) -> dict[str, list[RemediationRecord]]:
    """Builds the 'ecosystem:name' -> records map. Malformed documents are skipped."""
    index: dict[str, list[RemediationRecord]] = defaultdict(list)
    if not isinstance(document, dict) or not isinstance(document.get("documents"), list):
        logger.warning("Remediation feed has no 'documents' list")
        return {}

    for doc in document["documents"]:
        if not isinstance(doc, dict) or not isinstance(doc.get("statements"), list):
            continue
        for statement in doc["statements"]:
            if not isinstance(statement, dict):
                continue
            purl = _statement_identifier(statement)
            if not purl:
                continue
            ecosystem, name, version = parse_purl(purl)
            vulnerability = statement.get("vulnerability_id")
            if isinstance(vulnerability, dict):
                vulnerability = vulnerability.get("name")
            record = RemediationRecord(
                package=name,
                ecosystem=ecosystem,
                version=version,
                cves_fixed=(vulnerability,) if vulnerability else (),
                advisory_url=statement.get("action_statement_uri"),
            )
            index[f"{ecosystem}:{_normalize_name(name, ecosystem)}"].append(record)
    return dict(index)


class RemediationCache:
    """
    Lazily fetched, hourly refreshed view of the remediation feed.

    fetch is a blocking callable returning the decoded feed document; it runs
    in a worker thread. A failed refresh keeps whatever was indexed before.
    """

    def __init__(self, fetch: Optional[Callable[[], object]] = None, ttl: timedelta = FEED_TTL,
                 clock: Callable = utcnow, url: str = REMEDIATION_FEED_URL):
        self.url = url
        self._fetch = fetch or (lambda: fetch_json(self.url))
        self._cache = TTLCache(ttl, clock=clock)

    async def refresh(self) -> dict[str, list[RemediationRecord]]:
        cached = self._cache.get(FEED_KEY)
        if cached is not None:
            logger.debug("Using cached remediation feed")
            return cached

        previous = self._cache.get_stale(FEED_KEY, {})
        try:
            document = await asyncio.to_thread(self._fetch)
        except FetchError as e:
            logger.warning(f"Failed to fetch remediation feed: {e}")
            return previous

        index = index_feed(document)
        self._cache.set(FEED_KEY, index)
        logger.info(f"Indexed {len(index)} remediated packages from the remediation feed")
        return index

    async def lookup(self, package: str, ecosystem: str) -> list[RemediationRecord]:
        """All remediation records for a package; empty when nothing is known."""
        index = await self.refresh()
        feed_ecosystem = normalize_ecosystem(ecosystem)
        return list(index.get(f"{feed_ecosystem}:{_normalize_name(package, feed_ecosystem)}", []))

    async def suggest_version(self, reference: DependencyReference, ecosystem: str) -> Optional[str]:
        """
        Highest remediated version of a dependency, as long as it is not older
        than the version currently pinned.
        """
        records = await self.lookup(reference.name, ecosystem)
        return best_remediated_version(records, reference.version)

    @staticmethod
    def count_fixed(records: list[RemediationRecord]) -> int:
        return len({cve for record in records for cve in record.cves_fixed})


def best_remediated_version(records: list[RemediationRecord], current: Optional[str] = None) -> Optional[str]:
    candidates = []
    for record in records:
        try:
            candidates.append((Version(record.version), record.version))
        except InvalidVersion:
            logger.debug(f"Ignoring non-PEP 440 remediated version '{record.version}' for {record.package}")
    if not candidates:
        return None
    best_version, best_text = max(candidates)
    if current:
        try:
            if best_version < Version(current):
                return None
        except InvalidVersion:
            pass
    return best_text
