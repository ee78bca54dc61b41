# image_rewriter/advisor.py
"""
Advisory lookups around a conversion.

The Advisor is the one long-lived object that owns the external-data caches.
It only reads conversion results; it never changes the rewritten Dockerfile.
"""

import logging
import re
from typing import NamedTuple, Optional

from .catalog import CatalogVerifier
from .chainctl import ChainctlClient
from .coverage import CoverageMatcher
from .models import CATEGORY_FROM, Change, DependencyFile, LibraryAvailability
from .remediation import RemediationCache, best_remediated_version
from .scan_cache import AUTH_REQUIRED_MESSAGE, ScanResultCache, compare_scan_results, format_scan_result
from .stages import parse_from

logger = logging.getLogger(__name__)

APK_ADD_RE = re.compile(r'apk add --no-cache\s+([^&\\]+)')


class PackageCheck(NamedTuple):
    name: str
    exists: bool
    alternatives: list[str]


class Advisor:
    """Annotates changes with CVE, catalog, coverage and library information."""

    def __init__(self, scans: Optional[ScanResultCache] = None, catalog: Optional[CatalogVerifier] = None,
                 remediation: Optional[RemediationCache] = None, chainctl: Optional[ChainctlClient] = None,
                 coverage: Optional[CoverageMatcher] = None):
        self.scans = scans
        self.catalog = catalog
        self.remediation = remediation
        self.chainctl = chainctl
        self.coverage = coverage

    async def describe_image_change(self, change: Change) -> str:
        if change.category != CATEGORY_FROM:
            return ""
        source = parse_from(change.original)
        target = parse_from(change.replacement)
        if source is None or target is None:
            return ""

        lines = [f"Hardened equivalent: {target.reference}"]
        if target.tag and target.tag.endswith("-dev"):
            lines.append("Dev variant: includes a shell and apk. Use it as a build stage and "
                         "copy the results into the non-dev tag for runtime.")
        else:
            lines.append("Runtime variant: no shell or package manager; RUN instructions will not work.")

        if self.coverage is not None:
            result = await self.coverage.match_image(source.reference)
            if result is not None and result.best is not None:
                best = result.best
                lines.append(f"Coverage recommendation: {best.image_ref} "
                             f"({best.coverage:.0%} package coverage, score {best.score:g})")

        if self.scans is not None:
            results = await self.scans.scan_images([source.reference, target.reference])
            before, after = results[source.reference], results[target.reference]
            lines.append(f"Current image CVEs: {format_scan_result(before)}")
            lines.append(f"Hardened image CVEs: {format_scan_result(after)}")
            lines.append(compare_scan_results(before, after))
        return "\n".join(lines)

    async def verify_packages(self, change: Change, limit: int = 3) -> list[PackageCheck]:
        """Checks the first packages of rewritten 'apk add' commands against the live index."""
        if self.catalog is None:
            return []
        packages = []
        for match in APK_ADD_RE.finditer(change.replacement):
            packages.extend(match.group(1).split())
        checks = []
        for name in packages[:limit]:
            exists, alternatives = await self.catalog.verify_mapping(name, name)
            checks.append(PackageCheck(name, exists, [alt.name for alt in alternatives]))
        return checks

    async def library_access_error(self, ecosystem: str, org: Optional[str] = None) -> Optional[str]:
        """Why libraries for ecosystem cannot be pulled, or None when they can."""
        if self.chainctl is None or not await self.chainctl.is_installed():
            return "chainctl not installed"
        if not await self.chainctl.is_authenticated():
            return AUTH_REQUIRED_MESSAGE
        if org:
            entitlements = await self.chainctl.get_entitlements(org)
            if ecosystem.upper() not in entitlements:
                return f"No {ecosystem.upper()} Libraries entitlement"
        return None

    async def library_availability(self, dependency_file: DependencyFile,
                                   org: Optional[str] = None) -> list[LibraryAvailability]:
        error = await self.library_access_error(dependency_file.ecosystem, org)
        report = []
        for reference in dependency_file.references:
            records = []
            if self.remediation is not None:
                records = await self.remediation.lookup(reference.name, dependency_file.ecosystem)
            report.append(LibraryAvailability(
                package=reference.name,
                ecosystem=dependency_file.ecosystem,
                available=error is None,
                has_remediation=bool(records),
                cves_fixed=RemediationCache.count_fixed(records),
                suggested_version=best_remediated_version(records, reference.version),
                error=error,
            ))
        return report
