import json
import sys
import unittest
from pathlib import Path

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from fakes import FakeClock, FakeRunner, apkindex_archive, ok
from image_rewriter.advisor import Advisor, PackageCheck
from image_rewriter.catalog import CatalogVerifier
from image_rewriter.chainctl import ChainctlClient
from image_rewriter.coverage import CoverageMatcher
from image_rewriter.models import Change, DependencyFile, DependencyReference
from image_rewriter.remediation import RemediationCache
from image_rewriter.scan_cache import AUTH_REQUIRED_MESSAGE, ScanResultCache

APKINDEX = "P:curl\nV:8.8.0-r0\n\nP:build-base\nV:1-r8\n\nP:libxml2\nV:2.12.7-r0\n"

FEED = {"documents": [{"statements": [
    {"vulnerability_id": "CVE-2023-32681", "products": [{"identifiers": ["pkg:pypi/requests@2.31.0+cgr.1"]}]},
    {"vulnerability_id": "CVE-2024-35195", "products": [{"identifiers": ["pkg:pypi/requests@2.32.0+cgr.1"]}]},
]}]}


def grype(*severities):
    return ok(json.dumps({"matches": [{"vulnerability": {"severity": s}} for s in severities]}))


FROM_CHANGE = Change(line=0, original="FROM python:3.12", replacement="FROM cgr.dev/chainguard/python:3.12-dev",
                     category="from")


class TestImageAdvice(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.runner = FakeRunner({
            ("grype", "version"): ok("0.74.0"),
            ("grype", "python:3.12"): grype("High", "High", "Medium", "Low"),
            ("grype", "cgr.dev/chainguard/python:3.12-dev"): grype(),
        })
        self.scans = ScanResultCache(runner=self.runner, clock=FakeClock())

    async def test_describe_image_change(self):
        text = await Advisor(scans=self.scans).describe_image_change(FROM_CHANGE)
        lines = text.split("\n")
        self.assertEqual(lines[0], "Hardened equivalent: cgr.dev/chainguard/python:3.12-dev")
        self.assertTrue(lines[1].startswith("Dev variant"))
        self.assertIn("Current image CVEs: 4 CVEs (2 high, 1 medium, 1 low)", lines)
        self.assertIn("Hardened image CVEs: 0 CVEs", lines)
        self.assertEqual(lines[-1], "Reduces 4 CVEs (100% reduction: 4 -> 0)")

    async def test_runtime_variant_without_scans(self):
        change = Change(line=3, original="FROM python:3.12", replacement="FROM cgr.dev/chainguard/python:3.12",
                        category="from")
        text = await Advisor().describe_image_change(change)
        self.assertEqual(text.split("\n")[1], "Runtime variant: no shell or package manager; RUN instructions will not work.")
        self.assertEqual(self.runner.calls, [])

    async def test_coverage_recommendation(self):
        response = {"topImages": [{"imageRef": "cgr.dev/chainguard/python:latest-dev", "coverage": 0.92,
                                   "probabilityScore": 0.88}]}
        coverage = CoverageMatcher(put=lambda url, payload: (200, response))
        coverage.ready = True
        text = await Advisor(coverage=coverage).describe_image_change(FROM_CHANGE)
        self.assertIn("Coverage recommendation: cgr.dev/chainguard/python:latest-dev (92% package coverage, score 0.88)",
                      text)

    async def test_non_image_changes_have_no_advice(self):
        change = Change(line=1, original="RUN apt-get install -y curl", replacement="RUN apk add --no-cache curl",
                        category="run")
        self.assertEqual(await Advisor(scans=self.scans).describe_image_change(change), "")


class TestPackageVerification(unittest.IsolatedAsyncioTestCase):
    async def test_verify_packages(self):
        catalog = CatalogVerifier(fetch=lambda: apkindex_archive(APKINDEX), clock=FakeClock())
        change = Change(line=2, original="RUN apt-get install -y curl libxml2-dev build-essential git",
                        replacement="RUN apk add --no-cache curl libxml2-dev build-base git", category="run")
        checks = await Advisor(catalog=catalog).verify_packages(change)
        self.assertEqual(checks, [
            PackageCheck("curl", True, []),
            PackageCheck("libxml2-dev", False, ["libxml2"]),
            PackageCheck("build-base", True, []),
        ])

    async def test_without_catalog(self):
        change = Change(line=2, original="RUN x", replacement="RUN apk add --no-cache curl", category="run")
        self.assertEqual(await Advisor().verify_packages(change), [])


class TestLibraryAvailability(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.runner = FakeRunner({
            ("chainctl", "version"): ok("v0.2.100"),
            ("chainctl", "auth", "status"): ok("Valid: true"),
            ("chainctl", "libraries", "entitlements", "list"): ok(json.dumps([{"ecosystem": 1}])),
        })
        self.advisor = Advisor(
            chainctl=ChainctlClient(runner=self.runner, clock=FakeClock()),
            remediation=RemediationCache(fetch=lambda: FEED, clock=FakeClock()),
        )
        self.dep_file = DependencyFile(
            line=1, ecosystem="python", relative_path="requirements.txt",
            references=[DependencyReference(name="requests", version="2.28.1", operator="=="),
                        DependencyReference(name="flask")],
        )

    async def test_access_errors(self):
        self.assertEqual(await Advisor().library_access_error("python"), "chainctl not installed")
        self.assertIsNone(await self.advisor.library_access_error("python", org="acme"))
        self.assertEqual(await self.advisor.library_access_error("javascript", org="acme"),
                         "No JAVASCRIPT Libraries entitlement")
        self.assertIsNone(await self.advisor.library_access_error("javascript"))

    async def test_not_authenticated(self):
        self.runner.responses[("chainctl", "auth", "status")] = ok("Valid: false")
        self.assertEqual(await self.advisor.library_access_error("python"), AUTH_REQUIRED_MESSAGE)

    async def test_library_availability(self):
        report = await self.advisor.library_availability(self.dep_file, org="acme")
        requests_item, flask_item = report
        self.assertTrue(requests_item.available)
        self.assertTrue(requests_item.has_remediation)
        self.assertEqual(requests_item.cves_fixed, 2)
        self.assertEqual(requests_item.suggested_version, "2.32.0+cgr.1")
        self.assertFalse(flask_item.has_remediation)
        self.assertIsNone(flask_item.suggested_version)

    async def test_unavailable_libraries_still_report_remediation(self):
        advisor = Advisor(remediation=RemediationCache(fetch=lambda: FEED, clock=FakeClock()))
        report = await advisor.library_availability(self.dep_file)
        self.assertFalse(report[0].available)
        self.assertEqual(report[0].error, "chainctl not installed")
        self.assertEqual(report[0].cves_fixed, 2)


if __name__ == '__main__':
    unittest.main()
