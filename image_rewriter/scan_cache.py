# image_rewriter/scan_cache.py
"""
Vulnerability scan cache.

Wraps the grype CLI: one scan per image reference, shared by everyone who asks
while it runs, kept for 24 hours once complete.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from .cache import utcnow
from .models import (
    ERROR_AUTH_REQUIRED,
    ERROR_SCAN_FAILED,
    SEVERITY_TIERS,
    STATUS_COMPLETE,
    STATUS_PENDING,
    STATUS_UNAVAILABLE,
    ScanResult,
)
from .runner import COMMAND_ERRORS, CommandNotFound, CommandTimeout, OutputTooLarge, Runner, run_command

logger = logging.getLogger(__name__)

SCAN_TTL = timedelta(hours=24)
# Kept short so scans fail fast instead of hanging on an interactive login
SCAN_TIMEOUT_SECONDS = 60
PROBE_TIMEOUT_SECONDS = 10
BATCH_SIZE = 3

AUTH_ERROR_MARKERS = ("authenticat", "unauthorized", "denied")
AUTH_REQUIRED_MESSAGE = "Authentication required. Run: chainctl auth login"


def classify_error(message: str) -> tuple[str, str]:
    """Returns (error_kind, display message) for scanner failure output."""
    lowered = message.lower()
    if any(marker in lowered for marker in AUTH_ERROR_MARKERS):
        return ERROR_AUTH_REQUIRED, AUTH_REQUIRED_MESSAGE
    return ERROR_SCAN_FAILED, message.strip() or "scan failed"


def count_severities(document: dict) -> dict[str, int]:
    """Counts matches per tier. Severities outside the known tiers count as negligible."""
    counts = dict.fromkeys(SEVERITY_TIERS, 0)
    for match in document.get("matches") or []:
        vulnerability = match.get("vulnerability") if isinstance(match, dict) else None
        severity = str((vulnerability or {}).get("severity") or "").lower()
        counts[severity if severity in counts else "negligible"] += 1
    return counts


class ScanResultCache:
    """Per-image scan state: absent -> pending -> complete, or unavailable for good."""

    def __init__(self, runner: Runner = run_command, scanner: str = "grype", ttl: timedelta = SCAN_TTL,
                 clock: Callable[[], datetime] = utcnow, timeout: float = SCAN_TIMEOUT_SECONDS,
                 batch_size: int = BATCH_SIZE):
        self.runner = runner
        self.scanner = scanner
        self.ttl = ttl
        self.clock = clock
        self.timeout = timeout
        self.batch_size = batch_size
        self._results: dict[str, ScanResult] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._installed: Optional[bool] = None

    async def is_scanner_installed(self) -> bool:
        """Probes '<scanner> version' once per cache lifetime."""
        if self._installed is None:
            try:
                result = await self.runner([self.scanner, "version"], PROBE_TIMEOUT_SECONDS)
                self._installed = result.returncode == 0
            except COMMAND_ERRORS as e:
                logger.info(f"{self.scanner} is not available: {e}")
                self._installed = False
        return self._installed

    def get_cached(self, image: str) -> Optional[ScanResult]:
        """The current record for an image (possibly pending) without starting a scan."""
        return self._results.get(image)

    def _is_fresh(self, result: ScanResult) -> bool:
        if result.status == STATUS_UNAVAILABLE:
            return True
        return result.status == STATUS_COMPLETE and self.clock() - result.timestamp < self.ttl

    def start_scan(self, image: str) -> ScanResult:
        """
        Makes sure a scan for image is running or fresh and returns the current
        record immediately. Must be called from a running event loop.
        """
        cached = self._results.get(image)
        if cached is not None and self._is_fresh(cached):
            return cached
        if image not in self._inflight:
            self._results[image] = ScanResult(image=image, status=STATUS_PENDING, timestamp=self.clock())
            task = asyncio.ensure_future(self._run_scan(image))
            self._inflight[image] = task
            task.add_done_callback(lambda _task: self._scan_finished(image))
        return self._results[image]

    def _scan_finished(self, image: str) -> None:
        self._inflight.pop(image, None)
        record = self._results.get(image)
        if record is not None and record.status == STATUS_PENDING:
            # the scan task died without storing a result
            del self._results[image]

    async def scan(self, image: str) -> ScanResult:
        """Scans an image, reusing a fresh result or a scan already in progress."""
        record = self.start_scan(image)
        task = self._inflight.get(image)
        if task is None:
            return record
        return await asyncio.shield(task)

    async def scan_images(self, images: Iterable[str]) -> dict[str, ScanResult]:
        """Scans images in groups of at most batch_size concurrent scanner processes."""
        unique = list(dict.fromkeys(images))
        results: dict[str, ScanResult] = {}
        for start in range(0, len(unique), self.batch_size):
            batch = unique[start:start + self.batch_size]
            for result in await asyncio.gather(*(self.scan(image) for image in batch)):
                results[result.image] = result
        return results

    def clear(self) -> None:
        self._results.clear()

    async def _run_scan(self, image: str) -> ScanResult:
        if not await self.is_scanner_installed():
            result = ScanResult(image=image, status=STATUS_UNAVAILABLE,
                                error=f"{self.scanner} not installed", timestamp=self.clock())
            self._results[image] = result
            return result

        logger.info(f"Starting {self.scanner} scan for {image}")
        try:
            output = await self.runner([self.scanner, image, "-o", "json", "--quiet"], self.timeout)
            if output.returncode != 0:
                result = self._failure(image, output.stderr or output.stdout or f"exit code {output.returncode}")
            else:
                result = ScanResult(image=image, status=STATUS_COMPLETE, timestamp=self.clock(),
                                    **count_severities(json.loads(output.stdout or "{}")))
                logger.info(f"Scan complete for {image}: {result.total} vulnerabilities")
        except CommandNotFound:
            self._installed = False
            result = ScanResult(image=image, status=STATUS_UNAVAILABLE,
                                error=f"{self.scanner} not installed", timestamp=self.clock())
        except (CommandTimeout, OutputTooLarge) as e:
            result = self._failure(image, str(e))
        except COMMAND_ERRORS as e:
            # the scanner could not be started; its message is not scanner output
            logger.error(f"Could not run {self.scanner} for {image}: {e}")
            result = ScanResult(image=image, status=STATUS_COMPLETE, error=str(e), error_kind=ERROR_SCAN_FAILED,
                                timestamp=self.clock())
        except (json.JSONDecodeError, AttributeError) as e:
            result = self._failure(image, f"could not read scanner output: {e}")

        self._results[image] = result
        return result

    def _failure(self, image: str, message: str) -> ScanResult:
        kind, text = classify_error(message)
        if kind == ERROR_AUTH_REQUIRED:
            logger.error(f"Authentication required to scan {image}. Run 'chainctl auth login' or 'docker login'")
        else:
            logger.error(f"{self.scanner} scan failed for {image}: {text}")
        return ScanResult(image=image, status=STATUS_COMPLETE, error=text, error_kind=kind, timestamp=self.clock())


def format_scan_result(result: ScanResult) -> str:
    if result.status == STATUS_PENDING:
        return "Scanning..."
    if result.status == STATUS_UNAVAILABLE:
        return f"Unable to scan ({result.error or 'scanner unavailable'})"
    if result.error_kind == ERROR_AUTH_REQUIRED:
        return "Auth required (run `chainctl auth login`)"
    if result.error:
        return f"Scan failed: {result.error}"
    if result.total == 0:
        return "0 CVEs"
    parts = [f"{getattr(result, tier)} {tier}" for tier in SEVERITY_TIERS if getattr(result, tier)]
    return f"{result.total} CVEs ({', '.join(parts)})"


def compare_scan_results(before: ScanResult, after: ScanResult) -> str:
    if STATUS_PENDING in (before.status, after.status):
        return "Scanning images..."
    if not before.succeeded or not after.succeeded:
        return "Unable to compare"
    reduction = before.total - after.total
    if reduction > 0:
        percentage = round(reduction / before.total * 100)
        return f"Reduces {reduction} CVEs ({percentage}% reduction: {before.total} -> {after.total})"
    if reduction == 0:
        return f"Both images: {before.total} CVEs"
    return f"Warning: target has {-reduction} more CVEs"
