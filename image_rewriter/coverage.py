# image_rewriter/coverage.py
"""
Client for the optional crystal-ball coverage service.

The service ranks hardened images by how many of a source image's packages
they provide. Everything here degrades to None when the service is missing.
"""

import asyncio
import logging
import subprocess
import time
from pathlib import Path
from typing import Callable, NamedTuple, Optional

import requests

from .models import CoverageMatch, CoverageResult
from .stages import split_image_reference

logger = logging.getLogger(__name__)

READY_TIMEOUT_SECONDS = 5
READY_POLL_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 10
DEFAULT_ARCH = "amd64"

# Images that are Debian bookworm based unless their tag says otherwise
DEBIAN_DEFAULT_IMAGES = ("python", "node", "ruby", "php", "java", "golang", "rust")
UBUNTU_RELEASES = {"20.04": "focal", "22.04": "jammy", "24.04": "noble"}


class Distribution(NamedTuple):
    name: str
    version: str
    dist: str
    dist_version: str
    arch: str = DEFAULT_ARCH


def infer_distribution(image: str) -> Optional[Distribution]:
    """Guesses the distribution behind an image reference from its name and tag."""
    name, tag, _digest = split_image_reference(image)
    name = name.rsplit("/", 1)[-1]
    tag = tag or ""

    if "alpine" in tag:
        return Distribution(name, tag, "alpine", "3.20")
    if any(codename in tag for codename in ("slim", "bullseye", "bookworm")):
        return Distribution(name, tag, "debian", "bullseye" if "bullseye" in tag else "bookworm")
    if name == "ubuntu" or "ubuntu" in tag:
        release = next((code for number, code in UBUNTU_RELEASES.items() if number in tag), "jammy")
        return Distribution(name, tag or "latest", "ubuntu", release)
    if name in DEBIAN_DEFAULT_IMAGES:
        return Distribution(name, tag or "latest", "debian", "bookworm")
    return None


def build_sbom(name: str, version: str, packages: list[str]) -> dict:
    """Minimal CycloneDX 1.4 document describing a container and its packages."""
    return {
        "bomFormat": "CycloneDX",
        "specVersion": "1.4",
        "metadata": {"component": {"name": name, "version": version, "type": "container"}},
        "components": [{"name": pkg, "purl": f"pkg:generic/{pkg}"} for pkg in packages],
    }


def parse_match_response(data: dict) -> CoverageResult:
    matches = []
    for item in data.get("topImages") or []:
        matches.append(CoverageMatch(
            image_ref=item.get("imageRef", ""),
            coverage=float(item.get("coverage") or 0.0),
            score=float(item.get("probabilityScore") or 0.0),
            satisfied=int(item.get("satisfiedCount") or 0),
            missing=len(item.get("missingPackages") or []),
            extra=int(item.get("extraPackages") or 0),
            total_required=int(item.get("totalRequired") or 0),
        ))
    return CoverageResult(
        total_external_packages=int(data.get("totalExternalPackages") or 0),
        required_apks=list(data.get("requiredAPKs") or []),
        matches=matches,
        unmatched=list(data.get("unmatchedExternalPkgs") or []),
    )


def _put_json(url: str, payload: dict) -> tuple[int, object]:
    response = requests.put(url, json=payload, timeout=REQUEST_TIMEOUT_SECONDS)
    try:
        body = response.json()
    except ValueError:
        body = response.text
    return response.status_code, body


class CoverageMatcher:
    """Starts, stops and queries a local coverage server."""

    def __init__(self, binary: str = "match", db: str = "crystal-ball.db", port: int = 8080,
                 put: Callable[[str, dict], tuple[int, object]] = _put_json):
        self.binary = Path(binary).expanduser()
        self.db = Path(db).expanduser()
        self.port = port
        self.base_url = f"http://localhost:{port}"
        self._put = put
        self._process: Optional[subprocess.Popen] = None
        self.ready = False

    def is_available(self) -> bool:
        if not self.binary.is_file():
            logger.info(f"Coverage server binary not found at {self.binary}")
            return False
        if not self.db.is_file():
            logger.info(f"Coverage database not found at {self.db}")
            return False
        return True

    def _probe(self) -> bool:
        url = f"{self.base_url}/api/v3/match/{DEFAULT_ARCH}/debian/bookworm"
        try:
            status, _body = self._put(url, build_sbom("probe", "latest", []))
        except requests.exceptions.RequestException:
            return False
        # an empty SBOM is rejected with 400, which still means the server is up
        return status == 400 or 200 <= status < 300

    def start(self) -> bool:
        if self._process is not None and self._process.poll() is None:
            return self.ready
        if not self.is_available():
            return False

        logger.info("Starting coverage server...")
        try:
            self._process = subprocess.Popen(
                [str(self.binary), "server", "--addr", f":{self.port}", "--db", str(self.db)],
                cwd=str(self.binary.parent),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"Failed to start coverage server: {e}")
            return False

        deadline = time.monotonic() + READY_TIMEOUT_SECONDS
        while time.monotonic() < deadline:
            if self._process.poll() is not None:
                break
            if self._probe():
                logger.info("Coverage server ready")
                self.ready = True
                return True
            time.sleep(READY_POLL_SECONDS)

        logger.error("Coverage server failed to start")
        self.stop()
        return False

    def stop(self) -> None:
        if self._process is not None:
            logger.info("Stopping coverage server...")
            if self._process.poll() is None:
                self._process.terminate()
                try:
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    self._process.kill()
            self._process = None
        self.ready = False

    async def match_image(self, image: str, packages: Optional[list[str]] = None) -> Optional[CoverageResult]:
        """Ranked hardened alternatives for image, or None if the service cannot answer."""
        if not self.ready:
            logger.debug("Coverage server not ready, skipping match")
            return None
        distribution = infer_distribution(image)
        if distribution is None:
            logger.debug(f"Could not determine distribution for {image}")
            return None

        url = (f"{self.base_url}/api/v3/match/{distribution.arch}/"
               f"{distribution.dist}/{distribution.dist_version}")
        sbom = build_sbom(distribution.name, distribution.version, packages or [])
        try:
            status, body = await asyncio.to_thread(self._put, url, sbom)
        except requests.exceptions.RequestException as e:
            logger.error(f"Coverage match error for {image}: {e}")
            return None
        if not 200 <= status < 300 or not isinstance(body, dict):
            logger.error(f"Coverage match failed for {image}: {status} {body}")
            return None

        try:
            result = parse_match_response(body)
        except (TypeError, ValueError, AttributeError) as e:
            logger.error(f"Unexpected coverage response for {image}: {e}")
            return None
        logger.info(f"Coverage service found {len(result.matches)} matches for {image}")
        return result

    async def best_match(self, image: str) -> Optional[str]:
        result = await self.match_image(image)
        if result is None or result.best is None:
            return None
        return result.best.image_ref

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
