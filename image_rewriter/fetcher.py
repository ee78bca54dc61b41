# image_rewriter/fetcher.py
import logging

import requests

logger = logging.getLogger(__name__)

# Remediation feed and package index locations
REMEDIATION_FEED_URL = "https://libraries.cgr.dev/openvex/v1/all.json"
APKINDEX_URL_TEMPLATE = "https://packages.wolfi.dev/os/{arch}/APKINDEX.tar.gz"

DEFAULT_TIMEOUT_SECONDS = 10
USER_AGENT = "image-rewriter/0.1"


class FetchError(Exception):
    """Raised when a feed cannot be downloaded or decoded."""


def fetch_bytes(url: str, timeout: int = DEFAULT_TIMEOUT_SECONDS) -> bytes:
    """GETs a URL and returns the body. Any transport or HTTP error becomes FetchError."""
    logger.debug(f"Fetching {url}")
    try:
        response = requests.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
    except requests.exceptions.Timeout as e:
        raise FetchError(f"Request timed out while fetching {url}") from e
    except requests.exceptions.RequestException as e:
        raise FetchError(f"Error fetching {url}: {e}") from e
    return response.content


def fetch_json(url: str, timeout: int = DEFAULT_TIMEOUT_SECONDS):
    logger.debug(f"Fetching JSON from {url}")
    try:
        response = requests.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
        return response.json()
    except requests.exceptions.Timeout as e:
        raise FetchError(f"Request timed out while fetching {url}") from e
    except requests.exceptions.RequestException as e:
        raise FetchError(f"Error fetching {url}: {e}") from e
    except ValueError as e:
        # requests raises a ValueError subclass for undecodable bodies
        raise FetchError(f"Error decoding JSON from {url}: {e}") from e
