# image_rewriter/chainctl.py
import json
import logging
from datetime import timedelta
from typing import Callable, Optional

from .cache import TTLCache, utcnow
from .runner import COMMAND_ERRORS, Runner, run_command

logger = logging.getLogger(__name__)

AUTH_TTL = timedelta(minutes=5)
VERSION_TIMEOUT_SECONDS = 5
STATUS_TIMEOUT_SECONDS = 5
ENTITLEMENTS_TIMEOUT_SECONDS = 10

# Entitlement ecosystem codes reported by chainctl
ECOSYSTEM_CODES = {
    1: "PYTHON",
    2: "JAVASCRIPT",
    3: "JAVA",
}


class ChainctlClient:
    """Auth state and library entitlements, read through the chainctl CLI."""

    def __init__(self, runner: Runner = run_command, command: str = "chainctl",
                 ttl: timedelta = AUTH_TTL, clock: Callable = utcnow):
        self.runner = runner
        self.command = command
        self._installed: Optional[bool] = None
        self._cache = TTLCache(ttl, clock=clock)

    async def is_installed(self) -> bool:
        if self._installed is None:
            try:
                result = await self.runner([self.command, "version"], VERSION_TIMEOUT_SECONDS)
                self._installed = result.returncode == 0
            except COMMAND_ERRORS as e:
                logger.info(f"{self.command} not available: {e}")
                self._installed = False
        return self._installed

    async def is_authenticated(self) -> bool:
        """True when 'chainctl auth status' reports a valid session."""
        cached = self._cache.get("auth")
        if cached is not None:
            return cached
        try:
            result = await self.runner([self.command, "auth", "status"], STATUS_TIMEOUT_SECONDS)
        except COMMAND_ERRORS as e:
            logger.debug(f"chainctl auth status failed: {e}")
            return False
        output = result.stdout.lower()
        authenticated = result.returncode == 0 and "valid" in output and "true" in output
        self._cache.set("auth", authenticated)
        return authenticated

    async def get_entitlements(self, parent: Optional[str] = None) -> set[str]:
        """Ecosystem names ('PYTHON', 'JAVASCRIPT', 'JAVA') the org is entitled to."""
        key = f"entitlements:{parent or ''}"
        cached = self._cache.get(key)
        if cached is not None:
            return set(cached)

        argv = [self.command, "libraries", "entitlements", "list"]
        if parent:
            argv.append(f"--parent={parent}")
        argv += ["-o", "json"]
        try:
            result = await self.runner(argv, ENTITLEMENTS_TIMEOUT_SECONDS)
            if result.returncode != 0:
                logger.error(f"Failed to get library entitlements: {result.stderr.strip()}")
                return set()
            data = json.loads(result.stdout or "[]")
        except COMMAND_ERRORS + (json.JSONDecodeError,) as e:
            logger.error(f"Failed to get library entitlements: {e}")
            return set()

        items = data if isinstance(data, list) else (data.get("items") or []) if isinstance(data, dict) else []
        ecosystems = set()
        for item in items:
            code = item.get("ecosystem") if isinstance(item, dict) else None
            if isinstance(code, str) and code.upper() in ECOSYSTEM_CODES.values():
                ecosystems.add(code.upper())
            elif code in ECOSYSTEM_CODES:
                ecosystems.add(ECOSYSTEM_CODES[code])

        self._cache.set(key, frozenset(ecosystems))
        logger.info(f"Found library entitlements: {', '.join(sorted(ecosystems)) or 'none'}")
        return ecosystems

    def clear_cache(self) -> None:
        """Forget everything, e.g. after 'chainctl auth login'."""
        self._installed = None
        self._cache.clear()
