# image_rewriter/config.py
import logging
from pathlib import Path
from typing import Optional

import yaml
from platformdirs import user_config_path

logger = logging.getLogger(__name__)

# --- App Name and Author for platformdirs ---
APP_NAME = "ImageRewriter"
APP_AUTHOR = "ImageRewriter"

CONFIG_FILENAME = "config.yaml"
USER_MAPPINGS_FILENAME = "mappings.yaml"

DEFAULTS = {
    "org": "chainguard",
    "registry": "cgr.dev",
    "custom_mappings": None,
    "library_org": None,
    "enable_cve_scanning": True,
    "enable_live_package_verification": True,
    "enable_library_detection": True,
    "enable_coverage_matcher": False,
    "catalog_arch": "x86_64",
    "scanner_command": "grype",
    "chainctl_command": "chainctl",
    "coverage_binary": "match",
    "coverage_db": "crystal-ball.db",
    "coverage_port": 8080,
}


class ConfigError(Exception):
    """Raised when a configuration file exists but cannot be used."""


def user_mappings_path() -> Path:
    return user_config_path(appname=APP_NAME, appauthor=APP_AUTHOR) / USER_MAPPINGS_FILENAME


def load_config(config_path: str = CONFIG_FILENAME, strict: bool = False) -> dict:
    """
    Loads settings from a YAML file on top of DEFAULTS.

    A missing file means defaults. An unreadable or malformed file is logged,
    or raises ConfigError when strict (an explicitly requested file).
    """
    config = dict(DEFAULTS)
    path = Path(config_path)
    if not path.is_file():
        if strict:
            raise ConfigError(f"Configuration file '{config_path}' not found")
        logger.debug(f"Configuration file '{config_path}' not found. Using defaults/CLI args.")
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded_yaml = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            if strict:
                raise ConfigError(f"Error parsing YAML configuration file '{path.resolve()}': {e}") from e
            logger.warning(f"Error parsing YAML configuration file '{path.resolve()}': {e}")
            loaded_yaml = None

        if isinstance(loaded_yaml, dict):
            unknown = sorted(set(loaded_yaml) - set(DEFAULTS))
            if unknown:
                logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")
            config.update({k: v for k, v in loaded_yaml.items() if k in DEFAULTS})
            logger.info(f"Loaded configuration from {path.resolve()}")
        elif loaded_yaml is not None:
            logger.warning(f"Config file '{path.resolve()}' does not contain a valid dictionary structure.")

    if not config.get("custom_mappings"):
        fallback = user_mappings_path()
        if fallback.is_file():
            config["custom_mappings"] = str(fallback)
    return config


def apply_overrides(config: dict, **overrides: Optional[object]) -> dict:
    """Returns a copy of config with every non-None override applied (CLI flags)."""
    merged = dict(config)
    merged.update({k: v for k, v in overrides.items() if v is not None})
    return merged
