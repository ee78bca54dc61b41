# image_rewriter/mappings.py
"""
Image and package mapping table.

The builtin table ships as YAML next to this module. A user file with the same
shape can be overlaid on top of it (overlay entries win).
"""

import logging
from pathlib import Path
from typing import Optional, Union

import yaml

logger = logging.getLogger(__name__)

BUILTIN_MAPPINGS_PATH = Path(__file__).parent / "data" / "builtin-mappings.yaml"

# Package-manager families understood by the rewriter
FAMILY_DEBIAN = "debian"
FAMILY_FEDORA = "fedora"

# Registry prefixes that name the same image on Docker Hub
HUB_PREFIXES = ("docker.io/", "index.docker.io/", "registry-1.docker.io/", "library/")

_builtin_table = None  # Module-level cache for the bundled table


def normalize_image_name(name: str) -> str:
    """Strips Docker Hub registry and 'library/' prefixes from an image name."""
    normalized = name
    stripped = True
    while stripped:
        stripped = False
        for prefix in HUB_PREFIXES:
            if normalized.lower().startswith(prefix):
                normalized = normalized[len(prefix):]
                stripped = True
    return normalized


class MappingTable:
    """Read-only lookup of source image/package names to hardened equivalents."""

    def __init__(self, images: Optional[dict] = None, packages: Optional[dict] = None):
        self.images: dict[str, str] = {str(k): str(v) for k, v in (images or {}).items()}
        self.packages: dict[str, dict[str, list[str]]] = {}
        for family, entries in (packages or {}).items():
            self.packages[family] = {
                str(name): _as_candidates(candidates) for name, candidates in (entries or {}).items()
            }

        # Longest prefix first. sort() is stable, so equal-length prefixes keep file order.
        self._wildcards = [
            (pattern[:-1], target) for pattern, target in self.images.items() if pattern.endswith("*")
        ]
        self._wildcards.sort(key=lambda item: len(item[0]), reverse=True)

    @classmethod
    def from_dict(cls, data: dict) -> "MappingTable":
        if not isinstance(data, dict):
            raise ValueError("Mapping document must be a mapping with 'images' and 'packages' keys")
        return cls(images=data.get("images") or {}, packages=data.get("packages") or {})

    def merged(self, overlay: "MappingTable") -> "MappingTable":
        images = {**self.images, **overlay.images}
        packages = {family: dict(entries) for family, entries in self.packages.items()}
        for family, entries in overlay.packages.items():
            packages.setdefault(family, {}).update(entries)
        return MappingTable(images=images, packages=packages)

    def lookup_image(self, name: str, tag: Optional[str] = None) -> str:
        """
        Resolves an image name (and optional tag) to a target image name.

        Order: exact 'name:tag', exact 'name', longest matching 'prefix*'
        pattern, then the name itself (without registry path).
        """
        names = [name]
        normalized = normalize_image_name(name)
        if normalized != name:
            names.append(normalized)

        for candidate in names:
            if tag and f"{candidate}:{tag}" in self.images:
                return self.images[f"{candidate}:{tag}"]
            if candidate in self.images and not candidate.endswith("*"):
                return self.images[candidate]

        for prefix, target in self._wildcards:
            if normalized.startswith(prefix):
                return target

        return normalized.rsplit("/", 1)[-1]

    def lookup_package(self, name: str, family: str) -> str:
        candidates = self.packages.get(family, {}).get(name)
        if candidates:
            return candidates[0]
        return name

    def map_packages(self, names: list[str], family: str) -> list[str]:
        mapped = []
        for name in names:
            target = self.lookup_package(name, family)
            if target not in mapped:
                mapped.append(target)
        return mapped


def _as_candidates(value: Union[str, list, None]) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _read_mapping_file(path: Path) -> MappingTable:
    with open(path, "r", encoding="utf-8") as f:
        return MappingTable.from_dict(yaml.safe_load(f) or {})


def load_mappings(custom_mappings_path: Optional[Union[str, Path]] = None) -> MappingTable:
    """
    Returns the builtin table, overlaid with a custom mappings file when one is given.
    Problems with the custom file are logged and the builtin table is used.
    """
    global _builtin_table
    if _builtin_table is None:
        _builtin_table = _read_mapping_file(BUILTIN_MAPPINGS_PATH)
        logger.debug(f"Loaded {len(_builtin_table.images)} builtin image mappings")

    if not custom_mappings_path:
        return _builtin_table

    path = Path(custom_mappings_path).expanduser()
    if not path.is_file():
        logger.warning(f"Custom mappings file not found: {path}")
        return _builtin_table
    try:
        overlay = _read_mapping_file(path)
    except (OSError, yaml.YAMLError, ValueError) as e:
        logger.warning(f"Could not load custom mappings from {path}: {e}")
        return _builtin_table
    logger.info(f"Merged custom mappings from {path}")
    return _builtin_table.merged(overlay)
