# image_rewriter/converter.py
"""
Dockerfile rewriter.

Moves FROM lines onto hardened images (cgr.dev/<org>/<image>:<tag>) and turns
apt/dnf/yum install commands into apk installs. Anything that cannot be parsed
with confidence is left exactly as it was.
"""

import logging
import re
from typing import Optional

from . import stages as stage_model
from .mappings import FAMILY_DEBIAN, FAMILY_FEDORA, MappingTable, load_mappings
from .models import (
    CATEGORY_FROM,
    CATEGORY_RUN,
    CATEGORY_USER,
    CATEGORY_USER_INJECTED,
    Change,
    ConversionResult,
    DependencyFile,
    Stage,
)
from .stages import LineKind

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "cgr.dev"
DEFAULT_ORG = "chainguard"
MINIMAL_BASE_IMAGE = "chainguard-base"
DEV_SUFFIX = "-dev"
TARGET_INSTALL = "apk add --no-cache"
ROOT_USERS = ("root", "0")

VERSION_TAG_RE = re.compile(r'^(\d+(?:\.\d+)*)(?:-(.+))?$')

APT_INSTALL_RE = re.compile(
    r'^(?:DEBIAN_FRONTEND=\S+\s+)?(?:apt-get|apt)(?:\s+-\S+)*\s+install(?P<args>(?:\s+\S+)+)$'
)
DNF_INSTALL_RE = re.compile(r'^(?:dnf|yum|microdnf)(?:\s+-\S+)*\s+install(?P<args>(?:\s+\S+)+)$')
MAINTENANCE_RE = re.compile(
    r'^(?:DEBIAN_FRONTEND=\S+\s+)?(?:apt-get|apt|dnf|yum|microdnf)(?:\s+-\S+)*\s+'
    r'(?:update|upgrade|dist-upgrade|clean|autoclean|autoremove|makecache)(?:\s+(?:all|-\S+))*$'
    r'|^rm\s+-(?:rf|fr)(?:\s+(?:/var/lib/apt/lists|/var/cache/(?:apt|yum|dnf))(?:/\S*)?)+$'
)
USERADD_SYSTEM_RE = re.compile(r'\buseradd\s+-r\s+')
USERADD_RE = re.compile(r'\buseradd\s+')
GROUPADD_RE = re.compile(r'\bgroupadd\s+')

# Segments containing any of these are never rewritten
UNSAFE_SHELL_CHARS = set(";|<>`$'\"(){}*")
# Install flags that consume the next argument
VALUE_FLAGS = {"-o", "--option", "-t", "--target-release", "-c", "--config-file", "--setopt"}


def convert_tag(tag: Optional[str], target_image: str, has_run: bool) -> str:
    """
    Picks the tag for a rewritten base image.

    The minimal base is always 'latest'. Numeric tags are cut to major.minor
    (any '-qualifier' is dropped), anything else becomes 'latest'. Stages that
    RUN commands get the -dev variant.
    """
    if MINIMAL_BASE_IMAGE in target_image:
        return "latest"
    suffix = DEV_SUFFIX if has_run else ""
    match = VERSION_TAG_RE.match(tag) if tag else None
    if not match:
        return f"latest{suffix}"
    truncated = ".".join(match.group(1).split(".")[:2])
    return f"{truncated}{suffix}"


def convert_user_management(command: str) -> str:
    converted = USERADD_SYSTEM_RE.sub("adduser -S ", command)
    converted = USERADD_RE.sub("adduser -D ", converted)
    return GROUPADD_RE.sub("addgroup ", converted)


def extract_install_packages(args: str) -> list[str]:
    """Package names from an install argument list, without flags or '=version' pins."""
    packages = []
    skip_next = False
    for token in args.split():
        if skip_next:
            skip_next = False
            continue
        if token.startswith("-"):
            skip_next = token in VALUE_FLAGS
            continue
        name = token.split("=", 1)[0]
        if name:
            packages.append(name)
    return packages


class DockerfileConverter:
    """Rewrites Dockerfiles onto a hardened registry. Stateless apart from the mapping table."""

    def __init__(self, org: str = DEFAULT_ORG, registry: str = DEFAULT_REGISTRY,
                 mappings: Optional[MappingTable] = None, custom_mappings_path: Optional[str] = None):
        self.org = org or DEFAULT_ORG
        self.registry = (registry or DEFAULT_REGISTRY).rstrip("/")
        self.mappings = mappings or load_mappings(custom_mappings_path)

    @property
    def target_prefix(self) -> str:
        return f"{self.registry}/{self.org}/"

    def target_reference(self, image: str, tag: Optional[str] = None, has_run: bool = False) -> str:
        """Hardened reference for a source image name and tag."""
        mapped_name = self.mappings.lookup_image(image, tag).split(":", 1)[0]
        return f"{self.target_prefix}{mapped_name}:{convert_tag(tag, mapped_name, has_run)}"

    def convert(self, content: str) -> ConversionResult:
        lines = stage_model.split_lines(content)
        stages = stage_model.split_stages(content)
        stage_starts = {stage.start_line: stage for stage in stages}

        converted: list[str] = []
        changes: list[Change] = []
        state = _StageState()

        i = 0
        while i < len(lines):
            logical, count = stage_model.read_logical_line(lines, i)
            raw = lines[i:i + count]
            eol = "\r" if raw[0].endswith("\r") else ""
            try:
                result = self._convert_instruction(i, logical, count, stage_starts.get(i), state)
            except Exception as e:
                logger.debug(f"Leaving line {i + 1} unchanged: {e}", exc_info=True)
                result = None

            if result is None:
                converted.extend(raw)
            else:
                new_lines, new_changes = result
                # keep CRLF files CRLF
                converted.extend(line if line.endswith(eol) else line + eol for line in new_lines)
                changes.extend(new_changes)
            i += count

        return ConversionResult(
            original=content,
            converted="\n".join(converted),
            changes=changes,
            stages=stages,
        )

    def extract_dependency_files(self, content: str, dockerfile_path: Optional[str] = None) -> list[DependencyFile]:
        from .parser import detect_dependency_files
        return detect_dependency_files(content, dockerfile_path)

    # --- Per-instruction handling ---

    def _convert_instruction(self, index: int, logical: str, count: int,
                             stage: Optional[Stage], state: "_StageState"):
        """Returns (lines, changes) for a rewritten instruction, None to keep it as is."""
        kind = stage_model.classify(logical)

        if kind is LineKind.FROM:
            state.reset()
            instruction = stage_model.parse_from(logical)
            new_line = self._convert_from(instruction, stage, state.aliases)
            if instruction and instruction.alias_name:
                state.aliases.add(instruction.alias_name.lower())
            if new_line is None or new_line == logical:
                return None
            return [new_line], [Change(line=index, original=logical, replacement=new_line, category=CATEGORY_FROM)]

        if kind is LineKind.USER:
            state.user = stage_model.parse_user(logical)
            return None

        if kind in stage_model.RUN_KINDS:
            return self._convert_run(index, logical, count, state)

        return None

    def _convert_from(self, instruction, stage: Optional[Stage], aliases: set) -> Optional[str]:
        if instruction is None:
            return None
        name = instruction.name
        if (
            "$" in instruction.reference
            or instruction.digest
            or name.lower() == "scratch"
            or name.lower() in aliases
            or name.startswith(self.target_prefix)
            or name.startswith(f"{self.registry}/")
        ):
            return None

        has_run = stage.has_run_commands if stage else False
        target = self.target_reference(name, instruction.tag, has_run)
        return (
            f"{instruction.indent}{instruction.keyword} {instruction.flags}{target}"
            f"{instruction.alias}{instruction.trailing}"
        )

    def _convert_run(self, index: int, logical: str, count: int, state: "_StageState"):
        match = stage_model.RUN_RE.match(logical)
        if not match or match.group("body").lstrip().startswith("["):
            return None  # exec form is left alone

        indent, keyword, flags = match.group("indent"), match.group("keyword"), match.group("flags")
        body = match.group("body").strip()

        user_body = convert_user_management(body)
        user_changed = user_body != body

        kept: list[str] = []
        packages_changed = False
        installs = False
        for segment in (part.strip() for part in user_body.split("&&")):
            if not segment:
                continue
            rewritten = self._convert_segment(segment)
            if rewritten is None:
                kept.append(segment)
                continue
            packages_changed = True
            if rewritten:
                installs = True
                kept.append(rewritten)

        if not packages_changed and not user_changed:
            return None

        new_lines: list[str] = []
        changes: list[Change] = []
        if not kept:
            changes.append(Change(line=index, original=logical, replacement="", category=CATEGORY_RUN))
            return new_lines, changes

        if installs and not state.root_injected and (state.user or "").lower() not in ROOT_USERS:
            # hardened images run as nonroot by default
            new_lines.append(f"{indent}USER root")
            changes.append(Change(line=index, original="", replacement="USER root", category=CATEGORY_USER_INJECTED))
            state.root_injected = True

        command = f"{indent}{keyword} {flags}{' && '.join(kept)}"
        new_lines.extend(stage_model.reflow(command, count))
        category = CATEGORY_RUN if packages_changed else CATEGORY_USER
        changes.append(Change(line=index, original=logical, replacement=command, category=category))
        return new_lines, changes

    def _convert_segment(self, segment: str) -> Optional[str]:
        """
        Rewrites one '&&' segment of a RUN command.
        Returns None when unchanged, '' when the segment is dropped.
        """
        if (UNSAFE_SHELL_CHARS - {"*"}).intersection(segment):
            return None
        if MAINTENANCE_RE.match(segment):
            return ""
        if "*" in segment:
            return None

        for pattern, family in ((APT_INSTALL_RE, FAMILY_DEBIAN), (DNF_INSTALL_RE, FAMILY_FEDORA)):
            match = pattern.match(segment)
            if match:
                packages = extract_install_packages(match.group("args"))
                if not packages:
                    return None
                mapped = self.mappings.map_packages(packages, family)
                return f"{TARGET_INSTALL} {' '.join(mapped)}"
        return None


class _StageState:
    """Per-stage bookkeeping while walking the file."""

    def __init__(self):
        self.aliases: set = set()
        self.reset()

    def reset(self):
        self.user: Optional[str] = None
        self.root_injected = False
