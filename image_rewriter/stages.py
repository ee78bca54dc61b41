# image_rewriter/stages.py
"""
Stage model for Dockerfiles.

Splits manifest text into build stages, classifies instructions and handles
backslash continuation (coalescing before rewriting, re-splitting afterwards).
"""

import re
from enum import Enum
from typing import NamedTuple, Optional

from .models import Stage

CONTINUATION = "\\"
# Rewritten commands longer than this get one sub-command per line
REFLOW_WIDTH = 80

INSTRUCTION_RE = re.compile(r'^\s*([A-Za-z]+)\b')
FROM_RE = re.compile(
    r'^(?P<indent>\s*)(?P<keyword>FROM)\s+(?P<flags>(?:--\S+\s+)*)(?P<ref>[^\s-]\S*)'
    r'(?P<alias>\s+AS\s+(?P<alias_name>\S+))?(?P<trailing>\s*)$',
    re.IGNORECASE,
)
RUN_RE = re.compile(r'^(?P<indent>\s*)(?P<keyword>RUN)\s+(?P<flags>(?:--\S+\s+)*)(?P<body>.*)$', re.IGNORECASE | re.DOTALL)
USER_RE = re.compile(r'^\s*USER\s+([^\s:]+)', re.IGNORECASE)

APT_INSTALL_SEARCH = re.compile(r'\b(?:apt-get|apt)\s+(?:\S+\s+)*?install\b')
DNF_INSTALL_SEARCH = re.compile(r'\b(?:dnf|yum|microdnf)\s+(?:\S+\s+)*?install\b')
USER_MANAGEMENT_SEARCH = re.compile(r'\b(?:useradd|groupadd)\b')


class LineKind(Enum):
    FROM = "from"
    INSTALL = "install"
    USER_MANAGEMENT = "user-management"
    RUN = "run"
    USER = "user"
    OTHER = "other"


RUN_KINDS = (LineKind.INSTALL, LineKind.USER_MANAGEMENT, LineKind.RUN)


class FromInstruction(NamedTuple):
    indent: str
    keyword: str
    flags: str
    name: str
    tag: Optional[str]
    digest: Optional[str]
    alias: str
    alias_name: Optional[str]
    trailing: str

    @property
    def reference(self) -> str:
        ref = self.name
        if self.tag:
            ref += f":{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref


def split_lines(text: str) -> list[str]:
    return text.split("\n")


def instruction_of(line: str) -> Optional[str]:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    match = INSTRUCTION_RE.match(stripped)
    return match.group(1).upper() if match else None


def classify(line: str) -> LineKind:
    """Classifies one logical line (continuations already coalesced)."""
    instruction = instruction_of(line)
    if instruction == "FROM":
        return LineKind.FROM
    if instruction == "USER":
        return LineKind.USER
    if instruction == "RUN":
        if APT_INSTALL_SEARCH.search(line) or DNF_INSTALL_SEARCH.search(line):
            return LineKind.INSTALL
        if USER_MANAGEMENT_SEARCH.search(line):
            return LineKind.USER_MANAGEMENT
        return LineKind.RUN
    return LineKind.OTHER


def split_image_reference(ref: str) -> tuple[str, Optional[str], Optional[str]]:
    """Splits 'registry:5000/name:tag@sha256:...' into (name, tag, digest)."""
    digest = None
    if "@" in ref:
        ref, digest = ref.split("@", 1)
    name, tag = ref, None
    colon = ref.rfind(":")
    if colon > ref.rfind("/"):
        name, tag = ref[:colon], ref[colon + 1:]
    return name, tag or None, digest


def parse_from(line: str) -> Optional[FromInstruction]:
    match = FROM_RE.match(line)
    if not match:
        return None
    name, tag, digest = split_image_reference(match.group("ref"))
    return FromInstruction(
        indent=match.group("indent"),
        keyword=match.group("keyword"),
        flags=match.group("flags"),
        name=name,
        tag=tag,
        digest=digest,
        alias=match.group("alias") or "",
        alias_name=match.group("alias_name"),
        trailing=match.group("trailing"),
    )


def parse_user(line: str) -> Optional[str]:
    match = USER_RE.match(line)
    return match.group(1) if match else None


def read_logical_line(lines: list[str], start: int) -> tuple[str, int]:
    """
    Joins a backslash-continued instruction into one line.
    Returns the joined text and the number of physical lines it spans.
    Comment lines inside a continuation are dropped from the joined text.
    """
    text = lines[start]
    count = 1
    if text.lstrip().startswith("#"):
        return text, count
    while start + count < len(lines) and text.rstrip().endswith(CONTINUATION):
        following = lines[start + count]
        count += 1
        if following.lstrip().startswith("#"):
            continue
        text = text.rstrip()[:-1].rstrip() + " " + following.strip()
    return text, count


def reflow(command: str, physical_count: int) -> list[str]:
    """Splits a rewritten logical line back into physical lines."""
    if physical_count <= 1:
        return [command]
    match = re.match(r'^(\s*RUN\s+)(.+)$', command, re.IGNORECASE | re.DOTALL)
    if not match:
        return [command]
    prefix, rest = match.groups()
    if len(rest) < REFLOW_WIDTH and "&&" not in rest:
        return [command]

    parts = [part.strip() for part in rest.split("&&") if part.strip()]
    if len(parts) == 1:
        return [command]

    indent = prefix[:len(prefix) - len(prefix.lstrip())]
    result = [f"{prefix}{parts[0]} {CONTINUATION}"]
    for part in parts[1:-1]:
        result.append(f"{indent}    && {part} {CONTINUATION}")
    result.append(f"{indent}    && {parts[-1]}")
    return result


def split_stages(text: str) -> list[Stage]:
    """
    Splits manifest text into build stages.

    Each stage starts at a FROM line and ends right before the next one. Lines
    before the first FROM (global ARGs, comments) belong to no stage.
    """
    lines = split_lines(text)
    stages: list[Stage] = []
    current: Optional[Stage] = None
    i = 0
    while i < len(lines):
        logical, count = read_logical_line(lines, i)
        kind = classify(logical)
        if kind is LineKind.FROM:
            if current is not None:
                current.end_line = i - 1
                current.lines = lines[current.start_line:i]
            instruction = parse_from(logical)
            current = Stage(
                index=len(stages),
                start_line=i,
                end_line=i + count - 1,
                base_image=instruction.reference if instruction else logical.strip()[4:].strip(),
                alias=instruction.alias_name if instruction else None,
            )
            stages.append(current)
        elif current is not None and kind in RUN_KINDS:
            # any RUN needs a shell, so the stage needs the -dev variant
            current.has_run_commands = True
        i += count

    if current is not None:
        current.end_line = len(lines) - 1
        current.lines = lines[current.start_line:]
    return stages
