# image_rewriter/parser.py
import re
import json
import logging
from pathlib import Path
from typing import Callable, Optional

from lxml import etree as ET
from packaging.requirements import InvalidRequirement, Requirement

from .models import DependencyFile, DependencyReference
from . import stages as stage_model

logger = logging.getLogger(__name__)

ECOSYSTEM_PYTHON = "python"
ECOSYSTEM_JAVASCRIPT = "javascript"
ECOSYSTEM_JAVA = "java"

# Operators accepted in requirements lines
REQ_OPERATORS = ("==", ">=", "<=", ">", "<", "~=")
REQ_COMMENT_RE = re.compile(r"(^|\s)#.*$")
REQ_OPTION_RE = re.compile(r"\s+--?[A-Za-z]")
GRADLE_PATTERN = re.compile(r'''implementation\s*\(?\s*['"]([^:'"]+):([^:'"]+)(?::([^:'"@]+))?''')
COPY_RE = re.compile(r'^\s*(?:COPY|ADD)\s+(?P<args>.+)$', re.IGNORECASE)


def _requirement_lines(content: str):
    """Yields (first line number, text) with backslash continuations joined."""
    pending, start = [], 0
    for line_num, line in enumerate(content.splitlines(), 1):
        if not pending:
            start = line_num
        if line.endswith("\\"):
            pending.append(line[:-1])
            continue
        pending.append(line)
        yield start, " ".join(pending)
        pending = []
    if pending:
        yield start, " ".join(pending)


def parse_requirements(content: str, source_hint: str = "input") -> list[DependencyReference]:
    """Parses requirements.txt content. Flags (-r, -e, --index-url, ...) and comments are skipped."""
    references = []
    for line_num, line in _requirement_lines(content):
        line = REQ_COMMENT_RE.sub("", line).strip()
        if not line or line.startswith("-"):
            continue
        # per-requirement options such as --hash=sha256:...
        line = REQ_OPTION_RE.split(line, 1)[0]
        try:
            requirement = Requirement(line)
        except InvalidRequirement as e:
            logger.warning(f"{source_hint}: skipping line {line_num} ('{line}'): {e}")
            continue

        operator = version = None
        specifiers = list(requirement.specifier)
        if len(specifiers) == 1 and specifiers[0].operator in REQ_OPERATORS:
            operator, version = specifiers[0].operator, specifiers[0].version
        elif specifiers:
            # several clauses, e.g. 'flask>=2.0,<3': keep the constraint text as written
            version = str(requirement.specifier)

        references.append(DependencyReference(
            name=requirement.name,
            version=version,
            operator=operator,
            extras=tuple(sorted(requirement.extras)),
        ))
    logger.debug(f"Parsed {len(references)} requirements from {source_hint}")
    return references


def parse_package_json(content: str, source_hint: str = "input") -> list[DependencyReference]:
    """Flattens 'dependencies' and 'devDependencies' of a package.json."""
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError(f"{source_hint}: package.json root is not an object")
    references = []
    for section in ("dependencies", "devDependencies"):
        for name, version in (data.get(section) or {}).items():
            references.append(DependencyReference(name=name, version=str(version) if version else None))
    return references


def parse_pom_xml(content: str, source_hint: str = "input") -> list[DependencyReference]:
    """Every <artifactId> value in a Maven pom, namespaced or not."""
    root = ET.fromstring(content.encode("utf-8"))
    references = []
    for element in root.xpath('//*[local-name()="artifactId"]'):
        name = (element.text or "").strip()
        if name:
            references.append(DependencyReference(name=name))
    return references


def parse_build_gradle(content: str, source_hint: str = "input") -> list[DependencyReference]:
    """'implementation "group:artifact[:version]"' declarations (Groovy or Kotlin DSL)."""
    references = []
    for match in GRADLE_PATTERN.finditer(content):
        group, artifact, version = match.groups()
        references.append(DependencyReference(name=f"{group}:{artifact}", version=version))
    return references


def _is_requirements(name: str) -> bool:
    return name.endswith(".txt")


def _is_package_json(name: str) -> bool:
    return name == "package.json"


def _is_pom(name: str) -> bool:
    return name == "pom.xml"


def _is_gradle(name: str) -> bool:
    return name.startswith("build.gradle")


# (ecosystem, file name predicate) -> parser
PARSERS: list[tuple[str, Callable[[str], bool], Callable[..., list[DependencyReference]]]] = [
    (ECOSYSTEM_PYTHON, _is_requirements, parse_requirements),
    (ECOSYSTEM_JAVASCRIPT, _is_package_json, parse_package_json),
    (ECOSYSTEM_JAVA, _is_pom, parse_pom_xml),
    (ECOSYSTEM_JAVA, _is_gradle, parse_build_gradle),
]


def find_parser(file_name: str, ecosystem: str):
    for parser_ecosystem, matches, parser in PARSERS:
        if parser_ecosystem == ecosystem and matches(file_name):
            return parser
    return None


def parse_dependency_file(path, ecosystem: str) -> list[DependencyReference]:
    """
    Parses one dependency file. Unsupported combinations and any read or
    parse failure give an empty list (logged, never raised).
    """
    path = Path(path)
    parser = find_parser(path.name, ecosystem)
    if parser is None:
        logger.debug(f"No {ecosystem} parser for {path.name}")
        return []
    try:
        content = path.read_text(encoding="utf-8")
        return parser(content, source_hint=str(path))
    except (OSError, UnicodeDecodeError, ValueError, ET.XMLSyntaxError) as e:
        logger.warning(f"Failed to parse {ecosystem} dependency file {path}: {e}")
        return []


def ecosystem_for_file(file_name: str) -> Optional[str]:
    """Ecosystem of a dependency file copied into an image, by name."""
    if re.match(r'^requirements.*\.txt$', file_name):
        return ECOSYSTEM_PYTHON
    if _is_package_json(file_name):
        return ECOSYSTEM_JAVASCRIPT
    if _is_pom(file_name) or _is_gradle(file_name):
        return ECOSYSTEM_JAVA
    return None


def _copy_sources(args: str) -> list[str]:
    args = args.strip()
    if args.startswith("["):
        try:
            parts = json.loads(args)
        except json.JSONDecodeError:
            return []
        return [str(p) for p in parts[:-1]]
    tokens = [t for t in args.split() if not t.startswith("--")]
    return tokens[:-1]


def detect_dependency_files(dockerfile_text: str, dockerfile_path: Optional[str] = None) -> list[DependencyFile]:
    """
    Finds dependency files copied into the image by COPY/ADD lines.
    Files that exist next to the Dockerfile are parsed as well.
    """
    context_dir = Path(dockerfile_path).resolve().parent if dockerfile_path else None
    lines = stage_model.split_lines(dockerfile_text)
    found = []
    i = 0
    while i < len(lines):
        logical, count = stage_model.read_logical_line(lines, i)
        match = COPY_RE.match(logical)
        if match and "--from" not in logical:
            for source in _copy_sources(match.group("args")):
                ecosystem = ecosystem_for_file(Path(source).name)
                if ecosystem is None:
                    continue
                dep_file = DependencyFile(line=i, ecosystem=ecosystem, relative_path=source)
                if context_dir is not None:
                    absolute = (context_dir / source).resolve()
                    dep_file.absolute_path = str(absolute)
                    if absolute.is_file():
                        dep_file.references = parse_dependency_file(absolute, ecosystem)
                found.append(dep_file)
        i += count
    return found
