# image_rewriter/models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

# Change categories
CATEGORY_FROM = "from"
CATEGORY_RUN = "run"
CATEGORY_USER = "user"
CATEGORY_USER_INJECTED = "user-injected"

# Scan states
STATUS_PENDING = "pending"
STATUS_COMPLETE = "complete"
STATUS_UNAVAILABLE = "unavailable"

ERROR_AUTH_REQUIRED = "auth_required"
ERROR_SCAN_FAILED = "scan_failed"

SEVERITY_TIERS = ("critical", "high", "medium", "low", "negligible")


@dataclass
class Stage:
    index: int
    start_line: int
    end_line: int
    base_image: str
    alias: Optional[str] = None
    has_run_commands: bool = False
    lines: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Change:
    line: int
    original: str
    replacement: str
    category: str

    def __post_init__(self):
        if not self.original and not self.replacement:
            raise ValueError("A change needs an original or a replacement line")


@dataclass
class ConversionResult:
    original: str
    converted: str
    changes: list[Change] = field(default_factory=list)
    stages: list[Stage] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "converted": self.converted,
            "changes": [
                {
                    "line": c.line,
                    "original": c.original,
                    "replacement": c.replacement,
                    "category": c.category,
                }
                for c in self.changes
            ],
        }


@dataclass(frozen=True)
class DependencyReference:
    name: str
    version: Optional[str] = None
    operator: Optional[str] = None
    extras: tuple[str, ...] = ()


@dataclass
class DependencyFile:
    line: int
    ecosystem: str
    relative_path: str
    absolute_path: Optional[str] = None
    references: list[DependencyReference] = field(default_factory=list)


@dataclass(frozen=True)
class RemediationRecord:
    package: str
    ecosystem: str
    version: str
    cves_fixed: tuple[str, ...] = ()
    advisory_url: Optional[str] = None


@dataclass(frozen=True)
class CatalogPackage:
    name: str
    version: str = ""
    description: str = ""


@dataclass
class ScanResult:
    image: str
    status: str = STATUS_PENDING
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    negligible: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total(self) -> int:
        return self.critical + self.high + self.medium + self.low + self.negligible

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_COMPLETE and self.error is None


@dataclass(frozen=True)
class CoverageMatch:
    image_ref: str
    coverage: float
    score: float
    satisfied: int = 0
    missing: int = 0
    extra: int = 0
    total_required: int = 0


@dataclass
class CoverageResult:
    total_external_packages: int = 0
    required_apks: list[str] = field(default_factory=list)
    matches: list[CoverageMatch] = field(default_factory=list)
    unmatched: list[str] = field(default_factory=list)

    @property
    def best(self) -> Optional[CoverageMatch]:
        return self.matches[0] if self.matches else None


@dataclass
class LibraryAvailability:
    package: str
    ecosystem: str
    available: bool
    has_remediation: bool = False
    cves_fixed: int = 0
    suggested_version: Optional[str] = None
    error: Optional[str] = None
