"""Data models for captured runtime errors."""

from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import Any


class Severity(StrEnum):
    """How badly an error affects the target application."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Sort rank, 0 being the most severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


class ErrorKind(StrEnum):
    """Closed set of error categories recognized by the fix templates."""

    UNDEFINED_PROPERTY = "undefined_property"
    NOT_A_FUNCTION = "not_a_function"
    REFERENCE_ERROR = "reference_error"
    NETWORK_FAILURE = "network_failure"
    TIMEOUT = "timeout"
    MEMORY_LEAK = "memory_leak"
    ELEMENT_NOT_FOUND = "element_not_found"
    STORAGE_FAILURE = "storage_failure"
    STATE_CORRUPTION = "state_corruption"
    SYNTAX_ERROR = "syntax_error"
    UNKNOWN = "unknown"


class Resolution(Enum):
    """Why an error left the active queue."""

    FIXED = "fixed"
    EXHAUSTED = "exhausted"  # Ran out of attempts
    DEFERRED = "deferred"  # Validated fix awaits manual application


@dataclass(frozen=True)
class SourceLocation:
    """Where in the target's source an error was raised."""

    file: str
    line: int
    column: int = 0

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass(frozen=True)
class RawError:
    """An error report as received from the instrumented target."""

    message: str
    location: SourceLocation
    stack_trace: str = ""
    component: str | None = None
    severity: Severity | None = None  # Reporter-assigned, overrides classification
    kind: ErrorKind | None = None


@dataclass(frozen=True)
class ErrorContext:
    """What the target was doing when the error fired."""

    recent_actions: tuple[dict[str, Any], ...] = ()
    state_snapshot: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorRecord:
    """A deduplicated error tracked by the collector.

    Only the collector mutates records; everyone else treats them as
    read-only snapshots.
    """

    id: str
    key: str
    kind: ErrorKind
    severity: Severity
    message: str
    location: SourceLocation
    stack_trace: str
    component: str | None
    context: ErrorContext
    first_seen_at: float
    last_seen_at: float
    occurrence_count: int = 1

    @property
    def file(self) -> str:
        """Shortcut for the failing file."""
        return self.location.file

    @property
    def line(self) -> int:
        """Shortcut for the failing line."""
        return self.location.line


@dataclass(frozen=True)
class RetiredError:
    """An error moved out of the active queue into history."""

    record: ErrorRecord
    resolution: Resolution
    retired_at: float
    note: str = ""
