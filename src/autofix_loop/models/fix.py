"""Data models for fix candidates and applied fixes."""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from autofix_loop.utils.text import split_lines


@dataclass(frozen=True)
class Patch:
    """A replacement of a 1-indexed, inclusive line range in one file."""

    target_file: str
    start_line: int
    end_line: int
    replacement_code: str

    @property
    def replaced_line_count(self) -> int:
        """Number of original lines the patch replaces."""
        return self.end_line - self.start_line + 1

    @property
    def replacement_lines(self) -> list[str]:
        """Replacement split into lines, without line terminators."""
        if not self.replacement_code:
            return []
        return split_lines(self.replacement_code)

    @property
    def line_delta(self) -> int:
        """Net number of lines the patch adds to the file."""
        return len(self.replacement_lines) - self.replaced_line_count

    @property
    def size(self) -> int:
        """Patch size used as a complexity proxy."""
        return max(len(self.replacement_lines), self.replaced_line_count)

    def overlaps_lines(self, other: "Patch") -> bool:
        """Return True if the line ranges intersect, whatever files they name.

        Callers decide whether two patches target the same file; the names
        alone cannot tell ``./a.py`` from ``a.py``.
        """
        return self.start_line <= other.end_line and other.start_line <= self.end_line


class CandidateSource(Enum):
    """Who produced a candidate."""

    ORACLE = "oracle"
    TEMPLATE = "template"


@dataclass(frozen=True)
class FixCandidate:
    """A proposed fix for one error. Never mutated after creation."""

    id: str
    error_id: str
    patch: Patch
    confidence: int  # 0 to 100
    strategy_tag: str
    explanation: str
    generated_at: float
    source: CandidateSource = CandidateSource.ORACLE


@dataclass(frozen=True)
class FixContext:
    """Context sent alongside an error to the fix-generation oracle."""

    source_snippet: str
    snippet_start_line: int
    recent_actions: tuple[dict[str, Any], ...] = ()
    state_snapshot: dict[str, Any] | None = None


@dataclass(frozen=True)
class OracleProposal:
    """One fix as returned by the oracle, before scoring."""

    confidence: int
    code: str
    explanation: str
    start_line: int
    end_line: int
    strategy_tag: str = "oracle"
    target_file: str | None = None  # Defaults to the error's file


# Oracle outcome variants consumed by a single decision point


@dataclass(frozen=True)
class OracleOk:
    """The oracle answered with proposals."""

    proposals: tuple[OracleProposal, ...]


@dataclass(frozen=True)
class OracleTimedOut:
    """The oracle did not answer in time."""

    timeout: float


@dataclass(frozen=True)
class OracleFailed:
    """The oracle answered with an error or an unusable payload."""

    reason: str


OracleOutcome = OracleOk | OracleTimedOut | OracleFailed


@dataclass(frozen=True)
class AppliedFix:
    """Record of a fix written to disk."""

    candidate_id: str
    error_id: str
    file_path: str
    backup_ref: str | None
    applied_at: float
    success: bool
    rolled_back_at: float | None = None
    reason: str = ""
