"""Data models for validation results."""

from dataclasses import dataclass, field
from enum import Enum, StrEnum


class CheckName(StrEnum):
    """Independent checks run against a candidate."""

    SYNTAX = "syntax"
    LINT = "lint"
    FUNCTIONAL = "functional"
    REGRESSION = "regression"
    PERFORMANCE = "performance"


CHECK_WEIGHTS: dict[CheckName, float] = {
    CheckName.SYNTAX: 0.20,
    CheckName.LINT: 0.20,
    CheckName.FUNCTIONAL: 0.35,
    CheckName.REGRESSION: 0.15,
    CheckName.PERFORMANCE: 0.10,
}


class Recommendation(Enum):
    """Categorical gate derived from the overall score."""

    APPLY_IMMEDIATELY = "APPLY_IMMEDIATELY"
    APPLY_WITH_MONITORING = "APPLY_WITH_MONITORING"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    DO_NOT_APPLY = "DO_NOT_APPLY"

    @classmethod
    def from_score(cls, score: float) -> "Recommendation":
        """Map an overall score to a recommendation."""
        if score >= 90:
            return cls.APPLY_IMMEDIATELY
        if score >= 75:
            return cls.APPLY_WITH_MONITORING
        if score >= 60:
            return cls.REVIEW_REQUIRED
        return cls.DO_NOT_APPLY


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one check."""

    name: CheckName
    passed: bool
    score: float  # 0 to 100
    skipped: bool = False
    detail: str = ""

    @classmethod
    def skip(cls, name: CheckName, detail: str) -> "CheckResult":
        """A check that did not run and carries no weight."""
        return cls(name=name, passed=True, score=0.0, skipped=True, detail=detail)


@dataclass(frozen=True)
class ValidationResult:
    """Combined verdict for one candidate."""

    candidate_id: str
    per_check: dict[CheckName, CheckResult]
    overall_score: float
    passed: bool
    recommendation: Recommendation
    failed_checks: tuple[CheckName, ...] = field(default=())

    @property
    def checks_run(self) -> tuple[CheckName, ...]:
        """Checks that actually ran, in weight order."""
        return tuple(name for name, result in self.per_check.items() if not result.skipped)

    def summary(self) -> str:
        """One-line description used in logs and the final report."""
        parts = []
        for name, result in self.per_check.items():
            if result.skipped:
                parts.append(f"{name}=skipped")
            else:
                parts.append(f"{name}={result.score:.0f}{'' if result.passed else '!'}")
        return f"score={self.overall_score:.1f} ({', '.join(parts)})"


@dataclass(frozen=True)
class SyntaxReport:
    """Whether source text parses."""

    ok: bool
    message: str = ""
    line: int | None = None
    skipped: bool = False  # Parser unavailable


@dataclass(frozen=True)
class LintViolation:
    """One static rule hit."""

    rule: str
    severity: str  # "error" or "warning"
    line: int
    message: str

    @property
    def signature(self) -> tuple[str, str]:
        """Line-independent identity, used to diff against a baseline."""
        return (self.rule, self.message)


@dataclass(frozen=True)
class RiskFinding:
    """A risky construct in a patch that lowers its syntax score."""

    pattern: str
    line: int
    message: str
