"""Data models and transfer objects."""

from .error import (
    ErrorContext,
    ErrorKind,
    ErrorRecord,
    RawError,
    Resolution,
    RetiredError,
    Severity,
    SourceLocation,
)
from .fix import (
    AppliedFix,
    CandidateSource,
    FixCandidate,
    FixContext,
    OracleFailed,
    OracleOk,
    OracleOutcome,
    OracleProposal,
    OracleTimedOut,
    Patch,
)
from .state import (
    Advice,
    FixHistoryEntry,
    FixOutcome,
    IterationState,
    LoopReport,
    LoopStatus,
    UnresolvedError,
)
from .browser import Observation, SessionHandle
from .validation import (
    CHECK_WEIGHTS,
    CheckName,
    CheckResult,
    LintViolation,
    Recommendation,
    RiskFinding,
    SyntaxReport,
    ValidationResult,
)

__all__ = [
    # Error models
    "Severity",
    "ErrorKind",
    "Resolution",
    "SourceLocation",
    "RawError",
    "ErrorContext",
    "ErrorRecord",
    "RetiredError",
    # Fix models
    "Patch",
    "CandidateSource",
    "FixCandidate",
    "FixContext",
    "OracleProposal",
    "OracleOk",
    "OracleTimedOut",
    "OracleFailed",
    "OracleOutcome",
    "AppliedFix",
    # Validation models
    "CheckName",
    "CHECK_WEIGHTS",
    "CheckResult",
    "Recommendation",
    "ValidationResult",
    "SyntaxReport",
    "LintViolation",
    "RiskFinding",
    # Browser models
    "SessionHandle",
    "Observation",
    # State models
    "LoopStatus",
    "FixOutcome",
    "IterationState",
    "FixHistoryEntry",
    "UnresolvedError",
    "Advice",
    "LoopReport",
]
