"""Data models for loop state and reporting."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class LoopStatus(StrEnum):
    """Orchestrator state machine."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    CONVERGED = "CONVERGED"
    STALLED = "STALLED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        """True once the loop can no longer make progress on its own."""
        return self in (LoopStatus.CONVERGED, LoopStatus.STALLED, LoopStatus.ERROR)


class FixOutcome(StrEnum):
    """What happened to an error in one attempt."""

    APPLIED = "applied"
    DEFERRED = "deferred"
    REJECTED = "rejected"
    APPLY_FAILED = "apply_failed"
    NO_CANDIDATES = "no_candidates"
    RATE_LIMITED = "rate_limited"


@dataclass
class IterationState:
    """Progress counters owned and persisted by the orchestrator."""

    iteration: int = 0
    started_at: float = 0.0
    total_errors: int = 0
    fixed_errors: int = 0
    failed_fixes: int = 0
    skipped_fixes: int = 0
    error_count_history: list[int] = field(default_factory=list)
    status: LoopStatus = LoopStatus.IDLE
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the state file."""
        return {
            "iteration": self.iteration,
            "started_at": self.started_at,
            "total_errors": self.total_errors,
            "fixed_errors": self.fixed_errors,
            "failed_fixes": self.failed_fixes,
            "skipped_fixes": self.skipped_fixes,
            "error_count_history": list(self.error_count_history),
            "status": self.status.value,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IterationState":
        """Rebuild from the state file."""
        return cls(
            iteration=int(data.get("iteration", 0)),
            started_at=float(data.get("started_at", 0.0)),
            total_errors=int(data.get("total_errors", 0)),
            fixed_errors=int(data.get("fixed_errors", 0)),
            failed_fixes=int(data.get("failed_fixes", 0)),
            skipped_fixes=int(data.get("skipped_fixes", 0)),
            error_count_history=[int(n) for n in data.get("error_count_history", [])],
            status=LoopStatus(data.get("status", LoopStatus.IDLE.value)),
            reason=str(data.get("reason", "")),
        )


@dataclass(frozen=True)
class FixHistoryEntry:
    """One attempt at fixing one error."""

    iteration: int
    error_key: str
    error_id: str
    kind: str
    outcome: FixOutcome
    timestamp: float
    candidate_id: str | None = None
    strategy_tag: str | None = None
    file_path: str | None = None
    score: float | None = None
    recommendation: str | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the state file."""
        return {
            "iteration": self.iteration,
            "error_key": self.error_key,
            "error_id": self.error_id,
            "kind": self.kind,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp,
            "candidate_id": self.candidate_id,
            "strategy_tag": self.strategy_tag,
            "file_path": self.file_path,
            "score": self.score,
            "recommendation": self.recommendation,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FixHistoryEntry":
        """Rebuild from the state file."""
        return cls(
            iteration=int(data["iteration"]),
            error_key=str(data["error_key"]),
            error_id=str(data["error_id"]),
            kind=str(data["kind"]),
            outcome=FixOutcome(data["outcome"]),
            timestamp=float(data["timestamp"]),
            candidate_id=data.get("candidate_id"),
            strategy_tag=data.get("strategy_tag"),
            file_path=data.get("file_path"),
            score=data.get("score"),
            recommendation=data.get("recommendation"),
            reason=str(data.get("reason", "")),
        )


@dataclass(frozen=True)
class UnresolvedError:
    """An error the loop gave up on, as shown to the operator."""

    key: str
    message: str
    location: str
    kind: str
    severity: str
    attempts: int
    last_candidate_id: str | None
    last_strategy: str | None
    rejection_reason: str
    recommendation: str


@dataclass(frozen=True)
class Advice:
    """A general recommendation for the operator."""

    priority: str  # INFO, MEDIUM, WARNING, HIGH
    message: str


@dataclass(frozen=True)
class LoopReport:
    """Final summary of a run."""

    status: LoopStatus
    reason: str
    iterations: int
    duration: float
    total_errors: int
    fixed_errors: int
    failed_fixes: int
    skipped_fixes: int
    error_count_history: tuple[int, ...]
    fix_history: tuple[FixHistoryEntry, ...]
    unresolved: tuple[UnresolvedError, ...]
    advice: tuple[Advice, ...]

    @property
    def success_rate(self) -> float:
        """Percentage of seen errors that were fixed."""
        if self.total_errors == 0:
            return 100.0
        return round(self.fixed_errors / self.total_errors * 100, 1)
