"""Final run report and operator advice."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict
from typing import Any

from autofix_loop.models.state import (
    Advice,
    FixHistoryEntry,
    IterationState,
    LoopReport,
    LoopStatus,
    UnresolvedError,
)

REPORTED_FIX_HISTORY = 50
SKIPPED_FIXES_ADVICE = 5
HIGH_ERROR_VOLUME = 50


def advise(
    state: IterationState,
    max_iterations: int,
    unresolved: Sequence[UnresolvedError] = (),
) -> list[Advice]:
    """General recommendations derived from the run's counters."""
    advice: list[Advice] = []

    if state.status == LoopStatus.CONVERGED and not unresolved:
        advice.append(
            Advice("INFO", "All errors resolved. Run the full test suite before deploying.")
        )
    elif state.status == LoopStatus.ERROR:
        advice.append(
            Advice("HIGH", f"Loop stopped on a fatal error: {state.reason}. Operator action required.")
        )
    else:
        if state.failed_fixes > state.fixed_errors:
            advice.append(
                Advice(
                    "HIGH",
                    "Most fixes failed validation. Review the error patterns and fix generation.",
                )
            )
        if state.iteration >= max_iterations:
            advice.append(
                Advice("WARNING", "Maximum iterations reached. Some errors may remain unresolved.")
            )

    if unresolved:
        advice.append(
            Advice("HIGH", f"{len(unresolved)} error(s) need manual review, see the unresolved list.")
        )

    if state.skipped_fixes > SKIPPED_FIXES_ADVICE:
        advice.append(
            Advice(
                "MEDIUM",
                "Many candidates were below the confidence threshold. Consider adjusting it.",
            )
        )

    if sum(state.error_count_history) > HIGH_ERROR_VOLUME:
        advice.append(
            Advice(
                "HIGH",
                "High error volume detected. Consider improving error prevention upstream.",
            )
        )

    return advice


def build_report(
    state: IterationState,
    duration: float,
    fix_history: Sequence[FixHistoryEntry],
    unresolved: Sequence[UnresolvedError],
    max_iterations: int,
) -> LoopReport:
    """Assemble the final report for a finished run."""
    return LoopReport(
        status=state.status,
        reason=state.reason,
        iterations=state.iteration,
        duration=duration,
        total_errors=state.total_errors,
        fixed_errors=state.fixed_errors,
        failed_fixes=state.failed_fixes,
        skipped_fixes=state.skipped_fixes,
        error_count_history=tuple(state.error_count_history),
        fix_history=tuple(fix_history[-REPORTED_FIX_HISTORY:]),
        unresolved=tuple(unresolved),
        advice=tuple(advise(state, max_iterations, unresolved)),
    )


def report_to_dict(report: LoopReport) -> dict[str, Any]:
    """JSON-ready form of a report."""
    return {
        "status": report.status.value,
        "reason": report.reason,
        "iterations": report.iterations,
        "duration": round(report.duration, 2),
        "summary": {
            "total_errors": report.total_errors,
            "fixed_errors": report.fixed_errors,
            "failed_fixes": report.failed_fixes,
            "skipped_fixes": report.skipped_fixes,
            "success_rate": report.success_rate,
        },
        "error_count_history": list(report.error_count_history),
        "fix_history": [entry.to_dict() for entry in report.fix_history],
        "unresolved": [asdict(u) for u in report.unresolved],
        "advice": [asdict(a) for a in report.advice],
    }


def render_text(report: LoopReport) -> str:
    """Human-readable report for the console."""
    lines = [
        "=" * 72,
        f"Status:      {report.status.value}" + (f" ({report.reason})" if report.reason else ""),
        f"Iterations:  {report.iterations}",
        f"Duration:    {report.duration:.1f}s",
        f"Fixed:       {report.fixed_errors}/{report.total_errors} ({report.success_rate}%)",
        f"Failed:      {report.failed_fixes}",
        f"Skipped:     {report.skipped_fixes}",
        f"Error counts: {list(report.error_count_history)}",
    ]
    if report.unresolved:
        lines.append("")
        lines.append("Unresolved:")
        for u in report.unresolved:
            lines.append(f"  [{u.severity}] {u.location} {u.message[:80]}")
            lines.append(
                f"      attempts={u.attempts} last_fix={u.last_candidate_id or '-'}"
                f" strategy={u.last_strategy or '-'}"
            )
            lines.append(f"      rejected: {u.rejection_reason or '-'}")
            lines.append(f"      -> {u.recommendation}")
    if report.advice:
        lines.append("")
        lines.append("Recommendations:")
        for a in report.advice:
            lines.append(f"  {a.priority}: {a.message}")
    lines.append("=" * 72)
    return "\n".join(lines)
