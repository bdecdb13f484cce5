"""Remediation loop orchestrator.

Drives IDLE -> RUNNING -> {CONVERGED | STALLED | ERROR}. Each iteration:

1. drains a prioritized batch from the collector (empty => done)
2. runs generate -> validate for every error on a bounded worker pool
3. applies the passing candidates as one batch, serialized per file
4. retires fixed and exhausted errors, records history
5. persists the iteration state
6. stops as STALLED when the unresolved count stopped decreasing

The orchestrator is the only writer of IterationState, fix history and the
strategy history. Nothing is persisted mid-iteration.
"""

from __future__ import annotations

import asyncio
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from autofix_loop.config.schema import AutofixConfig
from autofix_loop.core.error_collector import ErrorCollector
from autofix_loop.core.fix_applier import BackupStore, FixApplier
from autofix_loop.core.fix_oracle_client import FixOracleClient, StrategyHistory
from autofix_loop.core.report import build_report
from autofix_loop.core.state_store import PersistedState, StateStore
from autofix_loop.core.validation_pipeline import ValidationPipeline
from autofix_loop.interfaces.browser import BrowserAutomation
from autofix_loop.interfaces.oracle import FixOracle
from autofix_loop.models.error import ErrorRecord, Resolution
from autofix_loop.models.fix import AppliedFix, FixCandidate, FixContext
from autofix_loop.models.state import (
    FixHistoryEntry,
    FixOutcome,
    IterationState,
    LoopReport,
    LoopStatus,
    UnresolvedError,
)
from autofix_loop.models.validation import ValidationResult
from autofix_loop.utils.async_helpers import (
    AttemptTracker,
    AutofixError,
    CancellationToken,
    RateLimitedError,
    SecurityError,
    StaleStateError,
    StateCorruptedError,
    WorkerPool,
)
from autofix_loop.utils.logging import bind_context, unbind_context
from autofix_loop.utils.metrics import MetricsRegistry, get_metrics
from autofix_loop.utils.security import SecretRedactor, resolve_within
from autofix_loop.utils.text import split_lines

log = structlog.get_logger()

PERSISTED_FIX_HISTORY = 500


@dataclass(frozen=True)
class ErrorAttempt:
    """What one worker produced for one error."""

    error: ErrorRecord
    outcome: FixOutcome
    candidate: FixCandidate | None = None
    validation: ValidationResult | None = None
    reason: str = ""
    below_threshold: int = 0
    validated: int = 0

    @property
    def passed(self) -> bool:
        return self.validation is not None and self.validation.passed


class LoopOrchestrator:
    """Runs the remediation loop to convergence, stall or error.

    Example:
        orchestrator = create_orchestrator(config)
        report = await orchestrator.run()
        print(report.status)
    """

    def __init__(
        self,
        config: AutofixConfig,
        collector: ErrorCollector,
        oracle_client: FixOracleClient,
        pipeline: ValidationPipeline,
        applier: FixApplier,
        state_store: StateStore,
        redactor: SecretRedactor | None = None,
        browser: BrowserAutomation | None = None,
        clock: Callable[[], float] = time.time,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Full configuration; ``loop`` and ``target`` are read here.
            collector: Error queue.
            oracle_client: Candidate generator.
            pipeline: Validation gate.
            applier: Patch writer.
            state_store: Persisted iteration state.
            redactor: Redacts source snippets before they leave the process.
            browser: Browser adapter to close on shutdown, if any.
            clock: Wall-clock source.
            metrics: Metrics registry (defaults to the process-wide one).
        """
        self._config = config
        self._loop = config.loop
        self._root = config.target.root
        self._collector = collector
        self._oracle_client = oracle_client
        self._pipeline = pipeline
        self._applier = applier
        self._store = state_store
        self._redactor = redactor or SecretRedactor()
        self._browser = browser
        self._clock = clock
        self._metrics = metrics or get_metrics()

        self._state = IterationState()
        self._attempts = AttemptTracker(self._loop.max_attempts_per_error)
        self._strategies = StrategyHistory(self._loop.strategy_history_size)
        self._fix_history: list[FixHistoryEntry] = []
        self._last_entry: dict[str, FixHistoryEntry] = {}
        self._seen: set[str] = set()
        self._carried_unresolved: list[UnresolvedError] = []
        self._token = CancellationToken()

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def collector(self) -> ErrorCollector:
        """The error queue, for wiring ingestion."""
        return self._collector

    @property
    def applier(self) -> FixApplier:
        """The patch writer, for rollback."""
        return self._applier

    @property
    def state(self) -> IterationState:
        """Live iteration state."""
        return self._state

    @property
    def status(self) -> LoopStatus:
        """Current state-machine status."""
        return self._state.status

    @property
    def fix_history(self) -> tuple[FixHistoryEntry, ...]:
        """Every attempt recorded so far, oldest first."""
        return tuple(self._fix_history)

    @property
    def strategy_history(self) -> StrategyHistory:
        """Strategy outcomes used for confidence adjustment."""
        return self._strategies

    def cancel(self, reason: str = "cancelled") -> None:
        """Stop after the in-flight iteration finishes."""
        log.warning("loop_cancel_requested", reason=reason)
        self._token.cancel(reason)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self, resume: bool = False, discard_state: bool = False) -> LoopReport:
        """Run the loop until it reaches a terminal status.

        Args:
            resume: Continue from the persisted state.
            discard_state: Drop an existing state file before a fresh run.

        Returns:
            The final report. A corrupted state file yields status ERROR.

        Raises:
            StaleStateError: If a fresh run would start over unresolved
                persisted state and ``discard_state`` is False.
        """
        started = self._clock()
        try:
            self._prepare(resume, discard_state)
        except StateCorruptedError as e:
            log.error("state_corrupted", error=str(e), path=str(self._store.path))
            self._state.status = LoopStatus.ERROR
            self._state.reason = str(e)
            return self._report(started)

        self._state.status = LoopStatus.RUNNING
        self._state.reason = ""
        if not self._state.started_at:
            self._state.started_at = started
        log.info(
            "loop_started",
            resume=resume,
            iteration=self._state.iteration,
            max_iterations=self._loop.max_iterations,
            parallelism=self._loop.parallelism,
            confidence_threshold=self._loop.confidence_threshold,
        )

        if self._loop.warmup > 0:
            ready = await self._collector.wait_for_errors(timeout=self._loop.warmup)
            log.info("warmup_finished", errors_queued=ready, queue_size=self._collector.queue_size)

        try:
            await self._drive(started)
        except (AutofixError, OSError) as e:
            log.exception("loop_failed", error=str(e))
            self._state.status = LoopStatus.ERROR
            self._state.reason = f"{type(e).__name__}: {e}"
            try:
                self._persist()
            except (AutofixError, OSError) as persist_error:
                log.error("state_persist_failed", error=str(persist_error))

        report = self._report(started)
        log.info(
            "loop_finished",
            status=report.status.value,
            reason=report.reason,
            iterations=report.iterations,
            fixed=report.fixed_errors,
            unresolved=len(report.unresolved),
        )
        return report

    def _prepare(self, resume: bool, discard_state: bool) -> None:
        persisted = self._store.load()

        if resume:
            if persisted is None:
                log.warning("no_state_to_resume", path=str(self._store.path))
                return
            self._restore(persisted)
            log.info(
                "state_resumed",
                iteration=persisted.state.iteration,
                previous_status=persisted.state.status.value,
            )
            return

        if persisted is None:
            return
        if discard_state:
            self._store.clear()
            return
        if persisted.has_unresolved_work:
            raise StaleStateError(
                f"{self._store.path} holds a {persisted.state.status.value} run with "
                f"{len(persisted.unresolved)} unresolved error(s); resume it or discard it"
            )
        # A cleanly converged previous run is simply replaced
        self._store.clear()

    def _restore(self, persisted: PersistedState) -> None:
        self._state = persisted.state
        self._fix_history = list(persisted.fix_history)
        self._last_entry = {e.error_key: e for e in self._fix_history}
        self._attempts.restore(persisted.attempts)
        self._strategies.restore(persisted.strategy_history)
        self._carried_unresolved = list(persisted.unresolved)
        self._seen = set(persisted.attempts) | set(self._last_entry)

    async def _drive(self, started: float) -> None:
        iterations_this_run = 0
        while True:
            if self._token.is_cancelled:
                self._stop(LoopStatus.STALLED, f"cancelled: {self._token.reason}")
                return

            errors = self._collector.drain(self._loop.batch_size)
            if not errors:
                unresolved = self._unresolved()
                if unresolved:
                    self._stop(
                        LoopStatus.STALLED,
                        f"queue empty but {len(unresolved)} error(s) remain unresolved",
                    )
                else:
                    self._stop(LoopStatus.CONVERGED, "no unresolved errors")
                return

            if iterations_this_run >= self._loop.max_iterations:
                self._stop(LoopStatus.STALLED, "maximum iterations reached")
                return
            budget = self._loop.max_duration
            if budget is not None and self._clock() - started >= budget:
                self._stop(LoopStatus.STALLED, f"time budget of {budget}s spent")
                return

            await self._run_iteration(errors)
            iterations_this_run += 1

            history = self._state.error_count_history
            if len(history) >= 2 and history[-1] >= history[-2]:
                self._stop(
                    LoopStatus.STALLED,
                    f"unresolved errors did not decrease ({history[-2]} -> {history[-1]})",
                )
                return

    def _stop(self, status: LoopStatus, reason: str) -> None:
        self._state.status = status
        self._state.reason = reason
        self._persist()
        if status == LoopStatus.STALLED:
            log.warning("loop_stalled", reason=reason, history=self._state.error_count_history)
        else:
            log.info("loop_converged", iterations=self._state.iteration)

    # -------------------------------------------------------------------------
    # Iteration
    # -------------------------------------------------------------------------

    async def _run_iteration(self, errors: list[ErrorRecord]) -> None:
        self._state.iteration += 1
        iteration = self._state.iteration
        iteration_started = self._clock()
        bind_context(iteration=iteration)
        try:
            for error in errors:
                self._seen.add(error.key)
            self._state.total_errors = len(self._seen)

            # Budget already spent in an earlier run
            for error in [e for e in errors if await self._attempts.is_exhausted(e.key)]:
                self._collector.retire(error.key, Resolution.EXHAUSTED, note="attempt budget already spent")
                errors.remove(error)
            log.info("iteration_started", errors=len(errors), queue_size=self._collector.queue_size)

            pool: WorkerPool[ErrorRecord, ErrorAttempt] = WorkerPool(
                self._process_error, size=self._loop.parallelism
            )
            results = await pool.map(errors)

            attempts: list[ErrorAttempt] = []
            for error, result in zip(errors, results, strict=True):
                if isinstance(result, Exception):
                    log.error("error_processing_failed", key=error.key, error=str(result))
                    attempts.append(
                        ErrorAttempt(error, FixOutcome.REJECTED, reason=f"processing failed: {result}")
                    )
                else:
                    attempts.append(result)

            await self._settle(iteration, attempts)

            count = len(self._unresolved_keys())
            self._state.error_count_history.append(count)
            self._persist()

            duration = self._clock() - iteration_started
            self._metrics.iteration_duration.observe(duration)
            log.info(
                "iteration_completed",
                unresolved=count,
                fixed_total=self._state.fixed_errors,
                duration=round(duration, 2),
            )
        finally:
            unbind_context("iteration")

    async def _process_error(self, error: ErrorRecord) -> ErrorAttempt:
        """generate -> validate for one error; nothing is written to disk here."""
        self._metrics.active_workers.inc()
        bind_context(error_key=error.key)
        try:
            context = await self._build_context(error)
            try:
                candidates = await self._oracle_client.generate(error, context, self._strategies)
            except RateLimitedError as e:
                # Not the error's fault, so no attempt is spent
                return ErrorAttempt(error, FixOutcome.RATE_LIMITED, reason=str(e))

            await self._attempts.record(error.key)
            if not candidates:
                return ErrorAttempt(error, FixOutcome.NO_CANDIDATES, reason="no candidates generated")

            threshold = self._loop.confidence_threshold
            eligible = [c for c in candidates if c.confidence >= threshold]
            below = len(candidates) - len(eligible)
            if below:
                self._metrics.candidates_skipped.inc(below)
                log.info("candidates_below_threshold", skipped=below, threshold=threshold)
            if not eligible:
                best = max(c.confidence for c in candidates)
                return ErrorAttempt(
                    error,
                    FixOutcome.REJECTED,
                    candidate=candidates[0],
                    reason=f"best confidence {best} below threshold {threshold}",
                    below_threshold=below,
                )

            failures: list[ValidationResult] = []
            for candidate in eligible:
                result = await self._pipeline.validate(candidate, error, context)
                if result.passed:
                    return ErrorAttempt(
                        error,
                        FixOutcome.APPLIED,
                        candidate=candidate,
                        validation=result,
                        below_threshold=below,
                        validated=len(failures) + 1,
                    )
                failures.append(result)

            return ErrorAttempt(
                error,
                FixOutcome.REJECTED,
                candidate=eligible[-1],
                validation=failures[-1],
                reason=f"validation failed: {failures[-1].summary()}",
                below_threshold=below,
                validated=len(eligible),
            )
        finally:
            unbind_context("error_key")
            self._metrics.active_workers.dec()

    async def _settle(self, iteration: int, attempts: list[ErrorAttempt]) -> None:
        """Apply passing candidates and fold every attempt into the state."""
        passing = [a for a in attempts if a.passed]
        applied: dict[str, AppliedFix] = {}
        if passing and self._loop.auto_apply:
            candidates = [a.candidate for a in passing if a.candidate is not None]
            for result in await self._applier.apply_batch(candidates):
                applied[result.candidate_id] = result

        for attempt in attempts:
            error = attempt.error
            outcome = attempt.outcome
            reason = attempt.reason
            file_path = attempt.candidate.patch.target_file if attempt.candidate else None

            self._state.skipped_fixes += attempt.below_threshold
            if attempt.validated and not attempt.passed:
                self._state.failed_fixes += attempt.validated
            elif attempt.validated > 1:
                self._state.failed_fixes += attempt.validated - 1

            if attempt.passed and attempt.candidate is not None:
                if not self._loop.auto_apply:
                    outcome = FixOutcome.DEFERRED
                    reason = "auto-apply disabled"
                    self._collector.retire(error.key, Resolution.DEFERRED, note=reason)
                else:
                    result = applied.get(attempt.candidate.id)
                    if result is not None and result.success:
                        outcome = FixOutcome.APPLIED
                        file_path = result.file_path
                        self._state.fixed_errors += 1
                        self._strategies.record(error.kind, attempt.candidate.strategy_tag, True)
                        self._collector.retire(
                            error.key, Resolution.FIXED, note=f"fixed by {attempt.candidate.id}"
                        )
                    else:
                        outcome = FixOutcome.APPLY_FAILED
                        reason = result.reason if result is not None else "not applied"
                        self._state.failed_fixes += 1
                        self._strategies.record(error.kind, attempt.candidate.strategy_tag, False)
            elif attempt.candidate is not None and attempt.validation is not None:
                self._strategies.record(error.kind, attempt.candidate.strategy_tag, False)

            entry = FixHistoryEntry(
                iteration=iteration,
                error_key=error.key,
                error_id=error.id,
                kind=error.kind.value,
                outcome=outcome,
                timestamp=self._clock(),
                candidate_id=attempt.candidate.id if attempt.candidate else None,
                strategy_tag=attempt.candidate.strategy_tag if attempt.candidate else None,
                file_path=file_path,
                score=round(attempt.validation.overall_score, 2) if attempt.validation else None,
                recommendation=attempt.validation.recommendation.value if attempt.validation else None,
                reason=reason,
            )
            self._fix_history.append(entry)
            self._last_entry[error.key] = entry
            log.info(
                "error_attempt_recorded",
                key=error.key,
                outcome=outcome.value,
                attempts=self._attempts.count(error.key),
                reason=reason,
            )

            if outcome in (FixOutcome.APPLIED, FixOutcome.DEFERRED):
                continue
            if await self._attempts.is_exhausted(error.key):
                self._collector.retire(
                    error.key,
                    Resolution.EXHAUSTED,
                    note=f"gave up after {self._attempts.count(error.key)} attempts: {reason}",
                )
                log.warning("error_attempts_exhausted", key=error.key, message=error.message[:120])

    async def _build_context(self, error: ErrorRecord) -> FixContext:
        """Source lines around the error, redacted, plus the reporter's context."""
        radius = self._config.oracle.context_lines
        start = max(1, error.line - radius)
        snippet = ""
        try:
            path = resolve_within(self._root, error.file)
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
            lines = split_lines(text)
            snippet = self._redactor.redact("\n".join(lines[start - 1 : error.line + radius]))
        except SecurityError as e:
            log.warning("context_source_rejected", file=error.file, error=str(e))
        except (OSError, UnicodeDecodeError) as e:
            log.debug("context_source_unavailable", file=error.file, error=str(e))

        return FixContext(
            source_snippet=snippet,
            snippet_start_line=start,
            recent_actions=error.context.recent_actions,
            state_snapshot=error.context.state_snapshot,
        )

    # -------------------------------------------------------------------------
    # Unresolved errors, persistence, report
    # -------------------------------------------------------------------------

    def _unresolved_keys(self) -> set[str]:
        """Errors still open: queued, or retired without a fix."""
        keys = {r.key for r in self._collector.drain(self._collector.queue_size)}
        keys.update(
            r.record.key
            for r in self._collector.history
            if r.resolution in (Resolution.EXHAUSTED, Resolution.DEFERRED)
        )
        # Earlier runs' leftovers count until this run fixes them
        fixed = {r.record.key for r in self._collector.history if r.resolution == Resolution.FIXED}
        keys.update(u.key for u in self._carried_unresolved if u.key not in fixed)
        return keys

    def _unresolved(self) -> list[UnresolvedError]:
        records: dict[str, ErrorRecord] = {}
        for retired in self._collector.history:
            if retired.resolution in (Resolution.EXHAUSTED, Resolution.DEFERRED):
                records[retired.record.key] = retired.record
        for record in self._collector.drain(self._collector.queue_size):
            records[record.key] = record

        unresolved = [self._describe(record) for record in records.values()]
        fixed = {r.record.key for r in self._collector.history if r.resolution == Resolution.FIXED}
        unresolved.extend(
            u for u in self._carried_unresolved if u.key not in records and u.key not in fixed
        )
        return unresolved

    def _describe(self, record: ErrorRecord) -> UnresolvedError:
        last = self._last_entry.get(record.key)
        return UnresolvedError(
            key=record.key,
            message=record.message,
            location=str(record.location),
            kind=record.kind.value,
            severity=record.severity.value,
            attempts=self._attempts.count(record.key),
            last_candidate_id=last.candidate_id if last else None,
            last_strategy=last.strategy_tag if last else None,
            rejection_reason=last.reason if last else "",
            recommendation=self._recommend(last),
        )

    def _recommend(self, last: FixHistoryEntry | None) -> str:
        if last is None:
            return "Not attempted yet; resume the loop"
        match last.outcome:
            case FixOutcome.DEFERRED:
                return f"Review and apply candidate {last.candidate_id} (score {last.score}) manually"
            case FixOutcome.RATE_LIMITED:
                return "Oracle request budget spent; resume later"
            case FixOutcome.NO_CANDIDATES:
                return "Manual review required: no automated fix available"
            case FixOutcome.APPLY_FAILED:
                return "Manual review required: the fix did not survive post-write verification"
            case FixOutcome.REJECTED if last.score is None:
                return "Manual review required: only low-confidence candidates were produced"
            case _:
                return f"Manual review required: best candidate scored {last.score} ({last.recommendation})"

    def _persist(self) -> None:
        self._store.save(
            PersistedState(
                state=self._state,
                fix_history=self._fix_history[-PERSISTED_FIX_HISTORY:],
                attempts=self._attempts.snapshot(),
                strategy_history=self._strategies.entries(),
                unresolved=self._unresolved(),
            )
        )

    def _report(self, started: float) -> LoopReport:
        return build_report(
            self._state,
            duration=self._clock() - started,
            fix_history=self._fix_history,
            unresolved=self._unresolved(),
            max_iterations=self._loop.max_iterations,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def setup_signal_handlers(self) -> None:
        """Turn SIGINT/SIGTERM into a graceful stop after the current iteration."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.cancel, f"received {sig.name}")
            log.debug("signal_handler_registered", signal=sig.name)

    async def aclose(self) -> None:
        """Release adapters."""
        close = getattr(self._browser, "aclose", None)
        if close is not None:
            await close()


# =============================================================================
# Factory
# =============================================================================


def create_orchestrator(config: AutofixConfig) -> LoopOrchestrator:
    """Build an orchestrator with all adapters chosen by configuration.

    Raises:
        ValueError: If configuration is invalid.
    """
    # Imported here so unused SDKs are not loaded
    from autofix_loop.adapters.toolchain import create_toolchain

    metrics = get_metrics()
    redactor = SecretRedactor()
    root = config.target.root
    toolchain = create_toolchain(config.target.language)
    browser = _create_browser(config)

    collector = ErrorCollector(config.collector, metrics=metrics)
    oracle_client = FixOracleClient(
        config.oracle,
        _create_oracle(config, redactor),
        language=config.target.language,
        metrics=metrics,
    )
    pipeline = ValidationPipeline(
        config.validation,
        toolchain,
        root,
        browser=browser,
        browser_config=config.browser,
        metrics=metrics,
    )
    applier = FixApplier(root, toolchain, BackupStore(config.applier.backup_dir), metrics=metrics)

    return LoopOrchestrator(
        config,
        collector,
        oracle_client,
        pipeline,
        applier,
        StateStore(config.loop.state_file),
        redactor=redactor,
        browser=browser,
        metrics=metrics,
    )


def _create_oracle(config: AutofixConfig, redactor: SecretRedactor) -> FixOracle | None:
    provider = config.oracle.provider
    if provider == "none":
        return None
    if provider == "anthropic":
        if not config.oracle.anthropic:
            raise ValueError("Anthropic configuration required when provider is 'anthropic'")
        from autofix_loop.adapters.oracle.anthropic import AnthropicOracle

        return AnthropicOracle(config.oracle.anthropic, config.retry, redactor)
    raise ValueError(f"Unsupported oracle provider: {provider}")


def _create_browser(config: AutofixConfig) -> BrowserAutomation | None:
    if not config.browser.enabled:
        return None
    from autofix_loop.adapters.browser.playwright import PlaywrightBrowser

    return PlaywrightBrowser(config.browser)


def create_applier(config: AutofixConfig) -> FixApplier:
    """Applier over the configured backup store, for the rollback command."""
    from autofix_loop.adapters.toolchain import create_toolchain

    return FixApplier(
        config.target.root,
        create_toolchain(config.target.language),
        BackupStore(config.applier.backup_dir),
    )


__all__ = ["ErrorAttempt", "LoopOrchestrator", "create_applier", "create_orchestrator"]
