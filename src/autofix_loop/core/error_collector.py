"""Deduplicating, bounded error queue.

The collector is the only owner of ErrorRecord lifecycle:
- ``capture`` merges repeats inside the dedup window and enqueues the rest
- ``drain`` hands out prioritized snapshots without removing anything
- ``retire`` moves a record to the terminal history once it is fixed,
  exhausted or deferred

Capture never awaits and never raises to the reporter, so an instrumented
target can call it from a socket handler without back-pressure.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Callable
from typing import Any

import structlog

from autofix_loop.config.schema import CollectorConfig
from autofix_loop.core.classifier import classify_kind, classify_severity
from autofix_loop.models.error import (
    ErrorContext,
    ErrorRecord,
    RawError,
    Resolution,
    RetiredError,
)
from autofix_loop.utils.metrics import MetricsRegistry, get_metrics
from autofix_loop.utils.security import sanitize_for_logging

log = structlog.get_logger()

CAPTURED = "captured"
MAX_NORMALIZED_LENGTH = 200

Listener = Callable[[str, ErrorRecord], None]

_WHITESPACE = re.compile(r"\s+")
_NUMBERS = re.compile(r"\d+")


def normalize_message(message: str) -> str:
    """Reduce a message to the part that identifies the defect.

    Counters, ids and timestamps embedded in messages would otherwise turn
    one recurring error into many.
    """
    text = _WHITESPACE.sub(" ", message.strip())
    text = _NUMBERS.sub("<n>", text)
    return text[:MAX_NORMALIZED_LENGTH]


def error_key(file: str, line: int, message: str) -> str:
    """Identity of an error: hash of location and normalized message."""
    raw = f"{file}:{line}:{normalize_message(message)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class ErrorCollector:
    """Ingests raw error reports and maintains the active queue.

    Example:
        collector = ErrorCollector(CollectorConfig())
        collector.capture(RawError("x is not defined", SourceLocation("game.js", 12)))
        batch = collector.drain(10)
    """

    def __init__(
        self,
        config: CollectorConfig | None = None,
        clock: Callable[[], float] = time.time,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the collector.

        Args:
            config: Collector configuration.
            clock: Wall-clock source in seconds.
            metrics: Metrics registry (defaults to the process-wide one).
        """
        self._config = config or CollectorConfig()
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._critical = frozenset(self._config.critical_components)

        # Insertion order doubles as arrival order for eviction
        self._active: OrderedDict[str, ErrorRecord] = OrderedDict()
        self._history: list[RetiredError] = []
        self._actions: deque[dict[str, Any]] = deque(maxlen=self._config.max_action_history)
        self._state_snapshot: dict[str, Any] | None = None
        self._listeners: list[Listener] = []
        self._ready = asyncio.Event()

        self._stats = {"captured": 0, "duplicates": 0, "evicted": 0, "retired": 0}

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def capture(self, raw: RawError, context: ErrorContext | None = None) -> ErrorRecord:
        """Record one error observation.

        Args:
            raw: Error as reported by the target.
            context: Context the reporter attached, if any.

        Returns:
            The new record, or the existing record the observation was merged into.
        """
        now = self._clock()
        message = sanitize_for_logging(raw.message)
        key = error_key(raw.location.file, raw.location.line, message)

        existing = self._active.get(key)
        if existing is not None and now - existing.last_seen_at < self._config.dedup_window:
            existing.occurrence_count += 1
            existing.last_seen_at = now
            self._stats["duplicates"] += 1
            self._metrics.errors_duplicate.inc()
            log.debug("duplicate_error_merged", key=key, occurrences=existing.occurrence_count)
            return existing

        kind = raw.kind or classify_kind(message)
        severity = raw.severity or classify_severity(kind, raw.component, self._critical)
        record = ErrorRecord(
            id=f"err-{uuid.uuid4().hex[:12]}",
            key=key,
            kind=kind,
            severity=severity,
            message=message,
            location=raw.location,
            stack_trace=raw.stack_trace,
            component=raw.component,
            context=self._enrich(context),
            first_seen_at=now,
            last_seen_at=now,
        )

        if existing is not None:
            # Same defect resurfacing after the window: fresh record, same slot count
            record.first_seen_at = existing.first_seen_at
            record.occurrence_count = existing.occurrence_count + 1
            del self._active[key]
        elif len(self._active) >= self._config.max_queue_size:
            evicted_key, evicted = self._active.popitem(last=False)
            self._stats["evicted"] += 1
            self._metrics.errors_evicted.inc()
            log.warning(
                "error_queue_full_evicting_oldest",
                evicted_key=evicted_key,
                evicted_message=evicted.message[:120],
                queue_size=len(self._active),
            )

        self._active[key] = record
        self._stats["captured"] += 1
        self._metrics.errors_captured.inc(labels={"severity": severity.value})
        self._metrics.queue_depth.set(len(self._active))
        log.info(
            "error_captured",
            key=key,
            kind=kind.value,
            severity=severity.value,
            location=str(raw.location),
            queue_size=len(self._active),
        )

        self._ready.set()
        self._emit(CAPTURED, record)
        return record

    def _enrich(self, context: ErrorContext | None) -> ErrorContext:
        """Attach recent actions and the last state snapshot."""
        context = context or ErrorContext()
        recent = list(self._actions)[-self._config.actions_per_error :] if self._config.actions_per_error else []
        return ErrorContext(
            recent_actions=context.recent_actions or tuple(recent),
            state_snapshot=context.state_snapshot if context.state_snapshot is not None else self._state_snapshot,
            extra=dict(context.extra),
        )

    def record_action(self, action: dict[str, Any]) -> None:
        """Remember a user action for replay context."""
        entry = dict(action)
        entry.setdefault("timestamp", self._clock())
        self._actions.append(entry)
        log.debug("action_recorded", action_type=entry.get("type"))

    def update_state(self, snapshot: dict[str, Any]) -> None:
        """Remember the target's latest state snapshot."""
        self._state_snapshot = dict(snapshot)
        log.debug("state_snapshot_updated")

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for collector events.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str, record: ErrorRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, record)
            except Exception as e:
                log.warning("collector_listener_failed", event_name=event, error=str(e))

    async def wait_for_errors(self, timeout: float | None = None) -> bool:
        """Wait until at least one error is queued.

        Returns:
            True if errors are queued, False if the timeout expired first.
        """
        if self._active:
            return True
        self._ready.clear()
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except TimeoutError:
            return bool(self._active)
        return True

    # -------------------------------------------------------------------------
    # Consumption
    # -------------------------------------------------------------------------

    def _priority(self, record: ErrorRecord) -> tuple[int, int, float, str]:
        return (
            record.severity.rank,
            0 if record.component in self._critical else 1,
            -record.last_seen_at,
            record.key,
        )

    def drain(self, max_count: int) -> list[ErrorRecord]:
        """Return up to ``max_count`` queued records, highest priority first.

        Records stay queued until retired, so an interrupted iteration loses
        nothing.

        Order: severity, then critical components ahead of others of the same
        severity, then most recently seen.
        """
        if max_count <= 0:
            return []
        return sorted(self._active.values(), key=self._priority)[:max_count]

    def retire(self, key: str, resolution: Resolution, note: str = "") -> RetiredError | None:
        """Move a record from the queue to the terminal history."""
        record = self._active.pop(key, None)
        if record is None:
            return None
        retired = RetiredError(
            record=record, resolution=resolution, retired_at=self._clock(), note=note
        )
        self._history.append(retired)
        self._stats["retired"] += 1
        self._metrics.queue_depth.set(len(self._active))
        log.info("error_retired", key=key, resolution=resolution.value, note=note)
        return retired

    def get(self, key: str) -> ErrorRecord | None:
        """Look up an active record by key."""
        return self._active.get(key)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def queue_size(self) -> int:
        """Number of active records."""
        return len(self._active)

    @property
    def history(self) -> tuple[RetiredError, ...]:
        """All retired records, oldest first."""
        return tuple(self._history)

    @property
    def recent_actions(self) -> tuple[dict[str, Any], ...]:
        """Retained user actions, oldest first."""
        return tuple(self._actions)

    @property
    def stats(self) -> dict[str, int]:
        """Ingestion counters."""
        return {**self._stats, "queue_size": len(self._active), "history": len(self._history)}
