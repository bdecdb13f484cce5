"""Client for the fix-generation oracle.

Wraps any FixOracle with the policies the loop depends on:
- a TTL cache keyed by error key, so repeated requests for the same defect
  do not hit the oracle again within ``cache_ttl``
- a rolling hourly request budget that fails fast when spent
- a timeout around every oracle call
- a deterministic template fallback when the oracle times out, fails or has
  nothing to offer
- confidence re-weighting from the historical success of each strategy
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import replace

import structlog
from cachetools import TTLCache

from autofix_loop.config.schema import OracleConfig
from autofix_loop.core.fix_templates import template_fixes
from autofix_loop.interfaces.oracle import FixOracle
from autofix_loop.models.error import ErrorKind, ErrorRecord
from autofix_loop.models.fix import (
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
from autofix_loop.utils.async_helpers import (
    GenerationError,
    HourlyRateCounter,
    RateLimitedError,
    SecurityError,
    TimeoutError,
    with_timeout,
)
from autofix_loop.utils.metrics import MetricsRegistry, get_metrics

log = structlog.get_logger()


class StrategyHistory:
    """Bounded record of which strategies worked for which error kinds.

    Owned by the orchestrator and passed into ``generate``; the oldest
    outcomes fall off once ``capacity`` is reached.
    """

    def __init__(self, capacity: int = 200) -> None:
        self._entries: deque[tuple[str, str, bool]] = deque(maxlen=capacity)

    def record(self, kind: ErrorKind | str, strategy_tag: str, success: bool) -> None:
        """Remember one outcome."""
        self._entries.append((str(kind), strategy_tag, success))

    def has_succeeded(self, kind: ErrorKind | str, strategy_tag: str) -> bool:
        """True if ``strategy_tag`` has fixed an error of ``kind`` before."""
        kind = str(kind)
        return any(k == kind and s == strategy_tag and ok for k, s, ok in self._entries)

    def entries(self) -> list[tuple[str, str, bool]]:
        """Snapshot for persistence."""
        return list(self._entries)

    def restore(self, entries: Iterable[Iterable[object]]) -> None:
        """Reload persisted outcomes."""
        self._entries.clear()
        for kind, tag, ok in entries:
            self._entries.append((str(kind), str(tag), bool(ok)))


class FixOracleClient:
    """Produces ranked fix candidates for one error at a time.

    Example:
        client = FixOracleClient(config.oracle, oracle, language="javascript")
        candidates = await client.generate(error, context, history)
    """

    def __init__(
        self,
        config: OracleConfig,
        oracle: FixOracle | None,
        language: str = "javascript",
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Oracle configuration.
            oracle: External oracle, or None to rely on templates only.
            language: Target language, selects template dialect.
            clock: Monotonic time source for the cache and rate window.
            metrics: Metrics registry (defaults to the process-wide one).
        """
        self._config = config
        self._oracle = oracle
        self._language = language
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._cache: TTLCache[str, tuple[OracleProposal, ...]] = TTLCache(
            maxsize=config.cache_size, ttl=config.cache_ttl, timer=clock
        )
        self._rate = HourlyRateCounter(config.max_requests_per_hour, clock=clock)

    @property
    def requests_this_hour(self) -> int:
        """Oracle requests counted against the hourly budget."""
        return self._rate.used

    async def generate(
        self,
        error: ErrorRecord,
        context: FixContext,
        history: StrategyHistory | None = None,
    ) -> list[FixCandidate]:
        """Return candidates for ``error`` sorted by descending confidence.

        Args:
            error: Error to fix.
            context: Source snippet, recent actions and state snapshot.
            history: Strategy outcomes used for the confidence bonus.

        Returns:
            Candidates, possibly empty when neither the oracle nor any
            template has a proposal.

        Raises:
            RateLimitedError: If the hourly budget is spent.
        """
        if self._oracle is None:
            proposals = template_fixes(error, context, self._language)
            self._metrics.oracle_fallbacks.inc(labels={"reason": "no_oracle"})
            return self._to_candidates(proposals, error, history, CandidateSource.TEMPLATE)

        cached = self._cache.get(error.key)
        if cached is not None:
            self._metrics.oracle_cache_hits.inc()
            log.debug("oracle_cache_hit", key=error.key, proposals=len(cached))
            if not cached:
                proposals = template_fixes(error, context, self._language)
                return self._to_candidates(proposals, error, history, CandidateSource.TEMPLATE)
            return self._to_candidates(cached, error, history, CandidateSource.ORACLE)

        if not self._rate.try_acquire():
            retry_after = self._rate.retry_after()
            self._metrics.rate_limits_hit.inc()
            log.warning("oracle_rate_limited", key=error.key, retry_after=round(retry_after, 1))
            raise RateLimitedError(
                f"Oracle budget of {self._rate.limit}/hour spent", retry_after=retry_after
            )

        outcome = await self._ask_oracle(error, context)
        return self._decide(outcome, error, context, history)

    async def _ask_oracle(self, error: ErrorRecord, context: FixContext) -> OracleOutcome:
        if self._oracle is None:
            return OracleFailed(reason="no oracle configured")
        self._metrics.oracle_requests.inc()
        started = self._clock()
        try:
            proposals = await with_timeout(
                self._oracle.propose_fixes(error, context),
                self._config.timeout,
                f"Oracle did not answer within {self._config.timeout}s",
            )
        except TimeoutError:
            return OracleTimedOut(timeout=self._config.timeout)
        except (GenerationError, SecurityError) as e:
            return OracleFailed(reason=str(e))
        except Exception as e:
            # An oracle bug must not take the loop down with it
            log.exception("oracle_unexpected_error", key=error.key)
            return OracleFailed(reason=f"{type(e).__name__}: {e}")
        finally:
            self._metrics.oracle_latency.observe(self._clock() - started)
        return OracleOk(proposals=tuple(proposals))

    def _decide(
        self,
        outcome: OracleOutcome,
        error: ErrorRecord,
        context: FixContext,
        history: StrategyHistory | None,
    ) -> list[FixCandidate]:
        """Single point that picks the oracle's answer or the template fallback."""
        match outcome:
            case OracleOk(proposals=proposals) if proposals:
                self._cache[error.key] = proposals
                log.info("oracle_proposals_received", key=error.key, count=len(proposals))
                return self._to_candidates(proposals, error, history, CandidateSource.ORACLE)
            case OracleOk():
                self._cache[error.key] = ()
                reason = "oracle returned no proposals"
            case OracleTimedOut(timeout=timeout):
                reason = f"oracle timed out after {timeout}s"
            case OracleFailed(reason=failure):
                reason = f"oracle failed: {failure}"

        self._metrics.oracle_fallbacks.inc(labels={"reason": type(outcome).__name__})
        log.warning("oracle_fallback_to_templates", key=error.key, reason=reason)
        proposals = template_fixes(error, context, self._language)
        return self._to_candidates(proposals, error, history, CandidateSource.TEMPLATE)

    def adjust_confidence(
        self,
        base: int,
        kind: ErrorKind,
        strategy_tag: str,
        patch: Patch,
        history: StrategyHistory | None,
    ) -> int:
        """Apply the strategy bonus and complexity penalty, clamped to [0, 100]."""
        confidence = base
        if history is not None and history.has_succeeded(kind, strategy_tag):
            confidence += self._config.success_bonus
        if patch.size > self._config.complexity_line_threshold:
            confidence -= self._config.complexity_penalty
        return max(0, min(100, confidence))

    def _to_candidates(
        self,
        proposals: Iterable[OracleProposal],
        error: ErrorRecord,
        history: StrategyHistory | None,
        source: CandidateSource,
    ) -> list[FixCandidate]:
        now = time.time()
        candidates = []
        for proposal in proposals:
            patch = Patch(
                target_file=proposal.target_file or error.file,
                start_line=proposal.start_line,
                end_line=proposal.end_line,
                replacement_code=proposal.code,
            )
            candidate = FixCandidate(
                id=f"fix-{uuid.uuid4().hex[:12]}",
                error_id=error.id,
                patch=patch,
                confidence=max(0, min(100, proposal.confidence)),
                strategy_tag=proposal.strategy_tag,
                explanation=proposal.explanation,
                generated_at=now,
                source=source,
            )
            adjusted = self.adjust_confidence(
                candidate.confidence, error.kind, candidate.strategy_tag, patch, history
            )
            candidates.append(replace(candidate, confidence=adjusted))

        # sorted() is stable, so equal confidences keep the producer's ranking
        return sorted(candidates, key=lambda c: c.confidence, reverse=True)
