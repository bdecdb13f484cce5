"""Multi-check validation gate for fix candidates.

Five independent checks each yield a 0-100 score:

    syntax       0.20  fragment parses; risky constructs cost points
    lint         0.20  no new static-rule violations in the patched file
    functional   0.35  replaying the triggering actions no longer fires the error
    regression   0.15  the target's own test command still passes
    performance  0.10  a micro-benchmark stays within a multiple of baseline

A check that cannot run (no browser, no linter, no test command) is skipped
and its weight is dropped; the overall score is renormalized over the checks
that ran. A check that raises counts as a failed check with score 0.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
import textwrap
from collections import Counter
from pathlib import Path
from typing import Any

import structlog

from autofix_loop.config.schema import BrowserConfig, ValidationConfig
from autofix_loop.core.error_collector import normalize_message
from autofix_loop.core.patching import render_patch
from autofix_loop.interfaces.browser import BrowserAutomation
from autofix_loop.interfaces.toolchain import Toolchain
from autofix_loop.models.error import ErrorRecord
from autofix_loop.models.fix import FixCandidate, FixContext
from autofix_loop.models.validation import (
    CHECK_WEIGHTS,
    CheckName,
    CheckResult,
    Recommendation,
    ValidationResult,
)
from autofix_loop.utils.async_helpers import AutofixError, ValidationError
from autofix_loop.utils.metrics import MetricsRegistry, get_metrics
from autofix_loop.utils.safe_subprocess import (
    CommandNotFoundError,
    CommandTimeoutError,
    SafeCommandRunner,
)
from autofix_loop.utils.security import resolve_within

log = structlog.get_logger()

RISK_PENALTY = 15
LINT_ERROR_PENALTY = 25
LINT_WARNING_PENALTY = 10
PARTIAL_FUNCTIONAL_SCORE = 40.0


def combine_scores(per_check: dict[CheckName, CheckResult]) -> float:
    """Weighted mean over the checks that ran, in [0, 100].

    Returns 0 when nothing ran, so an unverifiable candidate never passes.
    """
    ran = [(CHECK_WEIGHTS[name], r.score) for name, r in per_check.items() if not r.skipped]
    total_weight = sum(weight for weight, _ in ran)
    if total_weight <= 0:
        return 0.0
    score = sum(weight * value for weight, value in ran) / total_weight
    return max(0.0, min(100.0, score))


def performance_score(ratio: float, multiple: float) -> float:
    """Map post/pre benchmark ratio to a score.

    100 at or below baseline, 50 exactly at the allowed multiple, 0 at twice
    the allowed slowdown.
    """
    if ratio <= 1.0:
        return 100.0
    score = 100.0 * (1.0 - (ratio - 1.0) / (2.0 * (multiple - 1.0)))
    return max(0.0, min(100.0, score))


def replay_expression(action: dict[str, Any]) -> str | None:
    """Translate a recorded user action into a page expression."""
    action_type = action.get("type")
    selector = action.get("selector")
    if not selector and action.get("target"):
        selector = f"#{action['target']}"

    if action_type == "click" and selector:
        return f"document.querySelector({json.dumps(selector)})?.click()"
    if action_type == "input" and selector:
        value = json.dumps(str(action.get("value", "")))
        return (
            f"(() => {{ const el = document.querySelector({json.dumps(selector)});"
            f" if (el) {{ el.value = {value};"
            f" el.dispatchEvent(new Event('input', {{ bubbles: true }})); }} }})()"
        )
    if action_type == "evaluate" and action.get("expression"):
        return str(action["expression"])
    return None


class ValidationPipeline:
    """Scores a candidate and recommends whether to apply it.

    Example:
        pipeline = ValidationPipeline(config.validation, toolchain, Path("."))
        result = await pipeline.validate(candidate, error)
        if result.passed:
            ...
    """

    def __init__(
        self,
        config: ValidationConfig,
        toolchain: Toolchain,
        target_root: Path,
        browser: BrowserAutomation | None = None,
        browser_config: BrowserConfig | None = None,
        runner: SafeCommandRunner | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Validation configuration.
            toolchain: Syntax and lint provider for the target language.
            target_root: Directory holding the target's sources.
            browser: Browser automation for replay and benchmarks, if any.
            browser_config: Browser timings (settle time).
            runner: Subprocess runner for the regression command.
            metrics: Metrics registry (defaults to the process-wide one).
        """
        self._config = config
        self._toolchain = toolchain
        self._root = target_root
        self._browser = browser
        self._browser_config = browser_config or BrowserConfig()
        self._runner = runner or SafeCommandRunner(default_timeout=config.regression_timeout)
        self._metrics = metrics or get_metrics()

    @property
    def threshold(self) -> float:
        """Minimum overall score for ``passed``."""
        return self._config.pass_threshold

    async def validate(
        self,
        candidate: FixCandidate,
        error: ErrorRecord,
        context: FixContext | None = None,
    ) -> ValidationResult:
        """Run every check and combine the scores.

        Args:
            candidate: Candidate to validate.
            error: Error the candidate claims to fix.
            context: Fix context; its recent actions drive the replay.

        Returns:
            ValidationResult. Never raises for check failures.
        """
        log.info(
            "validating_candidate",
            candidate_id=candidate.id,
            strategy=candidate.strategy_tag,
            confidence=candidate.confidence,
        )

        try:
            path = resolve_within(self._root, candidate.patch.target_file)
            original = await asyncio.to_thread(path.read_text, encoding="utf-8")
            patched = render_patch(original, candidate.patch)
        except (AutofixError, OSError, UnicodeDecodeError) as e:
            log.warning("candidate_unusable", candidate_id=candidate.id, error=str(e))
            return self._finish(
                candidate,
                {CheckName.SYNTAX: CheckResult(CheckName.SYNTAX, False, 0.0, detail=str(e))},
            )

        actions = context.recent_actions if context else error.context.recent_actions

        checks = {
            CheckName.SYNTAX: self._check_syntax(candidate),
            CheckName.LINT: self._check_lint(candidate, original, patched),
            CheckName.FUNCTIONAL: self._check_functional(error, patched, actions),
            CheckName.REGRESSION: self._check_regression(candidate, patched),
            CheckName.PERFORMANCE: self._check_performance(patched),
        }
        outcomes = await asyncio.gather(*checks.values(), return_exceptions=True)

        per_check: dict[CheckName, CheckResult] = {}
        for name, outcome in zip(checks, outcomes, strict=True):
            if isinstance(outcome, CheckResult):
                per_check[name] = outcome
            elif isinstance(outcome, Exception):
                wrapped = ValidationError(f"{name} check raised: {outcome}")
                log.warning("validation_check_raised", check=name.value, error=str(wrapped))
                per_check[name] = CheckResult(name, False, 0.0, detail=str(wrapped))
            else:
                raise outcome

        return self._finish(candidate, per_check)

    def _finish(
        self, candidate: FixCandidate, per_check: dict[CheckName, CheckResult]
    ) -> ValidationResult:
        overall = combine_scores(per_check)
        syntax = per_check.get(CheckName.SYNTAX)
        # A patch that does not parse never passes, whatever the other checks say
        unparsable = syntax is not None and not syntax.skipped and not syntax.passed
        passed = overall >= self._config.pass_threshold and not unparsable
        recommendation = Recommendation.DO_NOT_APPLY if unparsable else Recommendation.from_score(overall)
        result = ValidationResult(
            candidate_id=candidate.id,
            per_check=per_check,
            overall_score=overall,
            passed=passed,
            recommendation=recommendation,
            failed_checks=tuple(
                name for name, r in per_check.items() if not r.skipped and not r.passed
            ),
        )
        self._metrics.validations.inc(labels={"passed": str(passed).lower()})
        log.info(
            "candidate_validated",
            candidate_id=candidate.id,
            passed=passed,
            recommendation=result.recommendation.value,
            summary=result.summary(),
        )
        return result

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    async def _check_syntax(self, candidate: FixCandidate) -> CheckResult:
        fragment = textwrap.dedent(candidate.patch.replacement_code)
        if not fragment.strip():
            return CheckResult(CheckName.SYNTAX, True, 100.0, detail="deletion")

        report = await self._toolchain.check_syntax(fragment, candidate.patch.target_file)
        if report.skipped:
            return CheckResult.skip(CheckName.SYNTAX, report.message or "no parser available")
        if not report.ok:
            return CheckResult(CheckName.SYNTAX, False, 0.0, detail=report.message)

        risks = self._toolchain.find_risks(fragment)
        score = max(0.0, 100.0 - RISK_PENALTY * len(risks))
        detail = ", ".join(sorted({risk.pattern for risk in risks}))
        return CheckResult(CheckName.SYNTAX, True, score, detail=detail)

    async def _check_lint(self, candidate: FixCandidate, original: str, patched: str) -> CheckResult:
        filename = candidate.patch.target_file
        baseline = await self._toolchain.lint(original, filename)
        after = await self._toolchain.lint(patched, filename)
        if baseline is None or after is None:
            return CheckResult.skip(CheckName.LINT, "no linter available")

        # Only violations the patch introduced count
        remaining = Counter(v.signature for v in baseline)
        introduced = []
        for violation in after:
            if remaining[violation.signature] > 0:
                remaining[violation.signature] -= 1
            else:
                introduced.append(violation)

        errors = [v for v in introduced if v.severity == "error"]
        warnings = [v for v in introduced if v.severity != "error"]
        score = max(0.0, 100.0 - LINT_ERROR_PENALTY * len(errors) - LINT_WARNING_PENALTY * len(warnings))
        detail = "; ".join(f"{v.rule}@{v.line}: {v.message}" for v in introduced[:5])
        return CheckResult(CheckName.LINT, not errors, score, detail=detail)

    async def _check_functional(
        self,
        error: ErrorRecord,
        patched: str,
        actions: tuple[dict[str, Any], ...],
    ) -> CheckResult:
        if self._browser is None:
            return CheckResult.skip(CheckName.FUNCTIONAL, "no browser configured")
        if self._toolchain.language != "javascript":
            return CheckResult.skip(CheckName.FUNCTIONAL, "replay needs a browser-side target")

        session = await self._browser.open_session()
        try:
            before = await self._browser.observe(session)
            await self._browser.inject(session, patched)
            injected = len((await self._browser.observe(session)).console_errors)

            for action in actions:
                expression = replay_expression(action)
                if expression is None:
                    continue
                try:
                    await self._browser.evaluate(session, expression)
                except ValidationError as e:
                    log.debug("replay_action_failed", action=action.get("type"), error=str(e))
            await asyncio.sleep(self._browser_config.settle_time)

            after = await self._browser.observe(session)
        finally:
            await self._browser.close_session(session)

        target = normalize_message(error.message)
        post_patch = [normalize_message(m) for m in after.console_errors[injected:]]
        still_fires = any(target in message or message in target for message in post_patch)
        known = {normalize_message(m) for m in before.distinct_errors}
        new_errors = {
            m
            for m in post_patch
            if m not in known and not (target in m or m in target)
        } | {normalize_message(m) for m in after.network_failures} - known

        if still_fires:
            return CheckResult(CheckName.FUNCTIONAL, False, 0.0, detail="original error still fires")
        if new_errors:
            detail = f"new errors: {'; '.join(sorted(new_errors)[:3])}"
            return CheckResult(CheckName.FUNCTIONAL, False, PARTIAL_FUNCTIONAL_SCORE, detail=detail)
        return CheckResult(CheckName.FUNCTIONAL, True, 100.0)

    async def _check_regression(self, candidate: FixCandidate, patched: str) -> CheckResult:
        command = self._config.regression_command
        if not command:
            return CheckResult.skip(CheckName.REGRESSION, "no regression suite configured")

        workdir = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix="autofix-regression-"))
        try:
            copy = workdir / "target"
            await asyncio.to_thread(
                shutil.copytree,
                self._root,
                copy,
                ignore=shutil.ignore_patterns(*self._config.copy_ignore),
            )
            target = resolve_within(copy, candidate.patch.target_file)
            await asyncio.to_thread(target.write_text, patched, encoding="utf-8")

            try:
                result = await self._runner.run(
                    command, timeout=self._config.regression_timeout, cwd=copy
                )
            except CommandNotFoundError as e:
                return CheckResult(CheckName.REGRESSION, False, 0.0, detail=str(e))
            except CommandTimeoutError as e:
                return CheckResult(CheckName.REGRESSION, False, 0.0, detail=str(e))
        finally:
            await asyncio.to_thread(shutil.rmtree, workdir, True)

        if result.success:
            return CheckResult(CheckName.REGRESSION, True, 100.0)
        return CheckResult(
            CheckName.REGRESSION,
            False,
            0.0,
            detail=f"exit {result.return_code}: {result.output[-300:]}",
        )

    async def _check_performance(self, patched: str) -> CheckResult:
        expression = self._config.benchmark_expression
        if self._browser is None or not expression:
            return CheckResult.skip(CheckName.PERFORMANCE, "no benchmark configured")
        if self._toolchain.language != "javascript":
            return CheckResult.skip(CheckName.PERFORMANCE, "benchmark needs a browser-side target")

        runs = self._config.benchmark_runs
        bench = (
            "async () => { const t0 = performance.now();"
            f" for (let i = 0; i < {runs}; i++) {{ await (async () => ({expression}))(); }}"
            " return performance.now() - t0; }"
        )

        session = await self._browser.open_session()
        try:
            baseline = float(await self._browser.evaluate(session, bench))
            await self._browser.inject(session, patched)
            after = float(await self._browser.evaluate(session, bench))
        finally:
            await self._browser.close_session(session)

        ratio = after / max(baseline, 1e-6)
        multiple = self._config.performance_multiple
        return CheckResult(
            CheckName.PERFORMANCE,
            ratio <= multiple,
            performance_score(ratio, multiple),
            detail=f"{baseline:.2f}ms -> {after:.2f}ms (x{ratio:.2f})",
        )
