"""Tests for the validation pipeline."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from autofix_loop.config.schema import BrowserConfig, ValidationConfig
from autofix_loop.core.validation_pipeline import (
    ValidationPipeline,
    combine_scores,
    performance_score,
    replay_expression,
)
from autofix_loop.models.browser import Observation, SessionHandle
from autofix_loop.models.validation import (
    CheckName,
    CheckResult,
    Recommendation,
    SyntaxReport,
)
from autofix_loop.utils.metrics import get_metrics
from autofix_loop.utils.safe_subprocess import CommandResult, CommandTimeoutError

TYPE_ERROR = "Cannot read properties of undefined (reading 'hp')"

GAME_JS = """\
function heal(player) {
  return player.hp + 1;
}
"""


class FakeJsToolchain:
    """JavaScript toolchain that accepts everything."""

    @property
    def language(self) -> str:
        return "javascript"

    async def check_syntax(self, source: str, filename: str) -> SyntaxReport:
        return SyntaxReport(ok=True)

    async def lint(self, source: str, filename: str) -> list:
        return []

    def find_risks(self, code: str) -> list:
        return []


class FakeBrowser:
    """Browser whose console output is scripted per phase."""

    def __init__(
        self,
        on_load: tuple[str, ...] = (),
        on_inject: tuple[str, ...] = (),
        on_replay: tuple[str, ...] = (),
        timings: tuple[float, ...] = (10.0, 10.0),
    ) -> None:
        self.on_load = on_load
        self.on_inject = on_inject
        self.on_replay = on_replay
        self.timings = list(timings)
        self.console: list[str] = []
        self.injected: list[str] = []
        self.expressions: list[str] = []
        self.closed = 0

    async def open_session(self) -> SessionHandle:
        self.console = list(self.on_load)
        return SessionHandle("s1")

    async def inject(self, session: SessionHandle, code: str) -> None:
        self.injected.append(code)
        self.console.extend(self.on_inject)

    async def evaluate(self, session: SessionHandle, expression: str) -> float | None:
        if "performance.now()" in expression:
            return self.timings.pop(0)
        self.expressions.append(expression)
        self.console.extend(self.on_replay)
        self.on_replay = ()
        return None

    async def observe(self, session: SessionHandle) -> Observation:
        return Observation(console_errors=tuple(self.console))

    async def close_session(self, session: SessionHandle) -> None:
        self.closed += 1


@pytest.fixture
def js_root(tmp_path: Path) -> Path:
    """Return a target root holding a small script."""
    (tmp_path / "game.js").write_text(GAME_JS, encoding="utf-8")
    return tmp_path


def js_pipeline(root: Path, browser: FakeBrowser, **config) -> ValidationPipeline:
    return ValidationPipeline(
        ValidationConfig(**config),
        FakeJsToolchain(),
        root,
        browser=browser,
        browser_config=BrowserConfig(settle_time=0.0),
    )


def js_candidate(make_candidate):
    return make_candidate(code="  return (player?.hp ?? 0) + 1;", target_file="game.js")


def js_error(make_error):
    return make_error(
        message=TYPE_ERROR,
        file="game.js",
        actions=({"type": "click", "target": "heal-button"},),
    )


class TestScoring:
    """Tests for score combination."""

    def test_all_checks_weighted(self) -> None:
        """Test a typical mix lands in APPLY_IMMEDIATELY."""
        per_check = {
            CheckName.SYNTAX: CheckResult(CheckName.SYNTAX, True, 100.0),
            CheckName.LINT: CheckResult(CheckName.LINT, True, 100.0),
            CheckName.FUNCTIONAL: CheckResult(CheckName.FUNCTIONAL, True, 100.0),
            CheckName.REGRESSION: CheckResult.skip(CheckName.REGRESSION, "none"),
            CheckName.PERFORMANCE: CheckResult(CheckName.PERFORMANCE, True, 50.0),
        }

        score = combine_scores(per_check)

        assert score == pytest.approx(94.1, abs=0.05)
        assert Recommendation.from_score(score) == Recommendation.APPLY_IMMEDIATELY

    def test_skipped_checks_renormalize(self) -> None:
        """Test skipped checks carry no weight."""
        per_check = {
            CheckName.SYNTAX: CheckResult(CheckName.SYNTAX, True, 100.0),
            CheckName.LINT: CheckResult(CheckName.LINT, False, 50.0),
            CheckName.FUNCTIONAL: CheckResult.skip(CheckName.FUNCTIONAL, "no browser"),
        }

        assert combine_scores(per_check) == pytest.approx(75.0)

    def test_nothing_ran_scores_zero(self) -> None:
        """Test an unverifiable candidate scores zero."""
        per_check = {name: CheckResult.skip(name, "n/a") for name in CheckName}

        assert combine_scores(per_check) == 0.0

    @pytest.mark.parametrize(
        ("ratio", "expected"),
        [(0.8, 100.0), (1.0, 100.0), (1.2, 50.0), (1.4, 0.0), (3.0, 0.0)],
    )
    def test_performance_score(self, ratio: float, expected: float) -> None:
        """Test the benchmark ratio mapping."""
        assert performance_score(ratio, 1.2) == pytest.approx(expected)

    @pytest.mark.parametrize(
        ("score", "recommendation"),
        [
            (95.0, Recommendation.APPLY_IMMEDIATELY),
            (80.0, Recommendation.APPLY_WITH_MONITORING),
            (65.0, Recommendation.REVIEW_REQUIRED),
            (30.0, Recommendation.DO_NOT_APPLY),
        ],
    )
    def test_recommendation_bands(self, score: float, recommendation: Recommendation) -> None:
        """Test score bands map to recommendations."""
        assert Recommendation.from_score(score) == recommendation


class TestReplayExpression:
    """Tests for action replay translation."""

    def test_click_by_target_id(self) -> None:
        """Test a click on a target id becomes a querySelector click."""
        assert replay_expression({"type": "click", "target": "start"}) == (
            'document.querySelector("#start")?.click()'
        )

    def test_input_sets_value(self) -> None:
        """Test input actions set the value and fire an event."""
        expression = replay_expression({"type": "input", "selector": "#name", "value": "Ayla"})

        assert expression is not None
        assert 'el.value = "Ayla"' in expression

    def test_unknown_action(self) -> None:
        """Test unsupported actions are ignored."""
        assert replay_expression({"type": "scroll"}) is None


class TestPythonTarget:
    """Tests using the ast toolchain, where browser checks are skipped."""

    async def test_clean_patch_passes(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test a clean patch passes on syntax and lint alone."""
        pipeline = ValidationPipeline(ValidationConfig(), python_toolchain, target_dir)

        result = await pipeline.validate(make_candidate(), make_error())

        assert result.passed
        assert result.overall_score == pytest.approx(100.0)
        assert result.checks_run == (CheckName.SYNTAX, CheckName.LINT)
        assert result.per_check[CheckName.FUNCTIONAL].skipped
        assert get_metrics().validations.get(labels={"passed": "true"}) == 1

    async def test_introduced_lint_error(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test only violations the patch introduces count."""
        pipeline = ValidationPipeline(ValidationConfig(), python_toolchain, target_dir)
        candidate = make_candidate(code="    total = player.hp + bonus")

        result = await pipeline.validate(candidate, make_error())

        assert result.per_check[CheckName.LINT].score == 75.0
        assert not result.per_check[CheckName.LINT].passed
        assert result.failed_checks == (CheckName.LINT,)
        assert result.overall_score == pytest.approx(87.5)
        assert result.passed
        assert result.recommendation == Recommendation.APPLY_WITH_MONITORING

    async def test_risky_construct_penalized(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test an unbounded loop costs syntax points."""
        pipeline = ValidationPipeline(ValidationConfig(), python_toolchain, target_dir)
        candidate = make_candidate(code="    while True:\n        pass\n    total = 0", end_line=2)

        result = await pipeline.validate(candidate, make_error())

        assert result.per_check[CheckName.SYNTAX].score == 85.0
        assert "unbounded-loop" in result.per_check[CheckName.SYNTAX].detail

    async def test_fragment_that_does_not_parse(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test a broken fragment fails syntax and the gate."""
        pipeline = ValidationPipeline(ValidationConfig(), python_toolchain, target_dir)
        candidate = make_candidate(code="    total = (player.hp +")

        result = await pipeline.validate(candidate, make_error())

        assert not result.per_check[CheckName.SYNTAX].passed
        assert not result.passed
        assert result.recommendation == Recommendation.DO_NOT_APPLY

    async def test_range_outside_file(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test an unusable patch fails without running other checks."""
        pipeline = ValidationPipeline(ValidationConfig(), python_toolchain, target_dir)
        candidate = make_candidate(start_line=50)

        result = await pipeline.validate(candidate, make_error())

        assert not result.passed
        assert result.overall_score == 0.0
        assert list(result.per_check) == [CheckName.SYNTAX]

    async def test_path_escape_rejected(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test patches outside the target root never validate."""
        pipeline = ValidationPipeline(ValidationConfig(), python_toolchain, target_dir)
        candidate = make_candidate(target_file="../outside.py")

        result = await pipeline.validate(candidate, make_error())

        assert not result.passed

    async def test_raising_check_fails_alone(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test a check that raises scores zero without stopping the rest."""

        async def broken_lint(source: str, filename: str) -> list:
            raise RuntimeError("linter crashed")

        python_toolchain.lint = broken_lint
        pipeline = ValidationPipeline(ValidationConfig(), python_toolchain, target_dir)

        result = await pipeline.validate(make_candidate(), make_error())

        assert result.per_check[CheckName.LINT].score == 0.0
        assert "linter crashed" in result.per_check[CheckName.LINT].detail
        assert result.per_check[CheckName.SYNTAX].passed

    async def test_source_file_untouched(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test validation never writes the target."""
        before = (target_dir / "game.py").read_bytes()
        pipeline = ValidationPipeline(ValidationConfig(), python_toolchain, target_dir)

        await pipeline.validate(make_candidate(), make_error())

        assert (target_dir / "game.py").read_bytes() == before


class TestRegressionCheck:
    """Tests for the regression command."""

    async def test_runs_against_patched_copy(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test the command sees the patched copy, not the original."""
        seen: dict[str, str] = {}

        async def fake_run(args, timeout=None, cwd=None, stdin=None) -> CommandResult:
            seen["content"] = (cwd / "game.py").read_text()
            seen["cwd"] = str(cwd)
            return CommandResult("1 passed", "", 0, list(args))

        runner = MagicMock()
        runner.run = fake_run
        pipeline = ValidationPipeline(
            ValidationConfig(regression_command=["pytest", "-q"]),
            python_toolchain,
            target_dir,
            runner=runner,
        )

        result = await pipeline.validate(make_candidate(), make_error())

        assert 'getattr(player, "hp", 0)' in seen["content"]
        assert seen["cwd"] != str(target_dir)
        assert not Path(seen["cwd"]).exists()
        assert result.per_check[CheckName.REGRESSION].passed

    async def test_failing_suite(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test a failing suite fails the check."""

        async def fake_run(args, timeout=None, cwd=None, stdin=None) -> CommandResult:
            return CommandResult("", "1 failed", 1, list(args))

        runner = MagicMock()
        runner.run = fake_run
        pipeline = ValidationPipeline(
            ValidationConfig(regression_command=["pytest"]), python_toolchain, target_dir, runner=runner
        )

        result = await pipeline.validate(make_candidate(), make_error())

        check = result.per_check[CheckName.REGRESSION]
        assert not check.passed
        assert "exit 1" in check.detail

    async def test_timeout_fails(self, target_dir, python_toolchain, make_candidate, make_error) -> None:
        """Test a hung suite fails the check."""

        async def fake_run(args, timeout=None, cwd=None, stdin=None) -> CommandResult:
            raise CommandTimeoutError("timed out")

        runner = MagicMock()
        runner.run = fake_run
        pipeline = ValidationPipeline(
            ValidationConfig(regression_command=["pytest"]), python_toolchain, target_dir, runner=runner
        )

        result = await pipeline.validate(make_candidate(), make_error())

        assert result.per_check[CheckName.REGRESSION].score == 0.0


class TestBrowserChecks:
    """Tests for replay and benchmark checks."""

    async def test_fixed_error_passes(self, js_root, make_candidate, make_error) -> None:
        """Test the full gate with replay and benchmark."""
        browser = FakeBrowser(
            on_load=(f"Uncaught TypeError: {TYPE_ERROR}",), timings=(10.0, 12.0)
        )
        pipeline = js_pipeline(js_root, browser, benchmark_expression="heal({hp: 1})")

        result = await pipeline.validate(js_candidate(make_candidate), js_error(make_error))

        assert result.per_check[CheckName.FUNCTIONAL].score == 100.0
        assert result.per_check[CheckName.PERFORMANCE].score == pytest.approx(50.0)
        assert result.per_check[CheckName.PERFORMANCE].passed
        assert result.overall_score == pytest.approx(94.1, abs=0.05)
        assert result.recommendation == Recommendation.APPLY_IMMEDIATELY
        assert browser.expressions == ['document.querySelector("#heal-button")?.click()']
        assert "player?.hp" in browser.injected[0]
        assert browser.closed == 2

    async def test_error_still_fires(self, js_root, make_candidate, make_error) -> None:
        """Test the original error recurring fails functional with zero."""
        browser = FakeBrowser(on_replay=(f"Uncaught TypeError: {TYPE_ERROR}",))
        pipeline = js_pipeline(js_root, browser)

        result = await pipeline.validate(js_candidate(make_candidate), js_error(make_error))

        functional = result.per_check[CheckName.FUNCTIONAL]
        assert functional.score == 0.0
        assert functional.detail == "original error still fires"

    async def test_new_error_is_partial(self, js_root, make_candidate, make_error) -> None:
        """Test a new error after the patch scores partially."""
        browser = FakeBrowser(on_replay=("ReferenceError: mana is not defined",))
        pipeline = js_pipeline(js_root, browser)

        result = await pipeline.validate(js_candidate(make_candidate), js_error(make_error))

        functional = result.per_check[CheckName.FUNCTIONAL]
        assert functional.score == 40.0
        assert not functional.passed

    async def test_preexisting_errors_ignored(self, js_root, make_candidate, make_error) -> None:
        """Test errors emitted while injecting are not blamed on the patch."""
        browser = FakeBrowser(on_inject=("Warning: deprecated API",))
        pipeline = js_pipeline(js_root, browser)

        result = await pipeline.validate(js_candidate(make_candidate), js_error(make_error))

        assert result.per_check[CheckName.FUNCTIONAL].passed

    async def test_slow_patch_fails_performance(self, js_root, make_candidate, make_error) -> None:
        """Test a patch beyond the allowed slowdown fails the benchmark."""
        browser = FakeBrowser(timings=(10.0, 20.0))
        pipeline = js_pipeline(js_root, browser, benchmark_expression="heal({hp: 1})")

        result = await pipeline.validate(js_candidate(make_candidate), js_error(make_error))

        assert not result.per_check[CheckName.PERFORMANCE].passed
        assert result.per_check[CheckName.PERFORMANCE].score == 0.0

    async def test_unparsable_fragment_vetoes_gate(self, js_root, make_candidate, make_error) -> None:
        """Test a fragment that does not parse fails even when every other check passes."""

        class RejectingToolchain(FakeJsToolchain):
            async def check_syntax(self, source: str, filename: str) -> SyntaxReport:
                return SyntaxReport(ok=False, message="Unexpected token")

        browser = FakeBrowser(on_load=(f"Uncaught TypeError: {TYPE_ERROR}",))
        pipeline = ValidationPipeline(
            ValidationConfig(benchmark_expression="heal({hp: 1})"),
            RejectingToolchain(),
            js_root,
            browser=browser,
            browser_config=BrowserConfig(settle_time=0.0),
        )

        result = await pipeline.validate(js_candidate(make_candidate), js_error(make_error))

        assert result.per_check[CheckName.FUNCTIONAL].passed
        assert result.per_check[CheckName.PERFORMANCE].passed
        assert result.overall_score == pytest.approx(76.5, abs=0.05)
        assert not result.passed
        assert result.recommendation == Recommendation.DO_NOT_APPLY
        assert result.failed_checks == (CheckName.SYNTAX,)
