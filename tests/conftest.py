"""Shared test fixtures for autofix-loop."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from autofix_loop.adapters.toolchain.python import PythonToolchain
from autofix_loop.models.error import (
    ErrorContext,
    ErrorKind,
    ErrorRecord,
    Severity,
    SourceLocation,
)
from autofix_loop.models.fix import CandidateSource, FixCandidate, Patch
from autofix_loop.utils.metrics import MetricsRegistry

GAME_PY = """\
def heal(player, amount):
    total = player.hp + amount
    return total


def attack(enemy):
    enemy.hp -= 1
    return enemy.hp
"""


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def fresh_metrics() -> Iterator[None]:
    """Start every test with an empty metrics registry."""
    MetricsRegistry.reset()
    yield
    MetricsRegistry.reset()


@pytest.fixture
def clock() -> FakeClock:
    """Return a controllable clock."""
    return FakeClock()


@pytest.fixture
def target_dir(tmp_path: Path) -> Path:
    """Return a target root holding a small Python module."""
    root = tmp_path / "target"
    root.mkdir()
    (root / "game.py").write_text(GAME_PY, encoding="utf-8")
    return root


@pytest.fixture
def python_toolchain() -> PythonToolchain:
    """Return the ast-based toolchain."""
    return PythonToolchain()


@pytest.fixture
def make_error() -> Callable[..., ErrorRecord]:
    """Return a factory for error records."""

    def factory(
        message: str = "'NoneType' object has no attribute 'hp'",
        file: str = "game.py",
        line: int = 2,
        kind: ErrorKind = ErrorKind.UNDEFINED_PROPERTY,
        severity: Severity = Severity.HIGH,
        key: str | None = None,
        component: str | None = None,
        actions: tuple[dict[str, object], ...] = (),
        seen_at: float = 1_000.0,
    ) -> ErrorRecord:
        return ErrorRecord(
            id=f"err-{uuid.uuid4().hex[:12]}",
            key=key or f"key-{file}-{line}",
            kind=kind,
            severity=severity,
            message=message,
            location=SourceLocation(file, line),
            stack_trace="",
            component=component,
            context=ErrorContext(recent_actions=actions),
            first_seen_at=seen_at,
            last_seen_at=seen_at,
        )

    return factory


@pytest.fixture
def make_candidate() -> Callable[..., FixCandidate]:
    """Return a factory for fix candidates."""

    def factory(
        code: str = '    total = getattr(player, "hp", 0) + amount',
        start_line: int = 2,
        end_line: int | None = None,
        target_file: str = "game.py",
        confidence: int = 85,
        error_id: str = "err-1",
        strategy_tag: str = "getattr-default",
        candidate_id: str | None = None,
    ) -> FixCandidate:
        return FixCandidate(
            id=candidate_id or f"fix-{uuid.uuid4().hex[:12]}",
            error_id=error_id,
            patch=Patch(
                target_file=target_file,
                start_line=start_line,
                end_line=end_line if end_line is not None else start_line,
                replacement_code=code,
            ),
            confidence=confidence,
            strategy_tag=strategy_tag,
            explanation="test candidate",
            generated_at=1_000.0,
            source=CandidateSource.ORACLE,
        )

    return factory
