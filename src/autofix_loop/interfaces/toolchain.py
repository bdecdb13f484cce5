"""Abstract interface for language toolchains."""

from typing import Protocol

from ..models.validation import LintViolation, RiskFinding, SyntaxReport


class Toolchain(Protocol):
    """Parses and lints source text in the target's language."""

    @property
    def language(self) -> str:
        """Language name, e.g. "javascript"."""
        ...

    async def check_syntax(self, source: str, filename: str) -> SyntaxReport:
        """
        Check that ``source`` parses.

        Args:
            source: Complete source text
            filename: Name used in diagnostics and to pick a dialect

        Returns:
            SyntaxReport; ``skipped`` is set when no parser is available
        """
        ...

    async def lint(self, source: str, filename: str) -> list[LintViolation] | None:
        """
        Run static rules over ``source``.

        Returns:
            Violations found, or None if no linter is available
        """
        ...

    def find_risks(self, code: str) -> list[RiskFinding]:
        """Flag unbounded loops, timers without cleanup and global writes."""
        ...
