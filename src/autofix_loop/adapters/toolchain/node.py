"""Toolchain for browser JavaScript targets.

Syntax goes through ``node --check`` and linting through ``eslint`` reading
from stdin. Neither tool is a hard requirement: when a binary is missing the
corresponding check reports itself as skipped so the validation gate can
renormalize around it.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
from pathlib import Path

import structlog

from ...models.validation import LintViolation, RiskFinding, SyntaxReport
from ...utils.safe_subprocess import (
    CommandNotFoundError,
    CommandTimeoutError,
    SafeCommandRunner,
)

log = structlog.get_logger()

ESLINT_RULES = {
    "no-undef": "error",
    "no-unreachable": "error",
    "no-dupe-keys": "error",
    "no-unused-vars": "warn",
}

BROWSER_GLOBALS = (
    "window",
    "document",
    "console",
    "localStorage",
    "sessionStorage",
    "navigator",
    "fetch",
    "setTimeout",
    "clearTimeout",
    "setInterval",
    "clearInterval",
    "requestAnimationFrame",
    "cancelAnimationFrame",
    "performance",
    "globalThis",
    "Event",
    "CustomEvent",
    "WebSocket",
)

_WHILE_TRUE = re.compile(r"\b(?:while\s*\(\s*(?:true|1)\s*\)|for\s*\(\s*;\s*;\s*\))")
_LOOP_EXIT = re.compile(r"\b(?:break|return|throw)\b")
_GLOBAL_WRITE = re.compile(r"\b(?:window|globalThis|self)\s*(?:\.\s*\w+|\[[^\]]+\])\s*=(?!=)")


def _line_of(code: str, offset: int) -> int:
    return code.count("\n", 0, offset) + 1


class NodeToolchain:
    """Syntax and lint checks for JavaScript source.

    Example:
        toolchain = NodeToolchain()
        violations = await toolchain.lint(source, "js/core/SaveManager.js")
    """

    def __init__(
        self,
        runner: SafeCommandRunner | None = None,
        node: str = "node",
        eslint: str = "eslint",
        timeout: int = 30,
    ) -> None:
        self._runner = runner or SafeCommandRunner(default_timeout=timeout)
        self._node = node
        self._eslint = eslint
        self._timeout = timeout

    @property
    def language(self) -> str:
        return "javascript"

    async def check_syntax(self, source: str, filename: str) -> SyntaxReport:
        path = await asyncio.to_thread(self._write_temp, source)
        try:
            result = await self._runner.run([self._node, "--check", str(path)], self._timeout)
        except CommandNotFoundError:
            log.debug("node_unavailable_syntax_skipped")
            return SyntaxReport(ok=True, skipped=True, message="node not installed")
        except CommandTimeoutError as e:
            return SyntaxReport(ok=False, message=str(e))
        finally:
            path.unlink(missing_ok=True)

        if result.success:
            return SyntaxReport(ok=True)

        # node prints "<file>:<line>" above the offending source line
        match = re.search(r":(\d+)\s*$", result.stderr.splitlines()[0]) if result.stderr else None
        message = next(
            (ln for ln in result.stderr.splitlines() if "SyntaxError" in ln), result.output
        )
        return SyntaxReport(
            ok=False,
            message=message.strip(),
            line=int(match.group(1)) if match else None,
        )

    @staticmethod
    def _write_temp(source: str) -> Path:
        fd, name = tempfile.mkstemp(suffix=".js", prefix="autofix-")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(source)
        return Path(name)

    async def lint(self, source: str, filename: str) -> list[LintViolation] | None:
        args = [
            self._eslint,
            "--no-config-lookup",
            "--stdin",
            "--stdin-filename",
            Path(filename).name or "patch.js",
            "--format",
            "json",
            "--global",
            ",".join(BROWSER_GLOBALS),
        ]
        for rule, level in ESLINT_RULES.items():
            args.extend(["--rule", f"{rule}: {level}"])

        try:
            result = await self._runner.run(args, self._timeout, stdin=source)
        except CommandNotFoundError:
            log.debug("eslint_unavailable_lint_skipped")
            return None
        except CommandTimeoutError as e:
            return [LintViolation("timeout", "error", 0, str(e))]

        # Exit code 1 means "problems found"; anything above is a crash
        if result.return_code > 1:
            log.warning("eslint_failed", return_code=result.return_code, stderr=result.stderr[:500])
            return None

        try:
            reports = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            log.warning("eslint_output_unparsable")
            return None

        violations: list[LintViolation] = []
        for report in reports:
            for message in report.get("messages", []):
                violations.append(
                    LintViolation(
                        rule=message.get("ruleId") or ("syntax" if message.get("fatal") else "unknown"),
                        severity="error" if message.get("severity") == 2 else "warning",
                        line=int(message.get("line") or 0),
                        message=str(message.get("message", "")),
                    )
                )
        return violations

    def find_risks(self, code: str) -> list[RiskFinding]:
        risks: list[RiskFinding] = []

        for match in _WHILE_TRUE.finditer(code):
            if not _LOOP_EXIT.search(code, match.end()):
                risks.append(
                    RiskFinding(
                        "unbounded-loop", _line_of(code, match.start()), "infinite loop without exit"
                    )
                )

        for timer, cleanup in (("setInterval", "clearInterval"), ("requestAnimationFrame", "cancelAnimationFrame")):
            offset = code.find(f"{timer}(")
            if offset >= 0 and f"{cleanup}(" not in code:
                risks.append(
                    RiskFinding(
                        "timer-without-cleanup",
                        _line_of(code, offset),
                        f"{timer} without {cleanup}",
                    )
                )

        for match in _GLOBAL_WRITE.finditer(code):
            risks.append(
                RiskFinding("global-write", _line_of(code, match.start()), match.group(0).strip())
            )

        return risks
