"""Safe subprocess wrapper for toolchain and regression-suite commands.

- Never uses shell=True
- Enforces timeouts on all operations
- Reports a missing binary as a distinct condition so callers can skip
  a check instead of failing it
"""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

import structlog

from autofix_loop.utils.async_helpers import AutofixError

log = structlog.get_logger()


class CommandError(AutofixError):
    """Base exception for subprocess failures."""


class CommandNotFoundError(CommandError):
    """Raised when the executable is not installed."""


class CommandTimeoutError(CommandError):
    """Raised when a command times out."""


@dataclass
class CommandResult:
    """Result of a command execution."""

    stdout: str
    stderr: str
    return_code: int
    command: list[str]

    @property
    def success(self) -> bool:
        """Return True if the command succeeded."""
        return self.return_code == 0

    @property
    def output(self) -> str:
        """stderr and stdout combined, for diagnostics."""
        return (self.stderr + "\n" + self.stdout).strip()


class SafeCommandRunner:
    """Runs argv-style commands in a worker thread with a hard timeout.

    Example:
        runner = SafeCommandRunner()
        result = await runner.run(["node", "--check", "game.js"], timeout=10)
        if not result.success:
            print(result.stderr)
    """

    DEFAULT_TIMEOUT = 30

    def __init__(self, default_timeout: int = DEFAULT_TIMEOUT) -> None:
        self._default_timeout = default_timeout

    @staticmethod
    def which(executable: str) -> str | None:
        """Locate an executable on PATH."""
        return shutil.which(executable)

    async def run(
        self,
        args: list[str],
        timeout: int | None = None,
        cwd: Path | None = None,
        stdin: str | None = None,
    ) -> CommandResult:
        """Run a command safely.

        Args:
            args: Command and arguments. The first element is looked up on PATH.
            timeout: Timeout in seconds (uses default if None).
            cwd: Working directory.
            stdin: Text passed on standard input.

        Returns:
            CommandResult with stdout, stderr, and return code.

        Raises:
            CommandNotFoundError: If the executable is not installed.
            CommandTimeoutError: If the command times out.
        """
        if not args:
            raise CommandError("Empty command")

        executable = self.which(args[0])
        if executable is None:
            raise CommandNotFoundError(f"Executable not found: {args[0]}")

        cmd = [executable, *args[1:]]
        effective_timeout = timeout or self._default_timeout

        log.debug("executing_command", command=cmd, timeout=effective_timeout)

        def run_sync() -> subprocess.CompletedProcess[str]:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                input=stdin,
                cwd=cwd,
                timeout=effective_timeout,
                shell=False,
            )

        try:
            proc = await asyncio.wait_for(
                asyncio.to_thread(run_sync),
                timeout=effective_timeout + 5,  # Extra buffer for thread overhead
            )
        except (subprocess.TimeoutExpired, TimeoutError) as e:
            log.error("command_timeout", command=cmd, timeout=effective_timeout)
            raise CommandTimeoutError(
                f"Command timed out after {effective_timeout}s: {cmd}"
            ) from e
        except FileNotFoundError as e:
            raise CommandNotFoundError(f"Executable not found: {args[0]}") from e

        return CommandResult(
            stdout=proc.stdout,
            stderr=proc.stderr,
            return_code=proc.returncode,
            command=cmd,
        )
