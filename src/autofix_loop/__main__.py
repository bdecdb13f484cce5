"""Entry point for running autofix-loop.

This module provides the command line interface:
- run: drive the remediation loop until it converges, stalls or fails
- rollback: restore every file the loop patched from its retained backups
- status: print the persisted iteration state

Exit codes: 0 converged / success, 1 stalled / nothing to show,
2 error or invalid configuration.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import structlog

from autofix_loop._version import __version__

log = structlog.get_logger()

EXIT_OK = 0
EXIT_STALLED = 1
EXIT_ERROR = 2


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def _percentage(value: str) -> int:
    number = int(value)
    if not 0 <= number <= 100:
        raise argparse.ArgumentTypeError(f"must be between 0 and 100, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="autofix-loop",
        description="autofix-loop - Collect runtime errors, validate fixes and apply them safely",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: built-in defaults)",
    )

    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    parser.add_argument(
        "--format",
        choices=["json", "console"],
        default="console",
        help="Log and report output format (default: console)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run the remediation loop")
    run.add_argument("--max-iterations", type=_positive_int, help="Iteration budget for this run")
    run.add_argument("--confidence", type=_percentage, help="Minimum candidate confidence (0-100)")
    run.add_argument("--parallel", type=_positive_int, help="Errors processed concurrently")
    run.add_argument("--resume", action="store_true", help="Continue from the persisted state")
    run.add_argument(
        "--discard-state",
        action="store_true",
        help="Drop existing persisted state and start fresh",
    )

    rollback = commands.add_parser("rollback", help="Restore all patched files from backups")
    rollback.add_argument("reason", help="Why the rollback is happening (logged)")

    commands.add_parser("status", help="Print the persisted loop state")

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed argument namespace
    """
    return build_parser().parse_args(argv)


def _apply_overrides(config: Any, args: argparse.Namespace) -> None:
    """Fold run flags into the loop section, re-validating it."""
    from autofix_loop.config.schema import LoopConfig

    overrides = {
        key: value
        for key, value in (
            ("max_iterations", args.max_iterations),
            ("confidence_threshold", args.confidence),
            ("parallelism", args.parallel),
        )
        if value is not None
    }
    if overrides:
        config.loop = LoopConfig.model_validate({**config.loop.model_dump(), **overrides})
        log.info("cli_overrides_applied", **overrides)


def _emit(payload: dict[str, Any], text: str, output_format: str) -> None:
    if output_format == "json":
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


async def run_loop(config: Any, args: argparse.Namespace) -> int:
    """Run the loop and print its report.

    Returns:
        EXIT_OK if converged, EXIT_STALLED if stalled, EXIT_ERROR otherwise.
    """
    from autofix_loop.core.ingestion import IngestionServer, create_app
    from autofix_loop.core.orchestrator import create_orchestrator
    from autofix_loop.core.report import render_text, report_to_dict
    from autofix_loop.models.state import LoopStatus
    from autofix_loop.utils.async_helpers import AutofixError, StaleStateError

    _apply_overrides(config, args)
    orchestrator = create_orchestrator(config)
    orchestrator.setup_signal_handlers()

    server: IngestionServer | None = None
    try:
        if config.ingestion.enabled:
            server = IngestionServer(
                create_app(orchestrator.collector, config.ingestion), config.ingestion
            )
            await server.start()

        report = await orchestrator.run(resume=args.resume, discard_state=args.discard_state)
    except StaleStateError as e:
        log.error("stale_state_refused", error=str(e))
        return EXIT_ERROR
    except AutofixError as e:
        log.error("run_failed", error=str(e))
        return EXIT_ERROR
    finally:
        if server is not None:
            await server.stop()
        await orchestrator.aclose()

    _emit(report_to_dict(report), render_text(report), args.format)

    if report.status == LoopStatus.CONVERGED:
        return EXIT_OK
    if report.status == LoopStatus.STALLED:
        return EXIT_STALLED
    return EXIT_ERROR


async def rollback(config: Any, reason: str) -> int:
    """Restore every retained backup.

    Returns:
        EXIT_OK when every backup was restored.
    """
    from autofix_loop.core.orchestrator import create_applier
    from autofix_loop.utils.async_helpers import ApplicationError

    try:
        applier = create_applier(config)
        restored, failed = await applier.rollback_all(reason)
    except ApplicationError as e:
        log.error("rollback_failed", error=str(e))
        return EXIT_ERROR

    print(f"Restored {restored} backup(s), {failed} failed.")
    return EXIT_OK if failed == 0 else EXIT_STALLED


def show_status(config: Any, output_format: str) -> int:
    """Print the persisted state.

    Returns:
        EXIT_OK if a state file exists, EXIT_STALLED if not, EXIT_ERROR if
        it is corrupted.
    """
    from dataclasses import asdict

    from autofix_loop.core.state_store import StateStore
    from autofix_loop.utils.async_helpers import StateCorruptedError

    store = StateStore(config.loop.state_file)
    try:
        persisted = store.load()
    except StateCorruptedError as e:
        log.error("state_corrupted", error=str(e))
        return EXIT_ERROR

    if persisted is None:
        print(f"No loop state at {store.path}")
        return EXIT_STALLED

    payload = {
        "path": str(store.path),
        "saved_at": persisted.saved_at,
        "state": persisted.state.to_dict(),
        "unresolved": [asdict(u) for u in persisted.unresolved],
        "recent_fixes": [e.to_dict() for e in persisted.fix_history[-10:]],
    }
    state = persisted.state
    text = "\n".join(
        [
            f"State file:  {store.path}",
            f"Status:      {state.status.value}" + (f" ({state.reason})" if state.reason else ""),
            f"Iteration:   {state.iteration}",
            f"Fixed:       {state.fixed_errors}/{state.total_errors}",
            f"Failed:      {state.failed_fixes}",
            f"Skipped:     {state.skipped_fixes}",
            f"Error counts: {state.error_count_history}",
            f"Unresolved:  {len(persisted.unresolved)}",
        ]
    )
    _emit(payload, text, output_format)
    return EXIT_OK


async def dispatch(args: argparse.Namespace) -> int:
    """Load configuration and run the selected command.

    Returns:
        Process exit code
    """
    from autofix_loop.config.loader import load_config
    from autofix_loop.utils.logging import configure_logging

    try:
        log.info("loading_configuration", path=str(args.config) if args.config else "defaults")
        config = load_config(args.config)
    except FileNotFoundError as e:
        log.error("configuration_file_not_found", path=str(args.config), error=str(e))
        return EXIT_ERROR
    except ValueError as e:
        log.error("configuration_invalid", error=str(e))
        return EXIT_ERROR

    # Reconfigure logging from config file settings; CLI flags win
    configure_logging(
        level="DEBUG" if args.debug else config.logging.level,
        log_format=args.format if args.format == "json" else config.logging.format,
        file_path=config.logging.file.path if config.logging.file.enabled else None,
    )

    try:
        if args.command == "run":
            return await run_loop(config, args)
        if args.command == "rollback":
            return await rollback(config, args.reason)
        return show_status(config, args.format)
    except ValueError as e:
        log.error("configuration_invalid", error=str(e))
        return EXIT_ERROR


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    from autofix_loop.utils.logging import configure_logging

    args = parse_args(argv)

    # CLI options until the config file is loaded
    configure_logging(level="DEBUG" if args.debug else "INFO", log_format=args.format)

    try:
        return asyncio.run(dispatch(args))
    except KeyboardInterrupt:
        log.info("shutting_down_gracefully")
        return EXIT_STALLED


if __name__ == "__main__":
    sys.exit(main())
