"""Persisted iteration state.

One JSON document, rewritten atomically after every iteration:

    {
      "version": 1,
      "saved_at": ...,
      "state": {...IterationState...},
      "error_count_history": [...],
      "fix_history": [...],
      "attempts": {"<error key>": n},
      "strategy_history": [["<kind>", "<tag>", true], ...],
      "unresolved": [...],
      "checksum": "<sha256 of everything above>"
    }

Anything that does not parse, validate or match its checksum is corruption,
which the orchestrator treats as fatal.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from autofix_loop.core.patching import atomic_write
from autofix_loop.models.state import FixHistoryEntry, IterationState, UnresolvedError
from autofix_loop.utils.async_helpers import StateCorruptedError

log = structlog.get_logger()

STATE_VERSION = 1


class StateFile(BaseModel):
    """On-disk schema of the state file."""

    model_config = ConfigDict(extra="forbid")

    version: int
    saved_at: float
    state: dict[str, Any]
    error_count_history: list[int]
    fix_history: list[dict[str, Any]]
    attempts: dict[str, int] = {}
    strategy_history: list[tuple[str, str, bool]] = []
    unresolved: list[dict[str, Any]] = []
    checksum: str


@dataclass
class PersistedState:
    """Everything a resumed run needs."""

    state: IterationState
    fix_history: list[FixHistoryEntry] = field(default_factory=list)
    attempts: dict[str, int] = field(default_factory=dict)
    strategy_history: list[tuple[str, str, bool]] = field(default_factory=list)
    unresolved: list[UnresolvedError] = field(default_factory=list)
    saved_at: float = 0.0

    @property
    def has_unresolved_work(self) -> bool:
        """True if a fresh run would silently abandon something."""
        return not self.state.status.is_terminal or bool(self.unresolved)


def _checksum(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class StateStore:
    """Reads and writes the state file.

    Example:
        store = StateStore(Path(".autofix/state.json"))
        store.save(PersistedState(state=IterationState(iteration=1)))
        persisted = store.load()
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        """Location of the state file."""
        return self._path

    def exists(self) -> bool:
        """True if a state file is present."""
        return self._path.exists()

    def save(self, persisted: PersistedState) -> None:
        """Write the snapshot atomically."""
        payload: dict[str, Any] = {
            "version": STATE_VERSION,
            "saved_at": time.time(),
            "state": persisted.state.to_dict(),
            "error_count_history": list(persisted.state.error_count_history),
            "fix_history": [entry.to_dict() for entry in persisted.fix_history],
            "attempts": dict(persisted.attempts),
            "strategy_history": [list(entry) for entry in persisted.strategy_history],
            "unresolved": [asdict(u) for u in persisted.unresolved],
        }
        payload["checksum"] = _checksum(payload)
        atomic_write(self._path, json.dumps(payload, indent=2).encode("utf-8"))
        log.debug(
            "state_saved",
            path=str(self._path),
            iteration=persisted.state.iteration,
            status=persisted.state.status.value,
        )

    def load(self) -> PersistedState | None:
        """Read the snapshot.

        Returns:
            The persisted state, or None when no state file exists.

        Raises:
            StateCorruptedError: If the file is unreadable, malformed, from
                another format version, or fails its checksum.
        """
        if not self._path.exists():
            return None

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            snapshot = StateFile.model_validate(raw)
        except (OSError, ValueError, PydanticValidationError) as e:
            raise StateCorruptedError(f"State file {self._path} is unreadable: {e}") from e

        if snapshot.version != STATE_VERSION:
            raise StateCorruptedError(
                f"State file version {snapshot.version} is not supported (expected {STATE_VERSION})"
            )

        payload = {key: value for key, value in raw.items() if key != "checksum"}
        if _checksum(payload) != snapshot.checksum:
            raise StateCorruptedError(f"State file {self._path} failed its checksum")

        try:
            persisted = PersistedState(
                state=IterationState.from_dict(snapshot.state),
                fix_history=[FixHistoryEntry.from_dict(e) for e in snapshot.fix_history],
                attempts=dict(snapshot.attempts),
                strategy_history=list(snapshot.strategy_history),
                unresolved=[UnresolvedError(**u) for u in snapshot.unresolved],
                saved_at=snapshot.saved_at,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StateCorruptedError(f"State file {self._path} has invalid content: {e}") from e

        log.debug("state_loaded", path=str(self._path), iteration=persisted.state.iteration)
        return persisted

    def clear(self) -> None:
        """Delete the state file."""
        self._path.unlink(missing_ok=True)
        log.info("state_discarded", path=str(self._path))
