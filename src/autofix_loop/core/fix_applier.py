"""Backup, patch, verify and roll back target files.

The applier exclusively owns backup lifetime. Every write is preceded by a
backup, performed atomically, and checked by re-parsing the whole file; a
file that no longer parses is restored on the spot.

Backups live on disk (``<backup_dir>/<ref>.bak`` plus ``index.json``) so a
separate ``rollback`` invocation can restore what a crashed run applied.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, replace
from pathlib import Path

import structlog

from autofix_loop.core.patching import atomic_write, render_patch
from autofix_loop.interfaces.toolchain import Toolchain
from autofix_loop.models.fix import AppliedFix, FixCandidate
from autofix_loop.utils.async_helpers import ApplicationError, ConflictError, SecurityError
from autofix_loop.utils.metrics import MetricsRegistry, get_metrics
from autofix_loop.utils.security import resolve_within

log = structlog.get_logger()

INDEX_FILE = "index.json"


@dataclass(frozen=True)
class BackupEntry:
    """One retained backup."""

    ref: str
    path: str  # Absolute path of the backed-up file
    created_at: float
    candidate_id: str
    sequence: int = 0  # Creation order, stable within one clock tick


class BackupStore:
    """On-disk store of verbatim file copies.

    Example:
        store = BackupStore(Path(".autofix/backups"))
        ref = await store.create(path, path.read_bytes(), "fix-1")
        await store.restore(ref)
        await store.discard(ref)
    """

    def __init__(self, backup_dir: Path, clock: Callable[[], float] = time.time) -> None:
        self._dir = backup_dir
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: dict[str, BackupEntry] = self._load_index()

    def _load_index(self) -> dict[str, BackupEntry]:
        index = self._dir / INDEX_FILE
        if not index.exists():
            return {}
        try:
            raw = json.loads(index.read_text(encoding="utf-8"))
            entries = [BackupEntry(**item) for item in raw]
        except (OSError, ValueError, TypeError) as e:
            raise ApplicationError(f"Backup index {index} is unreadable: {e}") from e
        return {entry.ref: entry for entry in entries}

    def _write_index(self) -> None:
        data = json.dumps([asdict(e) for e in self._entries.values()], indent=2)
        atomic_write(self._dir / INDEX_FILE, data.encode("utf-8"))

    def _blob(self, ref: str) -> Path:
        return self._dir / f"{ref}.bak"

    async def create(self, path: Path, content: bytes, candidate_id: str) -> str:
        """Store ``content`` as the pre-patch copy of ``path``.

        Returns:
            Backup reference.
        """
        now = self._clock()
        ref = f"{int(now * 1000)}-{uuid.uuid4().hex[:8]}"
        async with self._lock:
            sequence = max((e.sequence for e in self._entries.values()), default=0) + 1
            entry = BackupEntry(
                ref=ref, path=str(path), created_at=now, candidate_id=candidate_id, sequence=sequence
            )
            await asyncio.to_thread(atomic_write, self._blob(ref), content)
            self._entries[ref] = entry
            await asyncio.to_thread(self._write_index)
        log.debug("backup_created", ref=ref, path=str(path), size=len(content))
        return ref

    async def read(self, ref: str) -> bytes:
        """Return the backed-up bytes."""
        if ref not in self._entries:
            raise ApplicationError(f"Unknown backup: {ref}")
        return await asyncio.to_thread(self._blob(ref).read_bytes)

    async def restore(self, ref: str) -> Path:
        """Write the backup over its file and confirm the bytes match.

        Raises:
            ApplicationError: If the backup is unknown or restoration did
                not produce identical content.
        """
        entry = self.get(ref)
        if entry is None:
            raise ApplicationError(f"Unknown backup: {ref}")
        content = await self.read(ref)
        path = Path(entry.path)
        try:
            await asyncio.to_thread(atomic_write, path, content)
            restored = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ApplicationError(f"Could not restore {path}: {e}") from e
        if restored != content:
            raise ApplicationError(f"Restored content of {path} does not match backup {ref}")
        log.info("backup_restored", ref=ref, path=str(path))
        return path

    async def discard(self, ref: str) -> None:
        """Forget a backup and delete its content file."""
        async with self._lock:
            if self._entries.pop(ref, None) is None:
                return
            await asyncio.to_thread(self._blob(ref).unlink, True)
            await asyncio.to_thread(self._write_index)
        log.debug("backup_discarded", ref=ref)

    def get(self, ref: str) -> BackupEntry | None:
        """Look up a backup."""
        return self._entries.get(ref)

    def entries(self) -> list[BackupEntry]:
        """Retained backups, newest first."""
        return sorted(
            self._entries.values(), key=lambda e: (e.sequence, e.created_at), reverse=True
        )

    def __len__(self) -> int:
        return len(self._entries)


class FixApplier:
    """Applies candidates to target files with exact rollback.

    Writers to the same file are serialized by a per-file lock; different
    files are patched concurrently.

    Example:
        applier = FixApplier(Path("."), toolchain, BackupStore(Path(".autofix/backups")))
        applied = await applier.apply(candidate)
        if applied.success:
            await applier.rollback(applied)
    """

    def __init__(
        self,
        target_root: Path,
        toolchain: Toolchain,
        backups: BackupStore,
        clock: Callable[[], float] = time.time,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the applier.

        Args:
            target_root: Directory patch targets are resolved against.
            toolchain: Used to re-parse every file after writing.
            backups: Backup store.
            clock: Wall-clock source.
            metrics: Metrics registry (defaults to the process-wide one).
        """
        self._root = target_root
        self._toolchain = toolchain
        self._backups = backups
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._locks: defaultdict[Path, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def backups(self) -> BackupStore:
        """The backup store."""
        return self._backups

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    async def apply(self, candidate: FixCandidate, line_offset: int = 0) -> AppliedFix:
        """Back up, patch, write and verify one file.

        Args:
            candidate: Candidate to apply.
            line_offset: Shift for the patch's line range.

        Returns:
            AppliedFix. ``success`` is False when the patch did not fit, the
            write failed, or the written file no longer parsed; in each case
            the file holds its original content.

        Raises:
            ApplicationError: If a failed write could not be undone. The
                backup is kept for manual recovery.
        """
        log.info("applying_fix", candidate_id=candidate.id, file=candidate.patch.target_file)
        try:
            path = resolve_within(self._root, candidate.patch.target_file)
        except SecurityError as e:
            return self._failed(candidate, candidate.patch.target_file, str(e))

        async with self._locks[path]:
            try:
                original = await asyncio.to_thread(path.read_bytes)
                text = original.decode("utf-8")
                patched = render_patch(text, candidate.patch, line_offset)
            except (OSError, UnicodeDecodeError, ApplicationError) as e:
                return self._failed(candidate, str(path), str(e))

            ref = await self._backups.create(path, original, candidate.id)

            try:
                await asyncio.to_thread(atomic_write, path, patched.encode("utf-8"))
            except OSError as e:
                return await self._undo(candidate, path, ref, f"write failed: {e}")

            report = await self._toolchain.check_syntax(patched, path.name)
            if not report.ok and not report.skipped:
                return await self._undo(
                    candidate, path, ref, f"post-write syntax check failed: {report.message}"
                )

        self._metrics.fixes_applied.inc()
        log.info("fix_applied", candidate_id=candidate.id, file=str(path), backup_ref=ref)
        return AppliedFix(
            candidate_id=candidate.id,
            error_id=candidate.error_id,
            file_path=str(path),
            backup_ref=ref,
            applied_at=self._clock(),
            success=True,
        )

    def _failed(self, candidate: FixCandidate, file_path: str, reason: str) -> AppliedFix:
        log.warning("fix_not_applied", candidate_id=candidate.id, file=file_path, reason=reason)
        return AppliedFix(
            candidate_id=candidate.id,
            error_id=candidate.error_id,
            file_path=file_path,
            backup_ref=None,
            applied_at=self._clock(),
            success=False,
            reason=reason,
        )

    async def _undo(self, candidate: FixCandidate, path: Path, ref: str, reason: str) -> AppliedFix:
        """Restore after a bad write; the backup goes only once restoration is confirmed."""
        log.warning("fix_rolled_back_on_verify", candidate_id=candidate.id, file=str(path), reason=reason)
        await self._backups.restore(ref)
        await self._backups.discard(ref)
        self._metrics.fixes_rolled_back.inc()
        now = self._clock()
        return AppliedFix(
            candidate_id=candidate.id,
            error_id=candidate.error_id,
            file_path=str(path),
            backup_ref=None,
            applied_at=now,
            success=False,
            rolled_back_at=now,
            reason=reason,
        )

    async def apply_batch(self, candidates: Sequence[FixCandidate]) -> list[AppliedFix]:
        """Apply a batch, serializing candidates that share a file.

        Within a file candidates go in ascending start line (ties broken by
        end line, error id and candidate id, so reruns are reproducible).
        Each later candidate is shifted by the net line delta of the ones
        already applied to that file.

        Candidates are grouped by resolved path, so ``./game.py``, ``game.py``
        and an absolute path to the same file share one offset sequence.

        Returns:
            One AppliedFix per candidate, files in name order.
        """
        by_file: defaultdict[str, list[FixCandidate]] = defaultdict(list)
        for candidate in candidates:
            try:
                key = str(resolve_within(self._root, candidate.patch.target_file))
            except SecurityError:
                # apply() reports the rejection
                key = candidate.patch.target_file
            by_file[key].append(candidate)

        results: list[AppliedFix] = []
        for target_file in sorted(by_file):
            ordered = sorted(
                by_file[target_file],
                key=lambda c: (c.patch.start_line, c.patch.end_line, c.error_id, c.id),
            )
            offset = 0
            applied: list[FixCandidate] = []
            for candidate in ordered:
                overlapping = [c for c in applied if c.patch.overlaps_lines(candidate.patch)]
                if overlapping:
                    conflict = ConflictError(
                        f"{candidate.id} overlaps {', '.join(c.id for c in overlapping)} in {target_file}"
                    )
                    log.info("patch_conflict_serialized", detail=str(conflict), offset=offset)

                result = await self.apply(candidate, line_offset=offset)
                results.append(result)
                if result.success:
                    offset += candidate.patch.line_delta
                    applied.append(candidate)
        return results

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def rollback(self, applied: AppliedFix) -> AppliedFix:
        """Restore the pre-apply content verbatim and drop the backup.

        Raises:
            ApplicationError: If the fix has no retained backup or the
                restored bytes differ from the backup.
        """
        if not applied.backup_ref:
            raise ApplicationError(f"No backup retained for {applied.candidate_id}")
        path = Path(applied.file_path)
        async with self._locks[path]:
            await self._backups.restore(applied.backup_ref)
            await self._backups.discard(applied.backup_ref)
        self._metrics.fixes_rolled_back.inc()
        log.info("fix_rolled_back", candidate_id=applied.candidate_id, file=applied.file_path)
        return replace(applied, backup_ref=None, rolled_back_at=self._clock())

    async def rollback_all(self, reason: str) -> tuple[int, int]:
        """Restore every retained backup, newest first.

        Newest first matters when several fixes touched one file: the
        oldest backup is the last one written and holds the original.

        Returns:
            (restored, failed) counts.
        """
        log.warning("rollback_all_started", reason=reason, backups=len(self._backups))
        restored = failed = 0
        for entry in self._backups.entries():
            try:
                async with self._locks[Path(entry.path)]:
                    await self._backups.restore(entry.ref)
                    await self._backups.discard(entry.ref)
            except ApplicationError as e:
                failed += 1
                log.error("rollback_failed", ref=entry.ref, path=entry.path, error=str(e))
                continue
            restored += 1
            self._metrics.fixes_rolled_back.inc()
        log.info("rollback_all_finished", reason=reason, restored=restored, failed=failed)
        return restored, failed

    async def discard(self, applied: AppliedFix) -> None:
        """Confirm a fix as stable and release its backup."""
        if applied.backup_ref:
            await self._backups.discard(applied.backup_ref)
