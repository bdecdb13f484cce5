"""Line-range patch arithmetic and atomic file replacement."""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path

from autofix_loop.models.fix import Patch
from autofix_loop.utils.async_helpers import ApplicationError
from autofix_loop.utils.text import split_lines


def detect_newline(lines: list[str]) -> str:
    """Line terminator used by the file, "\\n" when it has none."""
    for line in lines:
        if line.endswith("\r\n"):
            return "\r\n"
        if line.endswith("\n"):
            return "\n"
        if line.endswith("\r"):
            return "\r"
    return "\n"


def render_patch(content: str, patch: Patch, line_offset: int = 0) -> str:
    """Return ``content`` with the patch's line range replaced.

    Args:
        content: Current file text.
        patch: Patch with 1-indexed inclusive line numbers.
        line_offset: Shift applied to the patch's lines, used when earlier
            patches in the same batch changed the line count.

    Returns:
        Patched text. The file's newline style is kept, and a missing
        trailing newline stays missing.

    Raises:
        ApplicationError: If the shifted range does not fit the file.
    """
    lines = split_lines(content, keepends=True)
    start = patch.start_line + line_offset
    end = patch.end_line + line_offset

    if start < 1 or end < start or end > len(lines):
        raise ApplicationError(
            f"Patch range {start}-{end} does not fit {patch.target_file} ({len(lines)} lines)"
        )

    newline = detect_newline(lines)
    replacement = [line + newline for line in patch.replacement_lines]
    if replacement and not lines[end - 1].endswith(("\n", "\r")):
        replacement[-1] = replacement[-1][: -len(newline)]

    return "".join(lines[: start - 1] + replacement + lines[end:])


def atomic_write(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` so readers see old or new, never half.

    The temp file lives in the destination directory so ``os.replace`` stays
    a same-filesystem rename. Existing permission bits are kept.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
