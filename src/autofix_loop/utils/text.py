"""Line splitting that agrees with reported line numbers."""

from __future__ import annotations

import re

# Only \n, \r\n and \r end a line. str.splitlines also breaks on \f, \v,
# \x1c-\x1e, \x85 and the Unicode line and paragraph separators.
_LINE_END = re.compile(r"(?<=\n)|(?<=\r)(?!\n)")


def split_lines(text: str, keepends: bool = False) -> list[str]:
    """Split ``text`` into lines like ``str.splitlines`` minus the extra breaks.

    Args:
        text: Text to split.
        keepends: Keep each line's terminator.

    Returns:
        The lines. Empty text gives an empty list, and a trailing
        terminator does not produce a trailing empty line.
    """
    if not text:
        return []
    lines = _LINE_END.split(text)
    if lines[-1] == "":
        lines.pop()
    if keepends:
        return lines
    return [line.rstrip("\r\n") for line in lines]
