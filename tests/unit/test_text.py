"""Tests for line splitting."""

from __future__ import annotations

import pytest

from autofix_loop.utils.text import split_lines


class TestSplitLines:
    """Tests for split_lines."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("", []),
            ("a", ["a"]),
            ("a\n", ["a"]),
            ("a\nb", ["a", "b"]),
            ("a\r\nb\r\n", ["a", "b"]),
            ("a\rb\r", ["a", "b"]),
            ("a\n\nb", ["a", "", "b"]),
            ("a\r\r\nb", ["a", "", "b"]),
        ],
    )
    def test_line_ends(self, text: str, expected: list[str]) -> None:
        """Test LF, CRLF and CR each end one line."""
        assert split_lines(text) == expected

    @pytest.mark.parametrize("separator", ["\x0c", "\x0b", "\x1c", "\x1d", "\x1e", "\x85", "\u2028", "\u2029"])
    def test_other_separators_stay_in_line(self, separator: str) -> None:
        """Test characters str.splitlines breaks on are kept inside the line."""
        text = f"a\n{separator}b\nc\n"

        assert split_lines(text) == ["a", f"{separator}b", "c"]
        assert len(text.splitlines()) == 4

    def test_keepends(self) -> None:
        """Test terminators are kept verbatim."""
        assert split_lines("a\r\nb\rc\nd", keepends=True) == ["a\r\n", "b\r", "c\n", "d"]

    def test_keepends_round_trips(self) -> None:
        """Test joining kept lines restores the text."""
        text = "x = 1\n\x0c\r\ny = 2\rz"

        assert "".join(split_lines(text, keepends=True)) == text
