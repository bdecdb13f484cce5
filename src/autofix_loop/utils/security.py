"""Security utilities for secret redaction and target path containment.

Everything that leaves the process (oracle requests, log lines) passes
through the SecretRedactor first. Redaction fails closed: a pattern that
cannot be applied blocks the operation instead of letting raw text through.

Fix candidates name the file they patch. Those names come from an external
service, so every target path is resolved against the configured target root
and rejected if it escapes it.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlsplit

import structlog

from autofix_loop.utils.async_helpers import SecurityError

if TYPE_CHECKING:
    from collections.abc import Sequence

log = structlog.get_logger()


class RedactionError(SecurityError):
    """Raised when secret redaction fails."""


class PathTraversalError(SecurityError):
    """Raised when a path points outside the target root."""


class SecretRedactor:
    """Detects and redacts secrets from text.

    Usage:
        redactor = SecretRedactor()
        safe_text = redactor.redact(source_snippet)

    Attributes:
        placeholder: The string to replace secrets with (default: "[REDACTED]").
    """

    DEFAULT_PATTERNS: tuple[tuple[str, str], ...] = (
        (
            r"(?i)(api[_-]?key|secret|token|password|credential)\s*[=:]\s*[\"']?[\w-]{16,}",
            "Generic secret",
        ),
        (r"sk-ant-[\w-]{40,}", "Anthropic API key"),
        (r"sk-proj-[a-zA-Z0-9]{20,}", "OpenAI project API key"),
        (r"gh[pousr]_[a-zA-Z0-9]{36}", "GitHub token"),
        (r"AKIA[0-9A-Z]{16}", "AWS access key ID"),
        (r"AIza[0-9A-Za-z\-_]{35}", "Google API key"),
        (r"sk_live_[a-zA-Z0-9]{24,}", "Stripe secret key"),
        (
            r"(?i)(postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis|amqp)://[^:]+:[^@]+@[^\s]+",
            "Database connection string",
        ),
        (
            r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----",
            "Private key header",
        ),
        (
            r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*",
            "JWT token",
        ),
    )

    def __init__(
        self,
        placeholder: str = "[REDACTED]",
        custom_patterns: Sequence[tuple[str, str]] | None = None,
    ) -> None:
        """Initialize the SecretRedactor.

        Args:
            placeholder: String to replace detected secrets with.
            custom_patterns: Additional (pattern, name) tuples to detect.

        Raises:
            RedactionError: If any pattern fails to compile.
        """
        self.placeholder = placeholder
        self._pattern_names: dict[re.Pattern[str], str] = {}

        for pattern_str, name in (*self.DEFAULT_PATTERNS, *(custom_patterns or ())):
            try:
                self._pattern_names[re.compile(pattern_str)] = name
            except re.error as e:
                log.error("pattern_compilation_failed", pattern=pattern_str, error=str(e))
                raise RedactionError(f"Failed to compile secret pattern '{pattern_str}': {e}") from e

    @property
    def patterns(self) -> list[re.Pattern[str]]:
        """Return the list of compiled patterns."""
        return list(self._pattern_names)

    def redact(self, text: str) -> str:
        """Redact all secrets from the given text.

        Args:
            text: The text to scan and redact secrets from.

        Returns:
            The text with all detected secrets replaced with placeholder.

        Raises:
            RedactionError: If redaction fails for any reason.
        """
        if not text:
            return text

        try:
            for pattern in self._pattern_names:
                text = pattern.sub(self.placeholder, text)
            return text
        except Exception as e:
            log.error("redaction_failed", error=str(e))
            raise RedactionError(f"Redaction failed: {e}") from e

    def has_secrets(self, text: str) -> bool:
        """Check if text contains any secrets.

        Raises:
            RedactionError: If checking fails for any reason.
        """
        if not text:
            return False

        try:
            return any(pattern.search(text) for pattern in self._pattern_names)
        except Exception as e:
            log.error("has_secrets_check_failed", error=str(e))
            raise RedactionError(f"Secret check failed: {e}") from e


def strip_source_url(file_path: str) -> str:
    """Turn a script location reported by a browser into a file path.

    ``http://localhost:8080/js/game.js?v=3#L2`` becomes ``js/game.js``;
    ``file:///srv/game/js/game.js`` becomes ``/srv/game/js/game.js``.
    Anything without a scheme and host is returned unchanged.

    Args:
        file_path: Location as reported by the target.

    Returns:
        A root-relative path for served scripts, an absolute path for
        ``file:`` URLs, or the input when it is not a URL.
    """
    parts = urlsplit(file_path)
    if parts.scheme == "file":
        return unquote(parts.path) or file_path
    if not (parts.scheme and parts.netloc):
        return file_path
    return unquote(parts.path).lstrip("/") or file_path


def resolve_within(root: Path, file_path: str) -> Path:
    """Resolve a target-relative path and make sure it stays inside ``root``.

    Absolute paths are accepted only when they already point inside the root,
    which is how ``file:`` script URLs arrive after :func:`strip_source_url`.

    Args:
        root: Target root directory.
        file_path: Path as reported by the target or an oracle.

    Returns:
        Absolute, resolved path inside ``root``.

    Raises:
        PathTraversalError: If the path escapes ``root``.
    """
    if not file_path or "\x00" in file_path:
        raise PathTraversalError(f"Invalid file path: {file_path!r}")

    resolved_root = root.resolve()
    candidate = Path(file_path)
    if not candidate.is_absolute():
        normalized = os.path.normpath(file_path)
        if normalized.startswith(".."):
            raise PathTraversalError(f"Invalid file path: {file_path}")
        candidate = resolved_root / normalized

    full_path = candidate.resolve()
    try:
        full_path.relative_to(resolved_root)
    except ValueError:
        log.warning("path_traversal_rejected", file_path=file_path)
        raise PathTraversalError(f"Path traversal detected: {file_path}") from None

    return full_path


def sanitize_for_logging(text: str) -> str:
    """Remove ANSI escape codes and control characters from text.

    Error messages arrive from the target unfiltered and end up in logs and
    the final report.

    Args:
        text: The text to sanitize.

    Returns:
        The text with ANSI codes and control characters removed.
    """
    if not text:
        return text

    text = re.sub(r"\x1b\[[0-9;]*m", "", text)
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)
