"""Error kind and severity classification."""

from __future__ import annotations

import re

from autofix_loop.models.error import ErrorKind, Severity

# Checked in order; the first match wins.
KIND_PATTERNS: tuple[tuple[ErrorKind, re.Pattern[str]], ...] = (
    (ErrorKind.SYNTAX_ERROR, re.compile(r"SyntaxError|Unexpected token|invalid syntax", re.I)),
    (
        ErrorKind.UNDEFINED_PROPERTY,
        re.compile(
            r"Cannot read propert(?:y|ies) (?:of (?:undefined|null)|['\"]?\w+['\"]? of (?:undefined|null))"
            r"|(?:undefined|null) is not an object"
            r"|'NoneType' object has no attribute",
            re.I,
        ),
    ),
    (
        ErrorKind.NOT_A_FUNCTION,
        re.compile(r"[\w.$\[\]'\"]+ is not a function|object is not callable", re.I),
    ),
    (
        ErrorKind.REFERENCE_ERROR,
        re.compile(r"[\w$]+ is not defined|name '\w+' is not defined|ReferenceError", re.I),
    ),
    (
        ErrorKind.STATE_CORRUPTION,
        re.compile(r"state.*corrupt|invalid.*game.*state|undefined.*state", re.I),
    ),
    (
        ErrorKind.STORAGE_FAILURE,
        re.compile(r"save.*failed|localStorage|quota.*exceeded|QuotaExceededError", re.I),
    ),
    (
        ErrorKind.NETWORK_FAILURE,
        re.compile(r"Failed to fetch|Network ?request failed|ERR_NETWORK|NetworkError", re.I),
    ),
    (ErrorKind.TIMEOUT, re.compile(r"time(?:d)? ?out|deadline exceeded", re.I)),
    (ErrorKind.MEMORY_LEAK, re.compile(r"memory leak|heap (?:size|limit)|out of memory", re.I)),
    (
        ErrorKind.ELEMENT_NOT_FOUND,
        re.compile(r"element.*not.*found|querySelector.*null|cannot find element", re.I),
    ),
)

_HIGH_KINDS = frozenset(
    {
        ErrorKind.UNDEFINED_PROPERTY,
        ErrorKind.NOT_A_FUNCTION,
        ErrorKind.REFERENCE_ERROR,
        ErrorKind.MEMORY_LEAK,
        ErrorKind.STORAGE_FAILURE,
        ErrorKind.SYNTAX_ERROR,
    }
)


def classify_kind(message: str) -> ErrorKind:
    """Map an error message onto the closed set of kinds."""
    for kind, pattern in KIND_PATTERNS:
        if pattern.search(message):
            return kind
    return ErrorKind.UNKNOWN


def classify_severity(
    kind: ErrorKind,
    component: str | None,
    critical_components: frozenset[str] | set[str] = frozenset(),
) -> Severity:
    """Derive severity when the reporter did not assign one.

    Anything raised from a critical component blocks every later user flow,
    so it outranks the kind of error.
    """
    if kind is ErrorKind.STATE_CORRUPTION or (component and component in critical_components):
        return Severity.CRITICAL
    if kind in _HIGH_KINDS:
        return Severity.HIGH
    return Severity.MEDIUM
