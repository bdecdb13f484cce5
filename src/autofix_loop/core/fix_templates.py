"""Deterministic fix templates used when the oracle is unavailable.

Each ErrorKind maps to at most one template. A template rewrites the single
failing line, so it only fires when that line is a complete statement.
Output is a pure function of the error and the source, and confidence is
capped at TEMPLATE_MAX_CONFIDENCE so a template never outranks a confident
oracle answer.
"""

from __future__ import annotations

import re

import structlog

from autofix_loop.models.error import ErrorKind, ErrorRecord
from autofix_loop.models.fix import FixContext, OracleProposal
from autofix_loop.utils.text import split_lines

log = structlog.get_logger()

TEMPLATE_MAX_CONFIDENCE = 60
SPECIFIC_CONFIDENCE = 60
GUARD_CONFIDENCE = 55
GENERIC_CONFIDENCE = 45

_JS_PROPERTY = re.compile(
    r"\(reading '([\w$]+)'\)|Cannot read property '([\w$]+)'|has no attribute '(\w+)'"
)
_NOT_A_FUNCTION = re.compile(r"([\w$.]+) is not a function")
_NOT_DEFINED = re.compile(r"(?:name ')?([\w$]+)'? is not defined")

_GENERIC_TAGS = {
    ErrorKind.NETWORK_FAILURE: "network-guard",
    ErrorKind.TIMEOUT: "timeout-guard",
    ErrorKind.STORAGE_FAILURE: "storage-guard",
    ErrorKind.ELEMENT_NOT_FOUND: "dom-guard",
    ErrorKind.STATE_CORRUPTION: "state-guard",
    ErrorKind.UNKNOWN: "error-boundary",
}


def _balanced(text: str) -> bool:
    depth = 0
    for char in text:
        if char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def _is_complete_statement(line: str, language: str) -> bool:
    stripped = line.strip()
    if not stripped or not _balanced(stripped):
        return False
    if language == "python":
        return not stripped.endswith(":") and not stripped.startswith(
            ("else", "elif", "except", "finally", "return", "@", "def ", "class ")
        )
    return stripped.endswith((";", ")")) and not stripped.startswith(
        ("}", "else", "case", "default", "return", "function", "if", "for", "while")
    )


def _indent_of(line: str) -> str:
    return line[: len(line) - len(line.lstrip())]


def _wrap_guard(line: str, condition: str, language: str) -> str:
    indent = _indent_of(line)
    body = line.strip()
    if language == "python":
        return f"{indent}if {condition}:\n{indent}    {body}"
    return f"{indent}if ({condition}) {{\n{indent}  {body}\n{indent}}}"


def _wrap_try(line: str, error: ErrorRecord, language: str) -> str:
    indent = _indent_of(line)
    body = line.strip()
    if language == "python":
        return (
            f"{indent}try:\n{indent}    {body}\n"
            f"{indent}except Exception:  # autofix {error.kind.value}\n{indent}    pass"
        )
    return (
        f"{indent}try {{\n{indent}  {body}\n"
        f"{indent}}} catch (err) {{\n"
        f"{indent}  console.warn('autofix {error.kind.value} guard', err);\n{indent}}}"
    )


def _optional_chaining(line: str, error: ErrorRecord, language: str) -> tuple[str, str] | None:
    match = _JS_PROPERTY.search(error.message)
    if not match:
        return None
    prop = next(group for group in match.groups() if group)

    if language == "python":
        pattern = re.compile(rf"([A-Za-z_][\w.]*)\.{re.escape(prop)}\b(?!\s*=[^=])")
        if not pattern.search(line):
            return None
        return pattern.sub(rf'getattr(\1, "{prop}", None)', line, count=1), "getattr-default"

    pattern = re.compile(rf"(?<!\?)\.{re.escape(prop)}\b")
    found = pattern.search(line)
    if not found:
        return None
    # Optional chaining is invalid on an assignment target
    rest = line[found.end() :].lstrip()
    if rest.startswith("=") and not rest.startswith("=="):
        return None
    return line[: found.start()] + "?." + prop + line[found.end() :], "optional-chaining"


def template_fixes(error: ErrorRecord, context: FixContext, language: str) -> list[OracleProposal]:
    """Produce deterministic fallback proposals for an error.

    Args:
        error: Error to fix.
        context: Source around the error; must contain the failing line.
        language: "javascript" or "python".

    Returns:
        Zero or one proposal. Empty when the kind has no template or the
        failing line is not something a template can rewrite safely.
    """
    lines = split_lines(context.source_snippet)
    index = error.line - context.snippet_start_line
    if not 0 <= index < len(lines):
        log.debug("template_line_outside_snippet", key=error.key, line=error.line)
        return []
    line = lines[index]

    code: str | None = None
    tag = ""
    confidence = GENERIC_CONFIDENCE

    match error.kind:
        case ErrorKind.UNDEFINED_PROPERTY:
            rewritten = _optional_chaining(line, error, language)
            if rewritten is not None:
                code, tag = rewritten
                confidence = SPECIFIC_CONFIDENCE
            elif _is_complete_statement(line, language):
                code, tag = _wrap_try(line, error, language), "null-guard"
        case ErrorKind.NOT_A_FUNCTION:
            found = _NOT_A_FUNCTION.search(error.message)
            if found and language == "javascript" and _is_complete_statement(line, language):
                code = _wrap_guard(line, f"typeof {found.group(1)} === 'function'", language)
                tag, confidence = "type-check", GUARD_CONFIDENCE
        case ErrorKind.REFERENCE_ERROR:
            found = _NOT_DEFINED.search(error.message)
            if found and _is_complete_statement(line, language):
                name = found.group(1)
                condition = (
                    f'"{name}" in globals()'
                    if language == "python"
                    else f"typeof {name} !== 'undefined'"
                )
                code = _wrap_guard(line, condition, language)
                tag, confidence = "global-guard", GUARD_CONFIDENCE
        case ErrorKind.SYNTAX_ERROR | ErrorKind.MEMORY_LEAK:
            # Needs real reasoning, a blind rewrite would only hide it
            pass
        case _:
            if _is_complete_statement(line, language):
                code, tag = _wrap_try(line, error, language), _GENERIC_TAGS[error.kind]

    if code is None:
        log.debug("no_template_for_error", key=error.key, kind=error.kind.value)
        return []

    return [
        OracleProposal(
            confidence=min(confidence, TEMPLATE_MAX_CONFIDENCE),
            code=code,
            explanation=f"Template '{tag}' for {error.kind.value} at line {error.line}",
            start_line=error.line,
            end_line=error.line,
            strategy_tag=tag,
        )
    ]
