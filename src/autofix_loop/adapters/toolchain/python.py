"""Toolchain for Python targets, built on the ``ast`` module.

Linting is intentionally small: it covers the rule families the validation
gate scores (undefined names, unreachable statements, duplicate dict keys)
plus unused locals as a warning. It is not a replacement for a full linter.
"""

from __future__ import annotations

import ast
import builtins

import structlog

from ...models.validation import LintViolation, RiskFinding, SyntaxReport

log = structlog.get_logger()

_BUILTIN_NAMES = frozenset(dir(builtins)) | {"__file__", "__name__", "__doc__", "__spec__"}
_TERMINATORS = (ast.Return, ast.Raise, ast.Break, ast.Continue)


def _bound_names(tree: ast.AST) -> set[str]:
    """Every name the module binds anywhere, regardless of scope."""
    names: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and isinstance(node.ctx, (ast.Store, ast.Del)):
            names.add(node.id)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
        elif isinstance(node, ast.arg):
            names.add(node.arg)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                names.add((alias.asname or alias.name).split(".")[0])
        elif isinstance(node, ast.ExceptHandler) and node.name:
            names.add(node.name)
        elif isinstance(node, (ast.Global, ast.Nonlocal)):
            names.update(node.names)
        elif isinstance(node, (ast.MatchAs, ast.MatchStar)) and node.name:
            names.add(node.name)
    return names


def _statement_blocks(tree: ast.AST) -> list[list[ast.stmt]]:
    blocks: list[list[ast.stmt]] = []
    for node in ast.walk(tree):
        for attr in ("body", "orelse", "finalbody"):
            block = getattr(node, attr, None)
            if isinstance(block, list) and block and isinstance(block[0], ast.stmt):
                blocks.append(block)
    return blocks


class PythonToolchain:
    """Syntax and lint checks for Python source.

    Example:
        toolchain = PythonToolchain()
        report = await toolchain.check_syntax(source, "game/save.py")
    """

    @property
    def language(self) -> str:
        return "python"

    async def check_syntax(self, source: str, filename: str) -> SyntaxReport:
        try:
            ast.parse(source, filename=filename)
        except SyntaxError as e:
            return SyntaxReport(ok=False, message=e.msg or str(e), line=e.lineno)
        return SyntaxReport(ok=True)

    async def lint(self, source: str, filename: str) -> list[LintViolation] | None:
        try:
            tree = ast.parse(source, filename=filename)
        except SyntaxError as e:
            return [LintViolation("syntax", "error", e.lineno or 0, e.msg or str(e))]

        violations: list[LintViolation] = []
        violations.extend(self._undefined_names(tree))
        violations.extend(self._unreachable(tree))
        violations.extend(self._duplicate_keys(tree))
        violations.extend(self._unused_locals(tree))
        violations.sort(key=lambda v: (v.line, v.rule))
        return violations

    def _undefined_names(self, tree: ast.AST) -> list[LintViolation]:
        known = _bound_names(tree) | _BUILTIN_NAMES
        return [
            LintViolation("undefined-name", "error", node.lineno, f"undefined name '{node.id}'")
            for node in ast.walk(tree)
            if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Load) and node.id not in known
        ]

    def _unreachable(self, tree: ast.AST) -> list[LintViolation]:
        found: list[LintViolation] = []
        for block in _statement_blocks(tree):
            for stmt, following in zip(block, block[1:], strict=False):
                if isinstance(stmt, _TERMINATORS):
                    found.append(
                        LintViolation(
                            "unreachable-code",
                            "error",
                            following.lineno,
                            f"unreachable code after '{type(stmt).__name__.lower()}'",
                        )
                    )
                    break
        return found

    def _duplicate_keys(self, tree: ast.AST) -> list[LintViolation]:
        found: list[LintViolation] = []
        for node in ast.walk(tree):
            if not isinstance(node, ast.Dict):
                continue
            seen: set[object] = set()
            for key in node.keys:
                if isinstance(key, ast.Constant):
                    if key.value in seen:
                        found.append(
                            LintViolation(
                                "duplicate-key", "error", key.lineno, f"duplicate key {key.value!r}"
                            )
                        )
                    seen.add(key.value)
        return found

    def _unused_locals(self, tree: ast.AST) -> list[LintViolation]:
        found: list[LintViolation] = []
        for func in ast.walk(tree):
            if not isinstance(func, (ast.FunctionDef, ast.AsyncFunctionDef)):
                continue
            stored: dict[str, int] = {}
            loaded: set[str] = set()
            declared: set[str] = set()
            for node in ast.walk(func):
                if isinstance(node, ast.Name):
                    if isinstance(node.ctx, ast.Store):
                        stored.setdefault(node.id, node.lineno)
                    else:
                        loaded.add(node.id)
                elif isinstance(node, (ast.Global, ast.Nonlocal)):
                    declared.update(node.names)
            for name, line in stored.items():
                if name not in loaded and name not in declared and not name.startswith("_"):
                    found.append(
                        LintViolation(
                            "unused-variable", "warning", line, f"local '{name}' is never used"
                        )
                    )
        return found

    def find_risks(self, code: str) -> list[RiskFinding]:
        try:
            tree = ast.parse(code)
        except SyntaxError:
            return []

        risks: list[RiskFinding] = []
        for node in ast.walk(tree):
            if (
                isinstance(node, ast.While)
                and isinstance(node.test, ast.Constant)
                and node.test.value is True
                and not any(isinstance(n, (ast.Break, ast.Return, ast.Raise)) for n in ast.walk(node))
            ):
                risks.append(RiskFinding("unbounded-loop", node.lineno, "while True without exit"))
            elif isinstance(node, ast.Call) and _call_name(node) in ("Timer", "threading.Timer"):
                if ".cancel(" not in code:
                    risks.append(
                        RiskFinding("timer-without-cleanup", node.lineno, "Timer is never cancelled")
                    )
            elif isinstance(node, ast.Global):
                risks.append(
                    RiskFinding("global-write", node.lineno, f"global {', '.join(node.names)}")
                )
            elif (
                isinstance(node, ast.Subscript)
                and isinstance(node.ctx, ast.Store)
                and isinstance(node.value, ast.Call)
                and _call_name(node.value) == "globals"
            ):
                risks.append(RiskFinding("global-write", node.lineno, "write through globals()"))
        return risks


def _call_name(call: ast.Call) -> str:
    func = call.func
    if isinstance(func, ast.Name):
        return func.id
    if isinstance(func, ast.Attribute) and isinstance(func.value, ast.Name):
        return f"{func.value.id}.{func.attr}"
    return ""
