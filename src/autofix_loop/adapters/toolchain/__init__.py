"""Language toolchains used for syntax and lint checks."""

from ...interfaces.toolchain import Toolchain
from .node import NodeToolchain
from .python import PythonToolchain


def create_toolchain(language: str) -> Toolchain:
    """Return the toolchain for a target language.

    Raises:
        ValueError: If the language is not supported.
    """
    if language == "javascript":
        return NodeToolchain()
    if language == "python":
        return PythonToolchain()
    raise ValueError(f"Unsupported target language: {language}")


__all__ = ["NodeToolchain", "PythonToolchain", "create_toolchain"]
