"""Concrete implementations of provider interfaces."""

from .browser.playwright import PlaywrightBrowser
from .oracle.anthropic import AnthropicOracle
from .toolchain.node import NodeToolchain
from .toolchain.python import PythonToolchain

__all__ = [
    "AnthropicOracle",
    "NodeToolchain",
    "PlaywrightBrowser",
    "PythonToolchain",
]
