"""Protocol definitions for pluggable adapters."""

from .browser import BrowserAutomation
from .oracle import FixOracle
from .toolchain import Toolchain

__all__ = ["BrowserAutomation", "FixOracle", "Toolchain"]
