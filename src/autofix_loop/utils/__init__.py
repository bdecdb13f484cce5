"""Utility functions and helpers.

This module provides various utilities for autofix-loop:
- async_helpers: Error taxonomy, retry, rate counting, worker pool
- security: Secret redaction, target path containment
- safe_subprocess: Safe subprocess execution
- logging: Structured logging with secret sanitization
- metrics: Loop metrics collection
"""

from autofix_loop.utils.async_helpers import (
    AutofixError,
    SecurityError,
    ValidationError,
)
from autofix_loop.utils.logging import (
    bind_context,
    configure_logging,
    unbind_context,
)
from autofix_loop.utils.metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsRegistry,
    Timer,
    get_metrics,
)
from autofix_loop.utils.security import (
    PathTraversalError,
    RedactionError,
    SecretRedactor,
    resolve_within,
    strip_source_url,
)

__all__ = [
    "AutofixError",
    # Metrics
    "Counter",
    "Gauge",
    "Histogram",
    "MetricsRegistry",
    # Security
    "PathTraversalError",
    "RedactionError",
    "SecretRedactor",
    "SecurityError",
    "Timer",
    "ValidationError",
    "bind_context",
    "configure_logging",
    "get_metrics",
    "resolve_within",
    "strip_source_url",
    "unbind_context",
]
