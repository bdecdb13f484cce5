"""Data models for the browser-automation boundary."""

from dataclasses import dataclass


@dataclass(frozen=True)
class SessionHandle:
    """Opaque reference to a live instance of the target."""

    id: str


@dataclass(frozen=True)
class Observation:
    """Everything the target reported since the session opened."""

    console_errors: tuple[str, ...] = ()
    network_failures: tuple[str, ...] = ()

    @property
    def distinct_errors(self) -> frozenset[str]:
        """Unique console errors and network failures."""
        return frozenset(self.console_errors) | frozenset(self.network_failures)
