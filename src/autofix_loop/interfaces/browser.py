"""Abstract interface for browser automation."""

from typing import Any, Protocol

from ..models.browser import Observation, SessionHandle


class BrowserAutomation(Protocol):
    """Drives live instances of the target application.

    Sessions are scarce. Callers check one out per validation run and must
    close it afterwards, on success and on failure.
    """

    async def open_session(self) -> SessionHandle:
        """
        Start a fresh instance of the target and begin recording errors.

        Raises:
            ValidationError: If the target cannot be loaded
        """
        ...

    async def inject(self, session: SessionHandle, code: str) -> None:
        """
        Execute code inside the running target.

        Args:
            session: Open session
            code: Source text to load into the page
        """
        ...

    async def evaluate(self, session: SessionHandle, expression: str) -> Any:
        """
        Evaluate an expression and return its JSON-serializable value.

        Args:
            session: Open session
            expression: Expression or function body to evaluate
        """
        ...

    async def observe(self, session: SessionHandle) -> Observation:
        """Return console errors and network failures recorded so far."""
        ...

    async def close_session(self, session: SessionHandle) -> None:
        """Tear the instance down. Closing twice is a no-op."""
        ...
