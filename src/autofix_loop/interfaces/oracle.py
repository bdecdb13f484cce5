"""Abstract interface for fix-generation oracles."""

from typing import Protocol

from ..models.error import ErrorRecord
from ..models.fix import FixContext, OracleProposal


class FixOracle(Protocol):
    """External service that proposes fixes for an error.

    The oracle is a black box: it gets an error plus context and returns
    zero or more proposals. Scoring, caching, rate limiting and the
    template fallback live in FixOracleClient, not in implementations.
    """

    @property
    def name(self) -> str:
        """Identifier used in logs and strategy tags."""
        ...

    async def propose_fixes(
        self,
        error: ErrorRecord,
        context: FixContext,
    ) -> list[OracleProposal]:
        """
        Ask for candidate fixes.

        Security: implementations MUST run the context through
        SecretRedactor before it leaves the process.

        Args:
            error: The error to fix
            context: Source snippet, recent user actions and state snapshot

        Returns:
            Proposals in the order the oracle ranked them

        Raises:
            GenerationError: If the oracle fails or answers with an unusable payload
            TimeoutError: If the request times out
            SecurityError: If redaction fails
        """
        ...
