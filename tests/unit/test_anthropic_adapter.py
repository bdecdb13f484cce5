"""Tests for the Anthropic fix oracle."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from autofix_loop.adapters.oracle.anthropic import MAX_RESPONSE_LENGTH, SYSTEM_PROMPT, AnthropicOracle
from autofix_loop.config.schema import AnthropicConfig, RetryConfig
from autofix_loop.models.fix import FixContext
from autofix_loop.utils.async_helpers import GenerationError, SecurityError, TimeoutError
from autofix_loop.utils.security import RedactionError

FAKE_KEY = "sk-ant-REDACTED"
REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


@pytest.fixture
def anthropic_config() -> AnthropicConfig:
    """Create a test Anthropic configuration."""
    return AnthropicConfig(api_key="sk-ant-test-key-123", model="claude-3-5-sonnet-20241022")


@pytest.fixture
def client() -> MagicMock:
    """Return an SDK client whose messages.create is an AsyncMock."""
    client = MagicMock()
    client.messages.create = AsyncMock()
    return client


@pytest.fixture
def oracle(anthropic_config: AnthropicConfig, client: MagicMock) -> AnthropicOracle:
    """Return an oracle over the mocked client with no retry delay."""
    return AnthropicOracle(
        anthropic_config,
        retry_config=RetryConfig(max_attempts=2, initial_delay=0.1, max_delay=1.0),
        client=client,
    )


@pytest.fixture
def context() -> FixContext:
    """Return a context with a numbered snippet."""
    return FixContext(
        source_snippet="def heal(player, amount):\n    total = player.hp + amount\n    return total",
        snippet_start_line=1,
        recent_actions=({"type": "click", "target": "heal"},),
        state_snapshot={"hp": 0},
    )


def reply(client: MagicMock, text: str) -> None:
    block = MagicMock()
    block.text = text
    client.messages.create.return_value = MagicMock(content=[block])


FIXES = {
    "fixes": [
        {
            "confidence": 80,
            "description": "Default missing hp",
            "reasoning": "player may be None",
            "code": '    total = getattr(player, "hp", 0) + amount',
            "startLine": 2,
            "endLine": 2,
            "strategy": "getattr-default",
        }
    ]
}


class TestProposeFixes:
    """Tests for a full oracle round trip."""

    async def test_success(self, oracle: AnthropicOracle, client: MagicMock, make_error, context) -> None:
        """Test a valid answer becomes proposals."""
        reply(client, json.dumps(FIXES))

        proposals = await oracle.propose_fixes(make_error(), context)

        assert len(proposals) == 1
        proposal = proposals[0]
        assert proposal.confidence == 80
        assert (proposal.start_line, proposal.end_line) == (2, 2)
        assert proposal.strategy_tag == "getattr-default"
        assert proposal.explanation == "Default missing hp\n\nplayer may be None"

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-3-5-sonnet-20241022"
        assert kwargs["system"] == SYSTEM_PROMPT

    async def test_prompt_is_redacted_and_numbered(
        self, oracle: AnthropicOracle, client: MagicMock, make_error
    ) -> None:
        """Test secrets never reach the API and source lines carry numbers."""
        reply(client, '{"fixes": []}')
        context = FixContext(
            source_snippet=f"const KEY = '{FAKE_KEY}';\nplayer.hp += 1;",
            snippet_start_line=40,
            state_snapshot={"token": FAKE_KEY},
        )

        await oracle.propose_fixes(make_error(message=f"bad key {FAKE_KEY}"), context)

        prompt = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert FAKE_KEY not in prompt
        assert "[REDACTED]" in prompt
        assert "   41 | player.hp += 1;" in prompt
        assert '<user_data type="source" file="game.py">' in prompt

    async def test_fenced_answer(self, oracle: AnthropicOracle, client: MagicMock, make_error, context) -> None:
        """Test a fenced JSON block is accepted."""
        reply(client, "```json\n" + json.dumps(FIXES) + "\n```")

        assert len(await oracle.propose_fixes(make_error(), context)) == 1

    async def test_bare_fix_object(self, oracle: AnthropicOracle, client: MagicMock, make_error, context) -> None:
        """Test a single fix without the wrapper is accepted."""
        reply(client, json.dumps(FIXES["fixes"][0]))

        assert len(await oracle.propose_fixes(make_error(), context)) == 1

    async def test_empty_fixes(self, oracle: AnthropicOracle, client: MagicMock, make_error, context) -> None:
        """Test an empty list is a valid answer."""
        reply(client, '{"fixes": []}')

        assert await oracle.propose_fixes(make_error(), context) == []

    @pytest.mark.parametrize(
        "text",
        [
            "I think you should add a null check.",
            '{"fixes": [{"confidence": 150, "code": "x", "startLine": 1, "endLine": 1}]}',
            '{"fixes": [{"confidence": 50, "code": "x", "startLine": 5, "endLine": 2}]}',
            json.dumps({"fixes": [FIXES["fixes"][0]] * 6}),
        ],
    )
    async def test_unusable_answers(
        self, oracle: AnthropicOracle, client: MagicMock, make_error, context, text: str
    ) -> None:
        """Test garbage, out-of-range and oversized answers raise GenerationError."""
        reply(client, text)

        with pytest.raises(GenerationError):
            await oracle.propose_fixes(make_error(), context)

    async def test_response_too_long(self, oracle: AnthropicOracle, client: MagicMock, make_error, context) -> None:
        """Test oversized responses are refused before parsing."""
        reply(client, "x" * (MAX_RESPONSE_LENGTH + 1))

        with pytest.raises(GenerationError, match="maximum length"):
            await oracle.propose_fixes(make_error(), context)


class TestApiErrors:
    """Tests for SDK error mapping."""

    async def test_rate_limit(self, oracle: AnthropicOracle, client: MagicMock, make_error, context) -> None:
        """Test provider rate limits become GenerationError."""
        client.messages.create.side_effect = anthropic.RateLimitError(
            "slow down", response=httpx.Response(429, request=REQUEST), body=None
        )

        with pytest.raises(GenerationError, match="rate limit"):
            await oracle.propose_fixes(make_error(), context)

    async def test_timeout(self, oracle: AnthropicOracle, client: MagicMock, make_error, context) -> None:
        """Test SDK timeouts become TimeoutError after retrying."""
        client.messages.create.side_effect = anthropic.APITimeoutError(request=REQUEST)

        with pytest.raises(TimeoutError):
            await oracle.propose_fixes(make_error(), context)

        assert client.messages.create.await_count == 2

    async def test_connection_error_retried(
        self, oracle: AnthropicOracle, client: MagicMock, make_error, context
    ) -> None:
        """Test a transient connection failure is retried once and succeeds."""
        block = MagicMock()
        block.text = json.dumps(FIXES)
        client.messages.create.side_effect = [
            anthropic.APIConnectionError(request=REQUEST),
            MagicMock(content=[block]),
        ]

        assert len(await oracle.propose_fixes(make_error(), context)) == 1


class TestRedactionFailsClosed:
    """Test that a failing redactor blocks the call."""

    async def test_blocks_call(self, anthropic_config: AnthropicConfig, client: MagicMock, make_error, context) -> None:
        """Test no request is made when redaction fails."""
        redactor = MagicMock()
        redactor.redact.side_effect = RedactionError("boom")
        oracle = AnthropicOracle(anthropic_config, redactor=redactor, client=client)

        with pytest.raises(SecurityError, match="redaction failed"):
            await oracle.propose_fixes(make_error(), context)

        client.messages.create.assert_not_called()

    def test_name(self, oracle: AnthropicOracle) -> None:
        """Test the oracle name carries the model."""
        assert oracle.name == "anthropic:claude-3-5-sonnet-20241022"
