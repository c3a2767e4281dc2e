"""Tests for the verifier oracle transports."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from cli_agent_respawn.clients.oracle import (
    AnthropicOracle,
    ClaudeCliOracle,
    OracleError,
    build_prompt,
    parse_verdict,
)
from cli_agent_respawn.models.respawn import Verdict, VerifierKind


class TestParseVerdict:
    @pytest.mark.parametrize(
        "answer,kind,expected",
        [
            ("IDLE", VerifierKind.IDLE, Verdict.CONFIRMED),
            ("working\n", VerifierKind.IDLE, Verdict.NOT_CONFIRMED),
            ("The answer is: IDLE.", VerifierKind.IDLE, Verdict.CONFIRMED),
            ("PLAN_MODE", VerifierKind.PLAN, Verdict.CONFIRMED),
            ("NOT_PLAN_MODE", VerifierKind.PLAN, Verdict.NOT_CONFIRMED),
            ("maybe", VerifierKind.IDLE, Verdict.ERROR),
            ("PLAN_MODE", VerifierKind.IDLE, Verdict.ERROR),
            ("", VerifierKind.PLAN, Verdict.ERROR),
        ],
    )
    def test_answers(self, answer, kind, expected):
        """Oracle answer text maps to a verdict."""
        assert parse_verdict(answer, kind) == expected

    def test_build_prompt_embeds_snapshot(self):
        """The prompt carries the terminal snapshot."""
        prompt = build_prompt("❯ 1. Yes", VerifierKind.PLAN)
        assert "<terminal>\n❯ 1. Yes\n</terminal>" in prompt
        assert "PLAN_MODE or NOT_PLAN_MODE" in prompt


def messages_transport(handler):
    return httpx.MockTransport(handler)


class TestAnthropicOracle:
    async def test_check_posts_prompt(self):
        """check() posts the prompt to the Messages API."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"content": [{"type": "text", "text": "IDLE"}]})

        oracle = AnthropicOracle("sk-test", model="test-model", transport=messages_transport(handler))
        verdict = await oracle.check("❯ \n", VerifierKind.IDLE)
        await oracle.aclose()

        assert verdict == Verdict.CONFIRMED
        sent = requests[0]
        assert sent.headers["x-api-key"] == "sk-test"
        body = json.loads(sent.content)
        assert body["model"] == "test-model"
        assert "❯" in body["messages"][0]["content"]

    async def test_http_error_raises(self):
        """HTTP failure -> OracleError."""
        oracle = AnthropicOracle(
            "sk-test", transport=messages_transport(lambda request: httpx.Response(529, json={}))
        )
        with pytest.raises(OracleError, match="request failed"):
            await oracle.check("x", VerifierKind.IDLE)
        await oracle.aclose()

    async def test_invalid_json_raises(self):
        """Malformed API response -> OracleError."""
        oracle = AnthropicOracle(
            "sk-test", transport=messages_transport(lambda request: httpx.Response(200, text="<html>"))
        )
        with pytest.raises(OracleError, match="invalid JSON"):
            await oracle.check("x", VerifierKind.PLAN)
        await oracle.aclose()

    async def test_unrecognised_text_is_error(self):
        """Unexpected answer text -> ERROR verdict."""
        def handler(request):
            return httpx.Response(200, json={"content": [{"type": "text", "text": "not sure"}]})

        oracle = AnthropicOracle("sk-test", transport=messages_transport(handler))
        assert await oracle.check("x", VerifierKind.PLAN) == Verdict.ERROR
        await oracle.aclose()

    def test_requires_api_key(self):
        """No API key -> ValueError."""
        with pytest.raises(ValueError):
            AnthropicOracle("")


def fake_process(stdout=b"", stderr=b"", returncode=0):
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.returncode = returncode
    return proc


class TestClaudeCliOracle:
    @patch("cli_agent_respawn.clients.oracle.asyncio.create_subprocess_exec", new_callable=AsyncMock)
    async def test_check(self, mock_exec, monkeypatch):
        """claude -p output maps to a verdict; prompt goes to stdin."""
        monkeypatch.setenv("CLAUDECODE", "1")
        mock_exec.return_value = fake_process(stdout=b"WORKING\n")

        verdict = await ClaudeCliOracle(model="test-model").check("snapshot", VerifierKind.IDLE)

        assert verdict == Verdict.NOT_CONFIRMED
        args, kwargs = mock_exec.call_args
        assert args == ("claude", "-p", "--model", "test-model")
        assert "CLAUDECODE" not in kwargs["env"]
        prompt = mock_exec.return_value.communicate.call_args.args[0].decode("utf-8")
        assert "snapshot" in prompt

    @patch("cli_agent_respawn.clients.oracle.asyncio.create_subprocess_exec", new_callable=AsyncMock)
    async def test_nonzero_exit(self, mock_exec):
        """Non-zero exit from claude -> OracleError."""
        mock_exec.return_value = fake_process(stderr=b"rate limited", returncode=1)

        with pytest.raises(OracleError, match="rate limited"):
            await ClaudeCliOracle().check("x", VerifierKind.IDLE)

    @patch("cli_agent_respawn.clients.oracle.asyncio.create_subprocess_exec", new_callable=AsyncMock)
    async def test_missing_executable(self, mock_exec):
        """claude not on PATH -> OracleError."""
        mock_exec.side_effect = FileNotFoundError("claude")

        with pytest.raises(OracleError, match="Failed to start claude"):
            await ClaudeCliOracle().check("x", VerifierKind.IDLE)
