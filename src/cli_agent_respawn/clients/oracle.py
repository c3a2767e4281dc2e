"""Verifier oracle transports.

Both transports ask a model one closed question about a terminal snapshot and
map the one-word answer onto a Verdict. Transport failures raise OracleError;
the verifier adapter turns those into ERROR verdicts.
"""

import asyncio
import logging
import os
import re
from typing import Dict, Optional

import httpx

from cli_agent_respawn.constants import (
    ANTHROPIC_API_URL,
    ANTHROPIC_API_VERSION,
    DEFAULT_VERIFIER_MODEL,
)
from cli_agent_respawn.models.respawn import Verdict, VerifierKind

logger = logging.getLogger(__name__)


class OracleError(Exception):
    """Raised when an oracle transport fails."""

    pass


IDLE_PROMPT = """You are looking at the tail of a terminal running the Claude Code CLI.
Decide whether the agent has finished its turn and is waiting for user input,
or is still working (thinking, running tools, streaming output, waiting on a
subagent).

Answer with exactly one word: IDLE or WORKING.

<terminal>
{snapshot}
</terminal>"""

PLAN_PROMPT = """You are looking at the tail of a terminal running the Claude Code CLI.
Decide whether the screen currently shows the plan mode approval menu (a
numbered list of options with a selection cursor asking whether to proceed
with the plan) and nothing is still being rendered below it.

Answer with exactly one word: PLAN_MODE or NOT_PLAN_MODE.

<terminal>
{snapshot}
</terminal>"""

PROMPTS = {VerifierKind.IDLE: IDLE_PROMPT, VerifierKind.PLAN: PLAN_PROMPT}

# Positive answer, negative answer
ANSWERS = {
    VerifierKind.IDLE: ("IDLE", "WORKING"),
    VerifierKind.PLAN: ("PLAN_MODE", "NOT_PLAN_MODE"),
}

ANSWER_PATTERN = r"\b(NOT_PLAN_MODE|PLAN_MODE|IDLE|WORKING)\b"


def build_prompt(snapshot: str, kind: VerifierKind) -> str:
    return PROMPTS[VerifierKind(kind)].format(snapshot=snapshot)


def parse_verdict(answer: str, kind: VerifierKind) -> Verdict:
    """Map the model's answer to a verdict. Anything unrecognised is ERROR."""
    kind = VerifierKind(kind)
    positive, negative = ANSWERS[kind]
    match = re.search(ANSWER_PATTERN, answer.upper())
    if match is None:
        logger.warning(f"Unrecognised {kind.value} verifier answer: {answer[:200]!r}")
        return Verdict.ERROR
    word = match.group(1)
    if word == positive:
        return Verdict.CONFIRMED
    if word == negative:
        return Verdict.NOT_CONFIRMED
    logger.warning(f"{kind.value} verifier answered {word}, which belongs to another question")
    return Verdict.ERROR


class ClaudeCliOracle:
    """Runs ``claude -p`` as a subprocess for every check."""

    def __init__(self, model: str = DEFAULT_VERIFIER_MODEL, executable: str = "claude"):
        self.model = model
        self.executable = executable

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        # Nested Claude Code refuses to start inside another session
        env.pop("CLAUDECODE", None)
        return env

    async def check(self, snapshot: str, kind: VerifierKind) -> Verdict:
        cmd = [self.executable, "-p", "--model", self.model]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as e:
            raise OracleError(f"Failed to start {self.executable}: {e}") from e

        try:
            stdout, stderr = await proc.communicate(build_prompt(snapshot, kind).encode("utf-8"))
        except asyncio.CancelledError:
            proc.kill()
            raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[:500]
            raise OracleError(f"{self.executable} exited with {proc.returncode}: {detail}")
        return parse_verdict(stdout.decode("utf-8", errors="replace"), kind)


class AnthropicOracle:
    """Calls the Anthropic Messages API directly over httpx."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_VERIFIER_MODEL,
        base_url: str = ANTHROPIC_API_URL,
        max_tokens: int = 16,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("An Anthropic API key is required")
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self._client = httpx.AsyncClient(
            headers={
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_API_VERSION,
                "content-type": "application/json",
            },
            transport=transport,
        )

    async def check(self, snapshot: str, kind: VerifierKind) -> Verdict:
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": build_prompt(snapshot, kind)}],
        }
        try:
            r = await self._client.post(self.base_url, json=payload)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as e:
            raise OracleError(f"Anthropic API request failed: {e}") from e
        except ValueError as e:
            raise OracleError(f"Anthropic API returned invalid JSON: {e}") from e

        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if isinstance(block, dict) and block.get("type") == "text"
        )
        return parse_verdict(text, kind)

    async def aclose(self) -> None:
        await self._client.aclose()
