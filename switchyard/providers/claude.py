"""Claude transports: Anthropic API and local ``claude`` CLI subscription."""

import asyncio
import json
import logging
import os
import shutil

import anthropic
from anthropic import AsyncAnthropic

from switchyard.core.errors import ProviderError
from switchyard.core.protocols import ProviderRequest, ProviderResponse, TokenUsage
from switchyard.credentials.models import AuthMethod
from switchyard.providers.base import BaseTransport, flatten_messages

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096


def parse_stream_json(stdout: str) -> tuple[str, TokenUsage]:
    """Collect assistant text parts and usage from ``stream-json`` output.

    Lines that are not complete JSON objects are skipped.
    """
    parts: list[str] = []
    usage = TokenUsage()
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            chunk = json.loads(line)
        except ValueError:
            continue
        if not isinstance(chunk, dict):
            continue
        if chunk.get("type") == "assistant" and isinstance(chunk.get("message"), dict):
            content = chunk["message"].get("content")
            if isinstance(content, list):
                parts.extend(
                    part.get("text", "")
                    for part in content
                    if isinstance(part, dict) and part.get("type") == "text"
                )
        elif chunk.get("type") == "result" and isinstance(chunk.get("usage"), dict):
            usage = TokenUsage(
                prompt_tokens=int(chunk["usage"].get("input_tokens", 0)),
                completion_tokens=int(chunk["usage"].get("output_tokens", 0)),
            )
    return "".join(parts).strip(), usage


class ClaudeAPITransport(BaseTransport):
    """Anthropic Messages API client."""

    provider_id = "claude"

    def __init__(self, max_tokens: int = DEFAULT_MAX_TOKENS) -> None:
        self.max_tokens = max_tokens
        self._clients: dict[str, AsyncAnthropic] = {}

    def _get_client(self, api_key: str) -> AsyncAnthropic:
        if api_key not in self._clients:
            self._clients[api_key] = AsyncAnthropic(api_key=api_key, max_retries=0)
        return self._clients[api_key]

    async def _send_impl(self, request: ProviderRequest) -> ProviderResponse:
        client = self._get_client(request.credential.secret)
        kwargs = {
            "model": request.model,
            "max_tokens": request.max_tokens or self.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": m["role"], "content": m["content"]} for m in request.messages],
            "timeout": request.timeout_ms / 1000.0,
        }
        if request.system_instruction:
            kwargs["system"] = request.system_instruction

        try:
            response = await client.messages.create(**kwargs)
        except anthropic.AnthropicError as e:
            raise self.sdk_error(e) from e

        # Claude returns a list of content blocks
        text = "".join(block.text for block in response.content if hasattr(block, "text"))
        return ProviderResponse(
            text=text,
            usage=TokenUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            ),
            raw_metadata={"model": response.model, "finish_reason": response.stop_reason},
        )

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


class ClaudeCLITransport(BaseTransport):
    """Runs one non-interactive turn through the local ``claude`` CLI.

    Uses the signed-in subscription of the CLI, so no secret is held here.
    """

    provider_id = "claude"

    def __init__(self, binary: str = "claude", max_turns: int = 1) -> None:
        self.binary = binary
        self.max_turns = max_turns

    @property
    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def build_args(self, request: ProviderRequest) -> list[str]:
        args = ["-p"]
        if request.system_instruction:
            args += ["--system-prompt", request.system_instruction]
        args += [
            "--verbose",
            "--output-format",
            "stream-json",
            "--max-turns",
            str(self.max_turns),
            "--model",
            request.model,
        ]
        return args

    async def _send_impl(self, request: ProviderRequest) -> ProviderResponse:
        env = dict(os.environ)
        if request.max_tokens:
            env["CLAUDE_CODE_MAX_OUTPUT_TOKENS"] = str(request.max_tokens)

        process = await asyncio.create_subprocess_exec(
            self.binary,
            *self.build_args(request),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        prompt = flatten_messages(request.messages).encode("utf-8")
        try:
            stdout, stderr = await process.communicate(prompt)
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[:500]
            msg = f"claude CLI exited with code {process.returncode}: {detail}"
            raise ProviderError(msg, name="CLIError")

        text, usage = parse_stream_json(stdout.decode("utf-8", errors="replace"))
        if not text:
            msg = "claude CLI returned no assistant text"
            raise ProviderError(msg, name="EmptyResponse")
        return ProviderResponse(text=text, usage=usage, raw_metadata={"transport": "cli"})


class ClaudeTransport(BaseTransport):
    """Routes Claude requests by credential: subscription via CLI, keys via API."""

    provider_id = "claude"

    def __init__(self, api: ClaudeAPITransport | None = None, cli: ClaudeCLITransport | None = None) -> None:
        self.api = api or ClaudeAPITransport()
        self.cli = cli or ClaudeCLITransport()

    async def _send_impl(self, request: ProviderRequest) -> ProviderResponse:
        if request.credential.auth_method == AuthMethod.SUBSCRIPTION:
            return await self.cli.send(request)
        return await self.api.send(request)

    async def aclose(self) -> None:
        await self.api.aclose()
