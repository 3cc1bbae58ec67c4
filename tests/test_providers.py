"""Tests for provider transports and the availability probe."""

import json

import httpx
import pytest

from conftest import FakeClock, api_key
from switchyard.core.errors import ProviderError
from switchyard.core.protocols import ProviderRequest
from switchyard.credentials.models import AuthMethod, Credential
from switchyard.credentials.store import CredentialStore
from switchyard.dispatch.registry import CLAUDE_HAIKU, GEMINI_FLASH, GEMINI_FLASH_LITE, ModelRegistry
from switchyard.providers import build_transports, timeout_caps
from switchyard.providers.base import flatten_messages, parse_retry_after
from switchyard.providers.claude import ClaudeCLITransport, ClaudeTransport, parse_stream_json
from switchyard.providers.gemini import GeminiTransport
from switchyard.providers.openai_compatible import normalize_base_url
from switchyard.providers.probe import availability_probe, register_cli_subscriptions


def request_for(credential: Credential, model: str = GEMINI_FLASH, system: str | None = None) -> ProviderRequest:
    return ProviderRequest(
        model=model,
        messages=[{"role": "user", "content": "hello"}],
        credential=credential,
        system_instruction=system,
        timeout_ms=5000,
    )


def gemini_with(handler) -> GeminiTransport:  # noqa: ANN001
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiTransport(base_url="https://gemini.test/v1beta", http_client=client)


class TestGeminiTransport:
    """Test the Gemini REST transport against a mock HTTP layer."""

    async def test_success_and_key_header(self) -> None:
        """Test request shape and response normalization."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": "hi "}, {"text": "there"}]}, "finishReason": "STOP"}],
                    "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2},
                },
            )

        transport = gemini_with(handler)
        response = await transport.send(request_for(api_key("gemini"), system="be brief"))

        assert response.text == "hi there"
        assert response.usage.total_tokens == 6  # noqa: PLR2004
        assert seen[0].url.path == f"/v1beta/models/{GEMINI_FLASH}:generateContent"
        assert seen[0].headers["x-goog-api-key"] == "gemini-secret-0"
        body = json.loads(seen[0].content)
        assert body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert body["contents"][0]["role"] == "user"

    async def test_oauth_bearer(self) -> None:
        """Test OAuth credentials are sent as a bearer token."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "ok"}]}}]})

        oauth = Credential("gemini", "gemini:oauth", AuthMethod.OAUTH, secret="access-1")
        await gemini_with(handler).send(request_for(oauth))

        assert seen[0].headers["authorization"] == "Bearer access-1"
        assert "x-goog-api-key" not in seen[0].headers

    async def test_http_error_mapped(self) -> None:
        """Test a 429 becomes a ProviderError with status and retry-after."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429, json={"error": {"message": "Resource exhausted"}}, headers={"retry-after": "7"}
            )

        with pytest.raises(ProviderError) as exc_info:
            await gemini_with(handler).send(request_for(api_key("gemini")))

        assert exc_info.value.status == 429  # noqa: PLR2004
        assert exc_info.value.retry_after == 7.0  # noqa: PLR2004
        assert "Resource exhausted" in exc_info.value.message

    async def test_network_error_mapped(self) -> None:
        """Test a connection failure carries the error name."""

        def handler(request: httpx.Request) -> httpx.Response:
            msg = "connection refused"
            raise httpx.ConnectError(msg, request=request)

        with pytest.raises(ProviderError) as exc_info:
            await gemini_with(handler).send(request_for(api_key("gemini")))

        assert exc_info.value.name == "ConnectError"
        assert exc_info.value.status is None

    async def test_no_candidates(self) -> None:
        """Test a blocked prompt is a malformed-request failure."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

        with pytest.raises(ProviderError, match="SAFETY") as exc_info:
            await gemini_with(handler).send(request_for(api_key("gemini")))
        assert exc_info.value.status == 400  # noqa: PLR2004


class TestClaudeCLI:
    """Test the Claude CLI transport helpers."""

    def test_parse_stream_json(self) -> None:
        """Test assistant text and usage are collected from stream-json output."""
        stdout = "\n".join(
            [
                json.dumps({"type": "system", "subtype": "init"}),
                json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Hello"}]}}),
                "not json",
                json.dumps({"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "x"}]}}),
                json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": " world"}]}}),
                json.dumps({"type": "result", "usage": {"input_tokens": 12, "output_tokens": 3}}),
            ]
        )

        text, usage = parse_stream_json(stdout)

        assert text == "Hello world"
        assert usage.prompt_tokens == 12  # noqa: PLR2004
        assert usage.completion_tokens == 3  # noqa: PLR2004

    def test_build_args(self) -> None:
        """Test the non-interactive command line."""
        cli = ClaudeCLITransport(max_turns=2)
        subscription = Credential("claude", "claude:subscription", AuthMethod.SUBSCRIPTION)

        args = cli.build_args(request_for(subscription, model=CLAUDE_HAIKU, system="terse"))

        assert args[:3] == ["-p", "--system-prompt", "terse"]
        assert args[args.index("--output-format") + 1] == "stream-json"
        assert args[args.index("--max-turns") + 1] == "2"
        assert args[-2:] == ["--model", CLAUDE_HAIKU]

    def test_missing_binary_registers_nothing(self, clock: FakeClock) -> None:
        """Test no subscription is registered when the CLI is absent."""
        store = CredentialStore(clock)
        transports = {"claude": ClaudeTransport(cli=ClaudeCLITransport(binary="switchyard-no-such-cli"))}

        assert register_cli_subscriptions(store, transports) == []
        assert not store.has_credentials("claude")

    def test_installed_binary_registers_subscription(self, clock: FakeClock, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test an installed CLI counts as a subscription credential."""
        monkeypatch.setattr("switchyard.providers.claude.shutil.which", lambda binary: f"/usr/bin/{binary}")
        store = CredentialStore(clock)

        assert register_cli_subscriptions(store, {"claude": ClaudeTransport()}) == ["claude"]
        assert store.has_credentials("claude")
        assert not store.has_static_keys("claude")


class TestProbe:
    """Test startup availability."""

    def test_api_key_only_models_need_keys(self, clock: FakeClock) -> None:
        """Test OAuth alone does not make an API-key-only model available."""
        store = CredentialStore(clock)
        store.register_oauth(Credential("gemini", "gemini:oauth", AuthMethod.OAUTH, secret="tok"))
        registry = ModelRegistry.default()
        probe = availability_probe(store, {"gemini": object()})

        assert probe(registry.get(GEMINI_FLASH)) is True
        assert probe(registry.get(GEMINI_FLASH_LITE)) is False

    def test_transport_required(self, clock: FakeClock) -> None:
        """Test a provider without a transport is unavailable."""
        store = CredentialStore(clock)
        store.add_static_keys("claude", [api_key("claude")])
        probe = availability_probe(store, {})
        assert probe(ModelRegistry.default().get(CLAUDE_HAIKU)) is False


class TestHelpers:
    """Test transport helpers and construction."""

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("portal.qwen.ai", "https://portal.qwen.ai/v1"),
            ("https://portal.qwen.ai/", "https://portal.qwen.ai/v1"),
            ("https://dashscope.aliyuncs.com/compatible-mode/v1", "https://dashscope.aliyuncs.com/compatible-mode/v1"),
        ],
    )
    def test_normalize_base_url(self, url: str, expected: str) -> None:
        """Test resource URLs are normalized."""
        assert normalize_base_url(url) == expected

    def test_parse_retry_after(self) -> None:
        """Test numeric and missing retry-after headers."""
        assert parse_retry_after(httpx.Headers({"retry-after": "2.5"})) == 2.5  # noqa: PLR2004
        assert parse_retry_after(httpx.Headers({"retry-after": "Wed, 21 Oct 2026 07:28:00 GMT"})) is None
        assert parse_retry_after(None) is None

    def test_flatten_messages(self) -> None:
        """Test multi-turn conversations are rendered with role labels."""
        messages = [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}]
        assert flatten_messages(messages) == "User: a\n\nAssistant: b"
        assert flatten_messages(messages[:1]) == "a"

    def test_build_transports(self) -> None:
        """Test one transport per provider and timeout caps from config."""
        config = {"mistral": {"base_url": "https://api.mistral.ai/v1", "timeout_cap_ms": 45000}}
        transports = build_transports(config)
        assert set(transports) == {"gemini", "mistral", "qwen", "claude"}
        assert all(t.provider_id == p for p, t in transports.items())
        assert timeout_caps(config) == {"mistral": 45000}
