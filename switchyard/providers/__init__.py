"""Provider transports and their construction from configuration."""

from collections.abc import Mapping
from typing import Any

from switchyard.core.protocols import ProviderTransport
from switchyard.providers.base import BaseTransport
from switchyard.providers.claude import ClaudeAPITransport, ClaudeCLITransport, ClaudeTransport
from switchyard.providers.gemini import GeminiTransport
from switchyard.providers.openai_compatible import OpenAICompatibleTransport
from switchyard.providers.probe import availability_probe, register_cli_subscriptions


def build_transports(config: Mapping[str, Any]) -> dict[str, ProviderTransport]:
    """Build one transport per provider from the ``providers`` config section."""
    gemini = config.get("gemini", {})
    mistral = config.get("mistral", {})
    qwen = config.get("qwen", {})
    claude_cli = config.get("claude_cli", {})

    return {
        "gemini": GeminiTransport(
            base_url=gemini.get("base_url", "https://generativelanguage.googleapis.com/v1beta")
        ),
        "mistral": OpenAICompatibleTransport(
            "mistral", base_url=mistral.get("base_url", "https://api.mistral.ai/v1")
        ),
        "qwen": OpenAICompatibleTransport(
            "qwen",
            base_url=qwen.get("default_base_url", "https://dashscope.aliyuncs.com/compatible-mode/v1"),
            use_resource_url=True,
        ),
        "claude": ClaudeTransport(
            cli=ClaudeCLITransport(
                binary=claude_cli.get("binary", "claude"),
                max_turns=int(claude_cli.get("max_turns", 1)),
            )
        ),
    }


def timeout_caps(config: Mapping[str, Any]) -> dict[str, int]:
    """Provider id -> per-attempt timeout cap in milliseconds."""
    return {
        provider_id: int(settings["timeout_cap_ms"])
        for provider_id, settings in config.items()
        if isinstance(settings, Mapping) and settings.get("timeout_cap_ms")
    }


__all__ = [
    "BaseTransport",
    "ClaudeAPITransport",
    "ClaudeCLITransport",
    "ClaudeTransport",
    "GeminiTransport",
    "OpenAICompatibleTransport",
    "availability_probe",
    "build_transports",
    "register_cli_subscriptions",
    "timeout_caps",
]
