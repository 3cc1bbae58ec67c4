"""Startup availability probe.

A model is available when its provider has a transport and at least one
usable credential of a kind the model accepts. The Claude CLI counts as a
subscription credential when the binary is on PATH.
"""

import logging
from collections.abc import Callable, Mapping

from switchyard.core.protocols import ProviderTransport
from switchyard.credentials.store import CredentialStore
from switchyard.dispatch.registry import ModelDescriptor
from switchyard.providers.claude import ClaudeCLITransport, ClaudeTransport

logger = logging.getLogger(__name__)


def register_cli_subscriptions(
    credentials: CredentialStore, transports: Mapping[str, ProviderTransport]
) -> list[str]:
    """Register a subscription credential for every provider whose CLI is installed.

    Returns:
        Provider ids that gained a subscription credential
    """
    registered = []
    for provider_id, transport in transports.items():
        cli = transport.cli if isinstance(transport, ClaudeTransport) else transport
        if isinstance(cli, ClaudeCLITransport) and cli.available:
            credentials.register_subscription(provider_id)
            registered.append(provider_id)
            logger.info("Found %s CLI for provider %s", cli.binary, provider_id)
    return registered


def availability_probe(
    credentials: CredentialStore, transports: Mapping[str, ProviderTransport]
) -> Callable[[ModelDescriptor], bool]:
    """Build a probe for ``ModelRegistry.apply_availability``."""

    def probe(model: ModelDescriptor) -> bool:
        if model.provider_id not in transports:
            return False
        if model.api_key_only:
            return credentials.has_static_keys(model.provider_id)
        return credentials.has_credentials(model.provider_id)

    return probe
