"""Static API key discovery from the environment."""

import logging
import os
from collections.abc import Mapping

from switchyard.credentials.models import AuthMethod, Credential

logger = logging.getLogger(__name__)


def discover_api_keys(
    provider_id: str,
    env_names: list[str],
    max_numbered_keys: int = 0,
    environ: Mapping[str, str] | None = None,
) -> list[Credential]:
    """Collect the static keys configured for a provider.

    Each base variable is checked along with its numbered variants
    (``GEMINI_API_KEY``, ``GEMINI_API_KEY2``, ``GEMINI_API_KEY_2``, ...).
    Duplicate values are ignored so the same key is never rotated to twice.

    Args:
        provider_id: Provider the keys belong to
        env_names: Base environment variable names, in priority order
        max_numbered_keys: Highest numbered suffix to probe (0 disables)
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Credentials in discovery order, ids ``<provider>:key:<n>``
    """
    env = os.environ if environ is None else environ
    seen: set[str] = set()
    credentials: list[Credential] = []

    for base in env_names:
        names = [base]
        for n in range(2, max_numbered_keys + 1):
            names.extend((f"{base}{n}", f"{base}_{n}"))

        for name in names:
            value = (env.get(name) or "").strip()
            if not value or value in seen:
                continue
            seen.add(value)
            credentials.append(
                Credential(
                    provider_id=provider_id,
                    credential_id=f"{provider_id}:key:{len(credentials)}",
                    auth_method=AuthMethod.API_KEY,
                    secret=value,
                    metadata={"source": name},
                )
            )

    if credentials:
        logger.info("Discovered %d API key(s) for %s", len(credentials), provider_id)
    return credentials
