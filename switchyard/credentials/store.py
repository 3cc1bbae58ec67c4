"""
Credential store.

Holds every credential the process can use, per provider:
- OAuth token pairs (preferred, higher throughput), refreshed before expiry
- Static API keys, rotated round-robin after rate-limit rejections
- CLI subscription sessions (no secret held in-process)

Refresh is modelled as a pure transition (``refresh_credential``) followed by
an explicit persistence step. A failed refresh marks OAuth unusable for the
rest of the process and the store falls back to static keys.
"""

import asyncio
import logging
import os
from collections.abc import Mapping
from typing import Any

from switchyard.core.errors import AuthenticationError
from switchyard.core.protocols import Clock, CredentialPersistence
from switchyard.credentials.keys import discover_api_keys
from switchyard.credentials.models import (
    AuthMethod,
    Credential,
    needs_refresh,
    refresh_credential,
)
from switchyard.credentials.oauth import OAuthTokenExchanger, TokenExchanger

logger = logging.getLogger(__name__)


class CredentialStore:
    """Per-provider credential selection, refresh and rotation."""

    def __init__(
        self,
        clock: Clock,
        persistence: CredentialPersistence | None = None,
        exchangers: Mapping[str, TokenExchanger] | None = None,
        refresh_buffer_seconds: float = 300.0,
    ) -> None:
        self.clock = clock
        self.persistence = persistence
        self.exchangers = dict(exchangers or {})
        self.refresh_buffer_seconds = refresh_buffer_seconds

        self._static: dict[str, list[Credential]] = {}
        self._key_index: dict[str, int] = {}
        self._oauth: dict[str, Credential] = {}
        self._subscription: dict[str, Credential] = {}
        self._oauth_unusable: set[str] = set()
        self._force_refresh: set[str] = set()
        self._disabled: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_static_keys(self, provider_id: str, credentials: list[Credential]) -> None:
        existing = self._static.setdefault(provider_id, [])
        known = {c.credential_id for c in existing}
        existing.extend(c for c in credentials if c.credential_id not in known)
        self._key_index.setdefault(provider_id, 0)

    def register_oauth(self, credential: Credential) -> None:
        if not credential.is_oauth:
            msg = f"Credential {credential.credential_id} is not an OAuth credential"
            raise ValueError(msg)
        self._oauth[credential.provider_id] = credential
        self._oauth_unusable.discard(credential.provider_id)

    def register_subscription(self, provider_id: str) -> None:
        self._subscription[provider_id] = Credential(
            provider_id=provider_id,
            credential_id=f"{provider_id}:subscription",
            auth_method=AuthMethod.SUBSCRIPTION,
        )

    def load_persisted(self, provider_ids: list[str]) -> None:
        """Load OAuth credentials from persistence for the given providers."""
        if self.persistence is None:
            return
        for provider_id in provider_ids:
            credential = self.persistence.load(provider_id)
            if credential is not None:
                self.register_oauth(credential)
                logger.info("Loaded OAuth credential for %s", provider_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_credentials(self, provider_id: str) -> bool:
        return (
            self._oauth_usable(provider_id)
            or self.has_static_keys(provider_id)
            or provider_id in self._subscription
        )

    def has_static_keys(self, provider_id: str) -> bool:
        return any(c.credential_id not in self._disabled for c in self._static.get(provider_id, []))

    def has_oauth(self, provider_id: str) -> bool:
        return self._oauth_usable(provider_id)

    def _oauth_usable(self, provider_id: str) -> bool:
        return provider_id in self._oauth and provider_id not in self._oauth_unusable

    def get_oauth_status(self) -> dict[str, dict[str, Any]]:
        """Report OAuth state per provider without secret material."""
        now = self.clock.time()
        status: dict[str, dict[str, Any]] = {}
        for provider_id, credential in self._oauth.items():
            status[provider_id] = {
                "usable": self._oauth_usable(provider_id),
                "expires_in_seconds": (
                    round(credential.expiry - now, 1) if credential.expiry is not None else None
                ),
                "needs_refresh": needs_refresh(credential, now, self.refresh_buffer_seconds),
                "static_keys": len(self._static.get(provider_id, [])),
            }
        return status

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    async def acquire(self, provider_id: str, allow_oauth: bool = True) -> Credential | None:
        """Select the best available credential for a provider.

        OAuth is preferred over static keys; subscription sessions come last.

        Args:
            provider_id: Provider to select for
            allow_oauth: False for models that only accept static API keys

        Returns:
            A usable credential, or None when the provider has none left
        """
        if allow_oauth and self._oauth_usable(provider_id):
            credential = self._oauth[provider_id]
            if provider_id in self._force_refresh or needs_refresh(
                credential, self.clock.time(), self.refresh_buffer_seconds
            ):
                refreshed = await self.refresh(credential)
                if refreshed is not None:
                    return refreshed
            else:
                return credential

        key = self._current_key(provider_id)
        if key is not None:
            return key

        return self._subscription.get(provider_id)

    def _current_key(self, provider_id: str) -> Credential | None:
        keys = self._static.get(provider_id, [])
        if not keys:
            return None
        start = self._key_index.get(provider_id, 0)
        for offset in range(len(keys)):
            index = (start + offset) % len(keys)
            if keys[index].credential_id not in self._disabled:
                self._key_index[provider_id] = index
                return keys[index]
        return None

    def rotate(self, provider_id: str) -> None:
        """Advance to the next static key for a provider."""
        keys = self._static.get(provider_id, [])
        if len(keys) > 1:
            self._key_index[provider_id] = (self._key_index.get(provider_id, 0) + 1) % len(keys)
            logger.debug("Rotated %s to key index %d", provider_id, self._key_index[provider_id])

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, credential: Credential) -> Credential | None:
        """Refresh an OAuth credential if it is still due.

        Safe to call concurrently and repeatedly: the exchange runs under a
        per-provider lock and is skipped when another caller already refreshed.

        Returns:
            The current usable credential, or None if OAuth is now unusable
        """
        provider_id = credential.provider_id
        lock = self._locks.setdefault(provider_id, asyncio.Lock())

        async with lock:
            if not self._oauth_usable(provider_id):
                return None

            current = self._oauth[provider_id]
            forced = provider_id in self._force_refresh
            if current.secret != credential.secret and not forced:
                return current
            if not forced and not needs_refresh(
                current, self.clock.time(), self.refresh_buffer_seconds
            ):
                return current

            exchanger = self.exchangers.get(provider_id)
            if exchanger is None or not current.can_refresh:
                self._mark_oauth_unusable(provider_id, "no refresh path available")
                return None

            try:
                grant = await exchanger.exchange(current)
            except AuthenticationError as e:
                self._mark_oauth_unusable(provider_id, e.message)
                return None

            refreshed = refresh_credential(current, grant, self.clock.time())
            self._oauth[provider_id] = refreshed
            self._force_refresh.discard(provider_id)
            logger.info("Refreshed OAuth credential for %s", provider_id)

            if self.persistence is not None:
                try:
                    self.persistence.save(provider_id, refreshed)
                except (OSError, KeyError) as e:
                    logger.warning("Could not persist refreshed credential for %s: %s", provider_id, e)

            return refreshed

    def _mark_oauth_unusable(self, provider_id: str, reason: str) -> None:
        self._oauth_unusable.add(provider_id)
        self._force_refresh.discard(provider_id)
        logger.warning(
            "OAuth disabled for %s (%s); falling back to static keys", provider_id, reason
        )

    # ------------------------------------------------------------------
    # Failure reports from the dispatcher
    # ------------------------------------------------------------------

    def report_auth_failure(self, credential: Credential) -> None:
        """Record that a provider rejected a credential as unauthenticated.

        An OAuth credential gets one forced refresh; a second rejection after
        that disables OAuth. Static keys are disabled immediately.
        """
        provider_id = credential.provider_id
        if credential.is_oauth:
            if provider_id in self._force_refresh or not credential.can_refresh:
                self._mark_oauth_unusable(provider_id, "rejected by provider")
            else:
                self._force_refresh.add(provider_id)
        elif credential.auth_method == AuthMethod.API_KEY:
            self._disable(credential, "rejected by provider")
        else:
            self._subscription.pop(provider_id, None)
            logger.warning("Subscription session for %s rejected; disabled", provider_id)

    def report_quota_exhausted(self, credential: Credential) -> None:
        """Take a credential out of rotation for the rest of the process."""
        if credential.is_oauth:
            self._mark_oauth_unusable(credential.provider_id, "quota exhausted")
        elif credential.auth_method == AuthMethod.API_KEY:
            self._disable(credential, "quota exhausted")

    def _disable(self, credential: Credential, reason: str) -> None:
        self._disabled.add(credential.credential_id)
        logger.warning("Disabled credential %s (%s)", credential.credential_id, reason)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        clock: Clock,
        persistence: CredentialPersistence | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "CredentialStore":
        """Build a store from the ``credentials`` config section.

        Static keys come from the environment, OAuth credentials from
        ``persistence`` for every provider that declares an ``oauth_file``.
        """

        env = os.environ if environ is None else environ
        providers: dict[str, Any] = config.get("providers", {})

        exchangers: dict[str, TokenExchanger] = {}
        for provider_id, settings in providers.items():
            endpoint = settings.get("token_endpoint")
            client_id = settings.get("client_id") or env.get(settings.get("client_id_env", ""), "")
            if endpoint and client_id:
                exchangers[provider_id] = OAuthTokenExchanger(
                    token_endpoint=endpoint,
                    client_id=client_id,
                    client_secret=env.get(settings.get("client_secret_env", "")) or None,
                    timeout_seconds=float(config.get("refresh_timeout_seconds", 15)),
                )

        store = cls(
            clock=clock,
            persistence=persistence,
            exchangers=exchangers,
            refresh_buffer_seconds=float(config.get("refresh_buffer_seconds", 300)),
        )

        for provider_id, settings in providers.items():
            keys = discover_api_keys(
                provider_id,
                list(settings.get("key_env", [])),
                int(settings.get("max_numbered_keys", 0)),
                environ=env,
            )
            if keys:
                store.add_static_keys(provider_id, keys)

        store.load_persisted([p for p, s in providers.items() if s.get("oauth_file")])
        return store
