"""OAuth refresh-token exchange over HTTP."""

import logging
from typing import Any, Protocol

import httpx

from switchyard.core.errors import AuthenticationError
from switchyard.credentials.models import Credential, TokenGrant

logger = logging.getLogger(__name__)


class TokenExchanger(Protocol):
    """Exchanges a credential's refresh token for a new access token."""

    async def exchange(self, credential: Credential) -> TokenGrant: ...


class OAuthTokenExchanger:
    """Form-encoded ``refresh_token`` grant against a token endpoint."""

    def __init__(
        self,
        token_endpoint: str,
        client_id: str,
        client_secret: str | None = None,
        timeout_seconds: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.token_endpoint = token_endpoint
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    async def exchange(self, credential: Credential) -> TokenGrant:
        """Exchange the refresh token.

        Raises:
            AuthenticationError: If the credential has no refresh token or the
                endpoint rejects the exchange
        """
        if not credential.refresh_token:
            msg = f"Credential {credential.credential_id} has no refresh token"
            raise AuthenticationError(msg)

        form: dict[str, Any] = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": self.client_id,
        }
        if self.client_secret:
            form["client_secret"] = self.client_secret

        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    self.token_endpoint, data=form, headers={"Accept": "application/json"}
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(
                        self.token_endpoint, data=form, headers={"Accept": "application/json"}
                    )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            msg = (
                f"Token refresh for {credential.provider_id} rejected "
                f"with status {e.response.status_code}"
            )
            raise AuthenticationError(msg, details={"status": e.response.status_code}) from e
        except (httpx.HTTPError, ValueError) as e:
            msg = f"Token refresh for {credential.provider_id} failed: {type(e).__name__}"
            raise AuthenticationError(msg) from e

        if not isinstance(payload, dict):
            msg = f"Token refresh for {credential.provider_id} returned a non-object body"
            raise AuthenticationError(msg)

        try:
            return TokenGrant.from_response(payload)
        except (TypeError, ValueError) as e:
            raise AuthenticationError(str(e)) from e
