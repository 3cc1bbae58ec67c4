"""Credential model and the pure refresh transition."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class AuthMethod(str, Enum):
    """How a credential authenticates against its provider."""

    API_KEY = "api_key"
    OAUTH = "oauth"
    SUBSCRIPTION = "subscription"  # local CLI session, no secret held in-process


@dataclass(frozen=True)
class Credential:
    """Authentication unit for one provider.

    Secret material never appears in ``repr`` so credentials can't leak into
    logs or tracebacks by accident.

    Attributes:
        provider_id: Provider this credential belongs to ("gemini", "qwen", ...)
        credential_id: Stable identity used for rate windows ("gemini:key:0")
        auth_method: API key, OAuth pair or CLI subscription
        secret: API key or OAuth access token
        refresh_token: OAuth refresh token, if any
        expiry: Access token expiry as epoch seconds (None = never expires)
        metadata: Non-secret extras (token_type, resource_url, source)
    """

    provider_id: str
    credential_id: str
    auth_method: AuthMethod
    secret: str = field(default="", repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expiry: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.provider_id:
            msg = "provider_id must be non-empty"
            raise ValueError(msg)
        if not self.credential_id:
            msg = "credential_id must be non-empty"
            raise ValueError(msg)
        if self.auth_method != AuthMethod.SUBSCRIPTION and not self.secret:
            msg = f"Credential {self.credential_id} has no secret material"
            raise ValueError(msg)

    @property
    def is_oauth(self) -> bool:
        return self.auth_method == AuthMethod.OAUTH

    @property
    def can_refresh(self) -> bool:
        return self.is_oauth and bool(self.refresh_token)

    def redacted(self) -> dict[str, Any]:
        """Describe the credential without secret material."""
        return {
            "provider_id": self.provider_id,
            "credential_id": self.credential_id,
            "auth_method": self.auth_method.value,
            "expiry": self.expiry,
            "has_refresh_token": bool(self.refresh_token),
        }


@dataclass(frozen=True)
class TokenGrant:
    """Result of a refresh-token exchange."""

    access_token: str = field(repr=False)
    expires_in: float
    refresh_token: str | None = field(default=None, repr=False)
    token_type: str | None = None
    resource_url: str | None = None

    @classmethod
    def from_response(cls, payload: dict[str, Any]) -> "TokenGrant":
        """Build a grant from an OAuth token endpoint JSON body.

        Raises:
            ValueError: If the body lacks an access token
            TypeError: If expires_in is present but not a number
        """
        access_token = payload.get("access_token")
        if not access_token:
            msg = "Token response missing access_token"
            raise ValueError(msg)
        return cls(
            access_token=str(access_token),
            expires_in=float(payload.get("expires_in", 3600)),
            refresh_token=payload.get("refresh_token"),
            token_type=payload.get("token_type"),
            resource_url=payload.get("resource_url"),
        )


def needs_refresh(credential: Credential, now: float, buffer_seconds: float = 300.0) -> bool:
    """True when an OAuth credential expires within ``buffer_seconds`` of ``now``."""
    if not credential.is_oauth or credential.expiry is None:
        return False
    return credential.expiry - now <= buffer_seconds


def refresh_credential(old: Credential, grant: TokenGrant, now: float) -> Credential:
    """Produce the credential that results from applying ``grant`` at time ``now``.

    The previous refresh token is kept when the endpoint does not rotate it.
    """
    metadata = dict(old.metadata)
    if grant.token_type:
        metadata["token_type"] = grant.token_type
    if grant.resource_url:
        metadata["resource_url"] = grant.resource_url
    metadata["refreshed_at"] = now

    return replace(
        old,
        secret=grant.access_token,
        refresh_token=grant.refresh_token or old.refresh_token,
        expiry=now + grant.expires_in,
        metadata=metadata,
    )
