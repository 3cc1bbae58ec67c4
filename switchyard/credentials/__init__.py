"""Credential lifecycle: static keys, OAuth refresh and persistence."""

from switchyard.credentials.models import (
    AuthMethod,
    Credential,
    TokenGrant,
    needs_refresh,
    refresh_credential,
)
from switchyard.credentials.persistence import JSONFileCredentialPersistence
from switchyard.credentials.store import CredentialStore

__all__ = [
    "AuthMethod",
    "Credential",
    "CredentialStore",
    "JSONFileCredentialPersistence",
    "TokenGrant",
    "needs_refresh",
    "refresh_credential",
]
