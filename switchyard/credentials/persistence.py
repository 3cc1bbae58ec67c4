"""JSON file-based credential persistence.

Reads and writes the OAuth credential files maintained by the provider CLIs
(``~/.gemini/oauth_creds.json``, ``~/.qwen/oauth_creds.json``). Files store
expiry as epoch milliseconds under ``expiry_date``.

Saves are atomic: the existing file is read, updated fields are merged in
(unknown fields survive), and the result is written to a temporary file in
the same directory before being moved over the original with ``os.replace``.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from switchyard.credentials.models import AuthMethod, Credential

logger = logging.getLogger(__name__)


class JSONFileCredentialPersistence:
    """Credential persistence backed by one JSON file per provider."""

    def __init__(self, paths: dict[str, Path | str]) -> None:
        """Initialize persistence.

        Args:
            paths: Mapping of provider id to credential file path (``~`` expanded)
        """
        self.paths = {provider: Path(path).expanduser() for provider, path in paths.items()}

    def path_for(self, provider_id: str) -> Path | None:
        return self.paths.get(provider_id)

    def load(self, provider_id: str) -> Credential | None:
        """Load the OAuth credential for a provider, or None when absent/unreadable."""
        path = self.path_for(provider_id)
        if path is None or not path.exists():
            return None

        data = self._read(path)
        if not data or not data.get("access_token"):
            logger.warning("Credential file for %s has no access token: %s", provider_id, path)
            return None

        expiry_ms = data.get("expiry_date")
        metadata: dict[str, Any] = {"source": str(path)}
        for key in ("token_type", "resource_url"):
            if data.get(key):
                metadata[key] = data[key]

        return Credential(
            provider_id=provider_id,
            credential_id=f"{provider_id}:oauth",
            auth_method=AuthMethod.OAUTH,
            secret=str(data["access_token"]),
            refresh_token=data.get("refresh_token"),
            expiry=float(expiry_ms) / 1000.0 if expiry_ms is not None else None,
            metadata=metadata,
        )

    def save(self, provider_id: str, credential: Credential) -> None:
        """Persist a refreshed credential.

        Raises:
            KeyError: If no file path is configured for the provider
            OSError: If the file cannot be written
        """
        path = self.path_for(provider_id)
        if path is None:
            msg = f"No credential file configured for provider '{provider_id}'"
            raise KeyError(msg)

        data = self._read(path) if path.exists() else {}
        data["access_token"] = credential.secret
        if credential.refresh_token:
            data["refresh_token"] = credential.refresh_token
        if credential.expiry is not None:
            data["expiry_date"] = int(credential.expiry * 1000)
        for key in ("token_type", "resource_url"):
            if credential.metadata.get(key):
                data[key] = credential.metadata[key]

        self._write_atomic(path, data)
        logger.info("Persisted refreshed credential for %s", provider_id)

    def _read(self, path: Path) -> dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to read credential file %s: %s", path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_atomic(self, path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
