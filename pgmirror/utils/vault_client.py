"""
Vault-backed connection strings for the replication engine.

Deployments that keep database credentials out of the environment store
one KV v2 secret per side of the replication: "source-credentials" and
"destination-credentials", each holding the connection string under "url".
"""

import logging
import os
from typing import Any, Dict, Optional

import hvac
from hvac.exceptions import InvalidPath, VaultError

from pgmirror.errors import ConfigurationError

logger = logging.getLogger(__name__)

DATABASE_ROLES = ("source", "destination")
URL_KEY = "url"


class VaultClient:
    """
    Read-only access to the replication secrets.

    Every failure surfaces as ConfigurationError: the engine only talks to
    Vault while loading its startup configuration.
    """

    def __init__(
        self,
        vault_url: Optional[str] = None,
        vault_token: Optional[str] = None,
        mount_point: str = "secret",
        verify_ssl: bool = True
    ):
        """
        Connect and authenticate.

        Args:
            vault_url: Vault server URL (defaults to VAULT_ADDR)
            vault_token: Token (defaults to VAULT_TOKEN)
            mount_point: KV v2 mount holding the credentials
            verify_ssl: Verify the server certificate

        Raises:
            ConfigurationError: If Vault is not configured, unreachable, or rejects the token
        """
        self.vault_url = vault_url or os.getenv("VAULT_ADDR")
        self.mount_point = mount_point
        token = vault_token or os.getenv("VAULT_TOKEN")

        if not self.vault_url or not token:
            raise ConfigurationError("VAULT_ADDR and VAULT_TOKEN are both required to read credentials from Vault")

        self._client = hvac.Client(url=self.vault_url, token=token, verify=verify_ssl)
        try:
            authenticated = self._client.is_authenticated()
        except (VaultError, OSError) as e:
            raise ConfigurationError(f"Vault at {self.vault_url} is unreachable: {e}") from e

        if not authenticated:
            raise ConfigurationError(f"Vault at {self.vault_url} rejected the token")

        logger.info(f"Connected to Vault at {self.vault_url}")

    def read_secret(self, path: str) -> Dict[str, Any]:
        """Return the latest version of a KV v2 secret."""
        if self._client is None:
            raise ConfigurationError("Vault client is closed")

        try:
            response = self._client.secrets.kv.v2.read_secret_version(path=path, mount_point=self.mount_point)
        except InvalidPath as e:
            raise ConfigurationError(f"No secret at {self.mount_point}/{path}") from e
        except (VaultError, OSError) as e:
            raise ConfigurationError(f"Reading {self.mount_point}/{path} failed: {e}") from e

        return (response or {}).get("data", {}).get("data") or {}

    def get_database_url(self, role: str) -> str:
        """
        Connection string for one side of the replication.

        Args:
            role: "source" or "destination"

        Raises:
            ConfigurationError: If the role is unknown or the secret carries no url
        """
        if role not in DATABASE_ROLES:
            raise ConfigurationError(f"Unknown database role {role!r}; expected one of {DATABASE_ROLES}")

        path = f"{role}-credentials"
        url = self.read_secret(path).get(URL_KEY)
        if not url:
            raise ConfigurationError(f"Secret {path} has no '{URL_KEY}' key")

        logger.info(f"Loaded {role} connection string from Vault")
        return url

    def close(self) -> None:
        if self._client is not None:
            self._client.adapter.close()
            self._client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
