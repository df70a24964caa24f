"""
Unit tests for vault_client module.
"""

import pytest
from unittest.mock import patch
from hvac.exceptions import Forbidden, InvalidPath

from pgmirror.errors import ConfigurationError
from pgmirror.utils.vault_client import VaultClient


class TestVaultClient:
    """Test suite for VaultClient class."""

    @pytest.fixture
    def mock_hvac_client(self):
        """Mock hvac.Client for testing."""
        with patch('pgmirror.utils.vault_client.hvac.Client') as mock:
            mock.return_value.is_authenticated.return_value = True
            yield mock

    @pytest.fixture
    def client(self, mock_hvac_client):
        return VaultClient(vault_url="http://test:8200", vault_token="test-token")

    @pytest.fixture
    def read_secret_version(self, mock_hvac_client):
        return mock_hvac_client.return_value.secrets.kv.v2.read_secret_version

    def test_init_with_env_vars(self, mock_hvac_client, monkeypatch):
        monkeypatch.setenv("VAULT_ADDR", "http://env-vault:8200")
        monkeypatch.setenv("VAULT_TOKEN", "env-token")

        client = VaultClient()

        assert client.vault_url == "http://env-vault:8200"
        mock_hvac_client.assert_called_once_with(url="http://env-vault:8200", token="env-token", verify=True)

    @pytest.mark.parametrize("kwargs", [{"vault_token": "t"}, {"vault_url": "http://test:8200"}])
    def test_missing_settings(self, monkeypatch, kwargs):
        monkeypatch.delenv("VAULT_ADDR", raising=False)
        monkeypatch.delenv("VAULT_TOKEN", raising=False)

        with pytest.raises(ConfigurationError, match="VAULT_ADDR and VAULT_TOKEN"):
            VaultClient(**kwargs)

    def test_rejected_token(self, mock_hvac_client):
        mock_hvac_client.return_value.is_authenticated.return_value = False

        with pytest.raises(ConfigurationError, match="rejected the token"):
            VaultClient(vault_url="http://test:8200", vault_token="bad-token")

    def test_unreachable(self, mock_hvac_client):
        mock_hvac_client.return_value.is_authenticated.side_effect = ConnectionError("refused")

        with pytest.raises(ConfigurationError, match="unreachable"):
            VaultClient(vault_url="http://test:8200", vault_token="test-token")

    @pytest.mark.parametrize("role", ["source", "destination"])
    def test_get_database_url(self, client, read_secret_version, role):
        read_secret_version.return_value = {"data": {"data": {"url": f"postgres://{role}-host/db"}}}

        assert client.get_database_url(role) == f"postgres://{role}-host/db"
        read_secret_version.assert_called_once_with(path=f"{role}-credentials", mount_point="secret")

    def test_unknown_role(self, client):
        with pytest.raises(ConfigurationError, match="Unknown database role"):
            client.get_database_url("replica")

    def test_secret_without_url(self, client, read_secret_version):
        read_secret_version.return_value = {"data": {"data": {"username": "postgres"}}}

        with pytest.raises(ConfigurationError, match="no 'url' key"):
            client.get_database_url("source")

    def test_missing_secret(self, client, read_secret_version):
        read_secret_version.side_effect = InvalidPath("not found")

        with pytest.raises(ConfigurationError, match="No secret at secret/source-credentials"):
            client.get_database_url("source")

    def test_forbidden_secret(self, client, read_secret_version):
        read_secret_version.side_effect = Forbidden("permission denied")

        with pytest.raises(ConfigurationError, match="failed"):
            client.read_secret("source-credentials")

    def test_context_manager_closes(self, mock_hvac_client):
        with VaultClient(vault_url="http://test:8200", vault_token="test-token") as client:
            pass

        mock_hvac_client.return_value.adapter.close.assert_called_once()
        with pytest.raises(ConfigurationError, match="closed"):
            client.read_secret("source-credentials")
