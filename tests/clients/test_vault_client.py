"""Tests for clients/vault_client.py - AppRole login and cached secret reads."""

import pytest
from unittest.mock import MagicMock, patch

from hvac.exceptions import Forbidden, InvalidPath

import clients.vault_client as vault_module
from clients.vault_client import VaultClient, clear_secret_cache, get_cached_secret, get_database_url


@pytest.fixture
def vault_env(monkeypatch):
    monkeypatch.setenv("VAULT_ADDR", "http://vault.test:8200")
    monkeypatch.setenv("VAULT_ROLE_ID", "role")
    monkeypatch.setenv("VAULT_SECRET_ID", "secret")
    monkeypatch.delenv("VAULT_NAMESPACE", raising=False)


@pytest.fixture
def hvac_client(vault_env):
    """hvac.Client double that logs in successfully."""
    with patch("clients.vault_client.hvac.Client") as client_cls:
        client = client_cls.return_value
        client.auth.approle.login.return_value = {"auth": {"client_token": "s.token"}}
        client.is_authenticated.return_value = True
        yield client


@pytest.fixture
def fake_vault(monkeypatch):
    """VaultClient double installed as the process-wide login."""
    fake = MagicMock(spec=VaultClient)
    fake.read_secret.return_value = {"url": "postgresql://cached"}
    monkeypatch.setattr(vault_module, "_vault_client_instance", fake)
    return fake


@pytest.fixture(autouse=True)
def fresh_cache():
    clear_secret_cache()
    yield
    clear_secret_cache()


class TestVaultClientInit:
    """Configuration and AppRole login."""

    def test_missing_vault_addr_raises(self, vault_env, monkeypatch):
        monkeypatch.delenv("VAULT_ADDR")

        with pytest.raises(ValueError, match="VAULT_ADDR"):
            VaultClient()

    def test_lists_every_missing_variable(self, vault_env, monkeypatch):
        monkeypatch.delenv("VAULT_ROLE_ID")
        monkeypatch.delenv("VAULT_SECRET_ID")

        with pytest.raises(ValueError, match="VAULT_ROLE_ID, VAULT_SECRET_ID"):
            VaultClient()

    def test_refused_login_raises_permission_error(self, hvac_client):
        hvac_client.auth.approle.login.side_effect = Forbidden("permission denied")

        with pytest.raises(PermissionError, match="authentication"):
            VaultClient()

    def test_unauthenticated_token_raises(self, hvac_client):
        hvac_client.is_authenticated.return_value = False

        with pytest.raises(PermissionError):
            VaultClient()

    def test_login_sets_token(self, hvac_client):
        client = VaultClient()

        assert client.client.token == "s.token"
        hvac_client.auth.approle.login.assert_called_once_with(role_id="role", secret_id="secret")


class TestReadSecret:
    """Secret reads - paths are always under ledger/."""

    def test_returns_fields(self, hvac_client):
        hvac_client.secrets.kv.v2.read_secret_version.return_value = {
            "data": {"data": {"url": "postgresql://ledger@db/ledger"}},
        }

        client = VaultClient()

        assert client.get_secret("database", "url") == "postgresql://ledger@db/ledger"
        call = hvac_client.secrets.kv.v2.read_secret_version.call_args
        assert call.kwargs["path"] == "ledger/database"

    def test_missing_path_raises(self, hvac_client):
        hvac_client.secrets.kv.v2.read_secret_version.side_effect = InvalidPath()

        with pytest.raises(PermissionError, match="not found"):
            VaultClient().read_secret("nonexistent")

    def test_forbidden_path_raises(self, hvac_client):
        hvac_client.secrets.kv.v2.read_secret_version.side_effect = Forbidden("denied")

        with pytest.raises(PermissionError, match="Access denied"):
            VaultClient().read_secret("payroll")

    def test_missing_field_names_available_ones(self, hvac_client):
        hvac_client.secrets.kv.v2.read_secret_version.return_value = {"data": {"data": {"url": "x"}}}

        with pytest.raises(KeyError, match="Available: url"):
            VaultClient().get_secret("database", "password")


class TestCachedSecrets:
    """Module-level cached reads."""

    def test_secret_read_once(self, fake_vault):
        assert get_database_url() == "postgresql://cached"
        assert get_cached_secret("database", "url") == "postgresql://cached"

        fake_vault.read_secret.assert_called_once_with("database")

    def test_missing_cached_field_raises(self, fake_vault):
        with pytest.raises(KeyError):
            get_cached_secret("database", "password")

    def test_clear_forgets_secrets_and_login(self, fake_vault):
        get_database_url()

        clear_secret_cache()

        assert vault_module._secret_cache == {}
        assert vault_module._vault_client_instance is None
