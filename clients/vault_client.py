"""
Vault access for the ledger's secrets.

Secrets live in a KV v2 engine under the 'ledger/' prefix and are read
with an AppRole login configured from the environment:

    VAULT_ADDR, VAULT_ROLE_ID, VAULT_SECRET_ID   required
    VAULT_NAMESPACE                              optional

Each secret is read once per process. clear_secret_cache() drops the
cached secrets and the login, so the next read sees rotated credentials.
"""

import logging
import os
import threading

import hvac
from hvac.exceptions import Forbidden, InvalidPath, Unauthorized, VaultError

logger = logging.getLogger(__name__)

SECRET_PREFIX = "ledger"

_lock = threading.Lock()
_vault_client_instance: "VaultClient | None" = None
# secret path -> all fields of that secret
_secret_cache: dict[str, dict[str, str]] = {}


class VaultClient:
    """AppRole-authenticated reader for secrets under ledger/."""

    def __init__(self, vault_addr: str | None = None, vault_namespace: str | None = None):
        """
        Log in to Vault.

        Raises:
            ValueError: A required environment variable is missing
            PermissionError: The AppRole login was refused
        """
        settings = {
            "VAULT_ADDR": vault_addr or os.getenv("VAULT_ADDR"),
            "VAULT_ROLE_ID": os.getenv("VAULT_ROLE_ID"),
            "VAULT_SECRET_ID": os.getenv("VAULT_SECRET_ID"),
        }
        missing = [name for name, value in settings.items() if not value]
        if missing:
            raise ValueError(f"Vault is not configured; set {', '.join(missing)}")

        self.vault_addr = settings["VAULT_ADDR"]
        self.client = hvac.Client(url=self.vault_addr, namespace=vault_namespace or os.getenv("VAULT_NAMESPACE"))

        try:
            login = self.client.auth.approle.login(
                role_id=settings["VAULT_ROLE_ID"],
                secret_id=settings["VAULT_SECRET_ID"],
            )
        except VaultError as e:
            logger.error(f"Vault AppRole login failed: {e}")
            raise PermissionError(f"Vault AppRole authentication failed: {e}") from e

        self.client.token = login["auth"]["client_token"]
        if not self.client.is_authenticated():
            raise PermissionError("Vault authentication failed")

        logger.info(f"Vault client authenticated against {self.vault_addr}")

    def read_secret(self, path: str) -> dict[str, str]:
        """
        All fields of the secret at ledger/<path>.

        Raises:
            PermissionError: Path missing or not readable with this role
        """
        full_path = f"{SECRET_PREFIX}/{path}"

        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=full_path, raise_on_deleted_version=True
            )
        except InvalidPath as e:
            logger.error(f"Secret path not found: {full_path}")
            raise PermissionError(f"Secret path '{full_path}' not found in Vault") from e
        except (Unauthorized, Forbidden) as e:
            logger.error(f"Access denied to secret {full_path}: {e}")
            raise PermissionError(f"Access denied to secret '{full_path}': {e}") from e

        return response["data"]["data"]

    def get_secret(self, path: str, field: str) -> str:
        """
        One field of the secret at ledger/<path>.

        Raises:
            PermissionError: Path missing or not readable with this role
            KeyError: Secret has no such field
        """
        return _field(self.read_secret(path), path, field)


def _field(secret: dict[str, str], path: str, field: str) -> str:
    if field not in secret:
        raise KeyError(
            f"Field '{field}' not found in secret '{SECRET_PREFIX}/{path}'. "
            f"Available: {', '.join(secret)}"
        )
    return secret[field]


def get_cached_secret(path: str, field: str) -> str:
    """One field of a secret, reading the secret from Vault on first use."""
    global _vault_client_instance
    with _lock:
        if path not in _secret_cache:
            if _vault_client_instance is None:
                _vault_client_instance = VaultClient()
            _secret_cache[path] = _vault_client_instance.read_secret(path)
        secret = _secret_cache[path]
    return _field(secret, path, field)


def get_database_url() -> str:
    """PostgreSQL connection URL (ledger/database, field 'url')."""
    return get_cached_secret("database", "url")


def clear_secret_cache() -> None:
    """Forget cached secrets and the Vault login; the next read starts over."""
    global _vault_client_instance
    with _lock:
        _secret_cache.clear()
        _vault_client_instance = None
