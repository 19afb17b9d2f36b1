"""Tests for application wiring."""

from unittest.mock import MagicMock

import psycopg2
import pytest
from starlette.testclient import TestClient

import api.app as app_module
from api.app import build_services, connect_database, create_ledger_app
from clients.postgres_client import PostgresClient
from ledger.config import LedgerConfig
from ledger.services.estimate_service import EstimateService
from ledger.services.item_service import ItemService


class TestBuildServices:

    def test_every_domain_wired(self):
        services = build_services(MagicMock(spec=PostgresClient))

        assert set(services) == {
            "audit", "company", "customer", "vendor", "item", "numbering",
            "estimate", "sales_invoice", "purchase_invoice", "payment",
        }
        assert isinstance(services["estimate"], EstimateService)
        assert isinstance(services["item"], ItemService)

    def test_config_shared(self):
        config = LedgerConfig(max_page_size=25)

        services = build_services(MagicMock(spec=PostgresClient), config)

        for name in ("customer", "vendor", "item", "estimate", "sales_invoice", "purchase_invoice", "payment"):
            assert services[name].config is config


class TestConnectDatabase:
    """Database URL from Vault, re-read once when the connection is refused."""

    def test_refused_connection_rereads_credentials(self, monkeypatch):
        pool = MagicMock(spec=PostgresClient)
        postgres_cls = MagicMock(side_effect=[psycopg2.OperationalError("password authentication failed"), pool])
        urls = iter(["postgresql://old", "postgresql://rotated"])
        clear = MagicMock()
        monkeypatch.setattr(app_module, "PostgresClient", postgres_cls)
        monkeypatch.setattr(app_module, "get_database_url", lambda: next(urls))
        monkeypatch.setattr(app_module, "clear_secret_cache", clear)

        assert connect_database() is pool

        clear.assert_called_once_with()
        assert postgres_cls.call_args.args == ("postgresql://rotated",)

    def test_second_refusal_propagates(self, monkeypatch):
        postgres_cls = MagicMock(side_effect=psycopg2.OperationalError("down"))
        monkeypatch.setattr(app_module, "PostgresClient", postgres_cls)
        monkeypatch.setattr(app_module, "get_database_url", lambda: "postgresql://x")
        monkeypatch.setattr(app_module, "clear_secret_cache", MagicMock())

        with pytest.raises(psycopg2.OperationalError):
            connect_database()

        assert postgres_cls.call_count == 2


class TestCreateLedgerApp:
    """Production factory reads the database URL from Vault."""

    def test_uses_vault_database_url(self, monkeypatch):
        postgres_cls = MagicMock(return_value=MagicMock(spec=PostgresClient))
        monkeypatch.setattr(app_module, "get_database_url", lambda: "postgresql://vault/ledger")
        monkeypatch.setattr(app_module, "PostgresClient", postgres_cls)

        app = create_ledger_app(lambda request: None)

        postgres_cls.assert_called_once_with("postgresql://vault/ledger")
        assert TestClient(app).get("/health").json() == {"status": "ok"}
