"""Application wiring: services and the FastAPI app."""

import logging
from collections.abc import Callable
from uuid import UUID

import psycopg2
from fastapi import FastAPI
from starlette.requests import Request

from api.actions import create_actions_router
from api.data import create_data_router
from api.errors import register_error_handlers
from api.middleware import RequestIDMiddleware, UserContextMiddleware
from clients.postgres_client import PostgresClient
from clients.vault_client import clear_secret_cache, get_database_url
from ledger.audit import AuditLogger
from ledger.config import DEFAULT_CONFIG, LedgerConfig
from ledger.services.company_service import CompanyService
from ledger.services.customer_service import CustomerService
from ledger.services.estimate_service import EstimateService
from ledger.services.item_service import ItemService
from ledger.services.numbering_service import NumberingService
from ledger.services.payment_service import PaymentService
from ledger.services.purchase_invoice_service import PurchaseInvoiceService
from ledger.services.sales_invoice_service import SalesInvoiceService
from ledger.services.vendor_service import VendorService

logger = logging.getLogger(__name__)


def build_services(postgres: PostgresClient, config: LedgerConfig = DEFAULT_CONFIG) -> dict:
    """Construct every ledger service over one database client."""
    audit = AuditLogger(postgres)
    companies = CompanyService(postgres, audit, config)
    customers = CustomerService(postgres, audit, companies, config)
    vendors = VendorService(postgres, audit, companies, config)
    numbering = NumberingService(postgres, config)
    sales_invoices = SalesInvoiceService(postgres, audit, companies, customers, numbering, config)

    return {
        "audit": audit,
        "company": companies,
        "customer": customers,
        "vendor": vendors,
        "item": ItemService(postgres, audit, companies, config),
        "numbering": numbering,
        "estimate": EstimateService(postgres, audit, companies, customers, numbering, sales_invoices, config),
        "sales_invoice": sales_invoices,
        "purchase_invoice": PurchaseInvoiceService(postgres, audit, companies, vendors, numbering, config),
        "payment": PaymentService(postgres, audit, companies, customers, numbering, config),
    }


def create_app(services: dict, resolve_user: Callable[[Request], UUID | None]) -> FastAPI:
    """
    FastAPI app with user context, request IDs, error handlers and the
    data/actions routes under /api.

    Args:
        services: As returned by build_services
        resolve_user: Auth collaborator mapping a request to its user id
    """
    app = FastAPI(title="Invoice Ledger")
    app.add_middleware(UserContextMiddleware, resolve_user=resolve_user)
    # Added last so it runs first and the request id is set for every response
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.include_router(create_data_router(services), prefix="/api")
    app.include_router(create_actions_router(services), prefix="/api")

    return app


def connect_database() -> PostgresClient:
    """
    Connection pool for the database URL stored in Vault.

    A refused connection usually means the credentials were rotated since
    the URL was cached, so the secret is read again once before giving up.
    """
    try:
        return PostgresClient(get_database_url())
    except psycopg2.OperationalError as e:
        logger.warning(f"Database connection failed ({e}), re-reading credentials from Vault")
        clear_secret_cache()
        return PostgresClient(get_database_url())


def create_ledger_app(
    resolve_user: Callable[[Request], UUID | None],
    config: LedgerConfig = DEFAULT_CONFIG,
) -> FastAPI:
    """Production app: database URL read from Vault."""
    return create_app(build_services(connect_database(), config), resolve_user)
