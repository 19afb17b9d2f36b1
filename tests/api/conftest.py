"""API test fixtures - authenticated TestClient with real database services."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from starlette.testclient import TestClient

from api.app import build_services, create_app
from ledger.audit import AuditLogger
from ledger.models import CompanyCreate, CustomerCreate, SalesTaxRateCreate
from ledger.services.company_service import CompanyService
from ledger.services.customer_service import CustomerService
from ledger.services.estimate_service import EstimateService
from ledger.services.item_service import ItemService
from ledger.services.numbering_service import NumberingService
from ledger.services.payment_service import PaymentService
from ledger.services.purchase_invoice_service import PurchaseInvoiceService
from ledger.services.sales_invoice_service import SalesInvoiceService
from ledger.services.vendor_service import VendorService

TEST_TOKEN = "test-token"


# =============================================================================
# SERVICE FIXTURES
# =============================================================================


@pytest.fixture
def services(db):
    return build_services(db)


@pytest.fixture
def mock_services():
    """Service doubles for exercising dispatch without a database."""
    return {
        "audit": MagicMock(spec=AuditLogger),
        "company": MagicMock(spec=CompanyService),
        "customer": MagicMock(spec=CustomerService),
        "vendor": MagicMock(spec=VendorService),
        "item": MagicMock(spec=ItemService),
        "numbering": MagicMock(spec=NumberingService),
        "estimate": MagicMock(spec=EstimateService),
        "sales_invoice": MagicMock(spec=SalesInvoiceService),
        "purchase_invoice": MagicMock(spec=PurchaseInvoiceService),
        "payment": MagicMock(spec=PaymentService),
    }


# =============================================================================
# AUTH FIXTURES
# =============================================================================


@pytest.fixture
def resolve_user(test_user_id):
    """Auth collaborator: the session cookie maps to the primary test user."""
    def resolve(request):
        if request.cookies.get("session_token") == TEST_TOKEN:
            return test_user_id
        return None
    return resolve


# =============================================================================
# APP & CLIENT FIXTURES
# =============================================================================


@pytest.fixture
def app(services, resolve_user):
    return create_app(services, resolve_user)


@pytest.fixture
def client(app):
    """Authenticated test client."""
    c = TestClient(app, raise_server_exceptions=False)
    c.cookies.set("session_token", TEST_TOKEN)
    return c


@pytest.fixture
def unauthed_client(app):
    """Unauthenticated test client (no session cookie)."""
    return TestClient(app, raise_server_exceptions=False)


# =============================================================================
# TEST DATA FIXTURES
# =============================================================================


@pytest.fixture
def company(as_test_user, services):
    return services["company"].create(CompanyCreate(name="API Traders"))


@pytest.fixture
def customer(company, services):
    return services["customer"].create(company.id, CustomerCreate(name="Acme Industries"))


@pytest.fixture
def tax_rate(company, services):
    return services["company"].create_tax_rate(company.id, SalesTaxRateCreate(name="GST", rate=Decimal("15")))
