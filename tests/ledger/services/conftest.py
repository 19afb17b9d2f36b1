"""Service test fixtures - real database services and seeded tenant data."""

import pytest
from decimal import Decimal

from api.app import build_services
from ledger.models import CompanyCreate, CustomerCreate, SalesTaxRateCreate, VendorCreate


# =============================================================================
# SERVICE FIXTURES
# =============================================================================


@pytest.fixture
def services(db):
    return build_services(db)


@pytest.fixture
def audit(services):
    return services["audit"]


@pytest.fixture
def company_service(services):
    return services["company"]


@pytest.fixture
def customer_service(services):
    return services["customer"]


@pytest.fixture
def vendor_service(services):
    return services["vendor"]


@pytest.fixture
def item_service(services):
    return services["item"]


@pytest.fixture
def estimate_service(services):
    return services["estimate"]


@pytest.fixture
def sales_invoice_service(services):
    return services["sales_invoice"]


@pytest.fixture
def purchase_invoice_service(services):
    return services["purchase_invoice"]


@pytest.fixture
def payment_service(services):
    return services["payment"]


# =============================================================================
# TEST DATA FIXTURES
# =============================================================================


@pytest.fixture
def company(as_test_user, company_service):
    return company_service.create(CompanyCreate(name="Test Traders"))


@pytest.fixture
def customer(company, customer_service):
    return customer_service.create(company.id, CustomerCreate(name="Acme Industries"))


@pytest.fixture
def other_customer(company, customer_service):
    return customer_service.create(company.id, CustomerCreate(name="Beta Supplies"))


@pytest.fixture
def vendor(company, vendor_service):
    return vendor_service.create(company.id, VendorCreate(name="Steel Mills Ltd"))


@pytest.fixture
def tax_rate(company, company_service):
    return company_service.create_tax_rate(company.id, SalesTaxRateCreate(name="GST", rate=Decimal("15")))

