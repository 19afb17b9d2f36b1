"""Tests for GET /api/data unified read endpoint."""

import pytest
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from ledger.models import (
    CustomerCreate, CustomerUpdate, EstimateCreate, ItemCreate, PaymentCreate, SalesInvoiceCreate,
    WithholdingTaxRateCreate,
)
from utils.timezone import today_utc


def _line(description="Widget", quantity=1, unit_price=100):
    return {"product_description": description, "quantity": quantity, "unit_price": unit_price}


# =============================================================================
# TEST DATA FIXTURES
# =============================================================================


@pytest.fixture
def estimate(services, company, customer):
    return services["estimate"].create(company.id, EstimateCreate(
        customer_id=customer.id, items=[_line("Copper wire")],
    ))


@pytest.fixture
def invoice(services, company, customer):
    return services["sales_invoice"].create(company.id, SalesInvoiceCreate(
        customer_id=customer.id, status="Final", items=[_line(unit_price=200)],
    ))


@pytest.fixture
def payment(services, company, customer):
    return services["payment"].create(company.id, PaymentCreate(
        customer_id=customer.id, gross_amount="150", net_amount="150",
    ))


# =============================================================================
# AUTHENTICATION & VALIDATION
# =============================================================================


class TestDataAuthentication:

    def test_unauthenticated_returns_401(self, unauthed_client):
        response = unauthed_client.get("/api/data", params={"type": "companies"})

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "NOT_AUTHENTICATED"

    def test_health_is_public(self, unauthed_client):
        response = unauthed_client.get("/health")

        assert response.status_code == 200


class TestDataValidation:

    def test_missing_type(self, client):
        response = client.get("/api/data")

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unknown_type(self, client):
        response = client.get("/api/data", params={"type": "spaceships"})

        assert response.status_code == 422
        assert "spaceships" in response.json()["error"]["message"]

    def test_company_id_required(self, client):
        response = client.get("/api/data", params={"type": "estimates"})

        assert response.status_code == 422
        assert "company_id" in response.json()["error"]["message"]

    def test_bad_status_returns_400(self, client, company):
        response = client.get("/api/data", params={
            "type": "estimates", "company_id": str(company.id), "status": "Bogus",
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_REQUEST"


# =============================================================================
# COMPANIES & PARTIES
# =============================================================================


class TestDataCompanies:

    def test_list_companies(self, client, company):
        response = client.get("/api/data", params={"type": "companies"})

        assert response.status_code == 200
        assert [c["name"] for c in response.json()["data"]] == ["API Traders"]

    def test_tax_rates(self, client, company, tax_rate):
        response = client.get("/api/data", params={"type": "tax_rates", "company_id": str(company.id)})

        assert [r["name"] for r in response.json()["data"]] == ["GST"]

    def test_withholding_tax_rates(self, client, services, company):
        services["company"].create_withholding_rate(company.id, WithholdingTaxRateCreate(name="WHT", rate=Decimal("4.5")))

        response = client.get("/api/data", params={"type": "withholding_tax_rates", "company_id": str(company.id)})

        assert [r["name"] for r in response.json()["data"]] == ["WHT"]

    def test_unknown_company_returns_403(self, client, company):
        response = client.get("/api/data", params={"type": "customers", "company_id": str(uuid4())})

        assert response.status_code == 403


class TestDataCustomers:

    def test_search(self, client, services, company, customer):
        services["customer"].create(company.id, CustomerCreate(name="Beta Supplies"))

        response = client.get("/api/data", params={
            "type": "customers", "company_id": str(company.id), "search": "acme",
        })

        assert [c["id"] for c in response.json()["data"]] == [str(customer.id)]

    def test_get_missing_returns_404(self, client, company):
        response = client.get("/api/data", params={
            "type": "customers", "company_id": str(company.id), "id": str(uuid4()),
        })

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"


# =============================================================================
# ESTIMATES
# =============================================================================


class TestDataEstimates:

    def test_get_by_id_with_items(self, client, company, estimate):
        response = client.get("/api/data", params={
            "type": "estimates", "company_id": str(company.id), "id": str(estimate.id),
        })

        data = response.json()["data"]
        assert data["estimate_number"] == "EST-001"
        assert [i["product_description"] for i in data["items"]] == ["Copper wire"]

    def test_list_search(self, client, services, company, customer, estimate):
        services["estimate"].create(company.id, EstimateCreate(customer_id=customer.id, items=[_line("Steel")]))

        response = client.get("/api/data", params={
            "type": "estimates", "company_id": str(company.id), "search": "copper",
        })

        assert [e["id"] for e in response.json()["data"]] == [str(estimate.id)]

    def test_expired_filter(self, client, services, company, customer):
        lapsed = services["estimate"].create(company.id, EstimateCreate(
            customer_id=customer.id, status="Sent",
            valid_until=today_utc() - timedelta(days=1), items=[_line()],
        ))

        response = client.get("/api/data", params={
            "type": "estimates", "company_id": str(company.id), "status": "Expired",
        })

        data = response.json()["data"]
        assert [e["id"] for e in data] == [str(lapsed.id)]
        assert data[0]["effective_status"] == "Expired"

    def test_next_number(self, client, company, estimate):
        response = client.get("/api/data/estimates/next_number", params={"company_id": str(company.id)})

        assert response.json()["data"] == {"estimate_number": "EST-002"}


# =============================================================================
# INVOICES & PAYMENTS
# =============================================================================


class TestDataPayments:

    def test_invoice_with_payments(self, client, services, company, invoice, payment):
        services["payment"].allocate(company.id, payment.id, invoice.id, Decimal("80"))

        response = client.get("/api/data", params={
            "type": "sales_invoices", "company_id": str(company.id),
            "id": str(invoice.id), "include": "payments",
        })

        payments = response.json()["data"]["payments"]
        assert Decimal(payments["paid_amount"]) == Decimal("80")
        assert Decimal(payments["outstanding_balance"]) == Decimal("120")

    def test_invoice_payments_route(self, client, services, company, invoice, payment):
        services["payment"].allocate(company.id, payment.id, invoice.id, Decimal("50"))

        response = client.get(f"/api/data/sales_invoices/{invoice.id}/payments", params={
            "company_id": str(company.id),
        })

        data = response.json()["data"]
        assert len(data["allocations"]) == 1
        assert Decimal(data["outstanding_balance"]) == Decimal("150")

    def test_payment_with_allocations(self, client, services, company, invoice, payment):
        services["payment"].allocate(company.id, payment.id, invoice.id, Decimal("150"))

        response = client.get("/api/data", params={
            "type": "payments", "company_id": str(company.id),
            "id": str(payment.id), "include": "allocations",
        })

        data = response.json()["data"]
        assert data["status"] == "Allocated"
        assert [a["invoice_number"] for a in data["allocations"]] == [invoice.invoice_number]

    def test_unpaid_and_available(self, client, company, customer, invoice, payment):
        unpaid = client.get(f"/api/data/customers/{customer.id}/unpaid_invoices", params={
            "company_id": str(company.id),
        }).json()["data"]
        available = client.get(f"/api/data/customers/{customer.id}/available_payments", params={
            "company_id": str(company.id),
        }).json()["data"]

        assert [i["id"] for i in unpaid] == [str(invoice.id)]
        assert [p["id"] for p in available] == [str(payment.id)]

    def test_activity(self, client, company, estimate):
        response = client.get("/api/data", params={"type": "activity", "company_id": str(company.id)})

        entries = response.json()["data"]
        assert entries[0]["entity_type"] == "estimate"
        assert entries[0]["action"] == "create"

    def test_entity_history(self, client, services, company, customer):
        services["customer"].update(company.id, customer.id, CustomerUpdate(city="Lahore"))

        response = client.get("/api/data", params={
            "type": "activity", "company_id": str(company.id),
            "entity_type": "customer", "id": str(customer.id),
        })

        entries = response.json()["data"]
        assert [e["action"] for e in entries] == ["update", "create"]
        assert {e["entity_id"] for e in entries} == {str(customer.id)}


# =============================================================================
# CATALOG
# =============================================================================


@pytest.fixture
def item(services, company, tax_rate):
    return services["item"].create(company.id, ItemCreate(
        name="Copper wire", unit_rate="12.50", default_tax_rate_id=tax_rate.id, uom="Meter",
    ))


class TestDataItems:

    def test_list_and_get(self, client, company, item):
        listed = client.get("/api/data", params={"type": "items", "company_id": str(company.id)}).json()["data"]
        single = client.get("/api/data", params={
            "type": "items", "company_id": str(company.id), "id": str(item.id),
        }).json()["data"]

        assert [i["id"] for i in listed] == [str(item.id)]
        assert single["rate_label"] == "GST"

    def test_uoms(self, client, company):
        response = client.get("/api/data", params={"type": "uoms", "company_id": str(company.id)})

        assert "Nos" in [u["code"] for u in response.json()["data"]]

    def test_picker(self, client, services, company, item):
        services["item"].create(company.id, ItemCreate(name="Steel bar"))

        response = client.get("/api/data/items/picker", params={"company_id": str(company.id), "search": "copper"})

        assert [i["name"] for i in response.json()["data"]] == ["Copper wire"]

    def test_export_csv(self, client, company, item):
        response = client.get("/api/data/items/export", params={"company_id": str(company.id)})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.split("\r\n")
        assert lines[0] == "name,description,reference,hs_code,unit_rate,rate_label,uom,sale_type"
        assert lines[1].startswith("Copper wire,,,,12.50,GST,Meter,")
