"""Tests for SalesInvoiceService and PurchaseInvoiceService."""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from ledger.exceptions import InvalidStateError, NotFoundError, ValidationError
from ledger.models import (
    EstimateCreate, InvoiceStatus, MappedSalesInvoice, PaymentCreate, PurchaseInvoiceCreate, PurchaseInvoiceUpdate,
    SalesInvoiceCreate, SalesInvoiceUpdate, VendorCreate,
)


def _line(description="Consulting", quantity=1, unit_price=100):
    return {"product_description": description, "quantity": quantity, "unit_price": unit_price}


@pytest.fixture
def paid_invoice(sales_invoice_service, payment_service, company, customer):
    """Final invoice for 100 with 60 allocated."""
    invoice = sales_invoice_service.create(company.id, SalesInvoiceCreate(
        customer_id=customer.id, status="Final", items=[_line()],
    ))
    payment = payment_service.create(company.id, PaymentCreate(
        customer_id=customer.id, gross_amount="60", net_amount="60",
    ))
    payment_service.allocate(company.id, payment.id, invoice.id, Decimal("60"))
    return invoice


class TestSalesInvoiceService:
    """Sales invoice create, update guards and listing."""

    def test_create(self, sales_invoice_service, company, customer, tax_rate):
        invoice = sales_invoice_service.create(company.id, SalesInvoiceCreate(
            customer_id=customer.id, items=[_line(quantity=2, unit_price=50)],
            discount_amount="10", discount_type="percentage", sales_tax_rate_id=tax_rate.id,
        ))

        assert invoice.invoice_number == "INV-001"
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.subtotal == Decimal("100.00")
        assert invoice.total_tax == Decimal("13.50")
        assert invoice.total_amount == Decimal("103.50")
        assert invoice.customer_name == "Acme Industries"

    def test_requires_customer(self, sales_invoice_service, company):
        with pytest.raises(ValidationError):
            sales_invoice_service.create(company.id, SalesInvoiceCreate(items=[_line()]))

    def test_unknown_customer(self, sales_invoice_service, company):
        with pytest.raises(NotFoundError):
            sales_invoice_service.create(company.id, SalesInvoiceCreate(customer_id=uuid4(), items=[_line()]))

    def test_update_replaces_items(self, sales_invoice_service, company, customer):
        invoice = sales_invoice_service.create(company.id, SalesInvoiceCreate(
            customer_id=customer.id, items=[_line("Old")],
        ))

        updated = sales_invoice_service.update(company.id, invoice.id, SalesInvoiceUpdate(
            customer_id=customer.id, status="Sent", items=[_line("New", 3, 10)],
        ))

        assert updated.status == InvoiceStatus.SENT
        assert [i.product_description for i in updated.items] == ["New"]
        assert updated.total_amount == Decimal("30.00")
        assert updated.invoice_date == invoice.invoice_date

    def test_total_below_paid_refused(self, sales_invoice_service, company, customer, paid_invoice):
        with pytest.raises(InvalidStateError, match="already paid"):
            sales_invoice_service.update(company.id, paid_invoice.id, SalesInvoiceUpdate(
                customer_id=customer.id, status="Final", items=[_line(unit_price=50)],
            ))

        assert sales_invoice_service.require(company.id, paid_invoice.id).total_amount == Decimal("100.00")

    def test_paid_invoice_cannot_return_to_draft(self, sales_invoice_service, company, customer, paid_invoice):
        with pytest.raises(InvalidStateError, match="Draft"):
            sales_invoice_service.update(company.id, paid_invoice.id, SalesInvoiceUpdate(
                customer_id=customer.id, status="Draft", items=[_line()],
            ))

    def test_paid_invoice_cannot_change_customer(
        self, sales_invoice_service, company, other_customer, paid_invoice,
    ):
        with pytest.raises(InvalidStateError, match="customer"):
            sales_invoice_service.update(company.id, paid_invoice.id, SalesInvoiceUpdate(
                customer_id=other_customer.id, status="Final", items=[_line()],
            ))

    def test_list_filters(self, sales_invoice_service, company, customer, other_customer):
        sales_invoice_service.create(company.id, SalesInvoiceCreate(customer_id=customer.id, items=[_line()]))
        sent = sales_invoice_service.create(company.id, SalesInvoiceCreate(
            customer_id=other_customer.id, status="Sent", items=[_line()],
        ))

        assert [i.id for i in sales_invoice_service.list_all(company.id, status=InvoiceStatus.SENT)] == [sent.id]
        assert [i.id for i in sales_invoice_service.list_all(company.id, customer_id=other_customer.id)] == [sent.id]
        assert [i.id for i in sales_invoice_service.list_all(company.id, search="beta")] == [sent.id]

    def test_delete(self, sales_invoice_service, company, customer):
        invoice = sales_invoice_service.create(company.id, SalesInvoiceCreate(
            customer_id=customer.id, items=[_line()],
        ))

        assert sales_invoice_service.delete(company.id, invoice.id) is True
        assert sales_invoice_service.get_by_id(company.id, invoice.id) is None


class TestPurchaseInvoiceService:
    """Purchase invoices share numbering and totals with sales invoices."""

    def test_create(self, purchase_invoice_service, company, vendor):
        invoice = purchase_invoice_service.create(company.id, PurchaseInvoiceCreate(
            vendor_id=vendor.id, reference="SUP-778", items=[_line("Steel", 4, 25)],
        ))

        assert invoice.invoice_number == "PUR-001"
        assert invoice.vendor_name == "Steel Mills Ltd"
        assert invoice.reference == "SUP-778"
        assert invoice.total_amount == Decimal("100.00")

    def test_own_sequence(self, purchase_invoice_service, sales_invoice_service, company, customer, vendor):
        sales_invoice_service.create(company.id, SalesInvoiceCreate(customer_id=customer.id, items=[_line()]))

        invoice = purchase_invoice_service.create(company.id, PurchaseInvoiceCreate(
            vendor_id=vendor.id, items=[_line()],
        ))

        assert invoice.invoice_number.endswith("001")

    def test_requires_vendor(self, purchase_invoice_service, company):
        with pytest.raises(ValidationError, match="Vendor"):
            purchase_invoice_service.create(company.id, PurchaseInvoiceCreate(items=[_line()]))

    def test_update(self, purchase_invoice_service, company, vendor):
        invoice = purchase_invoice_service.create(company.id, PurchaseInvoiceCreate(
            vendor_id=vendor.id, items=[_line()],
        ))

        updated = purchase_invoice_service.update(company.id, invoice.id, PurchaseInvoiceUpdate(
            vendor_id=vendor.id, status="Final", items=[_line(), _line("Freight", 1, 20)],
        ))

        assert updated.status == InvoiceStatus.FINAL
        assert updated.total_amount == Decimal("120.00")

    def test_list_by_vendor(self, purchase_invoice_service, vendor_service, company, vendor):
        other = vendor_service.create(company.id, VendorCreate(name="Cement Works"))
        mine = purchase_invoice_service.create(company.id, PurchaseInvoiceCreate(vendor_id=vendor.id, items=[_line()]))
        purchase_invoice_service.create(company.id, PurchaseInvoiceCreate(vendor_id=other.id, items=[_line()]))

        found = purchase_invoice_service.list_all(company.id, vendor_id=vendor.id)

        assert [i.id for i in found] == [mine.id]

    def test_delete(self, purchase_invoice_service, company, vendor):
        invoice = purchase_invoice_service.create(company.id, PurchaseInvoiceCreate(
            vendor_id=vendor.id, items=[_line()],
        ))

        assert purchase_invoice_service.delete(company.id, invoice.id) is True
        assert purchase_invoice_service.delete(company.id, invoice.id) is False


def _mapped(number, customer_name="Acme Industries", **extra):
    return MappedSalesInvoice(
        invoice_number=number, customer_name=customer_name, invoice_date=date(2024, 3, 5),
        items=[_line()], **extra,
    )


class TestSalesInvoiceImport:
    """CSV import keeps the file's invoice numbers."""

    def test_keeps_numbers_and_counter(self, sales_invoice_service, company_service, company, customer):
        result = sales_invoice_service.import_invoices(company.id, [
            _mapped("OLD-17", status=InvoiceStatus.SENT),
            _mapped("OLD-18", customer_name="acme industries"),
        ])

        assert result.imported == 2
        assert result.skipped == 0
        numbers = sorted(i.invoice_number for i in sales_invoice_service.list_all(company.id))
        assert numbers == ["OLD-17", "OLD-18"]
        assert company_service.require_owned(company.id).sales_invoice_next_number == 1

        created = sales_invoice_service.create(company.id, SalesInvoiceCreate(customer_id=customer.id, items=[_line()]))
        assert created.invoice_number == "INV-001"

    def test_links_estimate(self, sales_invoice_service, estimate_service, company, customer):
        estimate = estimate_service.create(company.id, EstimateCreate(customer_id=customer.id, items=[_line()]))

        sales_invoice_service.import_invoices(company.id, [
            _mapped("OLD-1", estimate_number=estimate.estimate_number),
            _mapped("OLD-2", estimate_number="EST-999"),
        ])

        invoices = {i.invoice_number: i for i in sales_invoice_service.list_all(company.id)}
        assert invoices["OLD-1"].estimate_id == estimate.id
        assert invoices["OLD-2"].estimate_id is None

    def test_duplicates_and_unknown_customers_skipped(self, sales_invoice_service, company, customer):
        sales_invoice_service.import_invoices(company.id, [_mapped("OLD-1")])

        result = sales_invoice_service.import_invoices(company.id, [
            _mapped("OLD-1"),
            _mapped("OLD-2", customer_name="Nobody Ltd"),
            _mapped("OLD-3"),
        ])

        assert result.imported == 1
        assert result.skipped_duplicate_number == ["OLD-1"]
        assert result.skipped_no_customer == ["Nobody Ltd"]
        assert len(sales_invoice_service.list_all(company.id)) == 2

    def test_totals_computed(self, sales_invoice_service, company, customer, tax_rate):
        sales_invoice_service.import_invoices(company.id, [
            _mapped("OLD-5", sales_tax_rate_id=tax_rate.id, discount_amount="10"),
        ])

        invoice = sales_invoice_service.list_all(company.id)[0]
        assert invoice.total_amount == Decimal("103.50")
