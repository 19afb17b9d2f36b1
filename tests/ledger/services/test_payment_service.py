"""Tests for PaymentService: payments, allocations and derived balances."""

import pytest
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

from ledger.audit import AuditLogger
from ledger.exceptions import InvalidStateError, NotFoundError, OverAllocationError, ValidationError
from ledger.models import PaymentCreate, PaymentStatus, PaymentUpdate, SalesInvoiceCreate
from ledger.services.company_service import CompanyService
from ledger.services.customer_service import CustomerService
from ledger.services.numbering_service import NumberingService
from ledger.services.payment_service import PaymentService


def _line(description="Service", quantity=1, unit_price=100):
    return {"product_description": description, "quantity": quantity, "unit_price": unit_price}


@pytest.fixture
def invoice(sales_invoice_service, company, customer):
    """Final sales invoice for 200.00."""
    return sales_invoice_service.create(company.id, SalesInvoiceCreate(
        customer_id=customer.id, status="Final", items=[_line(unit_price=200)],
    ))


@pytest.fixture
def payment(payment_service, company, customer):
    """Payment of 150.00 from the invoice's customer."""
    return payment_service.create(company.id, PaymentCreate(
        customer_id=customer.id, gross_amount="150", net_amount="150",
    ))


# =============================================================================
# GUARDS (no database)
# =============================================================================


class TestAllocateGuards:
    """A rejected allocation writes nothing."""

    @pytest.fixture
    def service(self, mock_db):
        audit = MagicMock(spec=AuditLogger)
        service = PaymentService(
            mock_db, audit,
            MagicMock(spec=CompanyService),
            MagicMock(spec=CustomerService),
            MagicMock(spec=NumberingService),
        )
        return service

    def _rows(self, mock_tx, invoice_status="Final", customer_id=None):
        customer_id = customer_id or uuid4()
        mock_tx.execute_single.side_effect = [
            {"id": uuid4(), "customer_id": customer_id, "payment_number": "PAY-001",
             "gross_amount": Decimal("100.00")},
            {"id": uuid4(), "customer_id": customer_id, "invoice_number": "INV-001",
             "status": invoice_status, "total_amount": Decimal("500.00")},
        ]

    def test_over_payment_remaining(self, service, mock_tx):
        """90 of 100 already allocated leaves 10; allocating 20 fails."""
        self._rows(mock_tx)
        mock_tx.execute_scalar.side_effect = [Decimal("90.00"), Decimal("0")]

        with pytest.raises(OverAllocationError, match="payment remaining"):
            service.allocate(uuid4(), uuid4(), uuid4(), Decimal("20"))

        mock_tx.execute_returning.assert_not_called()
        mock_tx.execute.assert_not_called()
        service.audit.log_change.assert_not_called()

    def test_over_invoice_outstanding(self, service, mock_tx):
        self._rows(mock_tx)
        mock_tx.execute_scalar.side_effect = [Decimal("0"), Decimal("450.00")]

        with pytest.raises(OverAllocationError, match="outstanding"):
            service.allocate(uuid4(), uuid4(), uuid4(), Decimal("60"))

        mock_tx.execute_returning.assert_not_called()

    def test_draft_invoice(self, service, mock_tx):
        self._rows(mock_tx, invoice_status="Draft")
        mock_tx.execute_scalar.side_effect = [Decimal("0"), Decimal("0")]

        with pytest.raises(InvalidStateError):
            service.allocate(uuid4(), uuid4(), uuid4(), Decimal("10"))

        mock_tx.execute_returning.assert_not_called()

    def test_other_customers_invoice(self, service, mock_tx):
        mock_tx.execute_single.side_effect = [
            {"id": uuid4(), "customer_id": uuid4(), "payment_number": "PAY-001",
             "gross_amount": Decimal("100.00")},
            {"id": uuid4(), "customer_id": uuid4(), "invoice_number": "INV-001",
             "status": "Final", "total_amount": Decimal("500.00")},
        ]

        with pytest.raises(ValidationError, match="different customer"):
            service.allocate(uuid4(), uuid4(), uuid4(), Decimal("10"))

        mock_tx.execute_returning.assert_not_called()

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("0.001")])
    def test_non_positive_amount(self, service, mock_db, amount):
        with pytest.raises(ValidationError):
            service.allocate(uuid4(), uuid4(), uuid4(), amount)

        mock_db.transaction.assert_not_called()


# =============================================================================
# PAYMENTS
# =============================================================================


class TestCreatePayment:
    """Tests for PaymentService.create()."""

    def test_numbered_and_unallocated(self, payment):
        assert payment.payment_number == "PAY-00001"
        assert payment.status == PaymentStatus.UNALLOCATED
        assert payment.allocated_amount == Decimal("0")
        assert payment.remaining_amount == Decimal("150.00")
        assert payment.mode_of_payment.value == "Cheque"
        assert payment.customer_name == "Acme Industries"

    def test_unknown_customer(self, payment_service, company):
        with pytest.raises(NotFoundError):
            payment_service.create(company.id, PaymentCreate(
                customer_id=uuid4(), gross_amount="10", net_amount="10",
            ))

    def test_amounts_must_be_positive(self, customer):
        with pytest.raises(ValueError, match="Gross amount"):
            PaymentCreate(customer_id=customer.id, gross_amount="0", net_amount="10")


# =============================================================================
# ALLOCATIONS
# =============================================================================


class TestAllocate:
    """Tests for allocate(), remove_allocation() and the derived balances."""

    def test_split_payments_on_one_invoice(self, payment_service, company, customer, invoice, payment):
        """Invoice 200 paid 80 + 50 -> paid 130, outstanding 70."""
        second = payment_service.create(company.id, PaymentCreate(
            customer_id=customer.id, gross_amount="50", net_amount="50",
        ))

        payment_service.allocate(company.id, payment.id, invoice.id, Decimal("80"))
        payment_service.allocate(company.id, second.id, invoice.id, Decimal("50"))

        summary = payment_service.get_invoice_summary(company.id, invoice.id)
        assert summary.total_amount == Decimal("200.00")
        assert summary.paid_amount == Decimal("130.00")
        assert summary.outstanding_balance == Decimal("70.00")
        assert len(summary.allocations) == 2

        assert payment_service.require(company.id, payment.id).status == PaymentStatus.PARTIALLY_ALLOCATED
        assert payment_service.require(company.id, second.id).status == PaymentStatus.ALLOCATED

    def test_allocation_details(self, payment_service, company, invoice, payment):
        allocation = payment_service.allocate(company.id, payment.id, invoice.id, Decimal("80.004"))

        assert allocation.allocated_amount == Decimal("80.00")
        assert allocation.payment_number == "PAY-00001"
        assert allocation.invoice_number == invoice.invoice_number

    def test_over_remaining_leaves_no_row(self, payment_service, company, invoice, payment):
        payment_service.allocate(company.id, payment.id, invoice.id, Decimal("100"))

        with pytest.raises(OverAllocationError):
            payment_service.allocate(company.id, payment.id, invoice.id, Decimal("60"))

        assert len(payment_service.list_allocations(company.id, payment.id)) == 1
        assert payment_service.require(company.id, payment.id).allocated_amount == Decimal("100.00")

    def test_over_outstanding(self, payment_service, company, customer, invoice):
        big = payment_service.create(company.id, PaymentCreate(
            customer_id=customer.id, gross_amount="500", net_amount="500",
        ))

        with pytest.raises(OverAllocationError, match="outstanding"):
            payment_service.allocate(company.id, big.id, invoice.id, Decimal("201"))

    def test_draft_invoice_rejected(self, payment_service, sales_invoice_service, company, customer, payment):
        draft = sales_invoice_service.create(company.id, SalesInvoiceCreate(
            customer_id=customer.id, items=[_line()],
        ))

        with pytest.raises(InvalidStateError):
            payment_service.allocate(company.id, payment.id, draft.id, Decimal("10"))

    def test_other_customer_rejected(self, payment_service, sales_invoice_service, company, other_customer, payment):
        theirs = sales_invoice_service.create(company.id, SalesInvoiceCreate(
            customer_id=other_customer.id, status="Sent", items=[_line()],
        ))

        with pytest.raises(ValidationError):
            payment_service.allocate(company.id, payment.id, theirs.id, Decimal("10"))

    def test_remove_allocation(self, payment_service, company, invoice, payment):
        allocation = payment_service.allocate(company.id, payment.id, invoice.id, Decimal("150"))
        assert payment_service.require(company.id, payment.id).status == PaymentStatus.ALLOCATED

        status = payment_service.remove_allocation(company.id, allocation.id)

        assert status == PaymentStatus.UNALLOCATED
        assert payment_service.get_invoice_summary(company.id, invoice.id).paid_amount == Decimal("0")

    def test_remove_missing_allocation(self, payment_service, company):
        with pytest.raises(NotFoundError):
            payment_service.remove_allocation(company.id, uuid4())

    def test_unpaid_and_available_lists(self, payment_service, company, customer, invoice, payment):
        payment_service.allocate(company.id, payment.id, invoice.id, Decimal("150"))

        unpaid = payment_service.get_unpaid_invoices_for_customer(company.id, customer.id)
        available = payment_service.get_available_payments_for_customer(company.id, customer.id)

        assert [(i.id, i.outstanding_balance) for i in unpaid] == [(invoice.id, Decimal("50.00"))]
        assert available == []

    def test_deleting_invoice_frees_payment(self, payment_service, sales_invoice_service, company, invoice, payment):
        payment_service.allocate(company.id, payment.id, invoice.id, Decimal("150"))

        sales_invoice_service.delete(company.id, invoice.id)

        freed = payment_service.require(company.id, payment.id)
        assert freed.status == PaymentStatus.UNALLOCATED
        assert freed.allocated_amount == Decimal("0")


class TestUpdatePayment:
    """Tests for PaymentService.update()."""

    def test_gross_below_allocated_rejected(self, payment_service, company, invoice, payment):
        payment_service.allocate(company.id, payment.id, invoice.id, Decimal("120"))

        with pytest.raises(OverAllocationError):
            payment_service.update(company.id, payment.id, PaymentUpdate(gross_amount=Decimal("100")))

        assert payment_service.require(company.id, payment.id).gross_amount == Decimal("150.00")

    def test_raising_gross_rederives_status(self, payment_service, company, invoice, payment):
        payment_service.allocate(company.id, payment.id, invoice.id, Decimal("150"))

        updated = payment_service.update(company.id, payment.id, PaymentUpdate(gross_amount=Decimal("180")))

        assert updated.status == PaymentStatus.PARTIALLY_ALLOCATED
        assert updated.remaining_amount == Decimal("30.00")

    def test_delete_removes_allocations(self, payment_service, company, invoice, payment):
        payment_service.allocate(company.id, payment.id, invoice.id, Decimal("100"))

        assert payment_service.delete(company.id, payment.id) is True

        assert payment_service.get_by_id(company.id, payment.id) is None
        assert payment_service.get_invoice_summary(company.id, invoice.id).paid_amount == Decimal("0")
