"""
Customer payments and their allocation to sales invoices.

A payment's gross amount may be spread over several invoices of the same
customer. Allocation rows are the only source of truth:

    invoice paid_amount       = sum of allocations targeting the invoice
    invoice outstanding       = max(0, total_amount - paid_amount)
    payment allocated_amount  = sum of the payment's allocations (<= gross)

The stored payment status is re-derived in the same transaction as every
change to its allocations.
"""

import logging
from decimal import Decimal
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, Transaction
from ledger.audit import AuditLogger, AuditAction, compute_changes
from ledger.config import DEFAULT_CONFIG, LedgerConfig
from ledger.exceptions import NotFoundError, OverAllocationError, ValidationError
from ledger.lifecycle import (
    PAYABLE_INVOICE_STATUSES, derive_payment_status, ensure_allocation, outstanding_balance,
)
from ledger.models import (
    AvailablePayment, DocumentType, InvoicePaymentSummary, Payment, PaymentAllocation,
    PaymentCreate, PaymentStatus, PaymentUpdate, UnpaidInvoice,
)
from ledger.money import ZERO, round_money
from ledger.services.company_service import CompanyService
from ledger.services.customer_service import CustomerService
from ledger.services.numbering_service import NumberingService
from utils.timezone import now_utc, today_utc

logger = logging.getLogger(__name__)

# Valid columns that can be updated
_UPDATABLE_COLUMNS = {
    "payment_date", "payment_received_date", "mode_of_payment",
    "gross_amount", "withholding_amount", "net_amount",
    "reference_payment_id", "notes",
}

_PAYMENT_SELECT = """
    SELECT p.*, c.name AS customer_name,
           COALESCE((SELECT SUM(a.allocated_amount)
                     FROM customer_payment_allocations a
                     WHERE a.payment_id = p.id), 0) AS allocated_amount
    FROM customer_payments p
    JOIN customers c ON c.id = p.customer_id
"""


def refresh_payment_status(tx: Transaction, payment_id: UUID) -> PaymentStatus:
    """
    Re-derive and store a payment's status from its allocation rows.

    Returns:
        The stored status
    """
    row = tx.execute_single(
        """
        SELECT p.gross_amount,
               COALESCE((SELECT SUM(allocated_amount)
                         FROM customer_payment_allocations
                         WHERE payment_id = p.id), 0) AS allocated_amount
        FROM customer_payments p
        WHERE p.id = %s
        """,
        (payment_id,)
    )
    if row is None:
        raise NotFoundError(f"Payment {payment_id} not found")

    status = derive_payment_status(row["gross_amount"], row["allocated_amount"])
    tx.execute(
        "UPDATE customer_payments SET status = %s, updated_at = %s WHERE id = %s",
        (status.value, now_utc(), payment_id)
    )
    return status


def _to_payment(row: dict) -> Payment:
    payment = Payment.model_validate(row)
    payment.status = derive_payment_status(payment.gross_amount, payment.allocated_amount)
    return payment


class PaymentService:
    """Service for customer payments and allocations."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        companies: CompanyService,
        customers: CustomerService,
        numbering: NumberingService,
        config: LedgerConfig = DEFAULT_CONFIG,
    ):
        self.postgres = postgres
        self.audit = audit
        self.companies = companies
        self.customers = customers
        self.numbering = numbering
        self.config = config

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def create(self, company_id: UUID, data: PaymentCreate) -> Payment:
        """
        Record a customer payment under the next PAY number.

        Args:
            company_id: Owning company
            data: Payment data (gross and net already validated positive)

        Returns:
            Created payment, status UNALLOCATED

        Raises:
            NotFoundError: If the customer is not in the company
        """
        self.companies.require_owned(company_id)
        self.customers.require(company_id, data.customer_id)
        payment_id = uuid4()
        now = now_utc()

        with self.postgres.transaction() as tx:
            issued = self.numbering.issue(tx, company_id, DocumentType.PAYMENT)

            tx.execute(
                """
                INSERT INTO customer_payments (
                    id, company_id, customer_id, payment_number,
                    payment_date, payment_received_date, mode_of_payment,
                    gross_amount, withholding_amount, net_amount,
                    reference_payment_id, notes, status,
                    created_at, updated_at
                ) VALUES (
                    %s, %s, %s, %s,
                    %s, %s, %s,
                    %s, %s, %s,
                    %s, %s, %s,
                    %s, %s
                )
                """,
                (
                    payment_id, company_id, data.customer_id, issued.number,
                    data.payment_date or today_utc(), data.payment_received_date,
                    data.mode_of_payment.value,
                    round_money(data.gross_amount), round_money(data.withholding_amount),
                    round_money(data.net_amount),
                    data.reference_payment_id, data.notes, PaymentStatus.UNALLOCATED.value,
                    now, now
                )
            )

            self.audit.log_change(
                entity_type="payment",
                entity_id=payment_id,
                action=AuditAction.CREATE,
                changes={"created": {
                    "payment_number": issued.number,
                    **data.model_dump(mode="json", exclude_none=True),
                }},
                company_id=company_id,
                tx=tx,
            )

        logger.info(f"Payment {issued.number} recorded for company {company_id}")
        return self.require(company_id, payment_id)

    def get_by_id(self, company_id: UUID, payment_id: UUID) -> Payment | None:
        """
        Get payment with its allocated amount and derived status.

        Returns:
            Payment if found in the company, None otherwise.
        """
        self.companies.require_owned(company_id)

        row = self.postgres.execute_single(
            _PAYMENT_SELECT + " WHERE p.id = %s AND p.company_id = %s",
            (payment_id, company_id)
        )

        return _to_payment(row) if row else None

    def require(self, company_id: UUID, payment_id: UUID) -> Payment:
        """Like get_by_id, but raises NotFoundError when missing."""
        payment = self.get_by_id(company_id, payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def list_all(
        self,
        company_id: UUID,
        customer_id: UUID | None = None,
        status: PaymentStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Payment]:
        """
        List payments, newest first.

        Args:
            company_id: Owning company
            customer_id: Only this customer's payments
            status: Only payments in this status
            limit: Maximum results (capped by config.max_page_size)
            offset: Offset for pagination
        """
        self.companies.require_owned(company_id)

        conditions = ["p.company_id = %s"]
        params: list = [company_id]
        if customer_id is not None:
            conditions.append("p.customer_id = %s")
            params.append(customer_id)
        if status is not None:
            conditions.append("p.status = %s")
            params.append(PaymentStatus(status).value)
        params.extend([min(limit, self.config.max_page_size), offset])

        rows = self.postgres.execute(
            _PAYMENT_SELECT
            + f" WHERE {' AND '.join(conditions)}"
            + " ORDER BY p.payment_date DESC, p.payment_number DESC LIMIT %s OFFSET %s",
            tuple(params)
        )

        return [_to_payment(row) for row in rows]

    def update(self, company_id: UUID, payment_id: UUID, data: PaymentUpdate) -> Payment:
        """
        Update payment fields (only non-None fields are changed).

        Raises:
            NotFoundError: If payment not found
            OverAllocationError: If gross would drop below what is already allocated
        """
        current = self.require(company_id, payment_id)

        updates = data.model_dump(mode="json", exclude_none=True)
        for field in updates:
            if field not in _UPDATABLE_COLUMNS:
                logger.warning(
                    f"Attempted to update unknown field '{field}' on payment {payment_id}"
                )

        valid_updates = {k: v for k, v in updates.items() if k in _UPDATABLE_COLUMNS}
        if not valid_updates:
            return current

        with self.postgres.transaction() as tx:
            locked = tx.execute_single(
                "SELECT id FROM customer_payments WHERE id = %s AND company_id = %s FOR UPDATE",
                (payment_id, company_id)
            )
            if locked is None:
                raise NotFoundError(f"Payment {payment_id} not found")

            if data.gross_amount is not None:
                allocated = tx.execute_scalar(
                    """
                    SELECT COALESCE(SUM(allocated_amount), 0)
                    FROM customer_payment_allocations WHERE payment_id = %s
                    """,
                    (payment_id,)
                )
                if round_money(data.gross_amount) < Decimal(allocated):
                    raise OverAllocationError(
                        f"Gross amount cannot be less than the {allocated} already allocated."
                    )

            set_parts = []
            params = []
            for field, value in valid_updates.items():
                set_parts.append(f"{field} = %s")
                params.append(value)

            set_parts.append("updated_at = %s")
            params.extend([now_utc(), payment_id])

            tx.execute(
                f"UPDATE customer_payments SET {', '.join(set_parts)} WHERE id = %s",
                tuple(params)
            )
            refresh_payment_status(tx, payment_id)

            updated = _to_payment(tx.execute_single(
                _PAYMENT_SELECT + " WHERE p.id = %s AND p.company_id = %s",
                (payment_id, company_id)
            ))

            changes = compute_changes(
                current.model_dump(mode="json"),
                updated.model_dump(mode="json")
            )
            if changes:
                self.audit.log_change(
                    entity_type="payment",
                    entity_id=payment_id,
                    action=AuditAction.UPDATE,
                    changes=changes,
                    company_id=company_id,
                    tx=tx,
                )

        return updated

    def delete(self, company_id: UUID, payment_id: UUID) -> bool:
        """
        Delete a payment and its allocations.

        Returns:
            True if deleted, False if not found
        """
        current = self.get_by_id(company_id, payment_id)
        if current is None:
            return False

        with self.postgres.transaction() as tx:
            tx.execute(
                "DELETE FROM customer_payments WHERE id = %s AND company_id = %s",
                (payment_id, company_id)
            )
            self.audit.log_change(
                entity_type="payment",
                entity_id=payment_id,
                action=AuditAction.DELETE,
                changes={"deleted": current.model_dump(mode="json")},
                company_id=company_id,
                tx=tx,
            )

        return True

    # -------------------------------------------------------------------------
    # Allocations
    # -------------------------------------------------------------------------

    def allocate(
        self,
        company_id: UUID,
        payment_id: UUID,
        invoice_id: UUID,
        amount: Decimal,
    ) -> PaymentAllocation:
        """
        Apply part of a payment to a sales invoice.

        The payment and invoice rows are locked for the duration, so two
        concurrent allocations cannot both pass the remaining/outstanding
        checks. The allocation row and the new payment status commit
        together.

        Args:
            company_id: Owning company
            payment_id: Payment to draw from
            invoice_id: Sales invoice to pay
            amount: Amount to allocate (rounded to cents)

        Returns:
            The created allocation

        Raises:
            ValidationError: Amount not positive, or invoice of another customer
            NotFoundError: Payment or invoice not in the company
            InvalidStateError: Invoice is not Final or Sent
            OverAllocationError: Amount exceeds payment remaining or invoice outstanding
        """
        self.companies.require_owned(company_id)
        amount = round_money(amount)
        if amount <= ZERO:
            raise ValidationError("Allocation amount must be greater than 0.")

        with self.postgres.transaction() as tx:
            payment = tx.execute_single(
                """
                SELECT id, customer_id, payment_number, gross_amount
                FROM customer_payments
                WHERE id = %s AND company_id = %s
                FOR UPDATE
                """,
                (payment_id, company_id)
            )
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")

            invoice = tx.execute_single(
                """
                SELECT id, customer_id, invoice_number, status, total_amount
                FROM sales_invoices
                WHERE id = %s AND company_id = %s
                FOR UPDATE
                """,
                (invoice_id, company_id)
            )
            if invoice is None:
                raise NotFoundError(f"Sales invoice {invoice_id} not found")

            if invoice["customer_id"] != payment["customer_id"]:
                raise ValidationError("Invoice belongs to a different customer than the payment.")

            allocated = Decimal(tx.execute_scalar(
                "SELECT COALESCE(SUM(allocated_amount), 0) FROM customer_payment_allocations WHERE payment_id = %s",
                (payment_id,)
            ))
            paid = Decimal(tx.execute_scalar(
                "SELECT COALESCE(SUM(allocated_amount), 0) FROM customer_payment_allocations WHERE sales_invoice_id = %s",
                (invoice_id,)
            ))

            ensure_allocation(
                amount,
                invoice["status"],
                payment_remaining=Decimal(payment["gross_amount"]) - allocated,
                invoice_outstanding=outstanding_balance(invoice["total_amount"], paid),
            )

            row = tx.execute_returning(
                """
                INSERT INTO customer_payment_allocations (id, payment_id, sales_invoice_id, allocated_amount, created_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (uuid4(), payment_id, invoice_id, amount, now_utc())
            )[0]

            status = refresh_payment_status(tx, payment_id)

            self.audit.log_change(
                entity_type="payment",
                entity_id=payment_id,
                action=AuditAction.ALLOCATE,
                changes={
                    "allocation_id": str(row["id"]),
                    "sales_invoice_id": str(invoice_id),
                    "allocated_amount": str(amount),
                    "status": status.value,
                },
                company_id=company_id,
                tx=tx,
            )

        logger.info(
            f"Allocated {amount} from payment {payment['payment_number']} "
            f"to invoice {invoice['invoice_number']}"
        )
        return PaymentAllocation.model_validate({
            **row,
            "payment_number": payment["payment_number"],
            "invoice_number": invoice["invoice_number"],
        })

    def remove_allocation(self, company_id: UUID, allocation_id: UUID) -> PaymentStatus:
        """
        Remove an allocation and re-derive the payment's status.

        Returns:
            The payment's new status

        Raises:
            NotFoundError: If the allocation is not in the company
        """
        self.companies.require_owned(company_id)

        with self.postgres.transaction() as tx:
            allocation = tx.execute_single(
                """
                SELECT a.*
                FROM customer_payment_allocations a
                JOIN customer_payments p ON p.id = a.payment_id
                WHERE a.id = %s AND p.company_id = %s
                """,
                (allocation_id, company_id)
            )
            if allocation is None:
                raise NotFoundError(f"Allocation {allocation_id} not found")

            payment_id = allocation["payment_id"]
            tx.execute(
                "SELECT id FROM customer_payments WHERE id = %s FOR UPDATE",
                (payment_id,)
            )
            tx.execute(
                "DELETE FROM customer_payment_allocations WHERE id = %s",
                (allocation_id,)
            )
            status = refresh_payment_status(tx, payment_id)

            self.audit.log_change(
                entity_type="payment",
                entity_id=payment_id,
                action=AuditAction.DEALLOCATE,
                changes={
                    "allocation_id": str(allocation_id),
                    "sales_invoice_id": str(allocation["sales_invoice_id"]),
                    "allocated_amount": str(allocation["allocated_amount"]),
                    "status": status.value,
                },
                company_id=company_id,
                tx=tx,
            )

        return status

    def list_allocations(self, company_id: UUID, payment_id: UUID) -> list[PaymentAllocation]:
        """Allocations of one payment, oldest first, with invoice numbers."""
        self.companies.require_owned(company_id)

        rows = self.postgres.execute(
            """
            SELECT a.*, si.invoice_number, p.payment_number, p.payment_date
            FROM customer_payment_allocations a
            JOIN customer_payments p ON p.id = a.payment_id
            JOIN sales_invoices si ON si.id = a.sales_invoice_id
            WHERE a.payment_id = %s AND p.company_id = %s
            ORDER BY a.created_at
            """,
            (payment_id, company_id)
        )

        return [PaymentAllocation.model_validate(row) for row in rows]

    def get_invoice_summary(self, company_id: UUID, invoice_id: UUID) -> InvoicePaymentSummary:
        """
        Payment position of a sales invoice, derived from allocation rows.

        Raises:
            NotFoundError: If the invoice is not in the company
        """
        self.companies.require_owned(company_id)

        invoice = self.postgres.execute_single(
            "SELECT id, total_amount FROM sales_invoices WHERE id = %s AND company_id = %s",
            (invoice_id, company_id)
        )
        if invoice is None:
            raise NotFoundError(f"Sales invoice {invoice_id} not found")

        rows = self.postgres.execute(
            """
            SELECT a.*, p.payment_number, p.payment_date, si.invoice_number
            FROM customer_payment_allocations a
            JOIN customer_payments p ON p.id = a.payment_id
            JOIN sales_invoices si ON si.id = a.sales_invoice_id
            WHERE a.sales_invoice_id = %s
            ORDER BY p.payment_date, a.created_at
            """,
            (invoice_id,)
        )
        allocations = [PaymentAllocation.model_validate(row) for row in rows]

        total = Decimal(invoice["total_amount"])
        paid = sum((a.allocated_amount for a in allocations), ZERO)

        return InvoicePaymentSummary(
            invoice_id=invoice_id,
            total_amount=total,
            paid_amount=paid,
            outstanding_balance=outstanding_balance(total, paid),
            allocations=allocations,
        )

    def get_unpaid_invoices_for_customer(self, company_id: UUID, customer_id: UUID) -> list[UnpaidInvoice]:
        """Final or Sent invoices of a customer with money still owed, oldest first."""
        self.companies.require_owned(company_id)

        rows = self.postgres.execute(
            """
            SELECT si.id, si.invoice_number, si.invoice_date, si.status, si.total_amount,
                   COALESCE(SUM(a.allocated_amount), 0) AS paid_amount
            FROM sales_invoices si
            LEFT JOIN customer_payment_allocations a ON a.sales_invoice_id = si.id
            WHERE si.company_id = %s AND si.customer_id = %s AND si.status = ANY(%s)
            GROUP BY si.id
            ORDER BY si.invoice_date, si.invoice_number
            """,
            (company_id, customer_id, [s.value for s in PAYABLE_INVOICE_STATUSES])
        )

        unpaid = []
        for row in rows:
            balance = outstanding_balance(row["total_amount"], row["paid_amount"])
            if balance > ZERO:
                unpaid.append(UnpaidInvoice.model_validate({**row, "outstanding_balance": balance}))
        return unpaid

    def get_available_payments_for_customer(self, company_id: UUID, customer_id: UUID) -> list[AvailablePayment]:
        """Payments of a customer with an unallocated remainder, oldest first."""
        self.companies.require_owned(company_id)

        rows = self.postgres.execute(
            """
            SELECT p.id, p.payment_number, p.payment_date, p.gross_amount,
                   COALESCE(SUM(a.allocated_amount), 0) AS allocated_amount
            FROM customer_payments p
            LEFT JOIN customer_payment_allocations a ON a.payment_id = p.id
            WHERE p.company_id = %s AND p.customer_id = %s
            GROUP BY p.id
            ORDER BY p.payment_date, p.payment_number
            """,
            (company_id, customer_id)
        )

        available = []
        for row in rows:
            remaining = Decimal(row["gross_amount"]) - Decimal(row["allocated_amount"])
            if remaining > ZERO:
                available.append(AvailablePayment.model_validate({**row, "remaining_amount": remaining}))
        return available
