"""
Sales invoice service.

Invoices are created from the invoice form or by converting an estimate.
Both paths go through insert(), which issues the INV number, recomputes
totals from the line items and writes header and items in the caller's
transaction.
"""

import logging
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, Transaction
from ledger.audit import AuditLogger, AuditAction, compute_changes
from ledger.calculator import billable_rows, compute_document_totals
from ledger.config import DEFAULT_CONFIG, LedgerConfig
from ledger.exceptions import InvalidStateError, NotFoundError, PersistenceError, ValidationError
from ledger.models import (
    DiscountType, DocumentType, ImportResult, InvoiceStatus, LineItem, MappedSalesInvoice,
    SalesInvoice, SalesInvoiceCreate, SalesInvoiceUpdate,
)
from ledger.services.company_service import CompanyService
from ledger.services.customer_service import CustomerService, escape_like
from ledger.services.document_writer import load_items, prepare_lines, replace_items, insert_items
from ledger.services.numbering_service import NumberingService
from ledger.services.payment_service import refresh_payment_status
from utils.timezone import now_utc, today_utc

logger = logging.getLogger(__name__)

_ITEM_TABLE = "sales_invoice_items"

_INVOICE_SELECT = """
    SELECT si.*, c.name AS customer_name
    FROM sales_invoices si
    JOIN customers c ON c.id = si.customer_id
"""


class SalesInvoiceService:
    """Service for sales invoice operations."""

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

    def insert(
        self,
        tx: Transaction,
        company_id: UUID,
        customer_id: UUID,
        lines: list[LineItem],
        *,
        invoice_date: date | None = None,
        due_date: date | None = None,
        status: InvoiceStatus = InvoiceStatus.DRAFT,
        notes: str | None = None,
        reference: str | None = None,
        discount_amount: Decimal = Decimal("0"),
        discount_type: DiscountType = DiscountType.AMOUNT,
        sales_tax_rate_id: UUID | None = None,
        estimate_id: UUID | None = None,
        invoice_number: str | None = None,
    ) -> tuple[UUID, str]:
        """
        Write a new invoice inside an open transaction.

        Lines are inserted as given, sort_order included. An explicit
        invoice_number (imports) is used as is and leaves the INV counter
        alone; otherwise the next number is issued.

        Returns:
            (invoice id, invoice number)
        """
        rate = self.companies.get_tax_rate_percent(company_id, sales_tax_rate_id, tx=tx)
        totals = compute_document_totals(lines, discount_amount, discount_type, rate)
        if invoice_number is None:
            invoice_number = self.numbering.issue(tx, company_id, DocumentType.SALES_INVOICE).number
        invoice_id = uuid4()
        now = now_utc()

        tx.execute(
            """
            INSERT INTO sales_invoices (
                id, company_id, customer_id, estimate_id,
                invoice_number, invoice_date, due_date, status,
                notes, reference,
                discount_amount, discount_type, sales_tax_rate_id,
                subtotal, total_tax, total_amount,
                created_at, updated_at
            ) VALUES (
                %s, %s, %s, %s,
                %s, %s, %s, %s,
                %s, %s,
                %s, %s, %s,
                %s, %s, %s,
                %s, %s
            )
            """,
            (
                invoice_id, company_id, customer_id, estimate_id,
                invoice_number, invoice_date or today_utc(), due_date, InvoiceStatus(status).value,
                notes, reference,
                discount_amount, DiscountType(discount_type).value, sales_tax_rate_id,
                totals.subtotal, totals.tax_amount, totals.grand_total,
                now, now
            )
        )
        insert_items(tx, _ITEM_TABLE, invoice_id, lines)

        self.audit.log_change(
            entity_type="sales_invoice",
            entity_id=invoice_id,
            action=AuditAction.CREATE,
            changes={"created": {
                "invoice_number": invoice_number,
                "customer_id": str(customer_id),
                "estimate_id": str(estimate_id) if estimate_id else None,
                "total_amount": str(totals.grand_total),
                "items": len(lines),
            }},
            company_id=company_id,
            tx=tx,
        )

        return invoice_id, invoice_number

    def create(self, company_id: UUID, data: SalesInvoiceCreate) -> SalesInvoice:
        """
        Create a sales invoice from the invoice form.

        Raises:
            ValidationError: No customer, or no billable line items
            NotFoundError: Customer or tax rate not in the company
        """
        self.companies.require_owned(company_id)
        if data.customer_id is None:
            raise ValidationError("Customer is required.")
        lines = prepare_lines(data.items)
        self.customers.require(company_id, data.customer_id)

        with self.postgres.transaction() as tx:
            invoice_id, number = self.insert(
                tx, company_id, data.customer_id, lines,
                invoice_date=data.invoice_date,
                due_date=data.due_date,
                status=data.status,
                notes=data.notes,
                reference=data.reference,
                discount_amount=data.discount_amount,
                discount_type=data.discount_type,
                sales_tax_rate_id=data.sales_tax_rate_id,
            )

        logger.info(f"Sales invoice {number} created for company {company_id}")
        return self.require(company_id, invoice_id)

    def get_by_id(self, company_id: UUID, invoice_id: UUID) -> SalesInvoice | None:
        """
        Get sales invoice with its line items.

        Returns:
            SalesInvoice if found in the company, None otherwise.
        """
        self.companies.require_owned(company_id)

        row = self.postgres.execute_single(
            _INVOICE_SELECT + " WHERE si.id = %s AND si.company_id = %s",
            (invoice_id, company_id)
        )
        if row is None:
            return None

        invoice = SalesInvoice.model_validate(row)
        invoice.items = load_items(self.postgres, _ITEM_TABLE, invoice.id)
        return invoice

    def require(self, company_id: UUID, invoice_id: UUID) -> SalesInvoice:
        """Like get_by_id, but raises NotFoundError when missing."""
        invoice = self.get_by_id(company_id, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Sales invoice {invoice_id} not found")
        return invoice

    def update(self, company_id: UUID, invoice_id: UUID, data: SalesInvoiceUpdate) -> SalesInvoice:
        """
        Save the full invoice form: header fields and a complete set of items.

        Raises:
            ValidationError: No customer, or no billable line items
            NotFoundError: Invoice, customer or tax rate not in the company
            InvalidStateError: New total below what has already been paid
        """
        current = self.require(company_id, invoice_id)
        if data.customer_id is None:
            raise ValidationError("Customer is required.")
        lines = prepare_lines(data.items)
        self.customers.require(company_id, data.customer_id)

        with self.postgres.transaction() as tx:
            locked = tx.execute_single(
                "SELECT id FROM sales_invoices WHERE id = %s AND company_id = %s FOR UPDATE",
                (invoice_id, company_id)
            )
            if locked is None:
                raise NotFoundError(f"Sales invoice {invoice_id} not found")

            rate = self.companies.get_tax_rate_percent(company_id, data.sales_tax_rate_id, tx=tx)
            totals = compute_document_totals(lines, data.discount_amount, data.discount_type, rate)

            paid = Decimal(tx.execute_scalar(
                "SELECT COALESCE(SUM(allocated_amount), 0) FROM customer_payment_allocations WHERE sales_invoice_id = %s",
                (invoice_id,)
            ))
            if totals.grand_total < paid:
                raise InvalidStateError(
                    f"Invoice total {totals.grand_total} is less than the {paid} already paid."
                )
            if paid > 0 and data.status not in (InvoiceStatus.FINAL, InvoiceStatus.SENT):
                raise InvalidStateError("An invoice with payments allocated cannot go back to Draft.")
            if paid > 0 and data.customer_id != current.customer_id:
                raise InvalidStateError("An invoice with payments allocated cannot change customer.")

            tx.execute(
                """
                UPDATE sales_invoices SET
                    customer_id = %s, invoice_date = %s, due_date = %s, status = %s,
                    notes = %s, reference = %s,
                    discount_amount = %s, discount_type = %s, sales_tax_rate_id = %s,
                    subtotal = %s, total_tax = %s, total_amount = %s,
                    updated_at = %s
                WHERE id = %s
                """,
                (
                    data.customer_id, data.invoice_date or current.invoice_date, data.due_date,
                    data.status.value, data.notes, data.reference,
                    data.discount_amount, data.discount_type.value, data.sales_tax_rate_id,
                    totals.subtotal, totals.tax_amount, totals.grand_total,
                    now_utc(), invoice_id
                )
            )
            replace_items(tx, _ITEM_TABLE, invoice_id, lines)

            updated = SalesInvoice.model_validate(tx.execute_single(
                _INVOICE_SELECT + " WHERE si.id = %s", (invoice_id,)
            ))
            changes = compute_changes(
                current.model_dump(mode="json", exclude={"items"}),
                updated.model_dump(mode="json", exclude={"items"}),
            )
            changes["items"] = {"old": len(current.items), "new": len(lines)}
            self.audit.log_change(
                entity_type="sales_invoice",
                entity_id=invoice_id,
                action=AuditAction.UPDATE,
                changes=changes,
                company_id=company_id,
                tx=tx,
            )

        return self.require(company_id, invoice_id)

    def delete(self, company_id: UUID, invoice_id: UUID) -> bool:
        """
        Delete an invoice with its items and allocations.

        Payments that were allocated to it get their status re-derived.

        Returns:
            True if deleted, False if not found
        """
        current = self.get_by_id(company_id, invoice_id)
        if current is None:
            return False

        with self.postgres.transaction() as tx:
            payment_rows = tx.execute(
                "SELECT DISTINCT payment_id FROM customer_payment_allocations WHERE sales_invoice_id = %s",
                (invoice_id,)
            )
            tx.execute(
                "DELETE FROM sales_invoices WHERE id = %s AND company_id = %s",
                (invoice_id, company_id)
            )
            for row in payment_rows:
                refresh_payment_status(tx, row["payment_id"])

            self.audit.log_change(
                entity_type="sales_invoice",
                entity_id=invoice_id,
                action=AuditAction.DELETE,
                changes={"deleted": current.model_dump(mode="json")},
                company_id=company_id,
                tx=tx,
            )

        return True

    def list_all(
        self,
        company_id: UUID,
        search: str | None = None,
        status: InvoiceStatus | None = None,
        customer_id: UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SalesInvoice]:
        """
        List invoices, newest first. Items are not loaded.

        Args:
            company_id: Owning company
            search: Matches invoice number or customer name
            status: Only invoices in this status
            customer_id: Only this customer's invoices
            limit: Maximum results (capped by config.max_page_size)
            offset: Offset for pagination
        """
        self.companies.require_owned(company_id)

        conditions = ["si.company_id = %s"]
        params: list = [company_id]
        if search and search.strip():
            pattern = f"%{escape_like(search.strip())}%"
            conditions.append("(si.invoice_number ILIKE %s OR c.name ILIKE %s)")
            params.extend([pattern, pattern])
        if status is not None:
            conditions.append("si.status = %s")
            params.append(InvoiceStatus(status).value)
        if customer_id is not None:
            conditions.append("si.customer_id = %s")
            params.append(customer_id)
        params.extend([min(limit, self.config.max_page_size), offset])

        rows = self.postgres.execute(
            _INVOICE_SELECT
            + f" WHERE {' AND '.join(conditions)}"
            + " ORDER BY si.invoice_date DESC, si.invoice_number DESC LIMIT %s OFFSET %s",
            tuple(params)
        )

        return [SalesInvoice.model_validate(row) for row in rows]

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    def _resolve_import_customer(self, company_id: UUID, mapped: MappedSalesInvoice) -> UUID | None:
        if mapped.customer_id is not None:
            customer = self.customers.get_by_id(company_id, mapped.customer_id)
        else:
            customer = self.customers.find_by_name(company_id, mapped.customer_name)
        return customer.id if customer else None

    def import_invoices(self, company_id: UUID, mapped: list[MappedSalesInvoice]) -> ImportResult:
        """
        Insert sales invoices mapped from a CSV file.

        Imported invoices keep their own numbers and do not advance the INV
        counter. An estimate number that matches one of the company's
        estimates links the invoice to it. Each batch runs in one
        transaction with a savepoint per invoice, so a duplicate number or
        a bad row skips only that invoice.

        Returns:
            ImportResult with counts and the numbers or names skipped
        """
        self.companies.require_owned(company_id)
        result = ImportResult()
        customer_ids: dict[str, UUID | None] = {}
        batch_size = self.config.import_batch_size

        for start in range(0, len(mapped), batch_size):
            with self.postgres.transaction() as tx:
                for inv in mapped[start:start + batch_size]:
                    number = inv.invoice_number.strip()
                    key = str(inv.customer_id or inv.customer_name.strip().lower())
                    if key not in customer_ids:
                        customer_ids[key] = self._resolve_import_customer(company_id, inv)
                    customer_id = customer_ids[key]
                    if customer_id is None:
                        logger.warning(f"Import skipped {number}: no customer '{inv.customer_name}'")
                        result.skipped_no_customer.append(inv.customer_name or number)
                        continue

                    estimate_id = None
                    if inv.estimate_number:
                        estimate_id = tx.execute_scalar(
                            "SELECT id FROM estimates WHERE company_id = %s AND estimate_number = %s",
                            (company_id, inv.estimate_number.strip())
                        )

                    tx.execute("SAVEPOINT import_invoice")
                    try:
                        self.insert(
                            tx, company_id, customer_id, billable_rows(inv.items),
                            invoice_date=inv.invoice_date,
                            due_date=inv.due_date,
                            status=inv.status,
                            notes=inv.notes,
                            reference=inv.reference,
                            discount_amount=inv.discount_amount,
                            discount_type=inv.discount_type,
                            sales_tax_rate_id=inv.sales_tax_rate_id,
                            estimate_id=estimate_id,
                            invoice_number=number,
                        )
                    except (PersistenceError, NotFoundError) as e:
                        tx.execute("ROLLBACK TO SAVEPOINT import_invoice")
                        if isinstance(e, PersistenceError) and e.is_unique_violation:
                            logger.warning(f"Import skipped {number}: number already exists")
                            result.skipped_duplicate_number.append(number)
                        else:
                            result.errors.append(f"{number}: {e}")
                        continue
                    tx.execute("RELEASE SAVEPOINT import_invoice")
                    result.imported += 1

        logger.info(
            f"Sales invoice import for company {company_id}: {result.imported} imported, "
            f"{result.skipped} skipped, {len(result.errors)} errors"
        )
        return result
