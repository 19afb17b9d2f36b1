"""Purchase invoice service. Bills received from vendors, numbered from the PUR sequence."""

import logging
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient
from ledger.audit import AuditLogger, AuditAction, compute_changes
from ledger.calculator import compute_document_totals
from ledger.config import DEFAULT_CONFIG, LedgerConfig
from ledger.exceptions import NotFoundError, ValidationError
from ledger.models import (
    DocumentType, InvoiceStatus, PurchaseInvoice, PurchaseInvoiceCreate, PurchaseInvoiceUpdate,
)
from ledger.services.company_service import CompanyService
from ledger.services.customer_service import escape_like
from ledger.services.document_writer import insert_items, load_items, prepare_lines, replace_items
from ledger.services.numbering_service import NumberingService
from ledger.services.vendor_service import VendorService
from utils.timezone import now_utc, today_utc

logger = logging.getLogger(__name__)

_ITEM_TABLE = "purchase_invoice_items"

_INVOICE_SELECT = """
    SELECT pi.*, v.name AS vendor_name
    FROM purchase_invoices pi
    JOIN vendors v ON v.id = pi.vendor_id
"""


class PurchaseInvoiceService:
    """Service for purchase invoice operations."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        companies: CompanyService,
        vendors: VendorService,
        numbering: NumberingService,
        config: LedgerConfig = DEFAULT_CONFIG,
    ):
        self.postgres = postgres
        self.audit = audit
        self.companies = companies
        self.vendors = vendors
        self.numbering = numbering
        self.config = config

    def create(self, company_id: UUID, data: PurchaseInvoiceCreate) -> PurchaseInvoice:
        """
        Record a vendor invoice.

        Raises:
            ValidationError: No vendor, or no billable line items
            NotFoundError: Vendor or tax rate not in the company
        """
        self.companies.require_owned(company_id)
        if data.vendor_id is None:
            raise ValidationError("Vendor is required.")
        lines = prepare_lines(data.items)
        self.vendors.require(company_id, data.vendor_id)
        invoice_id = uuid4()
        now = now_utc()

        with self.postgres.transaction() as tx:
            rate = self.companies.get_tax_rate_percent(company_id, data.sales_tax_rate_id, tx=tx)
            totals = compute_document_totals(lines, data.discount_amount, data.discount_type, rate)
            issued = self.numbering.issue(tx, company_id, DocumentType.PURCHASE_INVOICE)

            tx.execute(
                """
                INSERT INTO purchase_invoices (
                    id, company_id, vendor_id,
                    invoice_number, invoice_date, due_date, status,
                    notes, reference,
                    discount_amount, discount_type, sales_tax_rate_id,
                    subtotal, total_tax, total_amount,
                    created_at, updated_at
                ) VALUES (
                    %s, %s, %s,
                    %s, %s, %s, %s,
                    %s, %s,
                    %s, %s, %s,
                    %s, %s, %s,
                    %s, %s
                )
                """,
                (
                    invoice_id, company_id, data.vendor_id,
                    issued.number, data.invoice_date or today_utc(), data.due_date, data.status.value,
                    data.notes, data.reference,
                    data.discount_amount, data.discount_type.value, data.sales_tax_rate_id,
                    totals.subtotal, totals.tax_amount, totals.grand_total,
                    now, now
                )
            )
            insert_items(tx, _ITEM_TABLE, invoice_id, lines)

            self.audit.log_change(
                entity_type="purchase_invoice",
                entity_id=invoice_id,
                action=AuditAction.CREATE,
                changes={"created": {
                    "invoice_number": issued.number,
                    **data.model_dump(mode="json", exclude_none=True, exclude={"items"}),
                    "total_amount": str(totals.grand_total),
                }},
                company_id=company_id,
                tx=tx,
            )

        logger.info(f"Purchase invoice {issued.number} created for company {company_id}")
        return self.require(company_id, invoice_id)

    def get_by_id(self, company_id: UUID, invoice_id: UUID) -> PurchaseInvoice | None:
        """Get purchase invoice with its line items, or None."""
        self.companies.require_owned(company_id)

        row = self.postgres.execute_single(
            _INVOICE_SELECT + " WHERE pi.id = %s AND pi.company_id = %s",
            (invoice_id, company_id)
        )
        if row is None:
            return None

        invoice = PurchaseInvoice.model_validate(row)
        invoice.items = load_items(self.postgres, _ITEM_TABLE, invoice.id)
        return invoice

    def require(self, company_id: UUID, invoice_id: UUID) -> PurchaseInvoice:
        """Like get_by_id, but raises NotFoundError when missing."""
        invoice = self.get_by_id(company_id, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Purchase invoice {invoice_id} not found")
        return invoice

    def update(self, company_id: UUID, invoice_id: UUID, data: PurchaseInvoiceUpdate) -> PurchaseInvoice:
        """
        Save the full invoice form; items are replaced entirely.

        Raises:
            ValidationError: No vendor, or no billable line items
            NotFoundError: Invoice, vendor or tax rate not in the company
        """
        current = self.require(company_id, invoice_id)
        if data.vendor_id is None:
            raise ValidationError("Vendor is required.")
        lines = prepare_lines(data.items)
        self.vendors.require(company_id, data.vendor_id)

        with self.postgres.transaction() as tx:
            rate = self.companies.get_tax_rate_percent(company_id, data.sales_tax_rate_id, tx=tx)
            totals = compute_document_totals(lines, data.discount_amount, data.discount_type, rate)

            tx.execute(
                """
                UPDATE purchase_invoices SET
                    vendor_id = %s, invoice_date = %s, due_date = %s, status = %s,
                    notes = %s, reference = %s,
                    discount_amount = %s, discount_type = %s, sales_tax_rate_id = %s,
                    subtotal = %s, total_tax = %s, total_amount = %s,
                    updated_at = %s
                WHERE id = %s AND company_id = %s
                """,
                (
                    data.vendor_id, data.invoice_date or current.invoice_date, data.due_date,
                    data.status.value, data.notes, data.reference,
                    data.discount_amount, data.discount_type.value, data.sales_tax_rate_id,
                    totals.subtotal, totals.tax_amount, totals.grand_total,
                    now_utc(), invoice_id, company_id
                )
            )
            replace_items(tx, _ITEM_TABLE, invoice_id, lines)

            updated = PurchaseInvoice.model_validate(tx.execute_single(
                _INVOICE_SELECT + " WHERE pi.id = %s", (invoice_id,)
            ))
            changes = compute_changes(
                current.model_dump(mode="json", exclude={"items"}),
                updated.model_dump(mode="json", exclude={"items"}),
            )
            changes["items"] = {"old": len(current.items), "new": len(lines)}
            self.audit.log_change(
                entity_type="purchase_invoice",
                entity_id=invoice_id,
                action=AuditAction.UPDATE,
                changes=changes,
                company_id=company_id,
                tx=tx,
            )

        return self.require(company_id, invoice_id)

    def delete(self, company_id: UUID, invoice_id: UUID) -> bool:
        """
        Delete a purchase invoice and its items.

        Returns:
            True if deleted, False if not found
        """
        current = self.get_by_id(company_id, invoice_id)
        if current is None:
            return False

        with self.postgres.transaction() as tx:
            tx.execute(
                "DELETE FROM purchase_invoices WHERE id = %s AND company_id = %s",
                (invoice_id, company_id)
            )
            self.audit.log_change(
                entity_type="purchase_invoice",
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
        vendor_id: UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PurchaseInvoice]:
        """List purchase invoices, newest first, at most config.max_page_size. Items are not loaded."""
        self.companies.require_owned(company_id)

        conditions = ["pi.company_id = %s"]
        params: list = [company_id]
        if search and search.strip():
            pattern = f"%{escape_like(search.strip())}%"
            conditions.append("(pi.invoice_number ILIKE %s OR v.name ILIKE %s OR pi.reference ILIKE %s)")
            params.extend([pattern, pattern, pattern])
        if status is not None:
            conditions.append("pi.status = %s")
            params.append(InvoiceStatus(status).value)
        if vendor_id is not None:
            conditions.append("pi.vendor_id = %s")
            params.append(vendor_id)
        params.extend([min(limit, self.config.max_page_size), offset])

        rows = self.postgres.execute(
            _INVOICE_SELECT
            + f" WHERE {' AND '.join(conditions)}"
            + " ORDER BY pi.invoice_date DESC, pi.invoice_number DESC LIMIT %s OFFSET %s",
            tuple(params)
        )

        return [PurchaseInvoice.model_validate(row) for row in rows]
