"""
Estimate service: quotes, their lifecycle, and conversion to sales invoices.

Lifecycle:
    Draft <-> Sent <-> Accepted / Declined / Expired     (user-set)
    any of the above except Declined/Expired -> Converted (convert_to_invoice only)

Converted is terminal. A Sent estimate past valid_until is reported with
the effective status Expired and can no longer be converted.
"""

import logging
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, Transaction
from ledger.audit import AuditLogger, AuditAction, compute_changes
from ledger.calculator import billable_rows, compute_document_totals
from ledger.config import DEFAULT_CONFIG, LedgerConfig
from ledger.csv_mapping import normalize_estimate_status
from ledger.exceptions import InvalidStateError, NotFoundError, PersistenceError, ValidationError
from ledger.lifecycle import effective_estimate_status, ensure_convertible, ensure_status_change
from ledger.models import (
    DiscountType, DocumentType, Estimate, EstimateCreate, EstimateStatus, EstimateUpdate,
    ImportResult, InvoiceStatus, LineItem, MappedEstimate, SalesInvoice,
)
from ledger.services.company_service import CompanyService
from ledger.services.customer_service import CustomerService, escape_like
from ledger.services.document_writer import insert_items, load_items, prepare_lines, replace_items
from ledger.services.numbering_service import NumberingService
from ledger.services.sales_invoice_service import SalesInvoiceService
from utils.timezone import now_utc, today_utc

logger = logging.getLogger(__name__)

_ITEM_TABLE = "estimate_items"

_ESTIMATE_SELECT = """
    SELECT e.*, c.name AS customer_name
    FROM estimates e
    JOIN customers c ON c.id = e.customer_id
"""

# Header fields copied when cloning
_CLONED_FIELDS = (
    "valid_until", "notes", "project_name", "subject", "payment_terms",
    "delivery_time_amount", "delivery_time_unit",
    "discount_amount", "discount_type", "sales_tax_rate_id",
)


class EstimateService:
    """Service for estimate operations."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        companies: CompanyService,
        customers: CustomerService,
        numbering: NumberingService,
        sales_invoices: SalesInvoiceService,
        config: LedgerConfig = DEFAULT_CONFIG,
    ):
        self.postgres = postgres
        self.audit = audit
        self.companies = companies
        self.customers = customers
        self.numbering = numbering
        self.sales_invoices = sales_invoices
        self.config = config

    def _insert(
        self,
        tx: Transaction,
        company_id: UUID,
        customer_id: UUID,
        estimate_number: str,
        status: EstimateStatus,
        lines: list[LineItem],
        fields: dict,
    ) -> UUID:
        """Write header and items of a new estimate; totals computed here."""
        rate = self.companies.get_tax_rate_percent(company_id, fields.get("sales_tax_rate_id"), tx=tx)
        discount_amount = fields.get("discount_amount") or Decimal("0")
        discount_type = DiscountType.coerce(fields.get("discount_type"))
        totals = compute_document_totals(lines, discount_amount, discount_type, rate)
        estimate_id = uuid4()
        now = now_utc()
        unit = fields.get("delivery_time_unit")

        tx.execute(
            """
            INSERT INTO estimates (
                id, company_id, customer_id, estimate_number, estimate_date, status,
                valid_until, notes, project_name, subject, payment_terms,
                delivery_time_amount, delivery_time_unit,
                discount_amount, discount_type, sales_tax_rate_id,
                subtotal, total_tax, total_amount,
                created_at, updated_at
            ) VALUES (
                %s, %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s,
                %s, %s,
                %s, %s, %s,
                %s, %s, %s,
                %s, %s
            )
            """,
            (
                estimate_id, company_id, customer_id, estimate_number,
                fields.get("estimate_date") or today_utc(), EstimateStatus(status).value,
                fields.get("valid_until"), fields.get("notes"), fields.get("project_name"),
                fields.get("subject"), fields.get("payment_terms"),
                fields.get("delivery_time_amount"), unit.value if hasattr(unit, "value") else unit,
                discount_amount, discount_type.value, fields.get("sales_tax_rate_id"),
                totals.subtotal, totals.tax_amount, totals.grand_total,
                now, now
            )
        )
        insert_items(tx, _ITEM_TABLE, estimate_id, lines)

        self.audit.log_change(
            entity_type="estimate",
            entity_id=estimate_id,
            action=AuditAction.CREATE,
            changes={"created": {
                "estimate_number": estimate_number,
                "customer_id": str(customer_id),
                "status": EstimateStatus(status).value,
                "total_amount": str(totals.grand_total),
                "items": len(lines),
            }},
            company_id=company_id,
            tx=tx,
        )

        return estimate_id

    def _with_effective_status(self, estimate: Estimate, today: date) -> Estimate:
        estimate.effective_status = effective_estimate_status(estimate.status, estimate.valid_until, today)
        return estimate

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create(self, company_id: UUID, data: EstimateCreate) -> Estimate:
        """
        Create an estimate under the next EST number.

        Args:
            company_id: Owning company
            data: Estimate form data; items are recomputed and unbillable rows dropped

        Returns:
            Created estimate with items

        Raises:
            ValidationError: No customer, or no billable line items
            InvalidStateError: Status CONVERTED requested
            NotFoundError: Customer or tax rate not in the company
        """
        self.companies.require_owned(company_id)
        if data.customer_id is None:
            raise ValidationError("Customer is required.")
        lines = prepare_lines(data.items)
        if data.status == EstimateStatus.CONVERTED:
            raise InvalidStateError("Use convert to invoice to mark an estimate as converted.")
        self.customers.require(company_id, data.customer_id)

        with self.postgres.transaction() as tx:
            issued = self.numbering.issue(tx, company_id, DocumentType.ESTIMATE)
            estimate_id = self._insert(
                tx, company_id, data.customer_id, issued.number, data.status, lines,
                data.model_dump(exclude={"items", "customer_id", "status"}),
            )

        logger.info(f"Estimate {issued.number} created for company {company_id}")
        return self.require(company_id, estimate_id)

    def get_by_id(self, company_id: UUID, estimate_id: UUID) -> Estimate | None:
        """
        Get estimate with items, customer name and effective status.

        Returns:
            Estimate if found in the company, None otherwise.
        """
        self.companies.require_owned(company_id)

        row = self.postgres.execute_single(
            _ESTIMATE_SELECT + " WHERE e.id = %s AND e.company_id = %s",
            (estimate_id, company_id)
        )
        if row is None:
            return None

        estimate = Estimate.model_validate(row)
        estimate.items = load_items(self.postgres, _ITEM_TABLE, estimate.id)
        return self._with_effective_status(estimate, today_utc())

    def require(self, company_id: UUID, estimate_id: UUID) -> Estimate:
        """Like get_by_id, but raises NotFoundError when missing."""
        estimate = self.get_by_id(company_id, estimate_id)
        if estimate is None:
            raise NotFoundError(f"Estimate {estimate_id} not found")
        return estimate

    def update(self, company_id: UUID, estimate_id: UUID, data: EstimateUpdate) -> Estimate:
        """
        Save the full estimate form. Items are replaced entirely.

        A converted estimate stays CONVERTED whatever status is submitted.

        Raises:
            ValidationError: No customer, or no billable line items
            InvalidStateError: Status CONVERTED requested on an unconverted estimate
            NotFoundError: Estimate, customer or tax rate not in the company
        """
        current = self.require(company_id, estimate_id)
        if data.customer_id is None:
            raise ValidationError("Customer is required.")
        lines = prepare_lines(data.items)

        if current.is_converted:
            status = EstimateStatus.CONVERTED
        elif data.status == EstimateStatus.CONVERTED:
            raise InvalidStateError("Use convert to invoice to mark an estimate as converted.")
        else:
            status = data.status
        self.customers.require(company_id, data.customer_id)

        with self.postgres.transaction() as tx:
            locked = tx.execute_single(
                "SELECT status FROM estimates WHERE id = %s AND company_id = %s FOR UPDATE",
                (estimate_id, company_id)
            )
            if locked is None:
                raise NotFoundError(f"Estimate {estimate_id} not found")
            if locked["status"] == EstimateStatus.CONVERTED.value:
                status = EstimateStatus.CONVERTED

            rate = self.companies.get_tax_rate_percent(company_id, data.sales_tax_rate_id, tx=tx)
            totals = compute_document_totals(lines, data.discount_amount, data.discount_type, rate)

            tx.execute(
                """
                UPDATE estimates SET
                    customer_id = %s, estimate_date = %s, status = %s, valid_until = %s,
                    notes = %s, project_name = %s, subject = %s, payment_terms = %s,
                    delivery_time_amount = %s, delivery_time_unit = %s,
                    discount_amount = %s, discount_type = %s, sales_tax_rate_id = %s,
                    subtotal = %s, total_tax = %s, total_amount = %s,
                    updated_at = %s
                WHERE id = %s
                """,
                (
                    data.customer_id, data.estimate_date or current.estimate_date, status.value,
                    data.valid_until, data.notes, data.project_name, data.subject, data.payment_terms,
                    data.delivery_time_amount,
                    data.delivery_time_unit.value if data.delivery_time_unit else None,
                    data.discount_amount, data.discount_type.value, data.sales_tax_rate_id,
                    totals.subtotal, totals.tax_amount, totals.grand_total,
                    now_utc(), estimate_id
                )
            )
            replace_items(tx, _ITEM_TABLE, estimate_id, lines)

            updated = Estimate.model_validate(tx.execute_single(
                _ESTIMATE_SELECT + " WHERE e.id = %s", (estimate_id,)
            ))
            changes = compute_changes(
                current.model_dump(mode="json", exclude={"items", "effective_status"}),
                updated.model_dump(mode="json", exclude={"items", "effective_status"}),
            )
            changes["items"] = {"old": len(current.items), "new": len(lines)}
            self.audit.log_change(
                entity_type="estimate",
                entity_id=estimate_id,
                action=AuditAction.UPDATE,
                changes=changes,
                company_id=company_id,
                tx=tx,
            )

        return self.require(company_id, estimate_id)

    def delete(self, company_id: UUID, estimate_id: UUID) -> bool:
        """
        Delete an estimate and its items.

        An invoice converted from it keeps existing; its estimate link is cleared.

        Returns:
            True if deleted, False if not found
        """
        current = self.get_by_id(company_id, estimate_id)
        if current is None:
            return False

        with self.postgres.transaction() as tx:
            tx.execute(
                "DELETE FROM estimates WHERE id = %s AND company_id = %s",
                (estimate_id, company_id)
            )
            self.audit.log_change(
                entity_type="estimate",
                entity_id=estimate_id,
                action=AuditAction.DELETE,
                changes={"deleted": current.model_dump(mode="json", exclude={"effective_status"})},
                company_id=company_id,
                tx=tx,
            )

        return True

    def delete_many(self, company_id: UUID, estimate_ids: list[UUID]) -> int:
        """
        Delete several estimates, a chunk of ids per statement.

        Ids not in the company are ignored.

        Returns:
            Number of estimates deleted
        """
        self.companies.require_owned(company_id)
        ids = list(dict.fromkeys(estimate_ids))
        chunk_size = self.config.delete_chunk_size
        deleted = 0

        with self.postgres.transaction() as tx:
            for start in range(0, len(ids), chunk_size):
                chunk = ids[start:start + chunk_size]
                rows = tx.execute_returning(
                    """
                    DELETE FROM estimates
                    WHERE company_id = %s AND id = ANY(%s::uuid[])
                    RETURNING id, estimate_number
                    """,
                    (company_id, chunk)
                )
                for row in rows:
                    self.audit.log_change(
                        entity_type="estimate",
                        entity_id=row["id"],
                        action=AuditAction.DELETE,
                        changes={"deleted": {"estimate_number": row["estimate_number"], "bulk": True}},
                        company_id=company_id,
                        tx=tx,
                    )
                deleted += len(rows)

        logger.info(f"Deleted {deleted} of {len(ids)} estimates for company {company_id}")
        return deleted

    def list_all(
        self,
        company_id: UUID,
        search: str | None = None,
        status: EstimateStatus | None = None,
        customer_id: UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Estimate]:
        """
        List estimates, newest first. Items are not loaded.

        Args:
            company_id: Owning company
            search: Matches number, status, customer name, or any line's
                description or item number
            status: Filter on effective status (Sent past validity counts as Expired)
            customer_id: Only this customer's estimates
            limit: Maximum results (capped by config.max_page_size)
            offset: Offset for pagination
        """
        self.companies.require_owned(company_id)
        today = today_utc()

        conditions = ["e.company_id = %s"]
        params: list = [company_id]

        if search and search.strip():
            pattern = f"%{escape_like(search.strip())}%"
            conditions.append(
                """(
                    e.estimate_number ILIKE %s
                    OR e.status ILIKE %s
                    OR c.name ILIKE %s
                    OR EXISTS (
                        SELECT 1 FROM estimate_items i
                        WHERE i.estimate_id = e.id
                          AND (i.product_description ILIKE %s OR i.item_number ILIKE %s)
                    )
                )"""
            )
            params.extend([pattern] * 5)

        if status is not None:
            status = EstimateStatus(status)
            if status == EstimateStatus.EXPIRED:
                conditions.append("(e.status = 'Expired' OR (e.status = 'Sent' AND e.valid_until < %s))")
                params.append(today)
            elif status == EstimateStatus.SENT:
                conditions.append("(e.status = 'Sent' AND (e.valid_until IS NULL OR e.valid_until >= %s))")
                params.append(today)
            else:
                conditions.append("e.status = %s")
                params.append(status.value)

        if customer_id is not None:
            conditions.append("e.customer_id = %s")
            params.append(customer_id)

        params.extend([min(limit, self.config.max_page_size), offset])

        rows = self.postgres.execute(
            _ESTIMATE_SELECT
            + f" WHERE {' AND '.join(conditions)}"
            + " ORDER BY e.estimate_date DESC, e.estimate_number DESC LIMIT %s OFFSET %s",
            tuple(params)
        )

        return [self._with_effective_status(Estimate.model_validate(row), today) for row in rows]

    def next_number(self, company_id: UUID) -> str:
        """Number the next new estimate would receive, for display."""
        self.companies.require_owned(company_id)
        return self.numbering.peek(company_id, DocumentType.ESTIMATE)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def set_status(self, company_id: UUID, estimate_id: UUID, status: EstimateStatus) -> Estimate:
        """
        Move an estimate to a user-settable status.

        Raises:
            AlreadyConvertedError: Estimate is already CONVERTED
            InvalidStateError: Target is CONVERTED
            NotFoundError: Estimate not in the company
        """
        self.companies.require_owned(company_id)
        status = EstimateStatus(status)

        with self.postgres.transaction() as tx:
            row = tx.execute_single(
                "SELECT status FROM estimates WHERE id = %s AND company_id = %s FOR UPDATE",
                (estimate_id, company_id)
            )
            if row is None:
                raise NotFoundError(f"Estimate {estimate_id} not found")

            ensure_status_change(row["status"], status)

            tx.execute(
                "UPDATE estimates SET status = %s, updated_at = %s WHERE id = %s",
                (status.value, now_utc(), estimate_id)
            )
            if row["status"] != status.value:
                self.audit.log_change(
                    entity_type="estimate",
                    entity_id=estimate_id,
                    action=AuditAction.UPDATE,
                    changes={"status": {"old": row["status"], "new": status.value}},
                    company_id=company_id,
                    tx=tx,
                )

        return self.require(company_id, estimate_id)

    def convert_to_invoice(self, company_id: UUID, estimate_id: UUID) -> SalesInvoice:
        """
        Convert an estimate into a Draft sales invoice.

        In one transaction: lock the estimate, issue an INV number, insert
        the invoice referencing the estimate with discount and tax settings
        copied, copy every line verbatim in order, and mark the estimate
        CONVERTED. Any failure leaves nothing behind and consumes no number.

        Args:
            company_id: Owning company
            estimate_id: Estimate to convert

        Returns:
            The new sales invoice with items

        Raises:
            AlreadyConvertedError: Estimate was converted before
            InvalidStateError: Estimate is Declined, Expired, or past valid_until
            NotFoundError: Estimate not in the company
        """
        self.companies.require_owned(company_id)

        with self.postgres.transaction() as tx:
            estimate = tx.execute_single(
                "SELECT * FROM estimates WHERE id = %s AND company_id = %s FOR UPDATE",
                (estimate_id, company_id)
            )
            if estimate is None:
                raise NotFoundError(f"Estimate {estimate_id} not found")

            ensure_convertible(estimate["status"], estimate["valid_until"], today_utc())

            lines = load_items(tx, _ITEM_TABLE, estimate_id)
            invoice_id, invoice_number = self.sales_invoices.insert(
                tx, company_id, estimate["customer_id"], lines,
                status=InvoiceStatus.DRAFT,
                notes=estimate["notes"],
                discount_amount=estimate["discount_amount"],
                discount_type=DiscountType.coerce(estimate["discount_type"]),
                sales_tax_rate_id=estimate["sales_tax_rate_id"],
                estimate_id=estimate_id,
            )

            tx.execute(
                "UPDATE estimates SET status = %s, updated_at = %s WHERE id = %s",
                (EstimateStatus.CONVERTED.value, now_utc(), estimate_id)
            )

            self.audit.log_change(
                entity_type="estimate",
                entity_id=estimate_id,
                action=AuditAction.CONVERT,
                changes={
                    "status": {"old": estimate["status"], "new": EstimateStatus.CONVERTED.value},
                    "sales_invoice_id": str(invoice_id),
                    "invoice_number": invoice_number,
                },
                company_id=company_id,
                tx=tx,
            )

        logger.info(f"Estimate {estimate['estimate_number']} converted to invoice {invoice_number}")
        return self.sales_invoices.require(company_id, invoice_id)

    def clone(self, company_id: UUID, estimate_id: UUID) -> Estimate:
        """
        Copy an estimate into a new Draft dated today under the next EST number.

        Raises:
            NotFoundError: Estimate not in the company
        """
        source = self.require(company_id, estimate_id)

        with self.postgres.transaction() as tx:
            issued = self.numbering.issue(tx, company_id, DocumentType.ESTIMATE)
            new_id = self._insert(
                tx, company_id, source.customer_id, issued.number, EstimateStatus.DRAFT,
                [line.model_copy(update={"id": None}) for line in source.items],
                {field: getattr(source, field) for field in _CLONED_FIELDS},
            )

        logger.info(f"Estimate {source.estimate_number} cloned as {issued.number}")
        return self.require(company_id, new_id)

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    def _resolve_import_customer(
        self,
        company_id: UUID,
        mapped: MappedEstimate,
        cache: dict[str, UUID | None],
    ) -> UUID | None:
        if mapped.customer_id is not None:
            key = f"id:{mapped.customer_id}"
            if key not in cache:
                customer = self.customers.get_by_id(company_id, mapped.customer_id)
                cache[key] = customer.id if customer else None
            return cache[key]

        key = f"name:{mapped.customer_name.strip().lower()}"
        if key not in cache:
            customer = self.customers.find_by_name(company_id, mapped.customer_name)
            cache[key] = customer.id if customer else None
        return cache[key]

    def import_estimates(self, company_id: UUID, mapped: list[MappedEstimate]) -> ImportResult:
        """
        Insert estimates mapped from a CSV file.

        Imported estimates keep their own numbers and do not advance the
        EST counter. Each batch runs in one transaction with a savepoint per
        estimate, so a duplicate number or a bad row skips only that
        estimate.

        Args:
            company_id: Owning company
            mapped: Estimates produced by the mapping step

        Returns:
            ImportResult with counts and the numbers or names skipped
        """
        self.companies.require_owned(company_id)
        result = ImportResult()
        cache: dict[str, UUID | None] = {}
        batch_size = self.config.import_batch_size

        for start in range(0, len(mapped), batch_size):
            with self.postgres.transaction() as tx:
                for est in mapped[start:start + batch_size]:
                    number = est.estimate_number.strip()
                    customer_id = self._resolve_import_customer(company_id, est, cache)
                    if customer_id is None:
                        logger.warning(f"Import skipped {number}: no customer '{est.customer_name}'")
                        result.skipped_no_customer.append(est.customer_name or number)
                        continue

                    tx.execute("SAVEPOINT import_estimate")
                    try:
                        self._insert(
                            tx, company_id, customer_id, number,
                            normalize_estimate_status(est.status),
                            billable_rows(est.items),
                            est.model_dump(exclude={"items", "customer_id", "customer_name", "status"}),
                        )
                    except PersistenceError as e:
                        tx.execute("ROLLBACK TO SAVEPOINT import_estimate")
                        if e.is_unique_violation:
                            logger.warning(f"Import skipped {number}: number already exists")
                            result.skipped_duplicate_number.append(number)
                        else:
                            result.errors.append(f"{number}: {e}")
                        continue
                    tx.execute("RELEASE SAVEPOINT import_estimate")
                    result.imported += 1

        logger.info(
            f"Estimate import for company {company_id}: {result.imported} imported, "
            f"{result.skipped} skipped, {len(result.errors)} errors"
        )
        return result
