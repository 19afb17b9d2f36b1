"""
Catalog item service: the company's price list and the rows it feeds into
estimates and invoices.

An item's default tax rate is one of the company's sales tax rates; its
name becomes the rate_label of line rows picked from the item. Units of
measure come from the shared uoms table.
"""

import csv
import io
import logging
from collections.abc import Iterable, Mapping
from decimal import Decimal, ROUND_HALF_UP
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, Transaction
from ledger.audit import AuditLogger, AuditAction, compute_changes
from ledger.calculator import compute_line_row
from ledger.config import DEFAULT_CONFIG, LedgerConfig
from ledger.csv_mapping import map_item_records
from ledger.exceptions import NotFoundError, PersistenceError, ValidationError
from ledger.models import (
    DEFAULT_SALE_TYPE, DEFAULT_UOM, Item, ItemCreate, ItemUpdate, LineItem, MappedItem,
    RowImportResult, Uom,
)
from ledger.money import to_amount
from ledger.services.company_service import CompanyService
from ledger.services.customer_service import escape_like
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_ITEM_SELECT = """
    SELECT i.*, r.name AS rate_label
    FROM items i
    LEFT JOIN company_sales_tax_rates r ON r.id = i.default_tax_rate_id
"""

# Valid columns that can be updated
_UPDATABLE_COLUMNS = {
    "name", "description", "reference", "hs_code", "unit_rate",
    "default_tax_rate_id", "uom", "sale_type",
}

EXPORT_COLUMNS = ("name", "description", "reference", "hs_code", "unit_rate", "rate_label", "uom", "sale_type")

SEARCH_LIMIT = 20
PICKER_LIMIT = 50
EXPORT_LIMIT = 10000


def item_to_line(item: Item, quantity: int | Decimal = 1, sort_order: int = 0) -> LineItem:
    """
    Line row for an item picked into a document.

    The description is "name: description" when the item has one. The
    quantity is a whole number of at least 1.
    """
    description = f"{item.name}: {item.description}" if item.description else item.name
    return compute_line_row(
        {
            "item_number": item.reference or "",
            "product_description": description,
            "hs_code": item.hs_code or "",
            "rate_label": item.rate_label or "",
            "uom": item.uom or DEFAULT_UOM,
            "quantity": max(1, int(to_amount(quantity).quantize(Decimal("1"), rounding=ROUND_HALF_UP))),
            "unit_price": item.unit_rate,
            "sale_type": item.sale_type or DEFAULT_SALE_TYPE,
        },
        sort_order=sort_order,
    )


class ItemService:
    """Service for catalog item operations."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        companies: CompanyService,
        config: LedgerConfig = DEFAULT_CONFIG,
    ):
        self.postgres = postgres
        self.audit = audit
        self.companies = companies
        self.config = config

    def _check_references(self, tx: Transaction, company_id: UUID, tax_rate_id: UUID | None, uom: str | None) -> None:
        """
        Raises:
            NotFoundError: Tax rate not one of the company's
            ValidationError: Unknown unit of measure
        """
        if tax_rate_id is not None:
            self.companies.get_tax_rate_percent(company_id, tax_rate_id, tx=tx)
        if uom is not None and tx.execute_single("SELECT code FROM uoms WHERE code = %s", (uom,)) is None:
            raise ValidationError(f"Unknown unit of measure '{uom}'.")

    def _insert(self, tx: Transaction, company_id: UUID, data: ItemCreate, audit_extra: dict | None = None) -> UUID:
        item_id = uuid4()
        now = now_utc()

        tx.execute(
            """
            INSERT INTO items (
                id, company_id, name, description, reference, hs_code,
                unit_rate, default_tax_rate_id, uom, sale_type,
                created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                item_id, company_id, data.name, data.description, data.reference, data.hs_code,
                data.unit_rate, data.default_tax_rate_id, data.uom, data.sale_type,
                now, now
            )
        )

        created = data.model_dump(mode="json", exclude_none=True, exclude={"rate_label"})
        self.audit.log_change(
            entity_type="item",
            entity_id=item_id,
            action=AuditAction.CREATE,
            changes={"created": {**created, **(audit_extra or {})}},
            company_id=company_id,
            tx=tx,
        )

        return item_id

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create(self, company_id: UUID, data: ItemCreate) -> Item:
        """
        Add an item to the catalog.

        Raises:
            NotFoundError: Default tax rate not in the company
            ValidationError: Unknown unit of measure
        """
        self.companies.require_owned(company_id)

        with self.postgres.transaction() as tx:
            self._check_references(tx, company_id, data.default_tax_rate_id, data.uom)
            item_id = self._insert(tx, company_id, data)

        return self.require(company_id, item_id)

    def get_by_id(self, company_id: UUID, item_id: UUID) -> Item | None:
        self.companies.require_owned(company_id)

        row = self.postgres.execute_single(
            _ITEM_SELECT + " WHERE i.id = %s AND i.company_id = %s",
            (item_id, company_id)
        )

        return Item.model_validate(row) if row else None

    def require(self, company_id: UUID, item_id: UUID) -> Item:
        """Like get_by_id, but raises NotFoundError when missing."""
        item = self.get_by_id(company_id, item_id)
        if item is None:
            raise NotFoundError(f"Item {item_id} not found")
        return item

    def update(self, company_id: UUID, item_id: UUID, data: ItemUpdate) -> Item:
        """
        Update item fields (only non-None fields are changed).

        Raises:
            NotFoundError: Item or tax rate not in the company
            ValidationError: Unknown unit of measure
        """
        current = self.require(company_id, item_id)

        updates = data.model_dump(exclude_none=True)
        for field in updates:
            if field not in _UPDATABLE_COLUMNS:
                logger.warning(f"Attempted to update unknown field '{field}' on item {item_id}")

        valid_updates = {k: v for k, v in updates.items() if k in _UPDATABLE_COLUMNS}
        if not valid_updates:
            return current

        set_clause = ", ".join(f"{field} = %s" for field in valid_updates)
        params = (*valid_updates.values(), now_utc(), item_id, company_id)

        with self.postgres.transaction() as tx:
            self._check_references(tx, company_id, data.default_tax_rate_id, data.uom)
            tx.execute(
                f"UPDATE items SET {set_clause}, updated_at = %s WHERE id = %s AND company_id = %s",
                params
            )

            updated = Item.model_validate(tx.execute_single(_ITEM_SELECT + " WHERE i.id = %s", (item_id,)))
            changes = compute_changes(
                current.model_dump(mode="json"),
                updated.model_dump(mode="json")
            )
            if changes:
                self.audit.log_change(
                    entity_type="item",
                    entity_id=item_id,
                    action=AuditAction.UPDATE,
                    changes=changes,
                    company_id=company_id,
                    tx=tx,
                )

        return updated

    def delete(self, company_id: UUID, item_id: UUID) -> bool:
        """
        Remove an item from the catalog. Document rows copied from it stay.

        Returns:
            True if deleted, False if not found
        """
        current = self.get_by_id(company_id, item_id)
        if current is None:
            return False

        with self.postgres.transaction() as tx:
            tx.execute("DELETE FROM items WHERE id = %s AND company_id = %s", (item_id, company_id))
            self.audit.log_change(
                entity_type="item",
                entity_id=item_id,
                action=AuditAction.DELETE,
                changes={"deleted": current.model_dump(mode="json")},
                company_id=company_id,
                tx=tx,
            )

        return True

    def delete_many(self, company_id: UUID, item_ids: list[UUID]) -> int:
        """
        Delete several items, a chunk of ids per statement.

        Ids not in the company are ignored.

        Returns:
            Number of items deleted
        """
        self.companies.require_owned(company_id)
        ids = list(dict.fromkeys(item_ids))
        chunk_size = self.config.delete_chunk_size
        deleted = 0

        with self.postgres.transaction() as tx:
            for start in range(0, len(ids), chunk_size):
                rows = tx.execute_returning(
                    """
                    DELETE FROM items
                    WHERE company_id = %s AND id = ANY(%s::uuid[])
                    RETURNING id, name
                    """,
                    (company_id, ids[start:start + chunk_size])
                )
                for row in rows:
                    self.audit.log_change(
                        entity_type="item",
                        entity_id=row["id"],
                        action=AuditAction.DELETE,
                        changes={"deleted": {"name": row["name"], "bulk": True}},
                        company_id=company_id,
                        tx=tx,
                    )
                deleted += len(rows)

        logger.info(f"Deleted {deleted} of {len(ids)} items for company {company_id}")
        return deleted

    def duplicate(self, company_id: UUID, item_id: UUID) -> Item:
        """Copy an item under the name "Copy of <name>"."""
        source = self.require(company_id, item_id)
        data = ItemCreate(
            **source.model_dump(include=set(ItemCreate.model_fields) - {"name"}),
            name=f"Copy of {source.name}"[:255],
        )

        with self.postgres.transaction() as tx:
            new_id = self._insert(tx, company_id, data, {"duplicated_from": str(source.id)})

        return self.require(company_id, new_id)

    # -------------------------------------------------------------------------
    # Listing and picking
    # -------------------------------------------------------------------------

    def list_all(
        self,
        company_id: UUID,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Item]:
        """
        List items by name.

        Args:
            company_id: Owning company
            search: Matches name, description or reference
            limit: Maximum results (capped by config.max_page_size)
            offset: Offset for pagination
        """
        self.companies.require_owned(company_id)

        conditions = ["i.company_id = %s"]
        params: list = [company_id]
        if search and search.strip():
            pattern = f"%{escape_like(search.strip())}%"
            conditions.append("(i.name ILIKE %s OR i.description ILIKE %s OR i.reference ILIKE %s)")
            params.extend([pattern, pattern, pattern])
        params.extend([min(limit, self.config.max_page_size), offset])

        rows = self.postgres.execute(
            _ITEM_SELECT
            + f" WHERE {' AND '.join(conditions)}"
            + " ORDER BY lower(i.name), i.created_at LIMIT %s OFFSET %s",
            tuple(params)
        )

        return [Item.model_validate(row) for row in rows]

    def search(self, company_id: UUID, query: str) -> list[Item]:
        """Quick search by name, description or reference."""
        return self.list_all(company_id, query, limit=SEARCH_LIMIT)

    def picker(self, company_id: UUID, query: str | None = None) -> list[Item]:
        """Items offered by the add-from-catalog dialog, by name."""
        return self.list_all(company_id, query, limit=PICKER_LIMIT)

    def lines_for_items(self, company_id: UUID, selections: list[tuple[UUID, int | Decimal]]) -> list[LineItem]:
        """
        Line rows for items picked into a document form, in the order picked.

        Args:
            company_id: Owning company
            selections: (item id, quantity) pairs

        Raises:
            NotFoundError: An item is not in the company
        """
        return [
            item_to_line(self.require(company_id, item_id), quantity, sort_order=index)
            for index, (item_id, quantity) in enumerate(selections)
        ]

    def list_uoms(self) -> list[Uom]:
        """Units of measure, by code."""
        rows = self.postgres.execute("SELECT code, description FROM uoms ORDER BY code")
        return [Uom.model_validate(row) for row in rows]

    # -------------------------------------------------------------------------
    # CSV
    # -------------------------------------------------------------------------

    def _resolve_import_item(
        self,
        item: MappedItem,
        rates: dict[str, UUID],
        uoms: dict[str, str],
    ) -> ItemCreate:
        """Tax rate by name and unit by code, both ignoring case; unknown ones are left empty."""
        fields = item.model_dump(exclude={"rate_label", "default_tax_rate_id", "uom"})
        return ItemCreate(
            **fields,
            default_tax_rate_id=rates.get((item.rate_label or "").lower()),
            uom=uoms.get((item.uom or "").lower()),
        )

    def import_items(self, company_id: UUID, records: Iterable[Mapping]) -> RowImportResult:
        """
        Create catalog items from CSV records, one per row.

        Rows without a name are skipped and rows that fail validation are
        reported by row number. Each batch is written in its own
        transaction; a batch the database rejects is reported and the
        following batches still go in.
        """
        self.companies.require_owned(company_id)
        mapped, result = map_item_records(records)

        rates = {rate.name.lower(): rate.id for rate in self.companies.list_tax_rates(company_id)}
        uoms = {uom.code.lower(): uom.code for uom in self.list_uoms()}
        items = [self._resolve_import_item(item, rates, uoms) for item in mapped]
        batch_size = self.config.import_batch_size

        for start in range(0, len(items), batch_size):
            batch = items[start:start + batch_size]
            try:
                with self.postgres.transaction() as tx:
                    for data in batch:
                        self._insert(tx, company_id, data, {"import": True})
            except PersistenceError as e:
                logger.warning(f"Item import batch at {start + 1} failed: {e}")
                result.errors.append(f"Items {start + 1}-{start + len(batch)}: {e}")
                continue
            result.imported += len(batch)

        logger.info(
            f"Item import for company {company_id}: {result.imported} imported, "
            f"{result.skipped} skipped, {len(result.errors)} errors"
        )
        return result

    def export_csv(self, company_id: UUID) -> str:
        """
        The catalog as CSV text, CRLF line endings, header row first.

        Columns match what import_items() reads back.
        """
        items = self._export_rows(company_id)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\r\n")
        writer.writerow(EXPORT_COLUMNS)
        for item in items:
            writer.writerow([
                "" if getattr(item, column) is None else getattr(item, column)
                for column in EXPORT_COLUMNS
            ])
        return buffer.getvalue()

    def _export_rows(self, company_id: UUID) -> list[Item]:
        self.companies.require_owned(company_id)

        rows = self.postgres.execute(
            _ITEM_SELECT + " WHERE i.company_id = %s ORDER BY lower(i.name), i.created_at LIMIT %s",
            (company_id, EXPORT_LIMIT)
        )

        return [Item.model_validate(row) for row in rows]
