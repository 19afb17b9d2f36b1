"""
Shared persistence for priced documents (estimates, sales and purchase invoices).

Each document has a header table and an item table. Items are always
written as a full set: on every save the stored items are deleted and the
recomputed ones inserted in order.
"""

from collections.abc import Iterable
from uuid import UUID

from clients.postgres_client import PostgresClient, Transaction
from ledger.calculator import billable_rows
from ledger.exceptions import ValidationError
from ledger.models import LineItem

ITEM_COLUMNS = (
    "item_number", "product_description", "hs_code", "rate_label", "uom",
    "quantity", "unit_price", "value_sales_excluding_st",
    "sales_tax_applicable", "sales_tax_withheld_at_source",
    "extra_tax", "further_tax", "discount", "total_values",
    "sale_type", "sort_order",
)

# item table -> column pointing at the parent document
ITEM_PARENTS = {
    "estimate_items": "estimate_id",
    "sales_invoice_items": "sales_invoice_id",
    "purchase_invoice_items": "purchase_invoice_id",
}


def prepare_lines(raw_items: Iterable) -> list[LineItem]:
    """
    Recompute submitted rows and keep the billable ones.

    Raises:
        ValidationError: If no row survives
    """
    lines = billable_rows(raw_items)
    if not lines:
        raise ValidationError("Add at least one line item.")
    return lines


def insert_items(tx: Transaction, item_table: str, parent_id: UUID, lines: list[LineItem]) -> None:
    """Insert computed rows for a document, keeping their sort_order."""
    if not lines:
        return

    parent_column = ITEM_PARENTS[item_table]
    columns = ", ".join((parent_column, *ITEM_COLUMNS))
    placeholders = ", ".join(["%s"] * (len(ITEM_COLUMNS) + 1))

    tx.execute_many(
        f"INSERT INTO {item_table} ({columns}) VALUES ({placeholders})",
        [
            (parent_id, *(getattr(line, column) for column in ITEM_COLUMNS))
            for line in lines
        ]
    )


def replace_items(tx: Transaction, item_table: str, parent_id: UUID, lines: list[LineItem]) -> None:
    """Delete a document's stored rows and insert the new set."""
    parent_column = ITEM_PARENTS[item_table]
    tx.execute(f"DELETE FROM {item_table} WHERE {parent_column} = %s", (parent_id,))
    insert_items(tx, item_table, parent_id, lines)


def load_items(
    executor: PostgresClient | Transaction,
    item_table: str,
    parent_id: UUID,
) -> list[LineItem]:
    """Stored rows of a document, in display order."""
    parent_column = ITEM_PARENTS[item_table]
    rows = executor.execute(
        f"SELECT * FROM {item_table} WHERE {parent_column} = %s ORDER BY sort_order, id",
        (parent_id,)
    )
    return [LineItem.model_validate(row) for row in rows]
