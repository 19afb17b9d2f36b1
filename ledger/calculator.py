"""
Line row and document totals calculation.

Pure functions. Every screen, import and service computes amounts through
here, so a row or a document always produces the same figures no matter
where it was entered.

    total_values = quantity * unit_price
                   + sales_tax_applicable - sales_tax_withheld_at_source
                   + extra_tax + further_tax - discount

rounded to 2 decimals, half-up.
"""

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from ledger.models.document import DiscountType, DocumentTotals
from ledger.models.line_item import DEFAULT_SALE_TYPE, DEFAULT_UOM, LineItem, LineItemInput
from ledger.money import ZERO, round_money, to_amount

HUNDRED = Decimal("100")


def _as_mapping(raw: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
    if isinstance(raw, BaseModel):
        return raw.model_dump()
    return dict(raw)


def compute_line_row(raw: Mapping[str, Any] | BaseModel, sort_order: int | None = None) -> LineItem:
    """
    Normalize a raw row and compute its derived amounts.

    Never raises for numeric problems: missing, blank, non-numeric, NaN and
    boolean values count as 0. Blank uom and sale_type fall back to their
    defaults. Applying this to its own output returns an equal row.

    Args:
        raw: Mapping or model with line item fields (extra keys ignored)
        sort_order: Position in the document; kept from raw when None

    Returns:
        LineItem with value_sales_excluding_st and total_values filled in
    """
    data = _as_mapping(raw)
    row = LineItemInput.model_validate(
        {key: data.get(key) for key in LineItemInput.model_fields if key in data}
    )

    value_sales = row.quantity * row.unit_price
    total = round_money(
        value_sales
        + row.sales_tax_applicable
        - row.sales_tax_withheld_at_source
        + row.extra_tax
        + row.further_tax
        - row.discount
    )

    if sort_order is None:
        sort_order = int(to_amount(data.get("sort_order")))

    return LineItem(
        **row.model_dump(exclude={"uom", "sale_type"}),
        uom=row.uom or DEFAULT_UOM,
        sale_type=row.sale_type or DEFAULT_SALE_TYPE,
        id=data.get("id"),
        value_sales_excluding_st=value_sales,
        total_values=total,
        sort_order=sort_order,
    )


def apply_row_patch(row: LineItem | Mapping[str, Any], patch: Mapping[str, Any]) -> LineItem:
    """
    Apply a partial edit to a row and recompute it.

    Args:
        row: Current row
        patch: Fields to change, e.g. {"quantity": "3"}

    Returns:
        New recomputed row; the input is not modified
    """
    merged = _as_mapping(row)
    merged.update(patch)
    return compute_line_row(merged)


def billable_rows(raw_rows: Iterable[Mapping[str, Any] | BaseModel]) -> list[LineItem]:
    """
    Compute rows and keep only the ones worth saving.

    A row is kept when it has a description, a positive quantity and a
    non-negative price. Kept rows are renumbered 0..n-1 in input order.
    """
    kept = []
    for raw in raw_rows:
        row = compute_line_row(raw)
        if row.is_billable:
            kept.append(row)
    return [row.model_copy(update={"sort_order": index}) for index, row in enumerate(kept)]


def compute_document_totals(
    lines: Iterable[LineItem | Mapping[str, Any]],
    discount_amount: Any = ZERO,
    discount_type: DiscountType | str = DiscountType.AMOUNT,
    tax_rate_percent: Any = None,
) -> DocumentTotals:
    """
    Aggregate line totals into document totals.

    subtotal is the sum of line total_values. A percentage discount is taken
    from the subtotal. The discounted total never goes below zero. Tax is the
    selected rate applied to the discounted total; no rate means no tax.

    Args:
        lines: Rows; mappings are run through compute_line_row first
        discount_amount: Flat amount, or percent when discount_type is percentage
        discount_type: "amount" or "percentage"
        tax_rate_percent: Sales tax rate in percent, or None

    Returns:
        DocumentTotals rounded to cents
    """
    subtotal = ZERO
    for line in lines:
        if not isinstance(line, LineItem):
            line = compute_line_row(line)
        subtotal += line.total_values
    subtotal = round_money(subtotal)

    discount = round_money(to_amount(discount_amount))
    if DiscountType.coerce(discount_type) == DiscountType.PERCENTAGE:
        discount_value = round_money(subtotal * discount / HUNDRED)
    else:
        discount_value = round_money(discount)

    total_after_discount = max(ZERO, subtotal - discount_value)

    rate = to_amount(tax_rate_percent)
    tax_amount = round_money(total_after_discount * rate / HUNDRED) if rate else round_money(ZERO)

    return DocumentTotals(
        subtotal=subtotal,
        discount_value=discount_value,
        total_after_discount=round_money(total_after_discount),
        tax_amount=tax_amount,
        grand_total=round_money(total_after_discount + tax_amount),
    )
