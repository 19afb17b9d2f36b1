"""Line item domain models.

Amounts are Decimal. value_sales_excluding_st and total_values are always
produced by ledger.calculator; whatever the client submits for them is
discarded.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ledger.money import to_amount

DEFAULT_UOM = "Nos"
DEFAULT_SALE_TYPE = "Goods at standard rate (default)"

LINE_AMOUNT_FIELDS = (
    "quantity",
    "unit_price",
    "sales_tax_applicable",
    "sales_tax_withheld_at_source",
    "extra_tax",
    "further_tax",
    "discount",
)


class LineItemInput(BaseModel):
    """A line item as submitted by a form or import. Numbers coerce leniently."""

    item_number: str = Field("", max_length=100)
    product_description: str = Field("", max_length=2000)
    hs_code: str = Field("", max_length=50)
    rate_label: str = Field("", max_length=100)
    uom: str = Field(DEFAULT_UOM, max_length=20)
    quantity: Decimal = Decimal("0")
    unit_price: Decimal = Decimal("0")
    sales_tax_applicable: Decimal = Decimal("0")
    sales_tax_withheld_at_source: Decimal = Decimal("0")
    extra_tax: Decimal = Decimal("0")
    further_tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    sale_type: str = Field(DEFAULT_SALE_TYPE, max_length=200)

    @field_validator(*LINE_AMOUNT_FIELDS, mode="before")
    @classmethod
    def coerce_amount(cls, value: Any) -> Decimal:
        """Invalid numeric input becomes 0 instead of failing validation."""
        return to_amount(value)

    @field_validator(
        "item_number", "product_description", "hs_code", "rate_label", "uom", "sale_type",
        mode="before",
    )
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        """None becomes an empty string; everything else is stripped text."""
        if value is None:
            return ""
        return str(value).strip()

    @property
    def is_billable(self) -> bool:
        """A row worth saving: has a description, positive quantity, non-negative price."""
        return bool(self.product_description) and self.quantity > 0 and self.unit_price >= 0


class LineItem(LineItemInput):
    """Fully computed line item, as stored on an estimate or invoice."""

    id: UUID | None = None
    value_sales_excluding_st: Decimal = Decimal("0")
    total_values: Decimal = Decimal("0")
    sort_order: int = 0

    model_config = {"from_attributes": True}
