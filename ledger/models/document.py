"""Shared document models: types, discounts, totals, and the common input shape."""

from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ledger.models.line_item import LineItemInput
from ledger.money import round_money, to_amount


class DocumentType(str, Enum):
    """Kinds of numbered documents. Each has its own per-company sequence."""

    ESTIMATE = "estimate"
    SALES_INVOICE = "sales_invoice"
    PURCHASE_INVOICE = "purchase_invoice"
    PAYMENT = "payment"


class DiscountType(str, Enum):
    """How a document-level discount is expressed."""

    AMOUNT = "amount"
    PERCENTAGE = "percentage"

    @classmethod
    def coerce(cls, value: Any) -> "DiscountType":
        """Anything other than 'percentage' is treated as a flat amount."""
        if isinstance(value, DiscountType):
            return value
        return cls.PERCENTAGE if str(value or "").strip().lower() == "percentage" else cls.AMOUNT


class DocumentTotals(BaseModel):
    """Result of aggregating a document's line items."""

    subtotal: Decimal
    discount_value: Decimal
    total_after_discount: Decimal
    tax_amount: Decimal
    grand_total: Decimal


class DocumentInput(BaseModel):
    """
    Fields every priced document form submits.

    Line items arrive raw; services filter and recompute them before saving.
    """

    discount_amount: Decimal = Field(Decimal("0"), ge=0)
    discount_type: DiscountType = DiscountType.AMOUNT
    sales_tax_rate_id: UUID | None = None
    items: list[LineItemInput] = Field(default_factory=list)

    @field_validator("discount_amount", mode="before")
    @classmethod
    def coerce_discount(cls, value: Any) -> Decimal:
        """Stored as NUMERIC(14, 2), so totals are computed from the rounded value."""
        return round_money(to_amount(value))

    @field_validator("discount_type", mode="before")
    @classmethod
    def coerce_discount_type(cls, value: Any) -> DiscountType:
        return DiscountType.coerce(value)

    @field_validator("sales_tax_rate_id", mode="before")
    @classmethod
    def blank_rate_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value
