"""Catalog item domain models.

Items are a company's price list. Picking an item into an estimate or
invoice copies its fields into a line row; later edits to the item do not
touch documents already written.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ledger.models.line_item import DEFAULT_SALE_TYPE
from ledger.money import to_amount

_TEXT_FIELDS = ("name", "description", "reference", "hs_code", "uom", "sale_type")


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class ItemCreate(BaseModel):
    """Data required to create a catalog item."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=2000)
    reference: str | None = Field(None, max_length=100)
    hs_code: str | None = Field(None, max_length=50)
    unit_rate: Decimal = Field(Decimal("0"), ge=0)
    default_tax_rate_id: UUID | None = None
    uom: str | None = Field(None, max_length=20)
    sale_type: str = Field(DEFAULT_SALE_TYPE, max_length=200)

    @field_validator(*_TEXT_FIELDS, "default_tax_rate_id", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("sale_type", mode="before")
    @classmethod
    def default_sale_type(cls, value: Any) -> Any:
        return _blank_to_none(value) or DEFAULT_SALE_TYPE

    @field_validator("unit_rate", mode="before")
    @classmethod
    def coerce_rate(cls, value: Any) -> Decimal:
        return to_amount(value)


class ItemUpdate(BaseModel):
    """Data that can be updated on an item. All fields optional."""

    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=2000)
    reference: str | None = Field(None, max_length=100)
    hs_code: str | None = Field(None, max_length=50)
    unit_rate: Decimal | None = Field(None, ge=0)
    default_tax_rate_id: UUID | None = None
    uom: str | None = Field(None, max_length=20)
    sale_type: str | None = Field(None, max_length=200)

    @field_validator(*_TEXT_FIELDS, "default_tax_rate_id", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("unit_rate", mode="before")
    @classmethod
    def coerce_rate(cls, value: Any) -> Decimal | None:
        if value is None:
            return None
        return to_amount(value)


class MappedItem(ItemCreate):
    """An item read from a CSV row, before its labels are resolved to ids."""

    rate_label: str | None = Field(None, max_length=100)

    @field_validator("rate_label", mode="before")
    @classmethod
    def blank_label_is_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


class Item(BaseModel):
    """Full catalog item as stored, with the name of its default tax rate."""

    id: UUID
    company_id: UUID
    name: str
    description: str | None = None
    reference: str | None = None
    hs_code: str | None = None
    unit_rate: Decimal = Decimal("0")
    default_tax_rate_id: UUID | None = None
    rate_label: str | None = None
    uom: str | None = None
    sale_type: str = DEFAULT_SALE_TYPE
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class Uom(BaseModel):
    """Unit of measure."""

    code: str
    description: str

    model_config = {"from_attributes": True}
