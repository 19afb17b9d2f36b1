"""Estimate (quote) domain models."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ledger.models.document import DiscountType, DocumentInput
from ledger.models.line_item import LineItem, LineItemInput
from ledger.money import round_money, to_amount


class EstimateStatus(str, Enum):
    """Estimate lifecycle status. CONVERTED is only reachable through conversion."""

    DRAFT = "Draft"
    SENT = "Sent"
    ACCEPTED = "Accepted"
    DECLINED = "Declined"
    EXPIRED = "Expired"
    CONVERTED = "Converted"


class DeliveryTimeUnit(str, Enum):
    """Unit for the quoted delivery time."""

    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class EstimateCreate(DocumentInput):
    """Data submitted by the estimate form."""

    customer_id: UUID | None = None
    estimate_date: date | None = None
    status: EstimateStatus = EstimateStatus.DRAFT
    valid_until: date | None = None
    notes: str | None = Field(None, max_length=10000)
    project_name: str | None = Field(None, max_length=255)
    subject: str | None = Field(None, max_length=500)
    payment_terms: str | None = Field(None, max_length=2000)
    delivery_time_amount: int | None = Field(None, ge=0)
    delivery_time_unit: DeliveryTimeUnit | None = None

    @field_validator(
        "notes", "project_name", "subject", "payment_terms",
        "valid_until", "estimate_date", "customer_id", "delivery_time_unit",
        mode="before",
    )
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        """Empty form fields arrive as ''; store them as NULL."""
        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, str):
            return value.strip()
        return value


class EstimateUpdate(EstimateCreate):
    """
    Full resubmission of the estimate form.

    Line items replace the stored ones entirely.
    """


class Estimate(BaseModel):
    """Full estimate entity as stored."""

    id: UUID
    company_id: UUID
    customer_id: UUID
    estimate_number: str
    estimate_date: date
    status: EstimateStatus
    valid_until: date | None = None
    notes: str | None = None
    project_name: str | None = None
    subject: str | None = None
    payment_terms: str | None = None
    delivery_time_amount: int | None = None
    delivery_time_unit: DeliveryTimeUnit | None = None
    discount_amount: Decimal = Decimal("0")
    discount_type: DiscountType = DiscountType.AMOUNT
    sales_tax_rate_id: UUID | None = None
    subtotal: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    created_at: datetime
    updated_at: datetime
    customer_name: str | None = None
    effective_status: EstimateStatus | None = None
    items: list[LineItem] = Field(default_factory=list)

    model_config = {"from_attributes": True}

    @property
    def is_converted(self) -> bool:
        return self.status == EstimateStatus.CONVERTED


class MappedEstimate(BaseModel):
    """One estimate produced by the CSV import mapping step."""

    customer_name: str = ""
    customer_id: UUID | None = None
    estimate_number: str = Field(..., min_length=1, max_length=100)
    estimate_date: date
    status: str = "Draft"
    valid_until: date | None = None
    notes: str | None = None
    payment_terms: str | None = None
    subject: str | None = None
    project_name: str | None = None
    discount_amount: Decimal = Decimal("0")
    discount_type: DiscountType = DiscountType.AMOUNT
    items: list[LineItemInput] = Field(default_factory=list)

    @field_validator("discount_amount", mode="before")
    @classmethod
    def coerce_discount(cls, value: Any) -> Decimal:
        return round_money(to_amount(value))

    @field_validator("discount_type", mode="before")
    @classmethod
    def coerce_discount_type(cls, value: Any) -> DiscountType:
        return DiscountType.coerce(value)

    @field_validator("customer_id", "valid_until", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ImportResult(BaseModel):
    """Outcome of a CSV import of numbered documents (estimates, sales invoices)."""

    imported: int = 0
    skipped_no_customer: list[str] = Field(default_factory=list)
    skipped_duplicate_number: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.skipped_no_customer) + len(self.skipped_duplicate_number)


class RowImportResult(BaseModel):
    """Outcome of a one-record-per-row CSV import (items, customers, vendors)."""

    imported: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
