"""Sales and purchase invoice domain models.

Amounts are Decimal, rounded to cents when saved. Totals are computed by
ledger.calculator from the line items; submitted totals are ignored.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ledger.models.document import DiscountType, DocumentInput
from ledger.models.line_item import LineItem


class InvoiceStatus(str, Enum):
    """Invoice status. Only FINAL and SENT sales invoices accept payments."""

    DRAFT = "Draft"
    FINAL = "Final"
    SENT = "Sent"


class _InvoiceFields(DocumentInput):
    invoice_date: date | None = None
    due_date: date | None = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    notes: str | None = Field(None, max_length=10000)
    reference: str | None = Field(None, max_length=255)

    @field_validator("invoice_date", "due_date", "notes", "reference", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class SalesInvoiceCreate(_InvoiceFields):
    """Data submitted by the sales invoice form."""

    customer_id: UUID | None = None

    @field_validator("customer_id", mode="before")
    @classmethod
    def blank_customer_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class SalesInvoiceUpdate(SalesInvoiceCreate):
    """Full resubmission of the sales invoice form."""


class PurchaseInvoiceCreate(_InvoiceFields):
    """Data submitted by the purchase invoice form."""

    vendor_id: UUID | None = None

    @field_validator("vendor_id", mode="before")
    @classmethod
    def blank_vendor_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class PurchaseInvoiceUpdate(PurchaseInvoiceCreate):
    """Full resubmission of the purchase invoice form."""


class _StoredInvoice(BaseModel):
    id: UUID
    company_id: UUID
    invoice_number: str
    invoice_date: date
    due_date: date | None = None
    status: InvoiceStatus
    notes: str | None = None
    reference: str | None = None
    discount_amount: Decimal = Decimal("0")
    discount_type: DiscountType = DiscountType.AMOUNT
    sales_tax_rate_id: UUID | None = None
    subtotal: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    created_at: datetime
    updated_at: datetime
    items: list[LineItem] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class SalesInvoice(_StoredInvoice):
    """Full sales invoice entity as stored."""

    customer_id: UUID
    estimate_id: UUID | None = None
    customer_name: str | None = None

    @property
    def accepts_payments(self) -> bool:
        """Whether payments may be allocated against this invoice."""
        return self.status in (InvoiceStatus.FINAL, InvoiceStatus.SENT)


class PurchaseInvoice(_StoredInvoice):
    """Full purchase invoice entity as stored."""

    vendor_id: UUID
    vendor_name: str | None = None


class MappedSalesInvoice(DocumentInput):
    """One sales invoice produced by the CSV import mapping step."""

    customer_name: str = ""
    customer_id: UUID | None = None
    invoice_number: str = Field(..., min_length=1, max_length=100)
    invoice_date: date
    due_date: date | None = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    notes: str | None = None
    reference: str | None = None
    estimate_number: str | None = None

    @field_validator("customer_id", "due_date", "notes", "reference", "estimate_number", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value
