"""Customer payment and allocation models."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from ledger.money import ZERO, to_amount


class PaymentStatus(str, Enum):
    """Allocation status, always derived from the allocation rows."""

    UNALLOCATED = "Unallocated"
    PARTIALLY_ALLOCATED = "Partially Allocated"
    ALLOCATED = "Allocated"


class PaymentMode(str, Enum):
    """How the payment was received."""

    CASH = "Cash"
    BANK_TRANSFER = "Bank Transfer"
    CHEQUE = "Cheque"
    ONLINE = "Online"
    CARD = "Card"
    OTHER = "Other"


class PaymentCreate(BaseModel):
    """Data required to record a customer payment."""

    customer_id: UUID
    payment_date: date | None = None
    payment_received_date: date | None = None
    mode_of_payment: PaymentMode = PaymentMode.CHEQUE
    gross_amount: Decimal
    withholding_amount: Decimal = Decimal("0")
    net_amount: Decimal
    reference_payment_id: str | None = Field(None, max_length=255)
    notes: str | None = Field(None, max_length=10000)

    @field_validator("gross_amount", "withholding_amount", "net_amount", mode="before")
    @classmethod
    def coerce_amount(cls, value: Any) -> Decimal:
        return to_amount(value)

    @field_validator(
        "payment_date", "payment_received_date", "reference_payment_id", "notes",
        mode="before",
    )
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def require_positive_amounts(self) -> "PaymentCreate":
        """Gross and net must both be positive; withholding cannot be negative."""
        if self.gross_amount <= ZERO:
            raise ValueError("Gross amount must be greater than 0.")
        if self.net_amount <= ZERO:
            raise ValueError("Net amount must be greater than 0.")
        if self.withholding_amount < ZERO:
            raise ValueError("Withholding amount cannot be negative.")
        return self


class PaymentUpdate(BaseModel):
    """Data that can be updated on a payment. All fields optional."""

    payment_date: date | None = None
    payment_received_date: date | None = None
    mode_of_payment: PaymentMode | None = None
    gross_amount: Decimal | None = Field(None, gt=0)
    withholding_amount: Decimal | None = Field(None, ge=0)
    net_amount: Decimal | None = Field(None, gt=0)
    reference_payment_id: str | None = Field(None, max_length=255)
    notes: str | None = Field(None, max_length=10000)


class Payment(BaseModel):
    """Full payment entity as stored, with its derived allocation figures."""

    id: UUID
    company_id: UUID
    customer_id: UUID
    payment_number: str
    payment_date: date
    payment_received_date: date | None = None
    mode_of_payment: PaymentMode
    gross_amount: Decimal
    withholding_amount: Decimal = Decimal("0")
    net_amount: Decimal
    reference_payment_id: str | None = None
    notes: str | None = None
    status: PaymentStatus = PaymentStatus.UNALLOCATED
    allocated_amount: Decimal = Decimal("0")
    customer_name: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def remaining_amount(self) -> Decimal:
        """Amount still available for allocation."""
        return max(ZERO, self.gross_amount - self.allocated_amount)


class PaymentAllocation(BaseModel):
    """A portion of a payment applied to one sales invoice."""

    id: UUID
    payment_id: UUID
    sales_invoice_id: UUID
    allocated_amount: Decimal
    created_at: datetime
    payment_number: str | None = None
    payment_date: date | None = None
    invoice_number: str | None = None

    model_config = {"from_attributes": True}


class InvoicePaymentSummary(BaseModel):
    """Payment position of one sales invoice, derived at read time."""

    invoice_id: UUID
    total_amount: Decimal
    paid_amount: Decimal
    outstanding_balance: Decimal
    allocations: list[PaymentAllocation] = Field(default_factory=list)


class UnpaidInvoice(BaseModel):
    """Sales invoice with an outstanding balance, offered for allocation."""

    id: UUID
    invoice_number: str
    invoice_date: date
    status: str
    total_amount: Decimal
    paid_amount: Decimal
    outstanding_balance: Decimal

    model_config = {"from_attributes": True}


class AvailablePayment(BaseModel):
    """Payment with money left to allocate."""

    id: UUID
    payment_number: str
    payment_date: date
    gross_amount: Decimal
    allocated_amount: Decimal
    remaining_amount: Decimal

    model_config = {"from_attributes": True}
