"""Company (tenant) domain models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator


class RegistrationType(str, Enum):
    """Sales tax registration of a company or customer."""

    REGISTERED = "Registered"
    UNREGISTERED = "Unregistered"


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class CompanyCreate(BaseModel):
    """Data required to create a company."""

    name: str = Field(..., min_length=1, max_length=255)
    ntn: str | None = Field(None, max_length=50)
    cnic: str | None = Field(None, max_length=50)
    gst_number: str | None = Field(None, max_length=50)
    registration_type: RegistrationType | None = None
    address: str | None = Field(None, max_length=500)
    city: str | None = Field(None, max_length=100)
    province: str | None = Field(None, max_length=100)
    phone: str | None = Field(None, max_length=50)
    email: EmailStr | None = None
    logo_url: str | None = Field(None, max_length=2000)
    estimate_prefix: str | None = Field(None, max_length=20)
    sales_invoice_prefix: str | None = Field(None, max_length=20)
    purchase_invoice_prefix: str | None = Field(None, max_length=20)
    payment_prefix: str | None = Field(None, max_length=20)

    @field_validator("*", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


class CompanyUpdate(BaseModel):
    """Data that can be updated on a company. All fields optional."""

    name: str | None = Field(None, min_length=1, max_length=255)
    ntn: str | None = Field(None, max_length=50)
    cnic: str | None = Field(None, max_length=50)
    gst_number: str | None = Field(None, max_length=50)
    registration_type: RegistrationType | None = None
    address: str | None = Field(None, max_length=500)
    city: str | None = Field(None, max_length=100)
    province: str | None = Field(None, max_length=100)
    phone: str | None = Field(None, max_length=50)
    email: EmailStr | None = None
    logo_url: str | None = Field(None, max_length=2000)
    estimate_prefix: str | None = Field(None, max_length=20)
    sales_invoice_prefix: str | None = Field(None, max_length=20)
    purchase_invoice_prefix: str | None = Field(None, max_length=20)
    payment_prefix: str | None = Field(None, max_length=20)

    @field_validator("*", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


class Company(BaseModel):
    """Full company entity as stored, including its numbering counters."""

    id: UUID
    user_id: UUID
    name: str
    ntn: str | None = None
    cnic: str | None = None
    gst_number: str | None = None
    registration_type: RegistrationType | None = None
    address: str | None = None
    city: str | None = None
    province: str | None = None
    phone: str | None = None
    email: str | None = None
    logo_url: str | None = None
    estimate_prefix: str
    estimate_next_number: int
    sales_invoice_prefix: str
    sales_invoice_next_number: int
    purchase_invoice_prefix: str
    purchase_invoice_next_number: int
    payment_prefix: str
    payment_next_number: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SalesTaxRateCreate(BaseModel):
    """A named sales tax rate, in percent."""

    name: str = Field(..., min_length=1, max_length=100)
    rate: Decimal = Field(..., ge=0, le=100)
    description: str | None = Field(None, max_length=500)

    model_config = {"str_strip_whitespace": True}


class SalesTaxRate(BaseModel):
    """Company sales tax rate as stored."""

    id: UUID
    company_id: UUID
    name: str
    rate: Decimal
    description: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class WithholdingTaxRateCreate(SalesTaxRateCreate):
    """A named withholding (income tax deducted at source) rate, in percent."""


class WithholdingTaxRate(SalesTaxRate):
    """Company withholding tax rate as stored."""
