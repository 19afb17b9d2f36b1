"""Vendor (supplier) domain models."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator


class VendorCreate(BaseModel):
    """Data required to create a vendor."""

    name: str = Field(..., min_length=1, max_length=255)
    ntn_cnic: str | None = Field(None, max_length=50)
    address: str | None = Field(None, max_length=500)
    city: str | None = Field(None, max_length=100)
    province: str | None = Field(None, max_length=100)
    phone: str | None = Field(None, max_length=50)
    email: EmailStr | None = None

    @field_validator("*", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class VendorUpdate(VendorCreate):
    """Data that can be updated on a vendor. All fields optional."""

    name: str | None = Field(None, min_length=1, max_length=255)


class Vendor(BaseModel):
    """Full vendor entity as stored."""

    id: UUID
    company_id: UUID
    name: str
    ntn_cnic: str | None = None
    address: str | None = None
    city: str | None = None
    province: str | None = None
    phone: str | None = None
    email: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
