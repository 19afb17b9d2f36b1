"""Ledger configuration."""

from pydantic import BaseModel, Field


class LedgerConfig(BaseModel):
    """
    Ledger configuration.

    Numbering defaults apply when a company row has no prefix of its own.
    """

    # Numbering
    estimate_prefix: str = Field(default="EST", min_length=1, max_length=20)
    sales_invoice_prefix: str = Field(default="INV", min_length=1, max_length=20)
    purchase_invoice_prefix: str = Field(default="PUR", min_length=1, max_length=20)
    payment_prefix: str = Field(default="PAY", min_length=1, max_length=20)
    document_number_digits: int = Field(
        default=3,
        description="Zero padding for estimate and invoice numbers",
        ge=1,
        le=12,
    )
    payment_number_digits: int = Field(
        default=5,
        description="Zero padding for payment numbers",
        ge=1,
        le=12,
    )

    # Bulk operations
    import_batch_size: int = Field(
        default=50,
        description="Estimates inserted per batch during CSV import",
        ge=1,
        le=500,
    )
    delete_chunk_size: int = Field(
        default=80,
        description="Ids per DELETE statement for bulk deletes",
        ge=1,
        le=1000,
    )

    # Listing
    max_page_size: int = Field(default=500, ge=1, le=5000)


DEFAULT_CONFIG = LedgerConfig()
