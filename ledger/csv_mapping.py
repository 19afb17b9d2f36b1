"""
Mapping of parsed CSV records into ledger models.

The CSV parser hands over string-keyed records. Header names vary between
exports, so each field accepts a few aliases (matched case-insensitively,
with spaces and hyphens read as underscores).
"""

import logging
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

import pydantic

from ledger.calculator import compute_line_row
from ledger.models.company import RegistrationType
from ledger.models.customer import CustomerCreate
from ledger.models.estimate import EstimateStatus, MappedEstimate, RowImportResult
from ledger.models.invoice import InvoiceStatus, MappedSalesInvoice
from ledger.models.item import MappedItem
from ledger.models.line_item import LineItem
from ledger.models.vendor import VendorCreate

logger = logging.getLogger(__name__)

LINE_ITEM_ALIASES: dict[str, tuple[str, ...]] = {
    "item_number": ("item_number", "item_no", "item_code", "sku"),
    "product_description": ("product_description", "description", "item_name", "name", "product", "item_desc"),
    "hs_code": ("hs_code", "hscode"),
    "rate_label": ("rate_label", "rate_type"),
    "uom": ("uom", "unit", "unit_of_measure"),
    "quantity": ("quantity", "qty"),
    "unit_price": ("unit_price", "price", "rate"),
    "sales_tax_applicable": ("sales_tax_applicable", "sales_tax", "tax"),
    "sales_tax_withheld_at_source": ("sales_tax_withheld_at_source", "st_withheld", "withheld"),
    "extra_tax": ("extra_tax",),
    "further_tax": ("further_tax",),
    "discount": ("discount",),
    "sale_type": ("sale_type",),
}

ESTIMATE_ALIASES: dict[str, tuple[str, ...]] = {
    "estimate_number": ("estimate_number", "estimate_no", "number", "quote_number"),
    "customer_name": ("customer_name", "customer", "client"),
    "estimate_date": ("estimate_date", "date"),
    "status": ("status",),
    "valid_until": ("valid_until", "expiry_date", "expires"),
    "notes": ("notes",),
    "payment_terms": ("payment_terms", "terms"),
    "subject": ("subject",),
    "project_name": ("project_name", "project"),
    "discount_amount": ("discount_amount", "document_discount"),
    "discount_type": ("discount_type",),
}

SALES_INVOICE_ALIASES: dict[str, tuple[str, ...]] = {
    "invoice_number": ("invoice_number", "invoice_no", "number", "invoice_id"),
    "customer_name": ("customer_name", "customer", "client"),
    "invoice_date": ("invoice_date", "date"),
    "due_date": ("due_date",),
    "status": ("status", "invoice_status"),
    "notes": ("notes",),
    "reference": ("reference", "reference_number", "order_number"),
    "discount_amount": ("discount_amount", "document_discount"),
    "discount_type": ("discount_type",),
    "estimate_number": ("estimate_number", "quote_number"),
}

CUSTOMER_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "customer_name", "display_name", "company_name"),
    "ntn_cnic": ("ntn_cnic", "ntn", "cnic", "tax_id"),
    "registration_type": ("registration_type", "gst_treatment"),
    "address": ("address", "billing_address"),
    "city": ("city", "billing_city"),
    "province": ("province", "state", "billing_state"),
    "phone": ("phone", "mobile", "mobile_phone"),
    "email": ("email", "email_id"),
}

VENDOR_ALIASES: dict[str, tuple[str, ...]] = {
    **{field: names for field, names in CUSTOMER_ALIASES.items() if field != "registration_type"},
    "name": ("name", "vendor_name", "supplier_name", "display_name", "company_name"),
}

ITEM_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "item_name"),
    "description": ("description", "item_desc"),
    "reference": ("reference", "sku", "item_code"),
    "hs_code": ("hs_code", "hscode"),
    "unit_rate": ("unit_rate", "rate", "price", "unit_price"),
    "rate_label": ("rate_label", "tax_rate", "tax_name"),
    "uom": ("uom", "unit"),
    "sale_type": ("sale_type",),
}

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%d-%m-%Y", "%d %b %Y")


def _normalize_key(key: str) -> str:
    return str(key).strip().lower().replace(" ", "_").replace("-", "_")


def _pick(record: Mapping[str, Any], aliases: dict[str, tuple[str, ...]]) -> dict[str, Any]:
    normalized = {_normalize_key(key): value for key, value in record.items()}
    picked = {}
    for field, names in aliases.items():
        for name in names:
            value = normalized.get(name)
            if value is not None and str(value).strip() != "":
                picked[field] = value
                break
    return picked


def coerce_line_item(record: Mapping[str, Any], sort_order: int = 0) -> LineItem | None:
    """
    Validate and coerce one CSV record into a line item.

    Args:
        record: String-keyed record from the CSV parser
        sort_order: Position of the row within its document

    Returns:
        Computed LineItem, or None when the record has no description/name
    """
    fields = _pick(record, LINE_ITEM_ALIASES)
    if not str(fields.get("product_description", "")).strip():
        return None
    return compute_line_row(fields, sort_order=sort_order)


def normalize_estimate_status(raw: Any) -> EstimateStatus:
    """
    Map an imported status string to an estimate status.

    Accepted and declined are imported as SENT; anything unknown is DRAFT.
    """
    lower = str(raw or "").strip().lower()
    if lower in ("sent", "accepted", "declined"):
        return EstimateStatus.SENT
    if lower == "expired":
        return EstimateStatus.EXPIRED
    if lower == "converted":
        return EstimateStatus.CONVERTED
    return EstimateStatus.DRAFT


def parse_date(raw: Any) -> date | None:
    """Parse a CSV date cell. Unparseable or blank values give None."""
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw or "").strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_invoice_status(raw: Any) -> InvoiceStatus:
    """
    Map an imported status string to an invoice status.

    Statuses from other tools that mean the invoice went out (paid, overdue,
    partially paid) are imported as SENT; anything unknown is DRAFT.
    """
    lower = str(raw or "").strip().lower()
    if lower == "final":
        return InvoiceStatus.FINAL
    if lower in ("sent", "paid", "overdue", "partially paid", "partially_paid"):
        return InvoiceStatus.SENT
    return InvoiceStatus.DRAFT


def normalize_registration_type(raw: Any) -> RegistrationType | None:
    """'registered' / 'unregistered' in any case; anything else is unknown (None)."""
    lower = str(raw or "").strip().lower()
    for registration in RegistrationType:
        if lower == registration.value.lower():
            return registration
    return None


def _group_by_number(
    records: Iterable[Mapping[str, Any]],
    aliases: dict[str, tuple[str, ...]],
    number_field: str,
) -> list[tuple[dict[str, Any], list[LineItem]]]:
    """
    Group line-item rows into documents keyed by their number.

    Header fields come from the first row of each document. Rows without a
    number are skipped.

    Returns:
        (header, items) pairs in order of first appearance
    """
    grouped: dict[str, tuple[dict[str, Any], list[LineItem]]] = {}
    for index, record in enumerate(records):
        header = _pick(record, aliases)
        number = str(header.get(number_field, "")).strip()
        if not number:
            logger.warning(f"CSV row {index + 1} has no {number_field.replace('_', ' ')}, skipped")
            continue

        if number not in grouped:
            header[number_field] = number
            grouped[number] = (header, [])

        items = grouped[number][1]
        item = coerce_line_item(record, sort_order=len(items))
        if item is not None:
            items.append(item)

    return list(grouped.values())


def map_estimate_records(records: Iterable[Mapping[str, Any]], today: date) -> list[MappedEstimate]:
    """
    Group CSV records into estimates.

    Each record is one line item; consecutive and non-consecutive records
    sharing an estimate number belong to the same estimate. Header fields
    are taken from the first record of each estimate. Records without an
    estimate number are skipped.

    Args:
        records: Parsed CSV records
        today: Fallback estimate date when the record has none

    Returns:
        MappedEstimate list in order of first appearance
    """
    return [
        MappedEstimate.model_validate({
            "estimate_number": header["estimate_number"],
            "customer_name": str(header.get("customer_name", "")).strip(),
            "estimate_date": parse_date(header.get("estimate_date")) or today,
            "status": normalize_estimate_status(header.get("status")).value,
            "valid_until": parse_date(header.get("valid_until")),
            "notes": header.get("notes"),
            "payment_terms": header.get("payment_terms"),
            "subject": header.get("subject"),
            "project_name": header.get("project_name"),
            "discount_amount": header.get("discount_amount"),
            "discount_type": header.get("discount_type"),
            "items": items,
        })
        for header, items in _group_by_number(records, ESTIMATE_ALIASES, "estimate_number")
    ]


def map_sales_invoice_records(records: Iterable[Mapping[str, Any]], today: date) -> list[MappedSalesInvoice]:
    """
    Group CSV records into sales invoices, one line item per record.

    Works like map_estimate_records, keyed by invoice number. An estimate
    number on the first row links the invoice to that estimate on import.
    """
    return [
        MappedSalesInvoice.model_validate({
            "invoice_number": header["invoice_number"],
            "customer_name": str(header.get("customer_name", "")).strip(),
            "invoice_date": parse_date(header.get("invoice_date")) or today,
            "due_date": parse_date(header.get("due_date")),
            "status": normalize_invoice_status(header.get("status")),
            "notes": header.get("notes"),
            "reference": header.get("reference"),
            "discount_amount": header.get("discount_amount"),
            "discount_type": header.get("discount_type"),
            "estimate_number": header.get("estimate_number"),
            "items": items,
        })
        for header, items in _group_by_number(records, SALES_INVOICE_ALIASES, "invoice_number")
    ]


def _first_error(exc: pydantic.ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    message = first["msg"].removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


def _map_rows(
    records: Iterable[Mapping[str, Any]],
    aliases: dict[str, tuple[str, ...]],
    model: type[pydantic.BaseModel],
) -> tuple[list, RowImportResult]:
    """
    Validate one model per record.

    Records without a name count as skipped; records that fail validation
    are reported by row number and left out.
    """
    result = RowImportResult()
    mapped = []
    for row_number, record in enumerate(records, start=1):
        fields = _pick(record, aliases)
        if not str(fields.get("name", "")).strip():
            result.skipped += 1
            continue
        if "registration_type" in fields:
            fields["registration_type"] = normalize_registration_type(fields["registration_type"])
        try:
            mapped.append(model.model_validate(fields))
        except pydantic.ValidationError as e:
            result.errors.append(f"Row {row_number}: {_first_error(e)}")
    return mapped, result


def map_customer_records(records: Iterable[Mapping[str, Any]]) -> tuple[list[CustomerCreate], RowImportResult]:
    """CSV records to customers. Returns the customers and a result holding skips and row errors."""
    return _map_rows(records, CUSTOMER_ALIASES, CustomerCreate)


def map_vendor_records(records: Iterable[Mapping[str, Any]]) -> tuple[list[VendorCreate], RowImportResult]:
    """CSV records to vendors. Returns the vendors and a result holding skips and row errors."""
    return _map_rows(records, VENDOR_ALIASES, VendorCreate)


def map_item_records(records: Iterable[Mapping[str, Any]]) -> tuple[list[MappedItem], RowImportResult]:
    """
    CSV records to catalog items.

    Tax rate labels and unit codes stay as text; the item service resolves
    them against the company's rates and the unit list.
    """
    return _map_rows(records, ITEM_ALIASES, MappedItem)
