"""POST /api/actions - unified mutation endpoint."""

import logging
from uuid import UUID

import pydantic
from fastapi import APIRouter, Request
from pydantic import BaseModel
from starlette.responses import JSONResponse

from api.base import APIResponse, ErrorCodes, error_response, status_for, success_response
from ledger.calculator import apply_row_patch, billable_rows, compute_document_totals, compute_line_row
from ledger.csv_mapping import map_estimate_records, map_sales_invoice_records
from ledger.exceptions import LedgerError, NotFoundError, ValidationError
from ledger.models import (
    CompanyCreate, CompanyUpdate, SalesTaxRateCreate, WithholdingTaxRateCreate,
    CustomerCreate, CustomerUpdate,
    VendorCreate, VendorUpdate,
    ItemCreate, ItemUpdate,
    DocumentInput, EstimateCreate, EstimateStatus, EstimateUpdate, MappedEstimate,
    SalesInvoiceCreate, SalesInvoiceUpdate, MappedSalesInvoice,
    PurchaseInvoiceCreate, PurchaseInvoiceUpdate,
    PaymentCreate, PaymentUpdate,
)
from utils.timezone import today_utc

logger = logging.getLogger(__name__)


class ActionRequest(BaseModel):
    domain: str
    action: str
    data: dict


def build_handlers(services: dict) -> dict:
    """Map each action domain to its handler."""
    return {
        "company": CompanyHandler(services["company"]),
        "customer": CustomerHandler(services["customer"]),
        "vendor": VendorHandler(services["vendor"]),
        "item": ItemHandler(services["item"]),
        "estimate": EstimateHandler(services["estimate"]),
        "sales_invoice": SalesInvoiceHandler(services["sales_invoice"]),
        "purchase_invoice": PurchaseInvoiceHandler(services["purchase_invoice"]),
        "payment": PaymentHandler(services["payment"]),
        "document": DocumentHandler(services["company"], services["item"]),
    }


def _schema_error_message(exc: pydantic.ValidationError) -> str:
    """First validation problem as a readable sentence."""
    first = exc.errors()[0]
    message = first["msg"].removeprefix("Value error, ")
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {message}" if location else message


def dispatch_action(
    handlers: dict,
    domain: str,
    action: str,
    data: dict,
    request_id: str | None = None,
) -> APIResponse:
    """
    Run one action and wrap the outcome in an APIResponse.

    Never raises: ledger errors, input validation failures and unknown
    domains or actions all come back as {success: false, error}.

    Args:
        handlers: Domain -> handler, as built by build_handlers
        domain: e.g. "estimate"
        action: e.g. "convert"
        data: Action payload
        request_id: Request ID to echo in meta

    Returns:
        APIResponse with the action's result as data
    """
    handler = handlers.get(domain)
    if handler is None:
        return error_response(
            ErrorCodes.INVALID_REQUEST,
            f"Unknown domain '{domain}'. Valid domains: {', '.join(sorted(handlers.keys()))}",
            request_id,
        )

    if action not in handler.ALLOWED_ACTIONS:
        return error_response(
            ErrorCodes.INVALID_REQUEST,
            f"Action '{action}' not allowed on '{domain}'. "
            f"Allowed: {', '.join(sorted(handler.ALLOWED_ACTIONS))}",
            request_id,
        )

    method = getattr(handler, f"_handle_{action}")
    try:
        result = method(dict(data))
    except LedgerError as e:
        return error_response(e.code, str(e), request_id)
    except pydantic.ValidationError as e:
        return error_response(ErrorCodes.VALIDATION_ERROR, _schema_error_message(e), request_id)
    except KeyError as e:
        return error_response(ErrorCodes.INVALID_REQUEST, f"Missing field {e}", request_id)
    except ValueError as e:
        return error_response(ErrorCodes.INVALID_REQUEST, str(e), request_id)
    except Exception:
        logger.exception(f"Action {domain}.{action} failed")
        return error_response(ErrorCodes.INTERNAL_ERROR, "An internal error occurred", request_id)

    return success_response(result, request_id)


def create_actions_router(services: dict) -> APIRouter:
    router = APIRouter()
    handlers = build_handlers(services)

    @router.post("/actions")
    async def perform_action(request: Request, body: ActionRequest):
        response = dispatch_action(
            handlers, body.domain, body.action, body.data,
            getattr(request.state, "request_id", None),
        )
        return JSONResponse(status_code=status_for(response), content=response.model_dump(mode="json"))

    return router


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================


def _uuid(data: dict, key: str) -> UUID:
    """Required UUID field of a payload."""
    value = data.pop(key, None)
    if value in (None, ""):
        raise ValidationError(f"'{key}' is required")
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError(f"'{key}' is not a valid id") from None


def _ids(data: dict, key: str = "ids") -> list[UUID]:
    """List of UUIDs from a payload; an empty or missing list is an empty selection."""
    try:
        return [UUID(str(value)) for value in data.get(key) or []]
    except ValueError:
        raise ValidationError(f"'{key}' contains an invalid id") from None


def _deleted(deleted: bool, label: str, record_id: UUID) -> dict:
    if not deleted:
        raise NotFoundError(f"{label} {record_id} not found")
    return {"deleted": True}


# =============================================================================
# HANDLER CLASSES
# =============================================================================


class CompanyHandler:
    ALLOWED_ACTIONS = {
        "create", "update",
        "create_tax_rate", "delete_tax_rate",
        "create_withholding_rate", "delete_withholding_rate",
    }

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        company = self.service.create(CompanyCreate(**data))
        return company.model_dump(mode="json")

    def _handle_update(self, data: dict):
        company_id = _uuid(data, "id")
        company = self.service.update(company_id, CompanyUpdate(**data))
        return company.model_dump(mode="json")

    def _handle_create_tax_rate(self, data: dict):
        company_id = _uuid(data, "company_id")
        rate = self.service.create_tax_rate(company_id, SalesTaxRateCreate(**data))
        return rate.model_dump(mode="json")

    def _handle_delete_tax_rate(self, data: dict):
        company_id = _uuid(data, "company_id")
        rate_id = _uuid(data, "id")
        return _deleted(self.service.delete_tax_rate(company_id, rate_id), "Sales tax rate", rate_id)

    def _handle_create_withholding_rate(self, data: dict):
        company_id = _uuid(data, "company_id")
        rate = self.service.create_withholding_rate(company_id, WithholdingTaxRateCreate(**data))
        return rate.model_dump(mode="json")

    def _handle_delete_withholding_rate(self, data: dict):
        company_id = _uuid(data, "company_id")
        rate_id = _uuid(data, "id")
        return _deleted(self.service.delete_withholding_rate(company_id, rate_id), "Withholding tax rate", rate_id)


class CustomerHandler:
    ALLOWED_ACTIONS = {"create", "update", "delete", "delete_many", "import"}

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        company_id = _uuid(data, "company_id")
        customer = self.service.create(company_id, CustomerCreate(**data))
        return customer.model_dump(mode="json")

    def _handle_update(self, data: dict):
        company_id = _uuid(data, "company_id")
        customer_id = _uuid(data, "id")
        customer = self.service.update(company_id, customer_id, CustomerUpdate(**data))
        return customer.model_dump(mode="json")

    def _handle_delete(self, data: dict):
        company_id = _uuid(data, "company_id")
        customer_id = _uuid(data, "id")
        return _deleted(self.service.delete(company_id, customer_id), "Customer", customer_id)

    def _handle_delete_many(self, data: dict):
        company_id = _uuid(data, "company_id")
        return {"deleted": self.service.delete_many(company_id, _ids(data))}

    def _handle_import(self, data: dict):
        """Import customers from flat CSV records, one per row."""
        company_id = _uuid(data, "company_id")
        result = self.service.import_customers(company_id, data.get("records") or [])
        return result.model_dump(mode="json")


class VendorHandler:
    ALLOWED_ACTIONS = {"create", "update", "delete", "delete_many", "import"}

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        company_id = _uuid(data, "company_id")
        vendor = self.service.create(company_id, VendorCreate(**data))
        return vendor.model_dump(mode="json")

    def _handle_update(self, data: dict):
        company_id = _uuid(data, "company_id")
        vendor_id = _uuid(data, "id")
        vendor = self.service.update(company_id, vendor_id, VendorUpdate(**data))
        return vendor.model_dump(mode="json")

    def _handle_delete(self, data: dict):
        company_id = _uuid(data, "company_id")
        vendor_id = _uuid(data, "id")
        return _deleted(self.service.delete(company_id, vendor_id), "Vendor", vendor_id)

    def _handle_delete_many(self, data: dict):
        company_id = _uuid(data, "company_id")
        return {"deleted": self.service.delete_many(company_id, _ids(data))}

    def _handle_import(self, data: dict):
        company_id = _uuid(data, "company_id")
        result = self.service.import_vendors(company_id, data.get("records") or [])
        return result.model_dump(mode="json")


class ItemHandler:
    ALLOWED_ACTIONS = {"create", "update", "delete", "delete_many", "duplicate", "import"}

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        company_id = _uuid(data, "company_id")
        item = self.service.create(company_id, ItemCreate(**data))
        return item.model_dump(mode="json")

    def _handle_update(self, data: dict):
        company_id = _uuid(data, "company_id")
        item_id = _uuid(data, "id")
        item = self.service.update(company_id, item_id, ItemUpdate(**data))
        return item.model_dump(mode="json")

    def _handle_delete(self, data: dict):
        company_id = _uuid(data, "company_id")
        item_id = _uuid(data, "id")
        return _deleted(self.service.delete(company_id, item_id), "Item", item_id)

    def _handle_delete_many(self, data: dict):
        company_id = _uuid(data, "company_id")
        return {"deleted": self.service.delete_many(company_id, _ids(data))}

    def _handle_duplicate(self, data: dict):
        company_id = _uuid(data, "company_id")
        item = self.service.duplicate(company_id, _uuid(data, "id"))
        return item.model_dump(mode="json")

    def _handle_import(self, data: dict):
        company_id = _uuid(data, "company_id")
        result = self.service.import_items(company_id, data.get("records") or [])
        return result.model_dump(mode="json")


class EstimateHandler:
    ALLOWED_ACTIONS = {
        "create", "update", "delete", "delete_many",
        "set_status", "convert", "clone", "import",
    }

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        company_id = _uuid(data, "company_id")
        estimate = self.service.create(company_id, EstimateCreate(**data))
        return estimate.model_dump(mode="json")

    def _handle_update(self, data: dict):
        company_id = _uuid(data, "company_id")
        estimate_id = _uuid(data, "id")
        estimate = self.service.update(company_id, estimate_id, EstimateUpdate(**data))
        return estimate.model_dump(mode="json")

    def _handle_delete(self, data: dict):
        company_id = _uuid(data, "company_id")
        estimate_id = _uuid(data, "id")
        return _deleted(self.service.delete(company_id, estimate_id), "Estimate", estimate_id)

    def _handle_delete_many(self, data: dict):
        company_id = _uuid(data, "company_id")
        return {"deleted": self.service.delete_many(company_id, _ids(data))}

    def _handle_set_status(self, data: dict):
        company_id = _uuid(data, "company_id")
        estimate_id = _uuid(data, "id")
        estimate = self.service.set_status(company_id, estimate_id, EstimateStatus(data["status"]))
        return estimate.model_dump(mode="json")

    def _handle_convert(self, data: dict):
        company_id = _uuid(data, "company_id")
        invoice = self.service.convert_to_invoice(company_id, _uuid(data, "id"))
        return invoice.model_dump(mode="json")

    def _handle_clone(self, data: dict):
        company_id = _uuid(data, "company_id")
        estimate = self.service.clone(company_id, _uuid(data, "id"))
        return estimate.model_dump(mode="json")

    def _handle_import(self, data: dict):
        """
        Import estimates.

        Accepts either "estimates" (already mapped) or "records" (flat CSV
        rows, one per line item, grouped by estimate number here).
        """
        company_id = _uuid(data, "company_id")
        if data.get("estimates") is not None:
            mapped = [MappedEstimate(**est) for est in data["estimates"]]
        else:
            mapped = map_estimate_records(data.get("records") or [], today_utc())

        result = self.service.import_estimates(company_id, mapped)
        return {**result.model_dump(mode="json"), "skipped": result.skipped}


class SalesInvoiceHandler:
    ALLOWED_ACTIONS = {"create", "update", "delete", "import"}

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        company_id = _uuid(data, "company_id")
        invoice = self.service.create(company_id, SalesInvoiceCreate(**data))
        return invoice.model_dump(mode="json")

    def _handle_update(self, data: dict):
        company_id = _uuid(data, "company_id")
        invoice_id = _uuid(data, "id")
        invoice = self.service.update(company_id, invoice_id, SalesInvoiceUpdate(**data))
        return invoice.model_dump(mode="json")

    def _handle_delete(self, data: dict):
        company_id = _uuid(data, "company_id")
        invoice_id = _uuid(data, "id")
        return _deleted(self.service.delete(company_id, invoice_id), "Sales invoice", invoice_id)

    def _handle_import(self, data: dict):
        """Import sales invoices, like EstimateHandler._handle_import ("invoices" or "records")."""
        company_id = _uuid(data, "company_id")
        if data.get("invoices") is not None:
            mapped = [MappedSalesInvoice(**inv) for inv in data["invoices"]]
        else:
            mapped = map_sales_invoice_records(data.get("records") or [], today_utc())

        result = self.service.import_invoices(company_id, mapped)
        return {**result.model_dump(mode="json"), "skipped": result.skipped}


class PurchaseInvoiceHandler:
    ALLOWED_ACTIONS = {"create", "update", "delete"}

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        company_id = _uuid(data, "company_id")
        invoice = self.service.create(company_id, PurchaseInvoiceCreate(**data))
        return invoice.model_dump(mode="json")

    def _handle_update(self, data: dict):
        company_id = _uuid(data, "company_id")
        invoice_id = _uuid(data, "id")
        invoice = self.service.update(company_id, invoice_id, PurchaseInvoiceUpdate(**data))
        return invoice.model_dump(mode="json")

    def _handle_delete(self, data: dict):
        company_id = _uuid(data, "company_id")
        invoice_id = _uuid(data, "id")
        return _deleted(self.service.delete(company_id, invoice_id), "Purchase invoice", invoice_id)


class PaymentHandler:
    ALLOWED_ACTIONS = {"create", "update", "delete", "allocate", "remove_allocation"}

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        company_id = _uuid(data, "company_id")
        payment = self.service.create(company_id, PaymentCreate(**data))
        return payment.model_dump(mode="json")

    def _handle_update(self, data: dict):
        company_id = _uuid(data, "company_id")
        payment_id = _uuid(data, "id")
        payment = self.service.update(company_id, payment_id, PaymentUpdate(**data))
        return payment.model_dump(mode="json")

    def _handle_delete(self, data: dict):
        company_id = _uuid(data, "company_id")
        payment_id = _uuid(data, "id")
        return _deleted(self.service.delete(company_id, payment_id), "Payment", payment_id)

    def _handle_allocate(self, data: dict):
        company_id = _uuid(data, "company_id")
        allocation = self.service.allocate(
            company_id,
            _uuid(data, "payment_id"),
            _uuid(data, "sales_invoice_id"),
            data.get("amount"),
        )
        return allocation.model_dump(mode="json")

    def _handle_remove_allocation(self, data: dict):
        company_id = _uuid(data, "company_id")
        status = self.service.remove_allocation(company_id, _uuid(data, "id"))
        return {"deleted": True, "payment_status": status.value}


class DocumentHandler:
    """Live form calculations. Nothing is stored."""

    ALLOWED_ACTIONS = {"compute_row", "patch_row", "preview_totals", "lines_from_items"}

    def __init__(self, companies, items):
        self.companies = companies
        self.items = items

    def _handle_compute_row(self, data: dict):
        return compute_line_row(data).model_dump(mode="json")

    def _handle_patch_row(self, data: dict):
        row = apply_row_patch(data.get("row") or {}, data.get("patch") or {})
        return row.model_dump(mode="json")

    def _handle_preview_totals(self, data: dict):
        company_id = _uuid(data, "company_id")
        self.companies.require_owned(company_id)
        form = DocumentInput(**data)
        rate = self.companies.get_tax_rate_percent(company_id, form.sales_tax_rate_id)
        lines = billable_rows(form.items)
        totals = compute_document_totals(lines, form.discount_amount, form.discount_type, rate)
        return {
            "items": [line.model_dump(mode="json") for line in lines],
            "totals": totals.model_dump(mode="json"),
        }

    def _handle_lines_from_items(self, data: dict):
        """Rows for catalog items picked into the form: {"items": [{"id", "quantity"}]}."""
        company_id = _uuid(data, "company_id")
        selections = []
        for picked in data.get("items") or []:
            picked = dict(picked)
            selections.append((_uuid(picked, "id"), picked.get("quantity") or 1))
        lines = self.items.lines_for_items(company_id, selections)
        return [line.model_dump(mode="json") for line in lines]
