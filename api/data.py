"""GET /api/data - unified read endpoint."""

from uuid import UUID

from fastapi import APIRouter, Query, Request
from starlette.responses import Response

from api.base import success_response
from ledger.exceptions import NotFoundError, ValidationError
from ledger.models import EstimateStatus, InvoiceStatus, PaymentStatus


VALID_TYPES = {
    "companies", "tax_rates", "withholding_tax_rates", "customers", "vendors",
    "items", "uoms", "estimates", "sales_invoices", "purchase_invoices",
    "payments", "activity",
}


def _dump_all(records) -> list[dict]:
    return [r.model_dump(mode="json") for r in records]


def _found(record, label: str, record_id):
    if record is None:
        raise NotFoundError(f"{label} {record_id} not found")
    return record.model_dump(mode="json")


def create_data_router(services: dict) -> APIRouter:
    router = APIRouter()

    company_svc = services["company"]
    customer_svc = services["customer"]
    vendor_svc = services["vendor"]
    item_svc = services["item"]
    estimate_svc = services["estimate"]
    sales_invoice_svc = services["sales_invoice"]
    purchase_invoice_svc = services["purchase_invoice"]
    payment_svc = services["payment"]
    audit = services["audit"]

    # -------------------------------------------------------------------------
    # Convenience routes (must be registered before the generic /data route)
    # -------------------------------------------------------------------------

    @router.get("/data/estimates/next_number")
    async def estimate_next_number(request: Request, company_id: UUID = Query(...)):
        number = estimate_svc.next_number(company_id)
        return success_response({"estimate_number": number}).model_dump(mode="json")

    @router.get("/data/items/picker")
    async def item_picker(request: Request, company_id: UUID = Query(...), search: str | None = Query(None)):
        items = item_svc.picker(company_id, search)
        return success_response(_dump_all(items)).model_dump(mode="json")

    @router.get("/data/items/export")
    async def item_export(request: Request, company_id: UUID = Query(...)):
        return Response(
            content=item_svc.export_csv(company_id),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="items.csv"'},
        )

    @router.get("/data/sales_invoices/{invoice_id}/payments")
    async def sales_invoice_payments(request: Request, invoice_id: UUID, company_id: UUID = Query(...)):
        summary = payment_svc.get_invoice_summary(company_id, invoice_id)
        return success_response(summary.model_dump(mode="json")).model_dump(mode="json")

    @router.get("/data/customers/{customer_id}/unpaid_invoices")
    async def customer_unpaid_invoices(request: Request, customer_id: UUID, company_id: UUID = Query(...)):
        invoices = payment_svc.get_unpaid_invoices_for_customer(company_id, customer_id)
        return success_response(_dump_all(invoices)).model_dump(mode="json")

    @router.get("/data/customers/{customer_id}/available_payments")
    async def customer_available_payments(request: Request, customer_id: UUID, company_id: UUID = Query(...)):
        payments = payment_svc.get_available_payments_for_customer(company_id, customer_id)
        return success_response(_dump_all(payments)).model_dump(mode="json")

    # -------------------------------------------------------------------------
    # Generic data endpoint
    # -------------------------------------------------------------------------

    @router.get("/data")
    async def get_data(
        request: Request,
        type: str | None = Query(None),
        company_id: UUID | None = Query(None),
        id: UUID | None = Query(None),
        search: str | None = Query(None),
        status: str | None = Query(None),
        entity_type: str | None = Query(None),
        customer_id: UUID | None = Query(None),
        vendor_id: UUID | None = Query(None),
        include: str | None = Query(None),
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        if type is None:
            raise ValidationError("'type' query parameter is required")

        if type not in VALID_TYPES:
            raise ValidationError(f"Unknown type '{type}'. Valid types: {', '.join(sorted(VALID_TYPES))}")

        if type == "companies":
            return success_response(_dump_all(company_svc.list_for_user())).model_dump(mode="json")

        if company_id is None:
            raise ValidationError(f"'{type}' type requires 'company_id' parameter")

        includes = set(include.split(",")) if include else set()

        if type == "tax_rates":
            data = _dump_all(company_svc.list_tax_rates(company_id))

        elif type == "withholding_tax_rates":
            data = _dump_all(company_svc.list_withholding_rates(company_id))

        elif type == "customers":
            data = _handle_parties(customer_svc, "Customer", company_id, id, search, limit, offset)

        elif type == "vendors":
            data = _handle_parties(vendor_svc, "Vendor", company_id, id, search, limit, offset)

        elif type == "items":
            if id:
                data = _found(item_svc.get_by_id(company_id, id), "Item", id)
            else:
                data = _dump_all(item_svc.list_all(company_id, search, limit, offset))

        elif type == "uoms":
            company_svc.require_owned(company_id)
            data = _dump_all(item_svc.list_uoms())

        elif type == "estimates":
            if id:
                data = _found(estimate_svc.get_by_id(company_id, id), "Estimate", id)
            else:
                data = _dump_all(estimate_svc.list_all(
                    company_id, search, EstimateStatus(status) if status else None,
                    customer_id, limit, offset,
                ))

        elif type == "sales_invoices":
            if id:
                data = _found(sales_invoice_svc.get_by_id(company_id, id), "Sales invoice", id)
                if "payments" in includes:
                    data["payments"] = payment_svc.get_invoice_summary(company_id, id).model_dump(mode="json")
            else:
                data = _dump_all(sales_invoice_svc.list_all(
                    company_id, search, InvoiceStatus(status) if status else None,
                    customer_id, limit, offset,
                ))

        elif type == "purchase_invoices":
            if id:
                data = _found(purchase_invoice_svc.get_by_id(company_id, id), "Purchase invoice", id)
            else:
                data = _dump_all(purchase_invoice_svc.list_all(
                    company_id, search, InvoiceStatus(status) if status else None,
                    vendor_id, limit, offset,
                ))

        elif type == "payments":
            if id:
                data = _found(payment_svc.get_by_id(company_id, id), "Payment", id)
                if "allocations" in includes:
                    data["allocations"] = _dump_all(payment_svc.list_allocations(company_id, id))
            else:
                data = _dump_all(payment_svc.list_all(
                    company_id, customer_id, PaymentStatus(status) if status else None,
                    limit, offset,
                ))

        elif entity_type and id:
            company_svc.require_owned(company_id)
            data = audit.get_entity_history(entity_type, id, company_id)

        else:
            company_svc.require_owned(company_id)
            data = audit.get_company_activity(company_id, limit)

        return success_response(data).model_dump(mode="json")

    return router


def _handle_parties(svc, label, company_id, id, search, limit, offset):
    """Customers and vendors share the same read shape."""
    if id:
        return _found(svc.get_by_id(company_id, id), label, id)

    if search:
        return _dump_all(svc.search(company_id, search, limit))

    return _dump_all(svc.list_all(company_id, limit, offset))
