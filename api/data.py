"""GET /api/data — unified read endpoint."""

from uuid import UUID

from fastapi import APIRouter, Query, Request

from api.base import success_response
from core.models import InvoiceStatus


VALID_TYPES = {
    "invoices", "invoice", "invoice_stats", "clients", "client",
    "subscription", "billing_history", "payments", "activity",
}


def _uuid(value: str | None, name: str) -> UUID:
    if not value:
        raise ValueError(f"'{name}' parameter is required")
    try:
        return UUID(value)
    except ValueError:
        raise ValueError(f"'{name}' must be a UUID, got '{value}'")


def create_data_router(services: dict) -> APIRouter:
    router = APIRouter()

    invoice_svc = services["invoice"]
    client_svc = services["client"]
    billing_svc = services["billing"]
    audit = services["audit"]

    @router.get("/data")
    async def get_data(
        request: Request,
        type: str | None = Query(None),
        id: str | None = Query(None),
        search: str | None = Query(None),
        status: str | None = Query(None),
        client_id: str | None = Query(None),
        include: str | None = Query(None),
        filter: str | None = Query(None),
        limit: int | None = Query(None, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        if type is None:
            raise ValueError("'type' query parameter is required")

        if type not in VALID_TYPES:
            raise ValueError(f"Unknown type '{type}'. Valid types: {', '.join(sorted(VALID_TYPES))}")

        includes = set(include.split(",")) if include else set()

        if type == "invoices":
            return _handle_invoices(invoice_svc, status, client_id, limit, offset)

        if type == "invoice":
            return _handle_invoice(invoice_svc, id, includes)

        if type == "invoice_stats":
            return success_response(invoice_svc.stats().model_dump(mode="json")).model_dump(mode="json")

        if type == "payments":
            payments = invoice_svc.payments(_uuid(id, "id"))
            return success_response(
                [p.model_dump(mode="json") for p in payments]
            ).model_dump(mode="json")

        if type == "clients":
            clients = client_svc.list_all(search=search, include_inactive=filter == "all")
            return success_response(
                [c.model_dump(mode="json") for c in clients]
            ).model_dump(mode="json")

        if type == "client":
            client, stats = client_svc.get_with_stats(_uuid(id, "id"))
            data = client.model_dump(mode="json")
            data["stats"] = stats.model_dump(mode="json")
            return success_response(data).model_dump(mode="json")

        if type == "subscription":
            return _handle_subscription(billing_svc)

        if type == "billing_history":
            return _handle_billing_history(billing_svc)

        if type == "activity":
            entries = audit.get_tenant_activity(request.state.user_id, limit or 100)
            return success_response(
                [e.model_dump(mode="json") for e in entries]
            ).model_dump(mode="json")

    return router


def _handle_invoices(invoice_svc, status, client_id, limit, offset):
    status_filter = None
    if status:
        try:
            status_filter = InvoiceStatus(status)
        except ValueError:
            raise ValueError(
                f"Unknown status '{status}'. Valid statuses: {', '.join(s.value for s in InvoiceStatus)}"
            )

    invoices, total = invoice_svc.list_all(
        status=status_filter,
        client_id=_uuid(client_id, "client_id") if client_id else None,
        limit=limit,
        offset=offset,
    )
    return success_response({
        "invoices": [i.model_dump(mode="json") for i in invoices],
        "total": total,
        "offset": offset,
    }).model_dump(mode="json")


def _handle_invoice(invoice_svc, id, includes):
    invoice = invoice_svc.get(_uuid(id, "id"))
    data = invoice.model_dump(mode="json")
    if "payments" in includes:
        data["payments"] = [p.model_dump(mode="json") for p in invoice_svc.payments(invoice.id)]
    return success_response(data).model_dump(mode="json")


def _handle_subscription(billing_svc):
    result = billing_svc.get_subscription()
    subscription = result["subscription"]
    return success_response({
        "plan": result["plan"].value,
        "plan_expires_at": result["plan_expires_at"].isoformat() if result["plan_expires_at"] else None,
        "subscription": subscription.model_dump(mode="json") if subscription else None,
        "cancel_scheduled": subscription.cancel_scheduled if subscription else False,
    }).model_dump(mode="json")


def _handle_billing_history(billing_svc):
    history = billing_svc.billing_history()
    return success_response([
        {**entry, "date": entry["date"].isoformat() if entry["date"] else None}
        for entry in history
    ]).model_dump(mode="json")
