"""POST /api/actions — unified mutation endpoint."""

from uuid import UUID

from fastapi import APIRouter, Request
from pydantic import BaseModel

from api.base import success_response
from core.models import (
    ClientCreate, ClientUpdate,
    InvoiceCreate, InvoiceItemsReplace, InvoiceUpdate,
)


class ActionRequest(BaseModel):
    domain: str
    action: str
    data: dict


def _id(data: dict, key: str = "id") -> UUID:
    value = data.get(key)
    if not value:
        raise ValueError(f"'{key}' is required")
    try:
        return UUID(str(value))
    except ValueError:
        raise ValueError(f"'{key}' must be a UUID, got '{value}'")


def create_actions_router(services: dict) -> APIRouter:
    router = APIRouter()

    handlers = {
        "invoice": InvoiceHandler(services["invoice"]),
        "client": ClientHandler(services["client"]),
        "billing": BillingHandler(services["billing"]),
    }

    @router.post("/actions")
    async def perform_action(request: Request, body: ActionRequest):
        handler = handlers.get(body.domain)
        if handler is None:
            raise ValueError(
                f"Unknown domain '{body.domain}'. "
                f"Valid domains: {', '.join(sorted(handlers.keys()))}"
            )

        if body.action not in handler.ALLOWED_ACTIONS:
            raise ValueError(
                f"Action '{body.action}' not allowed on '{body.domain}'. "
                f"Allowed: {', '.join(sorted(handler.ALLOWED_ACTIONS))}"
            )

        method = getattr(handler, f"_handle_{body.action}")
        result = method(dict(body.data))
        return success_response(result).model_dump(mode="json")

    return router


# =============================================================================
# HANDLER CLASSES
# =============================================================================


class InvoiceHandler:
    ALLOWED_ACTIONS = {
        "create", "update", "replace_items", "send", "remind",
        "mark_paid", "cancel", "delete", "mark_overdue",
    }

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        invoice = self.service.create(InvoiceCreate(**data))
        return invoice.model_dump(mode="json")

    def _handle_update(self, data: dict):
        invoice_id = _id(data)
        data.pop("id")
        invoice = self.service.update(invoice_id, InvoiceUpdate(**data))
        return invoice.model_dump(mode="json")

    def _handle_replace_items(self, data: dict):
        invoice_id = _id(data)
        data.pop("id")
        invoice = self.service.replace_items(invoice_id, InvoiceItemsReplace(**data))
        return invoice.model_dump(mode="json")

    def _handle_send(self, data: dict):
        return self.service.send(_id(data)).model_dump(mode="json")

    def _handle_remind(self, data: dict):
        return self.service.remind(_id(data)).model_dump(mode="json")

    def _handle_mark_paid(self, data: dict):
        invoice = self.service.mark_paid(
            _id(data),
            amount=data.get("amount"),
            payment_method=data.get("payment_method") or "manual",
            external_ref=data.get("external_ref"),
            notes=data.get("notes"),
        )
        return invoice.model_dump(mode="json")

    def _handle_cancel(self, data: dict):
        return self.service.cancel(_id(data)).model_dump(mode="json")

    def _handle_delete(self, data: dict):
        self.service.delete(_id(data))
        return {"deleted": True}

    def _handle_mark_overdue(self, data: dict):
        marked = self.service.mark_overdue()
        return {"marked": [str(i.id) for i in marked]}


class ClientHandler:
    ALLOWED_ACTIONS = {"create", "update", "delete"}

    def __init__(self, service):
        self.service = service

    def _handle_create(self, data: dict):
        client = self.service.create(ClientCreate(**data))
        return client.model_dump(mode="json")

    def _handle_update(self, data: dict):
        client_id = _id(data)
        data.pop("id")
        client = self.service.update(client_id, ClientUpdate(**data))
        return client.model_dump(mode="json")

    def _handle_delete(self, data: dict):
        deleted = self.service.delete(_id(data))
        return {"deleted": deleted, "deactivated": not deleted}


class BillingHandler:
    ALLOWED_ACTIONS = {
        "create_checkout_session", "create_invoice_payment",
        "cancel_subscription", "resume_subscription", "update_payment_method",
    }

    def __init__(self, service):
        self.service = service

    def _handle_create_checkout_session(self, data: dict):
        plan = data.get("plan")
        if not plan:
            raise ValueError("'plan' is required")
        return self.service.create_checkout_session(plan, data.get("billing_period") or "monthly")

    def _handle_create_invoice_payment(self, data: dict):
        return self.service.create_invoice_payment(_id(data, "invoice_id"))

    def _handle_cancel_subscription(self, data: dict):
        return self.service.cancel_subscription().model_dump(mode="json")

    def _handle_resume_subscription(self, data: dict):
        return self.service.resume_subscription().model_dump(mode="json")

    def _handle_update_payment_method(self, data: dict):
        return self.service.create_payment_method_setup()
