"""POST /webhooks/stripe — payment processor event intake."""

import logging

from fastapi import APIRouter, Request
from starlette.responses import JSONResponse

from api.base import success_response, error_response, ErrorCodes
from clients.stripe_client import StripeClient, WebhookVerificationError
from core.payment_events import parse_payment_event
from core.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


def create_webhooks_router(stripe: StripeClient | None, reconciliation: ReconciliationService) -> APIRouter:
    """
    Create the webhook router.

    Authenticity is checked here, before reconciliation sees the event. A
    bad signature gets 400 so Stripe surfaces it; anything that fails after
    verification propagates as 500 and Stripe redelivers.
    """
    router = APIRouter(tags=["webhooks"])

    @router.post("/stripe")
    async def stripe_webhook(request: Request):
        if stripe is None:
            return JSONResponse(
                status_code=503,
                content=error_response(
                    ErrorCodes.SERVICE_UNAVAILABLE, "Payments are not configured",
                ).model_dump(mode="json"),
            )

        payload = await request.body()
        signature = request.headers.get("Stripe-Signature", "")

        try:
            event = stripe.verify_webhook(payload, signature)
        except WebhookVerificationError as e:
            return JSONResponse(
                status_code=400,
                content=error_response(ErrorCodes.INVALID_SIGNATURE, str(e)).model_dump(mode="json"),
            )

        result = reconciliation.reconcile(parse_payment_event(event))
        return success_response({
            "received": True,
            "event_id": result.event_id,
            "outcome": result.outcome.value,
        }).model_dump(mode="json")

    return router
