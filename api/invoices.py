"""GET /api/invoices/{id}/pdf — invoice document download."""

from uuid import UUID

from fastapi import APIRouter
from starlette.responses import Response


def create_invoices_router(services: dict) -> APIRouter:
    router = APIRouter()

    invoice_svc = services["invoice"]

    @router.get("/invoices/{invoice_id}/pdf")
    async def invoice_pdf(invoice_id: UUID):
        filename, pdf = invoice_svc.render_pdf(invoice_id)
        return Response(
            content=pdf,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return router
