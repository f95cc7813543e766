"""
Invoice PDF rendering with reportlab.

Produces a single-document A4 invoice: issuer and client blocks, the line
item table in position order, and the subtotal / tax / discount / total
summary. All amounts come from the stored cents fields; nothing is
recomputed here.
"""

import logging
from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from core.models import Client, InvoiceDetail, Tenant
from core.money import format_cents

logger = logging.getLogger(__name__)


class DocumentRenderError(Exception):
    """PDF could not be produced."""


def _text(value: str | None) -> str:
    """Escape user text for reportlab's mini-markup, keeping line breaks."""
    return escape(value or "").replace("\n", "<br/>")


def _quantity(value) -> str:
    # 2.00 -> "2", 1.50 -> "1.5"
    normalized = value.normalize()
    return f"{normalized:f}"


class InvoiceDocumentRenderer:
    """Renders an invoice with its items to PDF bytes."""

    def __init__(self, currency_symbol: str = "$", accent_color: str = "#1a56db"):
        self.currency_symbol = currency_symbol
        self.accent = colors.HexColor(accent_color)

        styles = getSampleStyleSheet()
        self.title_style = ParagraphStyle(
            "InvoiceTitle", parent=styles["Heading1"], fontSize=22,
            textColor=self.accent, spaceAfter=12,
        )
        self.heading_style = ParagraphStyle(
            "InvoiceHeading", parent=styles["Heading2"], fontSize=12,
            textColor=colors.HexColor("#1f2937"), spaceAfter=4,
        )
        self.normal_style = ParagraphStyle(
            "InvoiceNormal", parent=styles["Normal"], fontSize=10,
            textColor=colors.HexColor("#374151"),
        )
        self.amount_style = ParagraphStyle(
            "InvoiceAmount", parent=self.normal_style, alignment=TA_RIGHT,
        )

    def _money(self, cents: int) -> str:
        return format_cents(cents, self.currency_symbol)

    def _header(self, invoice: InvoiceDetail, issuer: Tenant, client: Client) -> list:
        issuer_lines = [f"<b>{_text(issuer.display_name)}</b>"]
        for extra in (issuer.address, issuer.email, issuer.phone):
            if extra:
                issuer_lines.append(_text(extra))

        meta = (
            f"<b>Invoice #:</b> {_text(invoice.invoice_number)}<br/>"
            f"<b>Issue date:</b> {invoice.issue_date.isoformat()}<br/>"
            f"<b>Due date:</b> {invoice.due_date.isoformat()}<br/>"
            f"<b>Status:</b> {invoice.status.value.upper()}"
        )

        client_lines = [f"<b>{_text(client.name)}</b>"]
        for extra in (client.company, client.address, client.email, client.phone):
            if extra:
                client_lines.append(_text(extra))

        info = Table(
            [[Paragraph("<br/>".join(issuer_lines), self.normal_style),
              Paragraph(meta, self.normal_style)]],
            colWidths=[3.5 * inch, 3 * inch],
        )
        info.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP")]))

        return [
            Paragraph("INVOICE", self.title_style),
            info,
            Spacer(1, 0.3 * inch),
            Paragraph("Bill To", self.heading_style),
            Paragraph("<br/>".join(client_lines), self.normal_style),
            Spacer(1, 0.3 * inch),
        ]

    def _items(self, invoice: InvoiceDetail) -> Table:
        rows = [[
            Paragraph("<b>Description</b>", self.normal_style),
            Paragraph("<b>Qty</b>", self.amount_style),
            Paragraph("<b>Unit price</b>", self.amount_style),
            Paragraph("<b>Amount</b>", self.amount_style),
        ]]
        for item in sorted(invoice.items, key=lambda i: i.position):
            rows.append([
                Paragraph(_text(item.description), self.normal_style),
                Paragraph(_quantity(item.quantity), self.amount_style),
                Paragraph(self._money(item.unit_price_cents), self.amount_style),
                Paragraph(self._money(item.amount_cents), self.amount_style),
            ])

        table = Table(rows, colWidths=[3.2 * inch, 0.8 * inch, 1.2 * inch, 1.3 * inch], repeatRows=1)
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f3f4f6")),
            ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
            ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#fafafa")]),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ("TOPPADDING", (0, 0), (-1, -1), 6),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
        ]))
        return table

    def _summary(self, invoice: InvoiceDetail) -> Table:
        rows = [["", Paragraph("Subtotal", self.amount_style),
                 Paragraph(self._money(invoice.subtotal_cents), self.amount_style)]]
        if invoice.tax_amount_cents or invoice.tax_rate:
            rate = f"{invoice.tax_rate.normalize():f}"
            rows.append(["", Paragraph(f"Tax ({rate}%)", self.amount_style),
                         Paragraph(self._money(invoice.tax_amount_cents), self.amount_style)])
        if invoice.discount_cents:
            rows.append(["", Paragraph("Discount", self.amount_style),
                         Paragraph(f"-{self._money(invoice.discount_cents)}", self.amount_style)])
        rows.append(["", Paragraph("<b>Total</b>", self.amount_style),
                     Paragraph(f"<b>{self._money(invoice.total_cents)}</b>", self.amount_style)])
        if invoice.paid_amount_cents:
            rows.append(["", Paragraph("Paid", self.amount_style),
                         Paragraph(self._money(invoice.paid_amount_cents), self.amount_style)])
            rows.append(["", Paragraph("<b>Balance due</b>", self.amount_style),
                         Paragraph(f"<b>{self._money(invoice.balance_due_cents)}</b>", self.amount_style)])

        total_row = len(rows) - (3 if invoice.paid_amount_cents else 1)
        table = Table(rows, colWidths=[3.2 * inch, 2 * inch, 1.3 * inch])
        table.setStyle(TableStyle([
            ("LINEABOVE", (1, total_row), (-1, total_row), 1, colors.black),
            ("TOPPADDING", (0, 0), (-1, -1), 3),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
        ]))
        return table

    def render(self, invoice: InvoiceDetail, issuer: Tenant, client: Client) -> bytes:
        """
        Render ``invoice`` to PDF.

        Raises:
            DocumentRenderError: reportlab failed to lay out the document
        """
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer, pagesize=A4,
            topMargin=0.6 * inch, bottomMargin=0.6 * inch,
            title=f"Invoice {invoice.invoice_number}",
            author=issuer.display_name,
        )

        elements = self._header(invoice, issuer, client)
        elements.append(self._items(invoice))
        elements.append(Spacer(1, 0.2 * inch))
        elements.append(self._summary(invoice))

        if invoice.notes:
            elements += [Spacer(1, 0.3 * inch), Paragraph("Notes", self.heading_style),
                         Paragraph(_text(invoice.notes), self.normal_style)]
        if invoice.terms:
            elements += [Spacer(1, 0.2 * inch), Paragraph("Terms", self.heading_style),
                         Paragraph(_text(invoice.terms), self.normal_style)]

        try:
            doc.build(elements)
        except Exception as e:
            logger.error(f"PDF rendering failed for invoice {invoice.id}: {e}")
            raise DocumentRenderError(str(e)) from e

        return buffer.getvalue()
