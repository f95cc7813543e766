"""
Email gateway client for sending invoice emails via HTTP gateway.

Uses HMAC-SHA256 signature for request authentication. Bodies are plain
text; PDFs travel base64-encoded in the ``attachments`` list.
"""

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import date

import requests

logger = logging.getLogger(__name__)

SENDERS = ("billing", "system")


class EmailGatewayError(Exception):
    """Raised when email gateway request fails."""


@dataclass(frozen=True)
class Attachment:
    """File attached to an outgoing email."""

    filename: str
    content: bytes
    content_type: str = "application/pdf"

    def to_payload(self) -> dict:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "content": base64.b64encode(self.content).decode("ascii"),
        }


class EmailGatewayClient:
    """Send emails via HTTP gateway with HMAC signature verification."""

    def __init__(self, gateway_url: str, api_key: str, hmac_secret: str, timeout: float = 10):
        """
        Initialize with gateway credentials.

        Args:
            gateway_url: Full URL to the email gateway endpoint
            api_key: API key for X-API-Key header
            hmac_secret: Secret for HMAC-SHA256 signature
            timeout: Seconds to wait for the gateway

        Raises:
            ValueError: If any credential is empty
        """
        if not gateway_url:
            raise ValueError("gateway_url is required")
        if not api_key:
            raise ValueError("api_key is required")
        if not hmac_secret:
            raise ValueError("hmac_secret is required")

        self.gateway_url = gateway_url
        self.api_key = api_key
        self.hmac_secret = hmac_secret
        self.timeout = timeout

    def sign(self, payload_json: str) -> str:
        """HMAC-SHA256 hex digest the gateway expects in X-Signature."""
        return hmac.new(
            self.hmac_secret.encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _sign_and_send(self, payload: dict) -> None:
        """
        Sign payload with HMAC and send to gateway.

        Raises:
            EmailGatewayError: On any failure. Never retried here; the
                caller's state is left unchanged and the user can try again.
        """
        payload_json = json.dumps(payload, separators=(",", ":"))

        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-Signature": self.sign(payload_json),
        }

        try:
            response = requests.post(
                self.gateway_url,
                data=payload_json,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Email gateway connection failed: {e}")
            raise EmailGatewayError(f"Connection failed: {e}")

        try:
            response_data = response.json()
        except ValueError:
            logger.error(f"Email gateway returned invalid JSON: {response.text}")
            raise EmailGatewayError("Invalid response from gateway")

        if response.status_code != 200 or not response_data.get("success"):
            error_msg = response_data.get("message", "Unknown error")
            logger.error(f"Email gateway error: {error_msg}")
            raise EmailGatewayError(f"Gateway error: {error_msg}")

    def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        sender: str = "billing",
        reply_to: str | None = None,
        attachments: list[Attachment] | None = None,
    ) -> None:
        """
        Send an arbitrary email via gateway.

        Args:
            to: Recipient email address
            subject: Email subject line
            body: Plain text email body
            sender: Sender identity, "billing" or "system"
            reply_to: Address replies should go to (the issuing business)
            attachments: Files to attach

        Raises:
            ValueError: If sender is invalid
            EmailGatewayError: On gateway failure
        """
        if sender not in SENDERS:
            raise ValueError(f"sender must be one of {SENDERS}, got '{sender}'")

        payload = {
            "type": "custom",
            "email": to,
            "subject": subject,
            "body": body,
            "sender": sender,
        }
        if reply_to:
            payload["reply_to"] = reply_to
        if attachments:
            payload["attachments"] = [a.to_payload() for a in attachments]

        self._sign_and_send(payload)
        logger.info(f"Email sent to {to}: {subject}")

    def send_invoice_email(
        self,
        to: str,
        client_name: str,
        issuer_name: str,
        invoice_number: str,
        amount_due: str,
        due_date: date,
        pdf: bytes,
        reply_to: str | None = None,
    ) -> None:
        """Email an invoice PDF to the client."""
        body = (
            f"Hi {client_name},\n\n"
            f"{issuer_name} has sent you invoice {invoice_number} for {amount_due}, "
            f"due on {due_date.isoformat()}.\n\n"
            "The invoice is attached as a PDF.\n\n"
            f"Thank you,\n{issuer_name}"
        )
        self.send_email(
            to=to,
            subject=f"Invoice {invoice_number} from {issuer_name}",
            body=body,
            reply_to=reply_to,
            attachments=[Attachment(filename=f"{invoice_number}.pdf", content=pdf)],
        )

    def send_reminder_email(
        self,
        to: str,
        client_name: str,
        issuer_name: str,
        invoice_number: str,
        amount_due: str,
        due_date: date,
        overdue: bool,
        reply_to: str | None = None,
    ) -> None:
        """Remind the client that an invoice is awaiting payment."""
        state = "is now overdue" if overdue else f"is due on {due_date.isoformat()}"
        body = (
            f"Hi {client_name},\n\n"
            f"This is a friendly reminder that invoice {invoice_number} for {amount_due} {state}.\n\n"
            f"Thank you,\n{issuer_name}"
        )
        subject = f"{'Overdue' if overdue else 'Reminder'}: invoice {invoice_number} from {issuer_name}"
        self.send_email(to=to, subject=subject, body=body, reply_to=reply_to)

    def send_receipt_email(
        self,
        to: str,
        client_name: str,
        issuer_name: str,
        invoice_number: str,
        amount_paid: str,
        reply_to: str | None = None,
    ) -> None:
        """Confirm to the client that their payment was received."""
        body = (
            f"Hi {client_name},\n\n"
            f"We received your payment of {amount_paid} for invoice {invoice_number}. "
            "No further action is needed.\n\n"
            f"Thank you,\n{issuer_name}"
        )
        self.send_email(
            to=to,
            subject=f"Payment received for invoice {invoice_number}",
            body=body,
            reply_to=reply_to,
        )

    def send_past_due_notice(self, to: str, name: str, billing_url: str) -> None:
        """Tell a tenant their subscription renewal failed."""
        body = (
            f"Hi {name},\n\n"
            "We couldn't process the latest payment for your subscription. "
            f"Please update your payment method at {billing_url} to keep your plan.\n"
        )
        self.send_email(to=to, subject="Action needed: subscription payment failed", body=body, sender="system")
