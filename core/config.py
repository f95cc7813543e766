"""Billing configuration. Secrets live in Vault; these are the non-secret tunables."""

from pydantic import BaseModel, Field


class BillingConfig(BaseModel):
    """
    Invoicing and billing configuration.

    Durations are in days; amounts are never configured here.
    """

    default_payment_terms_days: int = Field(
        default=30,
        description="Due date offset from issue date when none is given",
        ge=0,
        le=365,
    )
    currency: str = Field(
        default="usd",
        description="ISO currency code for payment intents",
        min_length=3,
        max_length=3,
    )
    currency_symbol: str = Field(
        default="$",
        description="Symbol used on PDFs and in emails",
    )
    default_page_size: int = Field(
        default=50,
        description="Invoices per page when the caller does not say",
        ge=1,
        le=200,
    )
    max_page_size: int = Field(
        default=200,
        ge=1,
        le=1000,
    )

    # Application
    frontend_url: str = Field(
        default="http://localhost:3000",
        description="Base URL for checkout return pages and billing links",
    )
    app_name: str = Field(
        default="Invoicing",
        description="Application name for emails",
    )

    @property
    def checkout_success_url(self) -> str:
        return f"{self.frontend_url}/settings/billing?success=true&session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.frontend_url}/settings/billing?cancelled=true"

    @property
    def billing_url(self) -> str:
        return f"{self.frontend_url}/settings/billing"
