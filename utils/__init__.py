"""Utility modules for cross-cutting concerns."""

from utils.timezone import now_utc, today_utc, start_of_month, from_unix, to_utc, parse_iso
from utils.tenant_context import (
    get_current_tenant_id,
    peek_current_tenant_id,
    set_current_tenant_id,
    clear_current_tenant_id,
    tenant_context,
)
