"""
Per-tenant invoice numbering.

Numbers look like ``INV-2026-0042``: the issue year followed by the tenant's
ordinal, zero padded to four digits (ordinals past 9999 simply grow wider).
Ordinals come from a per-tenant counter that only ever increases; an aborted
creation leaves a gap, which is acceptable. Allocation of the ordinal and
insertion of the invoice row happen in one store transaction, so two
concurrent creations for the same tenant can never share an ordinal.
"""

from datetime import date

PREFIX = "INV"
ORDINAL_WIDTH = 4

# Unique violations on (user_id, invoice_number) are retried this many times
# in total before the caller gets a ConflictError.
MAX_ALLOCATION_ATTEMPTS = 3


def format_invoice_number(issue_date: date, ordinal: int) -> str:
    """Build the human-readable number for ``ordinal`` issued on ``issue_date``."""
    if ordinal < 1:
        raise ValueError(f"Invoice ordinal must be positive, got {ordinal}")
    return f"{PREFIX}-{issue_date.year}-{ordinal:0{ORDINAL_WIDTH}d}"
