# Overview: Service-layer operations for maintenance; housekeeping of expiring engine records.

from __future__ import annotations

from ..time_utils import utcnow
from .idempotency_service import SqlIdempotencyRepository


def cleanup_idempotency_records(*, now=None) -> int:
    """
    Delete idempotency records past their expiry.

    In-flight reservations are removed too once expired; an expired key would
    be replaced on its next use anyway.
    """
    return SqlIdempotencyRepository().purge_expired(now or utcnow())
