"""
Status history recorder: one immutable audit row per accepted status change,
including the initial null -> status row written at creation.
"""
import logging
from datetime import datetime, timezone

from storefront.models import StatusHistoryEntry

logger = logging.getLogger(__name__)


async def record_status_change(
    store,
    order_pk: int,
    from_status: str | None,
    to_status: str,
    changed_by_email: str,
    note: str | None = None,
) -> StatusHistoryEntry | None:
    """
    Append a history entry. Never raises: a failed audit write must not undo the
    status change it describes, so failures are logged and None is returned.
    """
    entry = StatusHistoryEntry(
        order=order_pk,
        from_status=from_status,
        to_status=to_status,
        changed_at=datetime.now(timezone.utc),
        changed_by_email=changed_by_email,
        note=note or None,
    )
    try:
        stored = await store.add_status_history(entry)
    except Exception as e:
        logger.exception(
            "Failed to write status history for order pk=%s (%s -> %s): %s",
            order_pk,
            from_status or "initial",
            to_status,
            e,
        )
        return None
    logger.info(
        "Status change logged: %s -> %s for order pk=%s by %s",
        from_status or "initial",
        to_status,
        order_pk,
        changed_by_email,
    )
    return stored


async def get_status_history(store, order_pk: int) -> list[StatusHistoryEntry]:
    """Entries newest first."""
    return await store.list_status_history(order_pk)
