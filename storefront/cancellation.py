"""
Customer-initiated cancellation requests.

Narrower than the status graph: only pending/paid/processing orders qualify, and the
customer must own the order (or be an admin). The write goes through the lifecycle as a
trusted update so history and notifications still fire.
"""
import logging
from datetime import datetime, timezone

from storefront.errors import ForbiddenError, OrderNotFoundError, OrderValidationError
from storefront.lifecycle import OrderLifecycle
from storefront.models import Actor, Order
from storefront.order_state import CANCELLATION_REQUESTABLE_STATUSES, OrderStatus

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 1000


def normalize_reason(reason) -> str:
    if not isinstance(reason, str) or not reason.strip():
        raise OrderValidationError("A cancellation reason is required")
    return reason.strip()[:MAX_REASON_LENGTH]


async def request_cancellation(lifecycle: OrderLifecycle, order_pk: int, actor: Actor, reason) -> Order:
    reason = normalize_reason(reason)

    order = await lifecycle.store.get_order(order_pk)
    if order is None:
        raise OrderNotFoundError()
    if order.owner_id != actor.id and not actor.is_admin:
        logger.warning("User %s attempted to cancel order %s owned by %s", actor.id, order.order_id, order.owner_id)
        raise ForbiddenError("You can only request cancellation of your own orders")
    if order.order_status not in CANCELLATION_REQUESTABLE_STATUSES:
        raise OrderValidationError(
            f'Cancellation cannot be requested for an order in status "{order.order_status}"'
        )

    updated = await lifecycle.update_order(
        order_pk,
        {
            "order_status": OrderStatus.CANCELLATION_REQUESTED.value,
            "cancellation_reason": reason,
            "cancellation_date": datetime.now(timezone.utc),
            "status_change_note": f"Cancellation requested by customer: {reason}",
        },
        actor=actor,
        trusted=True,
    )
    logger.info("Cancellation requested for order %s by user %s", updated.order_id, actor.id)
    return updated
