import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import Field
from pydantic.alias_generators import to_camel

from storefront.cancellation import request_cancellation
from storefront.config import Settings
from storefront.deps import get_lifecycle, get_settings, get_store, require_actor
from storefront.errors import ForbiddenError, OrderNotFoundError, OrderValidationError
from storefront.history import get_status_history
from storefront.lifecycle import OrderLifecycle
from storefront.models import Actor, CamelModel, LineItem, Money, Order, OrderCreate, OrderUpdate
from storefront.order_state import OrderStatus, get_valid_next_statuses, is_terminal_status
from storefront.payments import WebhookSignatureError, handle_stripe_event, verify_stripe_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

# What a customer may touch on their own order through PUT
CUSTOMER_UPDATABLE_FIELDS = frozenset({
    "order_status",
    "status_change_note",
    "cancellation_reason",
    "cancellation_date",
})


class CreateOrderBody(CamelModel):
    """Client create payload. There is no owner field: ownership comes from the caller."""
    order_status: OrderStatus = Field(default=OrderStatus.PENDING, validate_default=True)
    items: list[LineItem] = Field(..., min_length=1)
    subtotal: Money = Decimal("0")
    shipping: Money = Decimal("0")
    total: Money = Decimal("0")
    payment_intent_id: str | None = None


class CancellationBody(CamelModel):
    reason: str | None = None


def _dump(order: Order) -> dict:
    return order.model_dump(mode="json", by_alias=True)


async def _visible_order(store, order_pk: int, actor: Actor) -> Order:
    """Owner or admin only. Someone else's order looks exactly like a missing one."""
    order = await store.get_order(order_pk)
    if order is None:
        logger.warning("User %s attempted to access non-existent order pk=%s", actor.id, order_pk)
        raise OrderNotFoundError()
    if order.owner_id != actor.id and not actor.is_admin:
        logger.warning(
            "User %s attempted to access unauthorized order %s (belongs to user %s)",
            actor.id,
            order.order_id,
            order.owner_id,
        )
        raise OrderNotFoundError()
    return order


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
) -> JSONResponse:
    """
    Stripe event ingestion. No user auth: the Stripe-Signature header over the raw body is the auth.
    Any verified event is acknowledged with 200 so Stripe does not redeliver it.
    """
    payload = await request.body()
    try:
        event = verify_stripe_event(payload, request.headers.get("stripe-signature"), settings.stripe_webhook_secret)
    except WebhookSignatureError as e:
        logger.warning("Stripe webhook signature verification failed: %s", e)
        return JSONResponse(
            status_code=400,
            content={"error": f"Webhook signature verification failed: {e}"},
        )
    await handle_stripe_event(event, lifecycle)
    return JSONResponse(status_code=200, content={"received": True})


@router.post("")
async def create_order(
    body: CreateOrderBody,
    actor: Actor = Depends(require_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
) -> JSONResponse:
    data = OrderCreate.model_validate(body.model_dump())
    order = await lifecycle.create_order(data, actor)
    return JSONResponse(status_code=201, content={"data": _dump(order)})


@router.get("")
async def list_orders(
    status: OrderStatus | None = None,
    actor: Actor = Depends(require_actor),
    store=Depends(get_store),
) -> JSONResponse:
    """Own orders, newest first. Admins see every order."""
    owner_ids = None if actor.is_admin else [actor.id]
    orders = await store.list_orders(owner_ids=owner_ids, status=status.value if status else None)
    logger.info("User %s listed orders (%d found)", actor.id, len(orders))
    return JSONResponse(status_code=200, content={"data": [_dump(o) for o in orders]})


@router.get("/search")
async def search_orders(
    email: str | None = None,
    order_id: str | None = Query(default=None, alias="orderId"),
    actor: Actor = Depends(require_actor),
    store=Depends(get_store),
) -> JSONResponse:
    """Admin search: partial, case-insensitive customer email and/or partial orderId."""
    if not actor.is_admin:
        raise ForbiddenError("Only administrators can search orders")
    owner_ids = None
    if email and email.strip():
        owner_ids = await store.find_user_ids_by_email(email.strip())
        if not owner_ids:
            return JSONResponse(status_code=200, content={"data": []})
    orders = await store.list_orders(
        owner_ids=owner_ids,
        order_id_contains=order_id.strip() if order_id and order_id.strip() else None,
    )
    return JSONResponse(status_code=200, content={"data": [_dump(o) for o in orders]})


@router.get("/{order_pk}")
async def get_order(
    order_pk: int,
    actor: Actor = Depends(require_actor),
    store=Depends(get_store),
) -> JSONResponse:
    order = await _visible_order(store, order_pk, actor)
    return JSONResponse(status_code=200, content={"data": _dump(order)})


@router.get("/{order_pk}/history")
async def get_order_history(
    order_pk: int,
    actor: Actor = Depends(require_actor),
    store=Depends(get_store),
) -> JSONResponse:
    await _visible_order(store, order_pk, actor)
    entries = await get_status_history(store, order_pk)
    return JSONResponse(
        status_code=200,
        content={"data": [e.model_dump(mode="json", by_alias=True) for e in entries]},
    )


@router.get("/{order_pk}/transitions")
async def get_order_transitions(
    order_pk: int,
    actor: Actor = Depends(require_actor),
    store=Depends(get_store),
) -> JSONResponse:
    """What this order can become next (UI hint; does not change anything)."""
    order = await _visible_order(store, order_pk, actor)
    return JSONResponse(
        status_code=200,
        content={
            "data": {
                "orderStatus": order.order_status,
                "terminal": is_terminal_status(order.order_status),
                "validNextStatuses": get_valid_next_statuses(order.order_status),
            }
        },
    )


@router.put("/{order_pk}")
async def update_order(
    order_pk: int,
    body: OrderUpdate,
    actor: Actor = Depends(require_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
) -> JSONResponse:
    changes = body.model_dump(exclude_unset=True)
    if "order_status" in changes and changes["order_status"] is None:
        raise OrderValidationError("orderStatus cannot be null")

    if not actor.is_admin:
        await _visible_order(lifecycle.store, order_pk, actor)
        not_allowed = sorted(set(changes) - CUSTOMER_UPDATABLE_FIELDS)
        if not_allowed:
            raise ForbiddenError(f"You cannot update: {', '.join(to_camel(f) for f in not_allowed)}")
        requested = changes.get("order_status")
        if requested is not None and requested != OrderStatus.CANCELLATION_REQUESTED.value:
            raise ForbiddenError("Customers can only set orderStatus to cancellation_requested")

    order = await lifecycle.update_order(order_pk, changes, actor)
    return JSONResponse(status_code=200, content={"data": _dump(order)})


@router.post("/{order_pk}/request-cancellation")
async def request_order_cancellation(
    order_pk: int,
    body: CancellationBody | None = None,
    actor: Actor = Depends(require_actor),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
) -> JSONResponse:
    order = await request_cancellation(lifecycle, order_pk, actor, body.reason if body else None)
    return JSONResponse(status_code=200, content={"data": _dump(order)})
