"""
Order lifecycle orchestrator.

Every create/update of an order runs through two ordered step lists:
- before steps may rewrite the payload or reject it by raising; nothing is persisted on rejection.
- after steps run once the write landed. They only log on failure: the persisted status
  change is authoritative and is never rolled back by audit, stock or webhook trouble.

    create: assign owner -> check stock | insert | initial history -> reserve stock
    update: load previous -> validate transition -> capture note | update | history -> restore stock -> notify
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from storefront import history, order_state, stock
from storefront.config import Settings, settings as default_settings
from storefront.errors import InvalidTransitionError, OrderNotFoundError
from storefront.metrics import (
    order_status_transitions_total,
    order_transitions_rejected_total,
    orders_created_total,
)
from storefront.models import Actor, Order, OrderCreate
from storefront.notifications import NotificationDispatcher
from storefront.order_state import OrderStatus, is_refund_class

logger = logging.getLogger(__name__)

SOURCE_API = "api"
SOURCE_STRIPE = "stripe"


def generate_order_id() -> str:
    return f"ORD-{datetime.now(timezone.utc):%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


@dataclass
class CreateContext:
    data: OrderCreate
    actor: Actor | None
    order: Order | None = None


@dataclass
class UpdateContext:
    order_pk: int
    changes: dict
    actor: Actor | None
    trusted: bool = False  # internal write: skip the transition validator
    source: str = SOURCE_API
    previous: Order | None = None
    status_change_note: str | None = None
    order: Order | None = None

    @property
    def previous_status(self) -> str | None:
        return self.previous.order_status if self.previous else None

    @property
    def new_status(self) -> str | None:
        return self.order.order_status if self.order else None

    @property
    def status_changed(self) -> bool:
        return self.order is not None and self.previous_status != self.new_status


class OrderLifecycle:
    def __init__(self, store, dispatcher: NotificationDispatcher, settings: Settings | None = None):
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings or default_settings

        self.before_create = [self.assign_owner, self.check_stock]
        self.after_create = [self.record_initial_status, self.reserve_stock]
        self.before_update = [self.load_previous, self.validate_transition, self.capture_note]
        self.after_update = [self.record_status_change, self.restore_stock, self.notify]

    def actor_email(self, actor: Actor | None) -> str:
        if actor is not None and actor.email:
            return actor.email
        return self.settings.system_actor_email

    # ── Entry points ────────────────────────────

    async def create_order(self, data: OrderCreate, actor: Actor | None = None) -> Order:
        ctx = CreateContext(data=data.model_copy(deep=True), actor=actor)
        for step in self.before_create:
            await step(ctx)

        row = ctx.data.model_dump()
        row["order_id"] = row.get("order_id") or generate_order_id()
        ctx.order = await self.store.insert_order(row)
        orders_created_total.labels(order_status=ctx.order.order_status).inc()
        logger.info(
            "Order %s created (pk=%s, status=%s, owner=%s)",
            ctx.order.order_id,
            ctx.order.id,
            ctx.order.order_status,
            ctx.order.owner_id,
        )

        await self._run_after(self.after_create, ctx, ctx.order)
        return ctx.order

    async def update_order(
        self,
        order_pk: int,
        changes: dict,
        actor: Actor | None = None,
        *,
        trusted: bool = False,
        source: str = SOURCE_API,
    ) -> Order:
        changes = dict(changes)
        if isinstance(changes.get("order_status"), OrderStatus):
            changes["order_status"] = changes["order_status"].value
        ctx = UpdateContext(order_pk=order_pk, changes=changes, actor=actor, trusted=trusted, source=source)
        for step in self.before_update:
            await step(ctx)

        ctx.order = await self.store.update_order(order_pk, ctx.changes)
        if ctx.order is None:
            raise OrderNotFoundError()

        if not ctx.status_changed:
            logger.debug("Order %s: orderStatus unchanged (%s), skipping history and notifications", ctx.order.order_id, ctx.new_status)
            return ctx.order

        order_status_transitions_total.labels(from_status=ctx.previous_status, to_status=ctx.new_status).inc()
        logger.info("Order %s: status changed %s -> %s", ctx.order.order_id, ctx.previous_status, ctx.new_status)
        await self._run_after(self.after_update, ctx, ctx.order)
        return ctx.order

    async def _run_after(self, steps, ctx, order: Order) -> None:
        for step in steps:
            try:
                await step(ctx)
            except Exception as e:
                logger.exception("Step %s failed for order %s: %s", step.__name__, order.order_id, e)

    # ── Before create ───────────────────────────

    async def assign_owner(self, ctx: CreateContext) -> None:
        # An authenticated request always owns what it creates; a client-supplied owner is ignored
        if ctx.actor is not None:
            if ctx.data.owner_id is not None and ctx.data.owner_id != ctx.actor.id:
                logger.warning("Ignoring client-supplied owner %s, assigning user %s", ctx.data.owner_id, ctx.actor.id)
            ctx.data.owner_id = ctx.actor.id
            logger.info("Assigning user %s to new order", ctx.actor.id)
        elif ctx.data.owner_id is not None:
            logger.info("Owner %s already assigned in payload (programmatic creation)", ctx.data.owner_id)
        else:
            logger.warning("No authenticated user found in request context or payload")

    async def check_stock(self, ctx: CreateContext) -> None:
        await stock.check_stock(self.store, ctx.data.items)

    # ── After create ────────────────────────────

    async def record_initial_status(self, ctx: CreateContext) -> None:
        await history.record_status_change(
            self.store,
            ctx.order.id,
            None,
            ctx.order.order_status,
            self.actor_email(ctx.actor),
        )

    async def reserve_stock(self, ctx: CreateContext) -> None:
        if ctx.order.order_status == OrderStatus.CANCELLED.value:
            logger.info("Order %s created as cancelled, no stock reserved", ctx.order.order_id)
            return
        await stock.reserve_stock(self.store, ctx.order.order_id, ctx.order.items)

    # ── Before update ───────────────────────────

    async def load_previous(self, ctx: UpdateContext) -> None:
        # Compare against the stored status: the payload may not carry orderStatus at all
        ctx.previous = await self.store.get_order(ctx.order_pk)
        if ctx.previous is None:
            raise OrderNotFoundError()

    async def validate_transition(self, ctx: UpdateContext) -> None:
        new_status = ctx.changes.get("order_status")
        if new_status is None:
            return
        current = ctx.previous_status
        if ctx.trusted:
            logger.info("Trusted %s write on order %s: %s -> %s", ctx.source, ctx.previous.order_id, current, new_status)
            return
        result = order_state.validate_transition(current, new_status)
        if not result.valid:
            order_transitions_rejected_total.labels(from_status=current, to_status=new_status).inc()
            logger.warning(
                "Invalid status transition attempted: %s -> %s for order %s. Error: %s",
                current,
                new_status,
                ctx.previous.order_id,
                result.error,
            )
            raise InvalidTransitionError(result.error, from_status=current, to_status=new_status)

    async def capture_note(self, ctx: UpdateContext) -> None:
        # The note travels to the history entry through the context; it is also kept on the order
        if "status_change_note" in ctx.changes:
            note = ctx.changes["status_change_note"] or None
            ctx.changes["status_change_note"] = note
            ctx.status_change_note = note

    # ── After update ────────────────────────────

    async def record_status_change(self, ctx: UpdateContext) -> None:
        await history.record_status_change(
            self.store,
            ctx.order.id,
            ctx.previous_status,
            ctx.new_status,
            self.actor_email(ctx.actor),
            ctx.status_change_note,
        )

    async def restore_stock(self, ctx: UpdateContext) -> None:
        # Restore once: moving between cancelled and refunded must not give stock back twice
        if is_refund_class(ctx.new_status) and not is_refund_class(ctx.previous_status):
            logger.info("Order %s entered %s, restoring stock", ctx.order.order_id, ctx.new_status)
            await stock.restore_stock(self.store, ctx.order.order_id, ctx.order.items)

    async def notify(self, ctx: UpdateContext) -> None:
        if self.settings.disable_email_notifications:
            logger.info("Email notification disabled via env var (order %s)", ctx.order.order_id)
            return

        owner = await self.store.get_user(ctx.order.owner_id) if ctx.order.owner_id is not None else None
        self.dispatcher.notify_status_change(ctx.order, owner, ctx.status_change_note)

        if ctx.new_status == OrderStatus.REFUNDED.value:
            if ctx.source == SOURCE_STRIPE:
                logger.info("Order %s refunded by Stripe, refund trigger not needed", ctx.order.order_id)
                return
            self.dispatcher.trigger_refund(ctx.order)
