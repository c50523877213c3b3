"""
Outbound webhooks to the frontend: order-status email and refund trigger.
Fire-and-forget: each call runs as a detached task; failures and non-2xx answers are
logged and counted, never raised, never retried.
"""
import asyncio
import logging

import httpx

from storefront.config import Settings, settings as default_settings
from storefront.metrics import outbound_webhooks_total
from storefront.models import Order, User

logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_WAIT_SEC = 10

ORDER_EMAIL = "order_email"
REFUND_TRIGGER = "refund_trigger"


def build_order_email_payload(order: Order, owner: User, note: str | None) -> dict:
    data = order.model_dump(mode="json", by_alias=True)
    return {
        "orderId": order.order_id,
        "customerEmail": owner.email,
        "customerName": owner.username or "Customer",
        "orderStatus": order.order_status,
        "statusChangeNote": note,
        "orderData": {
            "items": data["items"],
            "subtotal": data["subtotal"],
            "shipping": data["shipping"],
            "total": data["total"],
            "createdAt": data["createdAt"],
        },
    }


def build_refund_payload(order: Order) -> dict:
    # amount stays in the currency unit of total; the frontend converts to cents
    return {
        "paymentIntentId": order.payment_intent_id,
        "amount": float(order.total),
        "orderId": order.order_id,
    }


class NotificationDispatcher:
    def __init__(self, client: httpx.AsyncClient | None = None, settings: Settings | None = None):
        self.settings = settings or default_settings
        self._client = client
        self._owns_client = client is None
        self._tasks: set[asyncio.Task] = set()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    # ── Scheduling ──────────────────────────────

    def _spawn(self, coro) -> asyncio.Task:
        t = asyncio.create_task(coro)
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)
        return t

    def notify_status_change(self, order: Order, owner: User | None, note: str | None) -> asyncio.Task | None:
        """Schedule the order-status email. Returns the task, or None if skipped."""
        if self.settings.disable_email_notifications:
            logger.info("Email notification disabled via DISABLE_EMAIL_NOTIFICATIONS (order %s)", order.order_id)
            outbound_webhooks_total.labels(kind=ORDER_EMAIL, outcome="skipped").inc()
            return None
        if owner is None or not owner.email:
            logger.error("Order %s: no owner email found, cannot send notification", order.order_id)
            outbound_webhooks_total.labels(kind=ORDER_EMAIL, outcome="skipped").inc()
            return None
        return self._spawn(self.send_order_email(order, owner, note))

    def trigger_refund(self, order: Order) -> asyncio.Task | None:
        """Schedule the refund trigger. Returns the task, or None if skipped."""
        if self.settings.disable_email_notifications:
            logger.info("Refund trigger disabled via DISABLE_EMAIL_NOTIFICATIONS (order %s)", order.order_id)
            outbound_webhooks_total.labels(kind=REFUND_TRIGGER, outcome="skipped").inc()
            return None
        if not order.payment_intent_id or not order.total:
            logger.error("Order %s missing paymentIntentId or total for refund", order.order_id)
            outbound_webhooks_total.labels(kind=REFUND_TRIGGER, outcome="skipped").inc()
            return None
        return self._spawn(self.send_refund_request(order))

    # ── Calls ───────────────────────────────────

    async def send_order_email(self, order: Order, owner: User, note: str | None) -> bool:
        frontend_url = self.settings.frontend_url
        secret = self.settings.webhook_secret
        if not frontend_url or not secret:
            logger.error("Missing FRONTEND_URL or WEBHOOK_SECRET, order email for %s not sent", order.order_id)
            outbound_webhooks_total.labels(kind=ORDER_EMAIL, outcome="skipped").inc()
            return False
        logger.info("Order %s: sending %s email to %s", order.order_id, order.order_status, owner.email)
        return await self._post(
            ORDER_EMAIL,
            order.order_id,
            f"{frontend_url.rstrip('/')}/api/send-order-email",
            {"X-Webhook-Secret": secret},
            build_order_email_payload(order, owner, note),
        )

    async def send_refund_request(self, order: Order) -> bool:
        frontend_url = self.settings.frontend_url
        secret = self.settings.refund_secret
        if not frontend_url or not secret:
            logger.error("Missing FRONTEND_URL or STRAPI_WEBHOOK_SECRET to process refund for %s", order.order_id)
            outbound_webhooks_total.labels(kind=REFUND_TRIGGER, outcome="skipped").inc()
            return False
        logger.info("Triggering refund for order %s (payment intent %s)", order.order_id, order.payment_intent_id)
        return await self._post(
            REFUND_TRIGGER,
            order.order_id,
            f"{frontend_url.rstrip('/')}/api/refund-order",
            {"x-strapi-secret": secret},
            build_refund_payload(order),
        )

    async def _post(self, kind: str, order_id: str, url: str, headers: dict, payload: dict) -> bool:
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            outbound_webhooks_total.labels(kind=kind, outcome="failed").inc()
            logger.error("%s webhook call failed for order %s: %s", kind, order_id, e)
            return False
        if resp.is_success:
            outbound_webhooks_total.labels(kind=kind, outcome="sent").inc()
            logger.info("%s webhook delivered for order %s", kind, order_id)
            return True
        outbound_webhooks_total.labels(kind=kind, outcome="failed").inc()
        logger.error(
            "%s webhook rejected for order %s: status=%d body=%s",
            kind,
            order_id,
            resp.status_code,
            resp.text[:500],
        )
        return False

    # ── Shutdown ────────────────────────────────

    async def drain(self, timeout: float = GRACEFUL_SHUTDOWN_WAIT_SEC) -> None:
        """Wait for in-flight webhook tasks (bounded), cancelling whatever is left."""
        if not self._tasks:
            return
        logger.info("Waiting for %d in-flight webhook task(s) (max %ss) ...", len(self._tasks), timeout)
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout, return_when=asyncio.ALL_COMPLETED)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
