"""
Stock ledger: reserve product stock once when an order is created and give it back
at most once when the order enters a refund-class status (cancelled/refunded).
"""
import logging

from storefront.errors import InsufficientStockError
from storefront.metrics import stock_adjustments_total
from storefront.models import LineItem

logger = logging.getLogger(__name__)


async def apply_stock_delta(store, product_ref: int, delta: int) -> int | None:
    """
    Add delta to a product's stock, never going below zero.
    Returns the new stock, or None when the product no longer exists (logged, not raised).
    """
    new_stock = await store.adjust_stock(product_ref, delta)
    if new_stock is None:
        logger.warning("Stock adjustment skipped: product %s not found (delta=%d)", product_ref, delta)
        return None
    stock_adjustments_total.labels(direction="restore" if delta > 0 else "reserve").inc()
    logger.info("Stock for product %s adjusted by %d -> %d", product_ref, delta, new_stock)
    return new_stock


async def check_stock(store, items: list[LineItem]) -> None:
    """
    Read-only availability check run before an order is persisted.
    Quantities of the same product across lines are summed. Raises InsufficientStockError
    listing every short line; nothing is written either way.
    """
    requested: dict[int, int] = {}
    names: dict[int, str] = {}
    for item in items:
        requested[item.product_ref] = requested.get(item.product_ref, 0) + item.quantity
        names.setdefault(item.product_ref, item.name)

    shortages = []
    for product_ref, quantity in requested.items():
        product = await store.get_product(product_ref)
        available = product.stock if product else 0
        if quantity > available:
            shortages.append({
                "productRef": product_ref,
                "name": product.name if product else (names[product_ref] or f"product {product_ref}"),
                "requested": quantity,
                "available": available,
            })
    if shortages:
        raise InsufficientStockError(shortages)


async def reserve_stock(store, order_id: str, items: list[LineItem]) -> None:
    for item in items:
        try:
            await apply_stock_delta(store, item.product_ref, -item.quantity)
        except Exception as e:
            logger.exception("Failed to reserve stock for order %s, product %s: %s", order_id, item.product_ref, e)


async def restore_stock(store, order_id: str, items: list[LineItem]) -> None:
    for item in items:
        try:
            await apply_stock_delta(store, item.product_ref, item.quantity)
        except Exception as e:
            logger.exception("Failed to restore stock for order %s, product %s: %s", order_id, item.product_ref, e)
