"""
In-process store with the same interface as db.PostgresStore.
Selected with STORAGE_BACKEND=memory; the test suite runs against it.
No await happens between a read and its write, so each method is atomic on the event loop.
"""
import itertools
from datetime import datetime, timezone

from storefront.models import ORDER_UPDATABLE_FIELDS, Order, Product, StatusHistoryEntry, User


class InMemoryStore:
    def __init__(self) -> None:
        self._users: dict[int, User] = {}
        self._products: dict[int, Product] = {}
        self._orders: dict[int, Order] = {}
        self._history: list[StatusHistoryEntry] = []
        self._user_ids = itertools.count(1)
        self._product_ids = itertools.count(1)
        self._order_ids = itertools.count(1)
        self._history_ids = itertools.count(1)

    # ── Users ───────────────────────────────────

    async def create_user(
        self,
        email: str,
        username: str | None = None,
        is_admin: bool = False,
        api_token: str | None = None,
    ) -> User:
        user = User(
            id=next(self._user_ids),
            email=email,
            username=username,
            is_admin=is_admin,
            api_token=api_token,
        )
        self._users[user.id] = user
        return user

    async def get_user(self, user_id: int) -> User | None:
        return self._users.get(user_id)

    async def get_user_by_token(self, token: str) -> User | None:
        for user in self._users.values():
            if user.api_token and user.api_token == token:
                return user
        return None

    async def find_user_ids_by_email(self, fragment: str) -> list[int]:
        needle = fragment.lower()
        return [u.id for u in self._users.values() if u.email and needle in u.email.lower()]

    # ── Products ────────────────────────────────

    async def create_product(self, name: str, stock: int = 0) -> Product:
        product = Product(id=next(self._product_ids), name=name, stock=stock)
        self._products[product.id] = product
        return product

    async def get_product(self, product_id: int) -> Product | None:
        return self._products.get(product_id)

    async def adjust_stock(self, product_id: int, delta: int) -> int | None:
        """Apply delta, clamped at zero. Returns the new stock, or None if the product is gone."""
        product = self._products.get(product_id)
        if product is None:
            return None
        product.stock = max(0, product.stock + delta)
        return product.stock

    # ── Orders ──────────────────────────────────

    async def insert_order(self, data: dict) -> Order:
        now = datetime.now(timezone.utc)
        order = Order(id=next(self._order_ids), created_at=now, updated_at=now, **data)
        self._orders[order.id] = order
        return order.model_copy(deep=True)

    async def get_order(self, order_id: int) -> Order | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_order_by_payment_intent(self, payment_intent_id: str) -> Order | None:
        for order in self._orders.values():
            if order.payment_intent_id == payment_intent_id:
                return order.model_copy(deep=True)
        return None

    async def list_orders(
        self,
        owner_ids: list[int] | None = None,
        status: str | None = None,
        order_id_contains: str | None = None,
    ) -> list[Order]:
        orders = list(self._orders.values())
        if owner_ids is not None:
            orders = [o for o in orders if o.owner_id in owner_ids]
        if status:
            orders = [o for o in orders if o.order_status == status]
        if order_id_contains:
            needle = order_id_contains.lower()
            orders = [o for o in orders if needle in o.order_id.lower()]
        orders.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        return [o.model_copy(deep=True) for o in orders]

    async def update_order(self, order_id: int, changes: dict) -> Order | None:
        order = self._orders.get(order_id)
        if order is None:
            return None
        unknown = set(changes) - ORDER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update order fields: {sorted(unknown)}")
        updated = order.model_copy(update={**changes, "updated_at": datetime.now(timezone.utc)})
        self._orders[order_id] = Order.model_validate(updated.model_dump())
        return self._orders[order_id].model_copy(deep=True)

    # ── Status history ──────────────────────────

    async def add_status_history(self, entry: StatusHistoryEntry) -> StatusHistoryEntry:
        if entry.order not in self._orders:
            raise LookupError(f"Order {entry.order} does not exist")
        stored = entry.model_copy(update={"id": next(self._history_ids)})
        self._history.append(stored)
        return stored.model_copy()

    async def list_status_history(self, order_id: int) -> list[StatusHistoryEntry]:
        entries = [e for e in self._history if e.order == order_id]
        entries.sort(key=lambda e: (e.changed_at, e.id), reverse=True)
        return [e.model_copy() for e in entries]

    async def close(self) -> None:
        return None
