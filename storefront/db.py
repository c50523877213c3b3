"""
Async Postgres: users, products, orders (current state) + order_status_history (append-only audit log).
Stock adjustments are a single conditional UPDATE so concurrent orders cannot lose a write.
"""
import json

import asyncpg

from storefront.config import settings
from storefront.models import ORDER_UPDATABLE_FIELDS, Order, Product, StatusHistoryEntry, User

_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id SERIAL PRIMARY KEY,
                email VARCHAR(255) UNIQUE,
                username VARCHAR(255),
                is_admin BOOLEAN NOT NULL DEFAULT FALSE,
                api_token VARCHAR(255) UNIQUE
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS products (
                id SERIAL PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                stock INT NOT NULL DEFAULT 0 CHECK (stock >= 0)
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id SERIAL PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL UNIQUE,
                order_status VARCHAR(32) NOT NULL,
                items JSONB NOT NULL DEFAULT '[]',
                subtotal NUMERIC(12, 2),
                shipping NUMERIC(12, 2),
                total NUMERIC(12, 2),
                payment_intent_id VARCHAR(255),
                cancellation_reason TEXT,
                cancellation_date TIMESTAMPTZ,
                status_change_note TEXT,
                owner_id INT REFERENCES users(id),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_owner_id
            ON orders(owner_id);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_payment_intent_id
            ON orders(payment_intent_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_status_history (
                id SERIAL PRIMARY KEY,
                order_id INT NOT NULL REFERENCES orders(id),
                from_status VARCHAR(32),
                to_status VARCHAR(32) NOT NULL,
                changed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                changed_by_email VARCHAR(255) NOT NULL,
                note TEXT
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_status_history_order_id
            ON order_status_history(order_id, changed_at DESC);
        """)


def _order_from_row(row: asyncpg.Record) -> Order:
    data = dict(row)
    items = data.get("items")
    if isinstance(items, str):
        data["items"] = json.loads(items)
    return Order.model_validate(data)


def _history_from_row(row: asyncpg.Record) -> StatusHistoryEntry:
    data = dict(row)
    data["order"] = data.pop("order_id")
    return StatusHistoryEntry.model_validate(data)


class PostgresStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    # ── Users ───────────────────────────────────

    async def create_user(
        self,
        email: str,
        username: str | None = None,
        is_admin: bool = False,
        api_token: str | None = None,
    ) -> User:
        row = await self.pool.fetchrow(
            """
            INSERT INTO users (email, username, is_admin, api_token)
            VALUES ($1, $2, $3, $4)
            RETURNING id, email, username, is_admin, api_token;
            """,
            email,
            username,
            is_admin,
            api_token,
        )
        return User.model_validate(dict(row))

    async def get_user(self, user_id: int) -> User | None:
        row = await self.pool.fetchrow(
            "SELECT id, email, username, is_admin, api_token FROM users WHERE id = $1;",
            user_id,
        )
        return User.model_validate(dict(row)) if row else None

    async def get_user_by_token(self, token: str) -> User | None:
        row = await self.pool.fetchrow(
            "SELECT id, email, username, is_admin, api_token FROM users WHERE api_token = $1;",
            token,
        )
        return User.model_validate(dict(row)) if row else None

    async def find_user_ids_by_email(self, fragment: str) -> list[int]:
        rows = await self.pool.fetch(
            "SELECT id FROM users WHERE email ILIKE '%' || $1 || '%';",
            fragment,
        )
        return [r["id"] for r in rows]

    # ── Products ────────────────────────────────

    async def create_product(self, name: str, stock: int = 0) -> Product:
        row = await self.pool.fetchrow(
            "INSERT INTO products (name, stock) VALUES ($1, $2) RETURNING id, name, stock;",
            name,
            stock,
        )
        return Product.model_validate(dict(row))

    async def get_product(self, product_id: int) -> Product | None:
        row = await self.pool.fetchrow(
            "SELECT id, name, stock FROM products WHERE id = $1;",
            product_id,
        )
        return Product.model_validate(dict(row)) if row else None

    async def adjust_stock(self, product_id: int, delta: int) -> int | None:
        """Apply delta, clamped at zero, in one statement. Returns the new stock, or None if the product is gone."""
        return await self.pool.fetchval(
            """
            UPDATE products SET stock = GREATEST(stock + $2, 0)
            WHERE id = $1
            RETURNING stock;
            """,
            product_id,
            delta,
        )

    # ── Orders ──────────────────────────────────

    async def insert_order(self, data: dict) -> Order:
        row = await self.pool.fetchrow(
            """
            INSERT INTO orders (order_id, order_status, items, subtotal, shipping, total, payment_intent_id, owner_id)
            VALUES ($1, $2, $3::jsonb, $4, $5, $6, $7, $8)
            RETURNING *;
            """,
            data["order_id"],
            data["order_status"],
            json.dumps(data["items"], default=str),
            data.get("subtotal"),
            data.get("shipping"),
            data.get("total"),
            data.get("payment_intent_id"),
            data.get("owner_id"),
        )
        return _order_from_row(row)

    async def get_order(self, order_id: int) -> Order | None:
        row = await self.pool.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
        return _order_from_row(row) if row else None

    async def get_order_by_payment_intent(self, payment_intent_id: str) -> Order | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM orders WHERE payment_intent_id = $1 ORDER BY id DESC LIMIT 1;",
            payment_intent_id,
        )
        return _order_from_row(row) if row else None

    async def list_orders(
        self,
        owner_ids: list[int] | None = None,
        status: str | None = None,
        order_id_contains: str | None = None,
    ) -> list[Order]:
        clauses = []
        args: list = []
        if owner_ids is not None:
            args.append(owner_ids)
            clauses.append(f"owner_id = ANY(${len(args)}::int[])")
        if status:
            args.append(status)
            clauses.append(f"order_status = ${len(args)}")
        if order_id_contains:
            args.append(order_id_contains)
            clauses.append(f"order_id ILIKE '%' || ${len(args)} || '%'")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.pool.fetch(
            f"SELECT * FROM orders {where} ORDER BY created_at DESC, id DESC;",
            *args,
        )
        return [_order_from_row(r) for r in rows]

    async def update_order(self, order_id: int, changes: dict) -> Order | None:
        unknown = set(changes) - ORDER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update order fields: {sorted(unknown)}")
        if not changes:
            return await self.get_order(order_id)
        columns = list(changes)
        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start=2))
        row = await self.pool.fetchrow(
            f"""
            UPDATE orders SET {assignments}, updated_at = NOW()
            WHERE id = $1
            RETURNING *;
            """,
            order_id,
            *(changes[c] for c in columns),
        )
        return _order_from_row(row) if row else None

    # ── Status history ──────────────────────────

    async def add_status_history(self, entry: StatusHistoryEntry) -> StatusHistoryEntry:
        row = await self.pool.fetchrow(
            """
            INSERT INTO order_status_history (order_id, from_status, to_status, changed_at, changed_by_email, note)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *;
            """,
            entry.order,
            entry.from_status,
            entry.to_status,
            entry.changed_at,
            entry.changed_by_email,
            entry.note,
        )
        return _history_from_row(row)

    async def list_status_history(self, order_id: int) -> list[StatusHistoryEntry]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM order_status_history
            WHERE order_id = $1
            ORDER BY changed_at DESC, id DESC;
            """,
            order_id,
        )
        return [_history_from_row(r) for r in rows]

    async def close(self) -> None:
        await close_pool()
