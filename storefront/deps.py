"""
Process-wide collaborators (store, dispatcher, lifecycle) and the request actor.
Routes take them through Depends so tests can swap them with app.dependency_overrides.
"""
from fastapi import Depends, Header

from storefront.config import Settings, settings
from storefront.db import PostgresStore, get_pool, init_schema
from storefront.errors import NotAuthenticatedError
from storefront.lifecycle import OrderLifecycle
from storefront.memory_store import InMemoryStore
from storefront.models import Actor
from storefront.notifications import NotificationDispatcher

_store = None
_dispatcher: NotificationDispatcher | None = None
_lifecycle: OrderLifecycle | None = None


def get_settings() -> Settings:
    return settings


async def get_store():
    global _store
    if _store is None:
        if settings.storage_backend == "memory":
            _store = InMemoryStore()
        else:
            pool = await get_pool()
            await init_schema(pool)
            _store = PostgresStore(pool)
    return _store


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher(settings=settings)
    return _dispatcher


async def get_lifecycle() -> OrderLifecycle:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = OrderLifecycle(await get_store(), get_dispatcher(), settings=settings)
    return _lifecycle


async def close_all() -> None:
    global _store, _dispatcher, _lifecycle
    if _dispatcher is not None:
        await _dispatcher.aclose()
        _dispatcher = None
    if _store is not None:
        await _store.close()
        _store = None
    _lifecycle = None


async def get_current_actor(
    authorization: str | None = Header(default=None),
    store=Depends(get_store),
) -> Actor | None:
    """Resolve `Authorization: Bearer <token>` to an actor; None when absent or unknown."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    user = await store.get_user_by_token(token.strip())
    return Actor.from_user(user) if user else None


async def require_actor(actor: Actor | None = Depends(get_current_actor)) -> Actor:
    if actor is None:
        raise NotAuthenticatedError("You must be logged in to access orders")
    return actor
