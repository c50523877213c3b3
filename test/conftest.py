import httpx
import pytest

from storefront.deps import get_lifecycle, get_settings, get_store
from storefront.lifecycle import OrderLifecycle
from storefront.main import app
from storefront.memory_store import InMemoryStore
from storefront.notifications import NotificationDispatcher

from _helper import WebhookRecorder, make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def recorder():
    return WebhookRecorder()


@pytest.fixture
async def dispatcher(recorder, settings):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    d = NotificationDispatcher(client=client, settings=settings)
    yield d
    await d.drain()
    await client.aclose()


@pytest.fixture
def lifecycle(store, dispatcher, settings):
    return OrderLifecycle(store, dispatcher, settings=settings)


@pytest.fixture
async def customer(store):
    return await store.create_user("customer@example.com", username="customer", api_token="customer-token")


@pytest.fixture
async def other_customer(store):
    return await store.create_user("other@example.com", username="other", api_token="other-token")


@pytest.fixture
async def admin(store):
    return await store.create_user("admin@example.com", username="admin", is_admin=True, api_token="admin-token")


@pytest.fixture
async def product(store):
    return await store.create_product("Classic Gold Watch", stock=10)


@pytest.fixture
async def api(store, lifecycle, settings):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    app.dependency_overrides[get_settings] = lambda: settings
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
