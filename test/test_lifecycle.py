"""
Order lifecycle: owner assignment, stock reservation/restoration, status history
and the guarantee that side-effect failures never undo a persisted change.
"""
from decimal import Decimal

import httpx
import pytest

from storefront.errors import InsufficientStockError, InvalidTransitionError, OrderNotFoundError
from storefront.lifecycle import OrderLifecycle
from storefront.models import LineItem, OrderCreate
from storefront.notifications import NotificationDispatcher

from _helper import EMAIL_PATH, REFUND_PATH, actor_for, order_payload


async def test_create_assigns_actor_as_owner_and_writes_initial_history(lifecycle, store, customer, other_customer, product):
    data = order_payload(product, 2, status="paid", owner_id=other_customer.id)

    order = await lifecycle.create_order(data, actor_for(customer))

    assert order.owner_id == customer.id  # client-supplied owner ignored
    assert order.order_id.startswith("ORD-")
    history = await store.list_status_history(order.id)
    assert len(history) == 1
    assert history[0].from_status is None
    assert history[0].to_status == "paid"
    assert history[0].changed_by_email == "customer@example.com"


async def test_programmatic_create_keeps_supplied_owner(lifecycle, store, customer, product):
    order = await lifecycle.create_order(order_payload(product, 1, owner_id=customer.id), actor=None)

    assert order.owner_id == customer.id
    history = await store.list_status_history(order.id)
    assert history[0].changed_by_email == "system@example.com"


async def test_create_decrements_stock(lifecycle, store, customer, product):
    await lifecycle.create_order(order_payload(product, 3, status="paid"), actor_for(customer))

    assert (await store.get_product(product.id)).stock == 7


async def test_create_as_cancelled_reserves_nothing(lifecycle, store, customer, product):
    order = await lifecycle.create_order(order_payload(product, 3, status="cancelled"), actor_for(customer))

    assert (await store.get_product(product.id)).stock == 10
    assert len(await store.list_status_history(order.id)) == 1


async def test_insufficient_stock_rejects_whole_order(lifecycle, store, customer, product):
    other = await store.create_product("Sport Black Watch", stock=1)
    data = OrderCreate(
        items=[
            LineItem(product_ref=product.id, name=product.name, unit_price=Decimal("100"), quantity=2),
            LineItem(product_ref=other.id, name=other.name, unit_price=Decimal("200"), quantity=5),
        ],
        total=Decimal("1200"),
    )

    with pytest.raises(InsufficientStockError) as exc_info:
        await lifecycle.create_order(data, actor_for(customer))

    assert "Sport Black Watch (requested 5, available 1)" in str(exc_info.value)
    assert [s["productRef"] for s in exc_info.value.shortages] == [other.id]
    assert await store.list_orders() == []
    assert (await store.get_product(product.id)).stock == 10
    assert (await store.get_product(other.id)).stock == 1


async def test_stock_check_sums_lines_for_same_product(lifecycle, store, customer, product):
    data = OrderCreate(
        items=[
            LineItem(product_ref=product.id, name=product.name, quantity=6),
            LineItem(product_ref=product.id, name=product.name, quantity=6),
        ],
    )

    with pytest.raises(InsufficientStockError):
        await lifecycle.create_order(data, actor_for(customer))
    assert await store.list_orders() == []


async def test_unknown_product_counts_as_out_of_stock(lifecycle, store, customer):
    data = OrderCreate(items=[LineItem(product_ref=999, name="Ghost Watch", quantity=1)])

    with pytest.raises(InsufficientStockError) as exc_info:
        await lifecycle.create_order(data, actor_for(customer))
    assert "Ghost Watch (requested 1, available 0)" in str(exc_info.value)


async def test_history_chain_is_complete(lifecycle, store, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 1), actor_for(customer))
    for status in ["paid", "processing", "shipped", "delivered"]:
        await lifecycle.update_order(order.id, {"order_status": status}, actor_for(admin))

    history = await store.list_status_history(order.id)

    assert len(history) == 5
    assert [h.to_status for h in history] == ["delivered", "shipped", "processing", "paid", "pending"]
    for newer, older in zip(history, history[1:]):
        assert newer.from_status == older.to_status
    assert history[-1].from_status is None
    assert all(h.changed_by_email == "admin@example.com" for h in history[:-1])


async def test_same_status_update_is_a_no_op(lifecycle, store, recorder, dispatcher, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 2, status="paid"), actor_for(customer))

    updated = await lifecycle.update_order(
        order.id, {"order_status": "paid", "status_change_note": "again"}, actor_for(admin)
    )
    await dispatcher.drain()

    assert updated.order_status == "paid"
    assert len(await store.list_status_history(order.id)) == 1
    assert (await store.get_product(product.id)).stock == 8
    assert recorder.requests == []


async def test_update_without_status_keeps_history_untouched(lifecycle, store, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 1), actor_for(customer))

    updated = await lifecycle.update_order(order.id, {"payment_intent_id": "pi_123"}, actor_for(admin))

    assert updated.payment_intent_id == "pi_123"
    assert updated.order_status == "pending"
    assert len(await store.list_status_history(order.id)) == 1


async def test_invalid_transition_is_rejected_and_not_persisted(lifecycle, store, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 1, status="shipped"), actor_for(customer))

    with pytest.raises(InvalidTransitionError) as exc_info:
        await lifecycle.update_order(
            order.id, {"order_status": "pending", "status_change_note": "oops"}, actor_for(admin)
        )

    assert exc_info.value.from_status == "shipped"
    assert "Valid transitions" in str(exc_info.value)
    stored = await store.get_order(order.id)
    assert stored.order_status == "shipped"
    assert stored.status_change_note is None
    assert len(await store.list_status_history(order.id)) == 1


async def test_terminal_order_cannot_move(lifecycle, store, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 1, status="delivered"), actor_for(customer))

    with pytest.raises(InvalidTransitionError, match="is terminal"):
        await lifecycle.update_order(order.id, {"order_status": "refunded"}, actor_for(admin))


async def test_update_missing_order(lifecycle, admin):
    with pytest.raises(OrderNotFoundError):
        await lifecycle.update_order(404, {"order_status": "paid"}, actor_for(admin))


async def test_note_goes_to_history_and_order(lifecycle, store, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 1, status="paid"), actor_for(customer))

    updated = await lifecycle.update_order(
        order.id, {"order_status": "processing", "status_change_note": "packed"}, actor_for(admin)
    )

    assert updated.status_change_note == "packed"
    latest = (await store.list_status_history(order.id))[0]
    assert latest.note == "packed"


async def test_empty_note_is_stored_as_absent(lifecycle, store, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 1, status="paid"), actor_for(customer))

    await lifecycle.update_order(order.id, {"order_status": "processing", "status_change_note": ""}, actor_for(admin))

    latest = (await store.list_status_history(order.id))[0]
    assert latest.note is None


async def test_cancel_restores_stock_once(lifecycle, store, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 4, status="paid"), actor_for(customer))
    assert (await store.get_product(product.id)).stock == 6

    await lifecycle.update_order(order.id, {"order_status": "cancelled"}, actor_for(admin))
    assert (await store.get_product(product.id)).stock == 10

    # cancelled -> cancelled is an accepted no-op and must not restore again
    await lifecycle.update_order(order.id, {"order_status": "cancelled"}, actor_for(admin))
    assert (await store.get_product(product.id)).stock == 10
    assert len(await store.list_status_history(order.id)) == 2


async def test_trusted_move_between_refund_class_states_does_not_restore_twice(lifecycle, store, customer, product):
    order = await lifecycle.create_order(order_payload(product, 4, status="paid"), actor_for(customer))
    await lifecycle.update_order(order.id, {"order_status": "cancelled"}, actor=None)

    await lifecycle.update_order(order.id, {"order_status": "refunded"}, actor=None, trusted=True)

    assert (await store.get_product(product.id)).stock == 10
    history = await store.list_status_history(order.id)
    assert [h.to_status for h in history] == ["refunded", "cancelled", "paid"]
    assert history[0].changed_by_email == "system@example.com"


async def test_cancellation_request_then_refund_restores_stock(lifecycle, store, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 2, status="paid"), actor_for(customer))
    await lifecycle.update_order(order.id, {"order_status": "cancellation_requested"}, actor_for(customer))
    assert (await store.get_product(product.id)).stock == 8

    await lifecycle.update_order(order.id, {"order_status": "refunded"}, actor_for(admin))

    assert (await store.get_product(product.id)).stock == 10


async def test_history_failure_does_not_undo_creation(lifecycle, store, customer, product, monkeypatch):
    async def broken_history(entry):
        raise RuntimeError("audit table unavailable")

    monkeypatch.setattr(store, "add_status_history", broken_history)

    order = await lifecycle.create_order(order_payload(product, 3, status="paid"), actor_for(customer))

    assert await store.get_order(order.id) is not None
    assert (await store.get_product(product.id)).stock == 7


async def test_stock_failure_does_not_undo_status_change(lifecycle, store, customer, admin, product, monkeypatch):
    order = await lifecycle.create_order(order_payload(product, 3, status="paid"), actor_for(customer))

    async def broken_adjust(product_id, delta):
        raise RuntimeError("deadlock detected")

    monkeypatch.setattr(store, "adjust_stock", broken_adjust)

    updated = await lifecycle.update_order(order.id, {"order_status": "cancelled"}, actor_for(admin))

    assert updated.order_status == "cancelled"
    assert len(await store.list_status_history(order.id)) == 2


async def test_deleted_product_is_skipped_on_restore(lifecycle, store, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 3, status="paid"), actor_for(customer))
    del store._products[product.id]

    updated = await lifecycle.update_order(order.id, {"order_status": "refunded"}, actor_for(admin))

    assert updated.order_status == "refunded"


async def test_status_change_notifies_owner(lifecycle, dispatcher, recorder, customer, admin, product):
    order = await lifecycle.create_order(order_payload(product, 1, status="paid"), actor_for(customer))
    await dispatcher.drain()
    assert recorder.requests == []  # creation itself sends nothing

    await lifecycle.update_order(
        order.id, {"order_status": "processing", "status_change_note": "packed"}, actor_for(admin)
    )
    await dispatcher.drain()

    emails = recorder.bodies_to(EMAIL_PATH)
    assert len(emails) == 1
    assert emails[0]["orderStatus"] == "processing"
    assert emails[0]["customerEmail"] == "customer@example.com"
    assert emails[0]["statusChangeNote"] == "packed"
    assert recorder.calls_to(REFUND_PATH) == []


async def test_refund_from_stripe_skips_refund_trigger(lifecycle, dispatcher, recorder, customer, product):
    order = await lifecycle.create_order(
        order_payload(product, 1, status="paid", payment_intent_id="pi_1"), actor_for(customer)
    )

    await lifecycle.update_order(order.id, {"order_status": "refunded"}, trusted=True, source="stripe")
    await dispatcher.drain()

    assert len(recorder.calls_to(EMAIL_PATH)) == 1
    assert recorder.calls_to(REFUND_PATH) == []


async def test_failed_webhook_does_not_affect_update(store, settings, customer, admin, product):
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(unreachable))
    dispatcher = NotificationDispatcher(client=client, settings=settings)
    lifecycle = OrderLifecycle(store, dispatcher, settings=settings)
    order = await lifecycle.create_order(
        order_payload(product, 1, status="paid", payment_intent_id="pi_1"), actor_for(customer)
    )

    updated = await lifecycle.update_order(order.id, {"order_status": "refunded"}, actor_for(admin))
    await dispatcher.drain()
    await client.aclose()

    assert updated.order_status == "refunded"
    assert (await store.get_product(product.id)).stock == 10


async def test_paid_processing_refunded_walkthrough(lifecycle, store, dispatcher, recorder, customer, admin, product):
    order = await lifecycle.create_order(
        order_payload(product, 3, status="paid", payment_intent_id="pi_e2e"), actor_for(customer)
    )
    assert (await store.get_product(product.id)).stock == 7
    history = await store.list_status_history(order.id)
    assert [(h.from_status, h.to_status) for h in history] == [(None, "paid")]

    await lifecycle.update_order(
        order.id, {"order_status": "processing", "status_change_note": "packed"}, actor_for(admin)
    )
    await dispatcher.drain()
    assert (await store.get_product(product.id)).stock == 7
    history = await store.list_status_history(order.id)
    assert len(history) == 2
    assert history[0].note == "packed"
    assert [b["orderStatus"] for b in recorder.bodies_to(EMAIL_PATH)] == ["processing"]

    await lifecycle.update_order(order.id, {"order_status": "refunded"}, actor_for(admin))
    await dispatcher.drain()
    assert (await store.get_product(product.id)).stock == 10
    assert len(await store.list_status_history(order.id)) == 3
    assert [b["orderStatus"] for b in recorder.bodies_to(EMAIL_PATH)] == ["processing", "refunded"]
    assert recorder.bodies_to(REFUND_PATH) == [
        {"paymentIntentId": "pi_e2e", "amount": 310.0, "orderId": order.order_id}
    ]
