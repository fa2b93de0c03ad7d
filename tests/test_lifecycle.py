import asyncio

import pytest

from fuel_dispatch.auth import Caller
from fuel_dispatch.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from fuel_dispatch.lifecycle import TRANSITIONS, Action
from fuel_dispatch.schemas import (
    TERMINAL_STATUSES, Coordinates, DeliveringMilestone, DriverCreate, OrderStatus, PaymentStatus, Role,
    StatusUpdate, Tracking,
)

from support import (
    ADMIN, CUSTOMER, DRIVER, OTHER_CUSTOMER, OTHER_DRIVER, YieldingOrderStore, confirmed_order, delivered_order,
    order_request, ready_driver,
)


def test_transition_table_only_moves_forward():
    order = list(OrderStatus)
    for (status, action), target in TRANSITIONS.items():
        if action is Action.CANCEL:
            assert status not in TERMINAL_STATUSES
            assert target is OrderStatus.CANCELLED
        else:
            assert order.index(target) == order.index(status) + 1
    assert not any(status in TERMINAL_STATUSES for status, _ in TRANSITIONS)


def test_place_card_order(services, broadcaster):
    order = asyncio.run(services.lifecycle.place_order(CUSTOMER, order_request()))

    assert order.status is OrderStatus.PENDING
    assert order.payment_status is PaymentStatus.PENDING
    assert order.total_amount == 117690
    assert order.order_number.startswith("FD")
    assert order.customer_name == "Asha Rao"
    assert order.tracking.placed is not None
    assert order.version == 0

    new_orders = broadcaster.events("newOrder", channel="admins")
    assert len(new_orders) == 1
    assert new_orders[0]["data"]["customer"]["phone"] == "9800000001"
    assert new_orders[0]["data"]["total"] == "1176.90"
    assert broadcaster.events("orderUpdate", channel="customer_cust-1")


def test_cash_order_is_confirmed_on_placement(services):
    order = asyncio.run(services.lifecycle.place_order(CUSTOMER, order_request(payment_method="cash")))
    assert order.status is OrderStatus.CONFIRMED
    assert order.payment_status is PaymentStatus.PENDING


def test_only_customers_place_orders(services):
    with pytest.raises(PermissionDenied):
        asyncio.run(services.lifecycle.place_order(DRIVER, order_request()))


def test_full_delivery(services, broadcaster):
    async def scenario():
        await ready_driver(services)
        return await delivered_order(services)

    order = asyncio.run(scenario())
    assert order.status is OrderStatus.COMPLETED
    assert order.driver_id == DRIVER.id
    assert order.actual_delivery_time is not None
    tracking = order.tracking
    assert tracking.driver_assigned.driver_id == DRIVER.id
    assert tracking.driver_en_route.estimated_arrival > tracking.driver_en_route.timestamp
    assert tracking.arrived and tracking.delivering
    assert tracking.completed.signature == "signed-by-asha"
    assert tracking.cancelled is None

    statuses = [e["data"]["status"] for e in broadcaster.events("orderUpdate", channel="customer_cust-1")]
    assert statuses == ["pending", "confirmed", "driver_assigned", "driver_en_route", "arrived", "delivering", "completed"]
    assert broadcaster.events("orderUpdate", channel="driver_drv-1")


def test_accept_notifies_with_driver_summary(services, broadcaster):
    async def scenario():
        await ready_driver(services)
        order = await confirmed_order(services)
        return await services.lifecycle.accept(order.id, DRIVER)

    order = asyncio.run(scenario())
    update = broadcaster.events("orderUpdate", channel="customer_cust-1")[-1]
    assert update["data"]["status"] == "driver_assigned"
    assert update["data"]["driver"]["name"] == DRIVER.name
    assert update["data"]["order_id"] == order.id


def test_cash_is_collected_on_completion(services):
    async def scenario():
        await ready_driver(services)
        order = await services.lifecycle.place_order(CUSTOMER, order_request(payment_method="cash"))
        lifecycle = services.lifecycle
        await lifecycle.accept(order.id, DRIVER)
        for status in (OrderStatus.DRIVER_EN_ROUTE, OrderStatus.ARRIVED, OrderStatus.DELIVERING):
            await lifecycle.advance(order.id, DRIVER, status)
        return await lifecycle.advance(order.id, DRIVER, OrderStatus.COMPLETED, photo="proof.jpg")

    order = asyncio.run(scenario())
    assert order.payment_status is PaymentStatus.PAID
    assert order.paid_at == order.actual_delivery_time


def test_concurrent_accept_has_single_winner(make_services):
    services = make_services(orders=YieldingOrderStore())
    drivers = [Caller(id=f"drv-{i}", role=Role.DRIVER, name=f"Driver {i}") for i in range(5)]

    async def scenario():
        for driver in drivers:
            await ready_driver(services, driver)
        order = await confirmed_order(services)
        results = await asyncio.gather(
            *(services.lifecycle.accept(order.id, d) for d in drivers), return_exceptions=True
        )
        return results, await services.orders.get(order.id)

    results, stored = asyncio.run(scenario())
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]

    assert len(winners) == 1
    assert len(losers) == 4
    assert all(isinstance(e, ConflictError) for e in losers)
    assert all(e.message == "Order not available for acceptance" for e in losers)
    assert stored.driver_id == winners[0].driver_id
    assert stored.tracking.driver_assigned.driver_id == stored.driver_id
    assert stored.version == winners[0].version


def test_unapproved_driver_cannot_accept(services):
    async def scenario():
        await services.driver_service.register_profile(DriverCreate(id=DRIVER.id, name=DRIVER.name))
        order = await confirmed_order(services)
        await services.lifecycle.accept(order.id, DRIVER)

    with pytest.raises(PermissionDenied):
        asyncio.run(scenario())


def test_pending_order_cannot_be_accepted(services):
    async def scenario():
        await ready_driver(services)
        order = await services.lifecycle.place_order(CUSTOMER, order_request())
        await services.lifecycle.accept(order.id, DRIVER)

    with pytest.raises(ConflictError):
        asyncio.run(scenario())


def test_statuses_cannot_be_skipped(services):
    async def scenario():
        await ready_driver(services)
        order = await confirmed_order(services)
        await services.lifecycle.accept(order.id, DRIVER)
        with pytest.raises(ConflictError):
            await services.lifecycle.advance(order.id, DRIVER, OrderStatus.ARRIVED)
        with pytest.raises(ValidationError):
            await services.lifecycle.advance(order.id, DRIVER, OrderStatus.CONFIRMED)
        return await services.orders.get(order.id)

    assert asyncio.run(scenario()).status is OrderStatus.DRIVER_ASSIGNED


def test_only_assigned_driver_advances(services):
    async def scenario():
        await ready_driver(services)
        await ready_driver(services, OTHER_DRIVER)
        order = await confirmed_order(services)
        await services.lifecycle.accept(order.id, DRIVER)
        await services.lifecycle.advance(order.id, OTHER_DRIVER, OrderStatus.DRIVER_EN_ROUTE)

    with pytest.raises(PermissionDenied):
        asyncio.run(scenario())


def test_completion_requires_proof(services):
    async def scenario():
        await ready_driver(services)
        order = await confirmed_order(services)
        lifecycle = services.lifecycle
        await lifecycle.accept(order.id, DRIVER)
        for status in (OrderStatus.DRIVER_EN_ROUTE, OrderStatus.ARRIVED, OrderStatus.DELIVERING):
            await lifecycle.advance(order.id, DRIVER, status)
        with pytest.raises(ValidationError):
            await lifecycle.advance(order.id, DRIVER, OrderStatus.COMPLETED)
        return await services.orders.get(order.id)

    assert asyncio.run(scenario()).status is OrderStatus.DELIVERING


def test_arrival_records_location(services):
    async def scenario():
        await ready_driver(services)
        order = await confirmed_order(services)
        await services.lifecycle.accept(order.id, DRIVER)
        await services.lifecycle.advance(order.id, DRIVER, OrderStatus.DRIVER_EN_ROUTE)
        return await services.lifecycle.advance(
            order.id, DRIVER, OrderStatus.ARRIVED, location=Coordinates(latitude=12.97, longitude=77.59),
        )

    order = asyncio.run(scenario())
    assert order.tracking.arrived.location.latitude == 12.97


def test_customer_cancels_pending_order(services, broadcaster):
    async def scenario():
        order = await services.lifecycle.place_order(CUSTOMER, order_request())
        return await services.lifecycle.update_status(
            order.id, CUSTOMER, StatusUpdate(status=OrderStatus.CANCELLED, cancel_reason="Changed my mind"),
        )

    order = asyncio.run(scenario())
    assert order.status is OrderStatus.CANCELLED
    assert order.tracking.cancelled.cancelled_by is Role.CUSTOMER
    assert order.tracking.cancelled.reason == "Changed my mind"
    assert broadcaster.events("orderUpdate")[-1]["data"]["reason"] == "Changed my mind"


def test_customer_can_only_cancel(services):
    async def scenario():
        order = await confirmed_order(services)
        await services.lifecycle.update_status(order.id, CUSTOMER, StatusUpdate(status=OrderStatus.DRIVER_EN_ROUTE))

    with pytest.raises(PermissionDenied):
        asyncio.run(scenario())


def test_cancel_permissions(services):
    async def scenario():
        await ready_driver(services)
        await ready_driver(services, OTHER_DRIVER)
        order = await confirmed_order(services)
        with pytest.raises(PermissionDenied):
            await services.lifecycle.cancel(order.id, OTHER_CUSTOMER, "not mine")
        await services.lifecycle.accept(order.id, DRIVER)
        with pytest.raises(PermissionDenied):
            await services.lifecycle.cancel(order.id, OTHER_DRIVER, "not mine either")
        return await services.lifecycle.cancel(order.id, DRIVER, "Vehicle breakdown")

    order = asyncio.run(scenario())
    assert order.status is OrderStatus.CANCELLED
    assert order.tracking.cancelled.cancelled_by is Role.DRIVER


def test_completed_order_cannot_be_cancelled(services):
    async def scenario():
        await ready_driver(services)
        order = await delivered_order(services)
        for caller in (CUSTOMER, ADMIN):
            with pytest.raises(ConflictError):
                await services.lifecycle.cancel(order.id, caller, "too late")
        return await services.orders.get(order.id)

    order = asyncio.run(scenario())
    assert order.status is OrderStatus.COMPLETED
    assert order.tracking.cancelled is None


def test_cancelled_order_cannot_be_cancelled_again(services):
    async def scenario():
        order = await services.lifecycle.place_order(CUSTOMER, order_request())
        await services.lifecycle.cancel(order.id, CUSTOMER)
        await services.lifecycle.cancel(order.id, ADMIN)

    with pytest.raises(ConflictError):
        asyncio.run(scenario())


def test_admin_override_is_audited(services, broadcaster):
    async def scenario():
        order = await confirmed_order(services)
        return await services.lifecycle.admin_override(order.id, ADMIN, OrderStatus.DELIVERING, "Manual dispatch")

    order = asyncio.run(scenario())
    assert order.status is OrderStatus.DELIVERING
    assert order.admin_notes == "Manual dispatch"
    assert order.tracking.delivering is not None
    update = broadcaster.events("orderUpdate")[-1]
    assert update["data"]["previous_status"] == "confirmed"
    assert update["data"]["reason"] == "Manual dispatch"


def test_admin_override_keeps_existing_milestones(services):
    async def scenario():
        await ready_driver(services)
        order = await delivered_order(services)
        before = order.tracking.delivering.timestamp
        order = await services.lifecycle.admin_override(order.id, ADMIN, OrderStatus.DELIVERING, "Reopened")
        return order, before

    order, before = asyncio.run(scenario())
    assert order.status is OrderStatus.DELIVERING
    assert order.tracking.delivering.timestamp == before


def test_admin_override_requires_reason_and_admin(services):
    async def scenario():
        order = await confirmed_order(services)
        with pytest.raises(ValidationError):
            await services.lifecycle.admin_override(order.id, ADMIN, OrderStatus.COMPLETED, "  ")
        with pytest.raises(PermissionDenied):
            await services.lifecycle.admin_override(order.id, CUSTOMER, OrderStatus.COMPLETED, "please")
        return await services.orders.get(order.id)

    assert asyncio.run(scenario()).status is OrderStatus.CONFIRMED


def test_tracking_milestones_are_write_once():
    from datetime import datetime

    tracking = Tracking().record("delivering", DeliveringMilestone(timestamp=datetime(2025, 1, 1)))
    with pytest.raises(ConflictError):
        tracking.record("delivering", DeliveringMilestone(timestamp=datetime(2025, 1, 2)))


def test_order_visibility(services):
    async def scenario():
        await ready_driver(services)
        await ready_driver(services, OTHER_DRIVER)
        order = await confirmed_order(services)
        await services.lifecycle.accept(order.id, DRIVER)
        for caller in (CUSTOMER, DRIVER, ADMIN):
            await services.lifecycle.get_order(order.id, caller)
        for caller in (OTHER_CUSTOMER, OTHER_DRIVER):
            with pytest.raises(PermissionDenied):
                await services.lifecycle.get_order(order.id, caller)
        with pytest.raises(NotFoundError):
            await services.lifecycle.get_order("missing", ADMIN)

    asyncio.run(scenario())


def test_customer_order_pages(services):
    async def scenario():
        for _ in range(3):
            await services.lifecycle.place_order(CUSTOMER, order_request())
        await services.lifecycle.place_order(OTHER_CUSTOMER, order_request())
        first = await services.lifecycle.list_customer_orders(CUSTOMER, page=1, limit=2)
        second = await services.lifecycle.list_customer_orders(CUSTOMER, page=2, limit=2)
        return first, second

    first, second = asyncio.run(scenario())
    assert first["total"] == 3
    assert first["total_pages"] == 2
    assert len(first["orders"]) == 2 and len(second["orders"]) == 1
    assert first["orders"][0].created_at > first["orders"][1].created_at
    assert all(o.customer_id == CUSTOMER.id for o in first["orders"] + second["orders"])
