import asyncio

import pytest

from fuel_dispatch.errors import ConflictError, PermissionDenied
from fuel_dispatch.schemas import DriverCreate
from fuel_dispatch.store import MemoryDriverStore

from support import (
    CUSTOMER, DRIVER, OTHER_CUSTOMER, YieldingDriverStore, confirmed_order, delivered_order, ready_driver,
)


def test_driver_average_from_customer_ratings(services):
    async def scenario():
        await ready_driver(services)
        for score in (5, 3, 4):
            order = await delivered_order(services)
            await services.ratings.rate(order.id, CUSTOMER, score, "thanks")
        return await services.drivers.get(DRIVER.id)

    profile = asyncio.run(scenario())
    assert profile.total_ratings == 3
    assert profile.rating_points == 12
    assert profile.rating == pytest.approx(4.0)


def test_order_is_rated_once_per_side(services):
    async def scenario():
        await ready_driver(services)
        order = await delivered_order(services)
        rated = await services.ratings.rate(order.id, CUSTOMER, 5)
        with pytest.raises(ConflictError) as exc:
            await services.ratings.rate(order.id, CUSTOMER, 1)
        assert exc.value.message == "Order already rated"
        rated = await services.ratings.rate(order.id, DRIVER, 4, "polite customer")
        return rated, await services.drivers.get(DRIVER.id)

    order, profile = asyncio.run(scenario())
    assert order.rating_by_customer.score == 5
    assert order.rating_by_driver.score == 4
    # the driver's rating of the customer does not feed the driver average
    assert profile.total_ratings == 1
    assert profile.rating == pytest.approx(5.0)


def test_only_completed_orders_are_rated(services):
    async def scenario():
        order = await confirmed_order(services)
        await services.ratings.rate(order.id, CUSTOMER, 5)

    with pytest.raises(ConflictError):
        asyncio.run(scenario())


def test_only_participants_rate(services):
    async def scenario():
        await ready_driver(services)
        order = await delivered_order(services)
        await services.ratings.rate(order.id, OTHER_CUSTOMER, 1)

    with pytest.raises(PermissionDenied):
        asyncio.run(scenario())


def test_concurrent_scores_are_not_lost(make_services):
    services = make_services(drivers=YieldingDriverStore())

    async def scenario():
        await services.driver_service.register_profile(DriverCreate(id=DRIVER.id, name=DRIVER.name))
        await asyncio.gather(*(services.ratings.add_driver_score(DRIVER.id, s) for s in (5, 3, 4, 2, 1)))
        return await services.drivers.get(DRIVER.id)

    profile = asyncio.run(scenario())
    assert profile.total_ratings == 5
    assert profile.rating_points == 15
    assert profile.rating == pytest.approx(3.0)


class StuckRatingStore(MemoryDriverStore):
    """Every rating write loses its compare-and-swap."""

    async def update_if(self, driver_id, expected, values):
        if "total_ratings" in expected:
            return None
        return await super().update_if(driver_id, expected, values)


def test_unapplied_driver_score_is_logged_for_reconciliation(make_services, caplog):
    services = make_services(drivers=StuckRatingStore())

    async def scenario():
        await ready_driver(services)
        order = await delivered_order(services)
        rated = await services.ratings.rate(order.id, CUSTOMER, 4)
        return rated, await services.drivers.get(DRIVER.id)

    with caplog.at_level("ERROR", logger="fuel-dispatch.ratings"):
        rated, profile = asyncio.run(scenario())

    assert rated.rating_by_customer.score == 4
    assert profile.total_ratings == 0
    errors = [r.getMessage() for r in caplog.records if r.levelname == "ERROR"]
    assert len(errors) == 1
    assert rated.order_number in errors[0] and "score 4" in errors[0] and DRIVER.id in errors[0]
