# ratings.py
from datetime import datetime
from typing import Callable, Optional

from fuel_dispatch.auth import Caller, is_assigned_driver, is_owner
from fuel_dispatch.config import get_logger
from fuel_dispatch.errors import ConflictError, NotFoundError, PermissionDenied
from fuel_dispatch.schemas import DriverProfile, Order, OrderStatus, Rating

logger = get_logger("fuel-dispatch.ratings")


class RatingAggregator:
    """One rating per side per completed order; customer scores roll into the driver's average."""

    def __init__(self, orders, drivers, clock: Callable[[], datetime] = datetime.utcnow, max_retries: int = 10):
        self.orders = orders
        self.drivers = drivers
        self.clock = clock
        self.max_retries = max_retries

    async def rate(self, order_id: str, caller: Caller, score: int, comment: Optional[str] = None) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.status is not OrderStatus.COMPLETED:
            raise ConflictError("Can only rate completed orders")

        if is_owner(caller, order):
            slot = "rating_by_customer"
        elif is_assigned_driver(caller, order):
            slot = "rating_by_driver"
        else:
            raise PermissionDenied("Not authorized to rate this order")

        rating = Rating(score=score, comment=comment, rated_at=self.clock())
        # write-once slot: succeeds only while still empty
        updated = await self.orders.update_if(order_id, {slot: None}, {slot: rating})
        if updated is None:
            raise ConflictError("Order already rated")

        logger.info(f"[TRACE {caller.trace_id}] Order {updated.order_number} rated {score} by {caller.role.value}")

        if slot == "rating_by_customer" and updated.driver_id:
            try:
                await self.add_driver_score(updated.driver_id, score, caller.trace_id)
            except (NotFoundError, ConflictError) as e:
                # the slot is already written; the driver aggregate needs a manual fix
                logger.error(
                    f"[TRACE {caller.trace_id}] [RECONCILE] Order {updated.order_number} score {score} "
                    f"not added to driver {updated.driver_id}: {e}"
                )
        return updated

    async def add_driver_score(self, driver_id: str, score: int, trace_id: Optional[str] = None) -> DriverProfile:
        for _ in range(self.max_retries):
            profile = await self.drivers.get(driver_id)
            if profile is None:
                raise NotFoundError("Driver not found")

            points = profile.rating_points + score
            total = profile.total_ratings + 1
            updated = await self.drivers.update_if(
                driver_id,
                {"total_ratings": profile.total_ratings},
                {"rating_points": points, "total_ratings": total, "rating": points / total},
            )
            if updated is not None:
                logger.info(f"[TRACE {trace_id}] Driver {driver_id} rating now {updated.rating:.2f} ({total} ratings)")
                return updated

        raise ConflictError("Driver rating was modified concurrently, please retry")
