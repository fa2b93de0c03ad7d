# matching.py
import math
from typing import List, Optional

from fuel_dispatch import config
from fuel_dispatch.auth import Caller
from fuel_dispatch.config import get_logger
from fuel_dispatch.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from fuel_dispatch.schemas import Coordinates, DriverProfile, Order, OrderStatus, Role

logger = get_logger("fuel-dispatch.matching")

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


class DriverMatcher:
    def __init__(self, orders, drivers):
        self.orders = orders
        self.drivers = drivers

    async def _dispatchable(self, caller: Caller) -> DriverProfile:
        if caller.role is not Role.DRIVER:
            raise PermissionDenied("Access denied. Driver privileges required.")
        profile = await self.drivers.get(caller.id)
        if profile is None:
            raise NotFoundError("Driver not found")
        if not profile.is_active or not profile.is_approved:
            raise PermissionDenied("Driver not approved yet")
        if not profile.is_online:
            raise PermissionDenied("Driver must be online to see orders")
        return profile

    async def available_orders(self, caller: Caller) -> List[Order]:
        """Open orders, oldest first."""
        await self._dispatchable(caller)
        return await self.orders.find(
            newest_first=False, statuses=[OrderStatus.CONFIRMED], unassigned=True,
        )

    async def nearby_orders(self, caller: Caller, radius_km: Optional[float] = None) -> List[dict]:
        radius_km = config.DEFAULT_SEARCH_RADIUS_KM if radius_km is None else radius_km
        if radius_km <= 0:
            raise ValidationError("Invalid radius", {"radius": "radius must be positive"})

        profile = await self._dispatchable(caller)
        origin = profile.location
        if origin is None:
            raise ConflictError("Driver location not available")

        matches = []
        for order in await self.orders.find(newest_first=False, statuses=[OrderStatus.CONFIRMED], unassigned=True):
            distance = haversine_km(origin, order.delivery_address.coordinates)
            if distance <= radius_km:
                matches.append({"order": order, "distance_km": round(distance, 2)})

        logger.info(f"[TRACE {caller.trace_id}] {len(matches)} orders within {radius_km} km of driver {caller.id}")
        return matches
