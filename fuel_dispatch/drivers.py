# drivers.py
"""
Driver presence, profile upkeep and the admin controls over driver and user
accounts.
"""
from datetime import datetime, timedelta
from typing import Callable

from fuel_dispatch.auth import Caller
from fuel_dispatch.config import get_logger
from fuel_dispatch.errors import NotFoundError, PermissionDenied, ValidationError
from fuel_dispatch.events import (
    ACCOUNT_STATUS_UPDATE, APPROVAL_STATUS_UPDATE, DRIVER_LOCATION_UPDATE, DRIVER_STATUS_CHANGE, EventPublisher,
)
from fuel_dispatch.metrics import ONLINE_DRIVERS
from fuel_dispatch.pricing import format_amount
from fuel_dispatch.schemas import (
    ACTIVE_DELIVERY_STATUSES, AccountStatusUpdate, ApprovalUpdate, DriverCreate, DriverProfile,
    LocationUpdate, Role, VehicleUpdate,
)
from fuel_dispatch.store import DuplicateKeyError
from fuel_dispatch.ws_manager import channel_for

logger = get_logger("fuel-dispatch.drivers")

STATS_PERIODS = {
    "today": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "all": None,
}


def _require_role(caller: Caller, role: Role):
    if caller.role is not role:
        raise PermissionDenied(f"Access denied. {role.value.capitalize()} privileges required.")


class DriverService:
    def __init__(self, drivers, orders, publisher: EventPublisher, identity=None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.drivers = drivers
        self.orders = orders
        self.publisher = publisher
        self.identity = identity
        self.clock = clock

    async def _profile(self, driver_id: str) -> DriverProfile:
        profile = await self.drivers.get(driver_id)
        if profile is None:
            raise NotFoundError("Driver not found")
        return profile

    async def _update(self, driver_id: str, values: dict) -> DriverProfile:
        updated = await self.drivers.update_if(driver_id, {}, values)
        if updated is None:
            raise NotFoundError("Driver not found")
        return updated

    # ------------------------- PROFILE -------------------------
    async def register_profile(self, request: DriverCreate) -> DriverProfile:
        profile = DriverProfile(id=request.id, name=request.name, created_at=self.clock())
        try:
            await self.drivers.create(profile)
        except DuplicateKeyError:
            logger.info(f"[Driver] Profile {request.id} already exists")
            return await self._profile(request.id)
        logger.info(f"[Driver] Profile created for {request.id}")
        return profile

    async def update_vehicle(self, caller: Caller, request: VehicleUpdate) -> DriverProfile:
        _require_role(caller, Role.DRIVER)
        profile = await self._profile(caller.id)
        vehicle = {**(profile.vehicle or {}), **request.model_dump(exclude_none=True)}
        return await self._update(caller.id, {"vehicle": vehicle})

    # ------------------------- PRESENCE -------------------------
    async def set_online(self, caller: Caller, is_online: bool) -> DriverProfile:
        _require_role(caller, Role.DRIVER)
        profile = await self._profile(caller.id)
        if is_online and not profile.is_active:
            raise PermissionDenied("Driver account is deactivated")
        if is_online and not profile.is_approved:
            raise PermissionDenied("Driver not approved yet")

        updated = await self._update(caller.id, {"is_online": is_online})
        if updated.is_online and not profile.is_online:
            ONLINE_DRIVERS.inc()
        elif profile.is_online and not updated.is_online:
            ONLINE_DRIVERS.dec()

        logger.info(f"[TRACE {caller.trace_id}] Driver {caller.id} is now {'online' if is_online else 'offline'}")
        await self.publisher.to_admins(
            DRIVER_STATUS_CHANGE,
            {"driver_id": updated.id, "name": updated.name, "is_online": updated.is_online},
            caller.trace_id,
        )
        return updated

    async def update_location(self, caller: Caller, request: LocationUpdate) -> DriverProfile:
        _require_role(caller, Role.DRIVER)
        now = self.clock()
        updated = await self._update(caller.id, {
            "latitude": request.latitude,
            "longitude": request.longitude,
            "location_updated_at": now,
        })

        location = {"latitude": request.latitude, "longitude": request.longitude}
        active = await self.orders.find(driver_id=caller.id, statuses=ACTIVE_DELIVERY_STATUSES)
        for order in active:
            await self.publisher.publish(
                [channel_for(Role.CUSTOMER, order.customer_id)],
                DRIVER_LOCATION_UPDATE,
                {"driver_id": caller.id, "order_id": order.id, "location": location, "timestamp": now.isoformat()},
                caller.trace_id,
            )
        await self.publisher.to_admins(
            DRIVER_LOCATION_UPDATE,
            {"driver_id": caller.id, "location": location, "timestamp": now.isoformat(), "active_orders": len(active)},
            caller.trace_id,
        )
        return updated

    # ------------------------- STATS -------------------------
    async def stats(self, caller: Caller, period: str = "all") -> dict:
        _require_role(caller, Role.DRIVER)
        if period not in STATS_PERIODS:
            raise ValidationError("Invalid period", {"period": f"one of {', '.join(STATS_PERIODS)}"})
        profile = await self._profile(caller.id)

        window = STATS_PERIODS[period]
        since = self.clock() - window if window else None
        totals = await self.orders.driver_stats(caller.id, since=since)

        total = totals["total_orders"]
        completion_rate = round(totals["completed_orders"] / total * 100, 2) if total else 0.0
        return {
            **totals,
            "period": period,
            "total_fuel_delivered": str(totals["total_fuel_delivered"]),
            "earnings": format_amount(totals["total_earnings"]),
            "completion_rate": completion_rate,
            "rating": round(profile.rating, 2),
            "total_ratings": profile.total_ratings,
        }

    # ------------------------- ADMIN -------------------------
    async def set_approval(self, caller: Caller, driver_id: str, request: ApprovalUpdate) -> DriverProfile:
        _require_role(caller, Role.ADMIN)
        profile = await self._profile(driver_id)

        values = {
            "is_approved": request.is_approved,
            "rejection_reason": None if request.is_approved else request.rejection_reason,
        }
        if not request.is_approved and profile.is_online:
            values["is_online"] = False
        updated = await self._update(driver_id, values)
        if profile.is_online and not updated.is_online:
            ONLINE_DRIVERS.dec()

        logger.info(
            f"[TRACE {caller.trace_id}] Driver {driver_id} "
            f"{'approved' if request.is_approved else 'rejected'} by {caller.id}"
        )
        await self.publisher.publish(
            [channel_for(Role.DRIVER, driver_id)],
            APPROVAL_STATUS_UPDATE,
            {"is_approved": updated.is_approved, "rejection_reason": updated.rejection_reason},
            caller.trace_id,
        )
        return updated

    async def set_account_status(self, caller: Caller, user_id: str, request: AccountStatusUpdate) -> dict:
        _require_role(caller, Role.ADMIN)
        if user_id == caller.id:
            raise ValidationError("Cannot change your own account status", {"user_id": "self"})

        user = None
        if self.identity is not None:
            user = await self.identity.set_user_active(user_id, request.is_active, caller.trace_id)
        profile = await self.drivers.get(user_id)
        if user is None and profile is None:
            raise NotFoundError("User not found")

        if profile is not None:
            role = Role.DRIVER
            values = {"is_active": request.is_active}
            if not request.is_active:
                values["is_online"] = False
            updated = await self._update(user_id, values)
            if profile.is_online and not updated.is_online:
                ONLINE_DRIVERS.dec()
        else:
            try:
                role = Role(user.get("role"))
            except ValueError:
                role = Role.CUSTOMER

        logger.warning(
            f"[TRACE {caller.trace_id}] Account {user_id} ({role.value}) "
            f"{'activated' if request.is_active else 'deactivated'} by {caller.id}"
        )
        await self.publisher.publish(
            [channel_for(role, user_id)],
            ACCOUNT_STATUS_UPDATE,
            {"is_active": request.is_active, "reason": request.reason},
            caller.trace_id,
        )
        return {"id": user_id, "role": role.value, "is_active": request.is_active}
