# lifecycle.py
"""
Order status transitions.

Every status change goes through `OrderLifecycle.plan`, which consults the
transition table and the permission table below, then is persisted with a
conditional write on the order's (status, version). A writer that loses the
race re-reads the order and is re-validated against the fresh state.
"""
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from fuel_dispatch import config
from fuel_dispatch.auth import Caller, can_view, is_admin, is_assigned_driver, is_owner
from fuel_dispatch.config import get_logger
from fuel_dispatch.errors import (
    ConflictError, NotFoundError, PermissionDenied, UpstreamError, ValidationError,
)
from fuel_dispatch.events import (
    NEW_ORDER, ORDER_UPDATE, EventPublisher, new_order_payload, order_update_payload, participant_channels,
)
from fuel_dispatch.metrics import ORDER_TRANSITIONS, TRANSITION_CONFLICTS
from fuel_dispatch.pricing import OrderNumberGenerator, PriceCatalog
from fuel_dispatch.schemas import (
    TERMINAL_STATUSES, ArrivedMilestone, AssignedMilestone, CancelledMilestone, CompletedMilestone,
    Coordinates, DeliveringMilestone, EnRouteMilestone, Milestone, Order, OrderCreate, OrderStatus,
    PaymentMethod, PaymentStatus, PlacedMilestone, Role, StatusUpdate, Tracking,
)
from fuel_dispatch.store import DuplicateKeyError

logger = get_logger("fuel-dispatch.lifecycle")


class Action(str, Enum):
    CONFIRM = "confirm"
    ACCEPT = "accept"
    START_ROUTE = "start_route"
    ARRIVE = "arrive"
    START_DELIVERY = "start_delivery"
    COMPLETE = "complete"
    CANCEL = "cancel"


# -------------------------
# Transition table: (current status, action) → next status
# -------------------------
TRANSITIONS: Dict[Tuple[OrderStatus, Action], OrderStatus] = {
    (OrderStatus.PENDING, Action.CONFIRM): OrderStatus.CONFIRMED,
    (OrderStatus.CONFIRMED, Action.ACCEPT): OrderStatus.DRIVER_ASSIGNED,
    (OrderStatus.DRIVER_ASSIGNED, Action.START_ROUTE): OrderStatus.DRIVER_EN_ROUTE,
    (OrderStatus.DRIVER_EN_ROUTE, Action.ARRIVE): OrderStatus.ARRIVED,
    (OrderStatus.ARRIVED, Action.START_DELIVERY): OrderStatus.DELIVERING,
    (OrderStatus.DELIVERING, Action.COMPLETE): OrderStatus.COMPLETED,
}
TRANSITIONS.update({
    (status, Action.CANCEL): OrderStatus.CANCELLED
    for status in OrderStatus
    if status not in TERMINAL_STATUSES
})


def _any_driver(caller: Caller, order: Order) -> bool:
    return caller.role is Role.DRIVER


# -------------------------
# Permission table: action → role → predicate over (caller, order)
# -------------------------
PERMISSIONS: Dict[Action, Dict[Role, Callable[[Caller, Order], bool]]] = {
    Action.CONFIRM: {Role.ADMIN: is_admin},
    Action.ACCEPT: {Role.DRIVER: _any_driver},
    Action.START_ROUTE: {Role.DRIVER: is_assigned_driver},
    Action.ARRIVE: {Role.DRIVER: is_assigned_driver},
    Action.START_DELIVERY: {Role.DRIVER: is_assigned_driver},
    Action.COMPLETE: {Role.DRIVER: is_assigned_driver},
    Action.CANCEL: {
        Role.CUSTOMER: is_owner,
        Role.DRIVER: is_assigned_driver,
        Role.ADMIN: is_admin,
    },
}

# Target status requested through the status endpoint → action
STATUS_ACTIONS = {
    OrderStatus.DRIVER_EN_ROUTE: Action.START_ROUTE,
    OrderStatus.ARRIVED: Action.ARRIVE,
    OrderStatus.DELIVERING: Action.START_DELIVERY,
    OrderStatus.COMPLETED: Action.COMPLETE,
    OrderStatus.CANCELLED: Action.CANCEL,
}

MILESTONES = {
    OrderStatus.DRIVER_ASSIGNED: "driver_assigned",
    OrderStatus.DRIVER_EN_ROUTE: "driver_en_route",
    OrderStatus.ARRIVED: "arrived",
    OrderStatus.DELIVERING: "delivering",
    OrderStatus.COMPLETED: "completed",
    OrderStatus.CANCELLED: "cancelled",
}


def resolve(order: Order, action: Action, caller: Optional[Caller]) -> OrderStatus:
    """
    Validate `action` on `order` for `caller` and return the next status.
    `caller=None` is the system itself (payment reconciliation, cash placement).
    """
    if caller is not None:
        check = PERMISSIONS[action].get(caller.role)
        if check is None or not check(caller, order):
            raise PermissionDenied(f"Not authorized to {action.value} this order")

    target = TRANSITIONS.get((order.status, action))
    if target is None:
        raise ConflictError(f"Cannot {action.value} an order that is {order.status.value}")
    return target


class OrderLifecycle:
    def __init__(
        self,
        orders,
        drivers,
        publisher: EventPublisher,
        catalog: Optional[PriceCatalog] = None,
        numbers: Optional[OrderNumberGenerator] = None,
        identity=None,
        currency: str = config.PAYMENT_CURRENCY,
        clock: Callable[[], datetime] = datetime.utcnow,
        max_retries: int = 5,
    ):
        self.orders = orders
        self.drivers = drivers
        self.publisher = publisher
        self.catalog = catalog or PriceCatalog()
        self.numbers = numbers or OrderNumberGenerator()
        self.identity = identity
        self.currency = currency
        self.clock = clock
        self.max_retries = max_retries
        self.default_eta = timedelta(minutes=config.DEFAULT_ETA_MINUTES)
        self.en_route_eta = timedelta(minutes=config.EN_ROUTE_ETA_MINUTES)

    # ------------------------- HELPERS -------------------------
    async def load(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def milestone_for(self, target: OrderStatus, order: Order, now: datetime, cancelled_by: Role = Role.ADMIN,
                      reason: Optional[str] = None, location: Optional[Coordinates] = None,
                      signature: Optional[str] = None, photo: Optional[str] = None,
                      driver_id: Optional[str] = None) -> Optional[Milestone]:
        if target is OrderStatus.DRIVER_ASSIGNED:
            driver_id = driver_id or order.driver_id
            return AssignedMilestone(timestamp=now, driver_id=driver_id) if driver_id else None
        if target is OrderStatus.DRIVER_EN_ROUTE:
            return EnRouteMilestone(timestamp=now, estimated_arrival=now + self.en_route_eta)
        if target is OrderStatus.ARRIVED:
            return ArrivedMilestone(timestamp=now, location=location)
        if target is OrderStatus.DELIVERING:
            return DeliveringMilestone(timestamp=now)
        if target is OrderStatus.COMPLETED:
            return CompletedMilestone(timestamp=now, signature=signature, photo=photo)
        if target is OrderStatus.CANCELLED:
            return CancelledMilestone(timestamp=now, reason=reason, cancelled_by=cancelled_by)
        return None

    def plan(self, order: Order, action: Action, caller: Optional[Caller], now: Optional[datetime] = None,
             **details) -> Dict[str, Any]:
        """Resolve `action` and return the field values that apply it."""
        now = now or self.clock()
        target = resolve(order, action, caller)
        values: Dict[str, Any] = {"status": target, "updated_at": now, "version": order.version + 1}

        if action is Action.ACCEPT:
            values["driver_id"] = caller.id
            details["driver_id"] = caller.id
        if action is Action.COMPLETE:
            values["actual_delivery_time"] = now
            # cash is collected on delivery
            if order.payment_method is PaymentMethod.CASH and order.payment_status is not PaymentStatus.PAID:
                values["payment_status"] = PaymentStatus.PAID
                values["paid_at"] = now

        cancelled_by = caller.role if caller is not None else Role.ADMIN
        milestone = self.milestone_for(target, order, now, cancelled_by=cancelled_by, **details)
        if milestone is not None:
            values["tracking"] = order.tracking.record(MILESTONES[target], milestone)
        return values

    async def notify_status(self, order: Order, trace_id: Optional[str] = None, reason: Optional[str] = None,
                            **extra):
        await self.publisher.publish(
            participant_channels(order), ORDER_UPDATE, order_update_payload(order, reason, **extra), trace_id,
        )

    async def _transition(self, order_id: str, action: Action, caller: Optional[Caller],
                          trace_id: Optional[str] = None, extra_values: Optional[dict] = None,
                          **details) -> Order:
        trace_id = trace_id or (caller.trace_id if caller else None)
        for _ in range(self.max_retries):
            order = await self.load(order_id)
            try:
                values = self.plan(order, action, caller, **details)
            except ConflictError:
                TRANSITION_CONFLICTS.labels(action=action.value).inc()
                raise
            values.update(extra_values or {})

            expected = {"status": order.status, "version": order.version}
            if action is Action.ACCEPT:
                expected["driver_id"] = None

            updated = await self.orders.update_if(order_id, expected, values)
            if updated is not None:
                ORDER_TRANSITIONS.labels(action=action.value, status=updated.status.value).inc()
                actor = f"{caller.role.value} {caller.id}" if caller else "system"
                logger.info(
                    f"[TRACE {trace_id}] Order {updated.order_number}: "
                    f"{order.status.value} → {updated.status.value} by {actor}"
                )
                return updated
            logger.info(f"[TRACE {trace_id}] Order {order_id} changed during {action.value}, re-reading")

        TRANSITION_CONFLICTS.labels(action=action.value).inc()
        raise ConflictError("Order was modified concurrently, please retry")

    async def _customer_summary(self, caller: Caller) -> dict:
        summary = {"id": caller.id, "name": caller.name}
        if self.identity is None:
            return summary
        try:
            user = await self.identity.find_user_by_id(caller.id)
        except UpstreamError as e:
            logger.warning(f"[TRACE {caller.trace_id}] Customer lookup failed, using token claims: {e}")
            return summary
        if user:
            summary.update({k: user.get(k) for k in ("name", "phone", "email") if user.get(k) is not None})
        return summary

    # ------------------------- PLACE -------------------------
    async def place_order(self, caller: Caller, request: OrderCreate) -> Order:
        if caller.role is not Role.CUSTOMER:
            raise PermissionDenied("Access denied. Customer privileges required.")

        quote = self.catalog.quote(request.fuel_type, request.quantity)
        customer = await self._customer_summary(caller)
        now = self.clock()

        order = None
        for _ in range(self.max_retries):
            candidate = Order(
                id=str(uuid.uuid4()),
                order_number=self.numbers.next(),
                customer_id=caller.id,
                customer_name=customer.get("name"),
                fuel_type=request.fuel_type,
                quantity=request.quantity,
                unit_price=quote.unit_price,
                base_amount=quote.base_amount,
                delivery_fee=quote.delivery_fee,
                tax_amount=quote.tax_amount,
                total_amount=quote.total_amount,
                currency=self.currency,
                payment_method=request.payment_method,
                delivery_address=request.delivery_address,
                tracking=Tracking(placed=PlacedMilestone(timestamp=now)),
                scheduled_time=request.scheduled_time,
                estimated_delivery_time=request.scheduled_time or now + self.default_eta,
                customer_notes=request.customer_notes,
                created_at=now,
                updated_at=now,
            )
            try:
                order = await self.orders.create(candidate)
                break
            except DuplicateKeyError:
                logger.warning(f"[TRACE {caller.trace_id}] Order number {candidate.order_number} taken, retrying")
        if order is None:
            raise ConflictError("Could not allocate a unique order number")

        ORDER_TRANSITIONS.labels(action="place", status=order.status.value).inc()
        logger.info(f"[TRACE {caller.trace_id}] Order {order.order_number} created by {caller.id}")

        await self.publisher.to_admins(NEW_ORDER, new_order_payload(order, customer), caller.trace_id)
        await self.notify_status(order, caller.trace_id)

        if order.payment_method is PaymentMethod.CASH:
            order = await self.confirm(order.id, trace_id=caller.trace_id)
        return order

    # ------------------------- TRANSITIONS -------------------------
    async def confirm(self, order_id: str, caller: Optional[Caller] = None,
                      trace_id: Optional[str] = None) -> Order:
        order = await self._transition(order_id, Action.CONFIRM, caller, trace_id=trace_id)
        await self.notify_status(order, trace_id or (caller.trace_id if caller else None))
        return order

    async def accept(self, order_id: str, caller: Caller) -> Order:
        if caller.role is not Role.DRIVER:
            raise PermissionDenied("Access denied. Driver privileges required.")
        profile = await self.drivers.get(caller.id)
        if profile is None:
            raise NotFoundError("Driver not found")
        if not profile.is_active:
            raise PermissionDenied("Driver account is deactivated")
        if not profile.is_approved:
            raise PermissionDenied("Driver not approved yet")

        try:
            order = await self._transition(order_id, Action.ACCEPT, caller)
        except ConflictError:
            raise ConflictError("Order not available for acceptance")

        driver = {"id": profile.id, "name": profile.name, "rating": profile.rating, "vehicle": profile.vehicle}
        await self.notify_status(order, caller.trace_id, driver=driver)
        return order

    async def advance(self, order_id: str, caller: Caller, status: OrderStatus,
                      location: Optional[Coordinates] = None, signature: Optional[str] = None,
                      photo: Optional[str] = None, driver_notes: Optional[str] = None) -> Order:
        action = STATUS_ACTIONS.get(status)
        if action is None or action is Action.CANCEL:
            raise ValidationError("Invalid status", {"status": f"{status.value} cannot be set here"})

        details: Dict[str, Any] = {}
        if action is Action.ARRIVE:
            details["location"] = location
        if action is Action.COMPLETE:
            if not signature and not photo:
                raise ValidationError(
                    "Proof of delivery required", {"signature": "signature or photo is required"},
                )
            details.update(signature=signature, photo=photo)

        extra = {"driver_notes": driver_notes} if driver_notes else None
        order = await self._transition(order_id, action, caller, extra_values=extra, **details)
        await self.notify_status(order, caller.trace_id)
        return order

    async def cancel(self, order_id: str, caller: Caller, reason: Optional[str] = None) -> Order:
        order = await self._transition(order_id, Action.CANCEL, caller, reason=reason)
        await self.notify_status(order, caller.trace_id, reason=reason)
        return order

    async def update_status(self, order_id: str, caller: Caller, update: StatusUpdate) -> Order:
        if update.status is OrderStatus.CANCELLED:
            return await self.cancel(order_id, caller, update.cancel_reason)
        if caller.role is Role.CUSTOMER:
            raise PermissionDenied("Customers can only cancel orders")
        return await self.advance(
            order_id, caller, update.status,
            location=update.location, signature=update.signature,
            photo=update.photo, driver_notes=update.driver_notes,
        )

    async def admin_override(self, order_id: str, caller: Caller, status: OrderStatus, reason: str) -> Order:
        """Force `status`, bypassing the transition table. Always audited."""
        if caller.role is not Role.ADMIN:
            raise PermissionDenied("Access denied. Admin privileges required.")
        if not reason or not reason.strip():
            raise ValidationError("Reason is required", {"reason": "An override must be justified"})

        for _ in range(self.max_retries):
            order = await self.load(order_id)
            now = self.clock()
            values: Dict[str, Any] = {
                "status": status,
                "admin_notes": reason,
                "updated_at": now,
                "version": order.version + 1,
            }
            name = MILESTONES.get(status)
            if name and not order.tracking.has(name):
                milestone = self.milestone_for(status, order, now, cancelled_by=Role.ADMIN, reason=reason)
                if milestone is not None:
                    values["tracking"] = order.tracking.record(name, milestone)
            if status is OrderStatus.COMPLETED and order.actual_delivery_time is None:
                values["actual_delivery_time"] = now

            updated = await self.orders.update_if(
                order_id, {"status": order.status, "version": order.version}, values,
            )
            if updated is not None:
                ORDER_TRANSITIONS.labels(action="override", status=status.value).inc()
                logger.warning(
                    f"[TRACE {caller.trace_id}] [ADMIN OVERRIDE] Order {updated.order_number}: "
                    f"{order.status.value} → {status.value} by {caller.id}, reason: {reason}"
                )
                await self.notify_status(updated, caller.trace_id, reason=reason, previous_status=order.status.value)
                return updated

        TRANSITION_CONFLICTS.labels(action="override").inc()
        raise ConflictError("Order was modified concurrently, please retry")

    # ------------------------- QUERIES -------------------------
    async def get_order(self, order_id: str, caller: Caller) -> Order:
        order = await self.load(order_id)
        if not can_view(caller, order):
            raise PermissionDenied("Not authorized to view this order")
        return order

    async def list_customer_orders(self, caller: Caller, status: Optional[OrderStatus] = None,
                                   page: int = 1, limit: int = 10) -> dict:
        if caller.role is not Role.CUSTOMER:
            raise PermissionDenied("Access denied. Customer privileges required.")
        return await self._page(page, limit, customer_id=caller.id, statuses=[status] if status else None)

    async def list_driver_orders(self, caller: Caller, status: Optional[OrderStatus] = None) -> List[Order]:
        if caller.role is not Role.DRIVER:
            raise PermissionDenied("Access denied. Driver privileges required.")
        return await self.orders.find(driver_id=caller.id, statuses=[status] if status else None)

    async def list_all_orders(self, caller: Caller, status: Optional[OrderStatus] = None,
                              page: int = 1, limit: int = 20) -> dict:
        if caller.role is not Role.ADMIN:
            raise PermissionDenied("Access denied. Admin privileges required.")
        return await self._page(page, limit, statuses=[status] if status else None)

    async def _page(self, page: int, limit: int, **filters) -> dict:
        page, limit = max(page, 1), max(limit, 1)
        rows = await self.orders.find(limit=limit, offset=(page - 1) * limit, **filters)
        total = await self.orders.count(**filters)
        return {
            "orders": rows,
            "total_pages": (total + limit - 1) // limit,
            "current_page": page,
            "total": total,
        }
