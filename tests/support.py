import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta
from decimal import Decimal

from fuel_dispatch.auth import Caller
from fuel_dispatch.payments import StripeGateway
from fuel_dispatch.schemas import (
    Address, ApprovalUpdate, Coordinates, DriverCreate, LocationUpdate, OrderCreate, OrderStatus, Role,
)
from fuel_dispatch.store import MemoryDriverStore, MemoryOrderStore

WEBHOOK_SECRET = "whsec_test_secret"

CUSTOMER = Caller(id="cust-1", role=Role.CUSTOMER, name="Asha", trace_id="t-cust-1")
OTHER_CUSTOMER = Caller(id="cust-2", role=Role.CUSTOMER, name="Kiran", trace_id="t-cust-2")
DRIVER = Caller(id="drv-1", role=Role.DRIVER, name="Ravi", trace_id="t-drv-1")
OTHER_DRIVER = Caller(id="drv-2", role=Role.DRIVER, name="Meena", trace_id="t-drv-2")
ADMIN = Caller(id="adm-1", role=Role.ADMIN, name="Ops", trace_id="t-adm-1")

BANGALORE = (12.9716, 77.5946)


class Clock:
    """Deterministic clock that moves forward one second per reading."""

    def __init__(self, start=datetime(2025, 1, 1, 9, 0, 0)):
        self.now = start

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


class RecordingBroadcaster:
    def __init__(self):
        self.sent = []

    async def publish(self, channel, message):
        self.sent.append((channel, message))
        return 1

    def events(self, event_type=None, channel=None):
        return [
            m for c, m in self.sent
            if (event_type is None or m["type"] == event_type) and (channel is None or c == channel)
        ]


class FakeGateway(StripeGateway):
    """Stripe stand-in for intents and refunds; webhook verification stays real."""

    def __init__(self):
        super().__init__(api_key=None, webhook_secret=WEBHOOK_SECRET)
        self.intents = {}
        self.refunds = []

    def create_intent(self, amount, currency, metadata, description=None):
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {
            "id": intent_id,
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret",
            "amount": amount,
            "metadata": dict(metadata),
        }
        return {key: self.intents[intent_id][key] for key in ("id", "client_secret", "status")}

    def succeed(self, intent_id):
        self.intents[intent_id]["status"] = "succeeded"

    def retrieve_intent(self, intent_id):
        return dict(self.intents[intent_id])

    def refund(self, intent_id, metadata=None):
        refund = {"id": f"re_test_{len(self.refunds) + 1}", "amount": self.intents[intent_id]["amount"], "status": "succeeded"}
        self.refunds.append(refund)
        return refund


class FakeIdentity:
    def __init__(self):
        self.users = {
            CUSTOMER.id: {"id": CUSTOMER.id, "name": "Asha Rao", "phone": "9800000001", "role": "customer"},
            OTHER_CUSTOMER.id: {"id": OTHER_CUSTOMER.id, "name": "Kiran", "role": "customer"},
            DRIVER.id: {"id": DRIVER.id, "name": "Ravi", "role": "driver"},
        }
        self.status_calls = []

    async def find_user_by_id(self, user_id, trace_id=None):
        return self.users.get(user_id)

    async def set_user_active(self, user_id, is_active, trace_id=None):
        self.status_calls.append((user_id, is_active))
        user = self.users.get(user_id)
        if user is None:
            return None
        user["is_active"] = is_active
        return user


class YieldingOrderStore(MemoryOrderStore):
    """Yields to the loop after every read so concurrent writers interleave."""

    async def get(self, order_id):
        order = await super().get(order_id)
        await asyncio.sleep(0)
        return order


class YieldingDriverStore(MemoryDriverStore):
    async def get(self, driver_id):
        profile = await super().get(driver_id)
        await asyncio.sleep(0)
        return profile


def order_request(fuel_type="petrol", quantity="10", payment_method="card", lat=BANGALORE[0], lon=BANGALORE[1]):
    return OrderCreate(
        fuel_type=fuel_type,
        quantity=Decimal(quantity),
        payment_method=payment_method,
        delivery_address=Address(
            street="12 MG Road",
            city="Bengaluru",
            state="KA",
            zip_code="560001",
            coordinates=Coordinates(latitude=lat, longitude=lon),
        ),
    )


async def ready_driver(services, caller=DRIVER, online=True, location=None):
    await services.driver_service.register_profile(DriverCreate(id=caller.id, name=caller.name))
    await services.driver_service.set_approval(ADMIN, caller.id, ApprovalUpdate(is_approved=True))
    if online:
        await services.driver_service.set_online(caller, True)
    if location:
        await services.driver_service.update_location(caller, LocationUpdate(latitude=location[0], longitude=location[1]))


async def confirmed_order(services, customer=CUSTOMER, **kwargs):
    order = await services.lifecycle.place_order(customer, order_request(**kwargs))
    return await services.lifecycle.confirm(order.id, ADMIN)


async def delivered_order(services, customer=CUSTOMER, driver=DRIVER):
    order = await confirmed_order(services, customer)
    lifecycle = services.lifecycle
    await lifecycle.accept(order.id, driver)
    await lifecycle.advance(order.id, driver, OrderStatus.DRIVER_EN_ROUTE)
    await lifecycle.advance(order.id, driver, OrderStatus.ARRIVED)
    await lifecycle.advance(order.id, driver, OrderStatus.DELIVERING)
    return await lifecycle.advance(order.id, driver, OrderStatus.COMPLETED, signature="signed-by-asha")


def stripe_event(event_id, event_type, intent_id, **intent_fields):
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": intent_id, "object": "payment_intent", **intent_fields}},
    })


def sign(payload, secret=WEBHOOK_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    mac = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={mac}"
