# --- fuel_dispatch/events.py ---
import json
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

import aioboto3

from fuel_dispatch import config
from fuel_dispatch.config import get_logger
from fuel_dispatch.metrics import DISPATCH_EVENTS
from fuel_dispatch.pricing import format_amount
from fuel_dispatch.schemas import Order, Role
from fuel_dispatch.ws_manager import ADMINS_CHANNEL, channel_for

logger = get_logger("fuel-dispatch.events")

# ───────────────────────────────────────────────────────────
# Event kinds
# ───────────────────────────────────────────────────────────
NEW_ORDER = "newOrder"
ORDER_UPDATE = "orderUpdate"
DRIVER_LOCATION_UPDATE = "driverLocationUpdate"
DRIVER_STATUS_CHANGE = "driverStatusChange"
PAYMENT_SUCCESS = "paymentSuccess"
PAYMENT_FAILED = "paymentFailed"
PAYMENT_CONFIRMED = "paymentConfirmed"
REFUND_PROCESSED = "refundProcessed"
APPROVAL_STATUS_UPDATE = "approvalStatusUpdate"
ACCOUNT_STATUS_UPDATE = "accountStatusUpdate"

# Lifecycle events also handed to downstream consumers through SQS
FORWARDED_EVENTS = {NEW_ORDER, ORDER_UPDATE, PAYMENT_SUCCESS, PAYMENT_FAILED, REFUND_PROCESSED}


def build_event(event_type: str, data: dict, trace_id: Optional[str] = None) -> dict:
    return {
        "type": event_type,
        "event_id": str(uuid.uuid4()),
        "data": data,
        "trace_id": trace_id,
        "timestamp": datetime.utcnow().isoformat(),
    }


def participant_channels(order: Order) -> List[str]:
    channels = [channel_for(Role.CUSTOMER, order.customer_id)]
    if order.driver_id:
        channels.append(channel_for(Role.DRIVER, order.driver_id))
    return channels


def order_update_payload(order: Order, reason: Optional[str] = None, **extra) -> dict:
    data = {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "tracking": order.tracking.model_dump(mode="json", exclude_none=True),
    }
    if order.driver_id:
        data["driver_id"] = order.driver_id
    if reason:
        data["reason"] = reason
    data.update(extra)
    return data


def new_order_payload(order: Order, customer: dict) -> dict:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "customer": customer,
        "fuel_type": order.fuel_type.value,
        "quantity": str(order.quantity),
        "total_amount": order.total_amount,
        "total": format_amount(order.total_amount),
        "currency": order.currency,
        "delivery_address": order.delivery_address.model_dump(mode="json"),
    }


class EventPublisher:
    """
    Builds the standard event envelope and hands it to the broadcaster for each
    target channel. Delivery is best effort: a failing channel is logged and the
    remaining channels still receive the event.
    """

    def __init__(
        self,
        broadcaster,
        use_aws: bool = config.USE_AWS,
        queue_url: Optional[str] = config.ORDER_EVENTS_QUEUE_URL,
        region: str = config.AWS_REGION,
    ):
        self.broadcaster = broadcaster
        self.queue_url = queue_url
        self.region = region
        self.session = aioboto3.Session() if use_aws and queue_url else None

    async def publish(self, channels: Iterable[Optional[str]], event_type: str, data: dict,
                      trace_id: Optional[str] = None) -> dict:
        event = build_event(event_type, data, trace_id)

        for channel in dict.fromkeys(c for c in channels if c):
            try:
                await self.broadcaster.publish(channel, event)
            except Exception as e:
                logger.warning(f"[TRACE {trace_id}] [WebSocket ERROR] {event_type} → {channel}: {e}")

        DISPATCH_EVENTS.labels(event_type=event_type).inc()

        if self.session and event_type in FORWARDED_EVENTS:
            await self._forward(event)
        return event

    async def to_admins(self, event_type: str, data: dict, trace_id: Optional[str] = None) -> dict:
        return await self.publish([ADMINS_CHANNEL], event_type, data, trace_id)

    async def _forward(self, event: dict):
        try:
            async with self.session.client("sqs", region_name=self.region) as sqs:
                await sqs.send_message(QueueUrl=self.queue_url, MessageBody=json.dumps(event))
                logger.info(f"[SQS] {event['type']} event_id={event['event_id']}")
        except Exception as e:
            logger.error(f"[SQS ERROR] {event['type']} event_id={event['event_id']}: {e}")
