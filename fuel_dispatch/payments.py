# --- fuel_dispatch/payments.py ---
"""
Payment reconciliation.

Two entry points reach the same "paid" effect: the customer's synchronous
confirm call and the gateway's signed webhook. Both go through `_mark_paid`,
a conditional write on the order's payment status and version, so a retried or
racing confirmation leaves `paid_at` as stamped by the first one.
"""
from datetime import datetime
from typing import Callable, Optional, Tuple

import stripe

from fuel_dispatch import config
from fuel_dispatch.auth import Caller, can_view, is_owner
from fuel_dispatch.config import get_logger
from fuel_dispatch.errors import (
    ConflictError, PermissionDenied, SignatureError, UpstreamError, ValidationError,
)
from fuel_dispatch.events import (
    PAYMENT_CONFIRMED, PAYMENT_FAILED, PAYMENT_SUCCESS, REFUND_PROCESSED, EventPublisher,
)
from fuel_dispatch.lifecycle import Action, OrderLifecycle
from fuel_dispatch.metrics import PAYMENT_EVENTS
from fuel_dispatch.pricing import format_amount
from fuel_dispatch.schemas import (
    TERMINAL_STATUSES, Order, OrderStatus, PaymentMethod, PaymentStatus, Role,
)
from fuel_dispatch.ws_manager import channel_for

logger = get_logger("fuel-dispatch.payments")

INTENT_SUCCEEDED = "payment_intent.succeeded"
INTENT_FAILED = "payment_intent.payment_failed"

# gateway intent states in which the customer can still complete the payment
PAYABLE_INTENT_STATUSES = {"requires_payment_method", "requires_confirmation", "requires_action", "processing"}


# ───────────────────────────────────────────────────────────
# Gateway (Stripe)
# ───────────────────────────────────────────────────────────
class StripeGateway:
    def __init__(self, api_key: Optional[str] = config.STRIPE_SECRET_KEY,
                 webhook_secret: str = config.STRIPE_WEBHOOK_SECRET):
        if api_key:
            stripe.api_key = api_key
        self.webhook_secret = webhook_secret

    def create_intent(self, amount: int, currency: str, metadata: dict, description: Optional[str] = None) -> dict:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency,
                metadata=metadata,
                description=description,
            )
        except stripe.StripeError as e:
            raise UpstreamError(f"Failed to create payment intent: {e}")
        return {"id": intent.id, "client_secret": intent.client_secret, "status": intent.status}

    def retrieve_intent(self, intent_id: str) -> dict:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as e:
            raise UpstreamError(f"Failed to retrieve payment intent: {e}")
        return {
            "id": intent.id,
            "status": intent.status,
            "client_secret": intent.client_secret,
            "amount": intent.amount,
            "metadata": dict(intent.get("metadata") or {}),
        }

    def refund(self, intent_id: str, metadata: Optional[dict] = None) -> dict:
        try:
            refund = stripe.Refund.create(
                payment_intent=intent_id,
                reason="requested_by_customer",
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            raise UpstreamError(f"Refund failed: {e}")
        return {"id": refund.id, "amount": refund.amount, "status": refund.status}

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        if not signature or not self.webhook_secret:
            raise SignatureError("Missing webhook signature")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"Webhook signature verification failed: {e}")
        except ValueError as e:
            raise SignatureError(f"Invalid webhook payload: {e}")
        return {"id": event["id"], "type": event["type"], "object": event["data"]["object"]}


# ───────────────────────────────────────────────────────────
# Reconciliation
# ───────────────────────────────────────────────────────────
class PaymentReconciler:
    def __init__(
        self,
        orders,
        lifecycle: OrderLifecycle,
        publisher: EventPublisher,
        gateway,
        ledger,
        clock: Callable[[], datetime] = datetime.utcnow,
        max_retries: int = 5,
    ):
        self.orders = orders
        self.lifecycle = lifecycle
        self.publisher = publisher
        self.gateway = gateway
        self.ledger = ledger
        self.clock = clock
        self.max_retries = max_retries

    async def _owned_order(self, caller: Caller, order_id: str) -> Order:
        order = await self.lifecycle.load(order_id)
        if not is_owner(caller, order):
            raise PermissionDenied("Not authorized to pay for this order")
        return order

    # ------------------------- CREATE INTENT -------------------------
    async def create_intent(self, caller: Caller, order_id: str) -> dict:
        order = await self._owned_order(caller, order_id)
        if order.payment_method is PaymentMethod.CASH:
            raise ValidationError("Cash orders are paid on delivery", {"payment_method": "cash"})
        if order.payment_status is PaymentStatus.PAID:
            raise ConflictError("Order is already paid")
        if order.status is OrderStatus.CANCELLED:
            raise ConflictError("Cannot pay for cancelled order")

        if order.payment_intent_id:
            current = self.gateway.retrieve_intent(order.payment_intent_id)
            if current.get("status") == "succeeded":
                await self._mark_paid(order.id, current["id"], "create", caller.trace_id)
                raise ConflictError("Order is already paid")
            if current.get("status") in PAYABLE_INTENT_STATUSES:
                logger.info(
                    f"[TRACE {caller.trace_id}] Reusing PaymentIntent {current['id']} for order {order.order_number}"
                )
                return {"client_secret": current.get("client_secret"), "payment_intent_id": current["id"]}

        intent = self.gateway.create_intent(
            amount=order.total_amount,
            currency=order.currency,
            metadata={"order_id": order.id, "customer_id": order.customer_id, "order_number": order.order_number},
            description=f"Fuel delivery - {order.fuel_type.value} {order.quantity}L",
        )

        updated = await self.orders.update_if(
            order.id,
            {"payment_status": order.payment_status, "version": order.version},
            {"payment_intent_id": intent["id"], "updated_at": self.clock(), "version": order.version + 1},
        )
        if updated is None:
            raise ConflictError("Order changed while creating the payment, please retry")

        logger.info(f"[TRACE {caller.trace_id}] PaymentIntent {intent['id']} created for order {order.order_number}")
        return {"client_secret": intent.get("client_secret"), "payment_intent_id": intent["id"]}

    # ------------------------- PAID EFFECT -------------------------
    async def _mark_paid(self, order_id: str, intent_id: str, source: str,
                         trace_id: Optional[str] = None) -> Tuple[Order, bool]:
        """Returns (order, applied). `applied` is False when it was already paid."""
        for _ in range(self.max_retries):
            order = await self.lifecycle.load(order_id)
            if order.payment_status is PaymentStatus.PAID:
                PAYMENT_EVENTS.labels(source=source, outcome="duplicate").inc()
                logger.info(f"[TRACE {trace_id}] [SKIP] Order {order.order_number} already paid ({source})")
                return order, False
            if order.payment_status is PaymentStatus.REFUNDED:
                raise ConflictError("Order payment was already refunded")

            now = self.clock()
            values = {
                "payment_status": PaymentStatus.PAID,
                "payment_intent_id": intent_id,
                "transaction_id": intent_id,
                "paid_at": now,
                "updated_at": now,
                "version": order.version + 1,
            }
            if order.status is OrderStatus.PENDING:
                values.update(self.lifecycle.plan(order, Action.CONFIRM, None, now))

            updated = await self.orders.update_if(
                order_id, {"payment_status": order.payment_status, "version": order.version}, values,
            )
            if updated is None:
                continue

            PAYMENT_EVENTS.labels(source=source, outcome="paid").inc()
            logger.info(f"[TRACE {trace_id}] Order {updated.order_number} marked PAID via {source}")

            payload = {"order_id": updated.id, "order_number": updated.order_number}
            await self.publisher.publish(
                [channel_for(Role.CUSTOMER, updated.customer_id)], PAYMENT_SUCCESS, payload, trace_id,
            )
            await self.publisher.to_admins(
                PAYMENT_CONFIRMED,
                {**payload, "amount": format_amount(updated.total_amount), "customer_id": updated.customer_id},
                trace_id,
            )
            if updated.status is not order.status:
                await self.lifecycle.notify_status(updated, trace_id)
            return updated, True

        raise ConflictError("Order was modified concurrently, please retry")

    async def _mark_failed(self, order_id: str, error: Optional[str], trace_id: Optional[str] = None) -> Order:
        for _ in range(self.max_retries):
            order = await self.lifecycle.load(order_id)
            if order.payment_status is not PaymentStatus.PENDING:
                logger.info(
                    f"[TRACE {trace_id}] Ignoring failure for order {order.order_number} "
                    f"in payment status {order.payment_status.value}"
                )
                return order

            now = self.clock()
            updated = await self.orders.update_if(
                order_id,
                {"payment_status": order.payment_status, "version": order.version},
                {"payment_status": PaymentStatus.FAILED, "updated_at": now, "version": order.version + 1},
            )
            if updated is None:
                continue

            PAYMENT_EVENTS.labels(source="webhook", outcome="failed").inc()
            logger.info(f"[TRACE {trace_id}] Order {updated.order_number} payment FAILED: {error}")
            await self.publisher.publish(
                [channel_for(Role.CUSTOMER, updated.customer_id)],
                PAYMENT_FAILED,
                {"order_id": updated.id, "order_number": updated.order_number, "error": error},
                trace_id,
            )
            return updated

        raise ConflictError("Order was modified concurrently, please retry")

    # ------------------------- SYNCHRONOUS CONFIRM -------------------------
    async def confirm_payment(self, caller: Caller, order_id: str, intent_id: str) -> Order:
        order = await self._owned_order(caller, order_id)
        if order.payment_status is PaymentStatus.PAID:
            return order

        intent = self.gateway.retrieve_intent(intent_id)
        owner = (intent.get("metadata") or {}).get("order_id")
        belongs = owner == order.id if owner else order.payment_intent_id == intent_id
        if not belongs:
            raise ValidationError("Payment intent does not belong to this order", {"payment_intent_id": intent_id})

        if intent.get("status") != "succeeded":
            PAYMENT_EVENTS.labels(source="confirm", outcome="not_succeeded").inc()
            logger.warning(f"[TRACE {caller.trace_id}] PaymentIntent {intent_id} not succeeded: {intent.get('status')}")
            raise ConflictError("Payment not successful", {"status": str(intent.get("status"))})

        updated, _ = await self._mark_paid(order.id, intent_id, "confirm", caller.trace_id)
        return updated

    # ------------------------- WEBHOOK -------------------------
    async def handle_webhook(self, payload: bytes, signature: Optional[str], trace_id: Optional[str] = None) -> dict:
        try:
            event = self.gateway.verify_webhook(payload, signature)
        except SignatureError as e:
            PAYMENT_EVENTS.labels(source="webhook", outcome="rejected").inc()
            logger.warning(f"[TRACE {trace_id}] [WEBHOOK] Dropped unverified payload: {e}")
            raise

        if not await self.ledger.record(event["id"], event["type"], "payment-gateway"):
            logger.info(f"[TRACE {trace_id}] [SKIP] Duplicate webhook {event['type']} ({event['id']})")
            return {"received": True, "duplicate": True}

        try:
            await self._apply_event(event, trace_id)
        except Exception as e:
            # redelivery of this event id must be processed again
            await self.ledger.forget(event["id"])
            logger.error(f"[TRACE {trace_id}] [WEBHOOK] Failed to process {event['type']} ({event['id']}): {e}")
            raise
        return {"received": True}

    async def _apply_event(self, event: dict, trace_id: Optional[str]):
        if event["type"] not in (INTENT_SUCCEEDED, INTENT_FAILED):
            logger.info(f"[TRACE {trace_id}] Unhandled event type {event['type']}")
            return

        intent = event["object"]
        order = await self.orders.find_by_intent(intent["id"])
        if order is None:
            order_id = (intent.get("metadata") or {}).get("order_id")
            order = await self.orders.get(order_id) if order_id else None
        if order is None:
            logger.warning(f"[TRACE {trace_id}] [WEBHOOK] No order for payment intent {intent['id']}")
            return

        if event["type"] == INTENT_SUCCEEDED:
            await self._mark_paid(order.id, intent["id"], "webhook", trace_id)
        else:
            error = (intent.get("last_payment_error") or {}).get("message")
            await self._mark_failed(order.id, error, trace_id)

    # ------------------------- REFUND -------------------------
    async def refund(self, caller: Caller, order_id: str, reason: Optional[str] = None) -> dict:
        order = await self.lifecycle.load(order_id)
        if caller.role is Role.DRIVER or (caller.role is Role.CUSTOMER and not is_owner(caller, order)):
            raise PermissionDenied("Not authorized")
        if order.payment_status is not PaymentStatus.PAID:
            raise ConflictError("Order is not paid, cannot refund")
        if order.status is OrderStatus.COMPLETED:
            raise ConflictError("Cannot refund completed orders")
        if not order.payment_intent_id:
            raise ConflictError("No payment record found for refund")

        reason = reason or "Refund processed"
        refund = self.gateway.refund(order.payment_intent_id, metadata={"order_id": order.id, "reason": reason})

        for _ in range(self.max_retries):
            order = await self.lifecycle.load(order_id)
            if order.payment_status is PaymentStatus.REFUNDED:
                break
            now = self.clock()
            values = {
                "payment_status": PaymentStatus.REFUNDED,
                "refund_id": refund["id"],
                "updated_at": now,
                "version": order.version + 1,
            }
            if order.status not in TERMINAL_STATUSES:
                values.update(self.lifecycle.plan(order, Action.CANCEL, caller, now, reason=reason))
            elif order.status is OrderStatus.COMPLETED:
                logger.error(f"[TRACE {caller.trace_id}] Order {order.order_number} completed during refund {refund['id']}")
                raise ConflictError("Cannot refund completed orders")

            updated = await self.orders.update_if(
                order_id, {"payment_status": PaymentStatus.PAID, "version": order.version}, values,
            )
            if updated is None:
                continue

            PAYMENT_EVENTS.labels(source="refund", outcome="refunded").inc()
            logger.info(f"[TRACE {caller.trace_id}] Refund {refund['id']} processed for order {updated.order_number}")
            await self.publisher.publish(
                [channel_for(Role.CUSTOMER, updated.customer_id)],
                REFUND_PROCESSED,
                {
                    "order_id": updated.id,
                    "order_number": updated.order_number,
                    "refund_amount": format_amount(updated.total_amount),
                    "refund_id": refund["id"],
                },
                caller.trace_id,
            )
            if updated.status is not order.status:
                await self.lifecycle.notify_status(updated, caller.trace_id, reason=reason)
            order = updated
            break
        else:
            raise ConflictError("Order was modified concurrently, please retry")

        return {"refund_id": refund["id"], "amount": format_amount(refund.get("amount") or 0), "order": order}

    # ------------------------- STATUS -------------------------
    async def payment_status(self, caller: Caller, order_id: str) -> dict:
        order = await self.lifecycle.load(order_id)
        if not can_view(caller, order):
            raise PermissionDenied("Not authorized")
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "payment_status": order.payment_status.value,
            "payment_method": order.payment_method.value,
            "total_amount": order.total_amount,
            "total": format_amount(order.total_amount),
            "currency": order.currency,
            "payment_intent_id": order.payment_intent_id,
            "transaction_id": order.transaction_id,
            "paid_at": order.paid_at,
            "refund_id": order.refund_id,
        }
