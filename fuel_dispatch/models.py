from datetime import datetime

from sqlalchemy import (
    Table, Column, String, Integer, Float, Boolean, Numeric, Text, JSON, DateTime, Index,
)

from fuel_dispatch.database import metadata

# ------------------------
# Orders table
# ------------------------
orders = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_number", String, nullable=False, unique=True),
    Column("customer_id", String, nullable=False),
    Column("customer_name", String, nullable=True),
    Column("driver_id", String, nullable=True),
    Column("fuel_type", String, nullable=False),
    Column("quantity", Numeric(12, 3, asdecimal=True), nullable=False),
    # amounts are minor currency units
    Column("unit_price", Integer, nullable=False),
    Column("base_amount", Integer, nullable=False),
    Column("delivery_fee", Integer, nullable=False),
    Column("tax_amount", Integer, nullable=False),
    Column("total_amount", Integer, nullable=False),
    Column("currency", String, nullable=False),
    Column("payment_method", String, nullable=False),
    Column("delivery_address", JSON, nullable=False),
    Column("status", String, nullable=False, default="pending"),
    Column("payment_status", String, nullable=False, default="pending"),
    Column("payment_intent_id", String, nullable=True, index=True),
    Column("transaction_id", String, nullable=True),
    Column("paid_at", DateTime, nullable=True),
    Column("refund_id", String, nullable=True),
    Column("tracking", JSON, nullable=False),
    Column("rating_by_customer", JSON(none_as_null=True), nullable=True),
    Column("rating_by_driver", JSON(none_as_null=True), nullable=True),
    Column("scheduled_time", DateTime, nullable=True),
    Column("estimated_delivery_time", DateTime, nullable=True),
    Column("actual_delivery_time", DateTime, nullable=True),
    Column("customer_notes", Text, nullable=True),
    Column("driver_notes", Text, nullable=True),
    Column("admin_notes", Text, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
    Column("version", Integer, nullable=False, default=0),
)

Index("ix_orders_customer_created", orders.c.customer_id, orders.c.created_at)
Index("ix_orders_driver_status", orders.c.driver_id, orders.c.status)
Index("ix_orders_status_created", orders.c.status, orders.c.created_at)

# ------------------------
# Driver profile fragment
# ------------------------
drivers = Table(
    "drivers",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("is_approved", Boolean, nullable=False, default=False),
    Column("rejection_reason", String, nullable=True),
    Column("is_online", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("latitude", Float, nullable=True),
    Column("longitude", Float, nullable=True),
    Column("location_updated_at", DateTime, nullable=True),
    Column("rating", Float, nullable=False, default=0.0),
    Column("total_ratings", Integer, nullable=False, default=0),
    Column("rating_points", Integer, nullable=False, default=0),
    Column("vehicle", JSON(none_as_null=True), nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("version", Integer, nullable=False, default=0),
)

# ------------------------
# Processed gateway events (webhook idempotency)
# ------------------------
processed_events = Table(
    "processed_events",
    metadata,
    Column("event_id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("source_service", String, nullable=False),
    Column("processed_at", DateTime, default=datetime.utcnow),
)
