from prometheus_client import Counter, Gauge

ORDER_TRANSITIONS = Counter(
    "order_transitions_total",
    "Order status transitions applied",
    ["action", "status"]
)

TRANSITION_CONFLICTS = Counter(
    "order_transition_conflicts_total",
    "Transitions rejected because the order moved on or another writer won",
    ["action"]
)

PAYMENT_EVENTS = Counter(
    "payment_events_processed_total",
    "Payment reconciliation outcomes",
    ["source", "outcome"]
)

DISPATCH_EVENTS = Counter(
    "dispatch_events_published_total",
    "Real-time events published",
    ["event_type"]
)

WS_CONNECTIONS = Gauge(
    "ws_connections_active",
    "Currently connected WebSocket clients"
)

ONLINE_DRIVERS = Gauge(
    "drivers_online",
    "Drivers that went online through this process minus those that went offline"
)
