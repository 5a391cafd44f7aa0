from prometheus_client import Counter, Gauge

# Business Metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total orders placed",
    ["payment_method"] # Labels: 'cash', 'card_on_delivery', 'online_card'
)

order_transitions_total = Counter(
    "order_transitions_total",
    "Order status transition requests",
    ["to_status", "actor_role", "outcome"] # outcome: 'accepted', 'rejected'
)

sla_auto_cancel_total = Counter(
    "sla_auto_cancel_total",
    "SLA deadline firings",
    ["outcome"] # Labels: 'canceled', 'already_resolved', 'failed'
)

sla_pending_timers = Gauge(
    "sla_pending_timers",
    "Orders currently waiting for restaurant acknowledgement"
)

realtime_rooms = Gauge(
    "realtime_rooms",
    "Order rooms with at least one live subscriber"
)

realtime_send_failures_total = Counter(
    "realtime_send_failures_total",
    "Realtime pushes that failed and dropped their connection"
)

notification_failures_total = Counter(
    "notification_failures_total",
    "Fire-and-forget notifications that could not be delivered",
    ["kind"] # Labels: 'receipt', 'nudge'
)
