from .setup import setup_observability, configure_logging
from .metrics import (
    orders_created_total,
    order_transitions_total,
    sla_auto_cancel_total,
    sla_pending_timers,
    realtime_rooms,
    realtime_send_failures_total,
    notification_failures_total,
)
