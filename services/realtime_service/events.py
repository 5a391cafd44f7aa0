from datetime import datetime, timezone
from typing import Optional


def _stamp(timestamp: Optional[datetime]) -> str:
    return (timestamp or datetime.now(timezone.utc)).isoformat()


def status_changed_event(order_id: int, status: str, timestamp: Optional[datetime] = None,
                         reason: Optional[str] = None) -> dict:
    event = {
        "type": "status_changed",
        "orderId": order_id,
        "status": getattr(status, "value", status),
        "timestamp": _stamp(timestamp),
    }
    if reason:
        event["reason"] = reason
    return event


def location_event(order_id: int, lat: float, lng: float, timestamp: Optional[datetime] = None) -> dict:
    return {"type": "location", "orderId": order_id, "lat": lat, "lng": lng, "timestamp": _stamp(timestamp)}


def nudge_event(order_id: int, timestamp: Optional[datetime] = None) -> dict:
    return {"type": "nudge", "orderId": order_id, "timestamp": _stamp(timestamp)}


def subscribed_ack(order_id: int, role: str) -> dict:
    return {"type": "subscribed", "orderId": order_id, "role": getattr(role, "value", role)}


def error_message(message: str) -> dict:
    return {"type": "error", "message": message}
