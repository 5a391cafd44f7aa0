"""
Single bidirectional socket for live order updates.

Connect with a bearer token, as ``/ws?token=<jwt>`` or an Authorization header.

Client -> server:
    {"type": "subscribe", "role": "restaurant", "orderId": 42}
    {"type": "unsubscribe", "orderId": 42}
    {"type": "location", "orderId": 42, "lat": 35.24, "lng": 33.02}   (couriers only)
Server -> client:
    {"type": "subscribed", ...}, {"type": "status_changed", ...},
    {"type": "location", ...}, {"type": "nudge", ...}, {"type": "error", ...}
"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
import structlog

from services.order_service.service import OrderService
from shared.security import ActorRole, websocket_actor

from .events import error_message, location_event
from .hub import hub
from .schemas import LocationMessage, SubscribeMessage, UnsubscribeMessage, client_message_adapter

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Realtime"])


@router.websocket("/ws")
async def order_events(websocket: WebSocket):
    actor = websocket_actor(websocket)
    if actor is None:
        logger.info("socket_rejected", reason="missing or invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = client_message_adapter.validate_json(raw)
            except ValidationError:
                await websocket.send_json(error_message("Unrecognised message"))
                continue

            if isinstance(msg, SubscribeMessage):
                if msg.role != actor.role.value:
                    await websocket.send_json(
                        error_message(f"Your token does not allow subscribing as a {msg.role}")
                    )
                    continue
                if not await OrderService.can_watch(msg.orderId, actor):
                    await websocket.send_json(error_message(f"Order {msg.orderId} not found"))
                    continue
                await websocket.send_json(hub.subscribe(msg.orderId, websocket, actor.role))

            elif isinstance(msg, UnsubscribeMessage):
                hub.unsubscribe(msg.orderId, websocket)
                await websocket.send_json({"type": "unsubscribed", "orderId": msg.orderId})

            elif isinstance(msg, LocationMessage):
                if hub.role_of(msg.orderId, websocket) is not ActorRole.COURIER:
                    await websocket.send_json(
                        error_message("Subscribe to this order as a courier before sharing a location")
                    )
                    continue
                await hub.publish(
                    msg.orderId, location_event(msg.orderId, msg.lat, msg.lng), exclude=websocket
                )
    except WebSocketDisconnect:
        pass
    finally:
        rooms_left = hub.disconnect(websocket)
        logger.debug("socket_closed", actor_id=actor.id, rooms_left=rooms_left, open_rooms=hub.room_count)
