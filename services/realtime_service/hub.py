"""
Room-based fan-out of order events.

A room is the set of live connections interested in one order. Delivery is
at-most-once with no replay: a client that (re)connects late must fetch the
order to catch up. Registry mutations never await, so they are atomic with
respect to other connections on the event loop.
"""
import asyncio
from typing import Dict, Optional, Protocol

import structlog

from shared.observability import realtime_rooms, realtime_send_failures_total
from shared.security.actors import ActorRole

from .events import subscribed_ack

logger = structlog.get_logger(__name__)


class Connection(Protocol):
    async def send_json(self, data: dict) -> None: ...


class RealtimeHub:
    def __init__(self):
        self._rooms: Dict[int, Dict[Connection, ActorRole]] = {}

    def subscribe(self, order_id: int, connection: Connection, role) -> dict:
        role = ActorRole(role)
        room = self._rooms.setdefault(order_id, {})
        room[connection] = role
        realtime_rooms.set(self.room_count)
        logger.debug("room_joined", order_id=order_id, role=role.value, room_size=len(room))
        return subscribed_ack(order_id, role)

    def unsubscribe(self, order_id: int, connection: Connection) -> bool:
        room = self._rooms.get(order_id)
        if room is None or connection not in room:
            return False
        del room[connection]
        if not room:
            del self._rooms[order_id]
        realtime_rooms.set(self.room_count)
        return True

    def disconnect(self, connection: Connection) -> int:
        """Removes a connection from every room it joined. Returns how many rooms it left."""
        left = [order_id for order_id, room in self._rooms.items() if connection in room]
        for order_id in left:
            self.unsubscribe(order_id, connection)
        return len(left)

    def role_of(self, order_id: int, connection: Connection):
        return self._rooms.get(order_id, {}).get(connection)

    def room_size(self, order_id: int) -> int:
        return len(self._rooms.get(order_id, {}))

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    async def publish(self, order_id: int, event: dict, exclude: Optional[Connection] = None) -> int:
        """Sends ``event`` to everyone in the order's room. Returns the number of successful sends."""
        room = self._rooms.get(order_id)
        if not room:
            return 0
        targets = [conn for conn in room if conn is not exclude]
        results = await asyncio.gather(
            *(conn.send_json(event) for conn in targets), return_exceptions=True
        )
        delivered = 0
        for conn, result in zip(targets, results):
            if isinstance(result, BaseException):
                # A dead socket only loses its own subscriptions
                realtime_send_failures_total.inc()
                logger.warning(
                    "realtime_send_failed", order_id=order_id, event_type=event.get("type"), error=repr(result)
                )
                self.disconnect(conn)
            else:
                delivered += 1
        return delivered

    def clear(self):
        self._rooms.clear()
        realtime_rooms.set(0)


hub = RealtimeHub()
