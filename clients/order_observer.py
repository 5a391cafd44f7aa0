"""
Client-side view of one order.

The realtime socket is a convenience: it can drop events, deliver them late or
not be reachable at all. ``OrderObserver`` therefore starts from a direct
fetch, keeps a slow poll running next to the socket, and only ever moves its
local status forward along the order graph. Once the order is delivered or
canceled it stops both.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol

import httpx
import structlog
import websockets

from services.order_service.state_machine import OrderStatus, is_terminal, reachable

logger = structlog.get_logger(__name__)

Fetch = Callable[[int], Awaitable[dict]]


class OrderChannel(Protocol):
    async def subscribe(self, order_id: int, role: str) -> None: ...

    def events(self) -> AsyncIterator[dict]: ...

    async def close(self) -> None: ...


class HttpOrderFetcher:
    """GET /orders/{id} with the caller's bearer token."""

    def __init__(self, base_url: str, token: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None
        self._headers = {"Authorization": f"Bearer {token}"}

    async def __call__(self, order_id: int) -> dict:
        resp = await self._client.get(f"/orders/{order_id}", headers=self._headers)
        resp.raise_for_status()
        return resp.json()

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()


class WebSocketChannel:
    """The server's /ws socket, one connection per subscription attempt."""

    def __init__(self, url: str, token: str):
        # The socket authenticates from the query string
        self.url = str(httpx.URL(url).copy_merge_params({"token": token}))
        self._ws = None

    async def subscribe(self, order_id: int, role: str) -> None:
        await self.close()
        self._ws = await websockets.connect(self.url)
        await self._ws.send(json.dumps({"type": "subscribe", "role": role, "orderId": order_id}))

    async def events(self) -> AsyncIterator[dict]:
        if self._ws is None:
            return
        async for raw in self._ws:
            try:
                yield json.loads(raw)
            except ValueError:
                logger.warning("realtime_bad_frame", frame=str(raw)[:200])

    async def close(self) -> None:
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()


class OrderObserver:
    def __init__(
        self,
        order_id: int,
        fetch: Fetch,
        channel: Optional[OrderChannel] = None,
        role: str = "student",
        poll_interval: float = 4.0,
        reconnect_delay: float = 2.0,
        ack_window: float = 120.0,
        on_status: Optional[Callable[[OrderStatus, dict], None]] = None,
        on_location: Optional[Callable[[dict], None]] = None,
    ):
        self.order_id = order_id
        self.fetch = fetch
        self.channel = channel
        self.role = role
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.ack_window = ack_window
        self.on_status = on_status
        self.on_location = on_location

        self.order: dict = {}
        self.status: Optional[OrderStatus] = None
        self.cancel_reason: Optional[str] = None
        self.last_location: Optional[dict] = None
        self._done = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._channel_closed = False

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def apply_status(self, status, source: str = "push") -> bool:
        """Moves the local status forward. Stale or out-of-order updates are ignored."""
        try:
            status = OrderStatus(status)
        except ValueError:
            logger.warning("unknown_status_ignored", order_id=self.order_id, status=status, source=source)
            return False
        if self.status is not None and not reachable(self.status, status):
            return False

        previous, self.status = self.status, status
        self.order["status"] = status.value
        logger.info(
            "order_status_observed",
            order_id=self.order_id,
            previous=previous.value if previous else None,
            status=status.value,
            source=source,
        )
        if self.on_status:
            self.on_status(status, self.order)
        if is_terminal(status):
            self._finish()
        return True

    def handle_event(self, event: dict) -> bool:
        if event.get("orderId") != self.order_id:
            return False
        kind = event.get("type")
        if kind == "status_changed":
            if event.get("reason"):
                self.cancel_reason = event["reason"]
            return self.apply_status(event.get("status"), source="push")
        if kind == "location":
            self.last_location = {k: event.get(k) for k in ("lat", "lng", "timestamp")}
            if self.on_location:
                self.on_location(self.last_location)
            return True
        return False

    async def refresh(self) -> None:
        order = await self.fetch(self.order_id)
        status = order.get("status")
        if self.status is None or reachable(self.status, status):
            self.order = dict(order)
            self.cancel_reason = order.get("cancelReason") or self.cancel_reason
        self.apply_status(status, source="fetch")

    async def start(self) -> None:
        # Authoritative baseline first, then the live channel
        await self.refresh()
        if self.finished:
            return
        self._tasks.append(asyncio.create_task(self._poll_loop(), name=f"order-{self.order_id}-poll"))
        if self.channel is not None:
            self._tasks.append(asyncio.create_task(self._listen_loop(), name=f"order-{self.order_id}-listen"))

    async def wait_terminal(self, timeout: Optional[float] = None) -> OrderStatus:
        await asyncio.wait_for(self._done.wait(), timeout)
        return self.status

    async def stop(self) -> None:
        self._done.set()
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self._close_channel()

    def seconds_remaining(self, now: Optional[datetime] = None) -> float:
        """Cosmetic countdown until the restaurant must accept. Never drives state."""
        if self.status is not OrderStatus.PENDING or not self.order.get("createdAt"):
            return 0.0
        created = datetime.fromisoformat(self.order["createdAt"])
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        deadline = created + timedelta(seconds=self.ack_window)
        return max(0.0, (deadline - now).total_seconds())

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()

    def _finish(self):
        if self._done.is_set():
            return
        self._done.set()
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        if self.channel is not None:
            asyncio.get_running_loop().create_task(self._close_channel())

    async def _close_channel(self):
        if self.channel is None or self._channel_closed:
            return
        self._channel_closed = True
        try:
            await self.channel.close()
        except Exception as e:
            logger.warning("realtime_close_failed", order_id=self.order_id, error=repr(e))

    async def _poll_loop(self):
        while not self._done.is_set():
            await asyncio.sleep(self.poll_interval)
            try:
                await self.refresh()
            except Exception as e:
                logger.warning("order_poll_failed", order_id=self.order_id, error=repr(e))

    async def _listen_loop(self):
        while not self._done.is_set():
            try:
                await self.channel.subscribe(self.order_id, self.role)
                # Changes made before the subscription took effect are not replayed
                await self.refresh()
                if self._done.is_set():
                    return
                async for event in self.channel.events():
                    self.handle_event(event)
                    if self._done.is_set():
                        return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("realtime_channel_lost", order_id=self.order_id, error=repr(e))
            if not self._done.is_set():
                await asyncio.sleep(self.reconnect_delay)
