"""
Acknowledgement SLA for pending orders.

``SLASupervisor`` keeps one cancellable asyncio task per order still waiting
for the restaurant. When the deadline passes it hands the order id to its
``on_expire`` callback exactly once; the order store does the actual
cancellation. Leaving ``pending`` by any other path must call ``cancel``.
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

import structlog

from shared.observability import sla_auto_cancel_total, sla_pending_timers

from .exceptions import IllegalTransitionError, NotFoundError, NudgeCooldownError

logger = structlog.get_logger(__name__)


def as_utc(moment: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass
class SLAEntry:
    order_id: int
    deadline: datetime
    fired: bool = False
    task: Optional[asyncio.Task] = None

    def remaining(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max(0.0, (self.deadline - now).total_seconds())


class SLASupervisor:
    def __init__(
        self,
        ack_window: float,
        on_expire: Optional[Callable[[int], Awaitable[object]]] = None,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        self.ack_window = ack_window
        self.on_expire = on_expire
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._entries: Dict[int, SLAEntry] = {}

    def __contains__(self, order_id: int) -> bool:
        return order_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def schedule(self, order_id: int, created_at: Optional[datetime] = None) -> SLAEntry:
        """Arms the deadline for an order entering ``pending``. Re-arming is a no-op."""
        existing = self._entries.get(order_id)
        if existing is not None:
            return existing

        created_at = as_utc(created_at) if created_at else datetime.now(timezone.utc)
        entry = SLAEntry(order_id=order_id, deadline=created_at + timedelta(seconds=self.ack_window))
        self._entries[order_id] = entry
        entry.task = asyncio.get_running_loop().create_task(
            self._wait_for_deadline(entry), name=f"sla-order-{order_id}"
        )
        sla_pending_timers.set(len(self._entries))
        logger.info("sla_armed", order_id=order_id, deadline=entry.deadline.isoformat())
        return entry

    def cancel(self, order_id: int) -> bool:
        """Discards the entry of an order that left ``pending``. False if there was none."""
        entry = self._entries.pop(order_id, None)
        if entry is None:
            return False
        self._stop_task(entry)
        sla_pending_timers.set(len(self._entries))
        logger.info("sla_discarded", order_id=order_id)
        return True

    def remaining(self, order_id: int) -> Optional[float]:
        entry = self._entries.get(order_id)
        return entry.remaining() if entry else None

    def deadline_for(self, order_id: int) -> Optional[datetime]:
        entry = self._entries.get(order_id)
        return entry.deadline if entry else None

    async def fire(self, order_id: int) -> bool:
        """
        Forces the expiry of one order. Only the first call for an entry does
        anything; True means this call cancelled the order.
        """
        entry = self._entries.get(order_id)
        if entry is None or entry.fired:
            return False
        # Flag and unregister before the first await so concurrent callers see it
        entry.fired = True
        del self._entries[order_id]
        sla_pending_timers.set(len(self._entries))
        self._stop_task(entry)

        if self.on_expire is None:
            return False

        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.on_expire(order_id)
            except (IllegalTransitionError, NotFoundError) as e:
                # Someone else moved (or removed) the order first
                sla_auto_cancel_total.labels(outcome="already_resolved").inc()
                logger.info("sla_already_resolved", order_id=order_id, reason=str(e))
                return False
            except Exception as e:
                logger.error(
                    "sla_auto_cancel_failed",
                    order_id=order_id,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=repr(e),
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)
                    continue
                sla_auto_cancel_total.labels(outcome="failed").inc()
                logger.critical("sla_auto_cancel_gave_up", order_id=order_id)
                return False
            sla_auto_cancel_total.labels(outcome="canceled").inc()
            logger.info("sla_auto_canceled", order_id=order_id)
            return True
        return False

    async def check_deadlines(self, now: Optional[datetime] = None) -> int:
        """Fires every entry whose deadline has passed. Returns how many orders it cancelled."""
        now = now or datetime.now(timezone.utc)
        due = [oid for oid, entry in list(self._entries.items()) if entry.deadline <= now]
        results = await asyncio.gather(*(self.fire(oid) for oid in due))
        return sum(1 for r in results if r)

    async def shutdown(self):
        tasks = [e.task for e in self._entries.values() if e.task is not None]
        for entry in list(self._entries.values()):
            self._stop_task(entry)
        self._entries.clear()
        sla_pending_timers.set(0)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _wait_for_deadline(self, entry: SLAEntry):
        await asyncio.sleep(entry.remaining())
        await self.fire(entry.order_id)

    @staticmethod
    def _stop_task(entry: SLAEntry):
        task = entry.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


class NudgeLimiter:
    """Lets a waiting student ping the restaurant at most once per cooldown window."""

    def __init__(self, cooldown: float, clock: Callable[[], float] = time.monotonic):
        self.cooldown = cooldown
        self._clock = clock
        self._last_nudge: Dict[int, float] = {}

    def acquire(self, order_id: int) -> None:
        now = self._clock()
        last = self._last_nudge.get(order_id)
        if last is not None and now - last < self.cooldown:
            retry_after = round(self.cooldown - (now - last), 2)
            raise NudgeCooldownError(
                f"Restaurant was nudged recently, try again in {retry_after:g}s", retry_after=retry_after
            )
        self._last_nudge[order_id] = now

    def forget(self, order_id: int) -> None:
        self._last_nudge.pop(order_id, None)

    def clear(self) -> None:
        self._last_nudge.clear()
