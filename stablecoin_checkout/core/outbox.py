"""
Transactional outbox dispatcher for payouts.

``order.paid`` events are written in the same transaction that flips an order
to paid. The dispatcher drains them into the payout handler:
1. Reading unpublished events from the outbox
2. Running the handler for each event
3. Marking successful events as published

Delivery is at-least-once; the handler must tolerate redelivery.
"""
import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, List, Optional, Set

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..database.ledger import ORDER_PAID_EVENT
from ..database.models import OutboxEvent, utcnow
from ..monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PayoutHandler = Callable[[uuid.UUID], Awaitable[Any]]
Sweeper = Callable[[], Awaitable[Any]]


class PayoutDispatcher:
    """
    Delivers ``order.paid`` events to the payout handler.

    ``dispatch()`` drains the outbox right away in a detached task; ``start()``
    runs the polling loop that picks up anything a crash or failure left
    behind, and periodically runs the optional ``sweeper`` for payouts a dead
    process abandoned mid-flight.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        handler: PayoutHandler,
        sweeper: Optional[Sweeper] = None,
    ):
        self.session_factory = session_factory
        self.handler = handler
        self.sweeper = sweeper
        self.batch_size = settings.outbox_batch_size
        self.poll_interval_seconds = settings.outbox_poll_interval_seconds
        self.sweep_interval_seconds = settings.payout_sweep_interval_seconds
        self._running = False
        self._wakeup: Optional[asyncio.Event] = None
        self._last_sweep: Optional[float] = None
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

        logger.info(
            "payout_dispatcher_initialized",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.published == False,  # noqa: E712
                OutboxEvent.event_type == ORDER_PAID_EVENT,
            )
            .order_by(OutboxEvent.attempts, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _deliver(self, event: OutboxEvent) -> Optional[str]:
        """
        Run the handler for one event.

        Returns:
            Optional[str]: None on success, the error message otherwise
        """
        try:
            order_id = uuid.UUID(event.payload["order_id"])
            await self.handler(order_id)
        except Exception as e:
            logger.error(
                "outbox_event_delivery_failed",
                event_id=event.id,
                aggregate_id=str(event.aggregate_id),
                error=str(e),
            )
            return str(e) or type(e).__name__

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_delivered",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return None

    async def process_batch(self) -> int:
        """
        Deliver one batch of unpublished events.

        Returns:
            int: Number of events delivered
        """
        async with self._lock:
            async with self.session_factory() as db:
                events = await self._fetch_unpublished_events(db)

            if not events:
                return 0

            delivered = 0
            for event in events:
                error = await self._deliver(event)
                async with self.session_factory() as db, db.begin():
                    if error is None:
                        values = {"published": True, "published_at": utcnow()}
                        delivered += 1
                    else:
                        values = {
                            "attempts": OutboxEvent.attempts + 1,
                            "last_error": error[:500],
                        }
                    await db.execute(
                        update(OutboxEvent).where(OutboxEvent.id == event.id).values(**values)
                    )

            logger.info(
                "outbox_batch_processed",
                total=len(events),
                delivered=delivered,
                failed=len(events) - delivered,
            )
            return delivered

    def dispatch(self) -> asyncio.Task:
        """Schedule an immediate outbox drain without waiting for it."""
        task = asyncio.get_running_loop().create_task(self._drain())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _drain(self) -> None:
        try:
            await self.process_batch()
        except Exception as e:
            logger.error("payout_dispatch_failed", error=str(e))

    async def wait_idle(self) -> None:
        """Wait for every task started by ``dispatch()`` to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def sweep_if_due(self) -> None:
        """Run the sweeper at most once per ``payout_sweep_interval_seconds``."""
        if self.sweeper is None:
            return
        now = time.monotonic()
        if self._last_sweep is not None and now - self._last_sweep < self.sweep_interval_seconds:
            return
        self._last_sweep = now
        swept = await self.sweeper()
        if swept:
            logger.warning("stranded_payouts_swept", count=swept)

    async def start(self) -> None:
        """
        Poll the outbox until ``stop()`` is called.

        A batch that is already running when ``stop()`` arrives is finished
        before the loop exits.
        """
        self._running = True
        self._wakeup = asyncio.Event()
        logger.info("payout_dispatcher_started")

        try:
            while self._running:
                try:
                    await self.sweep_if_due()
                    delivered = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                    await self._pause(0.1 if delivered else self.poll_interval_seconds)
                except Exception as e:
                    logger.error("payout_dispatcher_error", error=str(e))
                    await self._pause(self.poll_interval_seconds)
        finally:
            logger.info("payout_dispatcher_stopped")

    async def _pause(self, seconds: float) -> None:
        """Sleep between polls, waking early on ``stop()``."""
        if self._wakeup is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        logger.info("payout_dispatcher_stop_requested")

    async def get_pending_count(self) -> int:
        async with self.session_factory() as db:
            stmt = select(func.count(OutboxEvent.id)).where(
                OutboxEvent.published == False  # noqa: E712
            )
            return int(await db.scalar(stmt) or 0)
