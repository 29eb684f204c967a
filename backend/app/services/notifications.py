"""
In-process fan-out of "eligible conversion recorded" events.

One ConversionNotifier per process, owned by the app lifespan:

    notifier = ConversionNotifier(maxsize=settings.NOTIFICATION_QUEUE_SIZE)
    notifier.start()
    ...
    await notifier.close()

publish() never blocks the write path. Delivery is at-most-once per event per
subscriber; a full queue drops the event.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Union

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionNotification:
    conversion_id: uuid.UUID
    customer_id: str
    marketer_id: uuid.UUID
    product_id: uuid.UUID
    tracking_code: str
    initial_spend_amount: Decimal
    attribution_method: str
    commission_eligible: bool
    timestamp: datetime


Subscriber = Callable[[ConversionNotification], Union[None, Awaitable[None]]]


class ConversionNotifier:
    def __init__(self, maxsize: int | None = None):
        self._maxsize = maxsize or settings.NOTIFICATION_QUEUE_SIZE
        self._queue: asyncio.Queue[ConversionNotification] | None = None
        self._subscribers: list[Subscriber] = []
        self._task: asyncio.Task | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------
    def on_eligible_conversion(self, callback: Subscriber) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def off_eligible_conversion(self, callback: Subscriber) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Start the dispatcher on the running loop. Idempotent."""
        if self.running:
            return
        self._closed = False
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._task = asyncio.get_running_loop().create_task(self._dispatch(), name="conversion-notifier")
        logger.info("Conversion notifier started (queue size %s)", self._maxsize)

    async def drain(self) -> None:
        if self._queue is not None and self.running:
            await self._queue.join()

    async def close(self) -> None:
        if self._closed:
            return
        await self.drain()
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Conversion notifier closed")

    # ------------------------------------------------------------------
    # Publish / dispatch
    # ------------------------------------------------------------------
    def publish(self, event: ConversionNotification) -> bool:
        """Enqueue without blocking. Returns False when the event was not queued."""
        if self._closed or self._queue is None:
            logger.warning("Conversion notifier not running, dropping notification for %s", event.conversion_id)
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Notification queue full, dropping notification for %s", event.conversion_id)
            return False
        return True

    async def _dispatch(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            try:
                # snapshot: subscribers registered at dispatch time
                for callback in list(self._subscribers):
                    await self._deliver(callback, event)
            finally:
                self._queue.task_done()

    async def _deliver(self, callback: Subscriber, event: ConversionNotification) -> None:
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Conversion subscriber %r failed for %s", callback, event.conversion_id)
