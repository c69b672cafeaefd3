from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog

from relay.schemas.message import NormalizedMessage
from relay.services.retry import DeliveryOutcome, RetryExecutor
from relay.utils.time import utc_now

logger = structlog.get_logger(__name__)

Deliver = Callable[[NormalizedMessage], Awaitable[Any]]
OutcomeHook = Callable[["QueueItem", DeliveryOutcome], None]


@dataclass
class QueueItem:
    message: NormalizedMessage
    enqueued_at: datetime = field(default_factory=utc_now)
    retry_count: int = 0


@dataclass
class QueueStats:
    processed: int = 0
    failed: int = 0
    retried: int = 0
    dropped: int = 0


class DeliveryQueue:
    """Bounded FIFO of normalized messages with a concurrency-limited dispatcher.

    ``enqueue`` never blocks: when the queue is full the oldest pending item is
    evicted and counted as dropped. A single dispatcher task pops items in
    order and runs at most ``max_concurrent`` deliveries at once.
    """

    def __init__(
        self,
        deliver: Deliver,
        executor: RetryExecutor,
        *,
        max_size: int = 1000,
        max_concurrent: int = 3,
        dispatch_interval: float = 0.1,
        on_outcome: OutcomeHook | None = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._deliver = deliver
        self._executor = executor
        self.max_size = max_size
        self.max_concurrent = max_concurrent
        self.dispatch_interval = dispatch_interval
        self._on_outcome = on_outcome

        self.stats = QueueStats()
        self._items: deque[QueueItem] = deque()
        self._in_flight = 0
        self._tasks: set[asyncio.Task] = set()
        self._semaphore: asyncio.Semaphore | None = None
        self._wakeup: asyncio.Event | None = None
        self._idle: asyncio.Event | None = None
        self._dispatcher: asyncio.Task | None = None
        self._stopping = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def pending(self) -> list[QueueItem]:
        return list(self._items)

    def snapshot(self) -> dict[str, int]:
        return {
            "processed": self.stats.processed,
            "failed": self.stats.failed,
            "retried": self.stats.retried,
            "dropped": self.stats.dropped,
            "size": len(self._items),
            "inFlight": self._in_flight,
        }

    def enqueue(self, message: NormalizedMessage) -> QueueItem:
        if len(self._items) >= self.max_size:
            evicted = self._items.popleft()
            logger.warning(
                "queue_overflow_dropped",
                account_id=evicted.message.account_id,
                chat_id=evicted.message.chat_id,
                message_id=evicted.message.message_id,
                max_size=self.max_size,
            )
            self._record(evicted, DeliveryOutcome.DROPPED)
        item = QueueItem(message=message)
        self._items.append(item)
        if self._idle is not None:
            self._idle.clear()
        if self._wakeup is not None:
            self._wakeup.set()
        return item

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        if self._items:
            self._wakeup.set()
        else:
            self._idle.set()
        self._dispatcher = asyncio.create_task(self._run())

    async def join(self) -> None:
        if self._idle is None:
            return
        await self._idle.wait()

    async def stop(self, drain_timeout: float = 0.0) -> None:
        """Stop dispatching; wait up to ``drain_timeout`` for work, then abandon it."""
        if drain_timeout > 0 and self._idle is not None:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "queue_drain_timeout",
                    pending=len(self._items),
                    in_flight=self._in_flight,
                )
        self._stopping = True
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        abandoned = 0
        while self._items:
            self._record(self._items.popleft(), DeliveryOutcome.DROPPED)
            abandoned += 1
        if abandoned:
            logger.warning("queue_abandoned_pending", count=abandoned)
        if self._idle is not None:
            self._idle.set()

    async def _run(self) -> None:
        assert self._semaphore is not None and self._wakeup is not None
        while not self._stopping:
            if not self._items:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            await self._semaphore.acquire()
            if not self._items:
                self._semaphore.release()
                continue
            item = self._items.popleft()
            self._in_flight += 1
            task = asyncio.create_task(self._process(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            if self._items and self.dispatch_interval > 0:
                await asyncio.sleep(self.dispatch_interval)

    async def _process(self, item: QueueItem) -> None:
        assert self._semaphore is not None
        message = item.message
        outcome = DeliveryOutcome.EXHAUSTED
        try:
            result = await self._executor.attempt(
                lambda: self._deliver(message),
                item,
                on_retry=self._count_retry,
                label="deliver_message",
            )
            outcome = result.outcome
            if result.ok:
                logger.info(
                    "message_delivered",
                    account_id=message.account_id,
                    chat_id=message.chat_id,
                    message_id=message.message_id,
                    retries=item.retry_count,
                    file_unique_id=message.file_unique_id,
                )
            else:
                logger.error(
                    "message_delivery_failed",
                    account_id=message.account_id,
                    chat_id=message.chat_id,
                    message_id=message.message_id,
                    outcome=outcome.value,
                    status_code=result.status_code,
                    retries=item.retry_count,
                )
        except asyncio.CancelledError:
            outcome = DeliveryOutcome.DROPPED
            logger.warning(
                "message_delivery_cancelled",
                account_id=message.account_id,
                chat_id=message.chat_id,
                message_id=message.message_id,
            )
            raise
        finally:
            self._in_flight -= 1
            self._semaphore.release()
            self._record(item, outcome)
            self._check_idle()

    def _count_retry(self, attempt: int, delay: float, exc: BaseException) -> None:
        self.stats.retried += 1

    def _record(self, item: QueueItem, outcome: DeliveryOutcome) -> None:
        if outcome is DeliveryOutcome.DELIVERED:
            self.stats.processed += 1
        elif outcome is DeliveryOutcome.DROPPED:
            self.stats.dropped += 1
        else:
            self.stats.failed += 1
        if self._on_outcome is not None:
            self._on_outcome(item, outcome)

    def _check_idle(self) -> None:
        if self._idle is not None and not self._items and self._in_flight == 0:
            self._idle.set()
