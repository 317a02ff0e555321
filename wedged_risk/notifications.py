"""
Push channel for "risk snapshot updated" events.

Consumers either register a callback (sync or async) or take a queue and
consume at their own pace. Publishing never fails because of a subscriber.
"""
import asyncio
import inspect
from typing import Callable, List
import structlog

from .models import RiskSnapshot

logger = structlog.get_logger()

SnapshotCallback = Callable[[RiskSnapshot], object]


class RiskUpdateNotifier:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._callbacks: List[SnapshotCallback] = []
        self._queues: List[asyncio.Queue] = []

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register a callback; returns a function that removes it"""
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def subscribe_queue(self) -> asyncio.Queue:
        queue = asyncio.Queue(maxsize=self.queue_size)
        self._queues.append(queue)
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue):
        if queue in self._queues:
            self._queues.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._queues)

    async def publish(self, snapshot: RiskSnapshot):
        for callback in list(self._callbacks):
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Risk update subscriber failed", pool_id=snapshot.pool_id, error=str(e))

        for queue in list(self._queues):
            if queue.full():
                # Slow consumer: drop its oldest update
                queue.get_nowait()
            queue.put_nowait(snapshot)
