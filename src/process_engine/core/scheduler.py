"""Lane-partitioned dispatcher for instance step-events."""
from __future__ import annotations

import asyncio
import logging
import zlib
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..models.events import StepEvent
from ..exceptions import DispatcherError, StoreUnavailableError


logger = logging.getLogger(__name__)


_Item = Optional[Tuple[StepEvent, "asyncio.Future[Any]"]]


class LaneDispatcher:
    """
    Routes every step-event of one instance to the same lane.

    Each lane is an asyncio queue consumed by exactly one worker, so events of
    a single instance are applied one at a time in arrival order while other
    instances progress in parallel on other lanes.
    """

    def __init__(
        self,
        handler: Callable[[StepEvent], Awaitable[Any]],
        lanes: int = 8,
    ) -> None:
        if lanes <= 0:
            raise DispatcherError("lanes must be positive")
        self.handler = handler
        self.lane_count = lanes
        self._queues: List["asyncio.Queue[_Item]"] = []
        self._workers: Dict[int, "asyncio.Task[None]"] = {}
        self._running = False
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self.fault: Optional[BaseException] = None
        self.failed_lanes: List[int] = []

    def lane_for(self, instance_id: str) -> int:
        return zlib.crc32(instance_id.encode("utf-8")) % self.lane_count

    async def start(self) -> None:
        if self._running:
            return
        if not self._queues:
            self._queues = [asyncio.Queue() for _ in range(self.lane_count)]
        self._running = True
        self.fault = None
        self.failed_lanes = []
        for lane in range(self.lane_count):
            worker = self._workers.get(lane)
            if worker is None or worker.done():
                self._workers[lane] = asyncio.create_task(self._worker_loop(lane))
        logger.info(f"Lane dispatcher started with {self.lane_count} lanes")

    async def stop(self) -> None:
        if not self._running and not self._workers:
            return
        self._running = False
        live = [(lane, w) for lane, w in self._workers.items() if not w.done()]
        for lane, _ in live:
            await self._queues[lane].put(None)
        await asyncio.gather(*(w for _, w in live), return_exceptions=True)
        self._workers.clear()
        logger.info("Lane dispatcher stopped")

    async def restart(self) -> None:
        """Resume consuming after a fatal store fault; queued events are kept."""
        await self.stop()
        await self.start()

    def submit(self, event: StepEvent) -> "asyncio.Future[Any]":
        """Enqueue without waiting; safe to call from inside a lane."""
        if not self._running:
            raise DispatcherError("Dispatcher is not running")
        if self.fault is not None:
            raise DispatcherError(f"Dispatcher is not alive: {self.fault}")

        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        future.add_done_callback(self._retrieve)
        self._pending += 1
        self._idle.clear()
        self._queues[self.lane_for(event.instance_id)].put_nowait((event, future))
        return future

    async def dispatch(self, event: StepEvent) -> Any:
        """Enqueue and wait for the event to be applied."""
        return await self.submit(event)

    async def wait_until_idle(self) -> None:
        """Wait until every queued event has been processed."""
        while self._pending:
            if self.fault is not None:
                raise DispatcherError(f"Dispatcher is not alive: {self.fault}")
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=0.05)
            except asyncio.TimeoutError:
                pass
        if self.fault is not None:
            raise DispatcherError(f"Dispatcher is not alive: {self.fault}")

    @property
    def alive(self) -> bool:
        return self._running and self.fault is None

    def health(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "alive": self.alive,
            "lanes": self.lane_count,
            "pending": self._pending,
            "backlog": [q.qsize() for q in self._queues],
            "failed_lanes": list(self.failed_lanes),
            "fault": str(self.fault) if self.fault else None,
        }

    async def _worker_loop(self, lane: int) -> None:
        queue = self._queues[lane]
        while True:
            item = await queue.get()
            if item is None:
                queue.task_done()
                break

            event, future = item
            try:
                result = await self.handler(event)
            except StoreUnavailableError as exc:
                # Stop this lane; the event is re-queued at the front of the backlog.
                logger.error(
                    f"Lane {lane} stopped, store unavailable while applying "
                    f"{event.type.value} for instance {event.instance_id}: {exc}",
                    exc_info=True,
                )
                self.fault = exc
                self.failed_lanes.append(lane)
                if not future.done():
                    future.set_exception(exc)
                self._halt_lane(queue, item, exc)
                queue.task_done()
                return
            except Exception as exc:
                logger.error(
                    f"Unhandled error applying {event.type.value} for instance "
                    f"{event.instance_id}: {exc}",
                    exc_info=True,
                )
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            self._finish_one()
            queue.task_done()

    def _halt_lane(
        self, queue: "asyncio.Queue[_Item]", item: _Item, exc: BaseException
    ) -> None:
        """Put the failed event back in front; waiting callers learn the lane is down."""
        rest: List[_Item] = []
        while not queue.empty():
            rest.append(queue.get_nowait())
            queue.task_done()
        queue.put_nowait(item)
        for other in rest:
            if other is not None and not other[1].done():
                other[1].set_exception(DispatcherError(f"Lane stopped: {exc}"))
            queue.put_nowait(other)

    def _finish_one(self) -> None:
        self._pending -= 1
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()

    @staticmethod
    def _retrieve(future: "asyncio.Future[Any]") -> None:
        if not future.cancelled():
            future.exception()
