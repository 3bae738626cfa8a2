"""
定时器与外部事件总线
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Set, Tuple, Callable, Awaitable

from ..models.clock import Clock, utcnow
from ..models.task import TimerSubscription, TimerDisposition, ExternalEvent
from ..models.events import StepEvent, StepEventType
from ..storage.repository import TimerRepository
from ..monitoring import (
    MetricsRecorder, TIMERS_FIRED, EVENTS_DELIVERED, EVENTS_BUFFERED, EVENTS_DUPLICATE
)
from ..exceptions import StoreUnavailableError, DispatcherError


logger = logging.getLogger(__name__)


# deliver(event, wait)：wait=False 时只入队不等待处理结果
Delivery = Callable[[StepEvent, bool], Awaitable[Any]]


@dataclass
class EventSubscription:
    """等待外部事件的活动位置"""
    instance_id: str
    position_id: str
    step_id: str
    event_name: str
    correlation_key: str


class TimerEventBus:
    """
    定时器/事件总线

    - 定时器持久化在 TimerRepository 中，scan 按触发时间顺序投递到期定时器，投递后标记为 fired
    - 外部事件按 (事件名, 关联键) 匹配等待中的位置；无人等待的事件在重放窗口内缓存
    - 投递是至少一次语义，引擎侧按去重键保证重复投递无副作用
    """

    MAX_PASSES = 10

    def __init__(
        self,
        timers: TimerRepository,
        clock: Clock = utcnow,
        poll_interval: float = 1.0,
        replay_window: float = 300.0,
        metrics: MetricsRecorder = None,
        batch_size: int = 500
    ):
        self.timers = timers
        self.clock = clock
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.replay_window = timedelta(seconds=replay_window)
        self.metrics = metrics or MetricsRecorder()

        self.delivery: Optional[Delivery] = None
        self.trigger_handler: Optional[Callable[[ExternalEvent], Awaitable[int]]] = None
        self.tick_handlers: List[Callable[[datetime], Awaitable[Any]]] = []

        self.subscriptions: Dict[Tuple[str, str], Dict[str, EventSubscription]] = {}
        self.buffer: List[ExternalEvent] = []
        self.seen_events: Dict[str, datetime] = {}
        self._firing: Set[str] = set()

        self.fault: Optional[Exception] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ---- 定时器 ----

    async def schedule(self, timer: TimerSubscription) -> TimerSubscription:
        """登记定时器，同一 (实例, 步骤) 上的旧的待触发定时器被取代"""
        pending = await self.timers.pending_for_step(timer.instance_id, timer.step_id)
        if pending and pending.id != timer.id:
            await self.cancel(pending.id)
            logger.debug(f"Timer {pending.id} superseded by {timer.id}")

        stored = await self.timers.add(timer)
        logger.debug(
            f"Scheduled {timer.purpose.value} timer {timer.id} for instance "
            f"{timer.instance_id} at {timer.fire_at.isoformat()}"
        )
        return stored

    async def cancel(self, timer_id: str) -> bool:
        """取消待触发定时器，已触发或已取消时不做任何事"""
        if timer_id in self._firing:
            # 正在投递的定时器随后标记为 fired
            return False
        timer = await self.timers.get(timer_id)
        if not timer or not timer.is_pending():
            return False
        timer.disposition = TimerDisposition.CANCELLED
        await self.timers.update(timer)
        return True

    async def cancel_for_instance(self, instance_id: str) -> int:
        cancelled = 0
        for timer in await self.timers.list_pending_for_instance(instance_id):
            if await self.cancel(timer.id):
                cancelled += 1
        return cancelled

    async def scan(self, now: datetime = None) -> int:
        """投递所有到期定时器，返回投递数量"""
        now = now or self.clock()
        fired = 0

        # 投递过程中可能新建已到期的定时器（delay 为 0），有限次补扫
        for _ in range(self.MAX_PASSES):
            due = await self.timers.list_due(now, limit=self.batch_size)
            if not due:
                break
            for timer in due:
                await self._fire(timer)
                fired += 1

        for handler in self.tick_handlers:
            await handler(now)

        self._purge(now)
        return fired

    async def _fire(self, timer: TimerSubscription):
        event = StepEvent(
            type=StepEventType.TIMER_FIRED,
            instance_id=timer.instance_id,
            payload={
                "timer_id": timer.id,
                "step_id": timer.step_id,
                "position_id": timer.position_id,
                "purpose": timer.purpose.value,
            }
        )
        self._firing.add(timer.id)
        try:
            await self._deliver(event, wait=True)
        finally:
            self._firing.discard(timer.id)

        # 投递成功后才标记，崩溃时定时器保持 pending 并在恢复后重新投递
        current = await self.timers.get(timer.id)
        if current and current.is_pending():
            current.disposition = TimerDisposition.FIRED
            await self.timers.update(current)
        self.metrics.inc(TIMERS_FIRED, {"purpose": timer.purpose.value})
        logger.debug(f"Timer {timer.id} fired for instance {timer.instance_id}")

    # ---- 外部事件 ----

    async def publish(
        self,
        name: str,
        correlation_key: str,
        payload: Dict[str, Any] = None,
        event_id: str = None
    ) -> int:
        """
        发布外部事件

        Returns:
            投递数量（匹配的等待位置 + 由事件触发器创建的实例）
        """
        now = self.clock()
        self._purge(now)

        if event_id and event_id in self.seen_events:
            self.metrics.inc(EVENTS_DUPLICATE)
            logger.info(f"Duplicate event {event_id} ({name}) ignored")
            return 0

        event = ExternalEvent(
            name=name,
            correlation_key=str(correlation_key),
            payload=dict(payload or {}),
            received_at=now
        )
        if event_id:
            event.id = event_id
        self.seen_events[event.id] = now

        delivered = 0
        waiting = list(self.subscriptions.get((event.name, event.correlation_key), {}).values())
        try:
            for subscription in waiting:
                await self._deliver(self._event_received(event, subscription), wait=True)
                delivered += 1

            if not waiting:
                self.buffer.append(event)
                self.metrics.inc(EVENTS_BUFFERED)
                logger.debug(
                    f"No subscriber for event {name}/{event.correlation_key}, "
                    f"buffered for replay"
                )

            if self.trigger_handler:
                delivered += await self.trigger_handler(event)
        except Exception:
            # 投递失败时释放事件ID，调用方可用同一ID重试（已投递的位置按去重键忽略）
            self.seen_events.pop(event.id, None)
            if event in self.buffer:
                self.buffer.remove(event)
            raise

        self.metrics.inc(EVENTS_DELIVERED, value=delivered)
        return delivered

    async def subscribe(
        self,
        instance_id: str,
        position_id: str,
        step_id: str,
        event_name: str,
        correlation_key: str
    ) -> int:
        """
        登记等待位置

        重放窗口内缓存的匹配事件被立即投递（只入队，可在调度通道内部调用）
        """
        subscription = EventSubscription(
            instance_id=instance_id,
            position_id=position_id,
            step_id=step_id,
            event_name=event_name,
            correlation_key=str(correlation_key)
        )
        key = (subscription.event_name, subscription.correlation_key)
        self.subscriptions.setdefault(key, {})[position_id] = subscription

        self._purge(self.clock())
        replayed = 0
        for event in list(self.buffer):
            if (event.name, event.correlation_key) == key:
                # 缓存事件只被第一个迟到的订阅消费
                self.buffer.remove(event)
                await self._deliver(self._event_received(event, subscription), wait=False)
                replayed += 1
                break

        if replayed:
            logger.info(
                f"Replayed buffered event {event_name}/{correlation_key} "
                f"to instance {instance_id}"
            )
        return replayed

    def unsubscribe(self, instance_id: str, position_id: str) -> bool:
        removed = False
        for key in list(self.subscriptions):
            subscription = self.subscriptions[key].get(position_id)
            if subscription and subscription.instance_id == instance_id:
                del self.subscriptions[key][position_id]
                removed = True
            if not self.subscriptions[key]:
                del self.subscriptions[key]
        return removed

    def unsubscribe_instance(self, instance_id: str) -> int:
        removed = 0
        for key in list(self.subscriptions):
            for position_id, subscription in list(self.subscriptions[key].items()):
                if subscription.instance_id == instance_id:
                    del self.subscriptions[key][position_id]
                    removed += 1
            if not self.subscriptions[key]:
                del self.subscriptions[key]
        return removed

    def list_subscriptions(self, instance_id: str = None) -> List[EventSubscription]:
        return [
            s for waiting in self.subscriptions.values() for s in waiting.values()
            if instance_id is None or s.instance_id == instance_id
        ]

    async def rebuild(self, subscriptions: List[EventSubscription]) -> int:
        """恢复时重建订阅表（订阅表只在内存中）"""
        for subscription in subscriptions:
            await self.subscribe(
                subscription.instance_id,
                subscription.position_id,
                subscription.step_id,
                subscription.event_name,
                subscription.correlation_key
            )
        logger.info(f"Rebuilt {len(subscriptions)} event subscription(s)")
        return len(subscriptions)

    def _event_received(self, event: ExternalEvent, subscription: EventSubscription) -> StepEvent:
        return StepEvent(
            type=StepEventType.EVENT_RECEIVED,
            instance_id=subscription.instance_id,
            payload={
                "event_id": event.id,
                "position_id": subscription.position_id,
                "name": event.name,
                "correlation_key": event.correlation_key,
                "payload": event.payload,
            }
        )

    def _purge(self, now: datetime):
        """清理过期的缓存事件与去重记录"""
        horizon = now - self.replay_window
        expired = [e for e in self.buffer if e.received_at < horizon]
        for event in expired:
            self.buffer.remove(event)
            logger.debug(f"Dropped unmatched event {event.name}/{event.correlation_key}")
        for event_id in [i for i, at in self.seen_events.items() if at < horizon]:
            del self.seen_events[event_id]

    async def _deliver(self, event: StepEvent, wait: bool):
        if self.delivery is None:
            raise DispatcherError("Timer/event bus has no delivery target")
        return await self.delivery(event, wait)

    # ---- 后台扫描 ----

    async def start(self):
        """启动后台扫描"""
        if self._running:
            return
        self._running = True
        self.fault = None
        self._task = asyncio.create_task(self.run())
        logger.info(f"Timer scan started (interval {self.poll_interval}s)")

    async def run(self):
        while self._running:
            try:
                await self.scan()
            except StoreUnavailableError as e:
                # 存储不可用时停止扫描并上报存活失败，定时器保持 pending
                logger.error(f"Timer scan stopped: {e}", exc_info=True)
                self.fault = e
                self._running = False
                break
            except DispatcherError as e:
                logger.error(f"Timer scan stopped: {e}")
                self.fault = e
                self._running = False
                break
            except Exception as e:
                logger.error(f"Timer scan failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    async def stop(self):
        """停止后台扫描"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Timer scan stopped")

    @property
    def alive(self) -> bool:
        return self.fault is None
