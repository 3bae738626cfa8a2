"""
出站通知总线
"""
import asyncio
import fnmatch
from collections import deque
from typing import Dict, Any, List, Callable, Deque
from dataclasses import dataclass, field
from datetime import datetime
import logging

from ..models.clock import utcnow


logger = logging.getLogger(__name__)


# 出站通知主题
INSTANCE_STARTED = "instance.started"
INSTANCE_COMPLETED = "instance.completed"
INSTANCE_FAILED = "instance.failed"
INSTANCE_CANCELLED = "instance.cancelled"
INSTANCE_SUSPENDED = "instance.suspended"
INSTANCE_RESUMED = "instance.resumed"
INSTANCE_SLA_BREACHED = "instance.sla_breached"
TASK_CREATED = "task.created"
TASK_EXPIRED = "task.expired"
STEP_SLA_BREACHED = "step.sla_breached"


@dataclass
class Notification:
    """
    通知对象

    id 由业务主键确定，崩溃恢复后重复投递的通知 id 不变，订阅方据此去重
    """
    topic: str
    payload: Dict[str, Any]
    id: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """进程内通知总线，主题支持通配符订阅（如 'instance.*'）"""

    def __init__(self, history_size: int = 1000):
        self.subscribers: Dict[str, List[Callable]] = {}
        self.published: Deque[Notification] = deque(maxlen=history_size)
        self._lock = asyncio.Lock()

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        notification_id: str = None,
        headers: Dict[str, str] = None
    ) -> Notification:
        """发布通知"""
        notification = Notification(
            topic=topic,
            payload=payload,
            id=notification_id or f"{topic}:{payload.get('instance_id', '')}",
            headers=headers or {}
        )

        # 获取订阅者
        async with self._lock:
            subscribers = [
                handler
                for pattern, handlers in self.subscribers.items()
                if fnmatch.fnmatchcase(topic, pattern)
                for handler in handlers
            ]
            self.published.append(notification)

        # 并发通知所有订阅者，单个订阅者失败不影响其他订阅者
        if subscribers:
            await asyncio.gather(
                *(self._notify_subscriber(s, notification) for s in subscribers),
                return_exceptions=True
            )

        logger.debug(f"Published '{topic}' to {len(subscribers)} subscribers")
        return notification

    async def subscribe(self, topic: str, handler: Callable):
        """订阅通知"""
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

        logger.info(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        """取消订阅"""
        async with self._lock:
            if topic in self.subscribers and handler in self.subscribers[topic]:
                self.subscribers[topic].remove(handler)
                if not self.subscribers[topic]:
                    del self.subscribers[topic]

        logger.info(f"Unsubscribed from topic '{topic}'")

    def history(self, topic: str = None) -> List[Notification]:
        """最近发布的通知"""
        if topic is None:
            return list(self.published)
        return [n for n in self.published if fnmatch.fnmatchcase(n.topic, topic)]

    async def _notify_subscriber(self, subscriber: Callable, notification: Notification):
        """通知订阅者"""
        try:
            if asyncio.iscoroutinefunction(subscriber):
                await subscriber(notification)
            else:
                subscriber(notification)
        except Exception as e:
            logger.error(
                f"Error notifying subscriber for topic '{notification.topic}': {e}",
                exc_info=True
            )
