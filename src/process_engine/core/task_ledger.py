"""
任务台账
"""
import logging
from typing import Dict, Any, List, Optional

from ..models.clock import Clock, utcnow
from ..models.task import Task, TaskStatus
from ..storage.repository import TaskRepository
from ..integrations.event_bus import EventBus, TASK_CREATED, TASK_EXPIRED
from ..monitoring import MetricsRecorder, TASKS_CREATED, TASKS_COMPLETED, TASKS_EXPIRED
from ..exceptions import NotFoundError, AlreadyTerminalError


logger = logging.getLogger(__name__)


def task_payload(task: Task) -> Dict[str, Any]:
    return {
        "task_id": task.id,
        "instance_id": task.instance_id,
        "step_id": task.step_id,
        "title": task.title,
        "assignee": task.assignee,
        "role": task.role,
        "due_at": task.due_at.isoformat() if task.due_at else None,
        "status": task.status.value,
    }


class TaskLedger:
    """任务台账：跟踪由 Task 步骤产生的工作项"""

    def __init__(
        self,
        repository: TaskRepository,
        event_bus: EventBus = None,
        metrics: MetricsRecorder = None,
        clock: Clock = utcnow
    ):
        self.repository = repository
        self.event_bus = event_bus
        self.metrics = metrics or MetricsRecorder()
        self.clock = clock

    async def create(self, task: Task) -> Task:
        """创建任务（按ID幂等）"""
        stored = await self.repository.add(task)
        if stored is task:
            self.metrics.inc(TASKS_CREATED)
            logger.info(
                f"Created task {task.id} for step '{task.step_id}' "
                f"of instance {task.instance_id}"
            )
        # 重复创建时同样重发通知，通知ID不变，订阅方去重
        if stored.is_open() and self.event_bus:
            await self.event_bus.publish(
                TASK_CREATED, task_payload(stored), notification_id=f"{TASK_CREATED}:{stored.id}"
            )
        return stored

    async def get(self, task_id: str) -> Task:
        task = await self.repository.get(task_id)
        if not task:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    async def complete(self, task_id: str, actor: str, result: Dict[str, Any]) -> Task:
        """
        完成任务

        已完成的任务再次完成时不做任何修改并返回原始结果；
        已过期或已取消的任务抛出 AlreadyTerminalError
        """
        task = await self.get(task_id)

        if task.status == TaskStatus.COMPLETED:
            logger.debug(f"Task {task_id} already completed, returning original result")
            return task
        if task.status != TaskStatus.OPEN:
            raise AlreadyTerminalError(f"Task {task_id} is {task.status.value}")

        task.complete(actor, dict(result or {}), self.clock())
        await self.repository.update(task)
        self.metrics.inc(TASKS_COMPLETED)
        logger.info(f"Task {task_id} completed by {actor}")
        return task

    async def expire(self, task_id: str) -> Task:
        """任务到期（仅对未完成任务生效）"""
        task = await self.get(task_id)
        if not task.is_open():
            return task

        task.expire(self.clock())
        await self.repository.update(task)
        self.metrics.inc(TASKS_EXPIRED)
        logger.info(f"Task {task_id} expired")

        if self.event_bus:
            await self.event_bus.publish(
                TASK_EXPIRED, task_payload(task), notification_id=f"{TASK_EXPIRED}:{task.id}"
            )
        return task

    async def cancel(self, task_id: str) -> Optional[Task]:
        """取消任务（仅对未完成任务生效）"""
        task = await self.repository.get(task_id)
        if not task or not task.is_open():
            return task

        task.cancel(self.clock())
        await self.repository.update(task)
        logger.info(f"Task {task_id} cancelled")
        return task

    async def cancel_for_instance(self, instance_id: str) -> int:
        """批量取消实例的全部未完成任务"""
        cancelled = 0
        for task in await self.repository.list_for_instance(instance_id):
            if task.is_open():
                await self.cancel(task.id)
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} open task(s) of instance {instance_id}")
        return cancelled

    async def list_for_instance(self, instance_id: str) -> List[Task]:
        return await self.repository.list_for_instance(instance_id)

    async def list_open(self, assignee: str = None, role: str = None) -> List[Task]:
        return await self.repository.list_open(assignee=assignee, role=role)
