"""
存储仓库接口定义
"""
import copy
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Optional, List, Dict, Any

from ..models.definition import ProcessDefinition
from ..models.instance import ProcessInstance, InstanceStatus, HistoryEntry
from ..models.task import Task, TaskStatus, TimerSubscription, TimerDisposition
from ..exceptions import ConcurrencyConflictError, NotFoundError


class DefinitionRepository(ABC):
    """流程定义存储仓库接口"""

    @abstractmethod
    async def save(self, definition: ProcessDefinition) -> None:
        """保存已发布的流程定义"""
        pass

    @abstractmethod
    async def get(self, name: str, version: int) -> Optional[ProcessDefinition]:
        """获取指定版本"""
        pass

    @abstractmethod
    async def latest_version(self, name: str) -> int:
        """获取某名称下的最高版本号，不存在时返回0"""
        pass

    @abstractmethod
    async def get_active(self, name: str) -> Optional[ProcessDefinition]:
        """获取最高的已激活版本"""
        pass

    @abstractmethod
    async def list(
        self,
        category: str = None,
        active_only: bool = False
    ) -> List[ProcessDefinition]:
        """列出流程定义"""
        pass

    @abstractmethod
    async def set_active(self, name: str, version: int, active: bool) -> bool:
        """修改激活标志"""
        pass


class InstanceRepository(ABC):
    """流程实例存储仓库接口"""

    @abstractmethod
    async def create(self, instance: ProcessInstance) -> str:
        """创建实例记录"""
        pass

    @abstractmethod
    async def load(self, instance_id: str) -> Optional[ProcessInstance]:
        """加载实例（含完整历史）"""
        pass

    @abstractmethod
    async def save(
        self,
        instance: ProcessInstance,
        expected_version: int,
        new_history: List[HistoryEntry]
    ) -> int:
        """原子更新实例状态并追加历史，版本过期时抛出 ConcurrencyConflictError"""
        pass

    @abstractmethod
    async def find_by_idempotency_key(self, key: str) -> Optional[ProcessInstance]:
        """根据幂等键查找实例"""
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: InstanceStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[ProcessInstance]:
        """根据状态列出实例"""
        pass

    @abstractmethod
    async def list_by_definition(
        self,
        name: str,
        version: int = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ProcessInstance]:
        """根据流程定义列出实例"""
        pass

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        """按状态统计实例数量"""
        pass


class TaskRepository(ABC):
    """任务存储仓库接口"""

    @abstractmethod
    async def add(self, task: Task) -> Task:
        """新增任务，ID已存在时返回已有任务"""
        pass

    @abstractmethod
    async def get(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    async def update(self, task: Task) -> None:
        pass

    @abstractmethod
    async def list_for_instance(self, instance_id: str) -> List[Task]:
        pass

    @abstractmethod
    async def list_open(self, assignee: str = None, role: str = None) -> List[Task]:
        pass


class TimerRepository(ABC):
    """定时器存储仓库接口"""

    @abstractmethod
    async def add(self, timer: TimerSubscription) -> TimerSubscription:
        """新增定时器，ID已存在时返回已有定时器"""
        pass

    @abstractmethod
    async def get(self, timer_id: str) -> Optional[TimerSubscription]:
        pass

    @abstractmethod
    async def update(self, timer: TimerSubscription) -> None:
        pass

    @abstractmethod
    async def pending_for_step(
        self,
        instance_id: str,
        step_id: str
    ) -> Optional[TimerSubscription]:
        pass

    @abstractmethod
    async def list_pending_for_instance(self, instance_id: str) -> List[TimerSubscription]:
        pass

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> List[TimerSubscription]:
        """按触发时间顺序列出已到期的待触发定时器"""
        pass


# 内存实现（用于测试和CLI）
class InMemoryDefinitionRepository(DefinitionRepository):
    """内存流程定义仓库实现"""

    def __init__(self):
        self.definitions: Dict[str, Dict[int, ProcessDefinition]] = {}

    async def save(self, definition: ProcessDefinition) -> None:
        self.definitions.setdefault(definition.name, {})[definition.version] = copy.deepcopy(definition)

    async def get(self, name: str, version: int) -> Optional[ProcessDefinition]:
        definition = self.definitions.get(name, {}).get(version)
        return copy.deepcopy(definition) if definition else None

    async def latest_version(self, name: str) -> int:
        versions = self.definitions.get(name)
        return max(versions) if versions else 0

    async def get_active(self, name: str) -> Optional[ProcessDefinition]:
        versions = self.definitions.get(name, {})
        for version in sorted(versions, reverse=True):
            if versions[version].active:
                return copy.deepcopy(versions[version])
        return None

    async def list(
        self,
        category: str = None,
        active_only: bool = False
    ) -> List[ProcessDefinition]:
        results = []
        for name in sorted(self.definitions):
            for version in sorted(self.definitions[name]):
                definition = self.definitions[name][version]
                if category and definition.category != category:
                    continue
                if active_only and not definition.active:
                    continue
                results.append(copy.deepcopy(definition))
        return results

    async def set_active(self, name: str, version: int, active: bool) -> bool:
        definition = await self.get(name, version)
        if not definition:
            return False
        # 定义本身不可变，替换为仅激活标志不同的副本
        self.definitions[name][version] = replace(definition, active=active)
        return True


class InMemoryInstanceRepository(InstanceRepository):
    """内存实例仓库实现，保存序列化后的状态以模拟持久化"""

    def __init__(self):
        self.states: Dict[str, Dict[str, Any]] = {}
        self.histories: Dict[str, List[HistoryEntry]] = {}

    async def create(self, instance: ProcessInstance) -> str:
        if instance.id in self.states:
            raise ConcurrencyConflictError(instance.id, 0)
        if instance.idempotency_key and any(
            s.get("idempotency_key") == instance.idempotency_key for s in self.states.values()
        ):
            raise ConcurrencyConflictError(instance.id, 0)
        instance.version = 1
        self.states[instance.id] = copy.deepcopy(instance.to_state())
        self.histories[instance.id] = copy.deepcopy(instance.history)
        return instance.id

    async def load(self, instance_id: str) -> Optional[ProcessInstance]:
        state = self.states.get(instance_id)
        if state is None:
            return None
        return ProcessInstance.from_state(
            copy.deepcopy(state),
            copy.deepcopy(self.histories.get(instance_id, []))
        )

    async def save(
        self,
        instance: ProcessInstance,
        expected_version: int,
        new_history: List[HistoryEntry]
    ) -> int:
        current = self.states.get(instance.id)
        if current is None:
            raise NotFoundError(f"Instance not found: {instance.id}")
        if current["version"] != expected_version:
            raise ConcurrencyConflictError(instance.id, expected_version)

        instance.version = expected_version + 1
        self.states[instance.id] = copy.deepcopy(instance.to_state())
        self.histories[instance.id].extend(copy.deepcopy(new_history))
        return instance.version

    async def find_by_idempotency_key(self, key: str) -> Optional[ProcessInstance]:
        for instance_id, state in self.states.items():
            if state.get("idempotency_key") == key:
                return await self.load(instance_id)
        return None

    async def list_by_status(
        self,
        status: InstanceStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[ProcessInstance]:
        ids = [i for i, s in self.states.items() if s["status"] == status.value]
        return [await self.load(i) for i in ids[offset:offset + limit]]

    async def list_by_definition(
        self,
        name: str,
        version: int = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ProcessInstance]:
        prefix = f"{name}@"
        ids = []
        for instance_id, state in self.states.items():
            ref = state["definition"]
            if version is not None and ref != f"{name}@{version}":
                continue
            if not ref.startswith(prefix):
                continue
            ids.append(instance_id)
        ids = ids[offset:offset + limit] if limit is not None else ids[offset:]
        return [await self.load(i) for i in ids]

    async def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in InstanceStatus}
        for state in self.states.values():
            counts[state["status"]] += 1
        return counts


class InMemoryTaskRepository(TaskRepository):
    """内存任务仓库实现"""

    def __init__(self):
        self.tasks: Dict[str, Task] = {}

    async def add(self, task: Task) -> Task:
        if task.id in self.tasks:
            return copy.deepcopy(self.tasks[task.id])
        self.tasks[task.id] = copy.deepcopy(task)
        return task

    async def get(self, task_id: str) -> Optional[Task]:
        task = self.tasks.get(task_id)
        return copy.deepcopy(task) if task else None

    async def update(self, task: Task) -> None:
        self.tasks[task.id] = copy.deepcopy(task)

    async def list_for_instance(self, instance_id: str) -> List[Task]:
        return [
            copy.deepcopy(t) for t in self.tasks.values()
            if t.instance_id == instance_id
        ]

    async def list_open(self, assignee: str = None, role: str = None) -> List[Task]:
        results = []
        for task in self.tasks.values():
            if task.status != TaskStatus.OPEN:
                continue
            if assignee and task.assignee != assignee:
                continue
            if role and task.role != role:
                continue
            results.append(copy.deepcopy(task))
        return results


class InMemoryTimerRepository(TimerRepository):
    """内存定时器仓库实现"""

    def __init__(self):
        self.timers: Dict[str, TimerSubscription] = {}

    async def add(self, timer: TimerSubscription) -> TimerSubscription:
        if timer.id in self.timers:
            return copy.deepcopy(self.timers[timer.id])
        self.timers[timer.id] = copy.deepcopy(timer)
        return timer

    async def get(self, timer_id: str) -> Optional[TimerSubscription]:
        timer = self.timers.get(timer_id)
        return copy.deepcopy(timer) if timer else None

    async def update(self, timer: TimerSubscription) -> None:
        self.timers[timer.id] = copy.deepcopy(timer)

    async def pending_for_step(
        self,
        instance_id: str,
        step_id: str
    ) -> Optional[TimerSubscription]:
        for timer in self.timers.values():
            if (timer.instance_id == instance_id and timer.step_id == step_id
                    and timer.disposition == TimerDisposition.PENDING):
                return copy.deepcopy(timer)
        return None

    async def list_pending_for_instance(self, instance_id: str) -> List[TimerSubscription]:
        return [
            copy.deepcopy(t) for t in self.timers.values()
            if t.instance_id == instance_id and t.disposition == TimerDisposition.PENDING
        ]

    async def list_due(self, now: datetime, limit: int = 100) -> List[TimerSubscription]:
        due = [
            t for t in self.timers.values()
            if t.disposition == TimerDisposition.PENDING and t.fire_at <= now
        ]
        due.sort(key=lambda t: t.fire_at)
        return [copy.deepcopy(t) for t in due[:limit]]
