"""
流程引擎门面：组装各组件并提供对外接口
"""
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Any, List, Optional, Union, Callable
from uuid import UUID, uuid4, uuid5

from ..config import EngineSettings
from ..models.clock import Clock, utcnow
from ..models.definition import (
    ProcessDefinition, DefinitionRef, StepKind, TriggerType
)
from ..models.instance import ProcessInstance, InstanceStatus, HistoryEntry
from ..models.task import Task, TimerSubscription, TimerPurpose, ExternalEvent, PROCESS_SLA_STEP
from ..models.events import StepEvent, StepEventType
from ..storage.repository import (
    DefinitionRepository, InstanceRepository, TaskRepository, TimerRepository,
    InMemoryDefinitionRepository, InMemoryInstanceRepository,
    InMemoryTaskRepository, InMemoryTimerRepository
)
from ..integrations.event_bus import EventBus
from ..integrations.collaborators import CollaboratorRegistry
from ..monitoring import MetricsRecorder
from ..exceptions import (
    NotFoundError, AlreadyTerminalError, DefinitionInvalidError, DefinitionParseError,
    StepConfigError
)
from .parser import DefinitionParser
from .definition_store import DefinitionStore
from .task_ledger import TaskLedger
from .timers import TimerEventBus, EventSubscription
from .scheduler import LaneDispatcher
from .state_machine import ExecutionEngine, timer_deadline
from .error_handler import RetryPolicy


logger = logging.getLogger(__name__)


# 幂等实例化时派生实例ID的命名空间
INSTANCE_NAMESPACE = UUID("6f1c9a52-3d0e-4b7a-9a41-0c2f5e8d7b13")


class ProcessEngine:
    """流程引擎"""

    def __init__(
        self,
        definition_repository: DefinitionRepository = None,
        instance_repository: InstanceRepository = None,
        task_repository: TaskRepository = None,
        timer_repository: TimerRepository = None,
        event_bus: EventBus = None,
        collaborators: CollaboratorRegistry = None,
        settings: EngineSettings = None,
        clock: Clock = utcnow,
        metrics: MetricsRecorder = None
    ):
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.metrics = metrics or MetricsRecorder()
        self.event_bus = event_bus or EventBus()
        self.collaborators = collaborators or CollaboratorRegistry(
            default_timeout=self.settings.automatic_call_timeout
        )
        self.parser = DefinitionParser()
        self.db_manager = None

        self.instances = instance_repository or InMemoryInstanceRepository()
        self.definitions = DefinitionStore(
            definition_repository or InMemoryDefinitionRepository(),
            clock=clock
        )
        self.ledger = TaskLedger(
            task_repository or InMemoryTaskRepository(),
            event_bus=self.event_bus,
            metrics=self.metrics,
            clock=clock
        )
        self.timers = TimerEventBus(
            timer_repository or InMemoryTimerRepository(),
            clock=clock,
            poll_interval=self.settings.timer_poll_interval,
            replay_window=self.settings.event_replay_window,
            metrics=self.metrics
        )
        self.execution = ExecutionEngine(
            definitions=self.definitions,
            instances=self.instances,
            ledger=self.ledger,
            timers=self.timers,
            collaborators=self.collaborators,
            event_bus=self.event_bus,
            clock=clock,
            retry_policy=RetryPolicy(
                max_attempts=self.settings.automatic_max_attempts,
                initial_delay=self.settings.automatic_backoff_initial,
                max_delay=self.settings.automatic_backoff_max
            ),
            step_budget=self.settings.step_budget,
            conflict_retries=self.settings.conflict_retries,
            metrics=self.metrics
        )
        self.dispatcher = LaneDispatcher(self.execution.process, lanes=self.settings.lanes)

        # 总线投递到调度通道；定时扫描同时驱动定时触发器
        self.timers.delivery = self._deliver
        self.timers.trigger_handler = self._instantiate_for_event
        self.timers.tick_handlers.append(self.run_scheduled_triggers)
        self._last_slots: Dict[str, int] = {}

    @classmethod
    async def from_settings(cls, settings: EngineSettings = None, **kwargs) -> "ProcessEngine":
        """按配置创建引擎，DATABASE_URL 为空时使用内存存储"""
        settings = settings or EngineSettings.from_env()
        if not settings.database_url:
            return cls(settings=settings, **kwargs)

        from ..storage.sqlalchemy_repository import (
            DatabaseManager, SQLAlchemyDefinitionRepository, SQLAlchemyInstanceRepository,
            SQLAlchemyTaskRepository, SQLAlchemyTimerRepository
        )
        db_manager = DatabaseManager(settings.database_url)
        await db_manager.initialize()
        engine = cls(
            definition_repository=SQLAlchemyDefinitionRepository(db_manager),
            instance_repository=SQLAlchemyInstanceRepository(db_manager),
            task_repository=SQLAlchemyTaskRepository(db_manager),
            timer_repository=SQLAlchemyTimerRepository(db_manager),
            settings=settings,
            **kwargs
        )
        engine.db_manager = db_manager
        return engine

    # ---- 生命周期 ----

    async def start(self, run_timers: bool = True):
        """启动调度通道，恢复未完成实例，启动定时扫描"""
        await self.dispatcher.start()
        await self.recover()
        if run_timers:
            await self.timers.start()
        logger.info("Process engine started")

    async def stop(self):
        await self.timers.stop()
        await self.dispatcher.stop()
        if self.db_manager:
            await self.db_manager.close()
        logger.info("Process engine stopped")

    async def _deliver(self, event: StepEvent, wait: bool = True):
        if wait:
            return await self.dispatcher.dispatch(event)
        self.dispatcher.submit(event)

    # ---- 流程定义 ----

    async def publish_definition(
        self,
        source: Union[ProcessDefinition, str, Path, Dict[str, Any]]
    ) -> DefinitionRef:
        """发布流程定义，返回带版本号的引用"""
        definition = source if isinstance(source, ProcessDefinition) else self.parser.parse(source)
        return await self.definitions.publish(definition)

    def validate_definition(
        self,
        source: Union[ProcessDefinition, str, Path, Dict[str, Any]]
    ) -> List[str]:
        """校验流程定义，返回错误列表"""
        try:
            definition = source if isinstance(source, ProcessDefinition) else self.parser.parse(source)
        except DefinitionInvalidError as e:
            return e.errors
        except DefinitionParseError as e:
            return [str(e)]
        return self.definitions.validate(definition)

    async def get_definition(self, name: str, version: int = None) -> ProcessDefinition:
        if version is None:
            return await self.definitions.get_active(name)
        return await self.definitions.get(name, version)

    async def list_definitions(self, category: str = None, active_only: bool = False) -> List[ProcessDefinition]:
        return await self.definitions.list(category=category, active_only=active_only)

    async def deactivate_definition(self, name: str, version: int):
        await self.definitions.deactivate(name, version)

    # ---- 实例 ----

    async def instantiate(
        self,
        definition_ref: Union[DefinitionRef, str],
        variables: Dict[str, Any] = None,
        started_by: str = None,
        idempotency_key: str = None
    ) -> str:
        """
        创建并启动流程实例

        Args:
            definition_ref: DefinitionRef、'name@version' 或名称（使用最高激活版本）
            idempotency_key: 幂等键，同一定义名下重复提交返回同一实例

        Returns:
            实例ID
        """
        definition = await self.definitions.resolve(definition_ref)
        if not definition.active:
            raise NotFoundError(f"Process definition {definition.ref} is not active")

        scoped_key = None
        if idempotency_key:
            scoped_key = f"{definition.name}:{idempotency_key}"
            existing = await self.instances.find_by_idempotency_key(scoped_key)
            if existing:
                logger.info(f"Instantiate with key '{idempotency_key}' returned existing instance {existing.id}")
                return existing.id
            # 重复触发得到相同ID，路由到同一调度通道并去重
            instance_id = str(uuid5(INSTANCE_NAMESPACE, scoped_key))
        else:
            instance_id = str(uuid4())

        instance = await self.dispatcher.dispatch(StepEvent(
            type=StepEventType.INSTANTIATE,
            instance_id=instance_id,
            payload={
                "definition": str(definition.ref),
                "variables": variables or {},
                "started_by": started_by,
                "idempotency_key": scoped_key,
            }
        ))
        return instance.id

    async def cancel_instance(self, instance_id: str, reason: str = None) -> ProcessInstance:
        """取消实例（与其他事件在同一通道中排队）"""
        return await self._dispatch_admin(StepEventType.CANCEL, instance_id, {"reason": reason})

    async def suspend_instance(self, instance_id: str, reason: str = None) -> ProcessInstance:
        return await self._dispatch_admin(StepEventType.SUSPEND, instance_id, {"reason": reason})

    async def resume_instance(self, instance_id: str, reason: str = None) -> ProcessInstance:
        return await self._dispatch_admin(StepEventType.RESUME, instance_id, {"reason": reason})

    async def force_advance(
        self,
        instance_id: str,
        step_id: str,
        target: str = None,
        outcome: str = "completed"
    ) -> ProcessInstance:
        """强制推进等待中的步骤，可指定目标步骤"""
        return await self._dispatch_admin(
            StepEventType.FORCE_ADVANCE,
            instance_id,
            {"step_id": step_id, "target": target, "outcome": outcome}
        )

    async def _dispatch_admin(
        self,
        event_type: StepEventType,
        instance_id: str,
        payload: Dict[str, Any]
    ) -> ProcessInstance:
        await self.get_instance(instance_id)
        return await self.dispatcher.dispatch(StepEvent(
            type=event_type, instance_id=instance_id, payload=payload
        ))

    async def get_instance(self, instance_id: str) -> ProcessInstance:
        instance = await self.instances.load(instance_id)
        if not instance:
            raise NotFoundError(f"Instance not found: {instance_id}")
        return instance

    async def get_history(self, instance_id: str) -> List[HistoryEntry]:
        return (await self.get_instance(instance_id)).history

    async def list_instances(
        self,
        status: InstanceStatus = None,
        definition: str = None,
        version: int = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ProcessInstance]:
        if definition:
            instances = await self.instances.list_by_definition(
                definition, version=version, offset=0, limit=None
            )
            if status:
                instances = [i for i in instances if i.status == status]
            return instances[offset:offset + limit]
        if status:
            return await self.instances.list_by_status(status, offset=offset, limit=limit)

        results: List[ProcessInstance] = []
        for each in InstanceStatus:
            results.extend(await self.instances.list_by_status(each, offset=0, limit=offset + limit))
        results.sort(key=lambda i: i.started_at)
        return results[offset:offset + limit]

    # ---- 任务 ----

    async def complete_task(self, task_id: str, actor: str, result: Dict[str, Any] = None) -> Dict[str, Any]:
        """
        完成任务

        重复完成不会再次推进实例，返回首次完成时的结果
        """
        task = await self.ledger.get(task_id)
        if task.status.value == "completed":
            return task.result
        if not task.is_open():
            raise AlreadyTerminalError(f"Task {task_id} is {task.status.value}")

        await self.dispatcher.dispatch(StepEvent(
            type=StepEventType.COMPLETE_TASK,
            instance_id=task.instance_id,
            payload={"task_id": task_id, "actor": actor, "result": result or {}}
        ))

        task = await self.ledger.get(task_id)
        if task.status.value == "completed":
            return task.result
        if task.is_open():
            # 实例暂停中，返回首次推迟的完成结果
            return await self._deferred_result(task, result)
        raise AlreadyTerminalError(f"Task {task_id} is {task.status.value}")

    async def _deferred_result(self, task: Task, result: Dict[str, Any] = None) -> Dict[str, Any]:
        instance = await self.get_instance(task.instance_id)
        for data in instance.deferred:
            event = StepEvent.from_dict(data)
            if event.type == StepEventType.COMPLETE_TASK and event.payload.get("task_id") == task.id:
                return dict(event.payload.get("result") or {})
        return dict(result or {})

    async def get_task(self, task_id: str) -> Task:
        return await self.ledger.get(task_id)

    async def list_tasks(
        self,
        instance_id: str = None,
        assignee: str = None,
        role: str = None
    ) -> List[Task]:
        """实例的全部任务，或按处理人/角色过滤的待办任务"""
        if instance_id:
            return await self.ledger.list_for_instance(instance_id)
        return await self.ledger.list_open(assignee=assignee, role=role)

    # ---- 事件与定时器 ----

    async def publish_event(
        self,
        name: str,
        correlation_key: str,
        payload: Dict[str, Any] = None,
        event_id: str = None
    ) -> int:
        """发布外部事件，返回投递数量"""
        return await self.timers.publish(name, correlation_key, payload, event_id=event_id)

    async def tick(self, now: datetime = None) -> int:
        """立即执行一次定时扫描"""
        return await self.timers.scan(now)

    async def wait_until_idle(self):
        await self.dispatcher.wait_until_idle()

    async def _instantiate_for_event(self, event: ExternalEvent) -> int:
        """事件触发器：按事件名实例化激活的流程定义（每个事件ID至多一次）"""
        started = 0
        for definition in await self._active_definitions(TriggerType.EVENT):
            if definition.trigger.config.get("event") != event.name:
                continue
            variables = dict(definition.trigger.config.get("variables") or {})
            variables.update(event.payload)
            variables.setdefault("correlation_key", event.correlation_key)
            await self.instantiate(
                definition.ref,
                variables=variables,
                started_by=f"event:{event.name}",
                idempotency_key=f"event:{event.id}"
            )
            started += 1
        return started

    async def run_scheduled_triggers(self, now: datetime = None) -> int:
        """定时触发器：每个时间槽至多创建一个实例"""
        now = now or self.clock()
        started = 0
        for definition in await self._active_definitions(TriggerType.SCHEDULED):
            interval = definition.trigger.config["interval_seconds"]
            slot = int((now - definition.created_at).total_seconds() // interval)
            ref = str(definition.ref)
            if slot < 1 or self._last_slots.get(ref) == slot:
                continue
            await self.instantiate(
                definition.ref,
                variables=dict(definition.trigger.config.get("variables") or {}),
                started_by="scheduler",
                idempotency_key=f"{ref}:{slot}"
            )
            self._last_slots[ref] = slot
            started += 1
        return started

    async def _active_definitions(self, trigger_type: TriggerType) -> List[ProcessDefinition]:
        """每个名称的最高激活版本"""
        latest: Dict[str, ProcessDefinition] = {}
        for definition in await self.definitions.list(active_only=True):
            if definition.name not in latest or definition.version > latest[definition.name].version:
                latest[definition.name] = definition
        return [d for d in latest.values() if d.trigger.type == trigger_type]

    # ---- 协作方与通知 ----

    def register_collaborator(self, name: str, handler: Callable, version: str = "1", **kwargs):
        return self.collaborators.register(name, handler, version=version, **kwargs)

    async def subscribe(self, topic: str, handler: Callable):
        await self.event_bus.subscribe(topic, handler)

    # ---- 恢复 ----

    async def recover(self) -> int:
        """
        从存储恢复：补齐运行中实例的任务、定时器与事件订阅

        所有操作按ID幂等，重复执行无副作用
        """
        recovered = 0
        for status in (InstanceStatus.RUNNING, InstanceStatus.SUSPENDED):
            offset = 0
            while True:
                batch = await self.instances.list_by_status(status, offset=offset, limit=100)
                if not batch:
                    break
                for instance in batch:
                    await self._recover_instance(instance)
                    recovered += 1
                offset += len(batch)

        # 实例终止后、取消任务前崩溃遗留的待办任务
        for task in await self.ledger.list_open():
            instance = await self.instances.load(task.instance_id)
            if instance is None or instance.is_terminal():
                await self.ledger.cancel(task.id)
                await self.timers.cancel_for_instance(task.instance_id)

        if recovered:
            logger.info(f"Recovered {recovered} active instance(s)")
        return recovered

    async def _recover_instance(self, instance: ProcessInstance):
        definition = await self.definitions.get_ref(instance.definition)
        subscriptions = []

        for position in instance.positions:
            step = definition.get_step(position.step_id)

            if position.task_id and await self.ledger.repository.get(position.task_id) is None:
                due_in = step.config.get("due_in")
                await self.ledger.create(Task(
                    id=position.task_id,
                    instance_id=instance.id,
                    step_id=step.id,
                    position_id=position.id,
                    title=step.config.get("title") or step.name or step.id,
                    assignee=step.config.get("assignee"),
                    role=step.config.get("role"),
                    due_at=position.entered_at + timedelta(seconds=due_in) if due_in else None,
                    created_at=position.entered_at
                ))

            if position.timer_id and await self.timers.timers.get(position.timer_id) is None:
                try:
                    purpose, fire_at = self._position_deadline(step, instance, position.entered_at)
                except StepConfigError as e:
                    logger.error(f"Cannot recover timer {position.timer_id} of instance {instance.id}: {e}")
                    continue
                await self.timers.schedule(TimerSubscription(
                    id=position.timer_id,
                    instance_id=instance.id,
                    step_id=step.id,
                    position_id=position.id,
                    fire_at=fire_at,
                    purpose=purpose,
                    created_at=position.entered_at
                ))

            if position.event_name:
                subscriptions.append(EventSubscription(
                    instance_id=instance.id,
                    position_id=position.id,
                    step_id=step.id,
                    event_name=position.event_name,
                    correlation_key=position.correlation_key
                ))

        if (instance.sla_timer_id and definition.sla_seconds
                and await self.timers.timers.get(instance.sla_timer_id) is None):
            await self.timers.schedule(TimerSubscription(
                id=instance.sla_timer_id,
                instance_id=instance.id,
                step_id=PROCESS_SLA_STEP,
                fire_at=instance.started_at + timedelta(seconds=definition.sla_seconds),
                purpose=TimerPurpose.PROCESS_SLA,
                created_at=instance.started_at
            ))

        if subscriptions:
            await self.timers.rebuild(subscriptions)

    def _position_deadline(self, step, instance: ProcessInstance, entered_at: datetime):
        if step.kind == StepKind.TASK:
            return TimerPurpose.TASK_DUE, entered_at + timedelta(seconds=step.config["due_in"])
        if step.kind == StepKind.EVENT:
            return TimerPurpose.EVENT_TIMEOUT, entered_at + timedelta(seconds=step.config["timeout"])
        if step.kind == StepKind.TIMER:
            return TimerPurpose.STEP, timer_deadline(step, instance.variables, entered_at)
        raise StepConfigError(step.id, "step kind does not own a timer")

    # ---- 监控 ----

    async def stats(self) -> Dict[str, Any]:
        """实例状态统计与运行指标"""
        return {
            "instances": await self.instances.count_by_status(),
            "open_tasks": len(await self.ledger.list_open()),
            "dispatcher": self.dispatcher.health(),
            "metrics": self.metrics.snapshot(),
        }

    def health(self) -> Dict[str, Any]:
        """存活检查：调度通道和定时扫描都未遇到致命错误"""
        timers_fault = self.timers.fault
        return {
            "alive": self.dispatcher.alive and timers_fault is None,
            "dispatcher": self.dispatcher.health(),
            "timers": {"fault": str(timers_fault) if timers_fault else None},
        }
