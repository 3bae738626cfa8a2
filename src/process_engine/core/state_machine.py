"""
执行引擎：推动单个流程实例在定义图上前进的状态机
"""
import asyncio
import copy
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Tuple, Deque
from uuid import uuid4

from ..models.clock import Clock, utcnow
from ..models.definition import ProcessDefinition, StepSpec, StepKind, GatewayMode, Edge, Outcome
from ..models.instance import (
    ProcessInstance, InstanceStatus, ActivePosition, HistoryAction, InstanceError
)
from ..models.task import Task, TimerSubscription, TimerPurpose, PROCESS_SLA_STEP
from ..models.events import StepEvent, StepEventType, ADMINISTRATIVE_EVENTS
from ..storage.repository import InstanceRepository
from ..integrations.event_bus import (
    EventBus, INSTANCE_STARTED, INSTANCE_COMPLETED, INSTANCE_FAILED, INSTANCE_CANCELLED,
    INSTANCE_SUSPENDED, INSTANCE_RESUMED, INSTANCE_SLA_BREACHED, STEP_SLA_BREACHED
)
from ..integrations.collaborators import CollaboratorRegistry
from ..monitoring import (
    MetricsRecorder, EventLogger, INSTANCES_STARTED, INSTANCES_COMPLETED,
    INSTANCES_FAILED, INSTANCES_CANCELLED, AUTOMATIC_RETRIES, AUTOMATIC_CALL_SECONDS,
    CONCURRENCY_CONFLICTS
)
from ..exceptions import (
    StepConfigError, CollaboratorError, ConcurrencyConflictError,
    NotFoundError, AlreadyTerminalError
)
from .definition_store import DefinitionStore
from .task_ledger import TaskLedger
from .timers import TimerEventBus, EventSubscription
from .guards import GuardEvaluator
from .error_handler import RetryPolicy, is_instance_fatal


logger = logging.getLogger(__name__)


TERMINAL_TOPICS = {
    InstanceStatus.COMPLETED: INSTANCE_COMPLETED,
    InstanceStatus.FAILED: INSTANCE_FAILED,
    InstanceStatus.CANCELLED: INSTANCE_CANCELLED,
}

TERMINAL_COUNTERS = {
    InstanceStatus.COMPLETED: INSTANCES_COMPLETED,
    InstanceStatus.FAILED: INSTANCES_FAILED,
    InstanceStatus.CANCELLED: INSTANCES_CANCELLED,
}


@dataclass
class Effects:
    """
    提交后才执行的副作用

    所有副作用都是幂等的（按ID创建、仅取消待处理项），崩溃恢复后重复执行是安全的
    """
    create_tasks: List[Task] = field(default_factory=list)
    complete_tasks: List[Tuple[str, str, Dict[str, Any]]] = field(default_factory=list)
    expire_tasks: List[str] = field(default_factory=list)
    cancel_tasks: List[str] = field(default_factory=list)
    cancel_all_tasks: bool = False
    schedule_timers: List[TimerSubscription] = field(default_factory=list)
    cancel_timers: List[str] = field(default_factory=list)
    cancel_all_timers: bool = False
    subscribe: List[EventSubscription] = field(default_factory=list)
    unsubscribe: List[str] = field(default_factory=list)
    unsubscribe_all: bool = False
    notifications: List[Tuple[str, Dict[str, Any], str]] = field(default_factory=list)

    def drop_pending_work(self):
        """实例终止时丢弃尚未落地的创建类副作用"""
        self.create_tasks.clear()
        self.schedule_timers.clear()
        self.subscribe.clear()
        self.cancel_all_tasks = True
        self.cancel_all_timers = True
        self.unsubscribe_all = True


@dataclass
class _Run:
    """单个事件的处理上下文"""
    instance: ProcessInstance
    definition: ProcessDefinition
    effects: Effects
    now: datetime
    entries: int = 0
    queue: Deque[Tuple[str, Optional[str]]] = field(default_factory=deque)


class ExecutionEngine:
    """执行引擎"""

    def __init__(
        self,
        definitions: DefinitionStore,
        instances: InstanceRepository,
        ledger: TaskLedger,
        timers: TimerEventBus,
        collaborators: CollaboratorRegistry,
        event_bus: EventBus,
        clock: Clock = utcnow,
        retry_policy: RetryPolicy = None,
        step_budget: int = 1000,
        conflict_retries: int = 10,
        metrics: MetricsRecorder = None
    ):
        self.definitions = definitions
        self.instances = instances
        self.ledger = ledger
        self.timers = timers
        self.collaborators = collaborators
        self.event_bus = event_bus
        self.clock = clock
        self.retry_policy = retry_policy or RetryPolicy()
        self.step_budget = step_budget
        self.conflict_retries = max(1, conflict_retries)
        self.metrics = metrics or MetricsRecorder()
        self.guards = GuardEvaluator()
        self.lifecycle = EventLogger()

    async def process(self, event: StepEvent) -> ProcessInstance:
        """处理一个步骤事件（由调度通道串行调用）"""
        if event.type == StepEventType.INSTANTIATE:
            return await self._instantiate(event)

        for attempt in range(1, self.conflict_retries + 1):
            stored = await self.instances.load(event.instance_id)
            if stored is None:
                raise NotFoundError(f"Instance not found: {event.instance_id}")
            try:
                return await self._apply(stored, event)
            except ConcurrencyConflictError as e:
                self.metrics.inc(CONCURRENCY_CONFLICTS)
                logger.warning(f"{e}; reloading (attempt {attempt}/{self.conflict_retries})")
                if attempt == self.conflict_retries:
                    raise

    # ---- 实例化 ----

    async def _instantiate(self, event: StepEvent) -> ProcessInstance:
        existing = await self.instances.load(event.instance_id)
        if existing:
            logger.info(f"Instance {existing.id} already exists, instantiate ignored")
            return existing

        payload = event.payload
        definition = await self.definitions.resolve(payload["definition"])
        now = self.clock()
        instance = ProcessInstance(
            id=event.instance_id,
            definition=definition.ref,
            variables=copy.deepcopy(payload.get("variables") or {}),
            idempotency_key=payload.get("idempotency_key"),
            started_by=payload.get("started_by"),
            started_at=now
        )
        run = _Run(instance=instance, definition=definition, effects=Effects(), now=now)

        instance.record(HistoryAction.STARTED, at=now, definition=str(definition.ref))
        run.effects.notifications.append((
            INSTANCE_STARTED,
            {"instance_id": instance.id, "definition": str(definition.ref),
             "variables": copy.deepcopy(instance.variables)},
            f"{INSTANCE_STARTED}:{instance.id}"
        ))

        if definition.sla_seconds:
            timer = TimerSubscription(
                instance_id=instance.id,
                step_id=PROCESS_SLA_STEP,
                fire_at=now + timedelta(seconds=definition.sla_seconds),
                purpose=TimerPurpose.PROCESS_SLA,
                created_at=now
            )
            instance.sla_timer_id = timer.id
            run.effects.schedule_timers.append(timer)

        await self._guarded(run, self._start, run)

        try:
            await self.instances.create(instance)
        except ConcurrencyConflictError:
            # 重复触发：同一ID或同一幂等键已被创建
            existing = await self.instances.load(instance.id)
            if existing is None and instance.idempotency_key:
                existing = await self.instances.find_by_idempotency_key(instance.idempotency_key)
            if existing is None:
                raise
            logger.info(f"Duplicate instantiate for {existing.id} ignored")
            return existing

        self.metrics.inc(INSTANCES_STARTED, {"definition": definition.name})
        self.lifecycle.log(INSTANCE_STARTED, instance_id=instance.id, definition=str(definition.ref))
        await self._after_commit(run)
        return instance

    async def _start(self, run: _Run):
        run.queue.append((run.definition.start, None))
        await self._advance(run)

    # ---- 事件应用 ----

    async def _apply(self, stored: ProcessInstance, event: StepEvent) -> ProcessInstance:
        if stored.is_terminal():
            return await self._on_terminal(stored, event)

        key = event.dedup_key
        if key and (stored.has_applied(key) or self._is_deferred(stored, key)):
            logger.debug(f"Step-event {key} already applied to instance {stored.id}")
            return stored

        definition = await self.definitions.get_ref(stored.definition)
        instance = copy.deepcopy(stored)
        history_start = len(instance.history)
        run = _Run(instance=instance, definition=definition, effects=Effects(), now=self.clock())

        changed = await self._guarded(run, self._handle, run, event)
        if not changed:
            return stored

        new_history = instance.history[history_start:]
        await self.instances.save(instance, stored.version, new_history)
        await self._after_commit(run)
        return instance

    async def _handle(self, run: _Run, event: StepEvent) -> bool:
        """分发事件，返回实例是否发生变化"""
        instance = run.instance

        if (instance.status == InstanceStatus.SUSPENDED
                and event.type not in ADMINISTRATIVE_EVENTS):
            instance.deferred.append(event.to_dict())
            instance.record(HistoryAction.DEFERRED, at=run.now, event=event.type.value)
            logger.info(f"Instance {instance.id} suspended, deferred {event.type.value}")
            return True

        handlers = {
            StepEventType.COMPLETE_TASK: self._on_task_completed,
            StepEventType.TIMER_FIRED: self._on_timer_fired,
            StepEventType.EVENT_RECEIVED: self._on_event_received,
            StepEventType.CANCEL: self._on_cancel,
            StepEventType.SUSPEND: self._on_suspend,
            StepEventType.RESUME: self._on_resume,
            StepEventType.FORCE_ADVANCE: self._on_force_advance,
        }
        changed = await handlers[event.type](run, event)
        if changed and event.dedup_key:
            instance.mark_applied(event.dedup_key)
        if changed and not instance.is_terminal():
            await self._advance(run)
        return changed

    async def _on_terminal(self, stored: ProcessInstance, event: StepEvent) -> ProcessInstance:
        """终止的实例不再处理任何事件"""
        if event.type == StepEventType.COMPLETE_TASK:
            # 终止与任务取消之间崩溃时遗留的任务
            await self.ledger.cancel(event.payload["task_id"])
            raise AlreadyTerminalError(
                f"Instance {stored.id} is {stored.status.value}; task can no longer be completed"
            )
        if event.type in ADMINISTRATIVE_EVENTS or event.type == StepEventType.FORCE_ADVANCE:
            raise AlreadyTerminalError(f"Instance {stored.id} is {stored.status.value}")
        logger.debug(f"Ignoring {event.type.value} for terminal instance {stored.id}")
        return stored

    def _is_deferred(self, instance: ProcessInstance, key: str) -> bool:
        return any(StepEvent.from_dict(d).dedup_key == key for d in instance.deferred)

    async def _on_task_completed(self, run: _Run, event: StepEvent) -> bool:
        task_id = event.payload["task_id"]
        position = run.instance.find_position(task_id=task_id)
        if position is None:
            raise AlreadyTerminalError(f"Task {task_id} is no longer awaited by instance {run.instance.id}")

        step = run.definition.get_step(position.step_id)
        result = event.payload.get("result") or {}
        self._merge(run.instance, result, step.config.get("output_keys"))
        run.effects.complete_tasks.append((task_id, event.payload.get("actor"), result))
        if position.timer_id:
            run.effects.cancel_timers.append(position.timer_id)

        self._leave(run, position, Outcome.COMPLETED, actor=event.payload.get("actor"))
        return True

    async def _on_timer_fired(self, run: _Run, event: StepEvent) -> bool:
        instance = run.instance
        timer_id = event.payload["timer_id"]
        purpose = TimerPurpose(event.payload["purpose"])

        if purpose == TimerPurpose.PROCESS_SLA:
            if instance.sla_timer_id != timer_id:
                return False
            instance.sla_timer_id = None
            instance.record(HistoryAction.SLA_BREACHED, at=run.now, scope="process")
            run.effects.notifications.append((
                INSTANCE_SLA_BREACHED,
                {"instance_id": instance.id, "definition": str(instance.definition),
                 "started_at": instance.started_at.isoformat()},
                f"{INSTANCE_SLA_BREACHED}:{instance.id}"
            ))
            return True

        if purpose == TimerPurpose.STEP_SLA:
            step_id = event.payload["step_id"]
            if instance.join_timers.get(step_id) != timer_id:
                return False
            del instance.join_timers[step_id]
            arrived = sorted(instance.join_arrivals.get(step_id, {}))
            instance.record(HistoryAction.SLA_BREACHED, step_id, at=run.now, arrived=arrived)
            run.effects.notifications.append((
                STEP_SLA_BREACHED,
                {"instance_id": instance.id, "step_id": step_id, "arrived": arrived},
                f"{STEP_SLA_BREACHED}:{instance.id}:{timer_id}"
            ))
            return True

        position = instance.get_position(event.payload.get("position_id"))
        if position is None or position.timer_id != timer_id:
            return False

        if purpose == TimerPurpose.STEP:
            self._leave(run, position, Outcome.COMPLETED)
        elif purpose == TimerPurpose.TASK_DUE:
            run.effects.expire_tasks.append(position.task_id)
            self._leave(run, position, Outcome.EXPIRED)
        elif purpose == TimerPurpose.EVENT_TIMEOUT:
            run.effects.unsubscribe.append(position.id)
            self._leave(run, position, Outcome.EXPIRED)
        return True

    async def _on_event_received(self, run: _Run, event: StepEvent) -> bool:
        payload = event.payload
        position = run.instance.get_position(payload["position_id"])
        if (position is None or position.event_name != payload["name"]
                or position.correlation_key != payload["correlation_key"]):
            return False

        step = run.definition.get_step(position.step_id)
        self._merge(run.instance, payload.get("payload") or {}, step.config.get("output_keys"))
        run.effects.unsubscribe.append(position.id)
        if position.timer_id:
            run.effects.cancel_timers.append(position.timer_id)

        self._leave(run, position, Outcome.COMPLETED, event_id=payload["event_id"])
        return True

    async def _on_cancel(self, run: _Run, event: StepEvent) -> bool:
        reason = event.payload.get("reason") or "cancelled"
        self._terminate(run, InstanceStatus.CANCELLED, reason=reason)
        return True

    async def _on_suspend(self, run: _Run, event: StepEvent) -> bool:
        instance = run.instance
        if instance.status != InstanceStatus.RUNNING:
            return False
        self._set_status(run, InstanceStatus.SUSPENDED, reason=event.payload.get("reason"))
        run.effects.notifications.append((
            INSTANCE_SUSPENDED,
            {"instance_id": instance.id, "reason": event.payload.get("reason")},
            f"{INSTANCE_SUSPENDED}:{instance.id}:{event.id}"
        ))
        return True

    async def _on_resume(self, run: _Run, event: StepEvent) -> bool:
        instance = run.instance
        if instance.status != InstanceStatus.SUSPENDED:
            return False
        self._set_status(run, InstanceStatus.RUNNING, reason=event.payload.get("reason"))
        run.effects.notifications.append((
            INSTANCE_RESUMED,
            {"instance_id": instance.id},
            f"{INSTANCE_RESUMED}:{instance.id}:{event.id}"
        ))

        # 按到达顺序重放暂停期间推迟的事件
        deferred, instance.deferred = instance.deferred, []
        for data in deferred:
            if instance.is_terminal():
                break
            replayed = StepEvent.from_dict(data)
            key = replayed.dedup_key
            if key and instance.has_applied(key):
                continue
            try:
                await self._handle(run, replayed)
            except (NotFoundError, AlreadyTerminalError) as e:
                logger.info(f"Deferred {replayed.type.value} for instance {instance.id} dropped: {e}")
        return True

    async def _on_force_advance(self, run: _Run, event: StepEvent) -> bool:
        instance = run.instance
        step_id = event.payload["step_id"]
        target = event.payload.get("target")
        outcome = Outcome(event.payload.get("outcome") or Outcome.COMPLETED.value)

        position = instance.find_position(step_id=step_id)
        if position is None:
            raise NotFoundError(f"Instance {instance.id} is not waiting at step '{step_id}'")
        if target and run.definition.get_step(target) is None:
            raise NotFoundError(f"Unknown target step '{target}'")
        if not target and not run.definition.get_step(step_id).edges_for(outcome):
            raise NotFoundError(f"Step '{step_id}' has no {outcome.value} edges")

        if position.task_id:
            run.effects.cancel_tasks.append(position.task_id)
        if position.timer_id:
            run.effects.cancel_timers.append(position.timer_id)
        if position.event_name:
            run.effects.unsubscribe.append(position.id)

        if target:
            instance.positions.remove(position)
            instance.record(
                HistoryAction.EXITED, step_id, position.id, at=run.now,
                outcome=outcome.value, to=[target], forced=True
            )
            run.queue.append((target, step_id))
        else:
            self._leave(run, position, outcome, forced=True)
        return True

    # ---- 步骤推进 ----

    async def _advance(self, run: _Run):
        """广度优先进入排队的步骤，自动步骤和网关立即推进"""
        instance = run.instance
        while run.queue and not instance.is_terminal():
            step_id, source = run.queue.popleft()
            run.entries += 1
            if run.entries > self.step_budget:
                raise StepConfigError(
                    step_id,
                    f"step budget of {self.step_budget} entries exceeded while processing one event"
                )
            step = run.definition.get_step(step_id)
            if step is None:
                raise StepConfigError(step_id, "step does not exist in definition")
            await self._enter(run, step, source)

        if instance.status == InstanceStatus.RUNNING and not instance.positions:
            waiting = [s for s, arrivals in instance.join_arrivals.items() if arrivals]
            if waiting:
                raise StepConfigError(
                    waiting[0],
                    f"join can never fire, arrived branches: {sorted(instance.join_arrivals[waiting[0]])}"
                )
            self._terminate(run, InstanceStatus.COMPLETED)

    async def _enter(self, run: _Run, step: StepSpec, source: Optional[str]):
        instance = run.instance
        entry = instance.record(
            HistoryAction.ENTERED, step.id, str(uuid4()), at=run.now,
            kind=step.kind.value, source=source
        )

        if step.kind == StepKind.END:
            instance.record(HistoryAction.EXITED, step.id, entry.position_id, at=run.now, outcome="end")
        elif step.kind == StepKind.TASK:
            self._enter_task(run, step, entry.position_id)
        elif step.kind == StepKind.TIMER:
            self._enter_timer(run, step, entry.position_id)
        elif step.kind == StepKind.EVENT:
            self._enter_event(run, step, entry.position_id)
        elif step.kind == StepKind.AUTOMATIC:
            await self._run_automatic(run, step, entry.position_id, entry.seq)
            self._route(run, step, entry.position_id, Outcome.COMPLETED)
        elif step.kind == StepKind.GATEWAY:
            self._enter_gateway(run, step, entry.position_id, source)

    def _enter_task(self, run: _Run, step: StepSpec, position_id: str):
        config = step.config
        position = ActivePosition(id=position_id, step_id=step.id, entered_at=run.now)
        task = Task(
            instance_id=run.instance.id,
            step_id=step.id,
            position_id=position_id,
            title=config.get("title") or step.name or step.id,
            assignee=config.get("assignee"),
            role=config.get("role"),
            created_at=run.now
        )
        position.task_id = task.id

        if config.get("due_in") is not None:
            task.due_at = run.now + timedelta(seconds=config["due_in"])
            position.timer_id = self._add_timer(run, step.id, position_id, task.due_at, TimerPurpose.TASK_DUE)

        run.effects.create_tasks.append(task)
        run.instance.positions.append(position)

    def _enter_timer(self, run: _Run, step: StepSpec, position_id: str):
        fire_at = self._timer_deadline(run, step)
        position = ActivePosition(id=position_id, step_id=step.id, entered_at=run.now)
        position.timer_id = self._add_timer(run, step.id, position_id, fire_at, TimerPurpose.STEP)
        run.instance.positions.append(position)

    def _enter_event(self, run: _Run, step: StepSpec, position_id: str):
        config = step.config
        if config.get("correlation"):
            key = self.guards.evaluate_value(config["correlation"], run.instance.variables, step.id)
        else:
            key = config["correlation_key"]

        position = ActivePosition(
            id=position_id,
            step_id=step.id,
            entered_at=run.now,
            event_name=config["event"],
            correlation_key=str(key)
        )
        if config.get("timeout") is not None:
            fire_at = run.now + timedelta(seconds=config["timeout"])
            position.timer_id = self._add_timer(run, step.id, position_id, fire_at, TimerPurpose.EVENT_TIMEOUT)

        run.effects.subscribe.append(EventSubscription(
            instance_id=run.instance.id,
            position_id=position_id,
            step_id=step.id,
            event_name=position.event_name,
            correlation_key=position.correlation_key
        ))
        run.instance.positions.append(position)

    def _enter_gateway(self, run: _Run, step: StepSpec, position_id: str, source: Optional[str]):
        instance = run.instance
        mode = step.gateway_mode

        if mode != GatewayMode.JOIN:
            edges = self._select_edges(step, Outcome.COMPLETED, instance.variables,
                                       parallel=mode == GatewayMode.PARALLEL)
            self._follow(run, step, position_id, Outcome.COMPLETED, edges)
            return

        expected = run.definition.incoming_sources(step.id)
        arrivals = instance.join_arrivals.setdefault(step.id, {})
        arrival = source or "__forced__"
        if arrival in arrivals:
            # 重复到达（重试投递）不计数
            instance.record(HistoryAction.JOIN_ARRIVED, step.id, position_id, at=run.now,
                            source=arrival, duplicate=True)
            return

        first_arrival = not arrivals
        arrivals[arrival] = position_id
        instance.record(HistoryAction.JOIN_ARRIVED, step.id, position_id, at=run.now, source=arrival)

        if all(s in arrivals for s in expected):
            del instance.join_arrivals[step.id]
            timer_id = instance.join_timers.pop(step.id, None)
            if timer_id:
                run.effects.cancel_timers.append(timer_id)
            self._route(run, step, position_id, Outcome.COMPLETED)
            return

        if first_arrival and step.config.get("due_in") is not None:
            fire_at = run.now + timedelta(seconds=step.config["due_in"])
            instance.join_timers[step.id] = self._add_timer(
                run, step.id, None, fire_at, TimerPurpose.STEP_SLA
            )

    async def _run_automatic(self, run: _Run, step: StepSpec, position_id: str, entry_seq: int):
        """调用外部协作方，失败按退避策略重试"""
        instance = run.instance
        config = step.config
        policy = self.retry_policy.with_overrides(config)
        action = config["action"]

        call_config = copy.deepcopy(config)
        call_config["idempotency_key"] = f"{instance.id}:{step.id}:{entry_seq}"
        call_config["instance_id"] = instance.id

        for attempt in range(1, policy.max_attempts + 1):
            started = time.monotonic()
            try:
                output = await self.collaborators.invoke(
                    action,
                    call_config,
                    copy.deepcopy(instance.variables),
                    version=config.get("action_version")
                )
            except NotFoundError as e:
                raise StepConfigError(step.id, str(e))
            except Exception as e:
                self.metrics.observe(AUTOMATIC_CALL_SECONDS, time.monotonic() - started, {"action": action})
                message = str(e) or type(e).__name__
                if attempt >= policy.max_attempts:
                    raise CollaboratorError(step.id, message, attempts=attempt, cause=e)
                delay = policy.delay_for(attempt - 1)
                self.metrics.inc(AUTOMATIC_RETRIES, {"action": action})
                instance.record(HistoryAction.RETRIED, step.id, position_id, at=run.now,
                                attempt=attempt, error=message)
                logger.warning(
                    f"Automatic step '{step.id}' of instance {instance.id} failed "
                    f"(attempt {attempt}/{policy.max_attempts}): {message}; retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
            else:
                self.metrics.observe(AUTOMATIC_CALL_SECONDS, time.monotonic() - started, {"action": action})
                self._merge(instance, output, config.get("output_keys"))
                return

    # ---- 出边选择 ----

    def _select_edges(
        self,
        step: StepSpec,
        outcome: Outcome,
        variables: Dict[str, Any],
        parallel: bool = False
    ) -> List[Edge]:
        candidates = step.edges_for(outcome)
        chosen = []
        for edge in candidates:
            if edge.default:
                continue
            if self.guards.evaluate(edge.guard, variables, step.id):
                chosen.append(edge)
                if not parallel:
                    break
        if not chosen:
            chosen = [edge for edge in candidates if edge.default][:1]
        if not chosen:
            raise StepConfigError(
                step.id, f"no {outcome.value} edge guard matched and no default edge is declared"
            )
        return chosen

    def _leave(self, run: _Run, position: ActivePosition, outcome: Outcome, **detail: Any):
        """等待位置结束并沿出边前进"""
        run.instance.positions.remove(position)
        step = run.definition.get_step(position.step_id)
        self._route(run, step, position.id, outcome, **detail)

    def _route(self, run: _Run, step: StepSpec, position_id: str, outcome: Outcome, **detail: Any):
        edges = self._select_edges(step, outcome, run.instance.variables)
        self._follow(run, step, position_id, outcome, edges, **detail)

    def _follow(
        self,
        run: _Run,
        step: StepSpec,
        position_id: str,
        outcome: Outcome,
        edges: List[Edge],
        **detail: Any
    ):
        targets = [edge.target for edge in edges]
        run.instance.record(
            HistoryAction.EXITED, step.id, position_id, at=run.now,
            outcome=outcome.value, to=targets, **detail
        )
        for target in targets:
            run.queue.append((target, step.id))

    # ---- 状态变更 ----

    def _set_status(self, run: _Run, status: InstanceStatus, **detail: Any):
        instance = run.instance
        previous = instance.status
        instance.status = status
        instance.record(
            HistoryAction.STATUS_CHANGED, at=run.now,
            **{"from": previous.value, "to": status.value}, **detail
        )

    def _terminate(self, run: _Run, status: InstanceStatus, error: InstanceError = None, reason: str = None):
        instance = run.instance
        instance.error = error
        instance.completed_at = run.now
        instance.positions = []
        instance.join_arrivals = {}
        instance.join_timers = {}
        instance.sla_timer_id = None
        instance.deferred = []
        run.queue.clear()

        detail = {"reason": reason} if reason else {}
        if error:
            detail["error"] = error.to_dict()
        self._set_status(run, status, **detail)

        run.effects.drop_pending_work()
        run.effects.notifications.append((
            TERMINAL_TOPICS[status],
            {
                "instance_id": instance.id,
                "status": status.value,
                "final_variables": copy.deepcopy(instance.variables),
                "definition": str(instance.definition),
                "error": error.to_dict() if error else None,
            },
            f"{TERMINAL_TOPICS[status]}:{instance.id}"
        ))

    async def _guarded(self, run: _Run, handler, *args) -> Any:
        """实例内错误只终止该实例，不影响引擎"""
        try:
            return await handler(*args)
        except Exception as e:
            if not is_instance_fatal(e):
                raise
            error = e

        logger.error(f"Instance {run.instance.id} failed: {error}", exc_info=error)
        self._terminate(run, InstanceStatus.FAILED, error=InstanceError.from_exception(error))
        return True

    async def _after_commit(self, run: _Run):
        """提交成功后执行副作用"""
        effects = run.effects
        instance = run.instance

        for task_id, actor, result in effects.complete_tasks:
            try:
                await self.ledger.complete(task_id, actor, result)
            except AlreadyTerminalError as e:
                logger.warning(f"Could not record completion of task {task_id}: {e}")
        for task_id in effects.expire_tasks:
            await self.ledger.expire(task_id)
        for task_id in effects.cancel_tasks:
            await self.ledger.cancel(task_id)
        if effects.cancel_all_tasks:
            await self.ledger.cancel_for_instance(instance.id)

        for timer_id in effects.cancel_timers:
            await self.timers.cancel(timer_id)
        if effects.cancel_all_timers:
            await self.timers.cancel_for_instance(instance.id)

        for position_id in effects.unsubscribe:
            self.timers.unsubscribe(instance.id, position_id)
        if effects.unsubscribe_all:
            self.timers.unsubscribe_instance(instance.id)

        for task in effects.create_tasks:
            await self.ledger.create(task)
        for timer in effects.schedule_timers:
            await self.timers.schedule(timer)
        for subscription in effects.subscribe:
            await self.timers.subscribe(
                subscription.instance_id,
                subscription.position_id,
                subscription.step_id,
                subscription.event_name,
                subscription.correlation_key
            )

        for topic, payload, notification_id in effects.notifications:
            await self.event_bus.publish(topic, payload, notification_id=notification_id)

        if instance.is_terminal() and instance.status in TERMINAL_COUNTERS:
            self.metrics.inc(TERMINAL_COUNTERS[instance.status], {"definition": instance.definition.name})
            self.lifecycle.log(
                TERMINAL_TOPICS[instance.status],
                instance_id=instance.id,
                error=instance.error.message if instance.error else None
            )

    # ---- 工具方法 ----

    def _add_timer(
        self,
        run: _Run,
        step_id: str,
        position_id: Optional[str],
        fire_at: datetime,
        purpose: TimerPurpose
    ) -> str:
        timer = TimerSubscription(
            instance_id=run.instance.id,
            step_id=step_id,
            position_id=position_id,
            fire_at=fire_at,
            purpose=purpose,
            created_at=run.now
        )
        run.effects.schedule_timers.append(timer)
        return timer.id

    def _timer_deadline(self, run: _Run, step: StepSpec) -> datetime:
        return timer_deadline(step, run.instance.variables, run.now)

    def _merge(self, instance: ProcessInstance, data: Dict[str, Any], output_keys: Optional[List[str]]):
        """合并输出变量，声明了 output_keys 时只合并这些键"""
        if not data:
            return
        if output_keys:
            data = {k: v for k, v in data.items() if k in output_keys}
        instance.variables.update(copy.deepcopy(data))


def timer_deadline(step: StepSpec, variables: Dict[str, Any], base: datetime) -> datetime:
    """计算 Timer 步骤的触发时间（delay 相对 base，at/at_variable 为绝对时间）"""
    config = step.config
    if "delay" in config:
        return base + timedelta(seconds=config["delay"])

    if "at" in config:
        value = config["at"]
    else:
        name = config["at_variable"]
        if name not in variables:
            raise StepConfigError(step.id, f"unknown variable '{name}' for timer deadline")
        value = variables[name]

    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            raise StepConfigError(step.id, f"invalid timer deadline '{value}'")
    if not isinstance(value, datetime):
        raise StepConfigError(step.id, f"invalid timer deadline {value!r}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
