"""
SQLAlchemy 仓库实现
"""
import logging
from typing import Optional, List, Dict, Any
from datetime import datetime
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, OperationalError, InterfaceError

from ..models.definition import ProcessDefinition
from ..models.instance import ProcessInstance, InstanceStatus, HistoryEntry, HistoryAction
from ..models.task import (
    Task, TaskStatus, TimerSubscription, TimerDisposition, TimerPurpose
)
from ..core.parser import definition_to_dict, definition_from_dict
from ..exceptions import ConcurrencyConflictError, NotFoundError, StoreUnavailableError
from .repository import (
    DefinitionRepository, InstanceRepository, TaskRepository, TimerRepository
)
from .sqlalchemy_models import (
    ProcessDefinitionRecord,
    ProcessInstanceRecord,
    InstanceHistoryRecord,
    TaskRecord,
    TimerSubscriptionRecord,
    Base
)


logger = logging.getLogger(__name__)


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    def _engine_options(self) -> Dict[str, Any]:
        if not self.database_url.startswith("sqlite"):
            return {"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True}
        if ":memory:" in self.database_url or self.database_url.endswith("://"):
            # 内存数据库需要共享同一连接
            return {"poolclass": StaticPool}
        return {}

    async def initialize(self):
        """初始化数据库连接"""
        self.engine = create_async_engine(
            self.database_url,
            echo=self.echo,
            **self._engine_options()
        )

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # 创建表（开发环境）
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailableError(f"Database unavailable: {e}") from e

        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        if self.async_session_maker is None:
            raise StoreUnavailableError("Database manager is not initialized")

        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except (OperationalError, InterfaceError) as e:
                await session.rollback()
                raise StoreUnavailableError(f"Database unavailable: {e}") from e
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def ping(self) -> bool:
        """检查数据库连通性"""
        try:
            async with self.get_session() as session:
                await session.execute(select(1))
            return True
        except StoreUnavailableError:
            return False


class SQLAlchemyDefinitionRepository(DefinitionRepository):
    """SQLAlchemy 流程定义仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, definition: ProcessDefinition) -> None:
        async with self.db.get_session() as session:
            session.add(ProcessDefinitionRecord(
                name=definition.name,
                version=definition.version,
                category=definition.category,
                description=definition.description,
                trigger_type=definition.trigger.type.value,
                definition=definition_to_dict(definition),
                is_active=definition.active,
                created_by=definition.created_by,
                created_at=definition.created_at
            ))

    async def get(self, name: str, version: int) -> Optional[ProcessDefinition]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ProcessDefinitionRecord).where(
                    ProcessDefinitionRecord.name == name,
                    ProcessDefinitionRecord.version == version
                )
            )
            record = result.scalar_one_or_none()
            return self._record_to_definition(record) if record else None

    async def latest_version(self, name: str) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(func.max(ProcessDefinitionRecord.version))
                .where(ProcessDefinitionRecord.name == name)
            )
            return result.scalar() or 0

    async def get_active(self, name: str) -> Optional[ProcessDefinition]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ProcessDefinitionRecord)
                .where(
                    ProcessDefinitionRecord.name == name,
                    ProcessDefinitionRecord.is_active.is_(True)
                )
                .order_by(ProcessDefinitionRecord.version.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return self._record_to_definition(record) if record else None

    async def list(
        self,
        category: str = None,
        active_only: bool = False
    ) -> List[ProcessDefinition]:
        async with self.db.get_session() as session:
            query = select(ProcessDefinitionRecord)
            if category:
                query = query.where(ProcessDefinitionRecord.category == category)
            if active_only:
                query = query.where(ProcessDefinitionRecord.is_active.is_(True))
            query = query.order_by(
                ProcessDefinitionRecord.name,
                ProcessDefinitionRecord.version
            )

            result = await session.execute(query)
            return [self._record_to_definition(r) for r in result.scalars().all()]

    async def set_active(self, name: str, version: int, active: bool) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ProcessDefinitionRecord)
                .where(
                    ProcessDefinitionRecord.name == name,
                    ProcessDefinitionRecord.version == version
                )
                .values(is_active=active)
            )
            return result.rowcount > 0

    def _record_to_definition(self, record: ProcessDefinitionRecord) -> ProcessDefinition:
        data = dict(record.definition)
        data['active'] = record.is_active
        data['version'] = record.version
        return definition_from_dict(data)


class SQLAlchemyInstanceRepository(InstanceRepository):
    """SQLAlchemy 流程实例仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def create(self, instance: ProcessInstance) -> str:
        instance.version = 1
        try:
            async with self.db.get_session() as session:
                session.add(self._instance_to_record(instance))
                await session.flush()
                for entry in instance.history:
                    session.add(self._history_to_record(instance.id, entry))
        except IntegrityError as e:
            instance.version = 0
            raise ConcurrencyConflictError(instance.id, 0) from e
        return instance.id

    async def load(self, instance_id: str) -> Optional[ProcessInstance]:
        async with self.db.get_session() as session:
            record = await session.get(ProcessInstanceRecord, instance_id)
            if not record:
                return None
            return await self._load_with_history(session, record)

    async def save(
        self,
        instance: ProcessInstance,
        expected_version: int,
        new_history: List[HistoryEntry]
    ) -> int:
        new_version = expected_version + 1
        instance.version = new_version

        async with self.db.get_session() as session:
            # 条件更新实现乐观锁
            values = self._instance_values(instance)
            values["version"] = new_version
            result = await session.execute(
                update(ProcessInstanceRecord)
                .where(
                    ProcessInstanceRecord.id == instance.id,
                    ProcessInstanceRecord.version == expected_version
                )
                .values(**values)
            )

            if result.rowcount == 0:
                instance.version = expected_version
                exists = await session.get(ProcessInstanceRecord, instance.id)
                if not exists:
                    raise NotFoundError(f"Instance not found: {instance.id}")
                raise ConcurrencyConflictError(instance.id, expected_version)

            for entry in new_history:
                session.add(self._history_to_record(instance.id, entry))

        return new_version

    async def find_by_idempotency_key(self, key: str) -> Optional[ProcessInstance]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ProcessInstanceRecord)
                .where(ProcessInstanceRecord.idempotency_key == key)
            )
            record = result.scalar_one_or_none()
            if not record:
                return None
            return await self._load_with_history(session, record)

    async def list_by_status(
        self,
        status: InstanceStatus,
        offset: int = 0,
        limit: int = 100
    ) -> List[ProcessInstance]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ProcessInstanceRecord)
                .where(ProcessInstanceRecord.status == status.value)
                .order_by(ProcessInstanceRecord.started_at)
                .offset(offset)
                .limit(limit)
            )
            return [
                await self._load_with_history(session, record)
                for record in result.scalars().all()
            ]

    async def list_by_definition(
        self,
        name: str,
        version: int = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ProcessInstance]:
        async with self.db.get_session() as session:
            query = select(ProcessInstanceRecord).where(
                ProcessInstanceRecord.definition_name == name
            )
            if version is not None:
                query = query.where(ProcessInstanceRecord.definition_version == version)
            query = query.order_by(ProcessInstanceRecord.started_at).offset(offset).limit(limit)

            result = await session.execute(query)
            return [
                await self._load_with_history(session, record)
                for record in result.scalars().all()
            ]

    async def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in InstanceStatus}
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ProcessInstanceRecord.status, func.count(ProcessInstanceRecord.id))
                .group_by(ProcessInstanceRecord.status)
            )
            for status, count in result.all():
                counts[status] = count
        return counts

    async def _load_with_history(
        self,
        session: AsyncSession,
        record: ProcessInstanceRecord
    ) -> ProcessInstance:
        result = await session.execute(
            select(InstanceHistoryRecord)
            .where(InstanceHistoryRecord.instance_id == record.id)
            .order_by(InstanceHistoryRecord.seq)
        )
        history = [
            HistoryEntry(
                seq=h.seq,
                action=HistoryAction(h.action),
                step_id=h.step_id,
                position_id=h.position_id,
                at=h.at,
                detail=h.detail or {}
            )
            for h in result.scalars().all()
        ]
        state = dict(record.state)
        state["version"] = record.version
        return ProcessInstance.from_state(state, history)

    def _instance_values(self, instance: ProcessInstance) -> Dict[str, Any]:
        return {
            "status": instance.status.value,
            "state": instance.to_state(),
            "error_message": instance.error.message if instance.error else None,
            "completed_at": instance.completed_at,
        }

    def _instance_to_record(self, instance: ProcessInstance) -> ProcessInstanceRecord:
        return ProcessInstanceRecord(
            id=instance.id,
            definition_name=instance.definition.name,
            definition_version=instance.definition.version,
            version=instance.version,
            idempotency_key=instance.idempotency_key,
            started_by=instance.started_by,
            started_at=instance.started_at,
            **self._instance_values(instance)
        )

    def _history_to_record(self, instance_id: str, entry: HistoryEntry) -> InstanceHistoryRecord:
        return InstanceHistoryRecord(
            instance_id=instance_id,
            seq=entry.seq,
            action=entry.action.value,
            step_id=entry.step_id,
            position_id=entry.position_id,
            at=entry.at,
            detail=entry.detail
        )


class SQLAlchemyTaskRepository(TaskRepository):
    """SQLAlchemy 任务仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def add(self, task: Task) -> Task:
        async with self.db.get_session() as session:
            existing = await session.get(TaskRecord, task.id)
            if existing:
                return self._record_to_task(existing)
            session.add(TaskRecord(id=task.id, **self._task_values(task)))
        return task

    async def get(self, task_id: str) -> Optional[Task]:
        async with self.db.get_session() as session:
            record = await session.get(TaskRecord, task_id)
            return self._record_to_task(record) if record else None

    async def update(self, task: Task) -> None:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(TaskRecord)
                .where(TaskRecord.id == task.id)
                .values(**self._task_values(task))
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Task not found: {task.id}")

    async def list_for_instance(self, instance_id: str) -> List[Task]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TaskRecord)
                .where(TaskRecord.instance_id == instance_id)
                .order_by(TaskRecord.created_at)
            )
            return [self._record_to_task(r) for r in result.scalars().all()]

    async def list_open(self, assignee: str = None, role: str = None) -> List[Task]:
        async with self.db.get_session() as session:
            query = select(TaskRecord).where(TaskRecord.status == TaskStatus.OPEN.value)
            if assignee:
                query = query.where(TaskRecord.assignee == assignee)
            if role:
                query = query.where(TaskRecord.role == role)
            query = query.order_by(TaskRecord.created_at)

            result = await session.execute(query)
            return [self._record_to_task(r) for r in result.scalars().all()]

    def _task_values(self, task: Task) -> Dict[str, Any]:
        return {
            "instance_id": task.instance_id,
            "step_id": task.step_id,
            "position_id": task.position_id,
            "title": task.title,
            "assignee": task.assignee,
            "role": task.role,
            "due_at": task.due_at,
            "status": task.status.value,
            "result": task.result,
            "completed_by": task.completed_by,
            "created_at": task.created_at,
            "completed_at": task.completed_at,
        }

    def _record_to_task(self, record: TaskRecord) -> Task:
        return Task(
            id=record.id,
            instance_id=record.instance_id,
            step_id=record.step_id,
            position_id=record.position_id,
            title=record.title or "",
            assignee=record.assignee,
            role=record.role,
            due_at=record.due_at,
            status=TaskStatus(record.status),
            result=record.result,
            completed_by=record.completed_by,
            created_at=record.created_at,
            completed_at=record.completed_at
        )


class SQLAlchemyTimerRepository(TimerRepository):
    """SQLAlchemy 定时器仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def add(self, timer: TimerSubscription) -> TimerSubscription:
        async with self.db.get_session() as session:
            existing = await session.get(TimerSubscriptionRecord, timer.id)
            if existing:
                return self._record_to_timer(existing)
            session.add(TimerSubscriptionRecord(id=timer.id, **self._timer_values(timer)))
        return timer

    async def get(self, timer_id: str) -> Optional[TimerSubscription]:
        async with self.db.get_session() as session:
            record = await session.get(TimerSubscriptionRecord, timer_id)
            return self._record_to_timer(record) if record else None

    async def update(self, timer: TimerSubscription) -> None:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(TimerSubscriptionRecord)
                .where(TimerSubscriptionRecord.id == timer.id)
                .values(**self._timer_values(timer))
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Timer not found: {timer.id}")

    async def pending_for_step(
        self,
        instance_id: str,
        step_id: str
    ) -> Optional[TimerSubscription]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TimerSubscriptionRecord)
                .where(
                    TimerSubscriptionRecord.instance_id == instance_id,
                    TimerSubscriptionRecord.step_id == step_id,
                    TimerSubscriptionRecord.disposition == TimerDisposition.PENDING.value
                )
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return self._record_to_timer(record) if record else None

    async def list_pending_for_instance(self, instance_id: str) -> List[TimerSubscription]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TimerSubscriptionRecord)
                .where(
                    TimerSubscriptionRecord.instance_id == instance_id,
                    TimerSubscriptionRecord.disposition == TimerDisposition.PENDING.value
                )
                .order_by(TimerSubscriptionRecord.fire_at)
            )
            return [self._record_to_timer(r) for r in result.scalars().all()]

    async def list_due(self, now: datetime, limit: int = 100) -> List[TimerSubscription]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TimerSubscriptionRecord)
                .where(
                    TimerSubscriptionRecord.disposition == TimerDisposition.PENDING.value,
                    TimerSubscriptionRecord.fire_at <= now
                )
                .order_by(TimerSubscriptionRecord.fire_at)
                .limit(limit)
            )
            return [self._record_to_timer(r) for r in result.scalars().all()]

    def _timer_values(self, timer: TimerSubscription) -> Dict[str, Any]:
        return {
            "instance_id": timer.instance_id,
            "step_id": timer.step_id,
            "position_id": timer.position_id,
            "purpose": timer.purpose.value,
            "disposition": timer.disposition.value,
            "fire_at": timer.fire_at,
            "created_at": timer.created_at,
        }

    def _record_to_timer(self, record: TimerSubscriptionRecord) -> TimerSubscription:
        return TimerSubscription(
            id=record.id,
            instance_id=record.instance_id,
            step_id=record.step_id,
            position_id=record.position_id,
            purpose=TimerPurpose(record.purpose),
            disposition=TimerDisposition(record.disposition),
            fire_at=record.fire_at,
            created_at=record.created_at
        )
