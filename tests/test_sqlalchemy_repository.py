"""
SQLAlchemy 仓库测试（SQLite）
"""
import pytest
from dataclasses import replace
from datetime import datetime, timedelta

from process_engine.core.engine import ProcessEngine
from process_engine.core.parser import DefinitionParser
from process_engine.models.definition import DefinitionRef
from process_engine.models.instance import ProcessInstance, InstanceStatus, HistoryAction
from process_engine.models.task import (
    Task, TaskStatus, TimerSubscription, TimerDisposition, TimerPurpose
)
from process_engine.storage.sqlalchemy_repository import (
    SQLAlchemyDefinitionRepository, SQLAlchemyInstanceRepository,
    SQLAlchemyTaskRepository, SQLAlchemyTimerRepository
)
from process_engine.exceptions import ConcurrencyConflictError, NotFoundError


START = datetime(2024, 1, 1, 9, 0, 0)


def new_instance(**kwargs) -> ProcessInstance:
    instance = ProcessInstance(definition=DefinitionRef("approval", 1), started_at=START, **kwargs)
    instance.record(HistoryAction.STARTED, at=START, definition="approval@1")
    return instance


class TestSQLAlchemyDefinitionRepository:
    """定义仓库测试类"""

    async def test_save_and_get(self, test_database, approval_process):
        """测试保存和读取定义"""
        repository = SQLAlchemyDefinitionRepository(test_database)
        definition = DefinitionParser().parse(approval_process)
        published = replace(definition, version=1, created_at=START)

        await repository.save(published)

        loaded = await repository.get("approval", 1)
        assert loaded.ref == DefinitionRef("approval", 1)
        assert loaded.steps == definition.steps
        assert loaded.created_at == START
        assert await repository.get("approval", 2) is None
        assert await repository.latest_version("approval") == 1
        assert await repository.latest_version("missing") == 0

    async def test_active_flag(self, test_database, approval_process):
        """测试激活标志"""
        repository = SQLAlchemyDefinitionRepository(test_database)
        definition = DefinitionParser().parse(approval_process)
        for version in (1, 2):
            await repository.save(replace(definition, version=version))

        assert (await repository.get_active("approval")).version == 2
        assert await repository.set_active("approval", 2, False) is True
        assert (await repository.get_active("approval")).version == 1
        assert (await repository.get("approval", 2)).active is False
        assert await repository.set_active("approval", 9, False) is False
        assert [d.version for d in await repository.list(active_only=True)] == [1]


class TestSQLAlchemyInstanceRepository:
    """实例仓库测试类"""

    async def test_create_load_and_save(self, test_database):
        """测试创建、读取和乐观锁保存"""
        repository = SQLAlchemyInstanceRepository(test_database)
        instance = new_instance(variables={"amount": 10})

        await repository.create(instance)
        assert instance.version == 1

        loaded = await repository.load(instance.id)
        assert loaded.variables == {"amount": 10}
        assert loaded.version == 1
        assert [e.action for e in loaded.history] == [HistoryAction.STARTED]

        loaded.variables["amount"] = 20
        entry = loaded.record(HistoryAction.STATUS_CHANGED, at=START, to="completed")
        loaded.status = InstanceStatus.COMPLETED
        assert await repository.save(loaded, 1, [entry]) == 2

        reloaded = await repository.load(instance.id)
        assert reloaded.status == InstanceStatus.COMPLETED
        assert reloaded.variables == {"amount": 20}
        assert [e.seq for e in reloaded.history] == [1, 2]

    async def test_stale_version_is_rejected(self, test_database):
        """测试过期版本号保存失败，状态不变"""
        repository = SQLAlchemyInstanceRepository(test_database)
        instance = new_instance()
        await repository.create(instance)

        first = await repository.load(instance.id)
        second = await repository.load(instance.id)
        first.variables["winner"] = "first"
        await repository.save(first, 1, [])

        second.variables["winner"] = "second"
        with pytest.raises(ConcurrencyConflictError):
            await repository.save(second, 1, [])
        assert (await repository.load(instance.id)).variables == {"winner": "first"}

    async def test_save_unknown_instance(self, test_database):
        """测试保存不存在的实例"""
        repository = SQLAlchemyInstanceRepository(test_database)

        with pytest.raises(NotFoundError):
            await repository.save(new_instance(), 1, [])

    async def test_duplicate_idempotency_key(self, test_database):
        """测试幂等键唯一"""
        repository = SQLAlchemyInstanceRepository(test_database)
        first = new_instance(idempotency_key="approval:request-1")
        await repository.create(first)

        with pytest.raises(ConcurrencyConflictError):
            await repository.create(new_instance(idempotency_key="approval:request-1"))
        assert (await repository.find_by_idempotency_key("approval:request-1")).id == first.id
        assert await repository.find_by_idempotency_key("approval:other") is None

    async def test_listing_and_counts(self, test_database):
        """测试按状态、按定义查询和统计"""
        repository = SQLAlchemyInstanceRepository(test_database)
        running = new_instance()
        failed = new_instance(status=InstanceStatus.FAILED)
        other = ProcessInstance(definition=DefinitionRef("audit", 3), started_at=START)
        for instance in (running, failed, other):
            await repository.create(instance)

        assert [i.id for i in await repository.list_by_status(InstanceStatus.FAILED)] == [failed.id]
        assert len(await repository.list_by_definition("approval")) == 2
        assert [i.id for i in await repository.list_by_definition("audit", version=3)] == [other.id]
        assert await repository.list_by_definition("audit", version=1) == []

        counts = await repository.count_by_status()
        assert counts["running"] == 2
        assert counts["failed"] == 1
        assert counts["completed"] == 0


class TestSQLAlchemyTaskAndTimerRepositories:
    """任务与定时器仓库测试类"""

    async def test_task_roundtrip(self, test_database):
        """测试任务持久化"""
        instances = SQLAlchemyInstanceRepository(test_database)
        instance = new_instance()
        await instances.create(instance)
        repository = SQLAlchemyTaskRepository(test_database)
        task = Task(instance_id=instance.id, step_id="review", role="reviewer", created_at=START)

        assert await repository.add(task) is task
        duplicate = await repository.add(Task(id=task.id, instance_id=instance.id, step_id="other"))
        assert duplicate.step_id == "review"

        task.complete("carol", {"approved": True}, START + timedelta(minutes=5))
        await repository.update(task)

        loaded = await repository.get(task.id)
        assert loaded.status == TaskStatus.COMPLETED
        assert loaded.result == {"approved": True}
        assert await repository.list_open() == []
        assert [t.id for t in await repository.list_for_instance(instance.id)] == [task.id]

    async def test_timer_queries(self, test_database):
        """测试到期查询和按步骤查询"""
        instances = SQLAlchemyInstanceRepository(test_database)
        instance = new_instance()
        await instances.create(instance)
        repository = SQLAlchemyTimerRepository(test_database)

        late = TimerSubscription(instance_id=instance.id, step_id="b", fire_at=START + timedelta(hours=2))
        early = TimerSubscription(
            instance_id=instance.id, step_id="a", fire_at=START + timedelta(hours=1),
            purpose=TimerPurpose.TASK_DUE
        )
        await repository.add(late)
        await repository.add(early)

        due = await repository.list_due(START + timedelta(hours=3))
        assert [t.id for t in due] == [early.id, late.id]
        assert due[0].purpose == TimerPurpose.TASK_DUE
        assert await repository.list_due(START) == []
        assert (await repository.pending_for_step(instance.id, "a")).id == early.id

        early.disposition = TimerDisposition.FIRED
        await repository.update(early)
        assert await repository.pending_for_step(instance.id, "a") is None
        assert [t.id for t in await repository.list_pending_for_instance(instance.id)] == [late.id]


class TestEngineOnSQLite:
    """基于 SQLite 的引擎端到端测试"""

    @pytest.fixture
    def sqlite_settings(self, settings, tmp_path):
        settings.database_url = f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}"
        return settings

    async def test_full_lifecycle_survives_restart(self, sqlite_settings, clock, escalation_process):
        """测试持久化后重启继续执行"""
        first = await ProcessEngine.from_settings(sqlite_settings, clock=clock)
        await first.start(run_timers=False)
        ref = await first.publish_definition(escalation_process)
        instance_id = await first.instantiate(ref, {"case": "C-1"}, started_by="bob", idempotency_key="case-1")
        assert await first.instantiate(ref, idempotency_key="case-1") == instance_id
        await first.stop()

        second = await ProcessEngine.from_settings(sqlite_settings, clock=clock)
        second.register_collaborator("escalate", lambda config, variables: {"escalated_to": "ops"})
        await second.start(run_timers=False)
        try:
            assert (await second.get_definition("escalation")).ref == ref
            task = (await second.list_tasks(instance_id=instance_id))[0]
            assert task.assignee == "alice"

            clock.advance(3601)
            assert await second.tick() == 1

            instance = await second.get_instance(instance_id)
            assert instance.status == InstanceStatus.COMPLETED
            assert instance.variables == {"case": "C-1", "escalated_to": "ops"}
            assert instance.started_by == "bob"
            assert (await second.get_task(task.id)).status == TaskStatus.EXPIRED
            assert [e.seq for e in instance.history] == list(range(1, len(instance.history) + 1))
            assert await second.db_manager.ping() is True
        finally:
            await second.stop()
