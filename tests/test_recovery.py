"""
崩溃恢复测试
"""
import pytest

from process_engine.core.engine import ProcessEngine
from process_engine.models.instance import InstanceStatus
from process_engine.models.task import TaskStatus, TimerDisposition
from process_engine.storage.repository import (
    InMemoryDefinitionRepository, InMemoryInstanceRepository,
    InMemoryTaskRepository, InMemoryTimerRepository
)


@pytest.fixture
def repositories():
    """跨引擎实例共享的存储，模拟进程重启"""
    return {
        "definition_repository": InMemoryDefinitionRepository(),
        "instance_repository": InMemoryInstanceRepository(),
        "task_repository": InMemoryTaskRepository(),
        "timer_repository": InMemoryTimerRepository(),
    }


@pytest.fixture
def make_engine(repositories, settings, clock):
    async def factory(**kwargs):
        process_engine = ProcessEngine(settings=settings, clock=clock, **repositories, **kwargs)
        return process_engine

    return factory


class TestRecovery:
    """恢复测试类"""

    async def test_lost_task_and_timer_are_recreated(self, make_engine, repositories, clock, escalation_process):
        """测试提交后、副作用落地前崩溃：重启后补齐任务和定时器"""
        first = await make_engine()
        await first.start(run_timers=False)
        ref = await first.publish_definition(escalation_process)
        instance_id = await first.instantiate(ref)
        task = (await first.list_tasks(instance_id=instance_id))[0]
        await first.stop()

        # 丢失提交后的副作用
        repositories["task_repository"].tasks.clear()
        repositories["timer_repository"].timers.clear()

        calls = []
        second = await make_engine()
        second.register_collaborator("escalate", lambda config, variables: calls.append(1) or {})
        await second.start(run_timers=False)
        try:
            recovered = await second.get_task(task.id)
            assert recovered.status == TaskStatus.OPEN
            assert recovered.due_at == task.due_at
            assert recovered.assignee == "alice"

            clock.advance(3601)
            assert await second.tick() == 1

            instance = await second.get_instance(instance_id)
            assert instance.status == InstanceStatus.COMPLETED
            assert calls == [1]
        finally:
            await second.stop()

    async def test_recovery_is_idempotent(self, make_engine, repositories, approval_process):
        """测试重复恢复不会产生重复任务"""
        process_engine = await make_engine()
        await process_engine.start(run_timers=False)
        try:
            ref = await process_engine.publish_definition(approval_process)
            instance_id = await process_engine.instantiate(ref)

            assert await process_engine.recover() == 1
            assert await process_engine.recover() == 1
            assert len(await process_engine.list_tasks(instance_id=instance_id)) == 1
        finally:
            await process_engine.stop()

    async def test_event_subscriptions_are_rebuilt(self, make_engine, event_process):
        """测试重启后重建事件订阅"""
        first = await make_engine()
        await first.start(run_timers=False)
        ref = await first.publish_definition(event_process)
        instance_id = await first.instantiate(ref, {"order_id": "O-5"})
        await first.stop()

        second = await make_engine()
        await second.start(run_timers=False)
        try:
            assert [s.instance_id for s in second.timers.list_subscriptions()] == [instance_id]
            assert await second.publish_event("signed", "O-5", {"signed_by": "dave"}) == 1
            assert (await second.get_instance(instance_id)).status == InstanceStatus.COMPLETED
        finally:
            await second.stop()

    async def test_open_tasks_of_terminal_instances_are_cancelled(self, make_engine, repositories, approval_process):
        """测试终止后、取消任务前崩溃：重启后取消遗留任务"""
        first = await make_engine()
        await first.start(run_timers=False)
        ref = await first.publish_definition(approval_process)
        instance_id = await first.instantiate(ref)
        task = (await first.list_tasks(instance_id=instance_id))[0]
        await first.cancel_instance(instance_id)
        await first.stop()

        # 任务取消未落地
        stored = repositories["task_repository"].tasks[task.id]
        stored.status = TaskStatus.OPEN
        stored.completed_at = None

        second = await make_engine()
        await second.start(run_timers=False)
        try:
            assert (await second.get_task(task.id)).status == TaskStatus.CANCELLED
            assert await second.list_tasks(role="reviewer") == []
        finally:
            await second.stop()

    async def test_suspended_instance_recovers_suspended(self, make_engine, approval_process):
        """测试暂停的实例恢复后仍为暂停"""
        first = await make_engine()
        await first.start(run_timers=False)
        ref = await first.publish_definition(approval_process)
        instance_id = await first.instantiate(ref)
        await first.suspend_instance(instance_id)
        await first.stop()

        second = await make_engine()
        await second.start(run_timers=False)
        try:
            assert (await second.get_instance(instance_id)).status == InstanceStatus.SUSPENDED
            resumed = await second.resume_instance(instance_id)
            assert resumed.status == InstanceStatus.RUNNING
        finally:
            await second.stop()

    async def test_fired_timer_left_pending_is_redelivered_once(self, make_engine, repositories, clock, build_process):
        """测试投递后、标记 fired 前崩溃：重新投递不产生重复推进"""
        definition = build_process("cooling-off", [
            {"id": "wait", "kind": "timer", "config": {"delay": 60}, "edges": [{"to": "review"}]},
            {"id": "review", "kind": "task", "config": {"role": "ops"}, "edges": [{"to": "done"}]},
            {"id": "done", "kind": "end"}
        ])
        first = await make_engine()
        await first.start(run_timers=False)
        ref = await first.publish_definition(definition)
        instance_id = await first.instantiate(ref)
        timer_id = (await first.timers.timers.list_pending_for_instance(instance_id))[0].id

        clock.advance(61)
        await first.tick()
        await first.stop()

        # 触发标记丢失
        repositories["timer_repository"].timers[timer_id].disposition = TimerDisposition.PENDING
        version = (await first.get_instance(instance_id)).version

        second = await make_engine()
        await second.start(run_timers=False)
        try:
            assert await second.tick() == 1
            instance = await second.get_instance(instance_id)
            assert instance.version == version
            assert len(await second.list_tasks(instance_id=instance_id)) == 1
            assert await second.tick() == 0
        finally:
            await second.stop()
