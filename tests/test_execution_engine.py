"""
执行引擎测试
"""
import pytest

from process_engine.core.engine import ProcessEngine
from process_engine.models.instance import InstanceStatus, HistoryAction
from process_engine.models.task import TaskStatus
from process_engine.models.events import StepEvent, StepEventType
from process_engine.monitoring import AUTOMATIC_RETRIES, AUTOMATIC_CALL_SECONDS, INSTANCES_COMPLETED
from process_engine.exceptions import NotFoundError, AlreadyTerminalError


def actions(instance, step_id=None):
    return [
        e.action for e in instance.history
        if step_id is None or e.step_id == step_id
    ]


class TestTaskSteps:
    """任务步骤测试类"""

    async def test_complete_task_follows_guarded_edge(self, engine, approval_process):
        """测试完成任务后按守卫选择出边"""
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref, {"requester": "bob"}, started_by="bob")

        tasks = await engine.list_tasks(instance_id=instance_id)
        assert len(tasks) == 1
        assert tasks[0].role == "reviewer"
        assert tasks[0].status == TaskStatus.OPEN

        result = await engine.complete_task(tasks[0].id, "carol", {"decision": "approve"})
        assert result == {"decision": "approve"}

        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.variables == {"requester": "bob", "decision": "approve"}
        assert HistoryAction.ENTERED in actions(instance, "approved")
        assert HistoryAction.ENTERED not in actions(instance, "rejected")
        assert instance.completed_at is not None

    async def test_default_edge_when_no_guard_matches(self, engine, approval_process):
        """测试守卫都不满足时走默认出边"""
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        await engine.complete_task(task.id, "carol", {"decision": "reject"})

        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert HistoryAction.ENTERED in actions(instance, "rejected")

    async def test_complete_task_twice_is_idempotent(self, engine, approval_process):
        """测试重复完成任务不会再次推进实例"""
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        first = await engine.complete_task(task.id, "carol", {"decision": "approve"})
        instance = await engine.get_instance(instance_id)
        version, history_length = instance.version, len(instance.history)

        second = await engine.complete_task(task.id, "dave", {"decision": "reject"})

        assert second == first
        instance = await engine.get_instance(instance_id)
        assert instance.version == version
        assert len(instance.history) == history_length
        assert instance.variables["decision"] == "approve"
        assert (await engine.get_task(task.id)).completed_by == "carol"

    async def test_redelivered_completion_event_is_ignored(self, engine, build_process):
        """测试重复投递的任务完成事件不产生状态变化"""
        definition = build_process("two-tasks", [
            {"id": "first", "kind": "task", "config": {"assignee": "a"}, "edges": [{"to": "second"}]},
            {"id": "second", "kind": "task", "config": {"assignee": "b"}, "edges": [{"to": "done"}]},
            {"id": "done", "kind": "end"}
        ])
        ref = await engine.publish_definition(definition)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        await engine.complete_task(task.id, "a", {"x": 1})
        before = await engine.get_instance(instance_id)

        await engine.dispatcher.dispatch(StepEvent(
            type=StepEventType.COMPLETE_TASK,
            instance_id=instance_id,
            payload={"task_id": task.id, "actor": "a", "result": {"x": 2}}
        ))

        after = await engine.get_instance(instance_id)
        assert after.version == before.version
        assert after.variables == {"x": 1}
        assert [p.step_id for p in after.positions] == ["second"]

    async def test_output_keys_filter_result(self, engine, build_process):
        """测试 output_keys 只合并声明的键"""
        definition = build_process("filtered", [
            {
                "id": "collect",
                "kind": "task",
                "config": {"assignee": "a", "output_keys": ["amount"]},
                "edges": [{"to": "done"}]
            },
            {"id": "done", "kind": "end"}
        ])
        ref = await engine.publish_definition(definition)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        await engine.complete_task(task.id, "a", {"amount": 10, "comment": "ignored"})

        instance = await engine.get_instance(instance_id)
        assert instance.variables == {"amount": 10}

    async def test_complete_unknown_task(self, engine):
        """测试完成不存在的任务"""
        with pytest.raises(NotFoundError):
            await engine.complete_task("missing", "a", {})


class TestEscalation:
    """任务到期升级测试类"""

    async def test_expired_task_escalates_once(self, engine, clock, escalation_process):
        """测试任务到期后走 expired 出边，escalate 只调用一次"""
        calls = []

        async def escalate(step_config, variables):
            calls.append(step_config["idempotency_key"])
            return {"escalated_to": "manager", "noise": True}

        engine.register_collaborator("escalate", escalate)
        ref = await engine.publish_definition(escalation_process)
        instance_id = await engine.instantiate(ref)

        clock.advance(1800)
        assert await engine.tick() == 0
        assert (await engine.get_instance(instance_id)).status == InstanceStatus.RUNNING

        clock.advance(1801)
        assert await engine.tick() == 1

        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.variables == {"escalated_to": "manager"}
        assert len(calls) == 1
        assert calls[0].startswith(f"{instance_id}:escalate:")

        task = (await engine.list_tasks(instance_id=instance_id))[0]
        assert task.status == TaskStatus.EXPIRED

        # 再次扫描不会重复触发
        clock.advance(3600)
        assert await engine.tick() == 0
        assert len(calls) == 1

    async def test_completed_before_due_cancels_timer(self, engine, clock, escalation_process):
        """测试到期前完成任务会取消到期定时器"""
        engine.register_collaborator("escalate", lambda config, variables: {})
        ref = await engine.publish_definition(escalation_process)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        await engine.complete_task(task.id, "alice", {})
        clock.advance(7200)
        assert await engine.tick() == 0

        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert HistoryAction.ENTERED not in actions(instance, "escalate")

    async def test_completing_expired_task_is_rejected(self, engine, clock, escalation_process):
        """测试已过期的任务不能再完成"""
        engine.register_collaborator("escalate", lambda config, variables: {})
        ref = await engine.publish_definition(escalation_process)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        clock.advance(3601)
        await engine.tick()

        with pytest.raises(AlreadyTerminalError):
            await engine.complete_task(task.id, "alice", {})


class TestGateways:
    """网关测试类"""

    async def test_exclusive_gateway_without_match_fails(self, engine, build_process):
        """测试两个守卫都不满足且无默认出边时实例失败"""
        definition = build_process("routing", [
            {
                "id": "route",
                "kind": "gateway",
                "edges": [
                    {"to": "large", "guard": "amount > 100"},
                    {"to": "refund", "guard": "amount < 0"}
                ]
            },
            {"id": "large", "kind": "end"},
            {"id": "refund", "kind": "end"}
        ])
        ref = await engine.publish_definition(definition)
        instance_id = await engine.instantiate(ref, {"amount": 50})

        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.FAILED
        assert instance.error.type == "StepConfigError"
        assert instance.error.step_id == "route"

        failed = engine.event_bus.history("instance.failed")
        assert len(failed) == 1
        assert failed[0].payload["final_variables"] == {"amount": 50}

    async def test_exclusive_gateway_takes_first_true_guard(self, engine, build_process):
        """测试排他网关按声明顺序选择第一条满足的出边"""
        definition = build_process("routing", [
            {
                "id": "route",
                "kind": "gateway",
                "edges": [
                    {"to": "large", "guard": "amount > 100"},
                    {"to": "medium", "guard": "amount > 10"},
                    {"to": "small", "default": True}
                ]
            },
            {"id": "large", "kind": "end"},
            {"id": "medium", "kind": "end"},
            {"id": "small", "kind": "end"}
        ])
        ref = await engine.publish_definition(definition)

        for amount, expected in ((500, "large"), (50, "medium"), (5, "small")):
            instance = await engine.get_instance(await engine.instantiate(ref, {"amount": amount}))
            assert instance.status == InstanceStatus.COMPLETED
            entered = [e.step_id for e in instance.history if e.action == HistoryAction.ENTERED]
            assert entered == ["route", expected]

    async def test_unknown_guard_variable_fails_instance(self, engine, approval_process):
        """测试守卫引用未知变量时实例失败"""
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        await engine.complete_task(task.id, "carol", {"unrelated": True})

        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.FAILED
        assert instance.error.type == "StepConfigError"

    async def test_parallel_branches_all_reach_end(self, engine, build_process):
        """测试并行分支全部到达结束步骤后实例才完成"""
        definition = build_process("fan-out", [
            {
                "id": "split",
                "kind": "gateway",
                "config": {"mode": "parallel"},
                "edges": [{"to": "a"}, {"to": "b"}, {"to": "c"}]
            },
            {"id": "a", "kind": "task", "config": {"assignee": "x"}, "edges": [{"to": "end-a"}]},
            {"id": "b", "kind": "task", "config": {"assignee": "x"}, "edges": [{"to": "end-b"}]},
            {"id": "c", "kind": "task", "config": {"assignee": "x"}, "edges": [{"to": "end-c"}]},
            {"id": "end-a", "kind": "end"},
            {"id": "end-b", "kind": "end"},
            {"id": "end-c", "kind": "end"}
        ])
        ref = await engine.publish_definition(definition)
        instance_id = await engine.instantiate(ref)

        tasks = await engine.list_tasks(instance_id=instance_id)
        assert sorted(t.step_id for t in tasks) == ["a", "b", "c"]

        for done, task in enumerate(sorted(tasks, key=lambda t: t.step_id), start=1):
            await engine.complete_task(task.id, "x", {task.step_id: True})
            instance = await engine.get_instance(instance_id)
            if done < 3:
                assert instance.status == InstanceStatus.RUNNING
                assert len(instance.positions) == 3 - done
            else:
                assert instance.status == InstanceStatus.COMPLETED

    async def test_parallel_gateway_with_guards(self, engine, build_process):
        """测试并行网关只创建守卫为真的分支"""
        definition = build_process("partial", [
            {
                "id": "split",
                "kind": "gateway",
                "config": {"mode": "parallel"},
                "edges": [
                    {"to": "legal", "guard": "needs_legal"},
                    {"to": "finance", "guard": "amount > 1000"}
                ]
            },
            {"id": "legal", "kind": "task", "config": {"role": "legal"}, "edges": [{"to": "done"}]},
            {"id": "finance", "kind": "task", "config": {"role": "finance"}, "edges": [{"to": "done"}]},
            {"id": "done", "kind": "end"}
        ])
        ref = await engine.publish_definition(definition)
        instance_id = await engine.instantiate(ref, {"needs_legal": True, "amount": 10})

        tasks = await engine.list_tasks(instance_id=instance_id)
        assert [t.step_id for t in tasks] == ["legal"]

    async def test_join_waits_for_every_branch(self, engine, parallel_process):
        """测试汇合网关等待所有分支到达"""
        ref = await engine.publish_definition(parallel_process)
        instance_id = await engine.instantiate(ref)
        tasks = {t.step_id: t for t in await engine.list_tasks(instance_id=instance_id)}

        await engine.complete_task(tasks["legal"].id, "l", {"legal_ok": True})
        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.RUNNING
        assert list(instance.join_arrivals["join"]) == ["legal"]
        assert "join" in instance.join_timers

        await engine.complete_task(tasks["finance"].id, "f", {"finance_ok": True})
        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.variables == {"legal_ok": True, "finance_ok": True}
        assert instance.join_arrivals == {}
        assert await engine.timers.timers.list_pending_for_instance(instance_id) == []

        joined = [e for e in instance.history if e.step_id == "join" and e.action == HistoryAction.EXITED]
        assert len(joined) == 1

    async def test_join_sla_breach_notifies(self, engine, clock, parallel_process):
        """测试汇合网关SLA超时发送通知但不终止实例"""
        ref = await engine.publish_definition(parallel_process)
        instance_id = await engine.instantiate(ref)
        tasks = {t.step_id: t for t in await engine.list_tasks(instance_id=instance_id)}
        await engine.complete_task(tasks["legal"].id, "l", {})

        clock.advance(7201)
        assert await engine.tick() == 1

        breaches = engine.event_bus.history("step.sla_breached")
        assert len(breaches) == 1
        assert breaches[0].payload["arrived"] == ["legal"]

        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.RUNNING
        assert "join" not in instance.join_timers

        await engine.complete_task(tasks["finance"].id, "f", {})
        assert (await engine.get_instance(instance_id)).status == InstanceStatus.COMPLETED


class TestAutomaticSteps:
    """自动步骤测试类"""

    @pytest.fixture
    def automatic_process(self, build_process):
        return build_process("automatic", [
            {
                "id": "call",
                "kind": "automatic",
                "config": {"action": "score", "output_keys": ["score"]},
                "edges": [{"to": "done"}]
            },
            {"id": "done", "kind": "end"}
        ])

    async def test_retries_then_succeeds(self, engine, automatic_process):
        """测试协作方失败后按策略重试"""
        attempts = []

        async def score(step_config, variables):
            attempts.append(step_config["idempotency_key"])
            if len(attempts) < 3:
                raise ConnectionError("upstream unavailable")
            return {"score": 42}

        engine.register_collaborator("score", score)
        ref = await engine.publish_definition(automatic_process)
        instance = await engine.get_instance(await engine.instantiate(ref))

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.variables == {"score": 42}
        assert len(attempts) == 3
        # 同一次步骤进入的重试使用同一个幂等键
        assert len(set(attempts)) == 1
        assert actions(instance, "call").count(HistoryAction.RETRIED) == 2
        assert engine.metrics.total(AUTOMATIC_RETRIES) == 2
        assert engine.metrics.snapshot()["histograms"][AUTOMATIC_CALL_SECONDS]["action=score"]["count"] == 3

    async def test_retry_exhaustion_fails_instance(self, engine, automatic_process):
        """测试重试耗尽后实例失败"""
        def score(step_config, variables):
            raise RuntimeError("boom")

        engine.register_collaborator("score", score)
        ref = await engine.publish_definition(automatic_process)
        instance = await engine.get_instance(await engine.instantiate(ref))

        assert instance.status == InstanceStatus.FAILED
        assert instance.error.type == "CollaboratorError"
        assert instance.error.step_id == "call"
        assert instance.error.attempts == 3

    async def test_unknown_collaborator_fails_instance(self, engine, automatic_process):
        """测试未注册的协作方导致实例失败"""
        ref = await engine.publish_definition(automatic_process)
        instance = await engine.get_instance(await engine.instantiate(ref))

        assert instance.status == InstanceStatus.FAILED
        assert instance.error.type == "StepConfigError"

    async def test_sync_collaborator_receives_variables(self, engine, automatic_process):
        """测试同步协作方收到变量副本"""
        seen = {}

        def score(step_config, variables):
            seen.update(variables)
            variables["mutated"] = True
            return {"score": len(variables)}

        engine.register_collaborator("score", score)
        ref = await engine.publish_definition(automatic_process)
        instance = await engine.get_instance(await engine.instantiate(ref, {"a": 1}))

        assert seen == {"a": 1}
        assert instance.variables == {"a": 1, "score": 2}

    async def test_step_budget_stops_runaway_loop(self, settings, clock, build_process):
        """测试自动步骤死循环超过步数预算后实例失败"""
        settings.step_budget = 20
        engine = ProcessEngine(settings=settings, clock=clock)
        await engine.start(run_timers=False)
        try:
            engine.register_collaborator("noop", lambda config, variables: None)
            definition = build_process("loop", [
                {"id": "work", "kind": "automatic", "config": {"action": "noop"}, "edges": [{"to": "check"}]},
                {
                    "id": "check",
                    "kind": "gateway",
                    "edges": [{"to": "work", "guard": "True"}, {"to": "done", "default": True}]
                },
                {"id": "done", "kind": "end"}
            ])
            ref = await engine.publish_definition(definition)
            instance = await engine.get_instance(await engine.instantiate(ref))

            assert instance.status == InstanceStatus.FAILED
            assert instance.error.type == "StepConfigError"
            assert "budget" in instance.error.message
        finally:
            await engine.stop()


class TestAdministrativeActions:
    """管理操作测试类"""

    async def test_cancel_immediately_after_instantiate(self, engine, approval_process):
        """测试实例化后立即取消"""
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref)

        instance = await engine.cancel_instance(instance_id, "withdrawn")

        assert instance.status == InstanceStatus.CANCELLED
        assert instance.positions == []
        tasks = await engine.list_tasks(instance_id=instance_id)
        assert [t.status for t in tasks] == [TaskStatus.CANCELLED]
        assert await engine.list_tasks(role="reviewer") == []

        cancelled = engine.event_bus.history("instance.cancelled")
        assert [n.payload["instance_id"] for n in cancelled] == [instance_id]

    async def test_cancel_cancels_timers_and_stops_processing(self, engine, clock, escalation_process):
        """测试取消后定时器不再触发、后续事件不再处理"""
        calls = []
        engine.register_collaborator("escalate", lambda config, variables: calls.append(1) or {})
        ref = await engine.publish_definition(escalation_process)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        await engine.cancel_instance(instance_id)
        clock.advance(7200)
        assert await engine.tick() == 0
        assert calls == []

        with pytest.raises(AlreadyTerminalError):
            await engine.complete_task(task.id, "alice", {})
        with pytest.raises(AlreadyTerminalError):
            await engine.cancel_instance(instance_id)
        with pytest.raises(AlreadyTerminalError):
            await engine.suspend_instance(instance_id)

    async def test_suspend_defers_until_resume(self, engine, approval_process):
        """测试暂停期间的任务完成在恢复后按序处理"""
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        suspended = await engine.suspend_instance(instance_id, "incident")
        assert suspended.status == InstanceStatus.SUSPENDED

        result = await engine.complete_task(task.id, "carol", {"decision": "approve"})
        assert result == {"decision": "approve"}
        # 重复提交不会重复推迟，返回首次提交的结果
        again = await engine.complete_task(task.id, "dave", {"decision": "reject"})
        assert again == {"decision": "approve"}

        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.SUSPENDED
        assert len(instance.deferred) == 1
        assert (await engine.get_task(task.id)).status == TaskStatus.OPEN

        resumed = await engine.resume_instance(instance_id)
        assert resumed.status == InstanceStatus.COMPLETED
        assert resumed.deferred == []
        completed = await engine.get_task(task.id)
        assert completed.status == TaskStatus.COMPLETED
        assert completed.completed_by == "carol"
        assert completed.result == {"decision": "approve"}
        assert [n.topic for n in engine.event_bus.history("instance.*")] == [
            "instance.started", "instance.suspended", "instance.resumed", "instance.completed"
        ]

    async def test_suspend_twice_is_noop(self, engine, approval_process):
        """测试重复暂停不产生变化"""
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref)

        first = await engine.suspend_instance(instance_id)
        second = await engine.suspend_instance(instance_id)
        assert second.version == first.version

    async def test_force_advance_to_target(self, engine, approval_process):
        """测试强制推进到指定步骤"""
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        instance = await engine.force_advance(instance_id, "review", target="rejected")

        assert instance.status == InstanceStatus.COMPLETED
        assert HistoryAction.ENTERED in actions(instance, "rejected")
        assert (await engine.get_task(task.id)).status == TaskStatus.CANCELLED

    async def test_force_advance_along_expired_edges(self, engine, escalation_process):
        """测试按 expired 出边强制推进"""
        engine.register_collaborator("escalate", lambda config, variables: {"escalated_to": "ops"})
        ref = await engine.publish_definition(escalation_process)
        instance_id = await engine.instantiate(ref)

        instance = await engine.force_advance(instance_id, "review", outcome="expired")

        assert instance.status == InstanceStatus.COMPLETED
        assert instance.variables == {"escalated_to": "ops"}
        assert await engine.timers.timers.list_pending_for_instance(instance_id) == []

    async def test_force_advance_unknown_step(self, engine, approval_process):
        """测试强制推进未等待的步骤"""
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref)

        with pytest.raises(NotFoundError):
            await engine.force_advance(instance_id, "approved")
        with pytest.raises(NotFoundError):
            await engine.force_advance(instance_id, "review", target="missing")

    async def test_operations_on_unknown_instance(self, engine):
        """测试操作不存在的实例"""
        with pytest.raises(NotFoundError):
            await engine.cancel_instance("missing")
        with pytest.raises(NotFoundError):
            await engine.get_instance("missing")


class TestInstantiation:
    """实例化测试类"""

    async def test_idempotency_key_returns_same_instance(self, engine, approval_process):
        """测试同一幂等键只创建一个实例"""
        ref = await engine.publish_definition(approval_process)

        first = await engine.instantiate(ref, {"n": 1}, idempotency_key="request-1")
        second = await engine.instantiate(ref, {"n": 2}, idempotency_key="request-1")
        other = await engine.instantiate(ref, {"n": 3}, idempotency_key="request-2")

        assert first == second
        assert other != first
        assert len(await engine.list_instances(definition="approval")) == 2
        assert len(await engine.ledger.list_open(role="reviewer")) == 2

    async def test_running_instances_keep_their_version(self, engine, approval_process):
        """测试发布新版本不影响运行中的实例"""
        v1 = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate("approval")

        approval_process["process"]["steps"][0]["config"]["role"] = "auditor"
        v2 = await engine.publish_definition(approval_process)
        assert (v1.version, v2.version) == (1, 2)

        instance = await engine.get_instance(instance_id)
        assert instance.definition == v1
        newer = await engine.get_instance(await engine.instantiate("approval"))
        assert newer.definition == v2

    async def test_inactive_definition_is_rejected(self, engine, approval_process):
        """测试停用的定义不能实例化"""
        ref = await engine.publish_definition(approval_process)
        await engine.deactivate_definition(ref.name, ref.version)

        with pytest.raises(NotFoundError):
            await engine.instantiate(ref)
        with pytest.raises(NotFoundError):
            await engine.instantiate("approval")

    async def test_process_sla_breach(self, engine, clock, approval_process):
        """测试流程级SLA超时通知"""
        approval_process["process"]["sla_seconds"] = 3600
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref)

        clock.advance(3601)
        assert await engine.tick() == 1

        breaches = engine.event_bus.history("instance.sla_breached")
        assert [n.payload["instance_id"] for n in breaches] == [instance_id]
        instance = await engine.get_instance(instance_id)
        assert instance.status == InstanceStatus.RUNNING
        assert instance.sla_timer_id is None

    async def test_terminal_notification_and_metrics(self, engine, approval_process):
        """测试终止通知与计数器"""
        received = []
        await engine.subscribe("instance.completed", received.append)
        ref = await engine.publish_definition(approval_process)
        instance_id = await engine.instantiate(ref)
        task = (await engine.list_tasks(instance_id=instance_id))[0]

        await engine.complete_task(task.id, "carol", {"decision": "approve"})

        assert len(received) == 1
        assert received[0].payload["status"] == "completed"
        assert received[0].payload["final_variables"] == {"decision": "approve"}
        assert engine.metrics.get_counter(INSTANCES_COMPLETED, {"definition": "approval"}) == 1

    async def test_stats(self, engine, approval_process):
        """测试统计信息"""
        ref = await engine.publish_definition(approval_process)
        await engine.instantiate(ref)
        cancelled = await engine.instantiate(ref)
        await engine.cancel_instance(cancelled)

        stats = await engine.stats()
        assert stats["instances"]["running"] == 1
        assert stats["instances"]["cancelled"] == 1
        assert stats["open_tasks"] == 1
        assert stats["dispatcher"]["alive"] is True
