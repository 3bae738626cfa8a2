"""
Pytest 配置和公共 fixtures
"""
import pytest
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, Any, List

from process_engine.config import EngineSettings
from process_engine.core.engine import ProcessEngine
from process_engine.storage.sqlalchemy_repository import DatabaseManager


class FrozenClock:
    """可手动推进的时钟"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 1, 1, 9, 0, 0))


@pytest.fixture
def settings() -> EngineSettings:
    """测试配置：内存存储，重试不等待"""
    return EngineSettings(
        database_url="",
        lanes=4,
        timer_poll_interval=0.01,
        event_replay_window=300,
        automatic_max_attempts=3,
        automatic_backoff_initial=0,
        automatic_backoff_max=0,
        automatic_call_timeout=5,
    )


@pytest.fixture
async def engine(settings, clock) -> AsyncGenerator[ProcessEngine, None]:
    """创建使用内存存储的流程引擎（不启动后台定时扫描，用 tick 推进）"""
    process_engine = ProcessEngine(settings=settings, clock=clock)
    await process_engine.start(run_timers=False)

    yield process_engine

    await process_engine.stop()


@pytest.fixture
async def test_database(tmp_path) -> AsyncGenerator[DatabaseManager, None]:
    """创建测试数据库（SQLite 文件）"""
    db_manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    await db_manager.initialize()

    yield db_manager

    await db_manager.close()


def process(name: str, steps: List[Dict[str, Any]], **extra: Any) -> Dict[str, Any]:
    """构建流程定义字典"""
    return {"process": {"name": name, "start": steps[0]["id"], "steps": steps, **extra}}


@pytest.fixture
def approval_process() -> Dict[str, Any]:
    """单个审批任务的流程"""
    return process("approval", [
        {
            "id": "review",
            "kind": "task",
            "config": {"title": "Review request", "role": "reviewer"},
            "edges": [
                {"to": "approved", "guard": "decision == 'approve'"},
                {"to": "rejected", "default": True}
            ]
        },
        {"id": "approved", "kind": "end"},
        {"id": "rejected", "kind": "end"}
    ])


@pytest.fixture
def escalation_process() -> Dict[str, Any]:
    """任务一小时后到期，走 expired 出边调用 escalate"""
    return process("escalation", [
        {
            "id": "review",
            "kind": "task",
            "config": {"title": "Review", "assignee": "alice", "due_in": 3600},
            "edges": [
                {"to": "done"},
                {"to": "escalate", "on": "expired"}
            ]
        },
        {
            "id": "escalate",
            "kind": "automatic",
            "config": {"action": "escalate", "output_keys": ["escalated_to"]},
            "edges": [{"to": "done"}]
        },
        {"id": "done", "kind": "end"}
    ])


@pytest.fixture
def parallel_process() -> Dict[str, Any]:
    """并行两个分支后汇合"""
    return process("parallel-review", [
        {
            "id": "split",
            "kind": "gateway",
            "config": {"mode": "parallel"},
            "edges": [{"to": "legal"}, {"to": "finance"}]
        },
        {
            "id": "legal",
            "kind": "task",
            "config": {"role": "legal"},
            "edges": [{"to": "join"}]
        },
        {
            "id": "finance",
            "kind": "task",
            "config": {"role": "finance"},
            "edges": [{"to": "join"}]
        },
        {
            "id": "join",
            "kind": "gateway",
            "config": {"mode": "join", "due_in": 7200},
            "edges": [{"to": "done"}]
        },
        {"id": "done", "kind": "end"}
    ])


@pytest.fixture
def event_process() -> Dict[str, Any]:
    """等待外部签收事件"""
    return process("shipment", [
        {
            "id": "wait-signature",
            "kind": "event",
            "config": {
                "event": "signed",
                "correlation": "order_id",
                "timeout": 600,
                "output_keys": ["signed_by"]
            },
            "edges": [
                {"to": "done"},
                {"to": "lost", "on": "expired"}
            ]
        },
        {"id": "done", "kind": "end"},
        {"id": "lost", "kind": "end"}
    ])


@pytest.fixture
def build_process():
    """返回流程定义构建函数"""
    return process
