"""
任务、定时器与外部事件模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from enum import Enum
from datetime import datetime
from uuid import uuid4

from .clock import utcnow


class TaskStatus(Enum):
    """任务状态"""
    OPEN = "open"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TimerDisposition(Enum):
    """定时器状态"""
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


class TimerPurpose(Enum):
    """定时器用途"""
    STEP = "step"                  # Timer 步骤
    TASK_DUE = "task_due"          # 任务到期
    EVENT_TIMEOUT = "event_timeout"  # 等待事件超时
    STEP_SLA = "step_sla"          # 步骤SLA（join 网关）
    PROCESS_SLA = "process_sla"    # 流程级SLA


# 流程级SLA定时器使用的伪步骤ID
PROCESS_SLA_STEP = "__process__"


@dataclass
class Task:
    """人工/外部任务"""
    instance_id: str
    step_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    position_id: Optional[str] = None
    title: str = ""
    assignee: Optional[str] = None
    role: Optional[str] = None
    due_at: Optional[datetime] = None
    status: TaskStatus = TaskStatus.OPEN
    result: Optional[Dict[str, Any]] = None
    completed_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def is_open(self) -> bool:
        return self.status == TaskStatus.OPEN

    def complete(self, actor: str, result: Dict[str, Any], at: datetime = None):
        """完成任务"""
        self.status = TaskStatus.COMPLETED
        self.result = result
        self.completed_by = actor
        self.completed_at = at or utcnow()

    def expire(self, at: datetime = None):
        """任务到期"""
        self.status = TaskStatus.EXPIRED
        self.completed_at = at or utcnow()

    def cancel(self, at: datetime = None):
        """取消任务"""
        self.status = TaskStatus.CANCELLED
        self.completed_at = at or utcnow()


@dataclass
class TimerSubscription:
    """定时器订阅"""
    instance_id: str
    step_id: str
    fire_at: datetime
    id: str = field(default_factory=lambda: str(uuid4()))
    position_id: Optional[str] = None
    purpose: TimerPurpose = TimerPurpose.STEP
    disposition: TimerDisposition = TimerDisposition.PENDING
    created_at: datetime = field(default_factory=utcnow)

    def is_pending(self) -> bool:
        return self.disposition == TimerDisposition.PENDING


@dataclass
class ExternalEvent:
    """外部信号事件（瞬态，仅在重放窗口内保留）"""
    name: str
    correlation_key: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    received_at: datetime = field(default_factory=utcnow)
