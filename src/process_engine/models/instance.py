"""
流程实例模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime
from uuid import uuid4

from .clock import utcnow
from .definition import DefinitionRef


class InstanceStatus(Enum):
    """流程实例状态"""
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    InstanceStatus.COMPLETED,
    InstanceStatus.FAILED,
    InstanceStatus.CANCELLED,
)


class HistoryAction(Enum):
    """历史记录动作"""
    STARTED = "started"
    ENTERED = "entered"
    EXITED = "exited"
    JOIN_ARRIVED = "join_arrived"
    RETRIED = "retried"
    SLA_BREACHED = "sla_breached"
    DEFERRED = "deferred"
    STATUS_CHANGED = "status_changed"


@dataclass
class ActivePosition:
    """活动位置（并行网关下可有多个）"""
    id: str = field(default_factory=lambda: str(uuid4()))
    step_id: str = ""
    entered_at: datetime = field(default_factory=utcnow)
    task_id: Optional[str] = None
    timer_id: Optional[str] = None
    event_name: Optional[str] = None
    correlation_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "step_id": self.step_id,
            "entered_at": self.entered_at.isoformat(),
            "task_id": self.task_id,
            "timer_id": self.timer_id,
            "event_name": self.event_name,
            "correlation_key": self.correlation_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivePosition":
        return cls(
            id=data["id"],
            step_id=data["step_id"],
            entered_at=datetime.fromisoformat(data["entered_at"]),
            task_id=data.get("task_id"),
            timer_id=data.get("timer_id"),
            event_name=data.get("event_name"),
            correlation_key=data.get("correlation_key"),
        )


@dataclass
class HistoryEntry:
    """历史记录"""
    seq: int
    action: HistoryAction
    step_id: Optional[str] = None
    position_id: Optional[str] = None
    at: datetime = field(default_factory=utcnow)
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "action": self.action.value,
            "step_id": self.step_id,
            "position_id": self.position_id,
            "at": self.at.isoformat(),
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            seq=data["seq"],
            action=HistoryAction(data["action"]),
            step_id=data.get("step_id"),
            position_id=data.get("position_id"),
            at=datetime.fromisoformat(data["at"]),
            detail=data.get("detail") or {},
        )


@dataclass
class InstanceError:
    """实例终止错误"""
    type: str
    message: str
    step_id: Optional[str] = None
    attempts: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "step_id": self.step_id,
            "attempts": self.attempts,
        }

    @classmethod
    def from_exception(cls, error: Exception) -> "InstanceError":
        return cls(
            type=type(error).__name__,
            message=str(error),
            step_id=getattr(error, "step_id", None),
            attempts=getattr(error, "attempts", None),
        )


@dataclass
class ProcessInstance:
    """流程实例"""
    definition: DefinitionRef
    id: str = field(default_factory=lambda: str(uuid4()))
    status: InstanceStatus = InstanceStatus.RUNNING
    variables: Dict[str, Any] = field(default_factory=dict)
    positions: List[ActivePosition] = field(default_factory=list)
    history: List[HistoryEntry] = field(default_factory=list)
    error: Optional[InstanceError] = None
    version: int = 0
    # join 步骤ID -> {源步骤ID: 到达的位置ID}
    join_arrivals: Dict[str, Dict[str, str]] = field(default_factory=dict)
    # join 步骤ID -> SLA定时器ID
    join_timers: Dict[str, str] = field(default_factory=dict)
    applied_keys: List[str] = field(default_factory=list)
    deferred: List[Dict[str, Any]] = field(default_factory=list)
    idempotency_key: Optional[str] = None
    started_by: Optional[str] = None
    sla_timer_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        """是否为终止状态"""
        return self.status in TERMINAL_STATUSES

    def get_position(self, position_id: str) -> Optional[ActivePosition]:
        for position in self.positions:
            if position.id == position_id:
                return position
        return None

    def find_position(self, **attrs: Any) -> Optional[ActivePosition]:
        """按属性查找活动位置"""
        for position in self.positions:
            if all(getattr(position, key) == value for key, value in attrs.items()):
                return position
        return None

    def has_applied(self, key: str) -> bool:
        return key in self.applied_keys

    def mark_applied(self, key: str):
        if key not in self.applied_keys:
            self.applied_keys.append(key)

    def record(
        self,
        action: HistoryAction,
        step_id: str = None,
        position_id: str = None,
        at: datetime = None,
        **detail: Any
    ) -> HistoryEntry:
        """追加历史记录"""
        entry = HistoryEntry(
            seq=len(self.history) + 1,
            action=action,
            step_id=step_id,
            position_id=position_id,
            at=at or utcnow(),
            detail=detail,
        )
        self.history.append(entry)
        return entry

    def to_state(self) -> Dict[str, Any]:
        """当前状态投影（不含历史）"""
        return {
            "id": self.id,
            "definition": str(self.definition),
            "status": self.status.value,
            "variables": self.variables,
            "positions": [p.to_dict() for p in self.positions],
            "error": self.error.to_dict() if self.error else None,
            "version": self.version,
            "join_arrivals": self.join_arrivals,
            "join_timers": self.join_timers,
            "applied_keys": self.applied_keys,
            "deferred": self.deferred,
            "idempotency_key": self.idempotency_key,
            "started_by": self.started_by,
            "sla_timer_id": self.sla_timer_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_state(
        cls,
        state: Dict[str, Any],
        history: List[HistoryEntry] = None
    ) -> "ProcessInstance":
        error = state.get("error")
        completed_at = state.get("completed_at")
        return cls(
            id=state["id"],
            definition=DefinitionRef.parse(state["definition"]),
            status=InstanceStatus(state["status"]),
            variables=state.get("variables") or {},
            positions=[ActivePosition.from_dict(p) for p in state.get("positions", [])],
            history=list(history or []),
            error=InstanceError(**error) if error else None,
            version=state.get("version", 0),
            join_arrivals=state.get("join_arrivals") or {},
            join_timers=state.get("join_timers") or {},
            applied_keys=state.get("applied_keys") or [],
            deferred=state.get("deferred") or [],
            idempotency_key=state.get("idempotency_key"),
            started_by=state.get("started_by"),
            sla_timer_id=state.get("sla_timer_id"),
            started_at=datetime.fromisoformat(state["started_at"]),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
        )
