"""
引擎输入事件模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from enum import Enum
from datetime import datetime
from uuid import uuid4

from .clock import utcnow


class StepEventType(Enum):
    """步骤事件类型"""
    INSTANTIATE = "instantiate"
    COMPLETE_TASK = "complete_task"
    TIMER_FIRED = "timer_fired"
    EVENT_RECEIVED = "event_received"
    CANCEL = "cancel"
    SUSPEND = "suspend"
    RESUME = "resume"
    FORCE_ADVANCE = "force_advance"


# 管理类事件，暂停状态下也会被立即处理
ADMINISTRATIVE_EVENTS = (
    StepEventType.CANCEL,
    StepEventType.SUSPEND,
    StepEventType.RESUME,
)


@dataclass
class StepEvent:
    """驱动单个流程实例前进的事件"""
    type: StepEventType
    instance_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    @property
    def dedup_key(self) -> Optional[str]:
        """幂等去重键，重复投递同一键的事件不会产生状态变化"""
        if self.type == StepEventType.COMPLETE_TASK:
            return f"task:{self.payload['task_id']}"
        if self.type == StepEventType.TIMER_FIRED:
            return f"timer:{self.payload['timer_id']}"
        if self.type == StepEventType.EVENT_RECEIVED:
            return f"event:{self.payload['event_id']}:{self.payload['position_id']}"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "instance_id": self.instance_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepEvent":
        return cls(
            id=data["id"],
            type=StepEventType(data["type"]),
            instance_id=data["instance_id"],
            payload=data.get("payload") or {},
            created_at=datetime.fromisoformat(data["created_at"]),
        )
