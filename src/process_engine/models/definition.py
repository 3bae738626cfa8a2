"""
流程定义模型
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from enum import Enum
from datetime import datetime

from .clock import utcnow


class StepKind(Enum):
    """步骤类型"""
    TASK = "task"
    TIMER = "timer"
    GATEWAY = "gateway"
    AUTOMATIC = "automatic"
    EVENT = "event"
    END = "end"


class GatewayMode(Enum):
    """网关模式"""
    EXCLUSIVE = "exclusive"
    PARALLEL = "parallel"
    JOIN = "join"


class Outcome(Enum):
    """步骤结束方式，用于出边选择"""
    COMPLETED = "completed"
    EXPIRED = "expired"


class TriggerType(Enum):
    """触发方式"""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT = "event"


# 可以过期（走 expired 出边）的步骤类型
EXPIRABLE_KINDS = (StepKind.TASK, StepKind.EVENT)


@dataclass(frozen=True)
class Edge:
    """流程出边"""
    target: str
    guard: Optional[str] = None
    default: bool = False
    on: Outcome = Outcome.COMPLETED


@dataclass(frozen=True)
class StepSpec:
    """步骤定义"""
    id: str
    kind: StepKind
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)

    @property
    def gateway_mode(self) -> GatewayMode:
        return GatewayMode(self.config.get("mode", GatewayMode.EXCLUSIVE.value))

    def edges_for(self, outcome: Outcome) -> List[Edge]:
        """按结束方式过滤出边"""
        return [edge for edge in self.edges if edge.on == outcome]


@dataclass(frozen=True)
class TriggerSpec:
    """触发器定义"""
    type: TriggerType = TriggerType.MANUAL
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DefinitionRef:
    """流程定义引用（名称 + 版本）"""
    name: str
    version: int

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"

    @classmethod
    def parse(cls, value: str) -> "DefinitionRef":
        name, _, version = value.rpartition("@")
        if not name or not version.isdigit():
            raise ValueError(f"Invalid definition reference: {value}")
        return cls(name=name, version=int(version))


@dataclass(frozen=True)
class ProcessDefinition:
    """流程定义（发布后不可变）"""
    name: str
    steps: List[StepSpec]
    start_step: str = ""
    version: int = 0
    description: Optional[str] = None
    category: Optional[str] = None
    trigger: TriggerSpec = field(default_factory=TriggerSpec)
    active: bool = True
    sla_seconds: Optional[float] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> DefinitionRef:
        return DefinitionRef(self.name, self.version)

    @property
    def start(self) -> str:
        """起始步骤ID，未指定时取第一个步骤"""
        if self.start_step:
            return self.start_step
        return self.steps[0].id if self.steps else ""

    def get_step(self, step_id: str) -> Optional[StepSpec]:
        """根据ID获取步骤"""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def incoming_sources(self, step_id: str) -> List[str]:
        """获取指向某步骤的所有源步骤ID"""
        sources = []
        for step in self.steps:
            for edge in step.edges:
                if edge.target == step_id and step.id not in sources:
                    sources.append(step.id)
        return sources
