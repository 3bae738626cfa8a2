"""Process definition, instance and task models"""

from .clock import Clock, utcnow
from .definition import (
    ProcessDefinition, StepSpec, Edge, StepKind, GatewayMode, Outcome,
    TriggerType, TriggerSpec, DefinitionRef
)
from .instance import (
    ProcessInstance, InstanceStatus, ActivePosition, HistoryEntry,
    HistoryAction, InstanceError
)
from .task import (
    Task, TaskStatus, TimerSubscription, TimerDisposition, TimerPurpose,
    ExternalEvent
)
from .events import StepEvent, StepEventType

__all__ = [
    "Clock",
    "utcnow",
    "ProcessDefinition",
    "StepSpec",
    "Edge",
    "StepKind",
    "GatewayMode",
    "Outcome",
    "TriggerType",
    "TriggerSpec",
    "DefinitionRef",
    "ProcessInstance",
    "InstanceStatus",
    "ActivePosition",
    "HistoryEntry",
    "HistoryAction",
    "InstanceError",
    "Task",
    "TaskStatus",
    "TimerSubscription",
    "TimerDisposition",
    "TimerPurpose",
    "ExternalEvent",
    "StepEvent",
    "StepEventType"
]
