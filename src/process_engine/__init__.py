"""
Compliance Process Engine - 持久化、事件驱动的流程编排引擎
"""

__version__ = "1.0.0"

from .core.engine import ProcessEngine
from .core.parser import DefinitionParser
from .config import EngineSettings
from .models.definition import ProcessDefinition, StepSpec, Edge, DefinitionRef
from .models.instance import ProcessInstance, InstanceStatus
from .models.task import Task, TaskStatus

__all__ = [
    "ProcessEngine",
    "DefinitionParser",
    "EngineSettings",
    "ProcessDefinition",
    "StepSpec",
    "Edge",
    "DefinitionRef",
    "ProcessInstance",
    "InstanceStatus",
    "Task",
    "TaskStatus"
]
