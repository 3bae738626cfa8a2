"""Core process engine components"""

from .parser import DefinitionParser
from .definition_store import DefinitionStore, DefinitionValidator
from .task_ledger import TaskLedger
from .timers import TimerEventBus, EventSubscription
from .scheduler import LaneDispatcher
from .state_machine import ExecutionEngine
from .engine import ProcessEngine

__all__ = [
    "DefinitionParser",
    "DefinitionStore",
    "DefinitionValidator",
    "TaskLedger",
    "TimerEventBus",
    "EventSubscription",
    "LaneDispatcher",
    "ExecutionEngine",
    "ProcessEngine"
]
