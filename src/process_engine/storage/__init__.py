"""Storage and repository interfaces"""

from .repository import (
    DefinitionRepository,
    InstanceRepository,
    TaskRepository,
    TimerRepository,
    InMemoryDefinitionRepository,
    InMemoryInstanceRepository,
    InMemoryTaskRepository,
    InMemoryTimerRepository
)

__all__ = [
    "DefinitionRepository",
    "InstanceRepository",
    "TaskRepository",
    "TimerRepository",
    "InMemoryDefinitionRepository",
    "InMemoryInstanceRepository",
    "InMemoryTaskRepository",
    "InMemoryTimerRepository"
]
