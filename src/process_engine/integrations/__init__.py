"""External system integrations"""

# Event Bus
from .event_bus import EventBus, Notification

# Collaborators
from .collaborators import CollaboratorRegistry, CollaboratorDefinition

__all__ = [
    # Event Bus
    "EventBus",
    "Notification",

    # Collaborators
    "CollaboratorRegistry",
    "CollaboratorDefinition"
]
