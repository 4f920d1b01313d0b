# Events Package for TokenFlow Engine
# Engine trace events and model change notifications

from .execution_events import (
    ExecutionEvent,
    TokenStateChangedEvent,
    StepExecutedEvent,
    TokenSpawnedEvent,
    StepFailedEvent,
)

from .event_bus import ExecutionEventBus

from .notification_service import (
    ModelNotificationService,
    ModelObserver,
    NotificationReport,
    UpdateMode,
)

__all__ = [
    # Base event
    "ExecutionEvent",
    # Token events
    "TokenStateChangedEvent",
    "TokenSpawnedEvent",
    # Step events
    "StepExecutedEvent",
    "StepFailedEvent",
    # Event bus
    "ExecutionEventBus",
    # Model notifications
    "ModelNotificationService",
    "ModelObserver",
    "NotificationReport",
    "UpdateMode",
]
