"""Runtime services: notification bus and timers. The engine lives in flowcore.runtime.engine."""

from flowcore.runtime.event_bus import EventBus, EventType, WorkflowEvent
from flowcore.runtime.timers import AsyncioTimerService, ManualTimerService, TimerService

__all__ = [
    "EventBus",
    "EventType",
    "WorkflowEvent",
    "TimerService",
    "AsyncioTimerService",
    "ManualTimerService",
]
