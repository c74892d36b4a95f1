"""
Ingress events - everything that can change an ExecutionInstance.

All events reach the engine through ``submit_event`` and are applied one
at a time per instance. They are pydantic models discriminated on
``type`` so the durable event log can be replayed with the same parser.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from flowcore.schemas.ai_task import Usage
from flowcore.schemas.approval import Decision
from flowcore.schemas.execution import TimerKind


class StepCompleted(BaseModel):
    """A Task or AIAgent step finished. ``activation_id``/``attempt`` are set by engine dispatch."""

    type: Literal["step_completed"] = "step_completed"
    node_id: str
    output: Any = None
    usage: Usage | None = None
    activation_id: str | None = None
    attempt: int | None = None


class StepFailed(BaseModel):
    type: Literal["step_failed"] = "step_failed"
    node_id: str
    error: str
    retryable: bool = True
    activation_id: str | None = None
    attempt: int | None = None


class ApprovalDecided(BaseModel):
    type: Literal["approval_decided"] = "approval_decided"
    node_id: str
    approver_id: str
    decision: Decision
    comment: str = ""
    request_id: str | None = None


class Cancel(BaseModel):
    type: Literal["cancel"] = "cancel"
    reason: str = ""


class TimerFired(BaseModel):
    type: Literal["timer_fired"] = "timer_fired"
    timer_id: str
    kind: TimerKind
    node_id: str | None = None


class Pause(BaseModel):
    type: Literal["pause"] = "pause"
    reason: str = ""


class Resume(BaseModel):
    type: Literal["resume"] = "resume"


Event = Annotated[
    StepCompleted | StepFailed | ApprovalDecided | Cancel | TimerFired | Pause | Resume,
    Field(discriminator="type"),
]

event_adapter: TypeAdapter[Event] = TypeAdapter(Event)


def parse_event(data: dict[str, Any]) -> Event:
    """Parse a serialized event (e.g. one event-log line)."""
    return event_adapter.validate_python(data)


class EventLogRecord(BaseModel):
    """One line of an execution's durable event log.

    ``kind`` is "start" for the record that created the instance and
    "event" for every accepted ingress event afterwards.
    """

    seq: int
    kind: Literal["start", "event"]
    received_at: str
    event: dict[str, Any] | None = None
    start: dict[str, Any] | None = None
