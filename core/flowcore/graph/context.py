"""
Per-event mutation context and the side effects it collects.

The StepAdvancer never performs I/O. While an event is applied, every
side effect (handler dispatch, timer arming, notification) is appended
to the context; the engine runs them after the instance has been saved
and its lock released. Replaying the event log therefore reproduces the
snapshot without re-running anything.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from flowcore.config import EngineConfig
from flowcore.graph.node import NodeKind
from flowcore.runtime.event_bus import EventType
from flowcore.schemas.execution import ExecutionInstance, ScheduledTimer, TimerKind

if TYPE_CHECKING:
    from flowcore.graph.validator import CompiledGraph


@dataclass
class DispatchStep:
    """Run a Task or AIAgent handler for one attempt of a step."""

    node_id: str
    kind: NodeKind
    handler_key: str
    activation_id: str
    attempt: int
    input: dict[str, Any]
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScheduleTimer:
    timer: ScheduledTimer


@dataclass
class CancelTimer:
    timer_id: str


@dataclass
class Notify:
    event_type: EventType
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


Effect = DispatchStep | ScheduleTimer | CancelTimer | Notify


@dataclass
class AdvanceContext:
    """Everything one event application may read or mutate."""

    graph: "CompiledGraph"
    instance: ExecutionInstance
    now: datetime
    config: EngineConfig
    effects: list[Effect] = field(default_factory=list)

    @property
    def timestamp(self) -> str:
        return self.now.isoformat()

    def next_id(self, prefix: str) -> str:
        """Deterministic per-instance id, stable across event-log replay."""
        self.instance.id_sequence += 1
        return f"{prefix}-{self.instance.id_sequence}"

    def schedule_timer(
        self,
        kind: TimerKind,
        fire_at: datetime,
        node_id: str | None = None,
        activation_id: str | None = None,
        attempt: int = 0,
    ) -> ScheduledTimer:
        timer = ScheduledTimer(
            id=self.next_id(f"timer-{kind.value}"),
            kind=kind,
            fire_at=fire_at.isoformat(),
            node_id=node_id,
            activation_id=activation_id,
            attempt=attempt,
        )
        self.instance.timers[timer.id] = timer
        self.effects.append(ScheduleTimer(timer))
        return timer

    def cancel_timer(self, timer_id: str) -> None:
        if self.instance.timers.pop(timer_id, None) is not None:
            self.effects.append(CancelTimer(timer_id))

    def cancel_step_timers(self, node_id: str, activation_id: str | None = None) -> None:
        for timer in list(self.instance.timers.values()):
            if timer.node_id != node_id:
                continue
            if activation_id is not None and timer.activation_id != activation_id:
                continue
            self.cancel_timer(timer.id)

    def cancel_all_timers(self) -> None:
        for timer_id in list(self.instance.timers):
            self.cancel_timer(timer_id)

    def notify(self, event_type: EventType, /, node_id: str | None = None, **data: Any) -> None:
        self.effects.append(Notify(event_type=event_type, node_id=node_id, data=data))

    def dispatch(self, dispatch: DispatchStep) -> None:
        self.effects.append(dispatch)
