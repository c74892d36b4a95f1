"""
Event Bus - Fire-and-forget notification dispatcher for workflow transitions.

The engine publishes one event per externally interesting transition
(instance lifecycle, step lifecycle, approvals, parallel joins). Embedding
applications subscribe to route them to email, chat, audit logs, etc.
Subscriber failures are logged and never affect the engine.
"""

import asyncio
import itertools
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of notifications the engine publishes."""

    # Execution lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"

    # Step lifecycle
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_RETRY_SCHEDULED = "step_retry_scheduled"

    # Approvals
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_DECIDED = "approval_decided"
    APPROVAL_ESCALATED = "approval_escalated"
    APPROVAL_EXPIRED = "approval_expired"

    # Control flow
    PARALLEL_RESOLVED = "parallel_resolved"
    EDGE_TRAVERSED = "edge_traversed"

    # Ingestion
    EVENT_DISCARDED = "event_discarded"


@dataclass
class WorkflowEvent:
    """A notification about one engine transition."""

    type: EventType
    execution_id: str
    workflow_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        """JSON-friendly form, e.g. for webhooks or audit logs."""
        payload = asdict(self)
        payload["type"] = str(self.type)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """Handler plus the filters an event must pass to reach it."""

    id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    filter_workflow: str | None = None
    filter_node: str | None = None
    filter_execution: str | None = None

    def matches(self, event: WorkflowEvent) -> bool:
        if event.type not in self.event_types:
            return False
        checks = (
            (self.filter_workflow, event.workflow_id),
            (self.filter_node, event.node_id),
            (self.filter_execution, event.execution_id),
        )
        return all(wanted is None or wanted == actual for wanted, actual in checks)


class EventBus:
    """
    Pub/sub notification bus.

    Handlers run concurrently, at most ``max_concurrent_handlers`` at a
    time. The last ``max_history`` events are kept for inspection.

    Example:
        bus = EventBus()

        async def on_approval(event: WorkflowEvent):
            await mailer.send(event.data["approvers"], event.data["title"])

        bus.subscribe([EventType.APPROVAL_REQUESTED], on_approval)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[WorkflowEvent] = deque(maxlen=max_history)
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._ids = itertools.count(1)

    def subscribe(
        self,
        event_types: Iterable[EventType],
        handler: EventHandler,
        filter_workflow: str | None = None,
        filter_node: str | None = None,
        filter_execution: str | None = None,
    ) -> str:
        """
        Register ``handler`` for the given event types.

        The optional filters restrict delivery to one workflow, node or
        execution. Returns the subscription id for ``unsubscribe``.
        """
        subscription = Subscription(
            id=f"sub_{next(self._ids)}",
            event_types=frozenset(event_types),
            handler=handler,
            filter_workflow=filter_workflow,
            filter_node=filter_node,
            filter_execution=filter_execution,
        )
        self._subscriptions[subscription.id] = subscription
        logger.debug(
            f"{subscription.id} listening for {sorted(subscription.event_types)}"
        )
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        return self._subscriptions.pop(subscription_id, None) is not None

    async def publish(self, event: WorkflowEvent) -> None:
        """Record the event and deliver it to every matching subscriber."""
        self._history.append(event)
        targets = [s for s in self._subscriptions.values() if s.matches(event)]
        if targets:
            await asyncio.gather(*(self._deliver(s, event) for s in targets))

    async def _deliver(self, subscription: Subscription, event: WorkflowEvent) -> None:
        async with self._semaphore:
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(
                    f"Subscriber {subscription.id} failed on {event.type}: {e}",
                    extra={"node_id": event.node_id},
                )

    # --- inspection ---

    def get_history(
        self,
        event_type: EventType | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowEvent]:
        """Recent events, most recent first, optionally filtered."""
        matching = (
            e
            for e in reversed(self._history)
            if (event_type is None or e.type == event_type)
            and (execution_id is None or e.execution_id == execution_id)
        )
        return list(itertools.islice(matching, limit))

    def get_stats(self) -> dict:
        counts = Counter(str(e.type) for e in self._history)
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(counts),
        }

    # --- waiting ---

    async def wait_for(
        self,
        event_type: EventType,
        execution_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> WorkflowEvent | None:
        """Wait for the next matching event. Returns None on timeout."""
        future: asyncio.Future[WorkflowEvent] = asyncio.get_running_loop().create_future()

        async def capture(event: WorkflowEvent) -> None:
            if not future.done():
                future.set_result(event)

        sub_id = self.subscribe(
            [event_type], capture, filter_node=node_id, filter_execution=execution_id
        )
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
