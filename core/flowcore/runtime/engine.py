"""
Workflow Engine - Registration, execution and event ingestion.

The engine is the only entry point embedding applications talk to:

- register() validates and compiles a GraphSpec once
- start() creates an ExecutionInstance and activates its Start node
- submit_event() is the single ingestion point for step completions,
  failures, approval decisions, timers and cancellation

Events for one execution are applied strictly one at a time under a
per-execution lock; different executions never share a lock. Each
accepted event is appended to the durable event log, the new snapshot is
saved, and only then are the collected side effects run (handler
dispatch, timers, notifications), outside the lock.
"""

import asyncio
import logging
import weakref
from collections import Counter
from datetime import datetime
from typing import Any

import jsonschema

from flowcore.config import EngineConfig
from flowcore.errors import (
    ApprovalError,
    ApprovalErrorReason,
    ExecutionNotFoundError,
    FlowCoreError,
    InvalidStateError,
    StaleEventError,
    ValidationError,
    WorkflowNotFoundError,
)
from flowcore.graph.advancer import StepAdvancer
from flowcore.graph.context import CancelTimer, DispatchStep, Effect, Notify, ScheduleTimer
from flowcore.graph.edge import GraphSpec
from flowcore.graph.validator import CompiledGraph, GraphValidator
from flowcore.observability import set_trace_context
from flowcore.runner.handler_registry import (
    HandlerRegistry,
    TaskContext,
    TaskHandler,
    run_handler,
)
from flowcore.runtime.event_bus import EventBus, EventType, WorkflowEvent
from flowcore.runtime.timers import AsyncioTimerService, TimerService
from flowcore.schemas.approval import Decision
from flowcore.schemas.events import (
    ApprovalDecided,
    Cancel,
    Event,
    EventLogRecord,
    Pause,
    Resume,
    TimerFired,
    parse_event,
)
from flowcore.schemas.execution import (
    ExecutionInstance,
    ExecutionSnapshot,
    ExecutionStatus,
    ScheduledTimer,
    build_snapshot,
)
from flowcore.storage.execution_store import (
    ExecutionStore,
    InMemoryExecutionStore,
    generate_execution_id,
)

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """
    Runs workflow executions against registered graph definitions.

    Example:
        engine = WorkflowEngine()
        engine.register_task_handler("send_invoice", send_invoice)
        await engine.register(graph)
        execution_id = await engine.start("purchase-approval", {"amount": 15000})
        await engine.decide(request_id, "manager-1", "approved")
        snapshot = await engine.wait_for(execution_id)
    """

    def __init__(
        self,
        store: ExecutionStore | None = None,
        registry: HandlerRegistry | None = None,
        timers: TimerService | None = None,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
    ):
        self.config = config or EngineConfig()
        self.store = store or InMemoryExecutionStore()
        self.registry = registry or HandlerRegistry()
        self.timers = timers or AsyncioTimerService()
        self.event_bus = event_bus or EventBus(
            max_concurrent_handlers=self.config.max_concurrent_handlers
        )
        self.validator = GraphValidator()
        self.advancer = StepAdvancer(self.config)

        self._graphs: dict[tuple[str, int], CompiledGraph] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._completion_events: dict[str, asyncio.Event] = {}
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_handlers)
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def register_task_handler(self, task_type: str, handler: TaskHandler | Any) -> None:
        self.registry.register_task(task_type, handler)

    def register_model_handler(self, model: str, handler: TaskHandler | Any) -> None:
        self.registry.register_model(model, handler)

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def register(self, definition: GraphSpec | dict[str, Any]) -> str:
        """
        Validate, compile and store a workflow definition.

        Definitions are immutable once registered: registering a
        different definition under an existing id and version is
        rejected, re-registering an identical one is a no-op.

        Raises:
            ValidationError: listing every violation found
        """
        compiled = self.validator.compile(definition)
        graph = compiled.spec
        existing = await self.store.load_workflow(graph.id, graph.version)
        if existing is not None and existing != graph:
            raise ValidationError(
                [
                    f"workflow '{graph.id}' version {graph.version} is already registered; "
                    "publish changes as a new version"
                ]
            )
        await self.store.save_workflow(graph)
        self._graphs[(graph.id, graph.version)] = compiled
        logger.info(
            f"Registered workflow '{graph.id}' v{graph.version} "
            f"({len(graph.nodes)} nodes, {len(graph.edges)} edges)",
            extra={"event": "workflow_registered", "workflow_id": graph.id},
        )
        return graph.id

    async def get_workflow(self, workflow_id: str, version: int | None = None) -> GraphSpec:
        return (await self._compiled(workflow_id, version)).spec

    async def _compiled(self, workflow_id: str, version: int | None = None) -> CompiledGraph:
        if version is None:
            versions = await self.store.list_workflow_versions(workflow_id)
            if not versions:
                raise WorkflowNotFoundError(workflow_id)
            version = max(versions)
        compiled = self._graphs.get((workflow_id, version))
        if compiled is None:
            graph = await self.store.load_workflow(workflow_id, version)
            if graph is None:
                raise WorkflowNotFoundError(workflow_id, version)
            compiled = self.validator.compile(graph)
            self._graphs[(workflow_id, version)] = compiled
        return compiled

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def start(
        self,
        workflow_id: str,
        variables: dict[str, Any] | None = None,
        priority: int = 0,
        version: int | None = None,
    ) -> str:
        """
        Start a new execution of a registered workflow.

        Args:
            workflow_id: Registered workflow id
            variables: Initial variables, checked against the variable schema
            priority: Informational priority recorded on the instance
            version: Workflow version (latest when omitted)

        Returns:
            The new execution id

        Raises:
            WorkflowNotFoundError: workflow/version not registered
            ValidationError: variables violate the declared schema
        """
        compiled = await self._compiled(workflow_id, version)
        resolved = self.resolve_variables(compiled.spec, variables or {})
        return await self._start(compiled, resolved, priority)

    async def _start(
        self,
        compiled: CompiledGraph,
        variables: dict[str, Any],
        priority: int,
        retry_of: str | None = None,
    ) -> str:
        now = self.timers.now()
        instance = ExecutionInstance(
            id=generate_execution_id(),
            workflow_id=compiled.workflow_id,
            workflow_version=compiled.version,
            priority=priority,
            variables=dict(variables),
            retry_of=retry_of,
            created_at=now.isoformat(),
        )
        set_trace_context(execution_id=instance.id, workflow_id=instance.workflow_id)

        async with self._lock_for(instance.id):
            record = EventLogRecord(
                seq=0,
                kind="start",
                received_at=now.isoformat(),
                start={
                    "workflow_id": instance.workflow_id,
                    "workflow_version": instance.workflow_version,
                    "variables": instance.variables,
                    "priority": priority,
                    "retry_of": retry_of,
                    "created_at": instance.created_at,
                },
            )
            await self.store.append_event(instance.id, record)
            result = self.advancer.start(compiled, instance, now)
            await self.store.save(instance)

        await self._after_commit(instance, result.effects)
        return instance.id

    @staticmethod
    def resolve_variables(graph: GraphSpec, variables: dict[str, Any]) -> dict[str, Any]:
        """Apply defaults and check initial variables against the variable schema."""
        resolved = dict(variables)
        for name, spec in graph.variable_schema.items():
            if name not in resolved and spec.default is not None:
                resolved[name] = spec.default

        errors = []
        validator = jsonschema.Draft7Validator(graph.variables_json_schema())
        for error in validator.iter_errors(resolved):
            path = ".".join(str(p) for p in error.path) if error.path else "root"
            errors.append(f"{path}: {error.message}")
        if errors:
            raise ValidationError(errors, "Invalid workflow variables")
        return resolved

    async def submit_event(
        self, execution_id: str, event: Event | dict[str, Any]
    ) -> ExecutionSnapshot:
        """
        Apply one ingress event to an execution.

        Stale events are logged, published as ``event_discarded`` and
        otherwise ignored; the current snapshot is returned unchanged.

        Raises:
            ExecutionNotFoundError: unknown execution id
            ApprovalError: an approval decision was refused
            InvalidStateError: pause/resume not allowed in the current status
        """
        if isinstance(event, dict):
            event = parse_event(event)

        async with self._lock_for(execution_id):
            instance = await self._load(execution_id)
            set_trace_context(execution_id=instance.id, workflow_id=instance.workflow_id)
            compiled = await self._compiled(instance.workflow_id, instance.workflow_version)
            now = self.timers.now()

            try:
                result = self.advancer.advance(compiled, instance, event, now)
            except StaleEventError as e:
                logger.info(
                    f"Discarded {event.type} for execution '{execution_id}': {e.reason}",
                    extra={"event": "event_discarded", "node_id": e.node_id},
                )
                current = await self._load(execution_id)
                effects: list[Effect] = [
                    Notify(
                        event_type=EventType.EVENT_DISCARDED,
                        node_id=e.node_id,
                        data={"event_type": event.type, "reason": e.reason},
                    )
                ]
            else:
                if result.changed:
                    instance.log_seq += 1
                    await self.store.append_event(
                        execution_id,
                        EventLogRecord(
                            seq=instance.log_seq,
                            kind="event",
                            received_at=now.isoformat(),
                            event=event.model_dump(mode="json"),
                        ),
                    )
                    await self.store.save(instance)
                current = instance
                effects = result.effects

        await self._after_commit(current, effects)
        return build_snapshot(current, self.timers.now())

    async def get_snapshot(self, execution_id: str) -> ExecutionSnapshot:
        instance = await self._load(execution_id)
        return build_snapshot(instance, self.timers.now())

    async def decide(
        self,
        request_id: str,
        approver_id: str,
        decision: Decision | str,
        comment: str = "",
    ) -> ExecutionSnapshot:
        """Record an approval decision by request id.

        The caller is trusted to have authenticated ``approver_id``.
        """
        execution_id = request_id.rsplit(".", 1)[0]
        instance = await self.store.load(execution_id)
        request = None
        if instance is not None:
            request = next((r for r in instance.approvals.values() if r.id == request_id), None)
        if request is None:
            raise ApprovalError(
                ApprovalErrorReason.NOT_FOUND, f"Approval request '{request_id}' not found"
            )
        event = ApprovalDecided(
            node_id=request.node_id,
            approver_id=approver_id,
            decision=Decision(decision),
            comment=comment,
            request_id=request_id,
        )
        return await self.submit_event(execution_id, event)

    async def cancel(self, execution_id: str, reason: str = "") -> ExecutionSnapshot:
        return await self.submit_event(execution_id, Cancel(reason=reason))

    async def pause(self, execution_id: str, reason: str = "") -> ExecutionSnapshot:
        return await self.submit_event(execution_id, Pause(reason=reason))

    async def resume(self, execution_id: str) -> ExecutionSnapshot:
        return await self.submit_event(execution_id, Resume())

    async def retry(self, execution_id: str) -> str:
        """Start a fresh execution of a failed one, with its initial variables."""
        instance = await self._load(execution_id)
        if instance.status != ExecutionStatus.FAILED:
            raise InvalidStateError(
                f"Only failed executions can be retried; '{execution_id}' is {instance.status}"
            )
        compiled = await self._compiled(instance.workflow_id, instance.workflow_version)
        records = await self.store.read_events(execution_id)
        start = records[0].start if records and records[0].start else None
        variables = start["variables"] if start else instance.variables
        new_id = await self._start(compiled, variables, instance.priority, retry_of=execution_id)
        logger.info(f"Execution '{execution_id}' retried as '{new_id}'")
        return new_id

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = 100,
    ) -> list[ExecutionSnapshot]:
        now = self.timers.now()
        instances = await self.store.list_executions(status, workflow_id, limit)
        return [build_snapshot(instance, now) for instance in instances]

    async def get_stats(self, workflow_id: str | None = None) -> dict:
        """Execution counts by status, plus the share that completed."""
        instances = await self.store.list_executions(workflow_id=workflow_id, limit=None)
        counts = Counter(str(instance.status) for instance in instances)
        total = len(instances)
        completed = counts[str(ExecutionStatus.COMPLETED)]
        return {
            "total": total,
            "by_status": {str(status): counts[str(status)] for status in ExecutionStatus},
            "success_rate": completed / total if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover(self) -> int:
        """
        Re-arm the persisted timers of every non-terminal execution.

        Timers that came due while the engine was down fire immediately.
        Returns the number of executions recovered.
        """
        recovered = 0
        for status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED):
            for instance in await self.store.list_executions(status=status, limit=None):
                for timer in instance.timers.values():
                    self._arm_timer(instance.id, timer)
                recovered += 1
                logger.info(
                    f"Recovered execution '{instance.id}' ({instance.status}) "
                    f"with {len(instance.timers)} timer(s)",
                    extra={"event": "execution_recovered"},
                )
        return recovered

    async def rebuild_from_log(self, execution_id: str) -> ExecutionSnapshot:
        """
        Recompute an execution's snapshot by replaying its event log.

        No side effects run: handlers are not dispatched, timers are not
        armed and no notifications are published. The rebuilt snapshot
        replaces the stored one.
        """
        async with self._lock_for(execution_id):
            records = await self.store.read_events(execution_id)
            if not records or records[0].kind != "start" or records[0].start is None:
                raise ExecutionNotFoundError(execution_id)

            start = records[0].start
            compiled = await self._compiled(start["workflow_id"], start["workflow_version"])
            instance = ExecutionInstance(
                id=execution_id,
                workflow_id=start["workflow_id"],
                workflow_version=start["workflow_version"],
                priority=start.get("priority", 0),
                variables=dict(start.get("variables") or {}),
                retry_of=start.get("retry_of"),
                created_at=start.get("created_at") or records[0].received_at,
            )
            self.advancer.start(compiled, instance, datetime.fromisoformat(records[0].received_at))
            for record in records[1:]:
                event = parse_event(record.event or {})
                self.advancer.advance(
                    compiled, instance, event, datetime.fromisoformat(record.received_at)
                )
                instance.log_seq = record.seq
            await self.store.save(instance)

        logger.info(
            f"Rebuilt execution '{execution_id}' from {len(records)} log record(s)",
            extra={"event": "execution_rebuilt"},
        )
        return build_snapshot(instance, self.timers.now())

    # ------------------------------------------------------------------
    # Waiting and shutdown
    # ------------------------------------------------------------------

    async def wait_for(
        self, execution_id: str, timeout: float | None = None
    ) -> ExecutionSnapshot | None:
        """
        Wait for an execution to reach a terminal status.

        Returns:
            The terminal snapshot, or None on timeout
        """
        event = self._completion_events.setdefault(execution_id, asyncio.Event())
        snapshot = await self.get_snapshot(execution_id)
        if snapshot.status.is_terminal:
            return snapshot
        try:
            if timeout:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            else:
                await event.wait()
        except TimeoutError:
            return None
        return await self.get_snapshot(execution_id)

    async def drain(self) -> None:
        """Wait until no handler calls are in flight, including ones they trigger."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.timers.shutdown()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Workflow engine shut down")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, execution_id: str) -> asyncio.Lock:
        # Weakly held: the entry lives only while some coroutine holds or awaits the lock
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[execution_id] = lock
        return lock

    async def _load(self, execution_id: str) -> ExecutionInstance:
        instance = await self.store.load(execution_id)
        if instance is None:
            raise ExecutionNotFoundError(execution_id)
        return instance

    async def _after_commit(self, instance: ExecutionInstance, effects: list[Effect]) -> None:
        """Run the side effects of a committed event."""
        for effect in effects:
            if isinstance(effect, ScheduleTimer):
                self._arm_timer(instance.id, effect.timer)
            elif isinstance(effect, CancelTimer):
                self.timers.cancel(self._timer_key(instance.id, effect.timer_id))
            elif isinstance(effect, DispatchStep):
                self._dispatch(instance, effect)
            elif isinstance(effect, Notify):
                await self.event_bus.publish(
                    WorkflowEvent(
                        type=effect.event_type,
                        execution_id=instance.id,
                        workflow_id=instance.workflow_id,
                        node_id=effect.node_id,
                        data=effect.data,
                    )
                )

        if instance.is_terminal:
            event = self._completion_events.pop(instance.id, None)
            if event is not None:
                event.set()

    @staticmethod
    def _timer_key(execution_id: str, timer_id: str) -> str:
        return f"{execution_id}:{timer_id}"

    def _arm_timer(self, execution_id: str, timer: ScheduledTimer) -> None:
        async def fire() -> None:
            event = TimerFired(timer_id=timer.id, kind=timer.kind, node_id=timer.node_id)
            try:
                await self.submit_event(execution_id, event)
            except FlowCoreError as e:
                logger.warning(f"Timer {timer.id} for execution '{execution_id}' failed: {e}")

        self.timers.schedule(
            self._timer_key(execution_id, timer.id),
            datetime.fromisoformat(timer.fire_at),
            fire,
        )

    def _dispatch(self, instance: ExecutionInstance, dispatch: DispatchStep) -> None:
        handler = self.registry.get(dispatch.kind, dispatch.handler_key)
        if handler is None:
            logger.info(
                f"No handler registered for {dispatch.kind} '{dispatch.handler_key}', "
                f"step '{dispatch.node_id}' waits for an external completion event",
                extra={"node_id": dispatch.node_id},
            )
            return
        context = TaskContext(
            execution_id=instance.id,
            workflow_id=instance.workflow_id,
            node_id=dispatch.node_id,
            kind=dispatch.kind,
            activation_id=dispatch.activation_id,
            attempt=dispatch.attempt,
            variables=dict(instance.variables),
            parameters=dict(dispatch.parameters),
        )
        task = asyncio.create_task(self._run_dispatch(handler, dispatch, context))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Handler task failed: {task.exception()!r}")

    async def _run_dispatch(
        self, handler: TaskHandler, dispatch: DispatchStep, context: TaskContext
    ) -> None:
        async with self._semaphore:
            set_trace_context(
                execution_id=context.execution_id,
                workflow_id=context.workflow_id,
                node_id=context.node_id,
            )
            outcome = await run_handler(handler, dispatch, context)
        try:
            await self.submit_event(context.execution_id, outcome)
        except FlowCoreError as e:
            logger.warning(
                f"Result of step '{dispatch.node_id}' could not be applied: {e}",
                extra={"node_id": dispatch.node_id},
            )
