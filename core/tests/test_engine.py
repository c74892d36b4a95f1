"""
WorkflowEngine end to end: registration, start, handler dispatch, stale
events, pause/resume, cancellation, retries, timeouts and loop guards.
"""

import gc
from datetime import timedelta

import pytest

from flowcore.errors import (
    ExecutionNotFoundError,
    InvalidStateError,
    StepExecutionError,
    ValidationError,
    WorkflowNotFoundError,
)
from flowcore.runner.handler_registry import TaskHandler, TaskResult
from flowcore.runtime.event_bus import EventType
from flowcore.schemas.ai_task import AITaskStatus, Usage
from flowcore.schemas.approval import ApprovalStatus
from flowcore.schemas.events import StepCompleted, StepFailed
from flowcore.schemas.execution import ExecutionStatus, StepStatus


def task_graph(workflow_id: str = "billing", version: int = 1, **task_config) -> dict:
    return {
        "id": workflow_id,
        "version": version,
        "nodes": [
            {"id": "start", "kind": "start"},
            {"id": "charge", "kind": "task", "config": {"task_type": "charge", **task_config}},
            {"id": "end", "kind": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "charge"},
            {"id": "e2", "source": "charge", "target": "end"},
        ],
    }


def conditional_graph() -> dict:
    return {
        "id": "routing",
        "nodes": [
            {"id": "start", "kind": "start"},
            {"id": "check", "kind": "conditional", "config": {"condition": "amount >= 10000"}},
            {"id": "big", "kind": "end"},
            {"id": "small", "kind": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "check"},
            {"id": "yes", "source": "check", "target": "big", "branch_tag": "true"},
            {"id": "no", "source": "check", "target": "small", "branch_tag": "false"},
        ],
    }


def review_loop_graph(max_iterations: int = 2) -> dict:
    return {
        "id": "contract",
        "nodes": [
            {"id": "start", "kind": "start"},
            {"id": "draft", "kind": "task", "config": {"task_type": "draft"}},
            {"id": "review", "kind": "approval", "config": {"approvers": ["legal"]}},
            {"id": "end", "kind": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "draft"},
            {"id": "e2", "source": "draft", "target": "review"},
            {"id": "ok", "source": "review", "target": "end", "branch_tag": "approved"},
            {
                "id": "resubmit",
                "source": "review",
                "target": "draft",
                "branch_tag": "rejected",
                "loop": True,
                "max_iterations": max_iterations,
            },
        ],
    }


def approval_only_graph(**config) -> dict:
    return {
        "id": "signoff",
        "nodes": [
            {"id": "start", "kind": "start"},
            {"id": "review", "kind": "approval", "config": {"approvers": ["alice"], **config}},
            {"id": "end", "kind": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "review"},
            {"id": "e2", "source": "review", "target": "end"},
        ],
    }


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_and_fetch(self, engine):
        workflow_id = await engine.register(task_graph())

        graph = await engine.get_workflow(workflow_id)
        assert workflow_id == "billing"
        assert [n.id for n in graph.nodes] == ["start", "charge", "end"]

    @pytest.mark.asyncio
    async def test_reregistering_identical_definition_is_a_noop(self, engine):
        await engine.register(task_graph())
        assert await engine.register(task_graph()) == "billing"

    @pytest.mark.asyncio
    async def test_registered_versions_are_immutable(self, engine):
        await engine.register(task_graph())

        with pytest.raises(ValidationError, match="already registered"):
            await engine.register(task_graph(timeout_minutes=5))

    @pytest.mark.asyncio
    async def test_start_uses_latest_version(self, engine):
        await engine.register(task_graph())
        await engine.register(task_graph(version=2, timeout_minutes=5))

        latest = await engine.get_snapshot(await engine.start("billing"))
        pinned = await engine.get_snapshot(await engine.start("billing", version=1))

        assert latest.workflow_version == 2
        assert pinned.workflow_version == 1

    @pytest.mark.asyncio
    async def test_invalid_definition_is_not_stored(self, engine):
        definition = task_graph()
        definition["edges"].append({"id": "e3", "source": "charge", "target": "ghost"})

        with pytest.raises(ValidationError):
            await engine.register(definition)
        with pytest.raises(WorkflowNotFoundError):
            await engine.get_workflow("billing")

    @pytest.mark.asyncio
    async def test_start_unknown_workflow(self, engine):
        with pytest.raises(WorkflowNotFoundError):
            await engine.start("nope")


class TestVariables:
    @pytest.mark.asyncio
    async def test_schema_violations_are_all_reported(self, engine):
        definition = task_graph()
        definition["variable_schema"] = {
            "amount": {"type": "number", "required": True},
            "region": {"type": "string"},
        }
        await engine.register(definition)

        with pytest.raises(ValidationError) as exc_info:
            await engine.start("billing", {"region": 5})

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert "root: 'amount' is a required property" in errors
        assert any(e.startswith("region: 5 is not of type 'string'") for e in errors)
        assert await engine.list_executions() == []

    @pytest.mark.asyncio
    async def test_defaults_are_applied(self, engine):
        definition = task_graph()
        definition["variable_schema"] = {"currency": {"type": "string", "default": "EUR"}}
        await engine.register(definition)

        snapshot = await engine.get_snapshot(await engine.start("billing", {"amount": 10}))

        assert snapshot.variables == {"amount": 10, "currency": "EUR"}


class TestHandlers:
    @pytest.mark.asyncio
    async def test_task_handler_runs_and_output_merges(self, engine):
        calls = []

        def charge(input, context):
            calls.append((input, context))
            return {"charged": input["amount"], "receipt": "r-1"}

        engine.register_task_handler("charge", charge)
        await engine.register(task_graph(parameters={"currency": "EUR"}))
        execution_id = await engine.start("billing", {"amount": 100})

        await engine.drain()
        snapshot = await engine.wait_for(execution_id, timeout=1)

        assert snapshot.status == ExecutionStatus.COMPLETED
        assert snapshot.variables == {"amount": 100, "charged": 100, "receipt": "r-1"}
        input, context = calls[0]
        assert input == {"amount": 100, "currency": "EUR"}
        assert context.node_id == "charge"
        assert context.attempt == 0
        assert context.parameters == {"currency": "EUR"}

    @pytest.mark.asyncio
    async def test_handler_class(self, engine):
        class Doubler(TaskHandler):
            async def execute(self, input, context):
                return TaskResult(output={"doubled": input["n"] * 2})

        engine.register_task_handler("charge", Doubler())
        await engine.register(task_graph())
        execution_id = await engine.start("billing", {"n": 21})

        await engine.drain()

        snapshot = await engine.get_snapshot(execution_id)
        assert snapshot.variables["doubled"] == 42

    @pytest.mark.asyncio
    async def test_non_mapping_output_is_not_merged(self, engine):
        engine.register_task_handler("charge", lambda input, context: 42)
        await engine.register(task_graph())
        execution_id = await engine.start("billing", {"amount": 1})

        await engine.drain()

        snapshot = await engine.get_snapshot(execution_id)
        assert snapshot.step_states["charge"].output == 42
        assert snapshot.variables == {"amount": 1}

    @pytest.mark.asyncio
    async def test_non_retryable_failure_skips_retries(self, engine):
        def charge(input, context):
            raise StepExecutionError("charge", "card declined", retryable=False)

        engine.register_task_handler("charge", charge)
        await engine.register(task_graph(retry_policy={"max_retries": 3}))
        execution_id = await engine.start("billing")

        await engine.drain()

        snapshot = await engine.get_snapshot(execution_id)
        assert snapshot.status == ExecutionStatus.FAILED
        assert snapshot.error_details.node_id == "charge"
        assert snapshot.error_details.error == "Step 'charge' failed: card declined"
        assert snapshot.error_details.retry_count == 0

    @pytest.mark.asyncio
    async def test_ai_agent_usage_is_tracked(self, engine, store):
        seen = []

        async def model(input, context):
            seen.append(input)
            return TaskResult(
                output={"summary": "short"},
                usage=Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15, cost=0.002),
            )

        engine.register_model_handler("gpt-test", model)
        await engine.register(
            {
                "id": "summarize",
                "nodes": [
                    {"id": "start", "kind": "start"},
                    {
                        "id": "summarize",
                        "kind": "ai_agent",
                        "config": {
                            "model": "gpt-test",
                            "prompt": "Summarize {doc.title}",
                            "system_prompt": "Be brief",
                            "max_tokens": 200,
                        },
                    },
                    {"id": "end", "kind": "end"},
                ],
                "edges": [
                    {"id": "e1", "source": "start", "target": "summarize"},
                    {"id": "e2", "source": "summarize", "target": "end"},
                ],
            }
        )
        execution_id = await engine.start("summarize", {"doc": {"title": "Q3 report"}})

        await engine.drain()

        snapshot = await engine.get_snapshot(execution_id)
        assert snapshot.status == ExecutionStatus.COMPLETED
        assert snapshot.variables["summary"] == "short"
        assert snapshot.metrics.total_tokens == 15
        assert snapshot.metrics.total_cost == pytest.approx(0.002)
        assert seen[0]["prompt"] == "Summarize Q3 report"
        assert seen[0]["system_prompt"] == "Be brief"
        assert seen[0]["max_tokens"] == 200
        task = (await store.load(execution_id)).ai_tasks["summarize"]
        assert task.status == AITaskStatus.COMPLETED
        assert task.usage.total_tokens == 15

    @pytest.mark.asyncio
    async def test_missing_handler_waits_for_external_completion(self, engine):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")

        snapshot = await engine.get_snapshot(execution_id)
        assert snapshot.step_states["charge"].status == StepStatus.RUNNING

        snapshot = await engine.submit_event(
            execution_id,
            {"type": "step_completed", "node_id": "charge", "output": {"receipt": "r-9"}},
        )
        assert snapshot.status == ExecutionStatus.COMPLETED
        assert snapshot.variables["receipt"] == "r-9"


class TestRetries:
    @pytest.mark.asyncio
    async def test_exponential_backoff_until_exhausted(self, engine, timers):
        attempts = []

        def flaky(input, context):
            attempts.append(context.attempt)
            raise RuntimeError("gateway down")

        engine.register_task_handler("charge", flaky)
        await engine.register(
            task_graph(retry_policy={"max_retries": 3, "retry_delay": 60, "backoff_multiplier": 2})
        )
        execution_id = await engine.start("billing")
        await engine.drain()

        snapshot = await engine.get_snapshot(execution_id)
        assert snapshot.step_states["charge"].retry_count == 1
        assert snapshot.status == ExecutionStatus.RUNNING

        assert await timers.advance(59) == 0
        assert await timers.advance(1) == 1
        await engine.drain()
        assert await timers.advance(119) == 0
        assert await timers.advance(1) == 1
        await engine.drain()
        assert await timers.advance(240) == 1
        await engine.drain()

        snapshot = await engine.get_snapshot(execution_id)
        assert attempts == [0, 1, 2, 3]
        assert snapshot.status == ExecutionStatus.FAILED
        assert snapshot.error_details.retry_count == 3
        assert snapshot.error_details.error == "RuntimeError: gateway down"
        assert snapshot.metrics.total_retries == 3
        assert len(engine.event_bus.get_history(EventType.STEP_RETRY_SCHEDULED)) == 3

    @pytest.mark.asyncio
    async def test_retry_recovers(self, engine, timers):
        outcomes = iter([RuntimeError("flaky"), {"ok": True}])

        def sometimes(input, context):
            outcome = next(outcomes)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        engine.register_task_handler("charge", sometimes)
        await engine.register(task_graph(retry_policy={"max_retries": 2, "retry_delay": 10}))
        execution_id = await engine.start("billing")
        await engine.drain()

        await timers.advance(10)
        await engine.drain()

        snapshot = await engine.get_snapshot(execution_id)
        assert snapshot.status == ExecutionStatus.COMPLETED
        assert snapshot.step_states["charge"].retry_count == 1
        assert snapshot.variables["ok"] is True

    @pytest.mark.asyncio
    async def test_result_of_superseded_attempt_is_discarded(self, engine):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")

        snapshot = await engine.submit_event(
            execution_id, StepCompleted(node_id="charge", output={"x": 1}, attempt=2)
        )

        assert snapshot.step_states["charge"].status == StepStatus.RUNNING
        discarded = engine.event_bus.get_history(EventType.EVENT_DISCARDED)
        assert "attempt 2" in discarded[0].data["reason"]


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_task_timeout(self, engine, timers):
        await engine.register(task_graph(timeout_minutes=5))
        execution_id = await engine.start("billing")

        await timers.advance(timedelta(minutes=5))

        snapshot = await engine.get_snapshot(execution_id)
        assert snapshot.status == ExecutionStatus.FAILED
        assert snapshot.step_states["charge"].status == StepStatus.FAILED
        assert "timed out" in snapshot.error_details.error

    @pytest.mark.asyncio
    async def test_completion_cancels_timeout(self, engine, timers):
        await engine.register(task_graph(timeout_minutes=5))
        execution_id = await engine.start("billing")
        assert timers.pending == 1

        await engine.submit_event(execution_id, StepCompleted(node_id="charge"))

        assert timers.pending == 0

    @pytest.mark.asyncio
    async def test_workflow_timeout(self, engine, timers):
        definition = task_graph()
        definition["settings"] = {"timeout_minutes": 60}
        await engine.register(definition)
        execution_id = await engine.start("billing")

        await timers.advance(timedelta(minutes=59))
        assert (await engine.get_snapshot(execution_id)).status == ExecutionStatus.RUNNING
        await timers.advance(timedelta(minutes=1))

        snapshot = await engine.get_snapshot(execution_id)
        assert snapshot.status == ExecutionStatus.FAILED
        assert snapshot.error_details.node_id is None
        assert "Workflow timed out" in snapshot.error_details.error


class TestConditionalRouting:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,target", [(15000, "big"), (10000, "big"), (500, "small")])
    async def test_routes_on_condition(self, engine, amount, target):
        await engine.register(conditional_graph())

        snapshot = await engine.get_snapshot(await engine.start("routing", {"amount": amount}))

        assert snapshot.status == ExecutionStatus.COMPLETED
        assert [p.node_id for p in snapshot.execution_path][-1] == target
        assert snapshot.step_states["check"].output == {"condition_result": amount >= 10000}

    @pytest.mark.asyncio
    async def test_evaluation_error_fails_the_instance(self, engine):
        await engine.register(conditional_graph())

        snapshot = await engine.get_snapshot(await engine.start("routing", {"amount": "abc"}))

        assert snapshot.status == ExecutionStatus.FAILED
        assert snapshot.step_states["check"].status == StepStatus.FAILED
        assert snapshot.error_details.node_id == "check"
        assert "Cannot compare str with int" in snapshot.error_details.error


class TestStaleEvents:
    @pytest.mark.asyncio
    async def test_completion_for_non_task_step_is_discarded(self, engine, store):
        await engine.register(approval_only_graph())
        execution_id = await engine.start("signoff")
        before = await engine.get_snapshot(execution_id)

        after = await engine.submit_event(execution_id, StepCompleted(node_id="review"))

        assert after == before
        discarded = engine.event_bus.get_history(EventType.EVENT_DISCARDED)
        assert discarded[0].node_id == "review"
        assert discarded[0].data["event_type"] == "step_completed"
        assert len(await store.read_events(execution_id)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("node_id", ["ghost", "end"])
    async def test_unknown_or_inactive_node(self, engine, node_id):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")

        snapshot = await engine.submit_event(execution_id, StepFailed(node_id=node_id, error="x"))

        assert snapshot.status == ExecutionStatus.RUNNING
        assert engine.event_bus.get_history(EventType.EVENT_DISCARDED)

    @pytest.mark.asyncio
    async def test_events_after_completion_are_discarded(self, engine):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")
        completed = await engine.submit_event(execution_id, StepCompleted(node_id="charge"))

        again = await engine.submit_event(execution_id, StepCompleted(node_id="charge"))

        assert again == completed

    @pytest.mark.asyncio
    async def test_unknown_execution(self, engine):
        with pytest.raises(ExecutionNotFoundError):
            await engine.submit_event("exec_missing", StepCompleted(node_id="charge"))
        with pytest.raises(ExecutionNotFoundError):
            await engine.get_snapshot("exec_missing")


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_execution(self, engine, timers):
        await engine.register(approval_only_graph(due_in_hours=24))
        execution_id = await engine.start("signoff")

        snapshot = await engine.cancel(execution_id, "no longer needed")

        assert snapshot.status == ExecutionStatus.CANCELLED
        review = snapshot.step_states["review"]
        assert review.status == StepStatus.CANCELLED
        assert review.error == "no longer needed"
        assert snapshot.approvals["review"].status == ApprovalStatus.CANCELLED
        assert timers.pending == 0

    @pytest.mark.asyncio
    async def test_decision_after_cancel_is_discarded(self, engine):
        await engine.register(approval_only_graph())
        execution_id = await engine.start("signoff")
        request_id = (await engine.get_snapshot(execution_id)).approvals["review"].id
        cancelled = await engine.cancel(execution_id)

        snapshot = await engine.decide(request_id, "alice", "approved")

        assert snapshot == cancelled
        assert engine.event_bus.get_history(EventType.EVENT_DISCARDED)

    @pytest.mark.asyncio
    async def test_cancel_of_terminal_execution_is_a_noop(self, engine, store):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")
        completed = await engine.submit_event(execution_id, StepCompleted(node_id="charge"))

        snapshot = await engine.cancel(execution_id)

        assert snapshot == completed
        assert snapshot.status == ExecutionStatus.COMPLETED
        assert len(await store.read_events(execution_id)) == 2


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_events_are_deferred_while_paused(self, engine):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")

        await engine.pause(execution_id, "maintenance")
        snapshot = await engine.submit_event(
            execution_id, StepCompleted(node_id="charge", output={"receipt": "r-1"})
        )
        assert snapshot.status == ExecutionStatus.PAUSED
        assert snapshot.step_states["charge"].status == StepStatus.RUNNING

        snapshot = await engine.resume(execution_id)

        assert snapshot.status == ExecutionStatus.COMPLETED
        assert snapshot.variables["receipt"] == "r-1"

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, engine):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")

        with pytest.raises(InvalidStateError):
            await engine.resume(execution_id)
        await engine.pause(execution_id)
        with pytest.raises(InvalidStateError):
            await engine.pause(execution_id)

    @pytest.mark.asyncio
    async def test_stale_deferred_event_is_discarded_on_resume(self, engine):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")
        await engine.pause(execution_id)
        await engine.submit_event(execution_id, StepCompleted(node_id="ghost"))

        snapshot = await engine.resume(execution_id)

        assert snapshot.status == ExecutionStatus.RUNNING
        discarded = engine.event_bus.get_history(EventType.EVENT_DISCARDED)
        assert discarded[0].node_id == "ghost"

    @pytest.mark.asyncio
    async def test_cancel_while_paused(self, engine):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")
        await engine.pause(execution_id)

        snapshot = await engine.cancel(execution_id)

        assert snapshot.status == ExecutionStatus.CANCELLED
        assert snapshot.step_states["charge"].status == StepStatus.CANCELLED


class TestRetryExecution:
    @pytest.mark.asyncio
    async def test_failed_execution_can_be_retried(self, engine):
        await engine.register(task_graph())
        execution_id = await engine.start("billing", {"amount": 7})
        await engine.submit_event(
            execution_id, StepFailed(node_id="charge", error="declined", retryable=False)
        )

        new_id = await engine.retry(execution_id)

        snapshot = await engine.get_snapshot(new_id)
        assert new_id != execution_id
        assert snapshot.retry_of == execution_id
        assert snapshot.variables == {"amount": 7}
        assert snapshot.status == ExecutionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_only_failed_executions_can_be_retried(self, engine):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")

        with pytest.raises(InvalidStateError):
            await engine.retry(execution_id)


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_executions_filters(self, engine):
        await engine.register(task_graph())
        await engine.register(conditional_graph())
        running = await engine.start("billing")
        await engine.start("routing", {"amount": 1})

        billing = await engine.list_executions(workflow_id="billing")
        completed = await engine.list_executions(status=ExecutionStatus.COMPLETED)

        assert [s.execution_id for s in billing] == [running]
        assert [s.workflow_id for s in completed] == ["routing"]
        assert len(await engine.list_executions(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_wait_for_times_out(self, engine):
        await engine.register(task_graph())
        execution_id = await engine.start("billing")

        assert await engine.wait_for(execution_id, timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_event_log_records_accepted_events(self, engine, store):
        await engine.register(task_graph())
        execution_id = await engine.start("billing", {"amount": 3})
        await engine.submit_event(execution_id, StepCompleted(node_id="charge"))

        records = await store.read_events(execution_id)

        assert [(r.seq, r.kind) for r in records] == [(0, "start"), (1, "event")]
        assert records[0].start["variables"] == {"amount": 3}
        assert records[1].event["type"] == "step_completed"

    @pytest.mark.asyncio
    async def test_stats_by_status(self, engine):
        assert (await engine.get_stats())["success_rate"] == 0.0
        await engine.register(task_graph())
        await engine.register(conditional_graph())
        await engine.start("billing")
        await engine.cancel(await engine.start("billing"))
        await engine.start("routing", {"amount": 1})
        await engine.start("routing", {"amount": 20000})

        stats = await engine.get_stats()
        routing = await engine.get_stats(workflow_id="routing")

        assert stats["total"] == 4
        assert stats["by_status"]["running"] == 1
        assert stats["by_status"]["cancelled"] == 1
        assert stats["by_status"]["completed"] == 2
        assert stats["by_status"]["failed"] == 0
        assert stats["success_rate"] == 0.5
        assert routing["total"] == 2
        assert routing["success_rate"] == 1.0

    @pytest.mark.asyncio
    async def test_no_execution_lock_outlives_its_event(self, engine):
        await engine.register(task_graph())
        waiting = await engine.start("billing")
        for _ in range(5):
            await engine.cancel(await engine.start("billing"))
        await engine.submit_event(waiting, StepCompleted(node_id="charge"))
        gc.collect()

        assert len(engine._locks) == 0


class TestLoops:
    @pytest.mark.asyncio
    async def test_loop_edge_reactivates_steps(self, engine):
        await engine.register(review_loop_graph())
        execution_id = await engine.start("contract")

        await engine.submit_event(execution_id, StepCompleted(node_id="draft"))
        first = (await engine.get_snapshot(execution_id)).approvals["review"].id
        await engine.decide(first, "legal", "rejected")
        snapshot = await engine.get_snapshot(execution_id)
        assert snapshot.step_states["draft"].status == StepStatus.RUNNING

        await engine.submit_event(execution_id, StepCompleted(node_id="draft"))
        second = (await engine.get_snapshot(execution_id)).approvals["review"].id
        snapshot = await engine.decide(second, "legal", "approved")

        assert second != first
        assert snapshot.status == ExecutionStatus.COMPLETED
        drafts = [p for p in snapshot.execution_path if p.node_id == "draft"]
        assert len({p.activation_id for p in drafts}) == 2

    @pytest.mark.asyncio
    async def test_loop_guard_fails_the_source_step(self, engine):
        await engine.register(review_loop_graph(max_iterations=2))
        execution_id = await engine.start("contract")

        for _ in range(3):
            await engine.submit_event(execution_id, StepCompleted(node_id="draft"))
            request_id = (await engine.get_snapshot(execution_id)).approvals["review"].id
            snapshot = await engine.decide(request_id, "legal", "rejected")

        assert snapshot.status == ExecutionStatus.FAILED
        assert snapshot.error_details.node_id == "review"
        assert snapshot.error_details.error == "Loop edge 'resubmit' exceeded 2 iterations"

    @pytest.mark.asyncio
    async def test_step_states_only_name_graph_nodes(self, engine):
        graph = review_loop_graph()
        node_ids = {n["id"] for n in graph["nodes"]}
        observed = []

        async def record(event):
            snapshot = await engine.get_snapshot(event.execution_id)
            observed.append(set(snapshot.step_states))

        engine.event_bus.subscribe(list(EventType), record)
        await engine.register(graph)
        execution_id = await engine.start("contract")
        await engine.submit_event(execution_id, StepCompleted(node_id="draft"))
        request_id = (await engine.get_snapshot(execution_id)).approvals["review"].id
        await engine.decide(request_id, "legal", "approved")

        assert observed
        assert all(keys <= node_ids for keys in observed)
