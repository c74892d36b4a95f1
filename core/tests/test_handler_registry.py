"""Tests for handler registration, discovery and invocation."""

from pathlib import Path

import pytest

from flowcore.errors import StepExecutionError
from flowcore.graph.context import DispatchStep
from flowcore.graph.node import NodeKind
from flowcore.runner.handler_registry import (
    FunctionTaskHandler,
    HandlerRegistry,
    TaskContext,
    TaskHandler,
    TaskResult,
    model_handler,
    run_handler,
    task_handler,
)
from flowcore.schemas.ai_task import Usage
from flowcore.schemas.events import StepCompleted, StepFailed


def make_dispatch(node_id: str = "charge", attempt: int = 0) -> DispatchStep:
    return DispatchStep(
        node_id=node_id,
        kind=NodeKind.TASK,
        handler_key="charge_card",
        activation_id="act-2",
        attempt=attempt,
        input={"amount": 10},
    )


def make_context(node_id: str = "charge") -> TaskContext:
    return TaskContext(
        execution_id="exec_1",
        workflow_id="billing",
        node_id=node_id,
        kind=NodeKind.TASK,
        activation_id="act-2",
    )


class Doubler(TaskHandler):
    async def execute(self, input, context):
        return {"amount": input["amount"] * 2}


class TestRegistration:
    def test_tasks_and_models_are_separate_namespaces(self):
        registry = HandlerRegistry()
        registry.register_task("summarize", Doubler())
        registry.register_model("summarize", lambda input, context: {"text": "ok"})

        assert isinstance(registry.get(NodeKind.TASK, "summarize"), Doubler)
        assert isinstance(registry.get(NodeKind.AI_AGENT, "summarize"), FunctionTaskHandler)
        assert registry.get(NodeKind.TASK, "missing") is None
        assert registry.has_task("summarize") and registry.has_model("summarize")
        assert not registry.has_model("gpt-x")

    def test_registered_names_are_sorted(self):
        registry = HandlerRegistry()
        for name in ("ship", "bill", "notify"):
            registry.register_task(name, Doubler())

        assert registry.get_registered_task_types() == ["bill", "notify", "ship"]
        assert registry.get_registered_models() == []

    def test_rejects_non_callables(self):
        registry = HandlerRegistry()

        with pytest.raises(TypeError):
            registry.register_task("bad", "not a handler")

    def test_replacing_a_handler(self):
        registry = HandlerRegistry()
        first, second = Doubler(), Doubler()
        registry.register_task("bill", first)
        registry.register_task("bill", second)

        assert registry.get(NodeKind.TASK, "bill") is second


class TestDiscovery:
    def test_discover_decorated_functions(self, tmp_path: Path):
        module = tmp_path / "handlers.py"
        module.write_text(
            "from flowcore.runner.handler_registry import model_handler, task_handler\n"
            "\n"
            "@task_handler('send_invoice')\n"
            "async def send_invoice(input, context):\n"
            "    return {'sent': True}\n"
            "\n"
            "@model_handler('reviewer-v1')\n"
            "def review(input, context):\n"
            "    return {'verdict': 'ok'}\n"
            "\n"
            "def helper():\n"
            "    return None\n"
        )
        registry = HandlerRegistry()

        count = registry.discover_from_module(module)

        assert count == 2
        assert registry.has_task("send_invoice")
        assert registry.has_model("reviewer-v1")

    def test_missing_module(self, tmp_path: Path):
        assert HandlerRegistry().discover_from_module(tmp_path / "nope.py") == 0

    def test_decorators_attach_metadata(self):
        @task_handler("ship")
        def ship(input, context):
            return None

        @model_handler("m1")
        def infer(input, context):
            return None

        assert ship._handler_metadata == {"kind": "task", "key": "ship"}
        assert infer._handler_metadata == {"kind": "model", "key": "m1"}


class TestRunHandler:
    @pytest.mark.asyncio
    async def test_async_mapping_output(self):
        event = await run_handler(Doubler(), make_dispatch(attempt=2), make_context())

        assert isinstance(event, StepCompleted)
        assert event.output == {"amount": 20}
        assert event.activation_id == "act-2"
        assert event.attempt == 2

    @pytest.mark.asyncio
    async def test_sync_function_returning_none(self):
        handler = FunctionTaskHandler(lambda input, context: None)

        event = await run_handler(handler, make_dispatch(), make_context())

        assert event.output == {}

    @pytest.mark.asyncio
    async def test_task_result_carries_usage(self):
        async def infer(input, context):
            return TaskResult(output={"label": "spam"}, usage=Usage(total_tokens=42, cost=0.01))

        event = await run_handler(FunctionTaskHandler(infer), make_dispatch(), make_context())

        assert event.output == {"label": "spam"}
        assert event.usage.total_tokens == 42

    @pytest.mark.asyncio
    async def test_context_is_passed_through(self):
        seen = []

        def capture(input, context):
            seen.append((context.execution_id, context.node_id))
            return {}

        await run_handler(FunctionTaskHandler(capture), make_dispatch(), make_context())

        assert seen == [("exec_1", "charge")]

    @pytest.mark.asyncio
    async def test_step_execution_error_keeps_retryable_flag(self):
        def decline(input, context):
            raise StepExecutionError(context.node_id, "card declined", retryable=False)

        event = await run_handler(FunctionTaskHandler(decline), make_dispatch(), make_context())

        assert isinstance(event, StepFailed)
        assert event.error == "Step 'charge' failed: card declined"
        assert event.retryable is False

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_retryable(self):
        def boom(input, context):
            raise RuntimeError("boom")

        event = await run_handler(FunctionTaskHandler(boom), make_dispatch(), make_context())

        assert isinstance(event, StepFailed)
        assert event.error == "RuntimeError: boom"
        assert event.retryable is True
