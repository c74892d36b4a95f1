"""Task handler discovery and registration.

Task steps look handlers up by ``task_type``, AIAgent steps by ``model``.
A handler is anything with ``async execute(input, context)``; plain
functions (sync or async) are wrapped. The engine never talks to an AI
vendor SDK directly: model clients are just handlers registered here.
"""

import importlib.util
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from flowcore.errors import StepExecutionError
from flowcore.graph.context import DispatchStep
from flowcore.graph.node import NodeKind
from flowcore.schemas.ai_task import Usage
from flowcore.schemas.events import StepCompleted, StepFailed

logger = logging.getLogger(__name__)


@dataclass
class TaskContext:
    """Read-only context handed to a handler with each call."""

    execution_id: str
    workflow_id: str
    node_id: str
    kind: NodeKind
    activation_id: str
    attempt: int = 0
    variables: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)


class TaskResult(BaseModel):
    """Handler output plus optional usage accounting."""

    output: Any = None
    usage: Usage | None = None


class TaskHandler(ABC):
    """Capability that executes one unit of work for a step."""

    @abstractmethod
    async def execute(self, input: dict[str, Any], context: TaskContext) -> Any:
        """Return a mapping, a TaskResult, or raise StepExecutionError."""


class FunctionTaskHandler(TaskHandler):
    """Adapts ``func(input, context)`` (sync or async) to TaskHandler."""

    def __init__(self, func: Callable[..., Any], name: str | None = None):
        self._func = func
        self.name = name or getattr(func, "__name__", "handler")

    async def execute(self, input: dict[str, Any], context: TaskContext) -> Any:
        result = self._func(input, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionTaskHandler({self.name})"


def normalize_result(result: Any) -> TaskResult:
    if isinstance(result, TaskResult):
        return result
    if result is None:
        return TaskResult(output={})
    return TaskResult(output=result)


class HandlerRegistry:
    """
    Maps task types and model names to handlers.

    Discovery order:
    1. Handlers registered programmatically
    2. Functions decorated with @task_handler / @model_handler in a module
       loaded with discover_from_module()
    """

    def __init__(self):
        self._task_handlers: dict[str, TaskHandler] = {}
        self._model_handlers: dict[str, TaskHandler] = {}

    @staticmethod
    def _wrap(handler: TaskHandler | Callable[..., Any]) -> TaskHandler:
        if isinstance(handler, TaskHandler):
            return handler
        if callable(handler):
            return FunctionTaskHandler(handler)
        raise TypeError(f"Handler must be a TaskHandler or callable, got {type(handler)!r}")

    def register_task(self, task_type: str, handler: TaskHandler | Callable[..., Any]) -> None:
        """Register the handler for Task steps with this task_type."""
        if task_type in self._task_handlers:
            logger.warning(f"Replacing task handler for '{task_type}'")
        self._task_handlers[task_type] = self._wrap(handler)
        logger.debug(f"Registered task handler '{task_type}'")

    def register_model(self, model: str, handler: TaskHandler | Callable[..., Any]) -> None:
        """Register the handler for AIAgent steps configured with this model."""
        if model in self._model_handlers:
            logger.warning(f"Replacing model handler for '{model}'")
        self._model_handlers[model] = self._wrap(handler)
        logger.debug(f"Registered model handler '{model}'")

    def get(self, kind: NodeKind, key: str) -> TaskHandler | None:
        if kind == NodeKind.AI_AGENT:
            return self._model_handlers.get(key)
        return self._task_handlers.get(key)

    def has_task(self, task_type: str) -> bool:
        return task_type in self._task_handlers

    def has_model(self, model: str) -> bool:
        return model in self._model_handlers

    def get_registered_task_types(self) -> list[str]:
        return sorted(self._task_handlers)

    def get_registered_models(self) -> list[str]:
        return sorted(self._model_handlers)

    def discover_from_module(self, module_path: Path) -> int:
        """
        Load handlers from a Python module file.

        Looks for functions decorated with @task_handler or @model_handler.

        Returns:
            Number of handlers registered
        """
        if not module_path.exists():
            return 0

        spec = importlib.util.spec_from_file_location("workflow_handlers", module_path)
        if spec is None or spec.loader is None:
            return 0
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        count = 0
        for name in dir(module):
            obj = getattr(module, name)
            metadata = getattr(obj, "_handler_metadata", None)
            if not callable(obj) or metadata is None:
                continue
            if metadata["kind"] == "model":
                self.register_model(metadata["key"], obj)
            else:
                self.register_task(metadata["key"], obj)
            count += 1

        logger.info(f"Discovered {count} handler(s) in {module_path}")
        return count


def task_handler(task_type: str) -> Callable:
    """
    Mark a function as the handler for a task type.

    Usage:
        @task_handler("send_invoice")
        async def send_invoice(input: dict, context: TaskContext) -> dict:
            ...
    """

    def decorator(func: Callable) -> Callable:
        func._handler_metadata = {"kind": "task", "key": task_type}  # type: ignore[attr-defined]
        return func

    return decorator


def model_handler(model: str) -> Callable:
    """Mark a function as the AI handler for a model name."""

    def decorator(func: Callable) -> Callable:
        func._handler_metadata = {"kind": "model", "key": model}  # type: ignore[attr-defined]
        return func

    return decorator


async def run_handler(
    handler: TaskHandler,
    dispatch: DispatchStep,
    context: TaskContext,
) -> StepCompleted | StepFailed:
    """Execute one handler attempt and convert the outcome into an ingress event."""
    try:
        result = normalize_result(await handler.execute(dispatch.input, context))
    except StepExecutionError as e:
        return StepFailed(
            node_id=dispatch.node_id,
            error=str(e),
            retryable=e.retryable,
            activation_id=dispatch.activation_id,
            attempt=dispatch.attempt,
        )
    except Exception as e:
        logger.exception(f"Handler for step '{dispatch.node_id}' raised")
        return StepFailed(
            node_id=dispatch.node_id,
            error=f"{type(e).__name__}: {e}",
            retryable=True,
            activation_id=dispatch.activation_id,
            attempt=dispatch.attempt,
        )
    return StepCompleted(
        node_id=dispatch.node_id,
        output=result.output,
        usage=result.usage,
        activation_id=dispatch.activation_id,
        attempt=dispatch.attempt,
    )
