"""
AI Agent Task Runner - Dispatch and usage tracking for AIAgent steps.

The runner renders the prompt from instance variables, keeps an
AIAgentTask record per activation and builds the dispatch for each
attempt. Which model client actually runs is
decided by the handler registry (keyed by ``model``); usage and cost are
recorded for observability only.
"""

import logging
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from flowcore.graph.context import DispatchStep
from flowcore.graph.node import NodeKind
from flowcore.schemas.ai_task import AIAgentTask, AITaskStatus, Usage
from flowcore.schemas.execution import StepState, StepStatus

if TYPE_CHECKING:
    from flowcore.graph.context import AdvanceContext

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)\}")


def render_prompt(template: str, variables: Mapping[str, Any]) -> str:
    """Substitute ``{name}`` / ``{a.b}`` placeholders; unknown names are left as written."""

    def substitute(match: re.Match) -> str:
        current: Any = variables
        for part in match.group(1).split("."):
            if not isinstance(current, Mapping) or part not in current:
                return match.group(0)
            current = current[part]
        return str(current)

    return _PLACEHOLDER.sub(substitute, template)


class AIAgentTaskRunner:
    """Owns AIAgentTask records and builds AI dispatches."""

    def open(self, ctx: "AdvanceContext", node: Any, step: StepState) -> AIAgentTask:
        config = node.config
        task = AIAgentTask(
            id=f"{ctx.instance.id}.{ctx.next_id('ai')}",
            execution_id=ctx.instance.id,
            node_id=node.id,
            model=config.model,
            prompt=render_prompt(config.prompt, ctx.instance.variables),
            system_prompt=config.system_prompt,
            config={
                "temperature": config.temperature,
                "max_tokens": config.max_tokens,
                **config.parameters,
            },
        )
        ctx.instance.ai_tasks[node.id] = task
        step.input = {
            "prompt": task.prompt,
            "system_prompt": task.system_prompt,
            "model": task.model,
            **task.config,
        }
        return task

    def dispatch(self, ctx: "AdvanceContext", node: Any, step: StepState) -> None:
        task = ctx.instance.ai_tasks[node.id]
        task.status = AITaskStatus.RUNNING
        task.retry_count = step.retry_count
        if task.started_at is None:
            task.started_at = ctx.timestamp
        ctx.dispatch(
            DispatchStep(
                node_id=node.id,
                kind=NodeKind.AI_AGENT,
                handler_key=task.model,
                activation_id=step.activation_id,
                attempt=step.retry_count,
                input=dict(step.input),
                parameters=dict(node.config.parameters),
            )
        )
        logger.info(
            f"AI task '{node.id}' dispatched to model '{task.model}' (attempt {step.retry_count})",
            extra={"event": "ai_task_dispatched", "node_id": node.id, "attempt": step.retry_count},
        )

    def record_usage(self, ctx: "AdvanceContext", step: StepState, usage: Usage) -> None:
        if step.usage is None:
            step.usage = Usage()
        step.usage.add(usage)
        task = ctx.instance.ai_tasks.get(step.node_id)
        if task is not None:
            task.usage.add(usage)
        logger.debug(
            f"Usage for '{step.node_id}': {usage.total_tokens} tokens, ${usage.cost:.4f}",
            extra={"node_id": step.node_id, "tokens_used": usage.total_tokens, "cost": usage.cost},
        )

    def retry_scheduled(self, ctx: "AdvanceContext", step: StepState) -> None:
        task = ctx.instance.ai_tasks.get(step.node_id)
        if task is not None:
            task.status = AITaskStatus.RETRY_SCHEDULED
            task.retry_count = step.retry_count
            task.error = step.error

    def finished(self, ctx: "AdvanceContext", step: StepState) -> None:
        task = ctx.instance.ai_tasks.get(step.node_id)
        if task is None:
            return
        task.completed_at = ctx.timestamp
        task.retry_count = step.retry_count
        if step.status == StepStatus.COMPLETED:
            task.status = AITaskStatus.COMPLETED
            task.output = step.output if isinstance(step.output, dict) else {"result": step.output}
            task.error = None
        else:
            task.status = AITaskStatus.FAILED
            task.error = step.error

    @staticmethod
    def cancel(task: AIAgentTask, timestamp: str) -> None:
        open_statuses = (AITaskStatus.PENDING, AITaskStatus.RUNNING, AITaskStatus.RETRY_SCHEDULED)
        if task.status in open_statuses:
            task.status = AITaskStatus.CANCELLED
            task.completed_at = timestamp
