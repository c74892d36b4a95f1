"""
AI Agent Task Schema - Tracking record for AIAgent step dispatches.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class AITaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    RETRY_SCHEDULED = "retry_scheduled"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Usage(BaseModel):
    """Token and cost accounting. Observability only, never gates control flow."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    api_calls: int = 0

    def add(self, other: "Usage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens
        self.cost += other.cost
        self.api_calls += other.api_calls


class AIAgentTask(BaseModel):
    """One AIAgent step activation: rendered prompt, model config, usage and retries."""

    id: str
    execution_id: str
    node_id: str
    model: str
    prompt: str
    system_prompt: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    status: AITaskStatus = AITaskStatus.PENDING
    usage: Usage = Field(default_factory=Usage)
    retry_count: int = 0
    error: str | None = None
    output: dict[str, Any] | None = None
    started_at: str | None = None
    completed_at: str | None = None

    model_config = {"extra": "allow"}
