"""
Error taxonomy for the workflow engine.

Every error the engine raises derives from FlowCoreError so embedding
applications can catch engine failures with a single except clause.
"""

from enum import StrEnum


class FlowCoreError(Exception):
    """Base class for all engine errors."""


class ValidationError(FlowCoreError):
    """A graph definition or start request violates the workflow model.

    Carries every violation found, not just the first one.
    """

    def __init__(self, errors: list[str], message: str | None = None):
        self.errors = list(errors)
        summary = message or "Workflow definition is invalid"
        detail = "; ".join(self.errors)
        super().__init__(f"{summary}: {detail}" if detail else summary)


class StepExecutionError(FlowCoreError):
    """A task or AI handler failed while executing a step."""

    def __init__(self, node_id: str, message: str, retryable: bool = True):
        self.node_id = node_id
        self.retryable = retryable
        super().__init__(f"Step '{node_id}' failed: {message}")


class ConditionEvaluationError(FlowCoreError):
    """A conditional expression is malformed or cannot be evaluated."""

    def __init__(self, message: str, expression: str = ""):
        self.expression = expression
        if expression:
            message = f"{message} (in expression {expression!r})"
        super().__init__(message)


class ApprovalErrorReason(StrEnum):
    """Why an approval decision was refused."""

    UNAUTHORIZED = "unauthorized"
    ALREADY_DECIDED = "already_decided"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


class ApprovalError(FlowCoreError):
    """An approval decision was refused. No state was changed."""

    def __init__(self, reason: ApprovalErrorReason, message: str):
        self.reason = reason
        super().__init__(message)


class ApprovalExpiredError(FlowCoreError):
    """An approval deadline passed without a terminal decision."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Approval step '{node_id}' expired without a decision")


class StaleEventError(FlowCoreError):
    """An event references a step that is no longer running.

    Raised internally and discarded at the engine boundary.
    """

    def __init__(self, execution_id: str, node_id: str | None, reason: str):
        self.execution_id = execution_id
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Stale event for execution '{execution_id}' node '{node_id}': {reason}")


class CancellationError(FlowCoreError):
    """Marks a step as ended by cancellation. Never surfaced as a failure."""


class WorkflowNotFoundError(FlowCoreError):
    """No workflow is registered under the requested id."""

    def __init__(self, workflow_id: str, version: int | None = None):
        self.workflow_id = workflow_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Workflow '{workflow_id}'{suffix} is not registered")


class ExecutionNotFoundError(FlowCoreError):
    """No execution instance exists under the requested id."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found")


class InvalidStateError(FlowCoreError):
    """The requested operation is not allowed in the instance's current status."""
