"""
Observability: structured logging with execution context propagation.

- Execution context (execution_id, workflow_id, node_id) propagated via ContextVar
- Structured JSON logging for production
- Human-readable logging for development
"""

from flowcore.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
