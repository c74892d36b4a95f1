"""
Structured logging with execution context propagation.

Every log line emitted while the engine processes an event carries the
execution it belongs to, without passing loggers around:

    WorkflowEngine.submit_event()   sets execution_id / workflow_id
    StepAdvancer                    adds node_id as a record extra
    handler tasks                   set node_id in their own context copy

The context lives in a ContextVar, so asyncio tasks inherit a snapshot
of it and their changes never leak back to the caller. Output is JSON
in production and a coloured one-line format during development.
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# Record extras copied into JSON output when present
_EXTRA_FIELDS = ("event", "node_id", "attempt", "delay_seconds", "tokens_used", "cost")

_LEVEL_COLORS = {
    logging.DEBUG: 36,
    logging.INFO: 32,
    logging.WARNING: 33,
    logging.ERROR: 31,
    logging.CRITICAL: 35,
}


def strip_ansi_codes(text: str) -> str:
    return _ANSI.sub("", text)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line: standard fields, execution context, known extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **get_trace_context(),
        }
        entry.update(
            (name, getattr(record, name))
            for name in _EXTRA_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``[LEVEL   ] [wf:x | exec:abcd1234 | node:y] message [event]``"""

    def format(self, record: logging.LogRecord) -> str:
        context = get_trace_context()
        node_id = getattr(record, "node_id", None) or context.get("node_id")
        tags = [
            f"{label}:{value}"
            for label, value in (
                ("wf", context.get("workflow_id")),
                ("exec", (context.get("execution_id") or "")[-8:]),
                ("node", node_id),
            )
            if value
        ]

        code = _LEVEL_COLORS.get(record.levelno)
        level = f"[{record.levelname:<8}]"
        if code is not None:
            level = f"\033[{code}m{level}\033[0m"

        parts = [level]
        if tags:
            parts.append(f"[{' | '.join(tags)}]")
        parts.append(record.getMessage())
        event = getattr(record, "event", None)
        if event is not None:
            parts.append(f"[{event}]")

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_format(format: str) -> str:
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    return "json" if os.getenv("ENV", "development").lower() == "production" else "human"


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Install a single root handler. Call once at startup.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (any case)
        format: "json", "human", or "auto" (JSON when LOG_FORMAT=json or
            ENV=production)
    """
    handler = logging.StreamHandler()
    if _resolve_format(format) == "json":
        handler.setFormatter(StructuredFormatter())
        os.environ["NO_COLOR"] = "1"
    else:
        handler.setFormatter(HumanReadableFormatter())
    logging.basicConfig(level=level.upper(), handlers=[handler], force=True)


def set_trace_context(**fields: Any) -> None:
    """Merge fields into the execution context of the current task."""
    trace_context.set({**get_trace_context(), **fields})


def get_trace_context() -> dict[str, Any]:
    """A copy of the current execution context (empty if unset)."""
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
