"""
Execution Store - Durable snapshots, event logs and workflow versions.

File layout of FileExecutionStore:
  {base_path}/
    ├── workflows/{workflow_id}/v{version}.json   # Immutable definitions
    └── executions/{execution_id}/
        ├── state.json                           # Latest snapshot
        └── events.jsonl                         # Every accepted event, in order

A snapshot alone is enough to resume an instance; the event log allows
the snapshot to be rebuilt after a crash between log append and save.
"""

import asyncio
import json
import logging
import shutil
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path

from flowcore.graph.edge import GraphSpec
from flowcore.schemas.events import EventLogRecord
from flowcore.schemas.execution import ExecutionInstance, ExecutionStatus
from flowcore.utils.io import atomic_write

logger = logging.getLogger(__name__)


def generate_execution_id() -> str:
    """Execution ID in format: exec_YYYYMMDD_HHMMSS_{uuid_8char}."""
    timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    return f"exec_{timestamp}_{uuid.uuid4().hex[:8]}"


class ExecutionStore(ABC):
    """Persistence interface consumed by the engine."""

    @abstractmethod
    async def save_workflow(self, graph: GraphSpec) -> None: ...

    @abstractmethod
    async def load_workflow(self, workflow_id: str, version: int | None = None) -> GraphSpec | None:
        """Load a definition; ``version=None`` means the latest one."""

    @abstractmethod
    async def list_workflow_versions(self, workflow_id: str) -> list[int]: ...

    @abstractmethod
    async def save(self, instance: ExecutionInstance) -> None: ...

    @abstractmethod
    async def load(self, execution_id: str) -> ExecutionInstance | None: ...

    @abstractmethod
    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = 100,
    ) -> list[ExecutionInstance]: ...

    @abstractmethod
    async def append_event(self, execution_id: str, record: EventLogRecord) -> None: ...

    @abstractmethod
    async def read_events(self, execution_id: str) -> list[EventLogRecord]: ...

    @abstractmethod
    async def delete(self, execution_id: str) -> bool: ...


def _filter(
    instances: list[ExecutionInstance],
    status: ExecutionStatus | None,
    workflow_id: str | None,
    limit: int | None,
) -> list[ExecutionInstance]:
    result = [
        i
        for i in instances
        if (status is None or i.status == status)
        and (workflow_id is None or i.workflow_id == workflow_id)
    ]
    result.sort(key=lambda i: i.updated_at or i.created_at, reverse=True)
    return result if limit is None else result[:limit]


class InMemoryExecutionStore(ExecutionStore):
    """Process-local store. Copies on every read and write so callers never share state."""

    def __init__(self):
        self._workflows: dict[str, dict[int, GraphSpec]] = {}
        self._instances: dict[str, ExecutionInstance] = {}
        self._events: dict[str, list[EventLogRecord]] = {}

    async def save_workflow(self, graph: GraphSpec) -> None:
        self._workflows.setdefault(graph.id, {})[graph.version] = graph

    async def load_workflow(self, workflow_id: str, version: int | None = None) -> GraphSpec | None:
        versions = self._workflows.get(workflow_id, {})
        if not versions:
            return None
        return versions.get(version if version is not None else max(versions))

    async def list_workflow_versions(self, workflow_id: str) -> list[int]:
        return sorted(self._workflows.get(workflow_id, {}))

    async def save(self, instance: ExecutionInstance) -> None:
        self._instances[instance.id] = instance.model_copy(deep=True)

    async def load(self, execution_id: str) -> ExecutionInstance | None:
        instance = self._instances.get(execution_id)
        return instance.model_copy(deep=True) if instance is not None else None

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = 100,
    ) -> list[ExecutionInstance]:
        instances = [i.model_copy(deep=True) for i in self._instances.values()]
        return _filter(instances, status, workflow_id, limit)

    async def append_event(self, execution_id: str, record: EventLogRecord) -> None:
        self._events.setdefault(execution_id, []).append(record.model_copy(deep=True))

    async def read_events(self, execution_id: str) -> list[EventLogRecord]:
        return [r.model_copy(deep=True) for r in self._events.get(execution_id, [])]

    async def delete(self, execution_id: str) -> bool:
        self._events.pop(execution_id, None)
        return self._instances.pop(execution_id, None) is not None


class FileExecutionStore(ExecutionStore):
    """
    JSON-file store. Blocking I/O runs in worker threads.

    Example:
        store = FileExecutionStore(Path("~/.flowcore/storage").expanduser())
        await store.save(instance)
        restored = await store.load(instance.id)
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.workflows_dir = self.base_path / "workflows"
        self.executions_dir = self.base_path / "executions"

    def get_execution_path(self, execution_id: str) -> Path:
        return self.executions_dir / execution_id

    def get_state_path(self, execution_id: str) -> Path:
        return self.get_execution_path(execution_id) / "state.json"

    def get_events_path(self, execution_id: str) -> Path:
        return self.get_execution_path(execution_id) / "events.jsonl"

    def get_workflow_path(self, workflow_id: str, version: int) -> Path:
        return self.workflows_dir / workflow_id / f"v{version}.json"

    async def save_workflow(self, graph: GraphSpec) -> None:
        def _write():
            path = self.get_workflow_path(graph.id, graph.version)
            path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(path) as f:
                f.write(graph.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote workflow {graph.id} v{graph.version}")

    async def list_workflow_versions(self, workflow_id: str) -> list[int]:
        def _scan():
            directory = self.workflows_dir / workflow_id
            if not directory.exists():
                return []
            versions = []
            for path in directory.glob("v*.json"):
                suffix = path.stem[1:]
                if suffix.isdigit():
                    versions.append(int(suffix))
            return sorted(versions)

        return await asyncio.to_thread(_scan)

    async def load_workflow(self, workflow_id: str, version: int | None = None) -> GraphSpec | None:
        if version is None:
            versions = await self.list_workflow_versions(workflow_id)
            if not versions:
                return None
            version = versions[-1]

        def _read():
            path = self.get_workflow_path(workflow_id, version)
            if not path.exists():
                return None
            return GraphSpec.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def save(self, instance: ExecutionInstance) -> None:
        """Atomically write state.json (temp file + rename)."""

        def _write():
            path = self.get_state_path(instance.id)
            path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(path) as f:
                f.write(instance.model_dump_json(indent=2))

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote state.json for execution {instance.id}")

    async def load(self, execution_id: str) -> ExecutionInstance | None:
        def _read():
            path = self.get_state_path(execution_id)
            if not path.exists():
                return None
            return ExecutionInstance.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = 100,
    ) -> list[ExecutionInstance]:
        def _scan():
            instances = []
            if not self.executions_dir.exists():
                return instances
            for execution_dir in self.executions_dir.iterdir():
                state_path = execution_dir / "state.json"
                if not state_path.exists():
                    continue
                try:
                    text = state_path.read_text(encoding="utf-8")
                    instances.append(ExecutionInstance.model_validate_json(text))
                except ValueError as e:
                    logger.warning(f"Failed to load {state_path}: {e}")
            return instances

        instances = await asyncio.to_thread(_scan)
        return _filter(instances, status, workflow_id, limit)

    async def append_event(self, execution_id: str, record: EventLogRecord) -> None:
        def _append():
            path = self.get_events_path(execution_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(record.model_dump_json() + "\n")

        await asyncio.to_thread(_append)

    async def read_events(self, execution_id: str) -> list[EventLogRecord]:
        def _read():
            path = self.get_events_path(execution_id)
            if not path.exists():
                return []
            records = []
            with open(path, encoding="utf-8") as f:
                for line_no, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(EventLogRecord.model_validate(json.loads(line)))
                    except ValueError as e:
                        # A torn final line after a crash is expected; anything else is not
                        logger.warning(f"Skipping unreadable event log line {line_no}: {e}")
            return records

        return await asyncio.to_thread(_read)

    async def delete(self, execution_id: str) -> bool:
        def _delete():
            path = self.get_execution_path(execution_id)
            if not path.exists():
                return False
            shutil.rmtree(path)
            logger.info(f"Deleted execution {execution_id}")
            return True

        return await asyncio.to_thread(_delete)
