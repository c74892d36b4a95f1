"""
Command-line interface for FlowCore.

Usage:
    flowcore validate workflows/purchase-approval.json
    flowcore inspect exec_20250101_120000_ab12cd34 --store ~/.flowcore/storage
    flowcore list --store ~/.flowcore/storage --status running
    flowcore rebuild exec_20250101_120000_ab12cd34 --store ~/.flowcore/storage
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from flowcore.config import get_log_format, get_log_level, get_storage_path
from flowcore.errors import FlowCoreError, ValidationError
from flowcore.graph.validator import GraphValidator
from flowcore.observability import configure_logging
from flowcore.runtime.engine import WorkflowEngine
from flowcore.schemas.execution import ExecutionStatus
from flowcore.storage.execution_store import FileExecutionStore


DEFAULT_STORE = Path.home() / ".flowcore" / "storage"


def _engine(args: argparse.Namespace) -> WorkflowEngine:
    if args.store:
        store_path = Path(args.store).expanduser()
    else:
        store_path = get_storage_path() or DEFAULT_STORE
    return WorkflowEngine(store=FileExecutionStore(store_path))


def cmd_validate(args: argparse.Namespace) -> int:
    path = Path(args.graph)
    try:
        definition = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: cannot read {path}: {e}", file=sys.stderr)
        return 1

    validator = GraphValidator()
    try:
        compiled = validator.compile(definition)
    except ValidationError as e:
        print(f"{path}: {len(e.errors)} error(s)")
        for error in e.errors:
            print(f"  - {error}")
        return 1

    spec = compiled.spec
    print(f"{path}: workflow '{spec.id}' v{spec.version} is valid")
    print(f"  nodes: {len(spec.nodes)}  edges: {len(spec.edges)}")
    for parallel_id, join_id in compiled.join_nodes.items():
        print(f"  parallel '{parallel_id}' joins at {join_id or '(end)'}")
    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    async def _inspect():
        return await _engine(args).get_snapshot(args.execution_id)

    try:
        snapshot = asyncio.run(_inspect())
    except FlowCoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(snapshot.model_dump_json(indent=2))
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    status = ExecutionStatus(args.status) if args.status else None

    async def _list():
        return await _engine(args).list_executions(status, args.workflow, args.limit)

    snapshots = asyncio.run(_list())
    if args.json:
        print(json.dumps([s.model_dump(mode="json") for s in snapshots], indent=2))
        return 0
    if not snapshots:
        print("No executions found")
        return 0
    for snapshot in snapshots:
        print(
            f"{snapshot.execution_id}  {snapshot.workflow_id} v{snapshot.workflow_version}  "
            f"{snapshot.status}  steps={snapshot.metrics.total_steps}"
        )
    return 0


def cmd_rebuild(args: argparse.Namespace) -> int:
    async def _rebuild():
        return await _engine(args).rebuild_from_log(args.execution_id)

    try:
        snapshot = asyncio.run(_rebuild())
    except FlowCoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Rebuilt {snapshot.execution_id}: {snapshot.status}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowcore",
        description="FlowCore - Validate workflows and inspect executions",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow definition")
    validate_parser.add_argument("graph", help="Path to a workflow definition (JSON)")
    validate_parser.set_defaults(func=cmd_validate)

    inspect_parser = subparsers.add_parser("inspect", help="Print an execution snapshot")
    inspect_parser.add_argument("execution_id")
    inspect_parser.add_argument("--store", help="Storage directory (default from config)")
    inspect_parser.set_defaults(func=cmd_inspect)

    list_parser = subparsers.add_parser("list", help="List executions")
    list_parser.add_argument("--store", help="Storage directory (default from config)")
    list_parser.add_argument(
        "--status", choices=[s.value for s in ExecutionStatus], help="Filter by status"
    )
    list_parser.add_argument("--workflow", help="Filter by workflow id")
    list_parser.add_argument("--limit", type=int, default=100)
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.set_defaults(func=cmd_list)

    rebuild_parser = subparsers.add_parser(
        "rebuild", help="Recompute an execution snapshot from its event log"
    )
    rebuild_parser.add_argument("execution_id")
    rebuild_parser.add_argument("--store", help="Storage directory (default from config)")
    rebuild_parser.set_defaults(func=cmd_rebuild)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=get_log_level(), format=get_log_format())
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
