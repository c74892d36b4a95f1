"""Tests for the flowcore command-line interface."""

import asyncio
import json
from pathlib import Path

import pytest

from flowcore.cli import build_parser, main
from flowcore.runtime.engine import WorkflowEngine
from flowcore.runtime.timers import ManualTimerService
from flowcore.storage.execution_store import FileExecutionStore


def review_graph() -> dict:
    return {
        "id": "purchase",
        "version": 2,
        "nodes": [
            {"id": "start", "kind": "start"},
            {"id": "review", "kind": "approval", "config": {"approvers": ["alice"]}},
            {"id": "end", "kind": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "review"},
            {"id": "e2", "source": "review", "target": "end"},
        ],
    }


def seed_store(store_path: Path) -> str:
    """Register the review workflow and start one execution in a file store."""

    async def _seed():
        engine = WorkflowEngine(store=FileExecutionStore(store_path), timers=ManualTimerService())
        await engine.register(review_graph())
        return await engine.start("purchase")

    return asyncio.run(_seed())


@pytest.fixture(autouse=True)
def restore_logging(root_logger):
    """main() reconfigures the root logger."""
    yield


class TestValidate:
    def test_valid_definition(self, tmp_path: Path, capsys):
        path = tmp_path / "purchase.json"
        path.write_text(json.dumps(review_graph()))

        assert main(["validate", str(path)]) == 0

        out = capsys.readouterr().out
        assert "workflow 'purchase' v2 is valid" in out
        assert "nodes: 3  edges: 2" in out

    def test_invalid_definition_lists_errors(self, tmp_path: Path, capsys):
        definition = review_graph()
        definition["edges"].append({"id": "e3", "source": "review", "target": "ghost"})
        path = tmp_path / "broken.json"
        path.write_text(json.dumps(definition))

        assert main(["validate", str(path)]) == 1

        out = capsys.readouterr().out
        assert "error(s)" in out
        assert "ghost" in out

    def test_unreadable_file(self, tmp_path: Path, capsys):
        assert main(["validate", str(tmp_path / "missing.json")]) == 1

        assert "cannot read" in capsys.readouterr().err


class TestExecutionCommands:
    def test_list_empty_store(self, tmp_path: Path, capsys):
        assert main(["list", "--store", str(tmp_path)]) == 0

        assert "No executions found" in capsys.readouterr().out

    def test_list_seeded_store(self, tmp_path: Path, capsys):
        execution_id = seed_store(tmp_path)

        assert main(["list", "--store", str(tmp_path), "--status", "running"]) == 0
        out = capsys.readouterr().out
        assert execution_id in out
        assert "purchase v2" in out

        assert main(["list", "--store", str(tmp_path), "--json"]) == 0
        listed = json.loads(capsys.readouterr().out)
        assert [s["execution_id"] for s in listed] == [execution_id]

        assert main(["list", "--store", str(tmp_path), "--status", "completed"]) == 0
        assert "No executions found" in capsys.readouterr().out

    def test_inspect(self, tmp_path: Path, capsys):
        execution_id = seed_store(tmp_path)

        assert main(["inspect", execution_id, "--store", str(tmp_path)]) == 0

        snapshot = json.loads(capsys.readouterr().out)
        assert snapshot["status"] == "running"
        assert snapshot["approvals"]["review"]["approvers"] == ["alice"]

    def test_inspect_unknown_execution(self, tmp_path: Path, capsys):
        assert main(["inspect", "exec_missing", "--store", str(tmp_path)]) == 1

        assert "Error" in capsys.readouterr().err

    def test_rebuild(self, tmp_path: Path, capsys):
        execution_id = seed_store(tmp_path)

        assert main(["rebuild", execution_id, "--store", str(tmp_path)]) == 0

        assert f"Rebuilt {execution_id}: running" in capsys.readouterr().out

    def test_store_from_environment(self, tmp_path: Path, monkeypatch, capsys):
        execution_id = seed_store(tmp_path)
        monkeypatch.setenv("FLOWCORE_STORAGE_PATH", str(tmp_path))

        assert main(["list"]) == 0

        assert execution_id in capsys.readouterr().out


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
