"""Tests for the command-line entry point."""

import json
import logging

import pytest

from main import main
from src.approval_engine import default_workflows
from src.approval_engine.serialization import workflow_to_dict


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestValidateCommand:
    def test_valid_catalogue(self, tmp_path, capsys):
        path = tmp_path / "workflows.json"
        path.write_text(json.dumps([workflow_to_dict(w) for w in default_workflows()]))

        assert main(["validate", str(path)]) == 0
        out = capsys.readouterr().out
        assert "leave-standard: ok" in out

    def test_invalid_and_malformed(self, tmp_path, capsys):
        path = tmp_path / "workflows.json"
        path.write_text(json.dumps([
            {"workflow_id": "bad", "name": "Bad", "request_type": "leave_request",
             "steps": [{"approver": {"kind": "specific"}}]},
            {"name": "missing id"},
        ]))

        assert main(["validate", str(path)]) == 1
        out = capsys.readouterr().out
        assert "bad: INVALID" in out
        assert "malformed definition" in out


class TestEngineCommands:
    def test_workflows_listing(self, capsys):
        assert main(["workflows"]) == 0
        assert "leave-standard" in capsys.readouterr().out

    def test_stats_on_empty_engine(self, capsys, monkeypatch):
        monkeypatch.setenv("APPROVALS_LOG_LEVEL", "WARNING")
        assert main(["stats"]) == 0
        assert json.loads(capsys.readouterr().out)["total_requests"] == 0
