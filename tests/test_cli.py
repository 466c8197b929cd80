"""
Tests for the darwin-cli command-line interface.
"""

import json
import tempfile
from pathlib import Path

import pytest

from darwinforge.cli.darwin_cli import build_parser, main
from darwinforge.db import DATA_DIR


NOW = 1_700_000_000_000


@pytest.fixture
def temp_project(monkeypatch):
    for name in ("DARWIN_AUTOMATION_LEVEL", "DARWIN_DOOM_LOOP_THRESHOLD",
                 "DARWIN_MAX_DAILY_RUNS", "DARWIN_MAX_DAILY_ROLLBACKS"):
        monkeypatch.delenv(name, raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def trace_file(temp_project):
    path = temp_project / "traces.jsonl"
    records = [
        {
            "id": f"e{i}",
            "timestamp": NOW + i,
            "type": "tool_error",
            "taskId": "task-1",
            "summary": "apply_diff failed",
            "toolName": "apply_diff",
            "errorMessage": "Patch failed to apply",
        }
        for i in range(4)
    ]
    path.write_text("\n".join(json.dumps(r) for r in records))
    return path


class TestParser:
    def test_heal_rollback_requires_reason(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["heal", "rollback", "app-1"])

    def test_no_command(self, temp_project):
        assert main(["--project-dir", str(temp_project)]) == 1


class TestCommands:
    """Tests for individual commands."""

    def test_analyze(self, temp_project, trace_file):
        assert main(["--project-dir", str(temp_project), "analyze", str(trace_file)]) == 0
        assert not (temp_project / DATA_DIR / "darwin.db").exists()

    def test_analyze_save(self, temp_project, trace_file):
        assert main(["--project-dir", str(temp_project), "analyze", str(trace_file), "--save"]) == 0
        assert (temp_project / DATA_DIR / "darwin.db").exists()

    def test_analyze_missing_file(self, temp_project):
        assert main(["--project-dir", str(temp_project), "analyze", str(temp_project / "none.json")]) == 2

    def test_auto_apply_manual_level(self, temp_project):
        assert main(["--project-dir", str(temp_project), "auto-apply", "docs/readme.md"]) == 1

    def test_auto_apply_allowed(self, temp_project, monkeypatch):
        monkeypatch.setenv("DARWIN_AUTOMATION_LEVEL", "2")
        assert main(["--project-dir", str(temp_project), "auto-apply", "docs/readme.md"]) == 0

    def test_trigger(self, temp_project, monkeypatch):
        monkeypatch.setenv("DARWIN_AUTOMATION_LEVEL", "1")
        assert main(["--project-dir", str(temp_project), "trigger", "--cost", "150"]) == 0

    def test_invalid_config(self, temp_project, monkeypatch):
        monkeypatch.setenv("DARWIN_AUTOMATION_LEVEL", "9")
        assert main(["--project-dir", str(temp_project), "trigger", "--cost", "1"]) == 2

    def test_heal_status_empty(self, temp_project):
        assert main(["--project-dir", str(temp_project), "heal", "status"]) == 0

    def test_heal_rollback_unknown(self, temp_project):
        assert main(["--project-dir", str(temp_project), "heal", "rollback", "nope", "--reason", "bad"]) == 1
