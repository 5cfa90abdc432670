"""Tests for CLI commands.

Tests the stepflow CLI commands using Click's CliRunner:
- validate: Check a workflow file
- run: Execute a workflow
- steps: List action keys
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from stepflow.cli import main
from stepflow.core.config import ENV_CONFIG_VAR

WORKFLOW = {
    "id": "wf-cli",
    "name": "CLI workflow",
    "nodes": [
        {"id": "trigger", "kind": "trigger", "actionKey": "manual", "label": "Start"},
        {
            "id": "cond",
            "kind": "action",
            "actionKey": "condition",
            "label": "Big order?",
            "config": {"condition": "{{@trigger:Start.total}} > 100"},
        },
        {
            "id": "big",
            "kind": "action",
            "actionKey": "code",
            "config": {"expression": "'big'"},
        },
        {
            "id": "small",
            "kind": "action",
            "actionKey": "code",
            "config": {"expression": "'small'"},
        },
    ],
    "edges": [
        {"id": "e1", "sourceNodeId": "trigger", "targetNodeId": "cond"},
        {"id": "e2", "sourceNodeId": "cond", "targetNodeId": "big", "branchLabel": "true"},
        {"id": "e3", "sourceNodeId": "cond", "targetNodeId": "small", "branchLabel": "false"},
    ],
}


@pytest.fixture
def cli_runner(monkeypatch) -> CliRunner:
    """Create a Click CLI test runner."""
    monkeypatch.delenv(ENV_CONFIG_VAR, raising=False)
    return CliRunner()


@pytest.fixture
def workflow_file(tmp_path) -> Path:
    path = tmp_path / "workflow.yaml"
    path.write_text(yaml.safe_dump(WORKFLOW))
    return path


class TestValidateCommand:
    """Tests for 'stepflow validate'."""

    def test_valid_workflow(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["validate", str(workflow_file)])
        assert result.exit_code == 0
        assert "Workflow is valid" in result.output
        assert "Big order?" in result.output
        assert "Nodes:" in result.output

    def test_json_files_are_accepted(self, cli_runner, tmp_path):
        path = tmp_path / "workflow.json"
        path.write_text(json.dumps(WORKFLOW))
        result = cli_runner.invoke(main, ["validate", str(path)])
        assert result.exit_code == 0

    def test_structural_errors(self, cli_runner, tmp_path):
        broken = {**WORKFLOW, "edges": WORKFLOW["edges"][1:]}
        path = tmp_path / "broken.yaml"
        path.write_text(yaml.safe_dump(broken))
        result = cli_runner.invoke(main, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Validation Errors" in result.output
        assert "has no incoming edge" in result.output

    def test_schema_errors(self, cli_runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"id": "x", "name": "x", "nodes": [{"id": "a"}]}))
        result = cli_runner.invoke(main, ["validate", str(path)])
        assert result.exit_code == 1
        assert "Schema validation failed" in result.output

    def test_missing_file(self, cli_runner):
        result = cli_runner.invoke(main, ["validate", "nope.yaml"])
        assert result.exit_code != 0


class TestRunCommand:
    """Tests for 'stepflow run'."""

    def test_run_as_json(self, cli_runner, workflow_file):
        result = cli_runner.invoke(
            main, ["run", str(workflow_file), "--input", '{"total": 250}', "--json"]
        )
        assert result.exit_code == 0
        document = json.loads(result.output)
        assert document["status"] == "completed"
        assert document["nodeStates"]["cond"]["selectedBranch"] == "true"
        assert document["nodeStates"]["big"]["output"] == "big"
        assert document["nodeStates"]["small"]["status"] == "skipped"
        assert document["activatedEdges"] == ["e1", "e2"]

    def test_run_table(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["run", str(workflow_file), "--input", '{"total": 5}'])
        assert result.exit_code == 0
        assert "Run completed" in result.output

    def test_failed_run_exits_nonzero(self, cli_runner, tmp_path):
        failing = json.loads(json.dumps(WORKFLOW))
        failing["nodes"][2]["config"] = {"expression": "1 / 0"}
        path = tmp_path / "failing.yaml"
        path.write_text(yaml.safe_dump(failing))
        result = cli_runner.invoke(main, ["run", str(path), "--input", '{"total": 500}'])
        assert result.exit_code == 1
        assert "Run failed" in result.output

    def test_invalid_input_json(self, cli_runner, workflow_file):
        result = cli_runner.invoke(main, ["run", str(workflow_file), "--input", "{nope"])
        assert result.exit_code == 1
        assert "not valid JSON" in result.output

    def test_strict_flag(self, cli_runner, tmp_path):
        strict = json.loads(json.dumps(WORKFLOW))
        strict["nodes"][1]["config"] = {"condition": "{{@trigger:Start.missing}}"}
        path = tmp_path / "strict.yaml"
        path.write_text(yaml.safe_dump(strict))

        lenient = cli_runner.invoke(main, ["run", str(path), "--json"])
        assert lenient.exit_code == 0

        result = cli_runner.invoke(main, ["run", str(path), "--strict", "--json"])
        assert result.exit_code == 1
        assert '"kind": "PathNotFound"' in result.output


class TestStepsCommand:
    """Tests for 'stepflow steps'."""

    def test_lists_builtins(self, cli_runner):
        result = cli_runner.invoke(main, ["steps", "--builtin-only"])
        assert result.exit_code == 0
        assert "loop-over-batches" in result.output
        assert "http-request" in result.output


class TestVersion:
    def test_version(self, cli_runner):
        result = cli_runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output
