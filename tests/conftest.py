# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the stepflow test suite.

This module provides:
- A compact builder for workflow definitions
- Offline dispatchers (no entry-point discovery, optional step overrides)
- A helper that executes a run to completion

Usage:
    Fixtures are discovered by pytest automatically.

Example:
    def test_something(build_workflow, run_workflow):
        wf = build_workflow(
            [("trigger", "manual"), ("double", "code", {"expression": "input.n * 2"})],
            [("trigger", "double")],
        )
        result = run_workflow(wf, {"n": 2})
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from stepflow.core.config import EngineConfig
from stepflow.core.dispatcher import StepDispatcher
from stepflow.core.graph_schema import WorkflowDefinition
from stepflow.core.scheduler import RunScheduler
from stepflow.steps import TRIGGER_KEYS, build_builtin_steps


def edge_id(source: str, target: str, label: str | None = None) -> str:
    """Edge id used by build_workflow: ``source->target`` plus ``:label``"""
    return f"{source}->{target}" + (f":{label}" if label else "")


# =============================================================================
# Definition Fixtures
# =============================================================================


@pytest.fixture
def build_workflow() -> Callable[..., WorkflowDefinition]:
    """Build a WorkflowDefinition from tuples.

    Nodes are ``(id, actionKey)`` or ``(id, actionKey, config)``; trigger keys
    produce trigger nodes. Edges are ``(source, target)`` or
    ``(source, target, branchLabel)`` and get ids from ``edge_id``.
    """

    def _build(
        nodes: list[tuple],
        edges: list[tuple],
        workflow_id: str = "wf-test",
        name: str = "Test workflow",
    ) -> WorkflowDefinition:
        node_docs = []
        for row in nodes:
            node_id, action_key = row[0], row[1]
            config = row[2] if len(row) > 2 else {}
            node_docs.append(
                {
                    "id": node_id,
                    "kind": "trigger" if action_key in TRIGGER_KEYS else "action",
                    "actionKey": action_key,
                    "config": config,
                    "label": node_id.replace("_", " ").title(),
                }
            )
        edge_docs = []
        for row in edges:
            source, target = row[0], row[1]
            label = row[2] if len(row) > 2 else None
            edge_docs.append(
                {
                    "id": edge_id(source, target, label),
                    "sourceNodeId": source,
                    "targetNodeId": target,
                    "branchLabel": label,
                }
            )
        return WorkflowDefinition.model_validate(
            {"id": workflow_id, "name": name, "nodes": node_docs, "edges": edge_docs}
        )

    return _build


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def make_dispatcher() -> Callable[..., StepDispatcher]:
    """Dispatcher factory that never scans installed entry points.

    ``overrides`` replace or add built-in steps, e.g. a stub ``http-request``.
    """

    def _make(
        config: EngineConfig | None = None,
        overrides: dict[str, Callable] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        plugins: dict[str, str] | None = None,
    ) -> StepDispatcher:
        config = config or EngineConfig()
        builtins = build_builtin_steps(config, http_transport)
        builtins.update(overrides or {})
        return StepDispatcher(
            config, builtins=builtins, plugins=plugins, discover_entry_points=False
        )

    return _make


@pytest.fixture
def dispatcher(make_dispatcher, engine_config) -> StepDispatcher:
    return make_dispatcher(engine_config)


@pytest.fixture
def run_workflow(make_dispatcher) -> Callable[..., Any]:
    """Execute a definition to completion and return the RunResult"""

    def _run(
        definition: WorkflowDefinition,
        trigger_input: Any = None,
        config: EngineConfig | None = None,
        overrides: dict[str, Callable] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        config = config or EngineConfig()
        scheduler = RunScheduler(
            make_dispatcher(config, overrides, http_transport), config
        )
        return asyncio.run(scheduler.run(definition, trigger_input))

    return _run
