"""Core engine: graph model, template resolution, execution context and scheduler."""

from stepflow.core.config import EngineConfig, load_config
from stepflow.core.context import NodeState, NodeStatus, RunResult, RunStatus
from stepflow.core.dispatcher import StepDispatcher
from stepflow.core.graph_schema import Edge, Node, WorkflowDefinition
from stepflow.core.scheduler import RunScheduler, WorkflowRun

__all__ = [
    "Edge",
    "EngineConfig",
    "Node",
    "NodeState",
    "NodeStatus",
    "RunResult",
    "RunScheduler",
    "RunStatus",
    "StepDispatcher",
    "WorkflowDefinition",
    "WorkflowRun",
    "load_config",
]
