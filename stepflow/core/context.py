"""Per-run execution state.

An ExecutionContext is created fresh for each run and discarded afterwards.
It holds one NodeState per scheduled node, the stack of active loop frames and
the ordered list of activated edges. Only the scheduler mutates it; the template
resolver reads it.

The final snapshot (RunResult) is the only artifact handed back to callers.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from stepflow.core.exceptions import ErrorKind, WorkflowError

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NodeStatus(str, Enum):
    """Execution status for nodes"""

    PENDING = "pending"  # Scheduled, not yet started
    RUNNING = "running"  # Step invocation in flight
    SUCCEEDED = "succeeded"  # Output recorded
    FAILED = "failed"  # Step raised or inputs could not be resolved
    SKIPPED = "skipped"  # No incoming edge fired

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class RunStatus(str, Enum):
    """Run lifecycle: not_started -> running -> completed | failed"""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorInfo(BaseModel):
    kind: ErrorKind
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        if isinstance(exc, WorkflowError):
            return cls(kind=exc.kind, message=str(exc))
        return cls(kind=ErrorKind.STEP_EXECUTION, message=f"{type(exc).__name__}: {exc}")


class ResolutionWarning(BaseModel):
    """Non-fatal template problem attached to the consuming node"""

    kind: str
    reference: str
    message: str


class NodeState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: ErrorInfo | None = None
    selected_branch: str | None = Field(default=None, alias="selectedBranch")
    warnings: list[ResolutionWarning] = Field(default_factory=list)
    started_at: datetime | None = Field(default=None, alias="startedAt")
    finished_at: datetime | None = Field(default=None, alias="finishedAt")


@dataclass
class LoopFrame:
    """Bookkeeping for an in-progress Loop Over Batches node"""

    loop_node_id: str
    batches: list[list[Any]]
    current_batch_index: int = 0
    accumulated_results: list[Any] = field(default_factory=list)

    @property
    def current_batch(self) -> list[Any]:
        return self.batches[self.current_batch_index]

    def view(self) -> dict[str, Any]:
        """What body nodes see when they reference the running loop node"""
        return {
            "batch": self.current_batch,
            "batchIndex": self.current_batch_index,
            "batchCount": len(self.batches),
            "accumulatedResults": list(self.accumulated_results),
        }


class RunResult(BaseModel):
    """Serializable run outcome handed back to the caller"""

    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(alias="runId")
    workflow_id: str = Field(alias="workflowId")
    status: RunStatus
    node_states: dict[str, NodeState] = Field(alias="nodeStates")
    activated_edges: list[str] = Field(default_factory=list, alias="activatedEdges")
    webhook_response: dict[str, Any] | None = Field(default=None, alias="webhookResponse")
    error: ErrorInfo | None = None
    started_at: datetime | None = Field(default=None, alias="startedAt")
    finished_at: datetime | None = Field(default=None, alias="finishedAt")

    def to_document(self) -> dict[str, Any]:
        """JSON-compatible dict with camelCase keys"""
        return self.model_dump(mode="json", by_alias=True)

    def statuses(self) -> dict[str, NodeStatus]:
        return {node_id: state.status for node_id, state in self.node_states.items()}


class ExecutionContext:
    """Mutable state store for a single run."""

    def __init__(self, workflow_id: str, run_id: str | None = None):
        self.workflow_id = workflow_id
        self.run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        self.status = RunStatus.NOT_STARTED
        self.node_states: dict[str, NodeState] = {}
        self.loop_frames: list[LoopFrame] = []
        self.activated_edges: list[str] = []
        self.webhook_response: dict[str, Any] | None = None
        self.error: ErrorInfo | None = None
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None

    # ------------------------------------------------------------------
    # Node state transitions
    # ------------------------------------------------------------------

    def schedule(self, node_id: str) -> NodeState:
        """Create (or recreate, inside a loop iteration) a Pending state"""
        state = NodeState()
        self.node_states[node_id] = state
        return state

    def state(self, node_id: str) -> NodeState | None:
        return self.node_states.get(node_id)

    def mark_running(self, node_id: str) -> None:
        state = self.node_states[node_id]
        state.status = NodeStatus.RUNNING
        state.started_at = _now()
        logger.debug(f"[{self.run_id}] {node_id}: running")

    def mark_succeeded(self, node_id: str, output: Any, selected_branch: str | None = None) -> None:
        state = self.node_states[node_id]
        state.status = NodeStatus.SUCCEEDED
        state.output = output
        state.selected_branch = selected_branch
        state.finished_at = _now()
        logger.debug(
            f"[{self.run_id}] {node_id}: succeeded"
            + (f" (branch '{selected_branch}')" if selected_branch else "")
        )

    def mark_failed(self, node_id: str, error: ErrorInfo) -> None:
        state = self.node_states.get(node_id) or self.schedule(node_id)
        state.status = NodeStatus.FAILED
        state.error = error
        state.finished_at = _now()
        logger.debug(f"[{self.run_id}] {node_id}: failed ({error.kind.value})")

    def mark_skipped(self, node_id: str) -> None:
        state = self.node_states.get(node_id) or self.schedule(node_id)
        state.status = NodeStatus.SKIPPED
        logger.debug(f"[{self.run_id}] {node_id}: skipped")

    def reset(self, node_ids) -> None:
        """Forget states of loop body nodes before the next iteration"""
        for node_id in node_ids:
            self.node_states.pop(node_id, None)

    def has_failures(self) -> bool:
        return any(s.status == NodeStatus.FAILED for s in self.node_states.values())

    def record_edge(self, edge_id: str) -> None:
        self.activated_edges.append(edge_id)

    # ------------------------------------------------------------------
    # Loop frames
    # ------------------------------------------------------------------

    def push_frame(self, frame: LoopFrame) -> None:
        self.loop_frames.append(frame)

    def pop_frame(self) -> LoopFrame:
        return self.loop_frames.pop()

    def active_frame(self, loop_node_id: str) -> LoopFrame | None:
        for frame in reversed(self.loop_frames):
            if frame.loop_node_id == loop_node_id:
                return frame
        return None

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            workflow_id=self.workflow_id,
            status=self.status,
            node_states={k: v.model_copy(deep=True) for k, v in self.node_states.items()},
            activated_edges=list(self.activated_edges),
            webhook_response=self.webhook_response,
            error=self.error,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )
