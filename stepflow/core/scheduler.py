"""Run scheduler: drives one workflow run from trigger to a terminal state.

Execution model:
- A run walks its scope's topological order one node at a time. Independent
  branches are not run concurrently; distinct runs are independent tasks.
- A node runs when at least one incoming edge fired. A node none of whose
  incoming edges fired is Skipped (branch not taken, or upstream failed/skipped).
- Condition/Switch fire only the edge matching the selected branch and pass
  their own input through. Filter fires each non-empty partition. Loop Over
  Batches runs its body once per batch before firing ``done``. Every other
  node fires all outgoing edges with its output.
- A disabled node (``enabled: false``) is not invoked: it succeeds with a null
  output and fires all its forward edges.
- A step returning ``{"success": False, "error": ...}`` fails its node.
- Merge nodes need no special waiting: topological order guarantees all their
  predecessors are terminal before they are reached.

Failure policy:
- fail_fast (default): the first failed node ends the run.
- otherwise sibling branches continue; the run still ends Failed.
- UnknownStep and Cancelled always end the run.

Run timeout and ``WorkflowRun.cancel()`` abort the in-flight step invocation.
Step side effects are not rolled back.
"""

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from stepflow.core.config import EngineConfig
from stepflow.core.context import (
    ErrorInfo,
    ExecutionContext,
    LoopFrame,
    NodeStatus,
    RunResult,
    RunStatus,
)
from stepflow.core.dispatcher import StepDispatcher
from stepflow.core.exceptions import (
    ErrorKind,
    ResolutionError,
    RunCancelledError,
    StepExecutionError,
    WorkflowError,
)
from stepflow.core.graph_schema import (
    CONDITION,
    FILTER,
    LOOP_BATCH,
    LOOP_DONE,
    LOOP_OVER_BATCHES,
    SWITCH,
    Edge,
    Node,
    WorkflowDefinition,
)
from stepflow.core.templates import TemplateResolver
from stepflow.steps.webhook import WEBHOOK_RESPONSE_KEY

logger = logging.getLogger(__name__)

# Failures that end the run regardless of fail_fast
RUN_FATAL_KINDS = frozenset({ErrorKind.UNKNOWN_STEP, ErrorKind.CANCELLED})

Arrivals = dict[str, list[tuple[Edge, Any]]]


class _RunAborted(Exception):
    """Unwinds nested scopes after a run-ending failure."""

    def __init__(self, error: ErrorInfo):
        self.error = error
        super().__init__(error.message)


class WorkflowRun:
    """A single execution of a workflow definition.

    Created by RunScheduler.create_run(); ``execute()`` may be awaited once.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        dispatcher: StepDispatcher,
        config: EngineConfig,
        trigger_input: Any = None,
        run_id: str | None = None,
    ) -> None:
        self.definition = definition
        self.topology = definition.topology()
        self.dispatcher = dispatcher
        self.config = config
        self.trigger_input = trigger_input
        self.nodes = {n.id: n for n in definition.nodes}
        self._edge_rank = {e.id: i for i, e in enumerate(definition.edges)}
        self.context = ExecutionContext(definition.id, run_id)
        self.resolver = TemplateResolver(
            policy=config.resolution_policy,
            labels={n.id: n.label for n in definition.nodes},
            warn_on_label_mismatch=config.warn_on_label_mismatch,
        )
        self._cancel_requested = asyncio.Event()
        self._cancel_reason: str | None = None
        self._deadline: float | None = None

    @property
    def run_id(self) -> str:
        return self.context.run_id

    def cancel(self, reason: str = "Run cancelled") -> None:
        """Request cancellation. Must be called from the run's event loop."""
        self._cancel_reason = reason
        self._cancel_requested.set()

    async def execute(self) -> RunResult:
        ctx = self.context
        if ctx.status != RunStatus.NOT_STARTED:
            raise RuntimeError(f"Run {self.run_id} has already been executed")

        ctx.status = RunStatus.RUNNING
        ctx.started_at = datetime.now(timezone.utc)
        if self.config.run_timeout:
            self._deadline = asyncio.get_running_loop().time() + self.config.run_timeout
        logger.info(
            f"Run {self.run_id} started: workflow '{self.definition.name}' "
            f"({len(self.nodes)} nodes)"
        )

        try:
            await self._run_scope(None, {})
        except _RunAborted as abort:
            if ctx.error is None:
                ctx.error = abort.error
        except asyncio.CancelledError:
            self._abandon_in_flight("Run task was cancelled")
            self._finish()
            raise

        self._finish()
        return ctx.snapshot()

    # ------------------------------------------------------------------
    # Scope traversal
    # ------------------------------------------------------------------

    async def _run_scope(self, scope: str | None, arrivals: Arrivals) -> None:
        """Run one scope: the outer graph (None) or one loop body"""
        for node_id in self.topology.orders[scope]:
            try:
                self._raise_if_cancelled()
            except RunCancelledError as e:
                error = ErrorInfo.from_exception(e)
                self.context.error = error
                logger.warning(f"Run {self.run_id}: {error.message}")
                raise _RunAborted(error)

            node = self.nodes[node_id]
            # Inputs are ordered by edge declaration, not arrival
            fired = sorted(arrivals.get(node_id, []), key=lambda a: self._edge_rank[a[0].id])
            if not node.is_trigger and not fired:
                self.context.mark_skipped(node_id)
                continue
            await self._execute_node(node, fired, arrivals)

    async def _execute_node(
        self, node: Node, fired: list[tuple[Edge, Any]], arrivals: Arrivals
    ) -> None:
        ctx = self.context
        state = ctx.schedule(node.id)
        if not node.enabled:
            logger.debug(f"[{self.run_id}] {node.id}: disabled, passing flow through")
            ctx.mark_succeeded(node.id, None)
            self._pass_through(node, arrivals)
            return
        node_input = fired[0][1] if fired else self.trigger_input

        try:
            resolved, warnings = self.resolver.resolve_config(node.config, ctx)
        except ResolutionError as e:
            self._fail(node, e)
            return
        state.warnings = warnings

        payload = {
            **resolved,
            "_input": node_input,
            "_inputs": [value for _, value in fired],
            "_context": {"runId": self.run_id, "nodeId": node.id, "actionKey": node.action_key},
        }

        ctx.mark_running(node.id)
        try:
            output = await self._invoke(node, payload)
            self._raise_for_error_result(node, output)
            if node.action_key == LOOP_OVER_BATCHES:
                output = await self._run_loop(node, output)
            branch = self._selected_branch(node, output)
        except _RunAborted as abort:
            ctx.mark_failed(
                node.id,
                ErrorInfo(kind=abort.error.kind, message=f"Loop body failed: {abort.error.message}"),
            )
            raise
        except Exception as e:
            self._fail(node, e)
            return

        ctx.mark_succeeded(node.id, output, branch)
        if isinstance(output, dict) and WEBHOOK_RESPONSE_KEY in output:
            ctx.webhook_response = output[WEBHOOK_RESPONSE_KEY]
        self._activate_edges(node, output, node_input, arrivals)

    async def _invoke(self, node: Node, payload: dict[str, Any]) -> Any:
        """Dispatch the step, racing it against cancellation and the run deadline"""
        step_task = asyncio.ensure_future(self.dispatcher.dispatch(node.action_key, payload))
        cancel_waiter = asyncio.ensure_future(self._cancel_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {step_task, cancel_waiter},
                timeout=self._remaining_time(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cancel_waiter
            if not step_task.done():
                step_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await step_task

        if step_task in done:
            return step_task.result()
        self._raise_if_cancelled()
        raise RunCancelledError(f"Run timed out after {self.config.run_timeout}s")

    # ------------------------------------------------------------------
    # Loop Over Batches
    # ------------------------------------------------------------------

    async def _run_loop(self, node: Node, chunking: Any) -> list[Any]:
        """Run the loop body once per batch, strictly in order"""
        batches = chunking.get("batches") if isinstance(chunking, dict) else None
        if not isinstance(batches, list):
            raise StepExecutionError(f"Loop node '{node.id}' did not produce batches")

        ctx = self.context
        body = self.topology.loop_bodies.get(node.id, frozenset())
        batch_edges = [
            e for e in self.topology.outgoing[node.id] if e.branch_label == LOOP_BATCH
        ]
        frame = LoopFrame(loop_node_id=node.id, batches=batches)
        ctx.push_frame(frame)
        try:
            for index in range(len(batches)):
                frame.current_batch_index = index
                ctx.reset(body)
                arrivals: Arrivals = {}
                for edge in batch_edges:
                    arrivals.setdefault(edge.target, []).append((edge, frame.current_batch))
                    ctx.record_edge(edge.id)
                logger.debug(f"[{self.run_id}] {node.id}: batch {index + 1}/{len(batches)}")

                await self._run_scope(node.id, arrivals)

                failed = [
                    n
                    for n in self.topology.flattened_order(node.id)
                    if ctx.state(n) is not None and ctx.state(n).status == NodeStatus.FAILED
                ]
                if failed:
                    error = ctx.state(failed[0]).error
                    raise StepExecutionError(
                        f"Batch {index + 1}/{len(batches)} failed at node '{failed[0]}': "
                        f"{error.message if error else 'unknown error'}"
                    )
                frame.accumulated_results.append(self._iteration_result(node.id, frame.current_batch))
        finally:
            ctx.pop_frame()
        return list(frame.accumulated_results)

    def _iteration_result(self, loop_id: str, batch: list[Any]) -> Any:
        """Output of one iteration.

        Outputs of the nodes feeding back into the loop (one value, or a list
        when several do); otherwise the last succeeded body node; otherwise
        the batch itself.
        """
        ctx = self.context
        outputs = []
        for edge in self.topology.incoming[loop_id]:
            if edge.id not in self.topology.back_edges:
                continue
            state = ctx.state(edge.source)
            if state is not None and state.status == NodeStatus.SUCCEEDED:
                outputs.append(state.output)
                ctx.record_edge(edge.id)
        if len(outputs) == 1:
            return outputs[0]
        if outputs:
            return outputs
        for node_id in reversed(self.topology.orders[loop_id]):
            state = ctx.state(node_id)
            if state is not None and state.status == NodeStatus.SUCCEEDED:
                return state.output
        return batch

    # ------------------------------------------------------------------
    # Edge activation
    # ------------------------------------------------------------------

    @staticmethod
    def _raise_for_error_result(node: Node, output: Any) -> None:
        """Steps may report failure by returning ``{"success": False, "error": ...}``"""
        if not isinstance(output, Mapping) or output.get("success") is not False:
            return
        error = output.get("error")
        if isinstance(error, Mapping):
            error = error.get("message")
        raise StepExecutionError(
            str(error) if error else f"Step '{node.action_key}' reported failure"
        )

    @staticmethod
    def _selected_branch(node: Node, output: Any) -> str | None:
        if node.action_key in (CONDITION, SWITCH):
            if not isinstance(output, dict) or output.get("branch") is None:
                raise StepExecutionError(
                    f"{node.action_key} node '{node.id}' did not select a branch"
                )
            return str(output["branch"])
        if node.action_key == FILTER and isinstance(output, dict):
            non_empty = [label for label in ("kept", "rejected") if output.get(label)]
            return non_empty[0] if len(non_empty) == 1 else None
        return None

    def _edge_fires(
        self, node: Node, edge: Edge, output: Any, node_input: Any
    ) -> tuple[bool, Any]:
        """Whether an outgoing edge fires, and the value it carries"""
        key = node.action_key
        if key in (CONDITION, SWITCH):
            selected = self.context.state(node.id).selected_branch
            return edge.branch_label == selected, node_input
        if key == FILTER:
            partition = output.get(edge.branch_label) if isinstance(output, dict) else None
            return bool(partition), partition
        if key == LOOP_OVER_BATCHES:
            return edge.branch_label == LOOP_DONE, output
        return True, output

    def _pass_through(self, node: Node, arrivals: Arrivals) -> None:
        """Fire every forward edge of a disabled node with a null value.

        A disabled loop never enters its body, so only ``done`` fires.
        """
        for edge in self.topology.outgoing[node.id]:
            if edge.id in self.topology.back_edges:
                continue
            if node.action_key == LOOP_OVER_BATCHES and edge.branch_label == LOOP_BATCH:
                continue
            arrivals.setdefault(edge.target, []).append((edge, None))
            self.context.record_edge(edge.id)

    def _activate_edges(
        self, node: Node, output: Any, node_input: Any, arrivals: Arrivals
    ) -> None:
        for edge in self.topology.outgoing[node.id]:
            if edge.id in self.topology.back_edges:
                continue
            fires, value = self._edge_fires(node, edge, output, node_input)
            if not fires:
                continue
            arrivals.setdefault(edge.target, []).append((edge, value))
            self.context.record_edge(edge.id)

    # ------------------------------------------------------------------
    # Failure and cancellation
    # ------------------------------------------------------------------

    def _fail(self, node: Node, exc: Exception) -> None:
        error = ErrorInfo.from_exception(exc)
        if isinstance(exc, WorkflowError):
            logger.warning(f"Node '{node.id}' failed ({error.kind.value}): {error.message}")
        else:
            logger.error(f"Node '{node.id}' raised {type(exc).__name__}: {exc}")
        self.context.mark_failed(node.id, error)

        if self.config.fail_fast or error.kind in RUN_FATAL_KINDS:
            if self.context.error is None:
                self.context.error = error
            raise _RunAborted(error)

    def _remaining_time(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    def _raise_if_cancelled(self) -> None:
        if self._cancel_requested.is_set():
            raise RunCancelledError(self._cancel_reason or "Run cancelled")
        remaining = self._remaining_time()
        if remaining is not None and remaining <= 0:
            raise RunCancelledError(f"Run timed out after {self.config.run_timeout}s")

    def _abandon_in_flight(self, message: str) -> None:
        error = ErrorInfo(kind=ErrorKind.CANCELLED, message=message)
        for node_id, state in self.context.node_states.items():
            if state.status == NodeStatus.RUNNING:
                self.context.mark_failed(node_id, error)
        if self.context.error is None:
            self.context.error = error

    def _finish(self) -> None:
        ctx = self.context
        for node_id in self.nodes:
            state = ctx.state(node_id)
            if state is None or state.status == NodeStatus.PENDING:
                ctx.mark_skipped(node_id)

        if ctx.error is None and ctx.has_failures():
            first_failed = next(
                s for s in ctx.node_states.values() if s.status == NodeStatus.FAILED
            )
            ctx.error = first_failed.error
        ctx.status = RunStatus.FAILED if ctx.error is not None else RunStatus.COMPLETED
        ctx.finished_at = datetime.now(timezone.utc)

        counts: dict[str, int] = {}
        for state in ctx.node_states.values():
            counts[state.status.value] = counts.get(state.status.value, 0) + 1
        summary = ", ".join(f"{v} {k}" for k, v in sorted(counts.items()))
        log = logger.warning if ctx.status == RunStatus.FAILED else logger.info
        log(f"Run {self.run_id} {ctx.status.value}: {summary}")


class RunScheduler:
    """Validates definitions and executes runs.

    One scheduler (and its dispatcher registry) can serve many concurrent runs;
    each run owns its own ExecutionContext.

    Example:
        scheduler = RunScheduler(config=load_config())
        result = await scheduler.run(definition, trigger_input={"orderId": 7})
    """

    def __init__(
        self,
        dispatcher: StepDispatcher | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.dispatcher = dispatcher or StepDispatcher(self.config)

    def create_run(
        self,
        definition: WorkflowDefinition | Mapping[str, Any],
        trigger_input: Any = None,
        run_id: str | None = None,
    ) -> WorkflowRun:
        """Validate the definition and prepare a run.

        Raises:
            StructuralError: If the definition is invalid. No node executes.
        """
        if not isinstance(definition, WorkflowDefinition):
            definition = WorkflowDefinition.model_validate(definition)
        return WorkflowRun(definition, self.dispatcher, self.config, trigger_input, run_id)

    async def run(
        self,
        definition: WorkflowDefinition | Mapping[str, Any],
        trigger_input: Any = None,
        run_id: str | None = None,
    ) -> RunResult:
        return await self.create_run(definition, trigger_input, run_id).execute()

    def run_until_complete(
        self,
        definition: WorkflowDefinition | Mapping[str, Any],
        trigger_input: Any = None,
        run_id: str | None = None,
    ) -> RunResult:
        """Blocking convenience wrapper for callers without an event loop"""
        return asyncio.run(self.run(definition, trigger_input, run_id))
