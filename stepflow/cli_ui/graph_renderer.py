"""Terminal rendering of workflow graphs and run results using Rich."""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from stepflow.core.context import NodeStatus, RunResult
from stepflow.core.graph_schema import (
    BRANCHING_ACTIONS,
    LOOP_OVER_BATCHES,
    MERGE,
    Edge,
    Node,
    WorkflowDefinition,
)

OUTPUT_PREVIEW_CHARS = 40


class TerminalGraphRenderer:
    """
    Renders a workflow definition as a Rich tree rooted at the trigger.

    Edges leaving branching nodes are shown with their branch label. Nodes
    reached a second time (joins, loop-back edges) are shown as references.
    """

    # (symbol, color) by node category
    NODE_STYLES = {
        "trigger": ("[T]", "green"),
        "branch": ("[?]", "magenta"),
        "loop": ("[L]", "yellow"),
        "merge": ("[M]", "blue"),
        "action": ("[ ]", "cyan"),
    }

    STATUS_COLORS = {
        "pending": "dim",
        "running": "blue bold",
        "succeeded": "green",
        "failed": "red bold",
        "skipped": "dim strikethrough",
    }

    STATUS_SYMBOLS = {"succeeded": " ✓", "failed": " ✗", "running": " ⟳", "skipped": " ⊘"}

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    @staticmethod
    def _category(node: Node) -> str:
        if node.is_trigger:
            return "trigger"
        if node.action_key == LOOP_OVER_BATCHES:
            return "loop"
        if node.action_key in BRANCHING_ACTIONS:
            return "branch"
        if node.action_key == MERGE:
            return "merge"
        return "action"

    @staticmethod
    def _normalize_status(status: NodeStatus | str | None) -> str:
        if isinstance(status, NodeStatus):
            return status.value
        return str(status) if status else "pending"

    def render_as_tree(
        self,
        definition: WorkflowDefinition,
        statuses: dict[str, NodeStatus | str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """Render the workflow as a Rich Tree starting at the trigger node."""
        tree = Tree(f"[bold]{escape(definition.name)}[/] ({escape(definition.id)})")
        node_map = {n.id: n for n in definition.nodes}
        edge_map: dict[str, list[Edge]] = {n.id: [] for n in definition.nodes}
        for edge in definition.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)

        trigger = definition.trigger
        if trigger is None:
            tree.add("[red]Error: workflow needs exactly one trigger node[/]")
            return tree

        self._add_node(tree, trigger, statuses or {}, node_map, edge_map, set(), 0, max_depth)
        return tree

    def _add_node(
        self,
        parent: Tree,
        node: Node,
        statuses: dict[str, Any],
        node_map: dict[str, Node],
        edge_map: dict[str, list[Edge]],
        seen: set[str],
        depth: int,
        max_depth: int,
    ) -> None:
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        # SECURITY: Escape node labels to prevent Rich markup injection
        safe_label = escape(node.display_name)
        if node.id in seen:
            parent.add(f"[dim]↩ {safe_label}[/]")
            return
        seen.add(node.id)

        symbol, color = self.NODE_STYLES[self._category(node)]
        status = self._normalize_status(statuses.get(node.id))
        if status != "pending":
            color = self.STATUS_COLORS.get(status, color)
        indicator = self.STATUS_SYMBOLS.get(status, "")
        if not node.enabled:
            indicator += " [dim](disabled)[/]"
        branch = parent.add(
            f"[{color}]{escape(symbol)} {safe_label}{indicator}[/] [dim]{escape(node.action_key)}[/]"
        )

        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                continue
            holder = branch
            if edge.branch_label is not None:
                holder = branch.add(f"[dim]({escape(edge.branch_label)})[/]")
            self._add_node(holder, child, statuses, node_map, edge_map, seen, depth + 1, max_depth)


class StatusTableRenderer:
    """Renders node states from a run result as a Rich table.

    SECURITY: All user-controlled strings (labels, outputs, errors) are escaped
    to prevent Rich markup injection.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    @staticmethod
    def _preview(value: Any) -> str:
        if value is None:
            return ""
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        if len(text) > OUTPUT_PREVIEW_CHARS:
            text = text[: OUTPUT_PREVIEW_CHARS - 3] + "..."
        return escape(text)

    def render_status_table(self, definition: WorkflowDefinition, result: RunResult) -> Table:
        table = Table(title=f"Run {escape(result.run_id)}: {result.status.value}")
        table.add_column("Node", style="cyan")
        table.add_column("Action", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Branch")
        table.add_column("Output / Error", max_width=OUTPUT_PREVIEW_CHARS + 8)

        order = definition.topology().flattened_order()
        node_map = {n.id: n for n in definition.nodes}
        for node_id in order:
            node = node_map[node_id]
            state = result.node_states.get(node_id)
            status = state.status.value if state else "pending"

            if status == "succeeded":
                status_text = "[green]✓ Succeeded[/]"
            elif status == "failed":
                status_text = "[red]✗ Failed[/]"
            elif status == "running":
                status_text = "[blue]⟳ Running[/]"
            elif status == "skipped":
                status_text = "[dim]⊘ Skipped[/]"
            else:
                status_text = "[dim]○ Pending[/]"

            if state and state.error:
                detail = f"[red]{escape(state.error.kind.value)}:[/] {self._preview(state.error.message)}"
            else:
                detail = self._preview(state.output if state else None)
            if state and state.warnings:
                detail += f" [yellow]({len(state.warnings)} warning(s))[/]"

            table.add_row(
                escape(node.display_name),
                escape(node.action_key),
                status_text,
                escape(state.selected_branch or "") if state else "",
                detail,
            )
        return table
