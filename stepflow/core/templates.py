"""Template resolution for node config values.

Config strings may embed references to earlier node outputs::

    {{@<nodeId>:<Label>.<fieldPath>}}

The node id is the lookup key. The label is a human-readable hint and is only
compared against the node's label when ``warn_on_label_mismatch`` is enabled.
Without a field path the whole output is returned.

Raw strings are tokenized into literal and reference segments. A string that is
exactly one reference keeps the referenced value's native type; mixed strings
are interpolated with each value stringified.
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from stepflow.core.context import ExecutionContext, NodeStatus, ResolutionWarning
from stepflow.core.exceptions import (
    PathNotFoundError,
    ResolutionError,
    UnresolvedReferenceError,
)
from stepflow.core.utils import parse_path, stringify, traverse

logger = logging.getLogger(__name__)

_REFERENCE = re.compile(r"\{\{\s*@([^:{}]+):([^{}]*?)\s*\}\}")

LABEL_MISMATCH = "LabelMismatch"


@dataclass(frozen=True)
class LiteralSegment:
    text: str


@dataclass(frozen=True)
class ReferenceSegment:
    node_id: str
    label: str
    path: str
    raw: str


Segment = LiteralSegment | ReferenceSegment


def tokenize(raw: str) -> list[Segment]:
    """Split a raw config string into literal and reference segments.

    Text that does not form a complete reference (e.g. ``{{@id}}`` without a
    label) stays literal.
    """
    segments: list[Segment] = []
    pos = 0
    for match in _REFERENCE.finditer(raw):
        if match.start() > pos:
            segments.append(LiteralSegment(raw[pos : match.start()]))
        label, _, path = match.group(2).partition(".")
        segments.append(
            ReferenceSegment(
                node_id=match.group(1).strip(),
                label=label.strip(),
                path=path.strip(),
                raw=match.group(0),
            )
        )
        pos = match.end()
    if pos < len(raw):
        segments.append(LiteralSegment(raw[pos:]))
    return segments


def contains_reference(raw: str) -> bool:
    return _REFERENCE.search(raw) is not None


class TemplateResolver:
    """Resolve templated config against an execution context.

    Policies:
        lenient: unresolved references and missing paths become None and are
            reported as warnings.
        strict: the first resolution error is raised.
    """

    def __init__(
        self,
        policy: Literal["lenient", "strict"] = "lenient",
        labels: Mapping[str, str | None] | None = None,
        warn_on_label_mismatch: bool = False,
    ):
        self.policy = policy
        self.labels = dict(labels or {})
        self.warn_on_label_mismatch = warn_on_label_mismatch

    def resolve(
        self,
        raw: str,
        context: ExecutionContext,
        warnings: list[ResolutionWarning] | None = None,
    ) -> Any:
        """Resolve a single config string.

        Raises:
            ResolutionError: Only under the strict policy.
        """
        if warnings is None:
            warnings = []
        segments = tokenize(raw)
        if len(segments) == 1 and isinstance(segments[0], ReferenceSegment):
            return self._resolve_reference(segments[0], context, warnings)
        if not any(isinstance(s, ReferenceSegment) for s in segments):
            return raw

        parts = []
        for segment in segments:
            if isinstance(segment, LiteralSegment):
                parts.append(segment.text)
            else:
                parts.append(stringify(self._resolve_reference(segment, context, warnings)))
        return "".join(parts)

    def resolve_config(
        self, config: Any, context: ExecutionContext
    ) -> tuple[Any, list[ResolutionWarning]]:
        """Deep-walk config, resolving every string leaf independently.

        Mapping keys are left untouched; non-string leaves pass through.
        """
        warnings: list[ResolutionWarning] = []
        return self._walk(config, context, warnings), warnings

    def _walk(self, value: Any, context: ExecutionContext, warnings: list) -> Any:
        if isinstance(value, str):
            return self.resolve(value, context, warnings)
        if isinstance(value, Mapping):
            return {k: self._walk(v, context, warnings) for k, v in value.items()}
        if isinstance(value, list):
            return [self._walk(v, context, warnings) for v in value]
        return value

    def _resolve_reference(
        self,
        ref: ReferenceSegment,
        context: ExecutionContext,
        warnings: list[ResolutionWarning],
    ) -> Any:
        if self.warn_on_label_mismatch:
            expected = self.labels.get(ref.node_id)
            if expected and ref.label != expected:
                warnings.append(
                    ResolutionWarning(
                        kind=LABEL_MISMATCH,
                        reference=ref.raw,
                        message=(
                            f"Reference labels node '{ref.node_id}' as '{ref.label}' "
                            f"but the node is labeled '{expected}'"
                        ),
                    )
                )
        try:
            return self.lookup(ref, context)
        except ResolutionError as e:
            if self.policy == "strict":
                raise
            logger.debug(f"[{context.run_id}] {e.kind.value}: {e}")
            warnings.append(
                ResolutionWarning(kind=e.kind.value, reference=ref.raw, message=str(e))
            )
            return None

    @staticmethod
    def lookup(ref: ReferenceSegment, context: ExecutionContext) -> Any:
        """Fetch the referenced value.

        A reference to a loop node from inside its own body reads the active
        loop frame (``batch``, ``batchIndex``, ``batchCount``, ``accumulatedResults``).

        Raises:
            UnresolvedReferenceError: Node has not succeeded (or never ran).
            PathNotFoundError: Path cannot be traversed on the output.
        """
        frame = context.active_frame(ref.node_id)
        if frame is not None:
            source = frame.view()
        else:
            state = context.state(ref.node_id)
            if state is None:
                raise UnresolvedReferenceError(
                    ref.raw, f"{ref.raw}: node '{ref.node_id}' has not run"
                )
            if state.status != NodeStatus.SUCCEEDED:
                raise UnresolvedReferenceError(
                    ref.raw,
                    f"{ref.raw}: node '{ref.node_id}' is {state.status.value}, not succeeded",
                )
            source = state.output

        if not ref.path:
            return source
        try:
            return traverse(source, parse_path(ref.path))
        except (ValueError, LookupError) as e:
            reason = e.args[0] if e.args else str(e)
            raise PathNotFoundError(ref.raw, f"{ref.raw}: {reason}") from e
