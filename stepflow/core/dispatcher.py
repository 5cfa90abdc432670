"""Step dispatcher: action key -> step function.

The registry is built once from two sources:
- the fixed built-in table (stepflow.steps)
- namespaced plugin integrations, ``"<integration>/<verb>"``, loaded lazily
  on first use from a module path given in config or registered under the
  ``stepflow.plugins`` entry-point group. The module exposes
  ``STEPS = {verb: callable}``.

The built-in table is a read-only mapping and may be shared by concurrent runs.
"""

from __future__ import annotations

import importlib
import importlib.metadata
import inspect
import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import httpx

from stepflow.core.config import EngineConfig
from stepflow.core.exceptions import UnknownStepError
from stepflow.core.graph_schema import normalize_action_key

if TYPE_CHECKING:
    from stepflow.steps import StepFn

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "stepflow.plugins"


class StepDispatcher:
    """Resolve action keys and invoke the selected step."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        builtins: Mapping[str, StepFn] | None = None,
        plugins: Mapping[str, str] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        discover_entry_points: bool = True,
    ) -> None:
        config = config or EngineConfig()
        # Local import: stepflow.steps imports stepflow.core
        from stepflow.steps import build_builtin_steps

        table = dict(builtins) if builtins is not None else build_builtin_steps(config, http_transport)
        self._builtins: Mapping[str, StepFn] = MappingProxyType(table)

        sources: dict[str, str] = {}
        if discover_entry_points:
            sources.update(self._entry_point_sources())
        sources.update(config.plugins)
        sources.update(plugins or {})
        self._plugin_sources: Mapping[str, str] = MappingProxyType(sources)
        self._plugin_tables: dict[str, Mapping[str, StepFn]] = {}

    @property
    def builtins(self) -> Mapping[str, StepFn]:
        return self._builtins

    @property
    def integrations(self) -> list[str]:
        return sorted(self._plugin_sources)

    @staticmethod
    def _entry_point_sources() -> dict[str, str]:
        """Integration name -> module path from installed distributions"""
        sources = {}
        for ep in importlib.metadata.entry_points().select(group=ENTRY_POINT_GROUP):
            sources[ep.name] = ep.value.split(":", 1)[0]
        return sources

    def _load_integration(self, integration: str) -> Mapping[str, StepFn]:
        if integration in self._plugin_tables:
            return self._plugin_tables[integration]
        module_path = self._plugin_sources.get(integration)
        if module_path is None:
            raise UnknownStepError(f"Unknown integration '{integration}'")
        try:
            module = importlib.import_module(module_path)
        except ImportError as e:
            raise UnknownStepError(
                f"Integration '{integration}' could not be loaded from '{module_path}': {e}"
            ) from e
        steps = getattr(module, "STEPS", None)
        if not isinstance(steps, Mapping):
            raise UnknownStepError(
                f"Integration module '{module_path}' does not define a STEPS mapping"
            )
        table = MappingProxyType({str(verb): fn for verb, fn in steps.items()})
        self._plugin_tables[integration] = table
        logger.info(f"Loaded integration '{integration}' ({len(table)} steps) from {module_path}")
        return table

    def resolve(self, action_key: str) -> StepFn:
        """Find the step function for an action key.

        Raises:
            UnknownStepError: No built-in or plugin step matches.
        """
        key = normalize_action_key(action_key)
        if key in self._builtins:
            return self._builtins[key]
        if "/" in key:
            integration, _, verb = key.partition("/")
            table = self._load_integration(integration)
            if verb in table:
                return table[verb]
            raise UnknownStepError(f"Integration '{integration}' has no step '{verb}'")
        raise UnknownStepError(f"Unknown step '{action_key}'")

    def available_steps(self, include_plugins: bool = True) -> list[str]:
        keys = list(self._builtins)
        if include_plugins:
            for integration in self.integrations:
                try:
                    table = self._load_integration(integration)
                except UnknownStepError as e:
                    logger.warning(str(e))
                    continue
                keys.extend(f"{integration}/{verb}" for verb in table)
        return sorted(keys)

    async def dispatch(self, action_key: str, payload: dict[str, Any]) -> Any:
        """Invoke the step for ``action_key`` with the resolved payload.

        Coroutine results are awaited, so I/O-bound steps only suspend the
        calling run.
        """
        step = self.resolve(action_key)
        result = step(payload)
        if inspect.isawaitable(result):
            result = await result
        return result
