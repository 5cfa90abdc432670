"""Engine configuration loading.

Configuration is layered YAML. Files are read from lowest to highest precedence
and merged key by key; the ``plugins`` table is merged per integration:

1. Packaged defaults (stepflow/config/engine.yaml)
2. User config (~/.stepflow/config.yaml)
3. Project config (<project>/.stepflow/config.yaml)
4. $STEPFLOW_CONFIG
5. Explicit paths passed by the caller
"""

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from stepflow.core.exceptions import ConfigError

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).parent.parent
ENV_CONFIG_VAR = "STEPFLOW_CONFIG"


class EngineConfig(BaseModel):
    """Runtime settings for the scheduler, resolver and built-in steps"""

    run_timeout: float | None = Field(default=None, gt=0)
    fail_fast: bool = True
    resolution_policy: Literal["lenient", "strict"] = "lenient"
    warn_on_label_mismatch: bool = False
    http_timeout: float = Field(default=30.0, gt=0)
    max_wait_seconds: float = Field(default=300.0, ge=0)
    database_path: str | None = None
    max_expression_length: int = Field(default=2000, ge=1)
    plugins: dict[str, str] = Field(default_factory=dict)


class ConfigLoader:
    """Load engine configuration from YAML files with defined precedence."""

    # Highest precedence first
    STATIC_SEARCH_PATHS = [
        Path.home() / ".stepflow/config.yaml",
        PACKAGE_DIR / "config/engine.yaml",
    ]

    def __init__(
        self,
        project_dir: Path | None = None,
        extra_paths: list[Path] | None = None,
        include_user_config: bool = True,
    ) -> None:
        self._search_paths = list(self.STATIC_SEARCH_PATHS)
        if not include_user_config:
            self._search_paths = [PACKAGE_DIR / "config/engine.yaml"]
        if project_dir is not None:
            self._search_paths.insert(0, Path(project_dir) / ".stepflow/config.yaml")
        env_path = os.environ.get(ENV_CONFIG_VAR)
        if env_path:
            self._search_paths.insert(0, Path(env_path))
        for path in extra_paths or []:
            self._search_paths.insert(0, Path(path))

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load(self) -> EngineConfig:
        """Merge every existing file and validate the result.

        Raises:
            ConfigError: If a file is not valid YAML, not a mapping, or the merged
                settings fail validation.
        """
        merged: dict[str, Any] = {}
        for path in reversed(self._search_paths):
            if not path.exists():
                continue
            try:
                with open(path, encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Invalid engine config in {path}: {e}")
            if data is None:
                continue
            if not isinstance(data, dict):
                raise ConfigError(f"Engine config in {path} must be a mapping")
            logger.debug(f"Loaded engine config from {path}")
            for key, value in data.items():
                if key == "plugins" and isinstance(value, dict):
                    merged.setdefault("plugins", {}).update(value)
                else:
                    merged[key] = value

        try:
            return EngineConfig(**merged)
        except (ValidationError, TypeError) as e:
            raise ConfigError(f"Invalid engine configuration: {e}")


def load_config(
    path: Path | None = None,
    project_dir: Path | None = None,
    include_user_config: bool = True,
) -> EngineConfig:
    """Convenience wrapper around ConfigLoader"""
    return ConfigLoader(
        project_dir=project_dir,
        extra_paths=[path] if path else None,
        include_user_config=include_user_config,
    ).load()
