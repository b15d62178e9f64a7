"""Engine configuration and logging setup."""

from __future__ import annotations

import logging
import sys
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LogLevelName = Literal["debug", "info", "warning", "error"]


class EngineConfig(BaseSettings):
    """Runtime knobs for the execution engine and graph store.

    Values come from keyword arguments first, then ``MARATHON_*`` environment
    variables (``MARATHON_NODE_TIMEOUT=10``), then the defaults below. An
    empty ``MARATHON_NODE_TIMEOUT`` disables the timeout.

    Example:
        >>> config = EngineConfig(step_delay=0.0, node_timeout=5.0)
        >>> engine = ExecutionEngine(config=config)
    """

    model_config = SettingsConfigDict(env_prefix="MARATHON_", frozen=True, extra="ignore")

    step_delay: float = Field(
        default=0.0,
        ge=0.0,
        description="Seconds each node yields before running its logic",
    )
    node_timeout: float | None = Field(
        default=30.0,
        gt=0,
        description="Upper bound in seconds for a single node's own logic. None disables it.",
    )
    max_while_iterations: int = Field(
        default=100,
        gt=0,
        description="Iteration cap for while-loop nodes without a maxIterations config",
    )
    max_activations: int = Field(
        default=1000,
        gt=0,
        description="Maximum node entries in one run",
    )
    max_subflow_depth: int = Field(
        default=8,
        gt=0,
        description="Maximum nesting of subflows inside subflows",
    )
    duplicate_offset: float = Field(
        default=40.0,
        description="Position delta applied to duplicated nodes",
    )
    require_triggers: bool = Field(
        default=False,
        description="Treat a graph without trigger nodes as a fatal run error",
    )
    log_level: LogLevelName = Field(
        default="info",
        description="Minimum level kept in execution logs",
    )

    @field_validator("node_timeout", mode="before")
    @classmethod
    def _blank_timeout_disables(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


def configure_logging(level: str = "info", stream: Any = None) -> logging.Logger:
    """Install a tagged stderr handler on the ``marathon`` logger.

    Lines look like ``[marathon.execution.engine] Node n1 completed``; stdout
    is left alone because the CLI and RPC server write their results there.
    Calling this twice replaces the previous handler.
    """
    logger = logging.getLogger("marathon")
    for handler in list(logger.handlers):
        if getattr(handler, "_marathon_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter("[%(name)s] %(levelname)s %(message)s"))
    handler._marathon_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    return logger
