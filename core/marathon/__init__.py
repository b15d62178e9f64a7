"""Marathon core package.

Graph model, condition evaluator and asynchronous execution engine for the
Marathon visual automation builder. The package has no dependency on any UI
runtime: editors talk to it through ``GraphStore`` commands, the CLI or the
stdio RPC server.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

__version__ = "0.3.0"

__all__ = ["EngineConfig", "ExecutionEngine", "GraphStore", "__version__"]


if TYPE_CHECKING:
    from .config import EngineConfig as EngineConfig
    from .execution.engine import ExecutionEngine as ExecutionEngine
    from .services.graph_store import GraphStore as GraphStore


def __getattr__(name: str) -> Any:
    if name == "EngineConfig":
        from .config import EngineConfig

        return EngineConfig
    if name == "ExecutionEngine":
        from .execution.engine import ExecutionEngine

        return ExecutionEngine
    if name == "GraphStore":
        from .services.graph_store import GraphStore

        return GraphStore
    raise AttributeError(name)
