"""Workflow execution with port-based data flow.

This module provides:
- Concurrent fan-out/fan-in over output ports with per-branch failure isolation
- Condition routing (if/else, switch, for/while loops, predicate routers)
- A sandboxed expression language for branch predicates
- Nested, isolated subflow runs

Architecture:
- engine.py: Main execution orchestrator
- conditions.py: Branch selection for condition nodes
- expressions.py: Restricted expression parser and evaluator
- handlers.py: Action/data delegates keyed by template id
- subflow.py: Subflow library and composer
- ports.py: Connection validation and routing
- logs.py: Structured per-run logs
"""

from __future__ import annotations

from marathon.execution.engine import ExecutionEngine, RunContext, run_graph_sync

__all__ = ["ExecutionEngine", "RunContext", "run_graph_sync"]
