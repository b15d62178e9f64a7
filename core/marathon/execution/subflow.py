"""Subflow library and composer.

A subflow node runs a packaged subgraph through the same engine semantics.
Every invocation gets its own deep copy of the definition in a private
GraphStore and its own nested Execution, so concurrent invocations of one
definition never see each other's statuses or payloads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable

from marathon.domain.models import GraphSnapshot, Node, Subflow
from marathon.errors import SubflowError
from marathon.execution.logs import ExecutionLogger

if TYPE_CHECKING:
    from marathon.execution.engine import ExecutionEngine
    from marathon.services.graph_store import GraphStore

logger = logging.getLogger(__name__)

_MISSING = object()


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Read a dotted path (``"memory.tags.0"``) from nested dicts and lists."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at a dotted path, creating intermediate dicts."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def apply_mapping(payload: Any, mapping: dict[str, str]) -> Any:
    """Build ``{target: payload[source_path]}``; an empty mapping passes through."""
    if not mapping:
        return payload
    result: dict[str, Any] = {}
    for target, source in mapping.items():
        set_path(result, target, get_path(payload, source))
    return result


class SubflowLibrary:
    """Registered subflow definitions, keyed by id."""

    def __init__(self, subflows: Iterable[Subflow] | None = None) -> None:
        self._subflows: dict[str, Subflow] = {}
        self._bindings: dict[str, str] = {}
        for subflow in subflows or []:
            self.register(subflow)

    def register(self, subflow: Subflow) -> None:
        self._subflows[subflow.id] = subflow
        self._bindings.pop(subflow.id, None)
        logger.debug("Registered subflow %s", subflow.id)

    def get(self, subflow_id: str) -> Subflow | None:
        return self._subflows.get(subflow_id)

    def remove(self, subflow_id: str) -> bool:
        self._bindings.pop(subflow_id, None)
        return self._subflows.pop(subflow_id, None) is not None

    def list(self) -> list[Subflow]:
        return list(self._subflows.values())

    def bind(self, subflow: Subflow, node_id: str) -> None:
        """Claim a non-reusable subflow for one caller node.

        Raises:
            SubflowError: If another node already uses it.
        """
        if subflow.reusable:
            return
        owner = self._bindings.setdefault(subflow.id, node_id)
        if owner != node_id:
            raise SubflowError(
                node_id, f"Subflow {subflow.id} is not reusable and belongs to node {owner}"
            )

    def __contains__(self, subflow_id: object) -> bool:
        return subflow_id in self._subflows

    def __len__(self) -> int:
        return len(self._subflows)


@dataclass
class SubflowResult:
    """What a subflow node emits: the final payload and the ports to activate."""

    payload: Any
    ports: list[str] = field(default_factory=list)
    execution_id: str | None = None


class SubflowComposer:
    """Runs subflow nodes as nested, isolated executions."""

    def __init__(self, library: SubflowLibrary | None = None) -> None:
        self.library = library or SubflowLibrary()

    def instantiate(self, subflow: Subflow, engine: ExecutionEngine) -> GraphStore:
        """A private store holding a deep copy of the definition."""
        from marathon.services.graph_store import GraphStore

        snapshot = GraphSnapshot(nodes=subflow.nodes, connections=subflow.connections)
        return GraphStore.from_snapshot(snapshot, config=engine.config)

    async def execute(
        self,
        engine: ExecutionEngine,
        node: Node,
        payload: Any,
        *,
        depth: int = 0,
        log: ExecutionLogger | None = None,
    ) -> SubflowResult:
        """Run the subflow referenced by ``node.config['subflowId']``.

        Raises:
            SubflowError: If the subflow is unknown, nested too deeply, bound
                to another node, or fails without a wired ``error`` port.
        """
        subflow_id = node.config.get("subflowId")
        subflow = self.library.get(subflow_id) if subflow_id else None
        if subflow is None:
            raise SubflowError(node.id, f"Unknown subflow: {subflow_id or '<none>'}")
        if depth + 1 > engine.config.max_subflow_depth:
            raise SubflowError(
                node.id, f"Subflow nesting exceeds {engine.config.max_subflow_depth} levels"
            )
        self.library.bind(subflow, node.id)

        store = self.instantiate(subflow, engine)
        entry_input = apply_mapping(payload, subflow.input_mapping)
        if not isinstance(entry_input, dict):
            entry_input = {"value": entry_input}

        nested_log = ExecutionLogger(f"{node.id}:{subflow.id}", level=engine.config.log_level)
        execution = await engine.run(
            store,
            entry_input,
            log=nested_log,
            depth=depth + 1,
            entry_template="subflow-input",
        )
        if log is not None:
            log.extend(nested_log)
            engine.last_log = log

        if execution.status == "failed":
            messages = [f"{e.node_id}: {e.message}" for e in execution.errors]
            if self._error_port_wired(node):
                return SubflowResult(
                    payload={**_as_dict(payload), "subflowErrors": messages},
                    ports=["error"],
                    execution_id=execution.id,
                )
            raise SubflowError(node.id, f"Subflow {subflow.id} failed: {'; '.join(messages)}")

        result = apply_mapping(self._final_payload(store, execution.outputs), subflow.output_mapping)
        return SubflowResult(payload=result, ports=["output"], execution_id=execution.id)

    @staticmethod
    def _error_port_wired(node: Node) -> bool:
        port = node.output_named("error")
        return port is not None and port.connected

    @staticmethod
    def _final_payload(store: GraphStore, outputs: dict[str, Any]) -> Any:
        """Merge the outputs of subflow-output nodes, else of executed sink nodes."""
        exits = [n.id for n in store.nodes if n.template_id == "subflow-output" and n.id in outputs]
        if not exits:
            sources = {c.source_node_id for c in store.connections}
            exits = [n.id for n in store.nodes if n.id in outputs and n.id not in sources]
        if len(exits) == 1:
            return outputs[exits[0]]
        merged: dict[str, Any] = {}
        for node_id in exits:
            merged.update(_as_dict(outputs[node_id]))
        return merged


def _as_dict(payload: Any) -> dict[str, Any]:
    return dict(payload) if isinstance(payload, dict) else {"value": payload}
