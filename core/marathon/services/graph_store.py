"""Graph Store: the mutable node/connection collection behind the editor.

Every edit is a command method (``add_node``, ``connect``, ``remove_node``,
...). Each successful command pushes a snapshot of the prior state onto the
undo history and emits a ``GraphEvent`` to subscribers, so a UI can be a pure
listener.

Nodes and connections are frozen values held in per-id maps. An update
builds a replacement value and swaps that single entry; the engine's status
updates follow the same rule, which keeps concurrent branches from
clobbering each other's writes.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from marathon.catalog import NodeTemplate, TemplateCatalog, get_catalog
from marathon.config import EngineConfig
from marathon.domain.models import (
    Connection,
    GraphSnapshot,
    Node,
    NodeStatus,
    Port,
    Position,
    ScheduleEntry,
    Subflow,
    WorkflowDocument,
    port_id_for,
)
from marathon.errors import ConnectionValidationError, UnknownNodeError
from marathon.execution.ports import types_compatible, validate_connection
from marathon.services.history import HistoryManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraphEvent:
    """A change notification emitted by the store."""

    kind: str
    node_id: str | None = None
    connection_id: str | None = None
    data: Any = None


GraphListener = Callable[[GraphEvent], None]


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


class GraphStore:
    """Nodes, connections and their undo/redo history.

    Example:
        store = GraphStore()
        trigger = store.add_node("manual-trigger")
        check = store.add_node("if-else")
        store.connect(trigger.id, trigger.outputs[0].id, check.id, check.inputs[1].id)
        store.undo()
    """

    def __init__(
        self,
        *,
        catalog: TemplateCatalog | None = None,
        config: EngineConfig | None = None,
        history: HistoryManager | None = None,
    ) -> None:
        self.catalog = catalog or get_catalog()
        self.config = config or EngineConfig()
        self.history = history or HistoryManager()
        self._nodes: dict[str, Node] = {}
        self._connections: dict[str, Connection] = {}
        self._listeners: list[GraphListener] = []
        self.last_rejection: str | None = None

    # ── Read access ──

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def get_node(self, node_id: str) -> Node:
        """Look up a node.

        Raises:
            UnknownNodeError: If no node has this id.
        """
        node = self._nodes.get(node_id)
        if node is None:
            raise UnknownNodeError(f"Unknown node: {node_id}")
        return node

    def find_node(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def get_connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def trigger_nodes(self) -> list[Node]:
        return [node for node in self._nodes.values() if node.kind == "trigger"]

    def connections_from(self, node_id: str) -> list[Connection]:
        return [c for c in self._connections.values() if c.source_node_id == node_id]

    def connections_to(self, node_id: str) -> list[Connection]:
        return [c for c in self._connections.values() if c.target_node_id == node_id]

    def snapshot(self) -> GraphSnapshot:
        """An immutable deep copy of the current nodes and connections."""
        return GraphSnapshot(
            nodes=[node.model_copy(deep=True) for node in self._nodes.values()],
            connections=list(self._connections.values()),
        )

    # ── Events ──

    def subscribe(self, listener: GraphListener) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, **fields: Any) -> None:
        event = GraphEvent(kind=kind, **fields)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001 - a broken listener must not break edits
                logger.warning("Graph listener failed on %s: %s", kind, exc)

    # ── Mutations ──

    def _record(self) -> None:
        self.history.push(self.snapshot())

    def add_node(
        self,
        template: str | NodeTemplate,
        position: Position | None = None,
        *,
        node_id: str | None = None,
    ) -> Node:
        """Instantiate a catalog template as a new node.

        Raises:
            UnknownTemplateError: If ``template`` names no catalog entry.
            ValueError: If ``node_id`` is already taken.
        """
        if isinstance(template, str):
            template = self.catalog.get(template)
        node_id = node_id or f"{template.id}-{_short_id()}"
        if node_id in self._nodes:
            raise ValueError(f"Node id already exists: {node_id}")

        node = template.instantiate(node_id, position)
        self._record()
        self._nodes[node.id] = node
        logger.debug("Added node %s (%s)", node.id, template.id)
        self._emit("node_added", node_id=node.id, data=node)
        return node

    def insert_node(self, node: Node) -> Node:
        """Add a ready-made node value (e.g. loaded from a document)."""
        if node.id in self._nodes:
            raise ValueError(f"Node id already exists: {node.id}")
        self._record()
        self._nodes[node.id] = node
        self._emit("node_added", node_id=node.id, data=node)
        return node

    def remove_node(self, node_id: str) -> bool:
        """Delete a node and every connection touching it."""
        if node_id not in self._nodes:
            return False
        self._record()
        touching = [c for c in self._connections.values() if c.touches(node_id)]
        for conn in touching:
            del self._connections[conn.id]
        del self._nodes[node_id]
        for conn in touching:
            self._refresh_port(conn.source_node_id, conn.source_port_id)
            self._refresh_port(conn.target_node_id, conn.target_port_id)
            self._emit("connection_removed", connection_id=conn.id)
        self._emit("node_removed", node_id=node_id)
        return True

    def duplicate_node(self, node_id: str) -> Node | None:
        """Clone a node with a new id, offset position and no connections."""
        original = self._nodes.get(node_id)
        if original is None:
            return None
        new_id = f"{node_id}-copy-{_short_id()}"
        offset = self.config.duplicate_offset
        clone = original.model_copy(
            update={
                "id": new_id,
                "title": f"{original.title} (copy)" if original.title else "",
                "position": Position(x=original.position.x + offset, y=original.position.y + offset),
                "config": original.model_copy(deep=True).config,
                "inputs": [_fresh_port(new_id, p) for p in original.inputs],
                "outputs": [_fresh_port(new_id, p) for p in original.outputs],
                "status": "idle",
            }
        )
        self._record()
        self._nodes[new_id] = clone
        self._emit("node_added", node_id=new_id, data=clone)
        return clone

    def connect(
        self,
        source_node_id: str,
        source_port_id: str,
        target_node_id: str,
        target_port_id: str,
    ) -> Connection | None:
        """Wire an output port to an input port.

        Invalid attempts leave the graph untouched: they are logged, emitted
        as ``connection_rejected`` and return None.
        """
        try:
            from_port, to_port = self._resolve_ports(
                source_node_id, source_port_id, target_node_id, target_port_id
            )
            validate_connection(from_port, to_port)
        except ConnectionValidationError as exc:
            self.last_rejection = exc.reason
            logger.warning("Invalid connection attempt: %s", exc.reason)
            self._emit(
                "connection_rejected",
                data={
                    "reason": exc.reason,
                    "source": (source_node_id, source_port_id),
                    "target": (target_node_id, target_port_id),
                },
            )
            return None

        self._record()
        self.last_rejection = None
        conn = Connection(
            id=f"{source_node_id}-{source_port_id}-{target_node_id}-{target_port_id}",
            source_node_id=source_node_id,
            source_port_id=source_port_id,
            target_node_id=target_node_id,
            target_port_id=target_port_id,
            data_type=from_port.data_type,
        )
        self._connections[conn.id] = conn
        self._set_port_connected(source_node_id, source_port_id, True)
        self._set_port_connected(target_node_id, target_port_id, True)
        self._emit("connection_added", connection_id=conn.id, data=conn)
        return conn

    def disconnect(self, connection_id: str) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        self._record()
        del self._connections[connection_id]
        self._refresh_port(conn.source_node_id, conn.source_port_id)
        self._refresh_port(conn.target_node_id, conn.target_port_id)
        self._emit("connection_removed", connection_id=connection_id)
        return True

    def update_node_config(self, node_id: str, config: dict[str, Any], *, merge: bool = True) -> Node:
        """Merge (or replace) a node's config."""
        node = self.get_node(node_id)
        self._record()
        new_config = {**node.config, **config} if merge else dict(config)
        updated = node.model_copy(update={"config": new_config})
        self._nodes[node_id] = updated
        self._emit("node_updated", node_id=node_id, data=updated)
        return updated

    def update_node(
        self,
        node_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        position: Position | None = None,
    ) -> Node:
        node = self.get_node(node_id)
        changes: dict[str, Any] = {}
        if title is not None:
            changes["title"] = title
        if description is not None:
            changes["description"] = description
        if position is not None:
            changes["position"] = position
        if not changes:
            return node
        self._record()
        updated = node.model_copy(update=changes)
        self._nodes[node_id] = updated
        self._emit("node_updated", node_id=node_id, data=updated)
        return updated

    def move_node(self, node_id: str, x: float, y: float) -> Node:
        return self.update_node(node_id, position=Position(x=x, y=y))

    # ── Runtime state (not recorded in history) ──

    def set_status(self, node_id: str, status: NodeStatus) -> None:
        node = self._nodes.get(node_id)
        if node is None or node.status == status:
            return
        self._nodes[node_id] = node.model_copy(update={"status": status})
        self._emit("node_status", node_id=node_id, data=status)

    def reset_statuses(self) -> None:
        for node_id in list(self._nodes):
            self.set_status(node_id, "idle")

    # ── History ──

    def undo(self) -> bool:
        previous = self.history.undo(self.snapshot())
        if previous is None:
            return False
        self.restore(previous)
        return True

    def redo(self) -> bool:
        following = self.history.redo(self.snapshot())
        if following is None:
            return False
        self.restore(following)
        return True

    def restore(self, snapshot: GraphSnapshot) -> None:
        """Replace the whole graph with a snapshot (no history entry)."""
        self._nodes = {node.id: node.model_copy(deep=True) for node in snapshot.nodes}
        self._connections = {conn.id: conn for conn in snapshot.connections}
        self._emit("restored", data=snapshot)

    def apply(self, snapshot: GraphSnapshot) -> None:
        """Replace the whole graph with a snapshot as an undoable edit."""
        self._record()
        self.restore(snapshot)

    # ── Validation ──

    def validate(self) -> list[str]:
        """Structural problems in the graph (empty list means valid)."""
        problems: list[str] = []
        seen_inputs: set[tuple[str, str]] = set()
        for conn in self._connections.values():
            source = self._nodes.get(conn.source_node_id)
            target = self._nodes.get(conn.target_node_id)
            if source is None or target is None:
                problems.append(f"Connection {conn.id} references a missing node")
                continue
            from_port = source.port(conn.source_port_id)
            to_port = target.port(conn.target_port_id)
            if from_port is None or to_port is None:
                problems.append(f"Connection {conn.id} references a missing port")
                continue
            if from_port.direction != "output" or to_port.direction != "input":
                problems.append(f"Connection {conn.id} does not run output -> input")
            if not types_compatible(from_port.data_type, to_port.data_type):
                problems.append(
                    f"Connection {conn.id} joins {from_port.data_type} to {to_port.data_type}"
                )
            key = (conn.target_node_id, conn.target_port_id)
            if key in seen_inputs:
                problems.append(f"Input port {conn.target_port_id} has more than one connection")
            seen_inputs.add(key)
        return problems

    # ── Persistence boundary ──

    def to_document(
        self,
        *,
        workflow_id: str = "workflow",
        name: str = "Untitled Workflow",
        description: str = "",
        subflows: list[Subflow] | None = None,
        schedules: list[ScheduleEntry] | None = None,
    ) -> WorkflowDocument:
        snapshot = self.snapshot()
        return WorkflowDocument(
            id=workflow_id,
            name=name,
            description=description,
            nodes=snapshot.nodes,
            connections=snapshot.connections,
            subflows=list(subflows or []),
            schedules=list(schedules or []),
        )

    @classmethod
    def from_snapshot(
        cls,
        snapshot: GraphSnapshot,
        *,
        catalog: TemplateCatalog | None = None,
        config: EngineConfig | None = None,
    ) -> "GraphStore":
        store = cls(catalog=catalog, config=config)
        store.restore(snapshot)
        return store

    @classmethod
    def from_document(
        cls,
        document: WorkflowDocument,
        *,
        catalog: TemplateCatalog | None = None,
        config: EngineConfig | None = None,
    ) -> "GraphStore":
        snapshot = GraphSnapshot(nodes=document.nodes, connections=document.connections)
        return cls.from_snapshot(snapshot, catalog=catalog, config=config)

    def clone(self) -> "GraphStore":
        """An independent copy of the current graph with empty history."""
        return GraphStore.from_snapshot(self.snapshot(), catalog=self.catalog, config=self.config)

    # ── Internals ──

    def _resolve_ports(
        self,
        source_node_id: str,
        source_port_id: str,
        target_node_id: str,
        target_port_id: str,
    ) -> tuple[Port, Port]:
        source = self._nodes.get(source_node_id)
        target = self._nodes.get(target_node_id)
        if source is None or target is None:
            raise ConnectionValidationError("unknown source or target node")
        from_port = source.port(source_port_id)
        to_port = target.port(target_port_id)
        if from_port is None or to_port is None:
            raise ConnectionValidationError("unknown source or target port")
        return from_port, to_port

    def _set_port_connected(self, node_id: str, port_id: str, connected: bool) -> None:
        node = self._nodes.get(node_id)
        if node is None:
            return
        port = node.port(port_id)
        if port is None or port.connected == connected:
            return
        self._nodes[node_id] = node.with_port(port.model_copy(update={"connected": connected}))

    def _refresh_port(self, node_id: str, port_id: str) -> None:
        still_used = any(
            (c.source_node_id == node_id and c.source_port_id == port_id)
            or (c.target_node_id == node_id and c.target_port_id == port_id)
            for c in self._connections.values()
        )
        self._set_port_connected(node_id, port_id, still_used)


def _fresh_port(node_id: str, port: Port) -> Port:
    return Port(
        id=port_id_for(node_id, port.direction, port.name),
        name=port.name,
        direction=port.direction,
        data_type=port.data_type,
    )
