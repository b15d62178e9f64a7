"""Pydantic domain models for Marathon graphs and runs.

Graph-structure records (Port, Node, Connection, GraphSnapshot) are frozen
value types. Changing one means building a replacement with
``model_copy(update=...)`` and swapping it in by id, so no two nodes ever
share a port list and snapshots can never be edited after the fact.

Run records (Execution, ExecutionLog, ScheduleEntry) are mutable: they are
filled in while a run or a schedule progresses.

All models serialize with camelCase aliases (``sourceNodeId``,
``executedNodes``) and accept both spellings on input.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

NodeKind = Literal["trigger", "action", "condition", "data"]
NodeStatus = Literal["idle", "running", "success", "error", "waiting"]
PortDirection = Literal["input", "output"]
ExecutionStatus = Literal["running", "completed", "failed", "paused"]
LogLevel = Literal["debug", "info", "warning", "error"]

ANY_TYPE = "any"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def port_id_for(node_id: str, direction: str, name: str) -> str:
    """Instance port id: ``<node>.in.<name>`` or ``<node>.out.<name>``."""
    short = "in" if direction == "input" else "out"
    return f"{node_id}.{short}.{name}"


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _Value(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class Position(_Value):
    """2D position on the editor canvas."""

    x: float = Field(default=0.0, description="X coordinate")
    y: float = Field(default=0.0, description="Y coordinate")


class Port(_Value):
    """A typed connection point on a node instance.

    ``id`` is unique per node instance; ``name`` is the catalog port id
    (``"true"``, ``"item"``, ...) that branching logic refers to.
    """

    id: str = Field(..., description="Instance-unique port id")
    name: str = Field(..., description="Template port name")
    direction: PortDirection
    data_type: str = Field(default=ANY_TYPE, description="Declared data type or 'any'")
    connected: bool = False


class Node(_Value):
    """A node instance placed in a graph."""

    id: str
    template_id: str = Field(..., description="Catalog id this node was created from")
    kind: NodeKind
    title: str = ""
    description: str = ""
    category: str = ""
    position: Position = Field(default_factory=Position)
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: list[Port] = Field(default_factory=list)
    outputs: list[Port] = Field(default_factory=list)
    status: NodeStatus = "idle"

    def port(self, port_id: str) -> Port | None:
        """Find an input or output port by instance id."""
        for port in (*self.inputs, *self.outputs):
            if port.id == port_id:
                return port
        return None

    def output_named(self, name: str) -> Port | None:
        for port in self.outputs:
            if port.name == name:
                return port
        return None

    def with_port(self, port: Port) -> "Node":
        """Return a copy of this node with ``port`` replacing the same-id port."""
        if port.direction == "input":
            inputs = [port if p.id == port.id else p for p in self.inputs]
            return self.model_copy(update={"inputs": inputs})
        outputs = [port if p.id == port.id else p for p in self.outputs]
        return self.model_copy(update={"outputs": outputs})


class Connection(_Value):
    """A directed edge from an output port to an input port."""

    id: str
    source_node_id: str
    source_port_id: str
    target_node_id: str
    target_port_id: str
    data_type: str = ANY_TYPE

    def touches(self, node_id: str) -> bool:
        return self.source_node_id == node_id or self.target_node_id == node_id


class GraphSnapshot(_Value):
    """An immutable copy of a graph's nodes and connections."""

    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)


class ExecutionError(_Record):
    node_id: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class Execution(_Record):
    """One end-to-end run of a graph.

    ``executed_nodes`` is append-only during a run; a node entered through
    several activations appears once per activation.
    """

    id: str
    status: ExecutionStatus = "running"
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None
    executed_nodes: list[str] = Field(default_factory=list)
    errors: list[ExecutionError] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)
    input: dict[str, Any] = Field(default_factory=dict)

    def record_error(self, node_id: str, message: str) -> ExecutionError:
        error = ExecutionError(node_id=node_id, message=message)
        self.errors.append(error)
        return error

    def finish(self) -> None:
        """Close the run: failed whenever any error was recorded."""
        self.status = "failed" if self.errors else "completed"
        self.ended_at = utcnow()

    @property
    def duration(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class ExecutionLog(_Record):
    """A single structured log line attached to a run."""

    id: str
    execution_id: str
    node_id: str = "system"
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = "info"
    message: str
    data: Any = None
    duration: float | None = None


class NodeTestResult(_Record):
    """Outcome of running a single node against synthetic input."""

    success: bool
    node_id: str
    input: Any = None
    output: Any = None
    active_ports: list[str] = Field(default_factory=list)
    error: str | None = None
    duration: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)


class Subflow(_Record):
    """A reusable subgraph exposed as a single composite node.

    ``input_mapping`` maps internal field names to dotted paths in the
    caller's payload; ``output_mapping`` maps caller-facing field names to
    dotted paths in the subflow's final payload. Empty mappings pass the
    payload through unchanged.
    """

    id: str
    name: str = "Untitled Subflow"
    description: str = ""
    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    inputs: list[Port] = Field(default_factory=list)
    outputs: list[Port] = Field(default_factory=list)
    input_mapping: dict[str, str] = Field(default_factory=dict)
    output_mapping: dict[str, str] = Field(default_factory=dict)
    reusable: bool = True

    @classmethod
    def from_nodes(
        cls,
        subflow_id: str,
        nodes: Iterable[Node],
        connections: Iterable[Connection],
        **fields: Any,
    ) -> "Subflow":
        """Package a node subset; only connections with both ends inside are kept.

        The declared ports are derived from the ``subflow-input`` and
        ``subflow-output`` nodes of the subset.
        """
        picked = [node.model_copy(deep=True) for node in nodes]
        ids = {node.id for node in picked}
        internal = [c for c in connections if c.source_node_id in ids and c.target_node_id in ids]
        inputs = [
            Port(id=port_id_for(subflow_id, "input", n.id), name=n.id, direction="input")
            for n in picked
            if n.template_id == "subflow-input"
        ]
        outputs = [
            Port(id=port_id_for(subflow_id, "output", n.id), name=n.id, direction="output")
            for n in picked
            if n.template_id == "subflow-output"
        ]
        return cls(
            id=subflow_id,
            nodes=picked,
            connections=internal,
            inputs=inputs,
            outputs=outputs,
            **fields,
        )

    @classmethod
    def from_store(
        cls,
        store: Any,
        subflow_id: str,
        node_ids: Iterable[str] | None = None,
        **fields: Any,
    ) -> "Subflow":
        """Package ``node_ids`` (or every node) of a GraphStore as a Subflow."""
        wanted = None if node_ids is None else set(node_ids)
        nodes = [n for n in store.nodes if wanted is None or n.id in wanted]
        return cls.from_nodes(subflow_id, nodes, store.connections, **fields)


ScheduleInterval = Literal["hourly", "daily", "weekly", "monthly"]


class Schedule(_Record):
    """When a scheduled run fires: once at ``at``, or every interval."""

    type: Literal["once", "recurring"]
    at: datetime | None = None
    interval: ScheduleInterval | None = None
    every_minutes: int | None = Field(default=None, ge=1)

    @field_validator("at")
    @classmethod
    def _at_in_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @model_validator(mode="after")
    def _check_shape(self) -> "Schedule":
        if self.type == "once" and self.at is None:
            raise ValueError("a 'once' schedule needs 'at'")
        if self.type == "recurring" and self.interval is None and self.every_minutes is None:
            raise ValueError("a 'recurring' schedule needs 'interval' or 'everyMinutes'")
        return self


class ScheduleEntry(_Record):
    id: str
    name: str = ""
    schedule: Schedule
    enabled: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None

    @field_validator("last_run", "next_run")
    @classmethod
    def _runs_in_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class WorkflowDocument(_Record):
    """Serializable workflow definition handed to the persistence boundary."""

    id: str = "workflow"
    name: str = "Untitled Workflow"
    description: str = ""
    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    subflows: list[Subflow] = Field(default_factory=list)
    schedules: list[ScheduleEntry] = Field(default_factory=list)
