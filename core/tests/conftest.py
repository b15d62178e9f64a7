"""Shared fixtures and graph-building helpers for the Marathon tests."""

from __future__ import annotations

from typing import Any

import pytest

from marathon.catalog import NodeTemplate, PortTemplate, TemplateCatalog, get_catalog
from marathon.config import EngineConfig
from marathon.domain.models import Connection, Node
from marathon.execution.engine import ExecutionEngine
from marathon.execution.handlers import ActionRegistry
from marathon.services.graph_store import GraphStore


def make_catalog() -> TemplateCatalog:
    """Built-in templates plus a few test-only nodes."""
    catalog = TemplateCatalog(list(get_catalog()))
    for template_id, title in (("counter", "Counter"), ("recorder", "Recorder"), ("boom", "Boom")):
        catalog.register(
            NodeTemplate(
                id=template_id,
                kind="action",
                title=title,
                category="testing",
                inputs=[PortTemplate(name="in", direction="input")],
                outputs=[PortTemplate(name="out", direction="output")],
            )
        )
    return catalog


class Recorder:
    """Action delegates that record what they saw."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []

    def record(self, node: Node, payload: Any) -> Any:
        self.calls.append((node.id, payload))
        return payload

    def count(self, node: Node, payload: Any) -> Any:
        self.calls.append((node.id, payload))
        return {**payload, "count": payload.get("count", 0) + 1}

    @staticmethod
    def boom(node: Node, payload: Any) -> Any:
        raise RuntimeError(f"{node.id} exploded")

    def items(self, node_id: str | None = None) -> list[Any]:
        return [payload.get("item") for nid, payload in self.calls if node_id is None or nid == node_id]


def wire(store: GraphStore, source: Node, out_name: str, target: Node, in_name: str | None = None) -> Connection:
    """Connect ``source``'s output named ``out_name`` to ``target``.

    ``in_name`` defaults to the target's first input port.
    """
    source = store.get_node(source.id)
    target = store.get_node(target.id)
    out_port = source.output_named(out_name)
    assert out_port is not None, f"{source.id} has no output {out_name}"
    if in_name is None:
        in_port = next(p for p in target.inputs if not p.connected)
    else:
        in_port = next(p for p in target.inputs if p.name == in_name)
    conn = store.connect(source.id, out_port.id, target.id, in_port.id)
    assert conn is not None, store.last_rejection
    return conn


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(step_delay=0.0, node_timeout=2.0)


@pytest.fixture
def catalog() -> TemplateCatalog:
    return make_catalog()


@pytest.fixture
def store(catalog: TemplateCatalog, config: EngineConfig) -> GraphStore:
    return GraphStore(catalog=catalog, config=config)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def actions(recorder: Recorder) -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("recorder", recorder.record)
    registry.register("counter", recorder.count)
    registry.register("boom", Recorder.boom)
    return registry


@pytest.fixture
def engine(config: EngineConfig, actions: ActionRegistry) -> ExecutionEngine:
    return ExecutionEngine(config, actions=actions)
