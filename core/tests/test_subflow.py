"""Tests for subflow composition.

These tests verify:
- Input/output mappings with dotted paths
- Per-invocation isolation under concurrent calls
- Failure handling (error port vs. recorded SubflowError)
- Reuse and nesting guards
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import wire
from marathon.config import EngineConfig
from marathon.domain.models import Subflow
from marathon.errors import SubflowError
from marathon.execution.engine import ExecutionEngine
from marathon.execution.handlers import ActionRegistry
from marathon.execution.subflow import (
    SubflowComposer,
    SubflowLibrary,
    apply_mapping,
    get_path,
)
from marathon.services.graph_store import GraphStore


def _subflow(catalog, subflow_id: str, body_template: str, **fields) -> Subflow:
    inner = GraphStore(catalog=catalog)
    entry = inner.add_node("subflow-input", node_id="in")
    body = inner.add_node(body_template, node_id="body")
    exit_node = inner.add_node("subflow-output", node_id="out")
    wire(inner, entry, "data", body)
    wire(inner, body, "out", exit_node)
    return Subflow.from_store(inner, subflow_id, name=subflow_id, **fields)


@pytest.fixture
def library():
    return SubflowLibrary()


@pytest.fixture
def sub_engine(config, actions, library):
    return ExecutionEngine(config, actions=actions, subflows=SubflowComposer(library))


def _caller(store, subflow_id: str, node_id: str = "sub"):
    node = store.add_node("subflow", node_id=node_id)
    store.update_node_config(node_id, {"subflowId": subflow_id})
    return store.get_node(node_id)


class TestPaths:
    def test_get_path(self):
        data = {"memory": {"tags": ["a", "b"], "meta": {"score": 3}}}
        assert get_path(data, "memory.meta.score") == 3
        assert get_path(data, "memory.tags.1") == "b"
        assert get_path(data, "memory.missing.deep", "fallback") == "fallback"

    def test_apply_mapping(self):
        assert apply_mapping({"a": {"b": 1}}, {"x.y": "a.b"}) == {"x": {"y": 1}}
        assert apply_mapping({"keep": True}, {}) == {"keep": True}


class TestFromStore:
    def test_only_internal_connections_are_kept(self, store):
        entry = store.add_node("subflow-input", node_id="in")
        body = store.add_node("recorder", node_id="body")
        outside = store.add_node("recorder", node_id="outside")
        wire(store, entry, "data", body)
        wire(store, body, "out", outside)

        subflow = Subflow.from_store(store, "partial", ["in", "body"])

        assert [n.id for n in subflow.nodes] == ["in", "body"]
        assert len(subflow.connections) == 1
        assert [p.name for p in subflow.inputs] == ["in"]
        assert subflow.outputs == []


class TestExecution:
    @pytest.mark.asyncio
    async def test_mapped_result_flows_downstream(self, store, catalog, library, sub_engine):
        library.register(
            _subflow(
                catalog,
                "increment",
                "counter",
                input_mapping={"count": "memory.count"},
                output_mapping={"total": "count"},
            )
        )
        trigger = store.add_node("manual-trigger", node_id="t")
        caller = _caller(store, "increment")
        after = store.add_node("recorder", node_id="after")
        wire(store, trigger, "data", caller)
        wire(store, caller, "output", after)

        execution = await sub_engine.run(store, {"memory": {"count": 4}})

        assert execution.status == "completed"
        assert execution.outputs["after"] == {"total": 5}
        assert execution.executed_nodes == ["t", "sub", "after"]
        assert any(entry.node_id == "body" for entry in sub_engine.last_log.entries)

    @pytest.mark.asyncio
    async def test_concurrent_invocations_are_isolated(self, store, catalog, config, library):
        sub_actions = ActionRegistry()

        async def slow_double(node, payload):
            await asyncio.sleep(0.01 * (3 - payload["value"]))
            return {"value": payload["value"] * 2, "seen": node.id}

        sub_actions.register("recorder", slow_double)
        composer = SubflowComposer(library)
        engine = ExecutionEngine(config, actions=sub_actions, subflows=composer)
        library.register(_subflow(catalog, "double", "recorder"))
        caller = _caller(store, "double")

        results = await asyncio.gather(
            composer.execute(engine, caller, {"value": 1}),
            composer.execute(engine, caller, {"value": 2}),
        )

        assert [r.payload["value"] for r in results] == [2, 4]
        assert all(r.ports == ["output"] for r in results)
        assert results[0].execution_id != results[1].execution_id
        definition = library.get("double")
        assert all(node.status == "idle" for node in definition.nodes)

    @pytest.mark.asyncio
    async def test_failure_without_error_port_is_recorded_once(self, store, catalog, library, sub_engine):
        library.register(_subflow(catalog, "fragile", "boom"))
        trigger = store.add_node("manual-trigger", node_id="t")
        caller = _caller(store, "fragile")
        after = store.add_node("recorder", node_id="after")
        wire(store, trigger, "data", caller)
        wire(store, caller, "output", after)

        execution = await sub_engine.run(store)

        assert execution.status == "failed"
        assert [e.node_id for e in execution.errors] == ["sub"]
        assert "body exploded" in execution.errors[0].message
        assert "after" not in execution.executed_nodes
        assert store.get_node("sub").status == "error"

    @pytest.mark.asyncio
    async def test_failure_routes_to_wired_error_port(self, store, catalog, library, sub_engine):
        library.register(_subflow(catalog, "fragile", "boom"))
        trigger = store.add_node("manual-trigger", node_id="t")
        caller = _caller(store, "fragile")
        on_ok = store.add_node("recorder", node_id="on-ok")
        on_error = store.add_node("recorder", node_id="on-error")
        wire(store, trigger, "data", caller)
        wire(store, caller, "output", on_ok)
        wire(store, caller, "error", on_error)

        execution = await sub_engine.run(store, {"id": 7})

        assert execution.status == "completed"
        assert "on-error" in execution.executed_nodes
        assert "on-ok" not in execution.executed_nodes
        payload = execution.outputs["on-error"]
        assert payload["id"] == 7
        assert payload["subflowErrors"] == ["body: body exploded"]

    @pytest.mark.asyncio
    async def test_unknown_subflow(self, store, sub_engine):
        trigger = store.add_node("manual-trigger", node_id="t")
        wire(store, trigger, "data", _caller(store, "missing"))

        execution = await sub_engine.run(store)

        assert execution.errors[0].message == "Unknown subflow: missing"

    @pytest.mark.asyncio
    async def test_non_reusable_subflow_binds_to_one_node(self, store, catalog, library, sub_engine):
        library.register(_subflow(catalog, "private", "recorder", reusable=False))
        trigger = store.add_node("manual-trigger", node_id="t")
        wire(store, trigger, "data", _caller(store, "private", "s1"))
        wire(store, trigger, "data", _caller(store, "private", "s2"))

        execution = await sub_engine.run(store)

        assert len(execution.errors) == 1
        assert "not reusable" in execution.errors[0].message

        again = await sub_engine.run(store)
        assert [e.node_id for e in again.errors] == [execution.errors[0].node_id]

    @pytest.mark.asyncio
    async def test_recursive_subflow_stops_at_depth_limit(self, store, catalog, actions, library):
        inner = GraphStore(catalog=catalog)
        entry = inner.add_node("subflow-input", node_id="in")
        nested = inner.add_node("subflow", node_id="inner")
        inner.update_node_config("inner", {"subflowId": "forever"})
        wire(inner, entry, "data", nested)
        library.register(Subflow.from_store(inner, "forever"))
        engine = ExecutionEngine(
            EngineConfig(max_subflow_depth=3),
            actions=actions,
            subflows=SubflowComposer(library),
        )
        trigger = store.add_node("manual-trigger", node_id="t")
        wire(store, trigger, "data", _caller(store, "forever"))

        execution = await engine.run(store)

        assert execution.status == "failed"
        assert [e.node_id for e in execution.errors] == ["sub"]
        assert "nesting exceeds 3 levels" in execution.errors[0].message

    @pytest.mark.asyncio
    async def test_subflow_inputs_are_not_top_level_triggers(self, store, sub_engine):
        store.add_node("subflow-input", node_id="stray")

        execution = await sub_engine.run(store)

        assert execution.executed_nodes == []


class TestLibrary:
    def test_register_get_remove(self, catalog, library):
        subflow = _subflow(catalog, "one", "recorder")
        library.register(subflow)

        assert "one" in library
        assert library.get("one") is subflow
        assert len(library) == 1
        assert library.remove("one") is True
        assert library.get("one") is None

    def test_bind_rejects_second_owner(self, catalog, library):
        subflow = _subflow(catalog, "solo", "recorder", reusable=False)
        library.bind(subflow, "a")
        library.bind(subflow, "a")
        with pytest.raises(SubflowError):
            library.bind(subflow, "b")
