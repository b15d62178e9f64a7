"""Tests for the GraphStore and its undo/redo history.

These tests verify:
- Node creation, removal (with cascading connections) and duplication
- Connection validation as a silent no-op
- Undo/redo restoring exact snapshots
- Change events for subscribers
- Document round trips and structural validation
"""

from __future__ import annotations

import pytest

from conftest import wire
from marathon.domain.models import Connection, Position
from marathon.errors import UnknownNodeError, UnknownTemplateError
from marathon.services.graph_store import GraphStore
from marathon.services.history import HistoryManager


class TestNodes:
    def test_add_node_generates_unique_ids(self, store):
        first = store.add_node("if-else")
        second = store.add_node("if-else")

        assert first.id != second.id
        assert first.id.startswith("if-else-")
        assert len(store.nodes) == 2

    def test_add_node_with_explicit_id(self, store):
        node = store.add_node("manual-trigger", Position(x=1, y=2), node_id="start")
        assert store.get_node("start") == node

        with pytest.raises(ValueError):
            store.add_node("manual-trigger", node_id="start")

    def test_unknown_template(self, store):
        with pytest.raises(UnknownTemplateError):
            store.add_node("nope")
        assert store.nodes == []
        assert not store.history.can_undo

    def test_get_unknown_node(self, store):
        with pytest.raises(UnknownNodeError):
            store.get_node("ghost")
        assert store.find_node("ghost") is None

    def test_remove_node_cascades_connections(self, store):
        trigger = store.add_node("manual-trigger", node_id="t")
        check = store.add_node("if-else", node_id="c")
        sink = store.add_node("recorder", node_id="r")
        wire(store, trigger, "data", check, "data")
        wire(store, check, "true", sink)

        assert store.remove_node("c") is True

        assert store.connections == []
        assert not store.get_node("t").output_named("data").connected
        assert not store.get_node("r").inputs[0].connected
        assert store.remove_node("c") is False

    def test_duplicate_node(self, store, config):
        original = store.add_node("if-else", Position(x=100, y=50), node_id="check")
        store.update_node_config("check", {"condition": "data.x == 1"})
        trigger = store.add_node("manual-trigger", node_id="t")
        wire(store, trigger, "data", original, "data")

        clone = store.duplicate_node("check")

        assert clone is not None
        assert clone.id != "check"
        assert clone.title == "If/Else (copy)"
        assert clone.position == Position(x=100 + config.duplicate_offset, y=50 + config.duplicate_offset)
        assert clone.config == {"condition": "data.x == 1"}
        assert all(not p.connected for p in (*clone.inputs, *clone.outputs))
        assert all(p.id.startswith(clone.id) for p in (*clone.inputs, *clone.outputs))
        assert not any(c.touches(clone.id) for c in store.connections)

    def test_duplicate_missing_node(self, store):
        assert store.duplicate_node("ghost") is None

    def test_update_and_move(self, store):
        store.add_node("switch", node_id="s")
        store.update_node_config("s", {"field": "kind"})
        assert store.get_node("s").config["field"] == "kind"
        assert "cases" in store.get_node("s").config

        store.update_node_config("s", {"field": "other"}, merge=False)
        assert store.get_node("s").config == {"field": "other"}

        moved = store.move_node("s", 10, 20)
        assert moved.position == Position(x=10, y=20)


class TestConnect:
    def test_connect_marks_both_ports(self, store):
        trigger = store.add_node("manual-trigger", node_id="t")
        check = store.add_node("if-else", node_id="c")

        conn = wire(store, trigger, "data", check, "data")

        assert isinstance(conn, Connection)
        assert store.get_node("t").output_named("data").connected
        assert store.get_node("c").port(conn.target_port_id).connected

    def test_invalid_connect_leaves_graph_unchanged(self, store):
        trigger = store.add_node("manual-trigger", node_id="t")
        check = store.add_node("if-else", node_id="c")
        other = store.add_node("manual-trigger", node_id="t2")
        wire(store, trigger, "data", check, "data")
        before = store.snapshot()
        depth = store.history.undo_depth

        data_in = store.get_node("c").inputs[1].id
        result = store.connect("t2", other.outputs[0].id, "c", data_in)

        assert result is None
        assert "already connected" in store.last_rejection
        assert store.snapshot() == before
        assert store.history.undo_depth == depth

    def test_same_direction_rejected(self, store):
        a = store.add_node("manual-trigger", node_id="a")
        b = store.add_node("manual-trigger", node_id="b")
        assert store.connect("a", a.outputs[0].id, "b", b.outputs[0].id) is None

    def test_type_mismatch_rejected(self, store):
        file_node = store.add_node("file-uploaded", node_id="f")
        check = store.add_node("if-else", node_id="c")
        condition_in = check.inputs[0]
        assert condition_in.data_type == "boolean"

        assert store.connect("f", file_node.outputs[0].id, "c", condition_in.id) is None
        assert "type mismatch" in store.last_rejection

    def test_unknown_port_rejected(self, store):
        store.add_node("manual-trigger", node_id="t")
        store.add_node("if-else", node_id="c")
        assert store.connect("t", "t.out.nope", "c", "c.in.data") is None

    def test_disconnect(self, store):
        trigger = store.add_node("manual-trigger", node_id="t")
        check = store.add_node("if-else", node_id="c")
        conn = wire(store, trigger, "data", check, "data")

        assert store.disconnect(conn.id) is True
        assert store.connections == []
        assert not store.get_node("c").port(conn.target_port_id).connected
        assert store.disconnect(conn.id) is False


class TestHistory:
    def test_undo_restores_exact_prior_snapshots(self, store):
        snapshots = [store.snapshot()]
        trigger = store.add_node("manual-trigger", node_id="t")
        snapshots.append(store.snapshot())
        check = store.add_node("if-else", node_id="c")
        snapshots.append(store.snapshot())
        wire(store, trigger, "data", check, "data")
        snapshots.append(store.snapshot())
        store.update_node_config("c", {"condition": "data.value > 3"})

        for expected in reversed(snapshots):
            assert store.undo() is True
            assert store.snapshot() == expected
        assert store.undo() is False

    def test_redo_after_undo(self, store):
        store.add_node("manual-trigger", node_id="t")
        after = store.snapshot()

        store.undo()
        assert store.nodes == []
        assert store.redo() is True
        assert store.snapshot() == after
        assert store.redo() is False

    def test_new_mutation_clears_redo(self, store):
        store.add_node("manual-trigger", node_id="t")
        store.undo()
        assert store.history.can_redo

        store.add_node("if-else", node_id="c")
        assert not store.history.can_redo

    def test_every_mutation_is_recorded(self, store):
        trigger = store.add_node("manual-trigger", node_id="t")
        check = store.add_node("if-else", node_id="c")
        wire(store, trigger, "data", check, "data")
        store.duplicate_node("c")
        store.update_node_config("c", {"condition": "true"})
        store.remove_node("t")

        assert store.history.undo_depth == 6

    def test_status_changes_are_not_recorded(self, store):
        store.add_node("manual-trigger", node_id="t")
        store.set_status("t", "running")
        store.reset_statuses()
        assert store.history.undo_depth == 1

    def test_history_limit(self, catalog, config):
        store = GraphStore(catalog=catalog, config=config, history=HistoryManager(limit=2))
        for index in range(4):
            store.add_node("manual-trigger", node_id=f"t{index}")
        assert store.history.undo_depth == 2

    def test_snapshots_are_detached(self, store):
        store.add_node("switch", node_id="s")
        snapshot = store.snapshot()
        snapshot.nodes[0].config["cases"].clear()
        assert store.get_node("s").config["cases"]


class TestEvents:
    def test_listeners_receive_events(self, store):
        events = []
        unsubscribe = store.subscribe(events.append)

        trigger = store.add_node("manual-trigger", node_id="t")
        check = store.add_node("if-else", node_id="c")
        wire(store, trigger, "data", check, "data")
        store.connect("t", "t.out.data", "t", "t.out.data")
        unsubscribe()
        store.remove_node("t")

        kinds = [event.kind for event in events]
        assert kinds == ["node_added", "node_added", "connection_added", "connection_rejected"]
        assert events[-1].data["reason"]

    def test_failing_listener_does_not_break_edits(self, store):
        def broken(event):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        store.add_node("manual-trigger", node_id="t")
        assert store.find_node("t") is not None


class TestDocuments:
    def test_round_trip(self, store, catalog, config):
        trigger = store.add_node("manual-trigger", node_id="t")
        check = store.add_node("if-else", node_id="c")
        wire(store, trigger, "data", check, "data")

        document = store.to_document(workflow_id="wf", name="Demo")
        payload = document.model_dump(mode="json", by_alias=True)
        assert payload["connections"][0]["sourceNodeId"] == "t"

        restored = GraphStore.from_document(type(document).model_validate(payload), catalog=catalog, config=config)
        assert restored.snapshot() == store.snapshot()
        assert not restored.history.can_undo

    def test_clone_is_independent(self, store):
        store.add_node("manual-trigger", node_id="t")
        clone = store.clone()
        clone.remove_node("t")
        assert store.find_node("t") is not None

    def test_validate_reports_problems(self, store):
        trigger = store.add_node("manual-trigger", node_id="t")
        check = store.add_node("if-else", node_id="c")
        wire(store, trigger, "data", check, "data")
        assert store.validate() == []

        broken = store.snapshot().model_copy(
            update={
                "connections": [
                    *store.connections,
                    Connection(id="dangling", source_node_id="t", source_port_id="t.out.data", target_node_id="gone", target_port_id="gone.in.x"),
                ]
            }
        )
        store.restore(broken)
        assert any("dangling" in problem for problem in store.validate())
