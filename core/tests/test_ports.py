"""Tests for port validation and connection routing.

These tests verify:
- Type compatibility rules ("any" matches everything)
- Direction and fan-in checks
- The ConnectionIndex lookups used by the engine
"""

from __future__ import annotations

import pytest

from marathon.domain.models import Connection, Port
from marathon.errors import ConnectionValidationError
from marathon.execution.ports import (
    ConnectionIndex,
    is_valid_connection,
    types_compatible,
    validate_connection,
)


def _port(name: str, direction: str, data_type: str = "any", connected: bool = False) -> Port:
    short = "in" if direction == "input" else "out"
    return Port(id=f"n.{short}.{name}", name=name, direction=direction, data_type=data_type, connected=connected)


class TestTypesCompatible:
    def test_identical_types(self):
        assert types_compatible("string", "string")

    def test_any_on_either_side(self):
        assert types_compatible("any", "number")
        assert types_compatible("object", "any")

    def test_mismatch(self):
        assert not types_compatible("string", "number")


class TestValidateConnection:
    def test_output_to_input_is_valid(self):
        validate_connection(_port("a", "output", "object"), _port("b", "input", "object"))
        assert is_valid_connection(_port("a", "output"), _port("b", "input", "number"))

    def test_same_direction_rejected(self):
        with pytest.raises(ConnectionValidationError) as info:
            validate_connection(_port("a", "output"), _port("b", "output"))
        assert "output" in info.value.reason

    def test_input_to_output_rejected(self):
        assert not is_valid_connection(_port("a", "input"), _port("b", "output"))

    def test_already_connected_input_rejected(self):
        target = _port("b", "input", connected=True)
        with pytest.raises(ConnectionValidationError, match="already connected"):
            validate_connection(_port("a", "output"), target)

    def test_type_mismatch_rejected(self):
        with pytest.raises(ConnectionValidationError, match="type mismatch"):
            validate_connection(_port("a", "output", "string"), _port("b", "input", "boolean"))


class TestConnectionIndex:
    @pytest.fixture
    def index(self):
        return ConnectionIndex(
            [
                Connection(id="c1", source_node_id="a", source_port_id="a.out.x", target_node_id="b", target_port_id="b.in.x"),
                Connection(id="c2", source_node_id="a", source_port_id="a.out.x", target_node_id="c", target_port_id="c.in.x"),
                Connection(id="c3", source_node_id="a", source_port_id="a.out.y", target_node_id="d", target_port_id="d.in.x"),
                Connection(id="c4", source_node_id="b", source_port_id="b.out.x", target_node_id="d", target_port_id="d.in.y"),
            ]
        )

    def test_outgoing_preserves_connection_order(self, index):
        assert [c.id for c in index.outgoing("a", "a.out.x")] == ["c1", "c2"]
        assert index.outgoing("a", "a.out.missing") == []
