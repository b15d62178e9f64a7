"""Port validation and connection routing."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from marathon.domain.models import ANY_TYPE, Connection, Port
from marathon.errors import ConnectionValidationError

logger = logging.getLogger(__name__)


def types_compatible(source_type: str, target_type: str) -> bool:
    """Two declared types are compatible when equal or when either is 'any'."""
    return source_type == ANY_TYPE or target_type == ANY_TYPE or source_type == target_type


def validate_connection(from_port: Port, to_port: Port) -> None:
    """Check that ``from_port`` may be wired into ``to_port``.

    Raises:
        ConnectionValidationError: With a human-readable ``reason``.
    """
    if from_port.direction == to_port.direction:
        raise ConnectionValidationError(
            f"cannot connect {from_port.direction} to {to_port.direction}"
        )
    if from_port.direction != "output":
        raise ConnectionValidationError("connections must run from an output port to an input port")
    if to_port.connected:
        raise ConnectionValidationError(f"input port {to_port.id} is already connected")
    if not types_compatible(from_port.data_type, to_port.data_type):
        raise ConnectionValidationError(
            f"type mismatch: {from_port.data_type} -> {to_port.data_type}"
        )


def is_valid_connection(from_port: Port, to_port: Port) -> bool:
    """Boolean form of ``validate_connection``."""
    try:
        validate_connection(from_port, to_port)
    except ConnectionValidationError:
        return False
    return True


class ConnectionIndex:
    """Lookup table from output ports to the connections leaving them.

    The index is built from a fixed list of connections at run start, so edits
    made to the live graph while a run is in flight do not change routing for
    that run.
    """

    def __init__(self, connections: Iterable[Connection]) -> None:
        self.connections: list[Connection] = list(connections)
        self._by_source: dict[tuple[str, str], list[Connection]] = {}
        for conn in self.connections:
            self._by_source.setdefault((conn.source_node_id, conn.source_port_id), []).append(conn)
        logger.debug("Indexed %d connections", len(self.connections))

    def outgoing(self, node_id: str, port_id: str) -> list[Connection]:
        """Connections leaving one output port, in creation order."""
        return list(self._by_source.get((node_id, port_id), ()))
