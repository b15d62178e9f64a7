"""Undo/redo history of graph snapshots."""

from __future__ import annotations

import logging

from marathon.domain.models import GraphSnapshot

logger = logging.getLogger(__name__)


class HistoryManager:
    """Two stacks of immutable graph snapshots.

    ``push`` is called with the state *before* a mutation and clears the redo
    stack. ``undo`` hands back the previous state and parks the current one
    on the redo stack; ``redo`` is the mirror image.
    """

    def __init__(self, limit: int | None = None) -> None:
        self.limit = limit
        self._undo: list[GraphSnapshot] = []
        self._redo: list[GraphSnapshot] = []

    def push(self, snapshot: GraphSnapshot) -> None:
        self._undo.append(snapshot)
        self._redo.clear()
        if self.limit is not None and len(self._undo) > self.limit:
            del self._undo[0]

    def undo(self, current: GraphSnapshot) -> GraphSnapshot | None:
        if not self._undo:
            return None
        self._redo.append(current)
        return self._undo.pop()

    def redo(self, current: GraphSnapshot) -> GraphSnapshot | None:
        if not self._redo:
            return None
        self._undo.append(current)
        return self._redo.pop()

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def undo_depth(self) -> int:
        return len(self._undo)

    @property
    def redo_depth(self) -> int:
        return len(self._redo)

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()
        logger.debug("History cleared")
