"""Exception taxonomy for the Marathon engine.

Errors are contained at the lowest scope that can handle them:

- ``ConnectionValidationError`` is raised by the validator and swallowed by
  ``GraphStore.connect`` (the graph is left untouched).
- ``NodeExecutionError`` is contained to the branch that raised it.
- ``ConditionEvaluationError`` is turned into "did not match" by the evaluator.
- ``EngineFatalError`` is the only error that fails a run outright.
"""

from __future__ import annotations


class MarathonError(Exception):
    """Base class for all Marathon errors."""


class ConnectionValidationError(MarathonError):
    """A connection attempt violates port direction, type or fan-in rules."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class NodeExecutionError(MarathonError):
    """A node's own logic (or its delegate) failed."""

    def __init__(self, node_id: str, message: str) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.message = message


class SubflowError(NodeExecutionError):
    """A subflow node could not run its nested graph."""


class ConditionEvaluationError(MarathonError):
    """A branch predicate could not be evaluated."""


class ExpressionSyntaxError(ConditionEvaluationError):
    """An expression uses syntax outside the sandboxed grammar."""


class EngineFatalError(MarathonError):
    """An error escaping the root of a run."""


class UnknownTemplateError(KeyError):
    """No catalog entry exists for a template id."""


class UnknownNodeError(KeyError):
    """No node with the given id exists in the graph."""
