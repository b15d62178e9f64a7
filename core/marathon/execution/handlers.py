"""Action and data delegates.

This module provides:
- A registry mapping catalog template ids to delegate callables
- The default delegate used when no specific handler is registered
- Built-in handlers for the data-kind templates

Design:
- A delegate has the signature ``(node, payload) -> payload`` and may be sync
  or async. Whatever it raises becomes a NodeExecutionError for that node.
- The engine never knows what a delegate does (create a note, call an LLM,
  send a notification); hosts plug their integrations in here.

Example:
    registry = ActionRegistry()

    @registry.register_action("send-notification")
    async def send(node: Node, payload: dict) -> dict:
        await notifier.push(payload["message"])
        return {**payload, "sent": True}
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Union

from marathon.domain.models import Node
from marathon.execution.expressions import evaluate_condition

logger = logging.getLogger(__name__)

# Type alias for delegate functions
ActionHandler = Callable[[Node, Any], Union[Any, Awaitable[Any]]]


def default_action(node: Node, payload: Any) -> Any:
    """Mark the payload as processed by ``node``.

    Non-dict payloads are wrapped under ``value``.
    """
    base = dict(payload) if isinstance(payload, dict) else {"value": payload}
    return {**base, "processed": True, "nodeId": node.id}


class ActionRegistry:
    """Registry of node delegates keyed by template id.

    Example:
        registry = ActionRegistry()
        registry.register("tag-memory", tag_memory)
        output = await registry.invoke(node, payload)
    """

    def __init__(self, *, fallback: ActionHandler | None = default_action, builtins: bool = True) -> None:
        self._handlers: dict[str, ActionHandler] = {}
        self._fallback = fallback
        if builtins:
            register_builtin_handlers(self)

    def register(self, template_id: str, handler: ActionHandler) -> None:
        """Register a delegate for a template id, replacing any previous one."""
        self._handlers[template_id] = handler

    def register_action(self, template_id: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of ``register``."""

        def decorator(handler: ActionHandler) -> ActionHandler:
            self.register(template_id, handler)
            return handler

        return decorator

    def has_handler(self, template_id: str) -> bool:
        return template_id in self._handlers

    def get(self, template_id: str) -> ActionHandler:
        """Find the delegate for a template id.

        Raises:
            LookupError: If nothing is registered and there is no fallback.
        """
        handler = self._handlers.get(template_id, self._fallback)
        if handler is None:
            raise LookupError(f"No action handler registered for template: {template_id}")
        return handler

    async def invoke(self, node: Node, payload: Any) -> Any:
        """Run the delegate for ``node`` and await it when it is async."""
        result = self.get(node.template_id)(node, payload)
        if inspect.isawaitable(result):
            result = await result
        return result


# Built-in delegates for the data templates


def set_variable(node: Node, payload: Any) -> Any:
    """Store a value under ``variables[variableName]``.

    Config:
        variableName: Name to store under (defaults to the node id).
        valueField: Payload field to read; the whole payload when empty.
        value: Literal value used when present.
    """
    base = dict(payload) if isinstance(payload, dict) else {"value": payload}
    name = node.config.get("variableName") or node.id
    if "value" in node.config:
        value = node.config["value"]
    elif node.config.get("valueField"):
        value = base.get(node.config["valueField"])
    else:
        value = payload
    variables = dict(base.get("variables") or {})
    variables[name] = value
    return {**base, "variables": variables}


def merge_streams(node: Node, payload: Any) -> Any:
    """Copy fields into the payload according to ``fieldMapping``.

    ``combine`` keeps existing fields, ``overwrite`` replaces them.
    """
    base = dict(payload) if isinstance(payload, dict) else {"value": payload}
    strategy = node.config.get("mergeStrategy", "combine")
    merged = dict(base)
    for target, source in (node.config.get("fieldMapping") or {}).items():
        if strategy == "combine" and target in merged:
            continue
        merged[target] = base.get(source)
    if node.config.get("includeMetadata"):
        merged["mergedBy"] = node.id
    return merged


def filter_by_field(node: Node, payload: Any) -> Any:
    """Split ``payload['data']`` by ``filterExpression``, evaluated per ``item``."""
    base = dict(payload) if isinstance(payload, dict) else {"data": payload}
    expression = node.config.get("filterExpression") or ""
    items = base.get("data") or []
    if not isinstance(items, list):
        raise TypeError("filter-by-field expects 'data' to be a list")
    if not expression:
        return {**base, "filtered": list(items), "rejected": []}

    filtered: list[Any] = []
    rejected: list[Any] = []
    for item in items:
        if evaluate_condition(expression, item, item=item):
            filtered.append(item)
        else:
            rejected.append(item)
    result = {**base, "filtered": filtered}
    if node.config.get("outputRejected"):
        result["rejected"] = rejected
    return result


def print_message(node: Node, payload: Any) -> Any:
    logger.info("%s: %s", node.title or node.id, node.config.get("message", payload))
    return payload


def passthrough(node: Node, payload: Any) -> Any:
    return payload


def register_builtin_handlers(registry: ActionRegistry) -> None:
    registry.register("set-variable", set_variable)
    registry.register("merge-streams", merge_streams)
    registry.register("filter-by-field", filter_by_field)
    registry.register("action-print", print_message)
    registry.register("subflow-output", passthrough)
