"""Branching-node semantics: if/else, switch, loops and predicate routing.

The evaluator decides which output ports (by template port name) a condition
node activates. Loop nodes also drive their body ports themselves through the
``run_port`` callback supplied by the engine; bodies always run one target at
a time, in connection order, so iteration side effects stay ordered.

Rule and case lists are evaluated strictly in declaration order and the first
match wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from marathon.domain.models import Node
from marathon.errors import ConditionEvaluationError
from marathon.execution.expressions import evaluate

if TYPE_CHECKING:
    from marathon.execution.logs import ExecutionLogger

logger = logging.getLogger(__name__)


@dataclass
class PortOutcome:
    """Result of one target executed from a loop body port."""

    node_id: str
    output: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# Executes every target wired to the named output port, one after another.
PortRunner = Callable[[str, Any], Awaitable[list[PortOutcome]]]


@dataclass
class Branch:
    """The payload a condition node emits and the port names it activates."""

    payload: Any
    ports: list[str] = field(default_factory=list)
    iterations: int | None = None


def _as_dict(payload: Any) -> dict[str, Any]:
    if isinstance(payload, dict):
        return dict(payload)
    return {"value": payload}


class ConditionEvaluator:
    """Dispatches condition nodes by catalog id.

    Example:
        evaluator = ConditionEvaluator()
        branch = await evaluator.evaluate(node, {"value": 11}, run_port)
        assert branch.ports == ["true"]
    """

    def __init__(self, *, max_while_iterations: int = 100) -> None:
        self.max_while_iterations = max_while_iterations

    async def evaluate(
        self,
        node: Node,
        payload: Any,
        run_port: PortRunner,
        log: ExecutionLogger | None = None,
    ) -> Branch:
        template_id = node.template_id
        if template_id == "if-else":
            return self._if_else(node, payload, log)
        if template_id == "switch":
            return self._switch(node, payload)
        if template_id == "for-loop":
            return await self._for_loop(node, payload, run_port, log)
        if template_id == "while-loop":
            return await self._while_loop(node, payload, run_port, log)
        if template_id == "memory-router" or "rules" in node.config:
            return self._route(node, payload, log)
        return Branch(payload=payload, ports=[port.name for port in node.outputs])

    def test(self, node: Node, expression: str, data: Any, log: ExecutionLogger | None = None) -> bool:
        """Evaluate a predicate; failures count as False and are logged."""
        try:
            return bool(evaluate(expression, data))
        except ConditionEvaluationError as exc:
            logger.warning("Node %s: condition %r failed: %s", node.id, expression, exc)
            if log is not None:
                log.warning(
                    f"Condition evaluation failed: {exc}",
                    node_id=node.id,
                    data={"condition": expression},
                )
            return False

    # ── if/else ──

    def _if_else(self, node: Node, payload: Any, log: ExecutionLogger | None) -> Branch:
        expression = node.config.get("condition")
        if expression:
            result = self.test(node, expression, payload, log)
        else:
            result = bool(payload.get("condition")) if isinstance(payload, dict) else bool(payload)
        return Branch(payload=payload, ports=["true" if result else "false"])

    # ── switch ──

    def _switch(self, node: Node, payload: Any) -> Branch:
        field_name = node.config.get("field")
        if field_name and isinstance(payload, dict):
            value = payload.get(field_name)
        elif isinstance(payload, dict) and "value" in payload:
            value = payload["value"]
        else:
            value = payload

        for index, case in enumerate(node.config.get("cases") or []):
            case_value = case.get("value") if isinstance(case, dict) else case
            if case_value == value:
                return Branch(payload=payload, ports=[f"case{index + 1}"])
        return Branch(payload=payload, ports=["default"])

    # ── for-loop ──

    async def _for_loop(
        self,
        node: Node,
        payload: Any,
        run_port: PortRunner,
        log: ExecutionLogger | None,
    ) -> Branch:
        base = _as_dict(payload)
        array_field = node.config.get("arrayField") or "array"
        items = base.get(array_field) or []
        if not isinstance(items, list):
            raise ConditionEvaluationError(f"for-loop expects '{array_field}' to be a list")

        results: list[dict[str, Any]] = []
        for index, item in enumerate(items):
            item_payload = {**base, "item": item, "index": index}
            outcomes = await run_port("item", item_payload)
            entry: dict[str, Any] = {
                "item": item,
                "index": index,
                "outputs": [outcome.output for outcome in outcomes if outcome.ok],
            }
            failures = [outcome.error for outcome in outcomes if not outcome.ok]
            if failures:
                entry["errors"] = failures
            results.append(entry)

        if log is not None:
            log.debug(f"For-loop finished {len(results)} iterations", node_id=node.id)
        return Branch(
            payload={**base, "results": results, "completed": True},
            ports=["complete"],
            iterations=len(results),
        )

    # ── while-loop ──

    async def _while_loop(
        self,
        node: Node,
        payload: Any,
        run_port: PortRunner,
        log: ExecutionLogger | None,
    ) -> Branch:
        max_iterations = int(node.config.get("maxIterations") or self.max_while_iterations)
        expression = node.config.get("condition") or "False"
        current = _as_dict(payload)
        iteration = 0
        capped = False

        while self.test(node, expression, current, log):
            if iteration >= max_iterations:
                capped = True
                break
            loop_payload = {**current, "iteration": iteration}
            for outcome in await run_port("loop", loop_payload):
                if outcome.ok and isinstance(outcome.output, dict):
                    current = outcome.output
            iteration += 1

        if capped and log is not None:
            log.warning(f"While-loop stopped at the iteration cap ({max_iterations})", node_id=node.id)
        return Branch(payload={**current, "iterations": iteration}, ports=["exit"], iterations=iteration)

    # ── predicate router ──

    def _route(self, node: Node, payload: Any, log: ExecutionLogger | None) -> Branch:
        for rule in node.config.get("rules") or []:
            expression = rule.get("condition")
            output = rule.get("output")
            if not expression or not output:
                continue
            if self.test(node, expression, payload, log):
                return Branch(payload=payload, ports=[output])
        return Branch(payload=payload, ports=[node.config.get("defaultOutput") or "default"])
