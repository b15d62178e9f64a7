"""Execution engine with concurrent fan-out over port connections."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from marathon.config import EngineConfig
from marathon.domain.models import Execution, Node, NodeTestResult
from marathon.errors import EngineFatalError, NodeExecutionError
from marathon.execution.conditions import ConditionEvaluator, PortOutcome
from marathon.execution.handlers import ActionRegistry
from marathon.execution.logs import ExecutionLogger
from marathon.execution.ports import ConnectionIndex

if TYPE_CHECKING:
    from marathon.execution.subflow import SubflowComposer
    from marathon.services.graph_store import GraphStore

logger = logging.getLogger(__name__)

# Loop nodes drive their own bodies; their duration is bounded by the
# iteration cap and by each body node's own timeout instead.
_UNTIMED_TEMPLATES = frozenset({"for-loop", "while-loop", "subflow"})


def new_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex[:12]}"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RunContext:
    """Mutable state shared by every branch of one run."""

    store: GraphStore
    execution: Execution
    log: ExecutionLogger
    index: ConnectionIndex
    depth: int = 0
    activations: int = 0


class ExecutionEngine:
    """Graph interpreter with fail-soft fan-out/fan-in.

    This engine:
    1. Finds the trigger nodes and launches each as an independent task
    2. For each node entered, runs its kind-specific logic
    3. Picks the active output ports (all of them, or the evaluator's choice)
    4. Recurses into every connected target concurrently
    5. Joins branches without letting one failure cancel its siblings

    Example:
        engine = ExecutionEngine(EngineConfig(step_delay=0.0))
        execution = await engine.run(store, {"value": 11})
        print(execution.status, execution.executed_nodes)
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        actions: ActionRegistry | None = None,
        evaluator: ConditionEvaluator | None = None,
        subflows: SubflowComposer | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.actions = actions or ActionRegistry()
        self.evaluator = evaluator or ConditionEvaluator(
            max_while_iterations=self.config.max_while_iterations
        )
        if subflows is None:
            from marathon.execution.subflow import SubflowComposer

            subflows = SubflowComposer()
        self.subflows = subflows
        self.last_log: ExecutionLogger | None = None

    # ── Runs ──

    async def run(
        self,
        store: GraphStore,
        input_data: dict[str, Any] | None = None,
        *,
        log: ExecutionLogger | None = None,
        depth: int = 0,
        entry_template: str | None = None,
    ) -> Execution:
        """Execute every trigger of ``store`` and return the finished Execution.

        Args:
            store: Graph to run. Node statuses are updated in place.
            input_data: Payload handed to each trigger.
            log: Collector for structured log entries; a fresh one is
                created (and kept as ``last_log``) when omitted.
            depth: Subflow nesting depth of this run.
            entry_template: Only start at triggers of this template
                (subflows start at their ``subflow-input`` nodes).

        Returns:
            The Execution, with status "failed" when any error was recorded.
        """
        execution = Execution(id=new_execution_id(), input=dict(input_data or {}))
        log = log or ExecutionLogger(execution.id, level=self.config.log_level)
        self.last_log = log
        ctx = RunContext(
            store=store,
            execution=execution,
            log=log,
            index=ConnectionIndex(store.connections),
            depth=depth,
        )

        logger.info("Starting execution %s", execution.id)
        log.info("Execution started", data={"input": execution.input} if execution.input else None)
        try:
            store.reset_statuses()
            triggers = self._entry_nodes(store, entry_template)
            if not triggers:
                if self.config.require_triggers:
                    raise EngineFatalError("Graph has no trigger nodes")
                log.warning("No trigger nodes found; nothing to execute")

            results = await asyncio.gather(
                *(self._activate(ctx, node.id, execution.input) for node in triggers),
                return_exceptions=True,
            )
            self._collect(ctx, [node.id for node in triggers], results)
        except Exception as exc:  # noqa: BLE001 - anything escaping the root fails the run
            logger.error("Execution %s failed: %s", execution.id, exc)
            execution.record_error("system", str(exc))
            log.error(f"Execution failed: {exc}")

        execution.finish()
        log.info(
            f"Execution {execution.status}",
            data={"executedNodes": len(execution.executed_nodes), "errors": len(execution.errors)},
            duration=execution.duration,
        )
        logger.info(
            "Execution %s %s (%d nodes, %d errors)",
            execution.id,
            execution.status,
            len(execution.executed_nodes),
            len(execution.errors),
        )
        return execution

    def run_sync(self, store: GraphStore, input_data: dict[str, Any] | None = None) -> Execution:
        """Blocking wrapper around ``run`` for scripts and the CLI."""
        return asyncio.run(self.run(store, input_data))

    @staticmethod
    def _entry_nodes(store: GraphStore, entry_template: str | None) -> list[Node]:
        triggers = store.trigger_nodes()
        if entry_template is not None:
            return [node for node in triggers if node.template_id == entry_template]
        return [node for node in triggers if node.template_id != "subflow-input"]

    # ── Node activation ──

    async def _activate(self, ctx: RunContext, node_id: str, payload: Any) -> Any:
        """Run one node and everything downstream of it.

        Returns the node's own output. Raises NodeExecutionError (already
        recorded in the Execution) when the node itself fails.
        """
        node = ctx.store.find_node(node_id)
        if node is None:
            raise self._fail(ctx, node_id, f"Node {node_id} no longer exists")

        ctx.activations += 1
        if ctx.activations > self.config.max_activations:
            raise self._fail(
                ctx, node_id, f"Activation limit reached ({self.config.max_activations})"
            )

        ctx.store.set_status(node_id, "running")
        ctx.execution.executed_nodes.append(node_id)
        ctx.log.debug(f"Executing {node.title or node.template_id}", node_id=node_id)
        started = time.perf_counter()

        # The single suspension point where sibling branches interleave.
        await asyncio.sleep(self.config.step_delay)

        try:
            output, active_ports = await self._run_logic(ctx, node, payload)
        except NodeExecutionError as exc:
            raise self._fail(ctx, node_id, exc.message, started) from exc
        except asyncio.TimeoutError as exc:
            raise self._fail(
                ctx, node_id, f"Node timed out after {self.config.node_timeout}s", started
            ) from exc
        except Exception as exc:  # noqa: BLE001 - delegate errors stay in this branch
            raise self._fail(ctx, node_id, str(exc) or type(exc).__name__, started) from exc

        ctx.store.set_status(node_id, "success")
        ctx.execution.outputs[node_id] = output
        ctx.log.info(
            f"{node.title or node.template_id} completed",
            node_id=node_id,
            data={"activePorts": active_ports} if node.kind == "condition" else None,
            duration=time.perf_counter() - started,
        )

        await self._fan_out(ctx, node, active_ports, output)
        return output

    async def _run_logic(self, ctx: RunContext, node: Node, payload: Any) -> tuple[Any, list[str]]:
        """Kind-specific logic; returns the output payload and active port names."""
        coro = self._node_logic(ctx, node, payload)
        if self.config.node_timeout is None or node.template_id in _UNTIMED_TEMPLATES:
            return await coro
        return await asyncio.wait_for(coro, timeout=self.config.node_timeout)

    async def _node_logic(self, ctx: RunContext, node: Node, payload: Any) -> tuple[Any, list[str]]:
        all_ports = [port.name for port in node.outputs]

        if node.kind == "trigger":
            if node.template_id == "subflow-input":
                return payload, all_ports
            base = dict(payload) if isinstance(payload, dict) else {"value": payload}
            return {**base, "triggered": True, "timestamp": _now_ms()}, all_ports

        if node.kind == "condition":

            async def run_port(port_name: str, port_payload: Any) -> list[PortOutcome]:
                return await self._run_port_sequential(ctx, node, port_name, port_payload)

            branch = await self.evaluator.evaluate(node, payload, run_port, ctx.log)
            return branch.payload, branch.ports

        if node.template_id == "subflow":
            result = await self.subflows.execute(
                self, node, payload, depth=ctx.depth, log=ctx.log
            )
            return result.payload, result.ports

        return await self.actions.invoke(node, payload), all_ports

    def _fail(
        self,
        ctx: RunContext,
        node_id: str,
        message: str,
        started: float | None = None,
    ) -> NodeExecutionError:
        """Record a node failure exactly once and build the error to raise."""
        ctx.store.set_status(node_id, "error")
        ctx.execution.record_error(node_id, message)
        ctx.log.error(
            message,
            node_id=node_id,
            duration=None if started is None else time.perf_counter() - started,
        )
        logger.warning("Node %s failed: %s", node_id, message)
        return NodeExecutionError(node_id, message)

    # ── Fan-out ──

    async def _fan_out(self, ctx: RunContext, node: Node, active_ports: list[str], output: Any) -> None:
        targets: list[str] = []
        for name in active_ports:
            port = node.output_named(name)
            if port is None:
                ctx.log.warning(f"Node has no output port named '{name}'", node_id=node.id)
                continue
            targets.extend(conn.target_node_id for conn in ctx.index.outgoing(node.id, port.id))

        if not targets:
            return
        results = await asyncio.gather(
            *(self._activate(ctx, target, output) for target in targets),
            return_exceptions=True,
        )
        self._collect(ctx, targets, results)

    def _collect(self, ctx: RunContext, node_ids: list[str], results: list[Any]) -> None:
        """Fail-soft join: branch failures were recorded where they happened."""
        for node_id, result in zip(node_ids, results):
            if isinstance(result, NodeExecutionError):
                continue
            if isinstance(result, BaseException):
                ctx.execution.record_error(node_id, str(result) or type(result).__name__)
                ctx.log.error(f"Unexpected branch failure: {result}", node_id=node_id)

    async def _run_port_sequential(
        self,
        ctx: RunContext,
        node: Node,
        port_name: str,
        payload: Any,
    ) -> list[PortOutcome]:
        """Run the targets of one output port one after another (loop bodies)."""
        port = node.output_named(port_name)
        if port is None:
            return []
        outcomes: list[PortOutcome] = []
        for conn in ctx.index.outgoing(node.id, port.id):
            try:
                output = await self._activate(ctx, conn.target_node_id, payload)
            except NodeExecutionError as exc:
                outcomes.append(PortOutcome(conn.target_node_id, error=exc.message))
            else:
                outcomes.append(PortOutcome(conn.target_node_id, output=output))
        return outcomes

    # ── Synthetic runs ──

    async def test_node(
        self,
        store: GraphStore,
        node_id: str,
        data: dict[str, Any] | None = None,
    ) -> NodeTestResult:
        """Run one node's own logic against a clone of ``store``.

        Downstream nodes and loop bodies are not executed and the original
        graph is never touched.
        """
        sandbox = store.clone()
        node = sandbox.get_node(node_id)
        execution = Execution(id=new_execution_id(), input=dict(data or {}))
        ctx = RunContext(
            store=sandbox,
            execution=execution,
            log=ExecutionLogger(execution.id, level=self.config.log_level),
            index=ConnectionIndex([]),
        )
        self.last_log = ctx.log
        started = time.perf_counter()
        try:
            output, ports = await self._run_logic(ctx, node, execution.input)
        except Exception as exc:  # noqa: BLE001 - reported in the result
            message = str(exc) or type(exc).__name__
            if isinstance(exc, asyncio.TimeoutError):
                message = f"Node timed out after {self.config.node_timeout}s"
            return NodeTestResult(
                success=False,
                node_id=node_id,
                input=execution.input,
                error=message,
                duration=time.perf_counter() - started,
            )
        return NodeTestResult(
            success=True,
            node_id=node_id,
            input=execution.input,
            output=output,
            active_ports=ports,
            duration=time.perf_counter() - started,
        )

    async def test_graph(self, store: GraphStore, data: dict[str, Any] | None = None) -> Execution:
        """Run the whole graph on a clone with synthetic trigger input."""
        return await self.run(store.clone(), data or {})


def run_graph_sync(
    store: GraphStore,
    input_data: dict[str, Any] | None = None,
    *,
    config: EngineConfig | None = None,
) -> Execution:
    """Run a graph to completion from synchronous code."""
    return ExecutionEngine(config).run_sync(store, input_data)
