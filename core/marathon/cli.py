"""Marathon CLI - Command line interface for running workflow graphs.

Usage:
    marathon run <workflow.json> [--input key=value]... [--export-logs PATH]
    marathon validate <workflow.json>
    marathon catalog [--category NAME]
    marathon test-node <workflow.json> <node_id> [--input key=value]...
    marathon --version
    marathon --help

Examples:
    marathon run examples/memory_triage.json --input memory='{"type": "task"}'
    marathon run examples/memory_triage.json --export-logs logs.json
    marathon validate examples/memory_triage.json
    marathon catalog --category conditions
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from marathon import __version__
from marathon.catalog import get_catalog
from marathon.config import EngineConfig, configure_logging
from marathon.workspace import Workspace


def parse_arg_value(value: str) -> Any:
    """Parse a CLI argument value to appropriate Python type.

    Args:
        value: String value from CLI

    Returns:
        Parsed value (str, int, float, bool, list, dict, or None)
    """
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        pass

    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in ("null", "none"):
        return None

    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        pass

    return value


def parse_inputs(pairs: list[str] | None) -> dict[str, Any]:
    """Turn ``key=value`` pairs into a payload dict.

    Raises:
        ValueError: If a pair has no ``=``.
    """
    data: dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"Invalid input format: {pair} (use key=value)")
        key, value = pair.split("=", 1)
        data[key.strip()] = parse_arg_value(value.strip())
    return data


def _load(args: argparse.Namespace) -> Workspace | None:
    workflow_file = Path(args.file)
    if not workflow_file.exists():
        print(f"Error: File not found: {workflow_file}", file=sys.stderr)
        return None
    try:
        overrides = {} if args.step_delay is None else {"step_delay": args.step_delay}
        config = EngineConfig(**overrides)
        return Workspace.load(workflow_file, config=config)
    except (ValidationError, json.JSONDecodeError) as e:
        print(f"Error parsing file: {e}", file=sys.stderr)
        return None


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False, default=str))


def cmd_run(args: argparse.Namespace) -> int:
    """Run every trigger of a workflow and print the Execution record.

    Returns:
        Exit code (0 when the run completed, 1 when it failed)
    """
    try:
        input_data = parse_inputs(args.input)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    workspace = _load(args)
    if workspace is None:
        return 1

    print(f"▶ Executing: {args.file}", file=sys.stderr)
    execution = asyncio.run(workspace.run(input_data))
    _print_json(execution.model_dump(mode="json", by_alias=True))

    if args.export_logs and workspace.engine.last_log is not None:
        Path(args.export_logs).write_text(workspace.engine.last_log.export_json() + "\n", encoding="utf-8")
        print(f"Logs written to {args.export_logs}", file=sys.stderr)

    if execution.status == "failed":
        print(f"✗ Failed with {len(execution.errors)} error(s)", file=sys.stderr)
        return 1
    print(f"✓ Completed ({len(execution.executed_nodes)} node activations)", file=sys.stderr)
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Report structural problems in a workflow file."""
    workspace = _load(args)
    if workspace is None:
        return 1

    problems = workspace.store.validate()
    for node in workspace.store.nodes:
        if not workspace.store.catalog.has(node.template_id):
            problems.append(f"Node {node.id} uses unknown template {node.template_id}")
        if node.template_id == "subflow" and node.config.get("subflowId") not in workspace.subflows:
            problems.append(f"Node {node.id} references unknown subflow {node.config.get('subflowId')}")

    if problems:
        for problem in problems:
            print(f"  • {problem}")
        print(f"✗ {len(problems)} problem(s) found", file=sys.stderr)
        return 1
    print(f"✓ {len(workspace.store.nodes)} nodes, {len(workspace.store.connections)} connections")
    return 0


def cmd_catalog(args: argparse.Namespace) -> int:
    """List node templates grouped by category."""
    groups = get_catalog().by_category()
    if args.category:
        if args.category not in groups:
            print(f"Error: Unknown category: {args.category}", file=sys.stderr)
            return 1
        groups = {args.category: groups[args.category]}

    for category, templates in groups.items():
        print(f"{category}:")
        for template in templates:
            outputs = ", ".join(port.name for port in template.outputs) or "-"
            print(f"  • {template.id} ({template.kind}) -> {outputs}")
        print()
    return 0


def cmd_test_node(args: argparse.Namespace) -> int:
    """Run one node against synthetic input."""
    try:
        input_data = parse_inputs(args.input)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    workspace = _load(args)
    if workspace is None:
        return 1
    if workspace.store.find_node(args.node_id) is None:
        print(f"Error: Unknown node: {args.node_id}", file=sys.stderr)
        return 1

    result = asyncio.run(workspace.test_node(args.node_id, input_data))
    _print_json(result.model_dump(mode="json", by_alias=True))
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marathon",
        description="Marathon - visual workflow execution engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  marathon run examples/memory_triage.json --input memory='{"type": "task"}'
  marathon validate examples/memory_triage.json
  marathon catalog --category conditions
        """,
    )
    parser.add_argument("--version", action="version", version=f"marathon {__version__}")
    parser.add_argument(
        "--log-level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="Log level for stderr output (default: warning)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    run_parser = subparsers.add_parser("run", help="Run a workflow document")
    run_parser.add_argument("file", help="Path to the workflow JSON file")
    run_parser.add_argument(
        "--input",
        action="append",
        help="Trigger input in key=value format (can be used multiple times)",
    )
    run_parser.add_argument("--export-logs", metavar="PATH", help="Write execution logs as JSON")
    run_parser.add_argument("--step-delay", type=float, default=None, help="Seconds per node step")

    validate_parser = subparsers.add_parser("validate", help="Check a workflow document")
    validate_parser.add_argument("file", help="Path to the workflow JSON file")
    validate_parser.set_defaults(step_delay=None)

    catalog_parser = subparsers.add_parser("catalog", help="List available node templates")
    catalog_parser.add_argument("--category", help="Only show one category")

    test_parser = subparsers.add_parser("test-node", help="Run a single node with test data")
    test_parser.add_argument("file", help="Path to the workflow JSON file")
    test_parser.add_argument("node_id", help="Id of the node to test")
    test_parser.add_argument(
        "--input",
        action="append",
        help="Test input in key=value format (can be used multiple times)",
    )
    test_parser.set_defaults(step_delay=None)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "run":
        return cmd_run(args)
    if args.command == "validate":
        return cmd_validate(args)
    if args.command == "catalog":
        return cmd_catalog(args)
    if args.command == "test-node":
        return cmd_test_node(args)
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
