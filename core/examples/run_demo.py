#!/usr/bin/env python3
"""Demo script for the Marathon execution engine.

Loads ``memory_triage.json``, plugs in a custom delegate for the note action
and runs the graph once per sample memory.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Add core to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from marathon.config import EngineConfig, configure_logging
from marathon.execution.handlers import ActionRegistry
from marathon.workspace import Workspace

SAMPLES = [
    {"memory": {"type": "task", "title": "Renew passport"}},
    {"memory": {"type": "note", "title": "Meeting notes"}},
    {"memory": {"type": "photo", "tags": []}},
]


def build_actions() -> ActionRegistry:
    actions = ActionRegistry()

    @actions.register_action("create-note")
    async def create_note(node, payload):
        await asyncio.sleep(0.05)
        title = payload["memory"].get("title") or node.config.get("defaultTitle")
        return {**payload, "note": {"title": title, "tags": node.config.get("tags", [])}}

    return actions


async def demo_async():
    print("=" * 60)
    print("Marathon - Memory Triage Demo")
    print("=" * 60)

    workflow_file = Path(__file__).parent / "memory_triage.json"
    workspace = Workspace.load(
        workflow_file,
        config=EngineConfig(step_delay=0.1),
        actions=build_actions(),
    )
    print(f"\n▶ Loaded {workflow_file.name}: {len(workspace.store.nodes)} nodes")

    for sample in SAMPLES:
        execution = await workspace.run(sample)
        print("\n" + "─" * 60)
        print(f"  Input: {sample['memory']}")
        if execution.status == "completed":
            print(f"✓ Completed in {execution.duration:.2f}s")
        else:
            print(f"✗ Failed: {[e.message for e in execution.errors]}")
        print(f"  Path: {' -> '.join(execution.executed_nodes)}")
    print("─" * 60)


if __name__ == "__main__":
    configure_logging("warning")
    asyncio.run(demo_async())
