"""Marathon workspace: one graph plus everything needed to run it.

A ``Workspace`` bundles the GraphStore, the ExecutionEngine (with its action
registry and subflow library), the scheduler and the version history. It is
the service the CLI and the RPC server talk to, and the unit that is loaded
from and saved to a workflow document.

Example:
    ```python
    workspace = Workspace.load("examples/memory_triage.json")
    execution = await workspace.run({"memory": {"type": "task"}})
    print(execution.status)
    workspace.save("out.json")
    ```
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from marathon.catalog import TemplateCatalog
from marathon.config import EngineConfig
from marathon.domain.models import Execution, NodeTestResult, WorkflowDocument
from marathon.execution.engine import ExecutionEngine
from marathon.execution.handlers import ActionRegistry
from marathon.execution.subflow import SubflowComposer, SubflowLibrary
from marathon.services.graph_store import GraphStore
from marathon.services.scheduler import Scheduler
from marathon.services.versions import VersionHistory

logger = logging.getLogger(__name__)


class Workspace:
    """A workflow under edit, with its engine, schedules and versions."""

    def __init__(
        self,
        *,
        config: EngineConfig | None = None,
        catalog: TemplateCatalog | None = None,
        actions: ActionRegistry | None = None,
        store: GraphStore | None = None,
        workflow_id: str = "workflow",
        name: str = "Untitled Workflow",
        description: str = "",
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store or GraphStore(catalog=catalog, config=self.config)
        self.subflows = SubflowLibrary()
        self.engine = ExecutionEngine(
            self.config,
            actions=actions,
            subflows=SubflowComposer(self.subflows),
        )
        self.scheduler = Scheduler(self.engine, self.store)
        self.versions = VersionHistory()
        self.workflow_id = workflow_id
        self.name = name
        self.description = description

    # ── Runs ──

    async def run(self, input_data: dict[str, Any] | None = None) -> Execution:
        return await self.engine.run(self.store, input_data)

    async def test_node(self, node_id: str, data: dict[str, Any] | None = None) -> NodeTestResult:
        return await self.engine.test_node(self.store, node_id, data)

    async def test_graph(self, data: dict[str, Any] | None = None) -> Execution:
        return await self.engine.test_graph(self.store, data)

    # ── Documents ──

    def to_document(self) -> WorkflowDocument:
        return self.store.to_document(
            workflow_id=self.workflow_id,
            name=self.name,
            description=self.description,
            subflows=self.subflows.list(),
            schedules=self.scheduler.entries,
        )

    @classmethod
    def from_document(
        cls,
        document: WorkflowDocument,
        *,
        config: EngineConfig | None = None,
        catalog: TemplateCatalog | None = None,
        actions: ActionRegistry | None = None,
    ) -> "Workspace":
        config = config or EngineConfig()
        workspace = cls(
            config=config,
            catalog=catalog,
            actions=actions,
            store=GraphStore.from_document(document, catalog=catalog, config=config),
            workflow_id=document.id,
            name=document.name,
            description=document.description,
        )
        for subflow in document.subflows:
            workspace.subflows.register(subflow)
        workspace.scheduler.load(document.schedules)
        return workspace

    @classmethod
    def load(cls, path: str | Path, **kwargs: Any) -> "Workspace":
        """Read a workflow document from a JSON file."""
        text = Path(path).read_text(encoding="utf-8")
        document = WorkflowDocument.model_validate(json.loads(text))
        logger.info("Loaded workflow %s from %s", document.id, path)
        return cls.from_document(document, **kwargs)

    def save(self, path: str | Path) -> None:
        data = self.to_document().model_dump(mode="json", by_alias=True)
        Path(path).write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        logger.info("Saved workflow %s to %s", self.workflow_id, path)
