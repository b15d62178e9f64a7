"""Node template catalog.

This module provides:
- ``NodeTemplate``: a static declaration of a node kind (ports + default config)
- ``TemplateCatalog``: a registry of templates grouped by category
- The built-in Marathon templates (triggers, actions, ai, data, integrations,
  conditions, composition)

Templates are pure data. ``NodeTemplate.instantiate`` builds a brand-new
``Node`` value with its own port ids and a deep copy of the default config, so
no two instances ever alias template state.

Example:
    catalog = get_catalog()
    node = catalog.instantiate("if-else", node_id="check-1", position=Position(x=10, y=20))
"""

from __future__ import annotations

import copy
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from marathon.domain.models import (
    ANY_TYPE,
    Node,
    NodeKind,
    Port,
    PortDirection,
    Position,
    port_id_for,
)
from marathon.errors import UnknownTemplateError


class PortTemplate(BaseModel):
    """A port declaration on a template."""

    model_config = ConfigDict(frozen=True)

    name: str
    direction: PortDirection
    data_type: str = ANY_TYPE


class NodeTemplate(BaseModel):
    """A catalog entry describing an available node kind."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Catalog id, e.g. 'if-else'")
    kind: NodeKind
    title: str
    description: str = ""
    category: str
    inputs: list[PortTemplate] = Field(default_factory=list)
    outputs: list[PortTemplate] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)

    def instantiate(self, node_id: str, position: Position | None = None) -> Node:
        """Build a fresh node instance from this template.

        Port ids are derived from the new node id, so every instance owns
        distinct ports even when created from the same template.
        """
        return Node(
            id=node_id,
            template_id=self.id,
            kind=self.kind,
            title=self.title,
            description=self.description,
            category=self.category,
            position=position or Position(),
            config=copy.deepcopy(self.config),
            inputs=[_make_port(node_id, p) for p in self.inputs],
            outputs=[_make_port(node_id, p) for p in self.outputs],
        )


def _make_port(node_id: str, template: PortTemplate) -> Port:
    return Port(
        id=port_id_for(node_id, template.direction, template.name),
        name=template.name,
        direction=template.direction,
        data_type=template.data_type,
    )


class TemplateCatalog:
    """Registry of node templates.

    Example:
        catalog = TemplateCatalog()
        catalog.register(NodeTemplate(id="noop", kind="action", title="No-op", category="actions"))
        node = catalog.instantiate("noop", node_id="n1")
    """

    def __init__(self, templates: list[NodeTemplate] | None = None) -> None:
        self._templates: dict[str, NodeTemplate] = {}
        for template in templates or []:
            self.register(template)

    def register(self, template: NodeTemplate) -> None:
        """Register (or replace) a template under its id."""
        self._templates[template.id] = template

    def get(self, template_id: str) -> NodeTemplate:
        """Look up a template.

        Raises:
            UnknownTemplateError: If no template has this id.
        """
        template = self._templates.get(template_id)
        if template is None:
            raise UnknownTemplateError(
                f"Unknown node template: {template_id}. "
                f"Available: {', '.join(sorted(self._templates))}"
            )
        return template

    def has(self, template_id: str) -> bool:
        return template_id in self._templates

    def categories(self) -> list[str]:
        """Category names in registration order."""
        seen: dict[str, None] = {}
        for template in self._templates.values():
            seen.setdefault(template.category, None)
        return list(seen)

    def by_category(self) -> dict[str, list[NodeTemplate]]:
        grouped: dict[str, list[NodeTemplate]] = {}
        for template in self._templates.values():
            grouped.setdefault(template.category, []).append(template)
        return grouped

    def instantiate(self, template_id: str, node_id: str, position: Position | None = None) -> Node:
        return self.get(template_id).instantiate(node_id, position)

    def __iter__(self):
        return iter(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)


def _in(name: str, data_type: str = ANY_TYPE) -> PortTemplate:
    return PortTemplate(name=name, direction="input", data_type=data_type)


def _out(name: str, data_type: str = ANY_TYPE) -> PortTemplate:
    return PortTemplate(name=name, direction="output", data_type=data_type)


def _builtin_templates() -> list[NodeTemplate]:
    return [
        # ── Triggers ──
        NodeTemplate(
            id="memory-created",
            kind="trigger",
            title="Memory Created",
            description="Triggers when a new memory is created",
            category="triggers",
            outputs=[_out("memory", "object")],
            config={"eventType": "memory.created", "filters": {"memoryType": "any", "tags": []}},
        ),
        NodeTemplate(
            id="note-tagged",
            kind="trigger",
            title="Note Tagged",
            description="Triggers when a note is tagged with specific tags",
            category="triggers",
            outputs=[_out("note", "object"), _out("tags", "array")],
            config={
                "eventType": "note.tagged",
                "filters": {"tags": ["important", "review"], "matchType": "any"},
            },
        ),
        NodeTemplate(
            id="file-uploaded",
            kind="trigger",
            title="File Uploaded",
            description="Triggers when a file is uploaded to the system",
            category="triggers",
            outputs=[_out("file", "object"), _out("metadata", "object")],
            config={
                "eventType": "file.uploaded",
                "filters": {"fileTypes": ["pdf", "txt", "md"], "maxSize": 10485760},
            },
        ),
        NodeTemplate(
            id="schedule-trigger",
            kind="trigger",
            title="Schedule Trigger",
            description="Triggers on a specific schedule or time interval",
            category="triggers",
            outputs=[_out("timestamp", "number")],
            config={
                "eventType": "schedule.trigger",
                "schedule": {"type": "recurring", "interval": "daily", "time": "09:00"},
            },
        ),
        NodeTemplate(
            id="webhook-trigger",
            kind="trigger",
            title="Webhook Trigger",
            description="Triggers when a webhook endpoint receives data",
            category="triggers",
            outputs=[_out("payload", "object"), _out("headers", "object")],
            config={
                "eventType": "webhook.received",
                "endpoint": "/webhook/marathon",
                "method": "POST",
                "authentication": "token",
            },
        ),
        NodeTemplate(
            id="manual-trigger",
            kind="trigger",
            title="Manual Trigger",
            description="Starts a run on demand with the provided input",
            category="triggers",
            outputs=[_out("data")],
        ),
        # ── Actions ──
        NodeTemplate(
            id="create-note",
            kind="action",
            title="Create Note in Notebook",
            description="Creates a new note in a specified notebook section",
            category="actions",
            inputs=[_in("title", "string"), _in("content", "string"), _in("section", "string")],
            outputs=[_out("note", "object"), _out("success", "boolean")],
            config={
                "notebookId": "",
                "sectionId": "",
                "defaultTitle": "New Note",
                "tags": [],
                "template": "basic",
            },
        ),
        NodeTemplate(
            id="tag-memory",
            kind="action",
            title="Tag Memory",
            description="Adds tags to a memory with dynamic input from prior node",
            category="actions",
            inputs=[_in("memory", "object"), _in("tags", "array"), _in("metadata", "object")],
            outputs=[_out("taggedMemory", "object"), _out("success", "boolean")],
            config={
                "defaultTags": ["workflow-generated"],
                "overwriteExisting": False,
                "tagSource": "dynamic",
                "staticTags": [],
            },
        ),
        NodeTemplate(
            id="send-notification",
            kind="action",
            title="Send Notification",
            description="Sends push, email, and in-app notifications",
            category="actions",
            inputs=[_in("message", "string"), _in("recipients", "array"), _in("metadata", "object")],
            outputs=[_out("sent", "object"), _out("failed", "object")],
            config={
                "channels": ["push", "email", "in-app"],
                "priority": "normal",
                "template": "default",
                "schedule": "immediate",
                "retryCount": 3,
            },
        ),
        NodeTemplate(
            id="action-print",
            kind="action",
            title="Print Message",
            description="Outputs a message to the console",
            category="actions",
            inputs=[_in("input", "string")],
            config={"message": "Hello, World!"},
        ),
        # ── AI ──
        NodeTemplate(
            id="summarize-memory",
            kind="action",
            title="Summarize Memory",
            description="Uses AI to generate a summary of memory content",
            category="ai",
            inputs=[_in("memory", "object"), _in("options", "object")],
            outputs=[_out("summary", "string"), _out("metadata", "object")],
            config={
                "llmEngine": "gpt-4",
                "summaryLength": "medium",
                "tone": "neutral",
                "includeKeyPoints": True,
                "includeEntities": False,
            },
        ),
        NodeTemplate(
            id="ask-mere",
            kind="action",
            title="Ask Mere",
            description="Sends a prompt to Mere AI with chaining support",
            category="ai",
            inputs=[_in("prompt", "string"), _in("context", "object"), _in("previousResponse", "string")],
            outputs=[_out("response", "string"), _out("metadata", "object"), _out("citations", "array")],
            config={
                "model": "gpt-4",
                "temperature": 0.7,
                "maxTokens": 1000,
                "enableChaining": True,
                "includeMemoryContext": True,
                "systemPrompt": "",
            },
        ),
        NodeTemplate(
            id="generate-summary",
            kind="action",
            title="Generate Summary",
            description="Creates AI-powered summaries with LLM selection",
            category="ai",
            inputs=[_in("content", "string"), _in("instructions", "string")],
            outputs=[_out("summary", "string"), _out("keyPoints", "array")],
            config={"llmEngine": "gpt-4", "outputFormat": "paragraph", "focusAreas": [], "wordLimit": 200},
        ),
        # ── Data ──
        NodeTemplate(
            id="set-variable",
            kind="data",
            title="Set Variable",
            description="Stores temporary data for use in the workflow",
            category="data",
            inputs=[_in("value"), _in("name", "string")],
            outputs=[_out("variable")],
            config={"variableName": "", "valueField": "", "scope": "workflow"},
        ),
        NodeTemplate(
            id="merge-streams",
            kind="data",
            title="Merge Streams",
            description="Combines multiple data streams with field selection",
            category="data",
            inputs=[_in("stream1", "object"), _in("stream2", "object"), _in("stream3", "object")],
            outputs=[_out("merged", "object")],
            config={"mergeStrategy": "combine", "fieldMapping": {}, "includeMetadata": True},
        ),
        NodeTemplate(
            id="filter-by-field",
            kind="data",
            title="Filter By Field",
            description="Filters data based on conditional expressions",
            category="data",
            inputs=[_in("data", "array"), _in("condition", "string")],
            outputs=[_out("filtered", "array"), _out("rejected", "array")],
            config={"filterExpression": "", "outputRejected": False},
        ),
        # ── Integrations ──
        NodeTemplate(
            id="http-request",
            kind="action",
            title="HTTP Request",
            description="Makes HTTP requests to external APIs",
            category="integrations",
            inputs=[_in("url", "string"), _in("method", "string"), _in("headers", "object"), _in("body", "object")],
            outputs=[_out("response", "object"), _out("error", "object")],
            config={
                "method": "GET",
                "timeout": 30000,
                "retryCount": 3,
                "followRedirects": True,
                "validateSSL": True,
                "authentication": {"type": "none", "credentials": {}},
            },
        ),
        # ── Conditions ──
        NodeTemplate(
            id="if-else",
            kind="condition",
            title="If/Else",
            description="Branch execution based on condition",
            category="conditions",
            inputs=[_in("condition", "boolean"), _in("data")],
            outputs=[_out("true"), _out("false")],
            config={"condition": "data.value > 10"},
        ),
        NodeTemplate(
            id="switch",
            kind="condition",
            title="Switch",
            description="Multi-branch execution based on value",
            category="conditions",
            inputs=[_in("value")],
            outputs=[_out("case1"), _out("case2"), _out("default")],
            config={
                "cases": [
                    {"value": "option1", "label": "Case 1"},
                    {"value": "option2", "label": "Case 2"},
                ],
            },
        ),
        NodeTemplate(
            id="for-loop",
            kind="condition",
            title="For Loop",
            description="Iterate over array items",
            category="conditions",
            inputs=[_in("array", "array")],
            outputs=[_out("item"), _out("complete", "array")],
            config={"arrayField": "array"},
        ),
        NodeTemplate(
            id="while-loop",
            kind="condition",
            title="While Loop",
            description="Loop while condition is true",
            category="conditions",
            inputs=[_in("condition", "boolean"), _in("data")],
            outputs=[_out("loop"), _out("exit")],
            config={"condition": "data.count < 10", "maxIterations": 100},
        ),
        NodeTemplate(
            id="memory-router",
            kind="condition",
            title="Memory Router",
            description="Routes a memory to the first output whose rule matches",
            category="conditions",
            inputs=[_in("memory", "object")],
            outputs=[_out("notes"), _out("tasks"), _out("ideas"), _out("default")],
            config={
                "rules": [
                    {"condition": "data.type == 'note'", "output": "notes"},
                    {"condition": "data.type == 'task'", "output": "tasks"},
                    {"condition": "contains(data.tags, 'idea')", "output": "ideas"},
                ],
                "defaultOutput": "default",
            },
        ),
        # ── Composition ──
        NodeTemplate(
            id="subflow",
            kind="action",
            title="Subflow",
            description="Runs a reusable subflow as a single node",
            category="composition",
            inputs=[_in("input")],
            outputs=[_out("output"), _out("error")],
            config={"subflowId": ""},
        ),
        NodeTemplate(
            id="subflow-input",
            kind="trigger",
            title="Subflow Input",
            description="Entry point of a subflow; receives the mapped caller payload",
            category="composition",
            outputs=[_out("data")],
        ),
        NodeTemplate(
            id="subflow-output",
            kind="data",
            title="Subflow Output",
            description="Exit point of a subflow; its payload becomes the subflow result",
            category="composition",
            inputs=[_in("data")],
        ),
    ]


# Global catalog instance
_global_catalog = TemplateCatalog(_builtin_templates())


def get_catalog() -> TemplateCatalog:
    """Get the global template catalog."""
    return _global_catalog


def get_template(template_id: str) -> NodeTemplate:
    return _global_catalog.get(template_id)
