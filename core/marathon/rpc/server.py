"""Stdio RPC server exposing the Marathon graph service.

Protocol:
- JSON per line over stdin/stdout.
- Requests: {"id": number, "method": string, "params"?: object}
- Responses: {"id": number, "result"?: any, "error"?: {"message": string}}
- Notifications: {"event": string, "data": object} lines emitted for graph
  changes while a request is being handled.

The server holds one Workspace. Every edit method returns the updated node,
connection or snapshot so an editor can stay a pure listener.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from marathon.catalog import get_catalog
from marathon.config import EngineConfig, configure_logging
from marathon.domain.models import Position, WorkflowDocument
from marathon.services.graph_store import GraphEvent
from marathon.workspace import Workspace

logger = logging.getLogger(__name__)


class _AddNodeParams(BaseModel):
    template_id: str
    x: float = 0.0
    y: float = 0.0
    node_id: str | None = None


class _NodeParams(BaseModel):
    node_id: str


class _ConnectParams(BaseModel):
    source_node_id: str
    source_port_id: str
    target_node_id: str
    target_port_id: str


class _DisconnectParams(BaseModel):
    connection_id: str


class _UpdateConfigParams(BaseModel):
    node_id: str
    config: dict[str, Any]
    merge: bool = True


class _MoveNodeParams(BaseModel):
    node_id: str
    x: float
    y: float


class _RunParams(BaseModel):
    input: dict[str, Any] | None = None


class _TestNodeParams(BaseModel):
    node_id: str
    input: dict[str, Any] | None = None


class _LoadParams(BaseModel):
    document: dict[str, Any]


class _CatalogParams(BaseModel):
    category: str | None = None


class _NoParams(BaseModel):
    pass


_workspace: Workspace | None = None
_events: list[dict[str, Any]] = []


def get_workspace() -> Workspace:
    if _workspace is None:
        return reset_workspace()
    return _workspace


def reset_workspace(workspace: Workspace | None = None) -> Workspace:
    """Replace the server's workspace (used by ``load`` and by tests)."""
    global _workspace
    _workspace = workspace or Workspace(config=EngineConfig())
    _workspace.store.subscribe(_record_event)
    return _workspace


def _record_event(event: GraphEvent) -> None:
    data: dict[str, Any] = {}
    if event.node_id is not None:
        data["nodeId"] = event.node_id
    if event.connection_id is not None:
        data["connectionId"] = event.connection_id
    if event.kind == "connection_rejected":
        data["reason"] = event.data["reason"]
    elif event.kind == "node_status":
        data["status"] = event.data
    _events.append({"event": event.kind, "data": data})


def _dump(model: BaseModel | None) -> Any:
    if model is None:
        return None
    return model.model_dump(mode="json", by_alias=True)


# ── Methods ──


def _add_node(params: _AddNodeParams) -> Any:
    node = get_workspace().store.add_node(
        params.template_id, Position(x=params.x, y=params.y), node_id=params.node_id
    )
    return _dump(node)


def _remove_node(params: _NodeParams) -> Any:
    return {"removed": get_workspace().store.remove_node(params.node_id)}


def _duplicate_node(params: _NodeParams) -> Any:
    clone = get_workspace().store.duplicate_node(params.node_id)
    if clone is None:
        raise KeyError(f"Unknown node: {params.node_id}")
    return _dump(clone)


def _connect(params: _ConnectParams) -> Any:
    store = get_workspace().store
    conn = store.connect(
        params.source_node_id,
        params.source_port_id,
        params.target_node_id,
        params.target_port_id,
    )
    if conn is None:
        return {"connection": None, "reason": store.last_rejection}
    return {"connection": _dump(conn)}


def _disconnect(params: _DisconnectParams) -> Any:
    return {"removed": get_workspace().store.disconnect(params.connection_id)}


def _update_node_config(params: _UpdateConfigParams) -> Any:
    node = get_workspace().store.update_node_config(params.node_id, params.config, merge=params.merge)
    return _dump(node)


def _move_node(params: _MoveNodeParams) -> Any:
    return _dump(get_workspace().store.move_node(params.node_id, params.x, params.y))


def _undo(params: _NoParams) -> Any:
    store = get_workspace().store
    return {"changed": store.undo(), "snapshot": _dump(store.snapshot())}


def _redo(params: _NoParams) -> Any:
    store = get_workspace().store
    return {"changed": store.redo(), "snapshot": _dump(store.snapshot())}


def _snapshot(params: _NoParams) -> Any:
    return _dump(get_workspace().store.snapshot())


def _validate(params: _NoParams) -> Any:
    return {"problems": get_workspace().store.validate()}


def _run(params: _RunParams) -> Any:
    workspace = get_workspace()
    execution = asyncio.run(workspace.run(params.input))
    log = workspace.engine.last_log
    return {"execution": _dump(execution), "logs": log.export() if log is not None else []}


def _test_node(params: _TestNodeParams) -> Any:
    result = asyncio.run(get_workspace().test_node(params.node_id, params.input))
    return _dump(result)


def _catalog(params: _CatalogParams) -> Any:
    groups = get_catalog().by_category()
    if params.category is not None:
        groups = {params.category: groups.get(params.category, [])}
    return {
        category: [template.model_dump(mode="json") for template in templates]
        for category, templates in groups.items()
    }


def _load(params: _LoadParams) -> Any:
    document = WorkflowDocument.model_validate(params.document)
    workspace = reset_workspace(Workspace.from_document(document, config=EngineConfig()))
    return _dump(workspace.store.snapshot())


def _document(params: _NoParams) -> Any:
    return _dump(get_workspace().to_document())


_METHODS: dict[str, tuple[type[BaseModel], Callable[[Any], Any]]] = {
    "add_node": (_AddNodeParams, _add_node),
    "remove_node": (_NodeParams, _remove_node),
    "duplicate_node": (_NodeParams, _duplicate_node),
    "connect": (_ConnectParams, _connect),
    "disconnect": (_DisconnectParams, _disconnect),
    "update_node_config": (_UpdateConfigParams, _update_node_config),
    "move_node": (_MoveNodeParams, _move_node),
    "undo": (_NoParams, _undo),
    "redo": (_NoParams, _redo),
    "snapshot": (_NoParams, _snapshot),
    "validate": (_NoParams, _validate),
    "run": (_RunParams, _run),
    "test_node": (_TestNodeParams, _test_node),
    "catalog": (_CatalogParams, _catalog),
    "load": (_LoadParams, _load),
    "document": (_NoParams, _document),
}


def main() -> None:
    """Run the RPC loop reading stdin and writing stdout."""
    configure_logging(EngineConfig().log_level)

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue

        try:
            request = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed request line")
            continue

        response = handle_request(request)
        for event in drain_events():
            sys.stdout.write(json.dumps(event, ensure_ascii=False) + "\n")
        sys.stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        sys.stdout.flush()

        if response.get("result") == "shutdown":
            return


def drain_events() -> list[dict[str, Any]]:
    """Pop the change notifications collected since the last call."""
    events = list(_events)
    _events.clear()
    return events


def handle_request(request: Any) -> dict[str, Any]:
    """Handle one RPC request.

    Args:
        request: Parsed JSON object.

    Returns:
        RPC response dict.
    """
    if not isinstance(request, dict):
        return {"id": -1, "error": {"message": "Invalid request"}}

    request_id = request.get("id")
    method = request.get("method")

    if not isinstance(request_id, int) or not isinstance(method, str):
        return {"id": -1, "error": {"message": "Invalid request fields"}}

    if method == "hello":
        return {"id": request_id, "result": "hello from marathon-core"}

    if method == "ping":
        return {"id": request_id, "result": "pong"}

    if method == "shutdown":
        return {"id": request_id, "result": "shutdown"}

    entry = _METHODS.get(method)
    if entry is None:
        return {"id": request_id, "error": {"message": f"Unknown method: {method}"}}

    model, handler = entry
    try:
        params = _parse_params(request.get("params"), model)
        return {"id": request_id, "result": handler(params)}
    except Exception as exc:  # noqa: BLE001 - return structured RPC errors
        logger.debug("RPC %s failed: %s", method, exc)
        return {"id": request_id, "error": {"message": _format_error(exc)}}


def _parse_params(value: Any, model: type[BaseModel]) -> BaseModel:
    if value is None:
        value = {}
    if not isinstance(value, dict):
        raise ValueError("params must be an object")

    try:
        return model.model_validate(value)
    except ValidationError as exc:
        # Keep errors readable for the editor.
        raise ValueError(exc.errors(include_url=False)) from exc


def _format_error(exc: Exception) -> str:
    if isinstance(exc, KeyError) and exc.args:
        return str(exc.args[0])
    message = str(exc).strip() or exc.__class__.__name__
    return message


if __name__ == "__main__":
    main()
