"""ThreatStudio FastAPI server."""
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from threatstudio import __version__
from threatstudio.config import get_settings
from threatstudio.context import ExecutionContext
from threatstudio.executor import PipelineExecutor
from threatstudio.models import Connection, PipelineNode, Point
from threatstudio.node_api import get_registry
from threatstudio.pipeline import PipelineEditor
from threatstudio.planner import build_execution_order, plan_execution
from threatstudio.templates import AnalysisType, TemplateStore

# --- State ---

settings = get_settings()
template_store = TemplateStore()
execution_context = ExecutionContext.default(settings, template_store)
editor = PipelineEditor(settings=settings)
_start_time = time.time()


# --- Lifespan ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    print(f"Node kinds registered: {sorted(get_registry())}")
    print(f"Inference endpoint: {settings.inference_url}")
    yield


# --- App setup ---

app = FastAPI(title="ThreatStudio", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- WebSocket manager ---

class ConnectionManager:
    def __init__(self):
        self.connections: List[WebSocket] = []

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.connections.append(ws)

    def disconnect(self, ws: WebSocket):
        if ws in self.connections:
            self.connections.remove(ws)

    async def broadcast(self, message: dict):
        for ws in list(self.connections):
            try:
                await ws.send_json(message)
            except Exception:
                self.disconnect(ws)


ws_manager = ConnectionManager()


@app.websocket("/ws/execution")
async def ws_execution(ws: WebSocket):
    await ws_manager.connect(ws)
    await ws.send_json(serialize_event({"event": "state", "state": executor.state}))
    try:
        while True:
            data = await ws.receive_json()
            if data.get("action") == "cancel":
                await cancel_pipeline()
    except WebSocketDisconnect:
        ws_manager.disconnect(ws)


# --- Serialization ---

def serialize_value(value: Any) -> Any:
    """Convert models and raw bytes to JSON-safe structures."""
    if isinstance(value, BaseModel):
        return serialize_value(value.model_dump())
    if isinstance(value, (bytes, bytearray)):
        return {"_type": "bytes", "length": len(value)}
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def serialize_event(event: dict) -> dict:
    """Make an event dict JSON-safe (uploaded bytes are summarized)."""
    return {k: serialize_value(v) for k, v in event.items()}


async def broadcast_event(event_type: str, data: dict):
    await ws_manager.broadcast(serialize_event({"event": event_type, **data}))


executor = PipelineExecutor(execution_context, event_handler=broadcast_event)


def _editor_state() -> dict:
    return {
        "nodes": serialize_value(editor.nodes),
        "connections": serialize_value(editor.connections),
        "selected_node_ids": editor.selected_node_ids,
        "selected_connection_id": editor.selected_connection_id,
        "can_undo": editor.can_undo,
        "can_redo": editor.can_redo,
    }


async def _run(nodes: List[PipelineNode], connections: List[Connection]) -> dict:
    if executor.is_running:
        raise HTTPException(409, "A pipeline is already running")
    state = await executor.run(nodes, connections)
    return serialize_value(state)


# --- Pipeline endpoints (stateless) ---

@app.get("/api/pipeline/nodes")
def get_nodes():
    """Return the node type table."""
    return get_registry()


class PipelineRequest(BaseModel):
    nodes: List[PipelineNode]
    connections: List[Connection] = []


@app.post("/api/pipeline/validate")
def validate_pipeline_endpoint(req: PipelineRequest):
    """Validate a pipeline and return issues plus the execution order."""
    plan = plan_execution(req.nodes, req.connections)
    return {**plan.validation.model_dump(), "order": plan.order}


@app.post("/api/pipeline/order")
def execution_order(req: PipelineRequest):
    """Return the dependency order without validating config."""
    return {"order": build_execution_order(req.nodes, req.connections)}


@app.post("/api/pipeline/execute")
async def execute_pipeline(req: PipelineRequest):
    """Execute a pipeline and return the final execution state."""
    return await _run(req.nodes, req.connections)


@app.post("/api/pipeline/cancel")
async def cancel_pipeline():
    """Stop tracking the running pipeline. An in-flight model call still completes."""
    executor.cancel()
    await broadcast_event("state", {"state": executor.state})
    return serialize_value(executor.state)


@app.get("/api/pipeline/state")
def get_pipeline_state():
    return serialize_value(executor.state)


# --- Templates ---

@app.get("/api/templates")
def list_templates(active_only: bool = True):
    return template_store.list_templates(active_only=active_only)


@app.get("/api/templates/{template_id}")
def get_template(template_id: str):
    template = template_store.get_template(template_id)
    if template is None:
        raise HTTPException(404, f"Template '{template_id}' not found")
    return template


class TemplateRequest(BaseModel):
    name: str
    template: str
    variables: List[str] = []
    description: str = ""
    analysis_type: AnalysisType = "custom"


@app.post("/api/templates")
def create_template(req: TemplateRequest):
    return template_store.create_template(
        name=req.name,
        template=req.template,
        variables=req.variables,
        description=req.description,
        analysis_type=req.analysis_type,
    )


@app.delete("/api/templates/{template_id}")
def delete_template(template_id: str):
    if not template_store.delete_template(template_id):
        raise HTTPException(400, f"Template '{template_id}' cannot be deleted")
    return {"status": "deleted", "id": template_id}


# --- Editor session ---

@app.get("/api/editor")
def get_editor():
    return _editor_state()


class AddNodeRequest(BaseModel):
    kind: str
    x: float = 0
    y: float = 0


@app.post("/api/editor/nodes")
def add_node(req: AddNodeRequest):
    node_id = editor.add_node(req.kind, Point(x=req.x, y=req.y))
    if node_id is None:
        raise HTTPException(400, f"Unknown node kind '{req.kind}'")
    return {"id": node_id, **_editor_state()}


class UpdateNodeRequest(BaseModel):
    config: Optional[Dict[str, Any]] = None
    position: Optional[Point] = None


@app.patch("/api/editor/nodes/{node_id}")
def update_node(node_id: str, req: UpdateNodeRequest):
    current = editor.get_node(node_id)
    if current is None:
        raise HTTPException(404, f"Node '{node_id}' not found")
    fields: Dict[str, Any] = {}
    if req.config:
        fields["config"] = {**current.config, **req.config}
    if req.position is not None:
        fields["position"] = req.position
    # One history entry per request
    if fields:
        editor.update_node(node_id, **fields)
    return _editor_state()


@app.post("/api/editor/nodes/{node_id}/upload")
async def upload_diagram(node_id: str, file: UploadFile = File(...)):
    """Attach an architecture diagram to an input-diagram node."""
    current = editor.get_node(node_id)
    if current is None:
        raise HTTPException(404, f"Node '{node_id}' not found")
    if current.kind != "input-diagram":
        raise HTTPException(400, f"Node '{node_id}' does not accept uploads")

    content = await file.read()
    editor.update_node_config(node_id, {
        "file_name": file.filename,
        "file_data": content,
        "file_base64": None,
        "media_type": file.content_type or "image/jpeg",
        "upload_status": "ready",
    })
    return _editor_state()


@app.delete("/api/editor/nodes/{node_id}")
def delete_node(node_id: str):
    editor.delete_node(node_id)
    return _editor_state()


class ConnectRequest(BaseModel):
    source: str
    source_port: str
    target: str
    target_port: str


@app.post("/api/editor/connections")
def add_connection(req: ConnectRequest):
    conn_id = editor.add_connection(req.source, req.source_port, req.target, req.target_port)
    if conn_id is None:
        raise HTTPException(400, "Connection rejected")
    return {"id": conn_id, **_editor_state()}


@app.delete("/api/editor/connections/{connection_id}")
def delete_connection(connection_id: str):
    editor.delete_connection(connection_id)
    return _editor_state()


class SelectRequest(BaseModel):
    node_ids: List[str] = []
    connection_id: Optional[str] = None


@app.post("/api/editor/select")
def select(req: SelectRequest):
    if req.connection_id is not None:
        editor.select_connection(req.connection_id)
    else:
        editor.select_multiple_nodes(req.node_ids)
    return _editor_state()


class ShortcutRequest(BaseModel):
    key: str
    ctrl: bool = False
    shift: bool = False


@app.post("/api/editor/shortcut")
def shortcut(req: ShortcutRequest):
    handled = editor.handle_shortcut(req.key, ctrl=req.ctrl, shift=req.shift)
    return {"handled": handled, **_editor_state()}


@app.post("/api/editor/duplicate")
def duplicate():
    editor.duplicate_selected_nodes()
    return _editor_state()


@app.post("/api/editor/undo")
def undo():
    editor.undo()
    return _editor_state()


@app.post("/api/editor/redo")
def redo():
    editor.redo()
    return _editor_state()


@app.post("/api/editor/run")
async def run_editor_pipeline():
    """Execute the pipeline currently held by the editor session."""
    return await _run(editor.nodes, editor.connections)


@app.get("/api/health")
def health():
    return {
        "status": "healthy",
        "version": __version__,
        "uptime_seconds": round(time.time() - _start_time),
        "node_kinds": len(get_registry()),
        "pipeline_status": executor.state.status,
        "websocket_clients": len(ws_manager.connections),
    }
