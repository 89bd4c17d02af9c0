"""Tests for server endpoints and WebSocket streaming."""
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from threatstudio.config import Settings
from threatstudio.context import ExecutionContext
from threatstudio.executor import PipelineExecutor
from threatstudio.findings import extract_findings
from threatstudio.pipeline import PipelineEditor

FINDINGS_JSON = '{"findings": [{"title": "Unauthenticated admin API", "severity": "high"}]}'


class FakeModel:
    def __init__(self):
        self.calls = []

    async def __call__(self, model_id, prompt, system_prompt, image_base64=None, provider_config=None):
        self.calls.append(model_id)
        return FINDINGS_JSON


@pytest.fixture
def model():
    return FakeModel()


@pytest.fixture
def client(monkeypatch, model):
    """Test client with a fresh editor session and a fake inference endpoint."""
    from threatstudio import server
    from fastapi.testclient import TestClient

    context = ExecutionContext(
        invoke_model=model,
        get_template=server.template_store.get_template,
        extract_findings=extract_findings,
    )
    monkeypatch.setattr(server, "editor", PipelineEditor(settings=Settings()))
    monkeypatch.setattr(
        server, "executor", PipelineExecutor(context, event_handler=server.broadcast_event),
    )
    with TestClient(server.app) as c:
        yield c


def _pipeline_json():
    return {
        "nodes": [
            {"id": "d1", "kind": "input-diagram",
             "config": {"file_name": "arch.png", "file_base64": "QUJD", "media_type": "image/png"}},
            {"id": "s1", "kind": "analysis-stride",
             "config": {"model_id": "m1", "prompt_template": "stride-default"}},
            {"id": "o1", "kind": "output-results"},
        ],
        "connections": [
            {"id": "c1", "source": "d1", "source_port": "diagram_data",
             "target": "s1", "target_port": "diagram_data"},
            {"id": "c2", "source": "s1", "source_port": "findings_data",
             "target": "o1", "target_port": "findings_data"},
        ],
    }


def test_health_endpoint(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == "1.0.0"
    assert data["node_kinds"] == 5
    assert data["pipeline_status"] == "idle"


def test_nodes_endpoint(client):
    resp = client.get("/api/pipeline/nodes")
    assert resp.status_code == 200
    data = resp.json()
    assert data["analysis-stride"]["inputs"] == [
        {"name": "diagram_data", "type": "diagram_data"},
        {"name": "text_data", "type": "text_data"},
    ]


def test_validate_endpoint(client):
    resp = client.post("/api/pipeline/validate", json=_pipeline_json())
    assert resp.status_code == 200
    data = resp.json()
    assert data["is_valid"] is True
    assert data["order"] == ["d1", "s1", "o1"]


def test_validate_reports_issues(client):
    payload = {"nodes": [{"id": "o1", "kind": "output-results"}], "connections": []}
    data = client.post("/api/pipeline/validate", json=payload).json()
    assert data["is_valid"] is False
    assert {e["type"] for e in data["errors"]} == {"missing_connection"}
    assert [w["type"] for w in data["warnings"]] == ["unused_output"]


def test_unknown_kind_rejected_by_schema(client):
    payload = {"nodes": [{"id": "x", "kind": "input-audio"}], "connections": []}
    assert client.post("/api/pipeline/validate", json=payload).status_code == 422


def test_order_endpoint(client):
    data = client.post("/api/pipeline/order", json=_pipeline_json()).json()
    assert data["order"] == ["d1", "s1", "o1"]


def test_execute_endpoint(client, model):
    resp = client.post("/api/pipeline/execute", json=_pipeline_json())
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "complete"
    assert data["total_progress"] == 100
    findings = data["node_states"]["s1"]["results"]["findings"]
    assert findings[0]["title"] == "Unauthenticated admin API"
    assert findings[0]["severity"] == "high"
    assert model.calls == ["m1"]

    state = client.get("/api/pipeline/state").json()
    assert state["status"] == "complete"


def test_execute_rejected_while_running(client):
    from threatstudio import server
    server.executor.state = server.executor.state.model_copy(update={"status": "running"})
    resp = client.post("/api/pipeline/execute", json=_pipeline_json())
    assert resp.status_code == 409


def test_cancel_endpoint(client):
    from threatstudio import server
    server.executor.state = server.executor.state.model_copy(
        update={"status": "running", "total_progress": 50},
    )
    data = client.post("/api/pipeline/cancel").json()
    assert data["status"] == "idle"
    assert data["total_progress"] == 0


def test_templates_endpoints(client):
    data = client.get("/api/templates").json()
    assert "stride-default" in [t["id"] for t in data]
    assert client.get("/api/templates/stpa-sec-default").json()["analysis_type"] == "stpa-sec"
    assert client.get("/api/templates/nope").status_code == 404
    assert client.delete("/api/templates/stride-default").status_code == 400

    created = client.post("/api/templates", json={
        "name": "API review", "template": "Review {{api}}", "variables": ["api"],
    }).json()
    assert client.delete(f"/api/templates/{created['id']}").json()["status"] == "deleted"


def test_editor_session_flow(client, model):
    diagram = client.post("/api/editor/nodes", json={"kind": "input-diagram", "x": 0, "y": 0}).json()["id"]
    stride = client.post("/api/editor/nodes", json={"kind": "analysis-stride", "x": 300, "y": 0}).json()["id"]

    resp = client.post(
        f"/api/editor/nodes/{diagram}/upload",
        files={"file": ("arch.png", b"PNGDATA", "image/png")},
    )
    assert resp.status_code == 200
    node = next(n for n in resp.json()["nodes"] if n["id"] == diagram)
    assert node["config"]["file_data"] == {"_type": "bytes", "length": 7}
    assert node["config"]["upload_status"] == "ready"
    assert node["config"]["media_type"] == "image/png"

    conn = client.post("/api/editor/connections", json={
        "source": diagram, "source_port": "diagram_data",
        "target": stride, "target_port": "diagram_data",
    }).json()
    assert conn["connections"][0]["is_valid"] is True

    run = client.post("/api/editor/run").json()
    assert run["status"] == "complete"
    assert run["node_states"][diagram]["results"]["base64"] == "UE5HREFUQQ=="
    assert len(model.calls) == 1


def test_editor_undo_redo(client):
    client.post("/api/editor/nodes", json={"kind": "input-text"})
    state = client.post("/api/editor/undo").json()
    assert state["nodes"] == []
    assert state["can_redo"] is True
    state = client.post("/api/editor/redo").json()
    assert len(state["nodes"]) == 1


def test_editor_select_duplicate_delete(client):
    nid = client.post("/api/editor/nodes", json={"kind": "input-text", "x": 10, "y": 10}).json()["id"]
    client.patch(f"/api/editor/nodes/{nid}", json={"config": {"system_name": "Checkout API"}})
    client.post("/api/editor/select", json={"node_ids": [nid]})

    state = client.post("/api/editor/duplicate").json()
    assert len(state["nodes"]) == 2
    copy = next(n for n in state["nodes"] if n["id"] != nid)
    assert copy["position"] == {"x": 60, "y": 60}
    assert copy["config"]["system_name"] == "Checkout API"

    state = client.post("/api/editor/shortcut", json={"key": "Delete"}).json()
    assert state["handled"] is True
    assert [n["id"] for n in state["nodes"]] == [nid]

    state = client.delete(f"/api/editor/nodes/{nid}").json()
    assert state["nodes"] == []


def test_editor_errors(client):
    assert client.post("/api/editor/nodes", json={"kind": "input-audio"}).status_code == 400
    assert client.patch("/api/editor/nodes/ghost", json={"config": {}}).status_code == 404
    nid = client.post("/api/editor/nodes", json={"kind": "input-text"}).json()["id"]
    resp = client.post(
        f"/api/editor/nodes/{nid}/upload", files={"file": ("a.png", b"x", "image/png")},
    )
    assert resp.status_code == 400
    resp = client.post("/api/editor/connections", json={
        "source": nid, "source_port": "text_data", "target": nid, "target_port": "text_data",
    })
    assert resp.status_code == 400


def test_websocket_initial_state_and_cancel(client):
    with client.websocket_connect("/ws/execution") as ws:
        first = ws.receive_json()
        assert first["event"] == "state"
        assert first["state"]["status"] == "idle"

        ws.send_json({"action": "cancel"})
        msg = ws.receive_json()
        assert msg["event"] == "state"
        assert msg["state"]["total_progress"] == 0


def test_patch_config_and_position_is_one_undo_step(client):
    nid = client.post("/api/editor/nodes", json={"kind": "input-text", "x": 0, "y": 0}).json()["id"]
    state = client.patch(f"/api/editor/nodes/{nid}", json={
        "config": {"system_name": "Checkout API"},
        "position": {"x": 120, "y": 40},
    }).json()
    node = state["nodes"][0]
    assert node["config"]["system_name"] == "Checkout API"
    assert node["config"]["description"] == ""
    assert node["position"] == {"x": 120, "y": 40}

    node = client.post("/api/editor/undo").json()["nodes"][0]
    assert node["config"]["system_name"] == ""
    assert node["position"] == {"x": 0, "y": 0}
