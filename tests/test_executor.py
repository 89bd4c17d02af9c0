"""Tests for the pipeline executor."""
import sys
import os
import asyncio

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from threatstudio.context import ExecutionContext
from threatstudio.executor import PipelineExecutor
from threatstudio.findings import extract_findings
from threatstudio.models import Connection, ModelInvocationError, PipelineNode
from threatstudio.templates import TemplateStore

STRUCTURED_RESPONSE = """```json
{"spoofing": [{"threat": "Forged session cookie", "severity": "High",
               "description": "Cookies are not signed", "cwe_id": "CWE-565"}]}
```"""


class FakeModel:
    """Stands in for the inference endpoint."""

    def __init__(self, response=STRUCTURED_RESPONSE, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def __call__(self, model_id, prompt, system_prompt, image_base64=None, provider_config=None):
        self.calls.append({
            "model_id": model_id,
            "prompt": prompt,
            "system_prompt": system_prompt,
            "image_base64": image_base64,
        })
        if self.error:
            raise self.error
        return self.response


def _context(model):
    return ExecutionContext(
        invoke_model=model,
        get_template=TemplateStore().get_template,
        extract_findings=extract_findings,
    )


def _node(nid, kind, **config):
    return PipelineNode(id=nid, kind=kind, config=config)


def _conn(src, src_port, tgt, tgt_port):
    return Connection(
        id=f"{src}-{tgt}", source=src, source_port=src_port,
        target=tgt, target_port=tgt_port,
    )


def _chain():
    """input-text -> analysis-stride -> output-results"""
    nodes = [
        _node("a", "input-text", system_name="Checkout API", description="Card payments"),
        _node("b", "analysis-stride", model_id="m1", prompt_template="stride-default"),
        _node("c", "output-results"),
    ]
    conns = [
        _conn("a", "text_data", "b", "text_data"),
        _conn("b", "findings_data", "c", "findings_data"),
    ]
    return nodes, conns


def _recorder():
    events = []

    def handler(event_type, data):
        events.append((event_type, data))

    return events, handler


@pytest.mark.asyncio
async def test_successful_run():
    model = FakeModel()
    executor = PipelineExecutor(_context(model))
    nodes, conns = _chain()

    state = await executor.run(nodes, conns)

    assert state.status == "complete"
    assert state.total_progress == 100
    assert state.error is None
    assert state.end_time is not None
    assert {s.status for s in state.node_states.values()} == {"complete"}

    findings = state.node_states["b"].results["findings"]
    assert len(findings) == 1
    assert findings[0].title == "Forged session cookie"
    assert findings[0].category == "SPOOFING"
    assert findings[0].severity == "high"

    # The output node passes the analysis result through unchanged
    assert state.node_states["c"].results == state.node_states["b"].results
    assert "Checkout API" in model.calls[0]["prompt"]
    assert "STRIDE" in model.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_fail_fast_abort():
    """A -> B -> C where B throws: A complete, B error, C idle."""
    model = FakeModel(error=ModelInvocationError("Model API call failed: 500 Internal Server Error - boom"))
    executor = PipelineExecutor(_context(model))
    nodes, conns = _chain()

    state = await executor.run(nodes, conns)

    assert state.status == "error"
    assert state.node_states["a"].status == "complete"
    assert state.node_states["b"].status == "error"
    assert "500" in state.node_states["b"].error
    assert state.node_states["c"].status == "idle"
    assert state.error == state.node_states["b"].error
    assert "c" not in executor.node_results
    # Earlier results survive the abort
    assert state.node_states["a"].results["data"]["system_name"] == "Checkout API"


@pytest.mark.asyncio
async def test_validation_failure_runs_nothing():
    model = FakeModel()
    events, handler = _recorder()
    executor = PipelineExecutor(_context(model), event_handler=handler)
    nodes = [_node("b", "analysis-stride", model_id="m1")]

    state = await executor.run(nodes, [])

    assert state.status == "error"
    assert state.error == "Pipeline needs at least one input node"
    assert state.node_states == {}
    assert model.calls == []
    assert [e for e, _ in events] == ["state", "state", "error"]
    assert events[0][1]["state"].status == "validating"
    assert events[-1][1]["errors"][0]["type"] == "missing_connection"


@pytest.mark.asyncio
async def test_cycle_is_an_error():
    model = FakeModel()
    executor = PipelineExecutor(_context(model))
    nodes = [
        _node("t", "input-text", system_name="Checkout API"),
        _node("x", "analysis-stride", model_id="m1"),
        _node("y", "analysis-stpa-sec", model_id="m1"),
    ]
    conns = [
        _conn("t", "text_data", "x", "text_data"),
        Connection(id="xy", source="x", source_port="findings_data", target="y", target_port="diagram_data"),
        Connection(id="yx", source="y", source_port="findings_data", target="x", target_port="diagram_data"),
    ]

    state = await executor.run(nodes, conns)
    assert state.status == "error"
    assert "Circular dependency" in state.error
    assert model.calls == []


@pytest.mark.asyncio
async def test_events_and_progress():
    events, handler = _recorder()
    executor = PipelineExecutor(_context(FakeModel()), event_handler=handler)
    nodes, conns = _chain()

    await executor.run(nodes, conns)

    names = [e for e, _ in events]
    assert names[0] == "state"
    assert "start" in names
    assert names.count("node_start") == 3
    assert names.count("node_complete") == 3
    assert names[-1] == "complete"
    assert "profiler_summary" in names

    progress = [d["state"].total_progress for e, d in events if e == "state"]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    running = [
        d["state"].total_progress for e, d in events
        if e == "state" and d["state"].current_node_id == "a"
        and d["state"].node_states["a"].status == "running"
    ]
    assert running == [pytest.approx(0.5 / 3 * 100)]

    start = dict(events)["start"]
    assert start["order"] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_dependents_start_waiting():
    events, handler = _recorder()
    executor = PipelineExecutor(_context(FakeModel()), event_handler=handler)
    nodes, conns = _chain()

    await executor.run(nodes, conns)

    first_running = next(d["state"] for e, d in events if e == "state" and d["state"].status == "running")
    statuses = {nid: s.status for nid, s in first_running.node_states.items()}
    assert statuses == {"a": "idle", "b": "waiting", "c": "waiting"}


@pytest.mark.asyncio
async def test_node_logs_become_events():
    events, handler = _recorder()
    executor = PipelineExecutor(_context(FakeModel()), event_handler=handler)
    nodes, conns = _chain()

    await executor.run(nodes, conns)

    logs = [d for e, d in events if e == "log"]
    assert any(entry["node_id"] == "b" and "Extracted" in entry["message"] for entry in logs)
    assert all(entry["level"] in ("DEBUG", "INFO", "WARN", "ERROR") for entry in logs)


@pytest.mark.asyncio
async def test_async_event_handler():
    seen = []

    async def handler(event_type, data):
        await asyncio.sleep(0)
        seen.append(event_type)

    executor = PipelineExecutor(_context(FakeModel()), event_handler=handler)
    nodes, conns = _chain()
    await executor.run(nodes, conns)
    assert seen[-1] == "complete"


@pytest.mark.asyncio
async def test_unstructured_response_still_yields_a_finding():
    raw = "Nothing to report."
    executor = PipelineExecutor(_context(FakeModel(response=raw)))
    nodes, conns = _chain()

    state = await executor.run(nodes, conns)

    result = state.node_states["b"].results
    assert result["raw_response"] == raw
    assert len(result["findings"]) == 1
    assert result["findings"][0].title == "Security Analysis Results"
    assert result["findings"][0].description == raw
    assert result["findings"][0].severity == "medium"


@pytest.mark.asyncio
async def test_missing_handler_fails_node():
    executor = PipelineExecutor(_context(FakeModel()))
    executor.executors.pop("output-results")
    nodes, conns = _chain()

    state = await executor.run(nodes, conns)
    assert state.status == "error"
    assert state.node_states["c"].status == "error"
    assert "output-results" in state.node_states["c"].error


@pytest.mark.asyncio
async def test_diagram_reaches_model_as_image():
    model = FakeModel()
    executor = PipelineExecutor(_context(model))
    nodes = [
        _node("d", "input-diagram", file_name="arch.png", file_data=b"diagram-bytes", media_type="image/png"),
        _node("s", "analysis-stpa-sec", model_id="m1", prompt_template="stpa-sec-default"),
    ]
    conns = [_conn("d", "diagram_data", "s", "diagram_data")]

    state = await executor.run(nodes, conns)

    assert state.status == "complete"
    assert model.calls[0]["image_base64"] == "ZGlhZ3JhbS1ieXRlcw=="
    assert "STPA-SEC" in model.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_cancel_discards_late_result():
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow_model(model_id, prompt, system_prompt, image_base64=None, provider_config=None):
        started.set()
        await release.wait()
        return STRUCTURED_RESPONSE

    executor = PipelineExecutor(_context(slow_model))
    nodes, conns = _chain()

    task = asyncio.ensure_future(executor.run(nodes, conns))
    await started.wait()
    assert executor.is_running

    executor.cancel()
    assert executor.state.status == "idle"
    assert executor.state.total_progress == 0

    # The in-flight call is not interrupted; its result is dropped
    release.set()
    state = await task

    assert state.status == "idle"
    assert "b" not in executor.node_results
    assert "c" not in executor.node_results
    assert not executor.is_running


@pytest.mark.asyncio
async def test_rerun_starts_from_fresh_state():
    executor = PipelineExecutor(_context(FakeModel(error=ModelInvocationError("down"))))
    nodes, conns = _chain()
    first = await executor.run(nodes, conns)
    assert first.status == "error"

    executor.context.invoke_model = FakeModel()
    second = await executor.run(nodes, conns)
    assert second.status == "complete"
    assert second.pipeline_id != first.pipeline_id
    assert executor.get_node_state("c").status == "complete"


@pytest.mark.asyncio
async def test_bad_temperature_fails_validation_and_releases_executor():
    model = FakeModel()
    executor = PipelineExecutor(_context(model))
    nodes, conns = _chain()
    nodes[1] = _node("b", "analysis-stride", model_id="m1", prompt_template="stride-default", temperature="")

    state = await executor.run(nodes, conns)

    assert state.status == "error"
    assert "temperature" in state.error
    assert not executor.is_running
    assert model.calls == []

    fixed, _ = _chain()
    assert (await executor.run(fixed, conns)).status == "complete"


@pytest.mark.asyncio
async def test_planner_crash_ends_in_error(monkeypatch):
    import threatstudio.executor as executor_module

    def broken_plan(nodes, connections):
        raise RuntimeError("planner exploded")

    monkeypatch.setattr(executor_module, "plan_execution", broken_plan)
    events, handler = _recorder()
    executor = PipelineExecutor(_context(FakeModel()), event_handler=handler)
    nodes, conns = _chain()

    state = await executor.run(nodes, conns)

    assert state.status == "error"
    assert "planner exploded" in state.error
    assert not executor.is_running
    assert events[-1][0] == "error"


@pytest.mark.asyncio
async def test_cancelled_run_keeps_logs_of_next_run():
    """A cancelled run finishing late must not detach the next run's node logs."""
    first_started, first_release = asyncio.Event(), asyncio.Event()
    second_started, second_release = asyncio.Event(), asyncio.Event()
    calls = []

    async def model(model_id, prompt, system_prompt, image_base64=None, provider_config=None):
        calls.append(model_id)
        if len(calls) == 1:
            first_started.set()
            await first_release.wait()
        else:
            second_started.set()
            await second_release.wait()
        return STRUCTURED_RESPONSE

    events, handler = _recorder()
    executor = PipelineExecutor(_context(model), event_handler=handler)
    nodes, conns = _chain()

    first = asyncio.ensure_future(executor.run(nodes, conns))
    await first_started.wait()
    executor.cancel()

    second = asyncio.ensure_future(executor.run(nodes, conns))
    await second_started.wait()

    first_release.set()
    await first
    second_release.set()
    state = await second

    assert state.status == "complete"
    extracted = [
        d for e, d in events
        if e == "log" and d["node_id"] == "b" and d["message"].startswith("Extracted")
    ]
    # One from the late cancelled call, one from the live run
    assert len(extracted) == 2
