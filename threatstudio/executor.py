"""Pipeline executor with per-node state streaming.

Nodes run strictly one at a time in topological order. The first node
that fails aborts the run; results of nodes that already completed stay
in the execution state.
"""
import inspect
import time
import traceback
import uuid
from typing import Any, Callable, Dict, List, Optional

from threatstudio.context import ExecutionContext
from threatstudio.models import (
    Connection,
    NodeExecutionState,
    NodeInput,
    PipelineExecutionState,
    PipelineNode,
    UnknownNodeKindError,
)
from threatstudio.node_api import get_executors, logger as node_logger
from threatstudio.planner import plan_execution


class PipelineExecutor:
    """Runs a pipeline graph and publishes every state transition.

    event_handler(event_type, data) may be a plain function or a coroutine
    function. Every transition emits a "state" event carrying the new
    PipelineExecutionState; lifecycle events (start, node_start,
    node_complete, node_error, log, complete, error, profiler_summary) are
    emitted alongside.
    """

    def __init__(
        self,
        context: Optional[ExecutionContext] = None,
        event_handler: Optional[Callable] = None,
    ):
        self.context = context or ExecutionContext.default()
        self.event_handler = event_handler
        self.executors = get_executors()
        self.state = PipelineExecutionState()
        self.node_results: Dict[str, Any] = {}
        self._log_entries: List[dict] = []
        self._unsent_logs: List[dict] = []
        self._node_timings: Dict[str, float] = {}
        self._run_id = 0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit(self, event_type: str, **data):
        """Emit an event (for WebSocket streaming). Pending logs go first."""
        if not self.event_handler:
            self._unsent_logs = []
            return
        pending, self._unsent_logs = self._unsent_logs, []
        for entry in pending:
            await self._dispatch("log", entry)
        await self._dispatch(event_type, data)

    async def _dispatch(self, event_type: str, data: dict):
        result = self.event_handler(event_type, data)
        if inspect.isawaitable(result):
            await result

    def _log_handler(self, level: str, node_id: str, node_kind: str, message: str):
        """Captures logs from node handlers via the logger singleton."""
        entry = {
            "level": level,
            "node_id": node_id,
            "node_kind": node_kind,
            "message": message,
            "timestamp": time.time(),
        }
        self._log_entries.append(entry)
        self._unsent_logs.append(entry)
        print(f"  [{level}] [{node_kind}:{node_id}] {message}")

    async def _publish(self, **updates):
        """Replace the execution state and announce it."""
        self.state = self.state.model_copy(update=updates)
        await self._emit("state", state=self.state)

    async def _set_node_state(self, node_state: NodeExecutionState, **updates):
        node_states = dict(self.state.node_states)
        node_states[node_state.node_id] = node_state
        await self._publish(node_states=node_states, **updates)

    # ------------------------------------------------------------------
    # Node execution
    # ------------------------------------------------------------------

    def _get_node_inputs(self, node_id: str, connections: List[Connection]) -> List[NodeInput]:
        """Collect upstream results for a node, one entry per incoming connection."""
        return [
            NodeInput(
                source=c.source,
                source_port=c.source_port,
                target_port=c.target_port,
                value=self.node_results[c.source],
            )
            for c in connections
            if c.target == node_id and c.source in self.node_results
        ]

    async def _execute_node(self, node_def: PipelineNode, inputs: List[NodeInput]) -> Any:
        handler = self.executors.get(node_def.kind)
        if handler is None:
            raise UnknownNodeKindError(node_id=node_def.id, kind=node_def.kind)

        token = node_logger._set_context(node_def.id, node_def.kind, self._log_handler)
        try:
            result = handler(node_def, inputs, self.context)
            if inspect.isawaitable(result):
                result = await result
        finally:
            node_logger._clear_context(token)
        return result

    def _is_cancelled(self, run_id: int) -> bool:
        return run_id != self._run_id

    # ------------------------------------------------------------------
    # Main execution loop
    # ------------------------------------------------------------------

    async def run(
        self, nodes: List[PipelineNode], connections: List[Connection]
    ) -> PipelineExecutionState:
        """Validate, plan and execute the pipeline. Returns the final state.

        Execution errors never escape: they end up in the node's state and
        in the pipeline-level error field.
        """
        self._run_id += 1
        run_id = self._run_id
        self.node_results = {}
        self._node_timings = {}
        self._log_entries = []
        self._unsent_logs = []

        self.state = PipelineExecutionState(
            pipeline_id=f"pipeline_{uuid.uuid4().hex[:12]}", status="validating",
        )
        await self._emit("state", state=self.state)

        try:
            plan = plan_execution(nodes, connections)
        except Exception as exc:
            message = f"Pipeline validation crashed: {exc}"
            print(message)
            await self._publish(status="error", error=message, end_time=time.time())
            await self._emit("error", message=message, errors=[])
            return self.state

        if not plan.validation.is_valid:
            message = plan.validation.errors[0].message
            print(f"Pipeline validation failed: {message}")
            await self._publish(status="error", error=message, end_time=time.time())
            await self._emit(
                "error",
                message=message,
                errors=[e.model_dump() for e in plan.validation.errors],
            )
            return self.state

        order = plan.order
        total = len(order)
        nodes_by_id = {n.id: n for n in nodes}
        dependents = {c.target for c in connections}

        start_time = time.time()
        await self._publish(
            status="running",
            start_time=start_time,
            total_progress=0,
            node_states={
                n.id: NodeExecutionState(
                    node_id=n.id,
                    status="waiting" if n.id in dependents else "idle",
                )
                for n in nodes
            },
        )
        await self._emit("start", total_nodes=total, order=order)
        print(f"Executing {total} nodes: {order}")

        try:
            for idx, node_id in enumerate(order):
                node_def = nodes_by_id[node_id]
                node_start = time.time()
                await self._set_node_state(
                    NodeExecutionState(node_id=node_id, status="running", start_time=node_start),
                    current_node_id=node_id,
                    total_progress=(idx + 0.5) / total * 100,
                )
                await self._emit("node_start", node_id=node_id, node_kind=node_def.kind)
                print(f"[{idx + 1}/{total}] Executing {node_def.kind} ({node_id})")

                inputs = self._get_node_inputs(node_id, connections)
                try:
                    result = await self._execute_node(node_def, inputs)
                except Exception as exc:
                    if self._is_cancelled(run_id):
                        return self.state
                    duration = (time.time() - node_start) * 1000
                    self._node_timings[node_id] = duration
                    message = str(exc) or type(exc).__name__
                    await self._set_node_state(
                        NodeExecutionState(
                            node_id=node_id,
                            status="error",
                            start_time=node_start,
                            duration=duration,
                            error=message,
                        ),
                        total_progress=(idx + 1) / total * 100,
                    )
                    await self._emit(
                        "node_error",
                        node_id=node_id,
                        error=message,
                        stack_trace=traceback.format_exc(),
                        duration_ms=duration,
                    )
                    print(f"  ERROR: {message}")
                    raise

                if self._is_cancelled(run_id):
                    return self.state

                self.node_results[node_id] = result
                duration = (time.time() - node_start) * 1000
                self._node_timings[node_id] = duration
                await self._set_node_state(
                    NodeExecutionState(
                        node_id=node_id,
                        status="complete",
                        start_time=node_start,
                        duration=duration,
                        results=result,
                    ),
                    total_progress=(idx + 1) / total * 100,
                )
                await self._emit(
                    "node_complete", node_id=node_id, outputs=result, duration_ms=duration,
                )
                print(f"  Done ({duration:.1f}ms)")

        except Exception as exc:
            # Nodes that never got their turn go back to idle
            node_states = {
                nid: NodeExecutionState(node_id=nid) if s.status == "waiting" else s
                for nid, s in self.state.node_states.items()
            }
            message = str(exc) or type(exc).__name__
            await self._publish(
                status="error", node_states=node_states, error=message, end_time=time.time(),
            )
            await self._emit("error", message=message, node_id=self.state.current_node_id)
            return self.state

        total_ms = (time.time() - start_time) * 1000
        await self._publish(status="complete", end_time=time.time(), total_progress=100)

        profile = {
            node_id: {
                "node_kind": nodes_by_id[node_id].kind,
                "duration_ms": round(dur, 2),
            }
            for node_id, dur in self._node_timings.items()
        }
        await self._emit(
            "profiler_summary",
            total_ms=round(total_ms, 2),
            node_timings=profile,
            slowest_node=max(self._node_timings, key=self._node_timings.get)
            if self._node_timings
            else None,
        )
        await self._emit("complete", total_ms=total_ms)
        print(f"Pipeline complete ({total_ms:.1f}ms)")

        return self.state

    def cancel(self) -> None:
        """Stop tracking the current run.

        An in-flight model call is not interrupted; whatever it returns is
        discarded.
        """
        self._run_id += 1
        self.state = self.state.model_copy(update={"status": "idle", "total_progress": 0})

    def get_node_state(self, node_id: str) -> Optional[NodeExecutionState]:
        return self.state.node_states.get(node_id)

    @property
    def is_running(self) -> bool:
        return self.state.status in ("validating", "running")
