"""Shared Pydantic models for ThreatStudio."""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict


NodeKind = Literal[
    "input-diagram",
    "input-text",
    "analysis-stride",
    "analysis-stpa-sec",
    "output-results",
]
NODE_KINDS = (
    "input-diagram",
    "input-text",
    "analysis-stride",
    "analysis-stpa-sec",
    "output-results",
)

PortType = Literal["diagram_data", "text_data", "findings_data"]

NodeStatus = Literal["idle", "waiting", "running", "complete", "error"]
PipelineStatus = Literal["idle", "validating", "running", "complete", "error"]


# --- Graph (lives inside undo history, so frozen) ---

class Point(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float = 0
    y: float = 0


class PipelineNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: NodeKind
    position: Point = Point()
    config: Dict[str, Any] = {}
    inputs: List[str] = []
    outputs: List[str] = []


class Connection(BaseModel):
    """Directed edge from an output port to an input port."""
    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    source_port: str
    target: str
    target_port: str
    is_valid: bool = True


class PipelineSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    nodes: List[PipelineNode] = []
    connections: List[Connection] = []


# --- Execution state (transient, never part of history) ---

class NodeExecutionState(BaseModel):
    node_id: str
    status: NodeStatus = "idle"
    start_time: Optional[float] = None
    duration: Optional[float] = None  # milliseconds
    error: Optional[str] = None
    results: Any = None


class PipelineExecutionState(BaseModel):
    pipeline_id: str = ""
    status: PipelineStatus = "idle"
    node_states: Dict[str, NodeExecutionState] = {}
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    total_progress: float = 0
    current_node_id: Optional[str] = None
    error: Optional[str] = None


class NodeInput(BaseModel):
    """One upstream result delivered to a node handler."""
    source: str
    source_port: str
    target_port: str
    value: Any = None


# --- Validation ---

class ValidationIssue(BaseModel):
    type: Literal[
        "missing_connection",
        "invalid_connection",
        "missing_config",
        "circular_dependency",
        "unused_output",
        "high_temperature",
        "missing_optional_config",
    ]
    message: str
    node_id: Optional[str] = None
    connection_id: Optional[str] = None


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []


# --- Analysis output ---

class Finding(BaseModel):
    id: str
    title: str
    description: str
    severity: Literal["high", "medium", "low"] = "medium"
    category: str = "General"
    mitigations: Optional[List[str]] = None
    confidence: Optional[float] = None
    cwe_id: Optional[str] = None
    impact: Optional[str] = None
    model_source: Optional[str] = None
    created_at: Optional[str] = None


# --- Errors ---

class NodeExecutionError(Exception):
    """Raised by a node handler when its config or inputs cannot be processed."""


class ModelInvocationError(Exception):
    """Raised when the remote inference endpoint fails or is unreachable."""


class UnknownNodeKindError(Exception):
    """Raised when executor encounters a node kind with no registered handler."""

    def __init__(self, node_id: str, kind: str):
        self.node_id = node_id
        self.kind = kind
        super().__init__(f"Node '{node_id}' uses unknown kind '{kind}'")
