"""Connection and pipeline validation for ThreatStudio.

validate_connection() decides whether a single edge between two typed ports
is legal. validate_pipeline() inspects a whole graph before a run and returns
a ValidationResult; it never raises.
"""
from typing import Dict, List, Set

from threatstudio.models import (
    Connection,
    PipelineNode,
    ValidationIssue,
    ValidationResult,
)
from threatstudio.node_api import port_type
from threatstudio import nodes as _builtin_nodes  # noqa: F401  registers the node kinds

# Output port type -> input port types it may feed.
COMPATIBLE_PORT_TYPES: Dict[str, Set[str]] = {
    "diagram_data": {"diagram_data"},
    "text_data": {"text_data"},
    "findings_data": {"findings_data"},
}

MAX_TEMPERATURE = 1.0


def validate_connection(
    source: str,
    source_port: str,
    target: str,
    target_port: str,
    nodes: List[PipelineNode],
) -> bool:
    """Return True if source.source_port may feed target.target_port."""
    if source == target:
        return False

    nodes_by_id = {n.id: n for n in nodes}
    source_node = nodes_by_id.get(source)
    target_node = nodes_by_id.get(target)
    if source_node is None or target_node is None:
        return False

    out_type = port_type(source_node.kind, source_port, "outputs")
    in_type = port_type(target_node.kind, target_port, "inputs")
    if out_type is None or in_type is None:
        return False

    return in_type in COMPATIBLE_PORT_TYPES.get(out_type, set())


def validate_pipeline(
    nodes: List[PipelineNode], connections: List[Connection]
) -> ValidationResult:
    """Structural checks run before execution.

    Checks performed:
    1. Empty pipeline (error)
    2. No input node / no analysis node (error)
    3. Invalid connections (error)
    4. Analysis node without a valid incoming connection (error)
    5. Diagram node without an uploaded file (error)
    6. Text node without a system name (warning)
    7. Analysis temperature not a number (error) or above 1.0 (warning)
    8. Output node without an incoming connection (warning)
    """
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    if not nodes:
        errors.append(ValidationIssue(
            type="missing_connection", message="Pipeline is empty",
        ))

    input_nodes = [n for n in nodes if n.kind.startswith("input-")]
    analysis_nodes = [n for n in nodes if n.kind.startswith("analysis-")]
    output_nodes = [n for n in nodes if n.kind.startswith("output-")]

    if not input_nodes:
        errors.append(ValidationIssue(
            type="missing_connection",
            message="Pipeline needs at least one input node",
        ))
    if not analysis_nodes:
        errors.append(ValidationIssue(
            type="missing_connection",
            message="Pipeline needs at least one analysis node",
        ))

    incoming: Dict[str, List[Connection]] = {n.id: [] for n in nodes}
    for conn in connections:
        if not conn.is_valid:
            errors.append(ValidationIssue(
                type="invalid_connection",
                connection_id=conn.id,
                node_id=conn.target,
                message=(
                    f"Connection '{conn.id}' cannot feed "
                    f"'{conn.source_port}' into '{conn.target_port}'"
                ),
            ))
        if conn.target in incoming:
            incoming[conn.target].append(conn)

    for n in input_nodes:
        if n.kind == "input-diagram":
            if not any(n.config.get(k) for k in ("file_data", "file_base64", "file_name")):
                errors.append(ValidationIssue(
                    type="missing_config",
                    node_id=n.id,
                    message=f'Architecture diagram node "{n.id}" requires a file upload',
                ))
        elif n.kind == "input-text":
            if not (n.config.get("system_name") or "").strip():
                warnings.append(ValidationIssue(
                    type="missing_optional_config",
                    node_id=n.id,
                    message=f'Text input node "{n.id}" has no system name',
                ))

    for n in analysis_nodes:
        if not any(c.is_valid for c in incoming.get(n.id, [])):
            errors.append(ValidationIssue(
                type="missing_connection",
                node_id=n.id,
                message=f'Analysis node "{n.id}" has no valid input connection',
            ))
        temperature = n.config.get("temperature")
        if temperature is None:
            continue
        try:
            value = float(temperature)
        except (TypeError, ValueError):
            errors.append(ValidationIssue(
                type="missing_config",
                node_id=n.id,
                message=f'Analysis node "{n.id}" has a non-numeric temperature {temperature!r}',
            ))
            continue
        if value > MAX_TEMPERATURE:
            warnings.append(ValidationIssue(
                type="high_temperature",
                node_id=n.id,
                message=f'Analysis node "{n.id}" uses temperature {temperature}',
            ))

    for n in output_nodes:
        if not incoming.get(n.id):
            warnings.append(ValidationIssue(
                type="unused_output",
                node_id=n.id,
                message=f'Output node "{n.id}" has no input connection',
            ))

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
