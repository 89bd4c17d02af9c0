"""Execution planning: dependency order plus pre-run validation."""
from typing import Dict, List

from pydantic import BaseModel

from threatstudio.models import Connection, PipelineNode, ValidationIssue, ValidationResult
from threatstudio.validator import validate_pipeline


class ExecutionPlan(BaseModel):
    order: List[str]
    validation: ValidationResult


def build_execution_order(
    nodes: List[PipelineNode], connections: List[Connection]
) -> List[str]:
    """Kahn's algorithm. Ties are broken by node insertion order.

    Nodes on a cycle never reach in-degree zero and are left out of the
    result; callers compare lengths to detect that.
    """
    in_degree: Dict[str, int] = {n.id: 0 for n in nodes}
    adj: Dict[str, List[str]] = {n.id: [] for n in nodes}

    for c in connections:
        if c.source in in_degree and c.target in in_degree:
            in_degree[c.target] += 1
            adj[c.source].append(c.target)

    queue = [nid for nid, deg in in_degree.items() if deg == 0]
    order = []
    while queue:
        nid = queue.pop(0)
        order.append(nid)
        for neighbor in adj[nid]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    return order


def plan_execution(
    nodes: List[PipelineNode], connections: List[Connection]
) -> ExecutionPlan:
    """Validate the pipeline and compute its order.

    A node present in the graph but missing from the order sits on a cycle
    and is reported as a circular_dependency error.
    """
    validation = validate_pipeline(nodes, connections)
    order = build_execution_order(nodes, connections)

    if len(order) < len(nodes):
        ordered = set(order)
        stuck = [n.id for n in nodes if n.id not in ordered]
        errors = list(validation.errors) + [
            ValidationIssue(
                type="circular_dependency",
                node_id=stuck[0],
                message=f"Circular dependency detected between nodes: {', '.join(stuck)}",
            )
        ]
        validation = ValidationResult(
            is_valid=False, errors=errors, warnings=validation.warnings
        )

    return ExecutionPlan(order=order, validation=validation)
