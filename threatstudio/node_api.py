"""Node type table for ThreatStudio.

Each node kind registers exactly one handler through the ``@node``
decorator, together with its ports and default config:

    from threatstudio.node_api import node, Port, logger
"""
import copy
from contextvars import ContextVar, Token
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


# --- Port definition ---

@dataclass
class Port:
    """Defines an input or output port on a node."""
    name: str
    type: str  # "diagram_data", "text_data", "findings_data"


# --- Node registry (filled by @node decorator) ---

_NODE_REGISTRY: dict = {}
_EXECUTORS: dict = {}


def node(
    kind: str,
    label: str,
    category: str,
    description: str = "",
    ports_in: List[Port] = None,
    ports_out: List[Port] = None,
    default_config: Dict[str, Any] = None,
):
    """Decorator to register a function as the handler for a node kind.

    Usage:
        @node(
            kind="input-text",
            label="Text Input",
            category="INPUT",
            ports_out=[Port("text_data", "text_data")],
            default_config={"system_name": ""},
        )
        async def input_text(node, inputs, context):
            return {"type": "text", ...}
    """
    ports_in = ports_in or []
    ports_out = ports_out or []

    def decorator(func: Callable) -> Callable:
        spec = {
            "kind": kind,
            "label": label,
            "category": category,
            "description": description,
            "inputs": [{"name": p.name, "type": p.type} for p in ports_in],
            "outputs": [{"name": p.name, "type": p.type} for p in ports_out],
            "default_config": dict(default_config or {}),
        }
        _NODE_REGISTRY[kind] = spec
        _EXECUTORS[kind] = func
        func._node_spec = spec
        return func

    return decorator


def get_registry() -> dict:
    """Return a copy of the node registry."""
    return dict(_NODE_REGISTRY)


def get_executors() -> dict:
    """Return a copy of the handler functions."""
    return dict(_EXECUTORS)


def get_node_spec(kind: str) -> Optional[dict]:
    return _NODE_REGISTRY.get(kind)


def default_config(kind: str) -> Dict[str, Any]:
    """Fresh default config for a kind (deep-copied so nodes never share it)."""
    spec = _NODE_REGISTRY.get(kind)
    if spec is None:
        return {}
    return copy.deepcopy(spec["default_config"])


def port_type(kind: str, port_name: str, direction: str) -> Optional[str]:
    """Look up a port's type tag. direction is "inputs" or "outputs"."""
    spec = _NODE_REGISTRY.get(kind)
    if spec is None:
        return None
    for port in spec[direction]:
        if port["name"] == port_name:
            return port["type"]
    return None


# --- Logger ---

class NodeLogger:
    """Logger that tags messages with node context.

    Executor sets context before each node runs, clears after.
    Handlers just call logger.info(), logger.debug(), etc.
    The context lives in a ContextVar, so each asyncio task sees its own
    node even while a cancelled run is still finishing.
    """

    def __init__(self):
        self._context: ContextVar = ContextVar("node_log_context", default=None)

    def _set_context(self, node_id: str, node_kind: str, handler: Callable) -> Token:
        return self._context.set((node_id, node_kind, handler))

    def _clear_context(self, token: Token):
        self._context.reset(token)

    def _emit(self, level: str, message: str):
        context = self._context.get()
        if context is not None:
            node_id, node_kind, handler = context
            handler(level, node_id, node_kind, message)
        else:
            print(f"[{level}] {message}")

    def debug(self, message: str):
        self._emit("DEBUG", message)

    def info(self, message: str):
        self._emit("INFO", message)

    def warn(self, message: str):
        self._emit("WARN", message)

    def error(self, message: str):
        self._emit("ERROR", message)


# Singleton logger instance - node handlers import and use this directly
logger = NodeLogger()
