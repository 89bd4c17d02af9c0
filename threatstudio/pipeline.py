"""Pipeline graph model: nodes, connections, selection and undo history.

Every mutation is a History.set_state() updater over the current
PipelineSnapshot, so a node removal and the pruning of its connections
land in history as one step.
"""
import uuid
from typing import Dict, List, Optional

from threatstudio.config import Settings, get_settings
from threatstudio.history import History
from threatstudio.models import Connection, PipelineNode, PipelineSnapshot, Point
from threatstudio.node_api import default_config, get_node_spec, logger
from threatstudio.validator import validate_connection

DUPLICATE_OFFSET = Point(x=50, y=50)
IMMUTABLE_NODE_FIELDS = frozenset({"id", "kind", "inputs", "outputs"})


def generate_node_id() -> str:
    return f"node_{uuid.uuid4().hex[:12]}"


def generate_connection_id() -> str:
    return f"conn_{uuid.uuid4().hex[:12]}"


def _without_nodes(snapshot: PipelineSnapshot, node_ids: set) -> PipelineSnapshot:
    return PipelineSnapshot(
        nodes=[n for n in snapshot.nodes if n.id not in node_ids],
        connections=[
            c for c in snapshot.connections
            if c.source not in node_ids and c.target not in node_ids
        ],
    )


class PipelineEditor:
    """Editable pipeline graph with linear undo/redo."""

    def __init__(
        self,
        snapshot: Optional[PipelineSnapshot] = None,
        settings: Optional[Settings] = None,
    ):
        self.history: History[PipelineSnapshot] = History(snapshot or PipelineSnapshot())
        self.settings = settings or get_settings()
        self.selected_node_ids: List[str] = []
        self.selected_connection_id: Optional[str] = None

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> PipelineSnapshot:
        return self.history.present

    @property
    def nodes(self) -> List[PipelineNode]:
        return self.history.present.nodes

    @property
    def connections(self) -> List[Connection]:
        return self.history.present.connections

    def get_node(self, node_id: str) -> Optional[PipelineNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def add_node(self, kind: str, position: Point) -> Optional[str]:
        """Create a node with the kind's default config and select it.

        Unknown kinds are logged and ignored.
        """
        spec = get_node_spec(kind)
        if spec is None:
            logger.warn(f"Ignoring unknown node kind '{kind}'")
            return None

        config = default_config(kind)
        if "model_id" in config:
            config["model_id"] = self.settings.default_model_id

        new_node = PipelineNode(
            id=generate_node_id(),
            kind=kind,
            position=position,
            config=config,
            inputs=[p["name"] for p in spec["inputs"]],
            outputs=[p["name"] for p in spec["outputs"]],
        )
        self.history.set_state(lambda s: s.model_copy(update={"nodes": s.nodes + [new_node]}))
        self.selected_node_ids = [new_node.id]
        self.selected_connection_id = None
        return new_node.id

    def update_node(self, node_id: str, **fields) -> None:
        """Shallow-merge fields into a node. No-op for unknown ids.

        Identity and shape (id, kind, ports) cannot be changed.
        """
        fixed = IMMUTABLE_NODE_FIELDS.intersection(fields)
        if fixed:
            raise ValueError(f"Node fields cannot be updated: {', '.join(sorted(fixed))}")

        def updater(s: PipelineSnapshot) -> PipelineSnapshot:
            return s.model_copy(update={"nodes": [
                n.model_copy(update=fields) if n.id == node_id else n for n in s.nodes
            ]})

        self.history.set_state(updater)

    def update_node_config(self, node_id: str, updates: Dict) -> None:
        """Merge updates into a node's config."""
        current = self.get_node(node_id)
        if current is None:
            return
        self.update_node(node_id, config={**current.config, **updates})

    def delete_node(self, node_id: str) -> None:
        self.history.set_state(lambda s: _without_nodes(s, {node_id}))
        self.selected_node_ids = [i for i in self.selected_node_ids if i != node_id]
        self._prune_connection_selection()

    def delete_selected_nodes(self) -> None:
        """Delete the selected nodes (with their connections) or the selected connection."""
        if self.selected_connection_id is not None:
            self.delete_connection(self.selected_connection_id)
            return
        if not self.selected_node_ids:
            return
        doomed = set(self.selected_node_ids)
        self.history.set_state(lambda s: _without_nodes(s, doomed))
        self.selected_node_ids = []

    def duplicate_selected_nodes(self) -> List[str]:
        """Copy the selected nodes (not their connections) and select the copies."""
        originals = [n for n in self.nodes if n.id in set(self.selected_node_ids)]
        if not originals:
            return []

        copies = [
            n.model_copy(update={
                "id": generate_node_id(),
                "position": Point(
                    x=n.position.x + DUPLICATE_OFFSET.x,
                    y=n.position.y + DUPLICATE_OFFSET.y,
                ),
                "config": dict(n.config),
            })
            for n in originals
        ]
        self.history.set_state(lambda s: s.model_copy(update={"nodes": s.nodes + copies}))
        self.selected_node_ids = [c.id for c in copies]
        self.selected_connection_id = None
        return self.selected_node_ids

    def update_node_position(self, node_id: str, position: Point) -> None:
        self.update_multiple_node_positions({node_id: position})

    def update_multiple_node_positions(self, updates: Dict[str, Point]) -> None:
        """Move several nodes in one history step (multi-drag)."""
        def updater(s: PipelineSnapshot) -> PipelineSnapshot:
            return s.model_copy(update={"nodes": [
                n.model_copy(update={"position": updates[n.id]}) if n.id in updates else n
                for n in s.nodes
            ]})

        self.history.set_state(updater)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def add_connection(
        self, source: str, source_port: str, target: str, target_port: str
    ) -> Optional[str]:
        """Connect an output port to an input port.

        Self-loops and unknown endpoints are rejected outright. Otherwise the connection is kept
        even when its port types do not match (is_valid=False). An input
        port holds at most one connection: a new one replaces the old in
        place.
        """
        if source == target:
            logger.warn(f"Rejected self-loop on node '{source}'")
            return None
        if self.get_node(source) is None or self.get_node(target) is None:
            logger.warn(f"Rejected connection {source} -> {target}: unknown node")
            return None

        conn = Connection(
            id=generate_connection_id(),
            source=source,
            source_port=source_port,
            target=target,
            target_port=target_port,
            is_valid=validate_connection(source, source_port, target, target_port, self.nodes),
        )

        def updater(s: PipelineSnapshot) -> PipelineSnapshot:
            existing = [
                c for c in s.connections
                if c.target == target and c.target_port == target_port
            ]
            if existing:
                replaced = existing[0].id
                conns = [conn if c.id == replaced else c for c in s.connections]
            else:
                conns = s.connections + [conn]
            return s.model_copy(update={"connections": conns})

        self.history.set_state(updater)
        self._prune_connection_selection()
        return conn.id

    def delete_connection(self, connection_id: str) -> None:
        self.history.set_state(lambda s: s.model_copy(update={
            "connections": [c for c in s.connections if c.id != connection_id],
        }))
        if self.selected_connection_id == connection_id:
            self.selected_connection_id = None

    # ------------------------------------------------------------------
    # Selection (nodes and connections are mutually exclusive)
    # ------------------------------------------------------------------

    def select_node(self, node_id: str, multi_select: bool = False) -> None:
        self.selected_connection_id = None
        if multi_select:
            if node_id in self.selected_node_ids:
                self.selected_node_ids = [i for i in self.selected_node_ids if i != node_id]
            else:
                self.selected_node_ids = self.selected_node_ids + [node_id]
        else:
            self.selected_node_ids = [node_id]

    def select_multiple_nodes(self, node_ids: List[str]) -> None:
        self.selected_connection_id = None
        self.selected_node_ids = list(node_ids)

    def select_all_nodes(self) -> None:
        self.select_multiple_nodes([n.id for n in self.nodes])

    def select_connection(self, connection_id: str) -> None:
        self.selected_node_ids = []
        self.selected_connection_id = connection_id

    def clear_selection(self) -> None:
        self.selected_node_ids = []
        self.selected_connection_id = None

    def _prune_connection_selection(self) -> None:
        if self.selected_connection_id is None:
            return
        if not any(c.id == self.selected_connection_id for c in self.connections):
            self.selected_connection_id = None

    def _prune_selection(self) -> None:
        present = {n.id for n in self.nodes}
        self.selected_node_ids = [i for i in self.selected_node_ids if i in present]
        self._prune_connection_selection()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def undo(self) -> None:
        self.history.undo()
        self._prune_selection()

    def redo(self) -> None:
        self.history.redo()
        self._prune_selection()

    def handle_shortcut(self, key: str, ctrl: bool = False, shift: bool = False) -> bool:
        """Apply an editor keyboard shortcut. ctrl means Ctrl or Cmd.

        Returns True when the key combination was handled.
        """
        key = key.lower()
        if ctrl:
            if key == "z" and shift:
                if self.can_redo:
                    self.redo()
                return True
            if key == "z":
                if self.can_undo:
                    self.undo()
                return True
            if key == "y":
                if self.can_redo:
                    self.redo()
                return True
            if key == "a":
                self.select_all_nodes()
                return True
            if key == "d":
                self.duplicate_selected_nodes()
                return True
            return False
        if key in ("delete", "backspace"):
            self.delete_selected_nodes()
            return True
        if key == "escape":
            self.clear_selection()
            return True
        return False
