# /flowbot/models/flow.py

from enum import Enum
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, timezone
from pydantic import BaseModel, Field, ConfigDict, PrivateAttr


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlowStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class FlowMode(str, Enum):
    CHATBOT = "chatbot"
    CAMPAIGN = "campaign"


class FlowNode(BaseModel):
    """A single step of a flow. `data` is the type-specific payload from the editor."""
    id: str = Field(..., description="Node id, unique within the flow")
    type: str = Field(..., description="Executor tag")
    data: Dict[str, Any] = Field(default_factory=dict)
    position: Optional[Dict[str, float]] = Field(default=None, description="Editor canvas position, ignored by the engine")

    model_config = ConfigDict(frozen=True)

    @property
    def label(self) -> str:
        return self.data.get("label") or self.id


class FlowEdge(BaseModel):
    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    target_handle: Optional[str] = Field(default=None, alias="targetHandle")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class FlowGraph:
    """
    Read-only, pre-indexed view over a flow's nodes and edges.

    Nodes live in a flat list and are addressed by position; edges are indexed
    by source id and by (source id, handle). Lookups never raise: a missing
    node or a dangling edge yields None or an empty list so that the
    validator can report it and execution can halt cleanly.
    """

    OUTPUT_HANDLE = "output"
    FALLBACK_HANDLE = "fallback"

    def __init__(self, nodes: List[FlowNode], edges: List[FlowEdge]):
        self.nodes: Tuple[FlowNode, ...] = tuple(nodes)
        self.edges: Tuple[FlowEdge, ...] = tuple(edges)
        self._index: Dict[str, int] = {}
        self.duplicate_ids: List[str] = []
        for position, node in enumerate(self.nodes):
            if node.id in self._index:
                self.duplicate_ids.append(node.id)
                continue
            self._index[node.id] = position

        self._outgoing: Dict[str, List[FlowEdge]] = {}
        self._incoming: Dict[str, List[FlowEdge]] = {}
        self._by_handle: Dict[Tuple[str, str], FlowEdge] = {}
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)
            self._incoming.setdefault(edge.target, []).append(edge)
            if edge.source_handle is not None:
                # First edge wins when a handle is wired twice.
                self._by_handle.setdefault((edge.source, edge.source_handle), edge)

        self._start_ids = [node.id for node in self.nodes if node.type == "start"]

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._index

    def __len__(self) -> int:
        return len(self.nodes)

    def index_of(self, node_id: str) -> Optional[int]:
        return self._index.get(node_id)

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if node_id is None:
            return None
        position = self._index.get(node_id)
        return self.nodes[position] if position is not None else None

    def start_nodes(self) -> List[FlowNode]:
        return [self.nodes[self._index[node_id]] for node_id in self._start_ids]

    def start_node(self) -> Optional[FlowNode]:
        return self.get_node(self._start_ids[0]) if self._start_ids else None

    def outgoing(self, node_id: str, handle: Optional[str] = None) -> List[FlowEdge]:
        edges = self._outgoing.get(node_id, [])
        if handle is None:
            return list(edges)
        return [edge for edge in edges if edge.source_handle == handle]

    def incoming(self, node_id: str) -> List[FlowEdge]:
        return list(self._incoming.get(node_id, []))

    def edge_by_handle(self, node_id: str, handle: Optional[str]) -> Optional[FlowEdge]:
        if handle is None:
            return None
        return self._by_handle.get((node_id, handle))

    def default_edge(self, node_id: str) -> Optional[FlowEdge]:
        """The edge a node follows when it has no branching decision to make."""
        edges = self._outgoing.get(node_id)
        if not edges:
            return None
        by_output = self._by_handle.get((node_id, self.OUTPUT_HANDLE))
        if by_output:
            return by_output
        for edge in edges:
            if edge.source_handle is None:
                return edge
        return edges[0]

    def fallback_edge(self, node_id: str) -> Optional[FlowEdge]:
        return self._by_handle.get((node_id, self.FALLBACK_HANDLE))

    def target_of(self, edge: Optional[FlowEdge]) -> Optional[str]:
        return edge.target if edge else None

    def adjacency(self) -> List[List[int]]:
        """Index-based adjacency list; edges touching unknown nodes are left out."""
        adjacency: List[List[int]] = [[] for _ in self.nodes]
        for edge in self.edges:
            source = self._index.get(edge.source)
            target = self._index.get(edge.target)
            if source is None or target is None:
                continue
            adjacency[source].append(target)
        return adjacency

    def dangling_edges(self) -> List[FlowEdge]:
        return [edge for edge in self.edges if edge.source not in self._index or edge.target not in self._index]


class Flow(BaseModel):
    """A published or draft flow definition, as stored in the `flows` collection."""
    id: str
    name: str = ""
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)
    status: FlowStatus = FlowStatus.DRAFT
    mode: FlowMode = FlowMode.CHATBOT
    trigger: Optional[Dict[str, Any]] = None
    is_active: bool = True
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)

    _graph: Optional[FlowGraph] = PrivateAttr(default=None)

    @property
    def graph(self) -> FlowGraph:
        if self._graph is None:
            self._graph = FlowGraph(self.nodes, self.edges)
        return self._graph


