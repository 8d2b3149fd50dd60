"""
Workflow Graph

Workflow definition: nodes plus handle-named edges, with structural
validation performed before any node runs.
"""

from collections import defaultdict, deque
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from nodeflow.exceptions import NodeConfigError, ValidationError
from .nodes import LoopEndConfig, Node, NodeType


class Edge(BaseModel):
    """
    Directed connection ``(source, source_handle) -> (target, target_handle)``.

    The value a source node produced under ``source_handle`` is delivered to
    the target under ``target_handle`` (defaults to the source handle).
    An edge without a source handle carries no value, only ordering.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str = ""
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        source_handle = data.get("source_handle", data.get("sourceHandle"))
        if data.get("target_handle") is None and data.get("targetHandle") is None:
            data["target_handle"] = source_handle
        if not data.get("id"):
            target_handle = data.get("target_handle", data.get("targetHandle"))
            data["id"] = (
                f"{data.get('source')}:{source_handle or ''}"
                f"->{data.get('target')}:{target_handle or ''}"
            )
        return data


class Workflow(BaseModel):
    """
    Workflow definition.

    Holds an ordered list of nodes, the edges between them, default input
    variables and free-form configuration. Indexes used by the executor are
    built lazily and reset whenever the graph is modified.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    name: str = ""
    description: str = ""
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)

    _node_index: Optional[Dict[str, Node]] = PrivateAttr(default=None)
    _incoming: Optional[Dict[str, List[Edge]]] = PrivateAttr(default=None)
    _outgoing: Optional[Dict[str, List[Edge]]] = PrivateAttr(default=None)

    # -------------------------------------------------------------------------
    # Building
    # -------------------------------------------------------------------------

    def add_node(self, node: Node) -> None:
        """Add a node to the workflow."""
        self.nodes.append(node)
        self._reset_index()

    def add_edge(
        self,
        source: str,
        target: str,
        source_handle: Optional[str] = None,
        target_handle: Optional[str] = None,
    ) -> Edge:
        """Add an edge between two existing nodes."""
        if self.get_node(source) is None:
            raise ValueError(f"Source node not found: {source}")
        if self.get_node(target) is None:
            raise ValueError(f"Target node not found: {target}")

        edge = Edge(
            source=source,
            target=target,
            source_handle=source_handle,
            target_handle=target_handle,
        )
        self.edges.append(edge)
        self._reset_index()
        return edge

    def _reset_index(self) -> None:
        self._node_index = None
        self._incoming = None
        self._outgoing = None

    def _build_index(self) -> None:
        self._node_index = {}
        for node in self.nodes:
            self._node_index.setdefault(node.id, node)

        incoming: Dict[str, List[Edge]] = defaultdict(list)
        outgoing: Dict[str, List[Edge]] = defaultdict(list)
        for edge in self.edges:
            incoming[edge.target].append(edge)
            outgoing[edge.source].append(edge)
        self._incoming = dict(incoming)
        self._outgoing = dict(outgoing)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_node(self, node_id: str) -> Optional[Node]:
        """Get a node by ID."""
        if self._node_index is None:
            self._build_index()
        return self._node_index.get(node_id)

    def incoming_edges(self, node_id: str) -> List[Edge]:
        if self._incoming is None:
            self._build_index()
        return self._incoming.get(node_id, [])

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        if self._outgoing is None:
            self._build_index()
        return self._outgoing.get(node_id, [])

    def get_next_nodes(self, node_id: str) -> List[str]:
        """Distinct downstream node IDs in edge order."""
        seen: List[str] = []
        for edge in self.outgoing_edges(node_id):
            if edge.target not in seen:
                seen.append(edge.target)
        return seen

    def get_entry_nodes(self) -> List[Node]:
        """Nodes flagged as entry points, in definition order."""
        return [node for node in self.nodes if node.is_entry]

    def get_sink_nodes(self) -> List[Node]:
        """Nodes without outgoing edges."""
        return [node for node in self.nodes if not self.outgoing_edges(node.id)]

    def get_loop_end(self, loop_start_id: str) -> Optional[str]:
        """Find the loopEnd node paired with a loopStart node."""
        for node in self.nodes:
            if node.type != NodeType.LOOP_END.value:
                continue
            config = node.config
            if isinstance(config, LoopEndConfig) and config.loop_start_id == loop_start_id:
                return node.id
        return None

    def get_loop_body(self, loop_start_id: str) -> Set[str]:
        """
        Nodes executed once per iteration of a loop.

        Everything reachable from the loop start without passing its
        loop end, plus the loop end itself.
        """
        loop_end_id = self.get_loop_end(loop_start_id)
        body: Set[str] = set()
        queue = deque(self.get_next_nodes(loop_start_id))

        while queue:
            node_id = queue.popleft()
            if node_id in body or node_id == loop_start_id:
                continue
            body.add(node_id)
            if node_id == loop_end_id:
                continue
            queue.extend(self.get_next_nodes(node_id))

        return body

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validation_errors(self) -> List[str]:
        """
        Validate the workflow structure.

        Returns:
            List of validation error messages (empty if valid)
        """
        if not self.nodes:
            return ["workflow has no nodes"]

        errors: List[str] = []

        if not self.get_entry_nodes():
            errors.append("no entry nodes found in workflow")

        seen: Set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(f"duplicate node id: {node.id}")
            seen.add(node.id)

        for edge in self.edges:
            for node_id in (edge.source, edge.target):
                if node_id not in seen:
                    errors.append(f"edge references unknown node: {node_id}")

        if errors:
            return errors

        if self._has_cycle():
            errors.append("workflow contains a cycle")
            return errors

        errors.extend(self._loop_errors())
        return errors

    def validate_definition(self) -> None:
        """
        Raise on the first structural problem.

        Raises:
            ValidationError: If the workflow cannot be executed
        """
        errors = self.validation_errors()
        if errors:
            raise ValidationError(errors[0], details={"errors": errors, "workflow_id": self.id})

    def _has_cycle(self) -> bool:
        in_degree: Dict[str, int] = {node.id: 0 for node in self.nodes}
        for edge in self.edges:
            in_degree[edge.target] += 1

        queue = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
        visited = 0

        while queue:
            node_id = queue.popleft()
            visited += 1
            for edge in self.outgoing_edges(node_id):
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    queue.append(edge.target)

        return visited != len(in_degree)

    def _loop_errors(self) -> List[str]:
        errors = []
        for node in self.nodes:
            if node.type == NodeType.LOOP_END.value:
                ref = node.config.loop_start_id
                start = self.get_node(ref)
                if start is None or start.type != NodeType.LOOP_START.value:
                    errors.append(f"loop end {node.id} references unknown loop start: {ref}")
                elif node.id not in self.get_loop_body(ref):
                    errors.append(f"loop end {node.id} is not reachable from loop start {ref}")
            elif node.type == NodeType.LOOP_START.value:
                if self.get_loop_end(node.id) is None:
                    errors.append(f"loop start {node.id} has no matching loop end")
        return errors

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase wire format."""
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Workflow":
        """
        Build a workflow from its wire format.

        Raises:
            ValidationError: If a node or edge definition is malformed
        """
        nodes = []
        for raw in data.get("nodes") or []:
            try:
                nodes.append(Node.model_validate(raw))
            except PydanticValidationError as e:
                node_id = raw.get("id") if isinstance(raw, dict) else None
                first = e.errors()[0]
                raise NodeConfigError(node_id, first["msg"], e.errors(include_url=False))

        edges = []
        for raw in data.get("edges") or []:
            try:
                edges.append(Edge.model_validate(raw))
            except PydanticValidationError as e:
                raise ValidationError(
                    f"invalid edge definition: {e.errors()[0]['msg']}",
                    details={"errors": e.errors(include_url=False)},
                )

        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            description=data.get("description", ""),
            nodes=nodes,
            edges=edges,
            variables=data.get("variables") or {},
            config=data.get("config") or {},
        )


def build_linear_workflow(
    nodes: List[Dict[str, Any]],
    workflow_id: str = "chain",
    handle: Optional[str] = None,
) -> Workflow:
    """
    Build a sequential chain of nodes.

    The first node is the entry, the last one is flagged as output, and
    consecutive nodes are joined by an edge on ``handle``.
    """
    workflow = Workflow(id=workflow_id, name=f"Chain-{workflow_id}")

    prev_id = None
    for i, node_config in enumerate(nodes):
        node_config = dict(node_config)
        node_config.setdefault("id", f"node_{i}")
        node_config.setdefault("name", f"Step {i + 1}")
        if i == 0:
            node_config.setdefault("is_entry", True)
        if i == len(nodes) - 1:
            node_config.setdefault("is_output", True)

        node = Node(**node_config)
        workflow.add_node(node)

        if prev_id:
            workflow.add_edge(prev_id, node.id, source_handle=handle)
        prev_id = node.id

    return workflow
