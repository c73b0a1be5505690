# modgraph/graph.py

from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import CycleDetectedError

_node_ids = itertools.count()

_VISITING = 1
_DONE = 2


@dataclass(frozen=True)
class Edge:
    """
    Directed edge to ``node``.

    ``slot`` is the positional argument the edge supplies: in the declared
    (backward) orientation it is the producer's position among the consumer's
    inputs, and reversal keeps it unchanged.
    """

    node: "Node"
    slot: int


class Node:
    """
    Graph vertex.

    Responsibilities:
      - Carry a process-unique integer id used to key per-call buffers.
      - Hold the user-declared wiring: ``children`` lists the producers this
        node consumes, in argument order.
    """

    kind = "node"

    def __init__(self, name: Optional[str] = None) -> None:
        self.id: int = next(_node_ids)
        self.name = name
        self.children: List[Edge] = []

    def add(self, child: "Node", slot: Optional[int] = None) -> Edge:
        """
        Declare that this node consumes ``child``'s value as argument ``slot``
        (defaults to the next free position).
        """
        edge = Edge(child, len(self.children) if slot is None else int(slot))
        self.children.append(edge)
        return edge

    @property
    def inputs(self) -> List["Node"]:
        return [edge.node for edge in self.children]

    def label(self) -> str:
        return f"{self.id}:{self.name or self.kind}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.label()!r})"


class ModuleNode(Node):
    """Node wrapping a differentiable module."""

    kind = "module"

    def __init__(self, module, name: Optional[str] = None) -> None:
        super().__init__(name=name)
        self.module = module

    def label(self) -> str:
        return f"{self.id}:{self.name or type(self.module).__name__}"


class PassThroughNode(Node):
    """Plain data placeholder: forwards its value (and gradient) unchanged."""

    kind = "input"


class DispatchNode(Node):
    """Distributes a positional sequence of values across its children."""

    kind = "dispatch"

    def position(self, edge: Edge) -> int:
        raise NotImplementedError


class SourceNode(DispatchNode):
    """Synthetic entry point; one edge per declared graph input."""

    kind = "source"

    def __init__(self, targets: Sequence[Node]) -> None:
        super().__init__()
        self.targets: List[Node] = list(targets)
        self.positions: Dict[int, int] = {node.id: i for i, node in enumerate(self.targets)}

    def position(self, edge: Edge) -> int:
        return self.positions[edge.node.id]


class SinkNode(DispatchNode):
    """Synthetic exit point; one edge per declared graph output."""

    kind = "sink"

    def position(self, edge: Edge) -> int:
        return edge.slot


def Input(name: Optional[str] = None) -> PassThroughNode:
    """Create a placeholder node to declare as a graph input."""
    return PassThroughNode(name=name)


class Graph:
    """
    Set of nodes reachable from a set of roots, with ordered out-edges.

    Edges are owned by the graph rather than the nodes, so the same node
    objects can take part in a graph and in its reversal.
    """

    def __init__(self, nodes: Iterable[Node], edges: Dict[int, List[Edge]]) -> None:
        self.nodes: List[Node] = list(nodes)
        self._index: Dict[int, Node] = {node.id: node for node in self.nodes}
        self._edges: Dict[int, List[Edge]] = {
            node.id: list(edges.get(node.id, ())) for node in self.nodes
        }
        self._parents: Optional[Dict[int, List[Edge]]] = None

    @classmethod
    def from_roots(
        cls,
        roots: Sequence[Node],
        children_of: Optional[Callable[[Node], Sequence[Edge]]] = None,
    ) -> "Graph":
        """
        Collect every node reachable from ``roots`` by breadth-first traversal.

        Args:
          roots: Starting nodes.
          children_of: Out-edges of a node; defaults to ``node.children``.
        """
        children_of = children_of or (lambda node: node.children)
        nodes: List[Node] = []
        edges: Dict[int, List[Edge]] = {}
        queue = deque(roots)
        while queue:
            node = queue.popleft()
            if node.id in edges:
                continue
            out = list(children_of(node))
            edges[node.id] = out
            nodes.append(node)
            for edge in out:
                if edge.node.id not in edges:
                    queue.append(edge.node)
        return cls(nodes, edges)

    # ------------------------------------------------------------------ queries
    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def __contains__(self, node: object) -> bool:
        return isinstance(node, Node) and self._index.get(node.id) is node

    def children(self, node: Node) -> List[Edge]:
        return self._edges[node.id]

    def parents(self, node: Node) -> List[Edge]:
        """In-edges of ``node`` as ``Edge(parent, slot)``, in declaration order."""
        if self._parents is None:
            parents: Dict[int, List[Edge]] = {n.id: [] for n in self.nodes}
            for parent in self.nodes:
                for edge in self._edges[parent.id]:
                    parents[edge.node.id].append(Edge(parent, edge.slot))
            self._parents = parents
        return self._parents[node.id]

    def roots(self) -> List[Node]:
        return [node for node in self.nodes if not self.parents(node)]

    def leaves(self) -> List[Node]:
        return [node for node in self.nodes if not self._edges[node.id]]

    def edge_list(self) -> List[Tuple[Node, Node, int]]:
        return [
            (node, edge.node, edge.slot)
            for node in self.nodes
            for edge in self._edges[node.id]
        ]

    # -------------------------------------------------------------- traversals
    def reverse(self) -> "Graph":
        """Flip every edge, keeping slots, node objects and node order."""
        flipped: Dict[int, List[Edge]] = {node.id: [] for node in self.nodes}
        for node in self.nodes:
            for edge in self._edges[node.id]:
                flipped[edge.node.id].append(Edge(node, edge.slot))
        return Graph(self.nodes, flipped)

    def bfs(self, start: Node) -> List[Node]:
        """Nodes reachable from ``start`` in breadth-first order."""
        seen = {start.id}
        order: List[Node] = []
        queue = deque([start])
        while queue:
            node = queue.popleft()
            order.append(node)
            for edge in self._edges[node.id]:
                if edge.node.id not in seen:
                    seen.add(edge.node.id)
                    queue.append(edge.node)
        return order

    def topsort(self) -> List[Node]:
        """
        Order nodes so that for every edge A→B, A comes before B.

        Depth-first from each leaf over parent edges, emitting a node once all
        of its parents are emitted.
        """
        state: Dict[int, int] = {}
        order: List[Node] = []
        for leaf in self.leaves():
            if leaf.id in state:
                continue
            state[leaf.id] = _VISITING
            stack = [(leaf, iter(self.parents(leaf)))]
            while stack:
                node, pending = stack[-1]
                for edge in pending:
                    mark = state.get(edge.node.id)
                    if mark == _VISITING:
                        raise CycleDetectedError(
                            f"Cycle detected through {edge.node.label()} -> {node.label()}"
                        )
                    if mark is None:
                        state[edge.node.id] = _VISITING
                        stack.append((edge.node, iter(self.parents(edge.node))))
                        break
                else:
                    stack.pop()
                    state[node.id] = _DONE
                    order.append(node)
        if len(order) != len(self.nodes):
            unordered = [node.label() for node in self.nodes if node.id not in state]
            raise CycleDetectedError(f"Graph has cycles; could not order {unordered}")
        return order

    # ------------------------------------------------------------------ export
    def to_dot(self, title: str = "G") -> str:
        """Render the graph in Graphviz DOT syntax."""
        lines = [f"digraph {title} {{"]
        for node in self.nodes:
            lines.append(f'  n{node.id} [label="{node.label()}"];')
        for src, dst, slot in self.edge_list():
            lines.append(f'  n{src.id} -> n{dst.id} [label="{slot}"];')
        lines.append("}")
        return "\n".join(lines)
