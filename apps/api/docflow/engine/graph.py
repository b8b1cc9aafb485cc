"""Agent dependency graph and its validators.

The graph is an immutable value built once per request (or per compile) from
the agent and connection records, then handed to pure functions:

- would_create_cycle: can edge (s, t) be inserted without closing a cycle?
- detect_cycle: whole-graph acyclicity check (three-colour DFS)
- compute_levels: topological level of every node
- validate_graph: cycle check plus root/terminal sanity checks

All traversals are iterative, so deep pipelines never hit the recursion limit.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol


Edge = tuple[str, str]


class _AgentRecord(Protocol):
    id: str
    is_active: bool


class _ConnectionRecord(Protocol):
    source_agent_id: str
    target_agent_id: str
    is_active: bool


def _freeze(adjacency: dict[str, list[str]]) -> Mapping[str, tuple[str, ...]]:
    return MappingProxyType({node: tuple(targets) for node, targets in adjacency.items()})


@dataclass(frozen=True)
class AgentGraph:
    """Directed graph over agent ids.

    Edges whose endpoints are not nodes are dropped, as are duplicate edges,
    so the adjacency maps always describe a simple graph over `nodes`.
    """

    nodes: tuple[str, ...]
    edges: tuple[Edge, ...]
    _incoming: Mapping[str, tuple[str, ...]] = field(init=False, repr=False, compare=False)
    _outgoing: Mapping[str, tuple[str, ...]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        nodes = tuple(dict.fromkeys(self.nodes))
        known = set(nodes)
        incoming: dict[str, list[str]] = {node: [] for node in nodes}
        outgoing: dict[str, list[str]] = {node: [] for node in nodes}
        kept: list[Edge] = []
        for source, target in dict.fromkeys(self.edges):
            if source not in known or target not in known:
                continue
            kept.append((source, target))
            outgoing[source].append(target)
            incoming[target].append(source)

        object.__setattr__(self, "nodes", nodes)
        object.__setattr__(self, "edges", tuple(kept))
        object.__setattr__(self, "_incoming", _freeze(incoming))
        object.__setattr__(self, "_outgoing", _freeze(outgoing))

    @classmethod
    def from_records(
        cls,
        agents: Iterable[_AgentRecord],
        connections: Iterable[_ConnectionRecord],
        *,
        active_only: bool = True,
    ) -> AgentGraph:
        """Build the graph from persisted agents and connections."""
        nodes = tuple(a.id for a in agents if a.is_active or not active_only)
        edges = tuple(
            (c.source_agent_id, c.target_agent_id)
            for c in connections
            if c.is_active or not active_only
        )
        return cls(nodes=nodes, edges=edges)

    @property
    def incoming(self) -> Mapping[str, tuple[str, ...]]:
        return self._incoming

    @property
    def outgoing(self) -> Mapping[str, tuple[str, ...]]:
        return self._outgoing

    def predecessors(self, node: str) -> tuple[str, ...]:
        return self._incoming.get(node, ())

    def successors(self, node: str) -> tuple[str, ...]:
        return self._outgoing.get(node, ())

    def roots(self) -> list[str]:
        """Nodes with no incoming edge."""
        return [n for n in self.nodes if not self._incoming[n]]

    def terminals(self) -> list[str]:
        """Nodes with no outgoing edge."""
        return [n for n in self.nodes if not self._outgoing[n]]


def would_create_cycle(source_id: str, target_id: str, edges: Iterable[Edge]) -> bool:
    """Return True if adding source -> target would close a cycle.

    Walks forward from the target over the existing edges; reaching the
    source means a path target ~> source already exists.
    """
    if source_id == target_id:
        return True

    outgoing: dict[str, list[str]] = {}
    for source, target in edges:
        outgoing.setdefault(source, []).append(target)

    visited: set[str] = set()
    queue: deque[str] = deque([target_id])
    while queue:
        current = queue.popleft()
        if current == source_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        queue.extend(outgoing.get(current, ()))
    return False


_WHITE, _GRAY, _BLACK = 0, 1, 2


def detect_cycle(graph: AgentGraph) -> bool:
    """Three-colour DFS; a back edge to a gray node is a cycle."""
    colors = {node: _WHITE for node in graph.nodes}

    for start in graph.nodes:
        if colors[start] != _WHITE:
            continue
        colors[start] = _GRAY
        stack = [(start, iter(graph.successors(start)))]
        while stack:
            node, neighbours = stack[-1]
            neighbour = next(neighbours, None)
            if neighbour is None:
                colors[node] = _BLACK
                stack.pop()
                continue
            color = colors[neighbour]
            if color == _GRAY:
                return True
            if color == _WHITE:
                colors[neighbour] = _GRAY
                stack.append((neighbour, iter(graph.successors(neighbour))))
    return False


def compute_levels(graph: AgentGraph) -> dict[str, int]:
    """Topological level of every node.

    level(n) = 0 for roots, else 1 + max(level(p) for p in predecessors(n)).
    A predecessor that is still being computed when it is reached again can
    only come from a cycle; it counts as level 0 instead of looping forever.
    """
    levels: dict[str, int] = {}
    in_progress: set[str] = set()

    for start in graph.nodes:
        if start in levels:
            continue
        stack: list[tuple[str, bool]] = [(start, False)]
        while stack:
            node, expanded = stack.pop()
            if node in levels:
                continue
            predecessors = graph.predecessors(node)
            if expanded:
                in_progress.discard(node)
                levels[node] = (
                    1 + max(levels.get(p, 0) for p in predecessors) if predecessors else 0
                )
                continue
            if node in in_progress:
                continue
            in_progress.add(node)
            stack.append((node, True))
            for predecessor in predecessors:
                if predecessor not in levels and predecessor not in in_progress:
                    stack.append((predecessor, False))
    return levels


def validate_graph(graph: AgentGraph) -> list[str]:
    """Human-readable problems that make the graph unusable for a run."""
    errors: list[str] = []
    if not graph.nodes:
        return errors

    has_cycle = detect_cycle(graph)
    if has_cycle:
        errors.append("The graph contains a cycle")
        return errors

    if not graph.roots():
        errors.append("No root agent found (every agent has an input)")
    if not graph.terminals():
        errors.append("No terminal agent found (every agent has an output)")
    return errors


def transitive_successors(start: str, successors: Mapping[str, Iterable[str]]) -> set[str]:
    """Every node reachable from `start`, excluding `start` itself."""
    reached: set[str] = set()
    queue: deque[str] = deque(successors.get(start, ()))
    while queue:
        node = queue.popleft()
        if node in reached or node == start:
            continue
        reached.add(node)
        queue.extend(successors.get(node, ()))
    return reached
