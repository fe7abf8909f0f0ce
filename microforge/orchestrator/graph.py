"""Dependency graph for local orchestration.

Builds a DAG from the manifest's services and infrastructure and groups the
nodes into start waves: wave 0 holds nodes without dependencies, and every
other node lands one wave after its deepest dependency. Starting wave by wave
guarantees that a node only starts once everything it requires is ready;
shutdown walks the same order backwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from microforge.errors import CycleError, UnknownReferenceError
from microforge.manifest.models import (
    InfrastructureDescriptor,
    Manifest,
    NodeDescriptor,
    ServiceDescriptor,
)

logger = logging.getLogger(__name__)


@dataclass
class GraphNode:
    """A service or infrastructure node with resolved edges.

    Attributes:
        descriptor: The manifest entry this node was built from
        dependencies: Canonical names of the nodes that must be ready first
        dependents: Canonical names of the nodes that require this one
        wave: Start wave (0 for nodes without dependencies)
        index: Position in declaration order
    """
    descriptor: NodeDescriptor
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    wave: int = 0
    index: int = 0

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def is_service(self) -> bool:
        return isinstance(self.descriptor, ServiceDescriptor)

    @property
    def is_infrastructure(self) -> bool:
        return isinstance(self.descriptor, InfrastructureDescriptor)

    def __repr__(self) -> str:
        return f"GraphNode({self.name}, wave={self.wave}, deps={self.dependencies})"


class DependencyGraph:
    """Acyclic start graph with wave grouping.

    Build one with :func:`build_graph`. The graph is derived data: it is
    rebuilt from the manifest for every run and never persisted.
    """

    def __init__(self, nodes: list[GraphNode]) -> None:
        self._nodes: dict[str, GraphNode] = {n.name.lower(): n for n in nodes}
        self._ordered = list(nodes)

    # -- Lookup ------------------------------------------------------------

    def __iter__(self) -> Iterator[GraphNode]:
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._nodes

    @property
    def nodes(self) -> list[GraphNode]:
        """Nodes in declaration order (infrastructure first)."""
        return list(self._ordered)

    def node(self, name: str) -> GraphNode:
        """Get a node by name (case-insensitive).

        Raises:
            UnknownReferenceError: If no node has that name.
        """
        try:
            return self._nodes[name.lower()]
        except KeyError:
            raise UnknownReferenceError(
                f"'{name}' is not a registered service or infrastructure node",
                reference=name,
            ) from None

    def dependencies_of(self, name: str) -> list[str]:
        return list(self.node(name).dependencies)

    def dependents_of(self, name: str) -> list[str]:
        return list(self.node(name).dependents)

    # -- Orderings ---------------------------------------------------------

    @property
    def waves(self) -> list[list[GraphNode]]:
        """Nodes grouped by wave; declaration order within a wave."""
        if not self._ordered:
            return []
        grouped: list[list[GraphNode]] = [[] for _ in range(self.max_wave + 1)]
        for node in self._ordered:
            grouped[node.wave].append(node)
        return grouped

    @property
    def max_wave(self) -> int:
        return max((n.wave for n in self._ordered), default=0)

    @property
    def order(self) -> list[GraphNode]:
        """Start order: dependencies always precede their dependents."""
        return [node for wave in self.waves for node in wave]

    @property
    def reverse_order(self) -> list[GraphNode]:
        """Stop order: dependents always precede their dependencies."""
        return list(reversed(self.order))

    # -- Derived graphs ----------------------------------------------------

    def subgraph(self, names: Iterable[str]) -> "DependencyGraph":
        """The named nodes plus everything they transitively depend on.

        Raises:
            UnknownReferenceError: If a name is not in the graph.
        """
        keep: set[str] = set()
        stack = [self.node(name).name for name in names]
        while stack:
            current = stack.pop()
            if current.lower() in keep:
                continue
            keep.add(current.lower())
            stack.extend(self.node(current).dependencies)

        descriptors = [n.descriptor for n in self._ordered if n.name.lower() in keep]
        return _assemble(descriptors)

    def describe(self) -> list[tuple[int, list[str]]]:
        """``(wave, [names])`` pairs, convenient for printing."""
        return [(i, [n.name for n in wave]) for i, wave in enumerate(self.waves)]


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def build_graph(manifest: Manifest) -> DependencyGraph:
    """Build the start graph for every node in *manifest*.

    Raises:
        UnknownReferenceError: A dependency names an unregistered node.
        CycleError: The dependencies form a cycle; ``cycle`` holds the full
            path, first node repeated at the end.
    """
    graph = _assemble(list(manifest.iter_nodes()))
    logger.debug(
        "Built dependency graph: %d nodes in %d wave(s)", len(graph), len(graph.waves)
    )
    return graph


def _assemble(descriptors: list[NodeDescriptor]) -> DependencyGraph:
    nodes: dict[str, GraphNode] = {}
    for descriptor in descriptors:
        key = descriptor.name.lower()
        if key in nodes:
            # Shared infrastructure declared twice collapses into one node.
            continue
        nodes[key] = GraphNode(descriptor=descriptor, index=len(nodes))

    for node in nodes.values():
        for dep in node.descriptor.dependencies:
            target = nodes.get(dep.lower())
            if target is None:
                raise UnknownReferenceError(
                    f"'{node.name}' depends on '{dep}', which is not a registered "
                    f"service or infrastructure node",
                    reference=dep,
                    referrer=node.name,
                )
            if target.name not in node.dependencies:
                node.dependencies.append(target.name)
                target.dependents.append(node.name)

    _check_cycles(nodes)
    _assign_waves(nodes)
    return DependencyGraph(list(nodes.values()))


def _check_cycles(nodes: dict[str, GraphNode]) -> None:
    """Depth-first search with an explicit recursion stack."""
    done: set[str] = set()
    on_stack: dict[str, int] = {}
    path: list[str] = []

    def visit(key: str) -> None:
        on_stack[key] = len(path)
        path.append(nodes[key].name)
        for dep in nodes[key].dependencies:
            dep_key = dep.lower()
            if dep_key in on_stack:
                raise CycleError(path[on_stack[dep_key]:] + [nodes[dep_key].name])
            if dep_key not in done:
                visit(dep_key)
        path.pop()
        del on_stack[key]
        done.add(key)

    for key in nodes:
        if key not in done:
            visit(key)


def _assign_waves(nodes: dict[str, GraphNode]) -> None:
    memo: dict[str, int] = {}

    def wave_of(key: str) -> int:
        if key not in memo:
            deps = nodes[key].dependencies
            memo[key] = 1 + max(wave_of(d.lower()) for d in deps) if deps else 0
        return memo[key]

    for key, node in nodes.items():
        node.wave = wave_of(key)
