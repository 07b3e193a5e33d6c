"""Dependency graph over declared resources."""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Mapping, Set

import networkx as nx

from ..errors import CycleError, DuplicateIdError, UnknownDependencyError
from ..models import ResourceKind, ResourceNode


class ResourceGraph:
    """DAG of resource nodes; an edge ``A -> B`` means A must converge before B."""

    def __init__(self, nodes: Mapping[str, ResourceNode], digraph: nx.DiGraph) -> None:
        self._nodes = dict(nodes)
        self._graph = digraph
        self._order = self._compute_order()

    # ------------------------------------------------------------------
    @classmethod
    def build(cls, nodes: Iterable[ResourceNode]) -> "ResourceGraph":
        """Validate ``nodes`` and return the resulting graph.

        Raises :class:`DuplicateIdError` for conflicting declarations of one id,
        :class:`UnknownDependencyError` for dangling edges and :class:`CycleError`
        when the dependency relation is not acyclic.
        """

        unique: Dict[str, ResourceNode] = {}
        for node in nodes:
            existing = unique.get(node.id)
            if existing is None:
                unique[node.id] = node
            elif not existing.same_declaration(node):
                raise DuplicateIdError(node.id, [existing.source, node.source])

        digraph = nx.DiGraph()
        digraph.add_nodes_from(unique)
        for node in unique.values():
            for dependency in sorted(node.depends_on | set(node.references().values())):
                if dependency not in unique:
                    raise UnknownDependencyError(node.id, dependency)
                digraph.add_edge(dependency, node.id)

        try:
            cycle = nx.find_cycle(digraph)
        except nx.NetworkXNoCycle:
            cycle = None
        if cycle:
            involved = [edge[0] for edge in cycle]
            involved.append(cycle[-1][1])
            raise CycleError(involved)

        return cls(unique, digraph)

    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.order())

    def get(self, resource_id: str) -> ResourceNode:
        return self._nodes[resource_id]

    def order(self) -> List[ResourceNode]:
        """Return nodes in dependency order."""

        return [self._nodes[resource_id] for resource_id in self._order]

    def dependencies(self, resource_id: str) -> Set[str]:
        return set(self._graph.predecessors(resource_id))

    def dependents(self, resource_id: str) -> Set[str]:
        return set(self._graph.successors(resource_id))

    def descendants(self, resource_id: str) -> Set[str]:
        return set(nx.descendants(self._graph, resource_id))

    def edges(self) -> List[tuple[str, str]]:
        return list(self._graph.edges())

    # ------------------------------------------------------------------
    def _compute_order(self) -> List[str]:
        # Nodes behind a certificate wait sort after everything that can
        # finish without it; ties break on id for a stable plan.
        gated: Set[str] = set()
        for resource_id, node in self._nodes.items():
            if node.kind is ResourceKind.CERTIFICATE:
                gated.add(resource_id)
                gated.update(nx.descendants(self._graph, resource_id))

        def priority(resource_id: str) -> str:
            return f"{1 if resource_id in gated else 0}:{resource_id}"

        return list(nx.lexicographical_topological_sort(self._graph, key=priority))


def build(nodes: Iterable[ResourceNode]) -> ResourceGraph:
    """Build a :class:`ResourceGraph`; see :meth:`ResourceGraph.build`."""

    return ResourceGraph.build(nodes)


def destroy_order(entries: Mapping[str, Iterable[str]]) -> List[str]:
    """Return ids in reverse dependency order from recorded ``depends_on`` lists.

    Dependencies outside ``entries`` are ignored; they are not being destroyed.
    """

    digraph = nx.DiGraph()
    digraph.add_nodes_from(entries)
    for resource_id, depends_on in entries.items():
        for dependency in depends_on:
            if dependency in entries:
                digraph.add_edge(dependency, resource_id)

    try:
        forward = list(nx.lexicographical_topological_sort(digraph))
    except nx.NetworkXUnfeasible as exc:
        raise CycleError([str(node) for node in digraph.nodes]) from exc
    return list(reversed(forward))
