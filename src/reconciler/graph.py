"""Dependency graph for manifest resources.

Builds a directed graph from explicit depends_on lists, parent/child
nesting and property references, then computes levels of mutually
independent resources with Kahn's algorithm:
- order(): dependencies before dependents (apply)
- reverse_order(): dependents before dependencies (teardown)
"""

import logging
from typing import Iterable, Mapping

from manifest import Manifest, Resource
from reconciler.errors import DependencyCycleError

logger = logging.getLogger(__name__)


def topological_levels(nodes: Iterable[str], edges: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Group nodes into levels so every node follows all of its dependencies.

    Kahn's algorithm: repeatedly remove nodes with no unresolved
    dependencies. Each removal round is one level; ties are broken by
    sorting ids so plans are reproducible.

    Args:
        nodes: Node ids
        edges: node -> ids it depends on (ids outside nodes are ignored)

    Returns:
        List of levels, each a sorted list of node ids

    Raises:
        DependencyCycleError: If nodes remain after the queue empties
    """
    node_set = set(nodes)
    in_degree: dict[str, int] = {n: 0 for n in node_set}
    dependents: dict[str, set[str]] = {n: set() for n in node_set}
    for node in node_set:
        for dep in set(edges.get(node, ())):
            if dep in node_set:
                in_degree[node] += 1
                dependents[dep].add(node)

    levels: list[list[str]] = []
    current = sorted(n for n, degree in in_degree.items() if degree == 0)
    while current:
        levels.append(current)
        ready: set[str] = set()
        for node in current:
            for dependent in dependents[node]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.add(dependent)
        current = sorted(ready)

    remaining = {n for n, degree in in_degree.items() if degree > 0}
    if remaining:
        raise DependencyCycleError(_cycle_members(remaining, dependents))
    return levels


def _cycle_members(remaining: set[str], dependents: dict[str, set[str]]) -> set[str]:
    """Drop nodes that are only downstream of a cycle."""
    members = set(remaining)
    changed = True
    while changed:
        changed = False
        for node in sorted(members):
            if not dependents[node] & members:
                members.discard(node)
                changed = True
    return members or remaining


class ResourceGraph:
    """Resources plus derived dependency edges.

    Edge sources, all treated uniformly:
    - explicit: depends_on entries
    - parent: child depends on its parent
    - reference: ${res.attr} interpolations and *Ref resource keys
    - secret: output-sourced secrets depend on the resource they read

    Construction validates the graph; a cycle raises DependencyCycleError.
    """

    def __init__(self, manifest: Manifest):
        self.manifest = manifest
        self._resources: dict[str, Resource] = {r.id: r for r in manifest.resources}
        self._edges: dict[str, set[str]] = {rid: set() for rid in self._resources}
        self._dependents: dict[str, set[str]] = {rid: set() for rid in self._resources}
        self._edge_kinds: dict[tuple[str, str], set[str]] = {}
        self._build_edges()
        self._levels = topological_levels(self._resources, self._edges)
        logger.debug(f"Resolved {len(self._resources)} resources into {len(self._levels)} levels")

    def _add_edge(self, resource_id: str, dependency: str, kind: str) -> None:
        self._edges[resource_id].add(dependency)
        self._dependents[dependency].add(resource_id)
        self._edge_kinds.setdefault((resource_id, dependency), set()).add(kind)

    def _build_edges(self) -> None:
        secrets = self.manifest.secrets
        for resource in self._resources.values():
            for dep in resource.depends_on:
                self._add_edge(resource.id, dep, 'explicit')
            if resource.parent is not None:
                self._add_edge(resource.id, resource.parent, 'parent')
            for ref in resource.references:
                self._add_edge(resource.id, ref.resource_id, 'reference')
            for name in resource.secret_refs:
                spec = secrets[name]
                if spec.output_ref is not None:
                    self._add_edge(resource.id, spec.output_ref.resource_id, 'secret')

    @property
    def resources(self) -> list[Resource]:
        return [self._resources[rid] for rid in self.order()]

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, resource_id: str) -> Resource:
        """Get a resource by id.

        Raises:
            KeyError: If resource id not found
        """
        return self._resources[resource_id]

    def dependencies(self, resource_id: str) -> set[str]:
        """Ids this resource depends on (direct edges only)."""
        return set(self._edges[resource_id])

    def dependents(self, resource_id: str) -> set[str]:
        """Ids that depend directly on this resource."""
        return set(self._dependents[resource_id])

    def edge_kinds(self, resource_id: str, dependency: str) -> set[str]:
        """How an edge was discovered (explicit, parent, reference, secret)."""
        return set(self._edge_kinds.get((resource_id, dependency), ()))

    def levels(self) -> list[list[str]]:
        """Levels of mutually independent resources, dependencies first."""
        return [list(level) for level in self._levels]

    def level_of(self, resource_id: str) -> int:
        for i, level in enumerate(self._levels):
            if resource_id in level:
                return i
        raise KeyError(resource_id)

    def order(self) -> list[str]:
        """Apply order: every resource after all of its dependencies."""
        return [rid for level in self._levels for rid in level]

    def reverse_order(self) -> list[str]:
        """Teardown order: every resource after all of its dependents."""
        return list(reversed(self.order()))
