"""
Resource dependency graph.

An edge A -> B means A depends on B: one of A's arguments references an
attribute of B, or A lists B in depends_on. The graph is checked for
unknown references and cycles before anything touches a provider.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from ..errors import ConfigError, CycleError, UnresolvedReferenceError
from ..providers.base import ProviderRegistry
from .config_parser import Lifecycle, ResourceDeclaration
from .expressions import Reference, find_references, substitute_variables

logger = logging.getLogger(__name__)


@dataclass
class ResourceNode:
    """A resource with variables substituted and its references parsed."""
    address: str
    type: str
    name: str
    arguments: Dict[str, Any]
    depends_on: List[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    references: List[Reference] = field(default_factory=list)


class ResourceGraph:
    """Directed acyclic graph of resource nodes."""

    def __init__(self, nodes: Dict[str, ResourceNode], edges: Dict[str, Set[str]]):
        self.nodes = nodes
        self._edges = edges
        self._reverse: Dict[str, Set[str]] = {address: set() for address in nodes}
        for address, deps in edges.items():
            for dep in deps:
                self._reverse[dep].add(address)

    def __contains__(self, address: str) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependencies(self, address: str) -> Set[str]:
        """Direct dependencies of a resource."""
        return set(self._edges.get(address, set()))

    def dependents(self, address: str) -> Set[str]:
        """Resources that directly depend on this one."""
        return set(self._reverse.get(address, set()))

    def topological_order(self) -> List[str]:
        """Dependencies first; ties broken by address for stable output."""
        return topological_sort({a: self._edges.get(a, set()) for a in self.nodes})

    def transitive_dependencies(self, targets: Iterable[str]) -> Set[str]:
        """Targets plus everything they depend on, directly or not."""
        return _closure(targets, self._edges)

    def transitive_dependents(self, targets: Iterable[str]) -> Set[str]:
        """Targets plus everything depending on them, directly or not."""
        return _closure(targets, self._reverse)

    def subgraph(self, targets: Iterable[str]) -> "ResourceGraph":
        """
        Graph restricted to the targets and their transitive dependencies.

        Raises:
            UnresolvedReferenceError: If a target is not in the graph
        """
        targets = list(targets)
        for target in targets:
            if target not in self.nodes:
                raise UnresolvedReferenceError(target, reason="no such resource in configuration")
        keep = self.transitive_dependencies(targets)
        return ResourceGraph(
            {a: n for a, n in self.nodes.items() if a in keep},
            {a: set(d) for a, d in self._edges.items() if a in keep},
        )


def _closure(start: Iterable[str], adjacency: Mapping[str, Set[str]]) -> Set[str]:
    seen: Set[str] = set()
    stack = list(start)
    while stack:
        address = stack.pop()
        if address in seen:
            continue
        seen.add(address)
        stack.extend(adjacency.get(address, ()))
    return seen


def find_cycle(edges: Mapping[str, Set[str]]) -> Optional[List[str]]:
    """Return one cycle as a list of addresses (first == last), or None."""
    white, grey, black = 0, 1, 2
    color = {address: white for address in edges}
    parent: Dict[str, str] = {}

    for root in sorted(edges):
        if color[root] != white:
            continue
        stack = [(root, iter(sorted(edges[root])))]
        color[root] = grey
        while stack:
            address, children = stack[-1]
            advanced = False
            for child in children:
                if child not in color:
                    continue
                if color[child] == grey:
                    cycle = [child]
                    current = address
                    while current != child:
                        cycle.append(current)
                        current = parent[current]
                    cycle.append(child)
                    cycle.reverse()
                    return cycle
                if color[child] == white:
                    parent[child] = address
                    color[child] = grey
                    stack.append((child, iter(sorted(edges[child]))))
                    advanced = True
                    break
            if not advanced:
                color[address] = black
                stack.pop()
    return None


def topological_sort(edges: Mapping[str, Set[str]]) -> List[str]:
    """
    Order nodes so that every node comes after its dependencies.

    Args:
        edges: node -> set of nodes it depends on

    Raises:
        CycleError: If the edges contain a cycle
    """
    remaining = {a: {d for d in deps if d in edges} for a, deps in edges.items()}
    dependents: Dict[str, Set[str]] = {a: set() for a in edges}
    for address, deps in remaining.items():
        for dep in deps:
            dependents[dep].add(address)

    ready = [a for a, deps in remaining.items() if not deps]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        address = heapq.heappop(ready)
        order.append(address)
        for dependent in dependents[address]:
            remaining[dependent].discard(address)
            if not remaining[dependent]:
                heapq.heappush(ready, dependent)

    if len(order) != len(edges):
        cycle = find_cycle(remaining) or sorted(a for a in remaining if remaining[a])
        raise CycleError(cycle)
    return order


class GraphBuilder:
    """Builds a ResourceGraph from declarations and resolved variables."""

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    def build(
        self,
        resources: Mapping[str, ResourceDeclaration],
        variables: Dict[str, Any],
        paths: Optional[Dict[str, str]] = None,
    ) -> ResourceGraph:
        """
        Build and check the dependency graph.

        Raises:
            ConfigError: For unsupported types or missing required arguments
            UnresolvedReferenceError: For references to missing resources,
                attributes or variables
            CycleError: If dependencies form a cycle
        """
        nodes: Dict[str, ResourceNode] = {}
        for address, declaration in resources.items():
            schema = self.registry.schema(declaration.type)
            arguments = substitute_variables(declaration.arguments, variables, paths, source=address)
            missing = sorted(schema.required - set(arguments))
            if missing:
                raise ConfigError(f"{address}: missing required argument(s): {', '.join(missing)}")
            nodes[address] = ResourceNode(
                address=address,
                type=declaration.type,
                name=declaration.name,
                arguments=arguments,
                depends_on=list(declaration.depends_on),
                lifecycle=declaration.lifecycle,
                references=[r for r in find_references(arguments) if r.is_resource],
            )

        edges: Dict[str, Set[str]] = {}
        for address, node in nodes.items():
            deps: Set[str] = set()
            for ref in node.references:
                self._check_reference(ref, node, nodes)
                deps.add(ref.address)
            for dep in node.depends_on:
                if dep not in nodes:
                    raise UnresolvedReferenceError(dep, address, "no such resource in depends_on")
                deps.add(dep)
            edges[address] = deps

        cycle = find_cycle(edges)
        if cycle:
            raise CycleError(cycle)

        logger.debug(f"Built graph with {len(nodes)} resources")
        return ResourceGraph(nodes, edges)

    def _check_reference(self, ref: Reference, node: ResourceNode, nodes: Mapping[str, ResourceNode]):
        target = nodes.get(ref.address)
        if target is None:
            raise UnresolvedReferenceError(ref.expression, node.address, "no such resource")
        if ref.attribute is None:
            raise UnresolvedReferenceError(ref.expression, node.address, "reference must name an attribute")
        schema = self.registry.schema(target.type)
        if not schema.has_attribute(ref.attribute, target.arguments):
            raise UnresolvedReferenceError(
                ref.expression, node.address,
                f"{target.type} has no attribute '{ref.attribute}'",
            )
