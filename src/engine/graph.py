"""Dependency graph for stack resources.

Builds a DAG from a stack document: an edge A -> B exists when A's desired
attributes reference B's output (or A lists B in depends_on). Computes
traversal orderings for apply (dependencies first) and destroy (reverse).
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from config import ConfigError
from manifest import Manifest, Reference, ResourceDefinition
from schema import ResourceSchema, SchemaRegistry

logger = logging.getLogger(__name__)


class CycleError(ConfigError):
    """Reference chain returns to its origin."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cycle detected in resource graph: {' -> '.join(cycle)}")


class UnknownReferenceError(ConfigError):
    """Reference names a missing resource or an undeclared attribute."""

    def __init__(self, source: str, reference: Reference, reason: str):
        self.source = source
        self.reference = reference
        super().__init__(f"Resource '{source}' references {reference}: {reason}")


@dataclass
class ResourceNode:
    """A node in the resource graph.

    Wraps a ResourceDefinition with its schema, normalized desired attributes
    and dependency edges.

    Attributes:
        definition: The underlying ResourceDefinition
        schema: Schema of the resource kind
        desired: Desired attributes with defaults applied (may hold references)
        index: Position in the stack document
        dependencies: Nodes this node references
        dependents: Nodes referencing this node
        computed: Provider outputs, set when a run applies the node
        status: pending, planned, then the outcome of the last run
    """
    definition: ResourceDefinition
    schema: ResourceSchema
    desired: dict
    index: int = 0
    dependencies: list['ResourceNode'] = field(default_factory=list)
    dependents: list['ResourceNode'] = field(default_factory=list)
    computed: dict = field(default_factory=dict)
    status: str = 'pending'

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def kind(self) -> str:
        return self.definition.kind

    @property
    def references(self) -> list[Reference]:
        return self.definition.references

    def __repr__(self) -> str:
        return f"ResourceNode({self.name}, kind={self.kind}, deps={[d.name for d in self.dependencies]})"


class ResourceGraph:
    """Dependency graph built from a stack document.

    Provides ordered traversal for lifecycle operations:
    - apply_order(): dependencies before dependents (stable topological order)
    - destroy_order(): dependents before dependencies (reverse)
    """

    def __init__(self, manifest: Manifest, registry: SchemaRegistry):
        """Build the graph and validate it.

        Raises:
            SchemaError: If a resource violates its kind's schema
            UnknownReferenceError: If a reference cannot be satisfied
            CycleError: If references form a cycle
        """
        self.manifest = manifest
        self.registry = registry
        self._nodes: dict[str, ResourceNode] = {}
        self._build_graph(manifest.resources)
        self._check_cycles()
        self._order = self._topological_sort()

    def _build_graph(self, resources: list[ResourceDefinition]) -> None:
        for i, rd in enumerate(resources):
            schema = self.registry.get(rd.kind)
            desired = schema.normalize(rd.name, rd.attributes)
            self._nodes[rd.name] = ResourceNode(definition=rd, schema=schema, desired=desired, index=i)

        for node in self._nodes.values():
            targets: list[str] = []
            for ref in node.references:
                target = self._nodes.get(ref.resource)
                if target is None:
                    raise UnknownReferenceError(node.name, ref, "no such resource")
                if not target.schema.has_attribute(ref.attribute):
                    raise UnknownReferenceError(
                        node.name, ref,
                        f"kind '{target.kind}' has no attribute '{ref.attribute}'",
                    )
                targets.append(ref.resource)
            for dep in node.definition.depends_on:
                if dep not in self._nodes:
                    raise ConfigError(f"Resource '{node.name}' depends_on unknown resource '{dep}'")
                targets.append(dep)

            for dep_name in dict.fromkeys(targets):
                dep = self._nodes[dep_name]
                node.dependencies.append(dep)
                dep.dependents.append(node)

    def _check_cycles(self) -> None:
        """Depth-first search for a reference cycle.

        Raises:
            CycleError: With the cycle path, origin repeated at the end
        """
        visited: set[str] = set()
        stack: list[str] = []
        on_stack: set[str] = set()

        def _visit(node: ResourceNode) -> None:
            if node.name in on_stack:
                start = stack.index(node.name)
                raise CycleError(stack[start:] + [node.name])
            if node.name in visited:
                return
            visited.add(node.name)
            stack.append(node.name)
            on_stack.add(node.name)
            for dep in node.dependencies:
                _visit(dep)
            stack.pop()
            on_stack.discard(node.name)

        for node in self._nodes.values():
            _visit(node)

    def _topological_sort(self) -> list[ResourceNode]:
        """Kahn's algorithm; ties broken by document order."""
        remaining = {name: len(node.dependencies) for name, node in self._nodes.items()}
        ready = [(node.index, name) for name, node in self._nodes.items() if remaining[name] == 0]
        heapq.heapify(ready)

        ordered: list[ResourceNode] = []
        while ready:
            _, name = heapq.heappop(ready)
            node = self._nodes[name]
            ordered.append(node)
            for dependent in node.dependents:
                remaining[dependent.name] -= 1
                if remaining[dependent.name] == 0:
                    heapq.heappush(ready, (dependent.index, dependent.name))

        return ordered

    @property
    def nodes(self) -> list[ResourceNode]:
        return list(self._nodes.values())

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, name: str) -> ResourceNode:
        """Get a ResourceNode by name.

        Raises:
            KeyError: If node name not found
        """
        return self._nodes[name]

    def dependencies_of(self, name: str) -> list[str]:
        return [d.name for d in self._nodes[name].dependencies]

    def dependents_of(self, name: str) -> list[str]:
        return [d.name for d in self._nodes[name].dependents]

    def transitive_dependents(self, name: str) -> set[str]:
        """All nodes that directly or indirectly depend on a node."""
        return transitive_closure(name, {n: self.dependents_of(n) for n in self._nodes})

    def apply_order(self) -> list[ResourceNode]:
        """Return nodes in apply order (dependencies before dependents)."""
        return list(self._order)

    def destroy_order(self) -> list[ResourceNode]:
        """Return nodes in destroy order (dependents before dependencies).

        Reverse of apply_order.
        """
        return list(reversed(self._order))


def transitive_closure(name: str, edges: Mapping[str, Iterable[str]]) -> set[str]:
    """Names reachable from name by following edges (name -> successors)."""
    found: set[str] = set()
    pending = list(edges.get(name, ()))
    while pending:
        current = pending.pop()
        if current in found:
            continue
        found.add(current)
        pending.extend(edges.get(current, ()))
    return found
