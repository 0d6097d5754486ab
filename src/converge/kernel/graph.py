"""Build the dependency graph of declared resources."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from .declaration import Declarations, Lifecycle, ResourceDeclaration
from .errors import (
    DuplicateAddressError,
    MissingVariableError,
    UnknownProviderError,
    UnknownReferenceError,
)
from .expressions import Reference, compile_value, iter_references
from .resolver import topological_order

logger = logging.getLogger(__name__)


@dataclass
class ResourceNode:
    """A declared resource with variables resolved and references compiled."""
    address: str
    type: str
    name: str
    provider_name: str
    attributes: Dict[str, Any]  # Compiled: literals, Reference or Template values
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    depends_on: tuple[str, ...] = ()  # Explicit depends_on addresses
    force_replace: bool = False
    index: int = 0  # Declaration position, used to break ordering ties
    provider: Any = field(default=None, repr=False, compare=False)

    def references(self) -> List[Reference]:
        """All attribute references of this node, in document order."""
        return list(iter_references(self.attributes))


def bind_variables(declarations: Declarations, bindings: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Bind declared variables to supplied values or their defaults.

    Raises:
        MissingVariableError: If a required variable has no binding
    """
    bindings = dict(bindings or {})
    bound: Dict[str, Any] = {}
    missing: Set[str] = set()
    for name, decl in declarations.variables.items():
        if name in bindings:
            bound[name] = bindings.pop(name)
        elif decl.required:
            missing.add(name)
        else:
            bound[name] = decl.default
    if bindings:
        logger.warning("Ignoring values for undeclared variables: %s", ", ".join(sorted(bindings)))
    if missing:
        raise MissingVariableError(missing)
    return bound


class ResourceGraph:
    """Dependency graph of resource nodes.

    Edges point from a node to the nodes it depends on. Reverse edges point
    from a node to its dependents. Both are derived from the nodes'
    references and explicit ``depends_on`` and are recomputed whenever a
    graph is built.
    """

    def __init__(self, nodes: Iterable[ResourceNode]):
        self.nodes: Dict[str, ResourceNode] = {}
        duplicates = []
        for node in nodes:
            if node.address in self.nodes:
                duplicates.append(node.address)
            self.nodes[node.address] = node
        if duplicates:
            raise DuplicateAddressError(duplicates)

        self.edges: Dict[str, Set[str]] = defaultdict(set)  # node -> set of dependencies
        self.reverse_edges: Dict[str, Set[str]] = defaultdict(set)  # dependency -> set of dependents
        self._build()
        # Raises CycleError; an acyclic graph is a construction invariant
        self.order: List[str] = topological_order(self.addresses(), self.edges)

    @classmethod
    def build(
        cls,
        declarations: Declarations,
        variables: Mapping[str, Any] | None = None,
        providers: Mapping[str, Any] | None = None,
        force_replace: Iterable[str] = (),
    ) -> "ResourceGraph":
        """Build a graph from declarations.

        Args:
            declarations: Parsed declarations
            variables: Variable bindings; declared defaults fill the rest
            providers: Provider name -> provider instance. When given, every
                resource's provider must be present. When omitted, nodes carry
                no provider (validation and plan-only use).
            force_replace: Addresses to delete and re-create regardless of diff

        Raises:
            DuplicateAddressError, MissingVariableError, UnknownProviderError,
            UnknownReferenceError, ExpressionError, CycleError
        """
        bound = bind_variables(declarations, variables)
        force_replace = set(force_replace)

        declared = set(declarations.get_addresses())
        for address in sorted(force_replace - declared):
            raise UnknownReferenceError("replace", address)

        nodes: List[ResourceNode] = []
        missing: Set[str] = set()
        for index, decl in enumerate(declarations.resources):
            nodes.append(_compile_node(decl, index, bound, missing, providers, force_replace))
        if missing:
            raise MissingVariableError(missing)

        graph = cls(nodes)
        logger.debug("Built resource graph with %d nodes", len(graph.nodes))
        return graph

    def _build(self):
        """Derive edges from references and explicit depends_on."""
        for address, node in self.nodes.items():
            self.edges[address] = set()
            targets = [ref.address for ref in node.references()] + list(node.depends_on)
            for target in targets:
                if target not in self.nodes:
                    raise UnknownReferenceError(address, target)
                self.edges[address].add(target)
                self.reverse_edges[target].add(address)

    def addresses(self) -> List[str]:
        """All node addresses in declaration order."""
        return sorted(self.nodes, key=lambda a: self.nodes[a].index)

    def get_node(self, address: str) -> Optional[ResourceNode]:
        return self.nodes.get(address)

    def get_dependencies(self, node: str) -> Set[str]:
        """Get direct dependencies of a node."""
        return self.edges.get(node, set())

    def get_dependents(self, node: str) -> Set[str]:
        """Get nodes that depend on this node (reverse edges)."""
        return self.reverse_edges.get(node, set())

    def get_transitive_dependencies(self, node: str) -> Set[str]:
        """Get all transitive dependencies (recursive)."""
        return self._walk(node, self.get_dependencies)

    def get_transitive_dependents(self, node: str) -> Set[str]:
        """Get all transitive dependents (what depends on this node, recursively)."""
        return self._walk(node, self.get_dependents)

    @staticmethod
    def _walk(node: str, step) -> Set[str]:
        visited = set()
        stack = [node]

        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            for nxt in step(current):
                if nxt not in visited:
                    stack.append(nxt)

        visited.discard(node)  # Don't include the node itself
        return visited

    def __contains__(self, address: str) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)


def _compile_node(
    decl: ResourceDeclaration,
    index: int,
    variables: Mapping[str, Any],
    missing: Set[str],
    providers: Mapping[str, Any] | None,
    force_replace: Set[str],
) -> ResourceNode:
    provider = None
    if providers is not None:
        if decl.provider_name not in providers:
            raise UnknownProviderError(decl.address, decl.provider_name)
        provider = providers[decl.provider_name]

    return ResourceNode(
        address=decl.address,
        type=decl.type,
        name=decl.name,
        provider_name=decl.provider_name,
        attributes=compile_value(decl.attributes, decl.address, variables, missing),
        lifecycle=decl.lifecycle,
        depends_on=decl.depends_on,
        force_replace=decl.address in force_replace,
        index=index,
        provider=provider,
    )
