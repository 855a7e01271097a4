"""Graph module for reference-based orchestration.

Builds the dependency graph from the ReferenceEdges of a DesiredState
and computes traversal orderings for create (producers first) and
delete (consumers first).
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

from converger.errors import CyclicDependencyError
from converger.model import DesiredState, ResourceInstance

logger = logging.getLogger(__name__)

# DFS marking
_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


@dataclass(frozen=True)
class ReferenceEdge:
    """Directed edge from a consumer to the producer it references.

    Attributes:
        consumer: Address of the referencing instance
        producer: Address of the referenced instance
        attribute: Consumer attribute holding the reference
    """
    consumer: str
    producer: str
    attribute: str


def topological_order(nodes: Iterable[str], deps: Mapping[str, Iterable[str]]) -> list[str]:
    """Order nodes so every node follows its dependencies.

    Depth-first with three-colour marking. Roots are visited in the given
    node order and dependencies in their listed order, so the result is
    stable. Dependencies not in nodes are ignored.

    Raises:
        CyclicDependencyError: On a back-edge, with the cycle path
    """
    nodes = list(nodes)
    color = {node: _UNVISITED for node in nodes}
    ordered: list[str] = []
    path: list[str] = []

    for root in nodes:
        if color[root] != _UNVISITED:
            continue
        color[root] = _IN_PROGRESS
        path.append(root)
        stack = [(root, iter(deps.get(root, ())))]
        while stack:
            node, pending = stack[-1]
            for dep in pending:
                if dep not in color:
                    continue
                if color[dep] == _IN_PROGRESS:
                    start = path.index(dep)
                    raise CyclicDependencyError(path[start:] + [dep])
                if color[dep] == _UNVISITED:
                    color[dep] = _IN_PROGRESS
                    path.append(dep)
                    stack.append((dep, iter(deps.get(dep, ()))))
                    break
            else:
                stack.pop()
                path.pop()
                color[node] = _DONE
                ordered.append(node)

    return ordered


class ResourceGraph:
    """Dependency graph built from a DesiredState's references.

    Provides ordered traversal for lifecycle operations:
    - create_order(): producers before consumers
    - destroy_order(): consumers before producers
    """

    def __init__(self, desired: DesiredState):
        """Build graph from desired state.

        Raises:
            CyclicDependencyError: If references form a cycle
        """
        self.desired = desired
        self._edges: list[ReferenceEdge] = []
        self._producers: dict[str, list[str]] = {addr: [] for addr in desired.addresses}
        self._consumers: dict[str, list[str]] = {addr: [] for addr in desired.addresses}
        self._build_edges()
        self._order = topological_order(desired.addresses, self._producers)
        self._index = {addr: i for i, addr in enumerate(self._order)}
        logger.debug(f"Graph: {len(self._order)} instances, {len(self._edges)} edges")

    def _build_edges(self) -> None:
        for inst in self.desired:
            for attr, ref in inst.references():
                self._edges.append(ReferenceEdge(inst.address, ref.target, attr))
                if ref.target not in self._producers[inst.address]:
                    self._producers[inst.address].append(ref.target)
                    self._consumers[ref.target].append(inst.address)

    @property
    def edges(self) -> list[ReferenceEdge]:
        return list(self._edges)

    def order(self) -> list[str]:
        """Addresses in topological order (producers first)."""
        return list(self._order)

    def index(self, address: str) -> int:
        """Position of address in the topological order.

        Raises:
            KeyError: If address not in graph
        """
        return self._index[address]

    def producers(self, address: str) -> list[str]:
        """Direct dependencies of address."""
        return list(self._producers[address])

    def consumers(self, address: str) -> list[str]:
        """Instances directly referencing address."""
        return list(self._consumers[address])

    def dependents(self, address: str) -> list[str]:
        """All instances depending on address, directly or transitively.

        Returned in topological order.
        """
        found: set[str] = set()
        stack = list(self._consumers[address])
        while stack:
            node = stack.pop()
            if node in found:
                continue
            found.add(node)
            stack.extend(self._consumers[node])
        return [addr for addr in self._order if addr in found]

    def create_order(self) -> list[ResourceInstance]:
        """Instances in creation order (producers before consumers)."""
        return [self.desired.get(addr) for addr in self._order]

    def destroy_order(self) -> list[ResourceInstance]:
        """Instances in destruction order (consumers before producers).

        Reverse of create_order.
        """
        return list(reversed(self.create_order()))
