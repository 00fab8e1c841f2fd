"""
Dependency graph between plan nodes (resources and lookups).

Edges point from a consumer to the node it depends on and are recorded as
declarations happen. Dangling edges are allowed until validation.
"""
import heapq
from typing import Dict, Iterable, List, Optional, Set, Tuple

from stackplan.errors import CyclicDependencyError


class DependencyGraph:
    def __init__(self) -> None:
        self._nodes: Dict[str, None] = {}
        self._deps: Dict[str, Set[str]] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> List[str]:
        return list(self._nodes)

    def add_node(self, name: str) -> None:
        self._nodes.setdefault(name, None)
        self._deps.setdefault(name, set())

    def add_edge(self, consumer: str, dependency: str) -> None:
        self.add_node(consumer)
        # self-edges are kept: find_cycle reports them as [name, name]
        self._deps[consumer].add(dependency)

    def dependencies(self, name: str) -> Set[str]:
        return set(self._deps.get(name, ()))

    def dependents(self, name: str) -> Set[str]:
        return {n for n, deps in self._deps.items() if name in deps}

    def edges(self) -> List[Tuple[str, str]]:
        return sorted((n, d) for n, deps in self._deps.items() for d in deps)

    def missing(self) -> List[Tuple[str, str]]:
        """(consumer, dependency) pairs whose dependency was never declared."""
        return [(n, d) for n, d in self.edges() if d not in self._nodes]

    def ancestors(self, name: str) -> Set[str]:
        """Every node ``name`` depends on, directly or transitively."""
        seen: Set[str] = set()
        stack = list(self._deps.get(name, ()))
        while stack:
            cur = stack.pop()
            if cur in seen:
                continue
            seen.add(cur)
            stack.extend(self._deps.get(cur, ()))
        return seen

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a closed path ``[a, b, ..., a]``, or None."""
        white, grey, black = 0, 1, 2
        color = {n: white for n in self._nodes}
        path: List[str] = []

        def visit(node: str) -> Optional[List[str]]:
            color[node] = grey
            path.append(node)
            for dep in sorted(self._deps.get(node, ())):
                if dep not in color:
                    continue
                if color[dep] == grey:
                    return path[path.index(dep):] + [dep]
                if color[dep] == white:
                    found = visit(dep)
                    if found:
                        return found
            path.pop()
            color[node] = black
            return None

        for n in sorted(self._nodes):
            if color[n] == white:
                found = visit(n)
                if found:
                    return found
        return None

    def order(self, nodes: Optional[Iterable[str]] = None) -> List[str]:
        """
        Topological order, dependencies first. Ready nodes are taken in name
        order, so the result does not depend on declaration order.
        """
        cycle = self.find_cycle()
        if cycle:
            raise CyclicDependencyError(cycle)

        selected = set(self._nodes if nodes is None else nodes)
        remaining = {
            n: {d for d in self._deps[n] if d in selected} for n in selected
        }
        ready = [n for n, deps in remaining.items() if not deps]
        heapq.heapify(ready)
        result: List[str] = []
        while ready:
            node = heapq.heappop(ready)
            result.append(node)
            for other, deps in remaining.items():
                if node in deps:
                    deps.discard(node)
                    if not deps:
                        heapq.heappush(ready, other)
        return result

    def reverse_order(self, nodes: Optional[Iterable[str]] = None) -> List[str]:
        return list(reversed(self.order(nodes)))
