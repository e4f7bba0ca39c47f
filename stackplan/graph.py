"""
Directed dependency graph with deterministic topological ordering.

Edges point from a node to the nodes it depends on. Ordering is Kahn's
algorithm with a priority queue, so among nodes that are free at the same
time the one with the lowest priority key (declaration order by default)
goes first.
"""
import heapq
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from stackplan.errors import ValidationError


class DependencyGraph:
    def __init__(self) -> None:
        self._deps: Dict[str, Set[str]] = {}
        self._index: Dict[str, int] = {}

    def __contains__(self, node: str) -> bool:
        return node in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    @property
    def nodes(self) -> List[str]:
        return sorted(self._deps, key=self._index.__getitem__)

    def add_node(self, node: str) -> None:
        if node not in self._deps:
            self._deps[node] = set()
            self._index[node] = len(self._index)

    def add_edge(self, node: str, dependency: str) -> None:
        """``node`` must be applied after ``dependency``."""
        self.add_node(node)
        self.add_node(dependency)
        self._deps[node].add(dependency)

    def dependencies(self, node: str) -> List[str]:
        return sorted(self._deps.get(node, ()), key=self._index.__getitem__)

    def dependents(self, node: str) -> List[str]:
        return [n for n in self.nodes if node in self._deps[n]]

    def transitive_dependents(self, node: str) -> Set[str]:
        found: Set[str] = set()
        stack = [node]
        while stack:
            cur = stack.pop()
            for n in self.dependents(cur):
                if n not in found:
                    found.add(n)
                    stack.append(n)
        return found

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a closed path (first node repeated last), or None."""
        white, grey, black = 0, 1, 2
        color = {n: white for n in self._deps}
        parent: Dict[str, str] = {}

        for start in self.nodes:
            if color[start] != white:
                continue
            stack = [(start, iter(self.dependencies(start)))]
            color[start] = grey
            while stack:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    color[node] = black
                    stack.pop()
                    continue
                if color[child] == grey:
                    cycle = [child]
                    cur = node
                    while cur != child:
                        cycle.append(cur)
                        cur = parent[cur]
                    cycle.append(child)
                    cycle.reverse()
                    return cycle
                if color[child] == white:
                    color[child] = grey
                    parent[child] = node
                    stack.append((child, iter(self.dependencies(child))))
        return None

    def topological_order(self, key: Optional[Callable[[str], Any]] = None) -> List[str]:
        """Dependencies first. Raises ValidationError if the graph has a cycle."""
        key = key or self._index.__getitem__
        remaining = {n: len(d) for n, d in self._deps.items()}
        dependents: Dict[str, List[str]] = {n: [] for n in self._deps}
        for n, deps in self._deps.items():
            for d in deps:
                dependents[d].append(n)

        ready = [(key(n), self._index[n], n) for n, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            _, _, node = heapq.heappop(ready)
            order.append(node)
            for n in dependents[node]:
                remaining[n] -= 1
                if remaining[n] == 0:
                    heapq.heappush(ready, (key(n), self._index[n], n))

        if len(order) != len(self._deps):
            cycle = self.find_cycle() or sorted(n for n, c in remaining.items() if c > 0)
            raise ValidationError("dependency cycle: " + " -> ".join(cycle))
        return order

    @classmethod
    def from_edges(cls, nodes: Iterable[str], edges: Dict[str, Iterable[str]]) -> "DependencyGraph":
        graph = cls()
        for n in nodes:
            graph.add_node(n)
        for n, deps in edges.items():
            for d in deps:
                graph.add_edge(n, d)
        return graph
