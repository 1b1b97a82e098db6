"""
Prerequisite graph for one course.

Nodes are ``ResourceKey`` values; an edge ``A -> B`` means "A requires B".
The same structure backs the write-time cycle check and the
evaluation-time re-check performed by the engine.
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple

from shared.errors import ConflictError
from shared.logging import get_logger
from .models import AccessControl, ResourceKey


class CycleError(ConflictError):
    """Prerequisite edges would form a cycle."""

    def __init__(self, course_id: str, path: List[ResourceKey]):
        self.course_id = course_id
        self.path = path
        rendered = " -> ".join(str(node) for node in path)
        super().__init__(
            "PREREQUISITE_CYCLE",
            f"Prerequisite cycle detected: {rendered}",
            {"course_id": course_id, "path": [str(node) for node in path]}
        )


Edge = Tuple[ResourceKey, ResourceKey]


class PrerequisiteGraph:
    """Adjacency structure keyed by (resource type, resource id)."""

    def __init__(self, edges: Iterable[Edge] = ()):
        self.adjacency: Dict[ResourceKey, List[ResourceKey]] = {}
        for source, target in edges:
            self.add_edge(source, target)

    @classmethod
    def from_rules(cls, rules: Iterable[AccessControl]) -> "PrerequisiteGraph":
        graph = cls()
        for rule in rules:
            if not rule.active:
                continue
            for edge in rule.prerequisite_edges():
                graph.add_edge(rule.resource_key, edge.key)
        return graph

    def add_edge(self, source: ResourceKey, target: ResourceKey):
        targets = self.adjacency.setdefault(source, [])
        if target not in targets:
            targets.append(target)

    def edges(self) -> List[Edge]:
        return [(s, t) for s, targets in self.adjacency.items() for t in targets]

    def find_cycle(self, start: Optional[ResourceKey] = None) -> Optional[List[ResourceKey]]:
        """Return a cycle as ``[n0, n1, ..., n0]`` or None. O(V+E).

        Iterative DFS with an on-stack (visiting) set. Traversal begins at
        ``start`` when given so the reported cycle involves it if possible.
        """
        done: Set[ResourceKey] = set()
        roots = list(self.adjacency)
        if start is not None:
            roots.insert(0, start)

        for root in roots:
            if root in done:
                continue
            path: List[ResourceKey] = [root]
            on_path: Set[ResourceKey] = {root}
            stack = [iter(self.adjacency.get(root, ()))]

            while stack:
                node = next(stack[-1], None)
                if node is None:
                    stack.pop()
                    finished = path.pop()
                    on_path.discard(finished)
                    done.add(finished)
                    continue
                if node in on_path:
                    return path[path.index(node):] + [node]
                if node in done:
                    continue
                path.append(node)
                on_path.add(node)
                stack.append(iter(self.adjacency.get(node, ())))

        return None

    def on_cycle(self, node: ResourceKey) -> bool:
        """True when ``node`` can reach itself."""
        return self.reaches(node, node)

    def reaches(self, source: ResourceKey, target: ResourceKey) -> bool:
        """True when ``target`` is reachable from ``source`` in one or more steps."""
        seen: Set[ResourceKey] = set()
        frontier = list(self.adjacency.get(source, ()))
        while frontier:
            node = frontier.pop()
            if node == target:
                return True
            if node in seen:
                continue
            seen.add(node)
            frontier.extend(self.adjacency.get(node, ()))
        return False


class GraphValidator:
    """Write-time check that a course's prerequisite edges form a DAG."""

    def __init__(self):
        self.logger = get_logger("gating.graph_validator")

    def validate(self, course_id: str, candidate_edges: Iterable[Edge],
                 start: Optional[ResourceKey] = None) -> None:
        """Raise ``CycleError`` if ``candidate_edges`` contain a cycle."""
        graph = PrerequisiteGraph(candidate_edges)
        cycle = graph.find_cycle(start)
        if cycle is not None:
            self.logger.warning(
                "Rejected prerequisite cycle",
                course_id=course_id,
                path=[str(node) for node in cycle]
            )
            raise CycleError(course_id, cycle)

    def validate_rules(self, course_id: str, existing_rules: Iterable[AccessControl],
                       candidate: AccessControl) -> None:
        """Validate the course after ``candidate`` replaces its stored version."""
        others = [rule for rule in existing_rules if rule.id != candidate.id and rule.course_id == course_id]
        graph = PrerequisiteGraph.from_rules(others + [candidate])
        self.validate(course_id, graph.edges(), start=candidate.resource_key)

    def validate_batch(self, course_id: str, existing_rules: Iterable[AccessControl],
                       candidates: List[AccessControl]) -> None:
        """Validate the course with every candidate applied at once."""
        replaced = {rule.id for rule in candidates}
        others = [rule for rule in existing_rules if rule.id not in replaced and rule.course_id == course_id]
        graph = PrerequisiteGraph.from_rules(others + [rule for rule in candidates if rule.course_id == course_id])
        start = next((rule.resource_key for rule in candidates if rule.prerequisite_edges()), None)
        self.validate(course_id, graph.edges(), start=start)
