"""Dependency graph construction and ordering for resource tasks.

This module implements:
1. Graph construction from the dependencies each task declares
2. Cycle detection (fail fast, before any provider call)
3. Topological sorting for execution order
4. Ready-set and dependent queries used by the runner's scheduler

Edges are structural: a task depends on every task it references or
explicitly links to, never on a task whose name merely looks related.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .errors import DuplicateTaskError, GraphCycleError, UnknownDependencyError
from .tasks import ResourceTask

logger = logging.getLogger(__name__)


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of task dependencies."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(self, name: str, depends_on: list[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Task name.
            depends_on: Names of tasks this task must follow.
        """
        if name in self.nodes:
            if depends_on:
                self.nodes[name].depends_on = depends_on
        else:
            self.nodes[name] = DependencyNode(name=name, depends_on=depends_on or [])

        # Ensure all dependencies have nodes (even if not yet defined)
        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(name=dep)

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            GraphCycleError: If a cycle is detected.
        """
        # Kahn's algorithm for topological sort / cycle detection
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in in_degree:
                    in_degree[dep] += 1

        queue = [node for node, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1

            for dep in self.nodes[current].depends_on:
                if dep in in_degree:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)

        if processed != len(self.nodes):
            raise GraphCycleError([node for node, degree in in_degree.items() if degree > 0])

    def topological_sort(self) -> list[str]:
        """Return task names in dependency order (dependencies first).

        Ties are broken by name so the order is deterministic; any order
        consistent with the edges is equally valid.

        Raises:
            GraphCycleError: If a cycle is detected.
        """
        self.validate()

        dependents = self._dependents()
        in_degree: dict[str, int] = {
            name: len(node.depends_on) for name, node in self.nodes.items()
        }

        result: list[str] = []
        queue = [name for name, degree in in_degree.items() if degree == 0]

        while queue:
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def get_ready(self, satisfied: set[str], started: set[str] | None = None) -> list[str]:
        """Get tasks whose dependencies are all satisfied.

        Args:
            satisfied: Names of tasks that reached Applied or Skipped.
            started: Names already scheduled or finished, excluded.

        Returns:
            Sorted task names that can start now.
        """
        excluded = satisfied | (started or set())
        ready = [
            node.name
            for node in self.nodes.values()
            if node.name not in excluded and all(dep in satisfied for dep in node.depends_on)
        ]
        return sorted(ready)

    def dependents_of(self, name: str) -> set[str]:
        """Every task that depends on name, directly or transitively."""
        dependents = self._dependents()
        found: set[str] = set()
        stack = list(dependents.get(name, []))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(dependents[current])
        return found

    def _dependents(self) -> dict[str, list[str]]:
        """Reverse adjacency: edges point from a dependency to its dependents."""
        dependents: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                dependents[dep].append(node.name)
        return dependents


def build_graph(tasks: Mapping[str, ResourceTask]) -> DependencyGraph:
    """Derive the dependency graph of a task collection.

    Args:
        tasks: Mapping of task name to task.

    Returns:
        A validated, acyclic DependencyGraph.

    Raises:
        DuplicateTaskError: If one task object appears under two names.
        UnknownDependencyError: If a task depends on a task outside the mapping.
        GraphCycleError: If the dependencies form a cycle.
    """
    names_by_identity: dict[int, str] = {}
    for name, task in tasks.items():
        previous = names_by_identity.get(id(task))
        if previous is not None:
            raise DuplicateTaskError(
                f"Task is registered under more than one name: {previous!r}, {name!r}"
            )
        names_by_identity[id(task)] = name

    graph = DependencyGraph()
    for name, task in tasks.items():
        graph.add_node(name, _dependency_names(name, task, tasks, names_by_identity))

    graph.validate()

    logger.debug(
        "Dependency graph built",
        extra={
            "task_count": len(graph.nodes),
            "edge_count": sum(len(n.depends_on) for n in graph.nodes.values()),
        },
    )
    return graph


def _dependency_names(
    name: str,
    task: ResourceTask,
    tasks: Mapping[str, ResourceTask],
    names_by_identity: dict[int, str],
) -> list[str]:
    deps: list[str] = []
    dependencies: Iterable[ResourceTask] = task.dependencies(tasks)
    for dep in dependencies:
        if dep is task:
            continue
        dep_name = names_by_identity.get(id(dep))
        if dep_name is None:
            raise UnknownDependencyError(
                f"Task {name!r} depends on {dep!r}, which is not part of this run"
            )
        if dep_name not in deps:
            deps.append(dep_name)
    return deps
