"""Dependency extraction and the task graph."""

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from typing import Any

from convergent.errors import ConfigurationError, CycleError, SelfReferenceError

logger = logging.getLogger(__name__)

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


def extract_edges(tasks: Mapping[str, Any]) -> set[tuple[str, str]]:
    """Return (dependent, dependency) name pairs for every declared reference.

    Works for anything exposing ``dependencies()``: tasks and deletions alike.
    References to objects outside ``tasks`` are not edges.
    """
    names_by_id = {id(task): name for name, task in tasks.items()}
    edges: set[tuple[str, str]] = set()

    for name, task in tasks.items():
        for dep in task.dependencies():
            if dep is None:
                continue
            if dep is task:
                raise SelfReferenceError(name)
            dep_name = names_by_id.get(id(dep))
            if dep_name is None:
                logger.debug("%s references an object outside the task set: %r", name, dep)
                continue
            if dep_name == name:
                raise SelfReferenceError(name)
            edges.add((name, dep_name))

    return edges


class TaskGraph:
    """Immutable DAG of task names. Edges point from dependent to dependency."""

    def __init__(self, names: Iterable[str], edges: Iterable[tuple[str, str]]):
        self._names: tuple[str, ...] = tuple(dict.fromkeys(names))
        self._index = {n: i for i, n in enumerate(self._names)}
        known = set(self._names)
        self._deps: dict[str, set[str]] = {n: set() for n in self._names}
        self._dependents: dict[str, set[str]] = {n: set() for n in self._names}
        for dependent, dependency in edges:
            for n in (dependent, dependency):
                if n not in known:
                    raise ConfigurationError(f"Edge refers to unknown task {n!r}")
            if dependent == dependency:
                raise SelfReferenceError(dependent)
            self._deps[dependent].add(dependency)
            self._dependents[dependency].add(dependent)

    @classmethod
    def build(cls, names: Iterable[str], edges: Iterable[tuple[str, str]]) -> "TaskGraph":
        """Build a graph, raising CycleError if it is not acyclic."""
        graph = cls(names, edges)
        cycle = graph.find_cycle()
        if cycle:
            raise CycleError(cycle)
        return graph

    @classmethod
    def from_tasks(cls, tasks: Mapping[str, Any]) -> "TaskGraph":
        return cls.build(tasks.keys(), extract_edges(tasks))

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._deps

    def dependencies(self, name: str) -> tuple[str, ...]:
        return tuple(self._sorted(self._deps[name]))

    def dependents(self, name: str) -> tuple[str, ...]:
        return tuple(self._sorted(self._dependents[name]))

    def edges(self) -> set[tuple[str, str]]:
        return {(n, d) for n, deps in self._deps.items() for d in deps}

    def find_cycle(self) -> list[str] | None:
        """Depth-first search for a back edge; returns the cycle path or None."""
        color = dict.fromkeys(self._names, _UNVISITED)
        stack: list[str] = []

        def visit(name: str) -> list[str] | None:
            color[name] = _IN_PROGRESS
            stack.append(name)
            for dep in self._sorted(self._deps[name]):
                if color[dep] == _IN_PROGRESS:
                    return stack[stack.index(dep) :] + [dep]
                if color[dep] == _UNVISITED:
                    cycle = visit(dep)
                    if cycle:
                        return cycle
            stack.pop()
            color[name] = _DONE
            return None

        for name in self._names:
            if color[name] == _UNVISITED:
                cycle = visit(name)
                if cycle:
                    return cycle
        return None

    def topological_layers(self) -> list[frozenset[str]]:
        """Group tasks so every task's dependencies sit in earlier layers."""
        remaining = {n: len(self._deps[n]) for n in self._names}
        layer = [n for n in self._names if remaining[n] == 0]
        layers: list[frozenset[str]] = []
        while layer:
            layers.append(frozenset(layer))
            following = []
            for name in layer:
                for dependent in self._dependents[name]:
                    remaining[dependent] -= 1
                    if remaining[dependent] == 0:
                        following.append(dependent)
            layer = self._sorted(following)
        return layers

    def order(self) -> list[str]:
        """A topological order: layer by layer, insertion order within a layer."""
        return [n for layer in self.topological_layers() for n in self._sorted(layer)]

    def transitive_dependents(self, name: str) -> list[str]:
        """Every task that depends on ``name`` directly or indirectly, nearest first."""
        seen = {name}
        found = []
        queue = deque([name])
        while queue:
            current = queue.popleft()
            for dependent in self._sorted(self._dependents[current]):
                if dependent not in seen:
                    seen.add(dependent)
                    found.append(dependent)
                    queue.append(dependent)
        return found

    def path_between(self, dependency: str, dependent: str) -> list[str]:
        """Shortest dependency chain from ``dependency`` up to ``dependent``."""
        parents: dict[str, str | None] = {dependency: None}
        queue = deque([dependency])
        while queue:
            current = queue.popleft()
            if current == dependent:
                break
            for nxt in self._sorted(self._dependents[current]):
                if nxt not in parents:
                    parents[nxt] = current
                    queue.append(nxt)
        if dependent not in parents:
            return []
        path = [dependent]
        while parents[path[-1]] is not None:
            path.append(parents[path[-1]])
        return path[::-1]

    def reversed(self) -> "TaskGraph":
        """The same graph with every edge flipped, for teardown order."""
        return TaskGraph(self._names, {(d, n) for n, d in self.edges()})

    def _sorted(self, names: Iterable[str]) -> list[str]:
        return sorted(names, key=self._index.__getitem__)
