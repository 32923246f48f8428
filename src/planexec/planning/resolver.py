"""Dependency validation and level computation for plan steps.

The resolver is the gatekeeper for execution: :meth:`DependencyResolver.validate`
rejects malformed graphs (duplicate identifiers, unknown references, cycles)
before anything is dispatched, and :meth:`DependencyResolver.levels` turns an
acyclic graph into ordered groups of mutually independent steps.

Cycle reporting uses Tarjan's strongly connected components so the error
names exactly the steps that sit on a cycle, never the steps that merely
depend on one. Level computation is Kahn's algorithm; inside a level steps keep
their declaration order so schedules are reproducible.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ..errors import PlanValidationError
from ..memory.schema import Plan, Step

LOGGER = logging.getLogger(__name__)


class DependencyResolver:
    """Validate and level the ``depends_on`` graph of a plan."""

    def __init__(self, plan_or_steps: Plan | Sequence[Step]) -> None:
        steps = plan_or_steps.steps if isinstance(plan_or_steps, Plan) else plan_or_steps
        self._steps: list[Step] = list(steps)
        self._order: list[str] = []
        self._dependencies: dict[str, list[str]] = {}
        for step in self._steps:
            if step.id in self._dependencies:
                continue
            self._order.append(step.id)
            deduped: list[str] = []
            for dependency in step.depends_on:
                if dependency not in deduped:
                    deduped.append(dependency)
            self._dependencies[step.id] = deduped
        self._children: dict[str, list[str]] = {step_id: [] for step_id in self._order}
        for step_id in self._order:
            for dependency in self._dependencies[step_id]:
                if dependency in self._children:
                    self._children[dependency].append(step_id)
        self._levels: list[list[str]] | None = None

    # ------------------------------------------------------------------ public
    def validate(self) -> None:
        """Raise :class:`PlanValidationError` when the graph cannot be executed."""
        problems: list[str] = []
        seen: set[str] = set()
        for step in self._steps:
            if not step.id or not step.id.strip():
                problems.append("Step identifiers must be non-empty.")
            if step.id in seen:
                problems.append(f"Duplicate step identifier '{step.id}'.")
            seen.add(step.id)

        for step_id in self._order:
            for dependency in self._dependencies[step_id]:
                if dependency == step_id:
                    problems.append(f"Step '{step_id}' depends on itself.")
                elif dependency not in self._children:
                    problems.append(f"Step '{step_id}' depends on unknown step '{dependency}'.")

        cycles = self.find_cycles()
        if cycles:
            members = ", ".join(member for group in cycles for member in group)
            problems.append(f"Dependency cycle detected among steps: {members}.")

        if problems:
            LOGGER.info("Rejected plan graph: %s", "; ".join(problems))
            raise PlanValidationError(problems[-1] if cycles else problems[0], problems=problems, cycles=cycles)

    def find_cycles(self) -> list[list[str]]:
        """Return every group of steps that participates in a cycle."""
        index_of: dict[str, int] = {}
        lowlink: dict[str, int] = {}
        on_stack: set[str] = set()
        stack: list[str] = []
        components: list[list[str]] = []
        counter = 0

        for root in self._order:
            if root in index_of:
                continue
            work: list[tuple[str, int]] = [(root, 0)]
            while work:
                node, child_index = work.pop()
                if child_index == 0:
                    index_of[node] = lowlink[node] = counter
                    counter += 1
                    stack.append(node)
                    on_stack.add(node)
                edges = [dep for dep in self._dependencies[node] if dep in self._children]
                if child_index < len(edges):
                    work.append((node, child_index + 1))
                    target = edges[child_index]
                    if target not in index_of:
                        work.append((target, 0))
                    elif target in on_stack:
                        lowlink[node] = min(lowlink[node], index_of[target])
                    continue
                if lowlink[node] == index_of[node]:
                    component: list[str] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    components.append(component)
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])

        position = {step_id: offset for offset, step_id in enumerate(self._order)}
        cycles: list[list[str]] = []
        for component in components:
            if len(component) == 1:
                only = component[0]
                if only not in self._dependencies[only]:
                    continue
            cycles.append(sorted(component, key=position.__getitem__))
        cycles.sort(key=lambda group: position[group[0]])
        return cycles

    def levels(self) -> list[list[str]]:
        """Group step identifiers into levels using Kahn's algorithm."""
        if self._levels is not None:
            return [list(level) for level in self._levels]
        self.validate()

        indegree = {step_id: len(self._dependencies[step_id]) for step_id in self._order}
        current = [step_id for step_id in self._order if indegree[step_id] == 0]
        levels: list[list[str]] = []
        while current:
            levels.append(current)
            unlocked: set[str] = set()
            for step_id in current:
                for child in self._children[step_id]:
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        unlocked.add(child)
            current = [step_id for step_id in self._order if step_id in unlocked]

        self._levels = levels
        return [list(level) for level in levels]

    def level_index(self) -> dict[str, int]:
        """Map each step identifier to the level that contains it."""
        return {
            step_id: offset
            for offset, level in enumerate(self.levels())
            for step_id in level
        }

    def dependents(self, step_id: str) -> list[str]:
        """Return the transitive dependents of ``step_id`` in declaration order."""
        found: set[str] = set()
        frontier = list(self._children.get(step_id, []))
        while frontier:
            candidate = frontier.pop()
            if candidate in found:
                continue
            found.add(candidate)
            frontier.extend(self._children.get(candidate, []))
        return [item for item in self._order if item in found]

    def dependencies(self, step_id: str) -> list[str]:
        return list(self._dependencies.get(step_id, []))


def compute_levels(plan: Plan) -> list[list[str]]:
    """Validate ``plan`` and return its execution levels."""
    return DependencyResolver(plan).levels()


__all__ = ["DependencyResolver", "compute_levels"]
