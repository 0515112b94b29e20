"""Dependency graph over declared stacks and the deploy/teardown orders it yields."""
from __future__ import annotations

import heapq
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .errors import ConfigurationError, CycleError
from .manifest import StackSpec


@dataclass(frozen=True)
class DeploymentPlan:
  stacks: Tuple[StackSpec, ...]

  def __iter__(self) -> Iterator[StackSpec]:
    return iter(self.stacks)

  def __len__(self) -> int:
    return len(self.stacks)

  def __contains__(self, name: object) -> bool:
    return any(spec.name == name for spec in self.stacks)

  @property
  def names(self) -> List[str]:
    return [spec.name for spec in self.stacks]

  def reversed(self) -> "DeploymentPlan":
    return DeploymentPlan(tuple(reversed(self.stacks)))


class StackGraph:
  """Named stacks with explicit dependency edges.

  Construction rejects duplicate names, dependencies on undeclared stacks
  and cycles, so every later query works on a DAG.
  """

  def __init__(self, specs: Sequence[StackSpec]) -> None:
    self._specs: Dict[str, StackSpec] = {}
    self._order_index: Dict[str, int] = {}
    for index, spec in enumerate(specs):
      if spec.name in self._specs:
        raise ConfigurationError(f"Duplicate stack name '{spec.name}'.")
      self._specs[spec.name] = spec
      self._order_index[spec.name] = index

    self._edges: Dict[str, Set[str]] = {}
    for spec in specs:
      unknown = [name for name in spec.depends_on if name not in self._specs]
      if unknown:
        raise ConfigurationError(
          f"Stack '{spec.name}' depends on undeclared stack(s): {', '.join(unknown)}."
        )
      self._edges[spec.name] = set(spec.depends_on)

    self._check_cycles()

  @property
  def names(self) -> List[str]:
    return list(self._specs)

  def __getitem__(self, name: str) -> StackSpec:
    return self._specs[name]

  def __contains__(self, name: object) -> bool:
    return name in self._specs

  def dependencies(self, name: str) -> Set[str]:
    return set(self._edges[name])

  def _sorted(self, names: Iterable[str]) -> List[str]:
    return sorted(names, key=lambda candidate: self._order_index[candidate])

  def _check_cycles(self) -> None:
    visited: Set[str] = set()
    stack: List[str] = []
    on_stack: Set[str] = set()

    def visit(name: str) -> None:
      if name in visited:
        return
      if name in on_stack:
        start = stack.index(name)
        raise CycleError(stack[start:] + [name])
      on_stack.add(name)
      stack.append(name)
      for dependency in self._sorted(self._edges[name]):
        visit(dependency)
      stack.pop()
      on_stack.remove(name)
      visited.add(name)

    for name in self._specs:
      visit(name)

  def _collect(self, targets: Iterable[str], include_dependencies: bool) -> Set[str]:
    unknown = sorted(set(targets) - set(self._specs))
    if unknown:
      raise ConfigurationError(f"Requested stacks were not found in the plan: {', '.join(unknown)}")

    needed: Set[str] = set()

    def collect(name: str) -> None:
      if name in needed:
        return
      needed.add(name)
      if include_dependencies:
        for dependency in self._edges[name]:
          collect(dependency)

    for name in targets:
      collect(name)
    return needed

  def plan(self, targets: Optional[Iterable[str]] = None, include_dependencies: bool = True) -> DeploymentPlan:
    """Return the deploy order, dependencies first, ties by declaration order."""
    if targets is None:
      needed = set(self._specs)
    else:
      needed = self._collect(list(targets), include_dependencies)

    indegree: Dict[str, int] = {}
    dependents: Dict[str, Set[str]] = defaultdict(set)
    for name in needed:
      in_scope = self._edges[name] & needed
      indegree[name] = len(in_scope)
      for dependency in in_scope:
        dependents[dependency].add(name)

    ready = [(self._order_index[name], name) for name, count in indegree.items() if count == 0]
    heapq.heapify(ready)
    order: List[StackSpec] = []
    while ready:
      _, name = heapq.heappop(ready)
      order.append(self._specs[name])
      for child in dependents.get(name, set()):
        indegree[child] -= 1
        if indegree[child] == 0:
          heapq.heappush(ready, (self._order_index[child], child))

    return DeploymentPlan(tuple(order))

  def teardown_order(self, targets: Optional[Iterable[str]] = None) -> DeploymentPlan:
    return self.plan(targets, include_dependencies=False).reversed()

  def dependencies_outside(self, plan: DeploymentPlan) -> Dict[str, List[str]]:
    """Map each planned stack to the dependencies the plan leaves out."""
    in_plan = set(plan.names)
    missing: Dict[str, List[str]] = {}
    for spec in plan:
      outside = [name for name in self._sorted(self._edges[spec.name]) if name not in in_plan]
      if outside:
        missing[spec.name] = outside
    return missing
