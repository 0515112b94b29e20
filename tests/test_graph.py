# =============================================================================
# STACK GRAPH TESTS
# =============================================================================
# Ordering, cycle detection and subset selection.
# =============================================================================

import pytest

from conftest import make_spec
from stack_deployer.errors import ConfigurationError, CycleError
from stack_deployer.graph import StackGraph


def _assert_respects_edges(graph, plan):
  position = {name: index for index, name in enumerate(plan.names)}
  for name in plan.names:
    for dependency in graph.dependencies(name):
      if dependency in position:
        assert position[dependency] < position[name]


class TestPlanOrder:
  """plan() yields dependencies first, deterministically."""

  def test_linear_chain(self, chain_specs):
    assert StackGraph(chain_specs).plan().names == ["A", "B", "C", "D"]

  def test_declared_out_of_order(self):
    specs = [make_spec("app", ["db"]), make_spec("db", ["net"]), make_spec("net")]
    assert StackGraph(specs).plan().names == ["net", "db", "app"]

  def test_ties_broken_by_declaration_order(self):
    specs = [
      make_spec("frontend", ["network"]),
      make_spec("network"),
      make_spec("monitoring"),
      make_spec("security", ["network"]),
    ]
    graph = StackGraph(specs)
    assert graph.plan().names == ["network", "frontend", "monitoring", "security"]

  def test_every_stack_exactly_once(self):
    specs = [
      make_spec("network"),
      make_spec("security", ["network"]),
      make_spec("database", ["network", "security"]),
      make_spec("application", ["database", "security"]),
      make_spec("frontend", ["application"]),
    ]
    graph = StackGraph(specs)
    plan = graph.plan()
    assert sorted(plan.names) == sorted(graph.names)
    assert len(set(plan.names)) == len(specs)
    _assert_respects_edges(graph, plan)

  def test_plan_is_reproducible(self):
    specs = [make_spec("c"), make_spec("b"), make_spec("a", ["b", "c"])]
    first = StackGraph(specs).plan().names
    second = StackGraph(specs).plan().names
    assert first == second == ["c", "b", "a"]


class TestTeardownOrder:
  """Teardown order is the exact reverse of the deploy order."""

  def test_reverse_of_plan(self, chain_specs):
    graph = StackGraph(chain_specs)
    assert graph.teardown_order().names == list(reversed(graph.plan().names))

  def test_reverse_with_branches(self):
    specs = [make_spec("n"), make_spec("s", ["n"]), make_spec("x"), make_spec("d", ["s", "x"])]
    graph = StackGraph(specs)
    assert graph.teardown_order().names == graph.plan().reversed().names

  def test_subset_teardown_leaves_dependencies(self, chain_specs):
    graph = StackGraph(chain_specs)
    assert graph.teardown_order(["B", "D"]).names == ["D", "B"]


class TestCycles:
  """Cycles are rejected at construction."""

  def test_two_node_cycle(self):
    with pytest.raises(CycleError) as excinfo:
      StackGraph([make_spec("A", ["B"]), make_spec("B", ["A"])])
    assert excinfo.value.members[0] in {"A", "B"}
    assert "A" in str(excinfo.value)

  def test_self_dependency(self):
    with pytest.raises(CycleError) as excinfo:
      StackGraph([make_spec("A", ["A"])])
    assert excinfo.value.members == ["A", "A"]

  def test_cycle_behind_acyclic_prefix(self):
    specs = [
      make_spec("root"),
      make_spec("x", ["root", "z"]),
      make_spec("y", ["x"]),
      make_spec("z", ["y"]),
    ]
    with pytest.raises(CycleError) as excinfo:
      StackGraph(specs)
    assert set(excinfo.value.members) == {"x", "y", "z"}

  def test_cycle_error_is_configuration_error(self):
    with pytest.raises(ConfigurationError):
      StackGraph([make_spec("A", ["B"]), make_spec("B", ["A"])])


class TestValidation:
  """Graph construction rejects malformed declarations."""

  def test_unknown_dependency(self):
    with pytest.raises(ConfigurationError, match="undeclared"):
      StackGraph([make_spec("A", ["missing"])])

  def test_duplicate_name(self):
    with pytest.raises(ConfigurationError, match="Duplicate"):
      StackGraph([make_spec("A"), make_spec("A")])

  def test_unknown_target(self, chain_specs):
    with pytest.raises(ConfigurationError, match="not found"):
      StackGraph(chain_specs).plan(["Z"])


class TestSubsets:
  """Targeted plans pull in or skip dependencies."""

  def test_target_includes_dependencies(self, chain_specs):
    assert StackGraph(chain_specs).plan(["C"]).names == ["A", "B", "C"]

  def test_target_without_dependencies(self, chain_specs):
    graph = StackGraph(chain_specs)
    plan = graph.plan(["C"], include_dependencies=False)
    assert plan.names == ["C"]
    assert graph.dependencies_outside(plan) == {"C": ["B"]}

  def test_full_plan_has_nothing_outside(self, chain_specs):
    graph = StackGraph(chain_specs)
    assert graph.dependencies_outside(graph.plan()) == {}
