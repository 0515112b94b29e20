"""
Pytest configuration and fixtures for stack deployer tests.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from stack_deployer.backend import (
  DeprovisionResult,
  DeprovisionStatus,
  ProvisionResult,
  ProvisionStatus,
  ProvisioningBackend,
)
from stack_deployer.manifest import StackSpec, parse_binding


class FakeBackend(ProvisioningBackend):
  """In-memory backend that records every call in order."""

  def __init__(self, outputs=None, fail_provision=(), deprovision=None, exports=None, existing=()):
    self.outputs: Dict[str, Dict[str, Any]] = outputs or {}
    if not isinstance(fail_provision, dict):
      fail_provision = dict.fromkeys(fail_provision, "rejected by backend")
    self.fail_provision: Dict[str, Any] = fail_provision
    self.deprovision_results: Dict[str, Any] = deprovision or {}
    self.exports: Dict[str, Any] = exports or {}
    self.deployed: Dict[str, Dict[str, Any]] = {}
    # Stacks live before the run starts; others appear once provisioned.
    self.existing = set(existing)
    self.calls: List[tuple] = []

  def provision(self, stack_name, parameters):
    self.calls.append(("provision", stack_name, dict(parameters)))
    if stack_name in self.fail_provision:
      failure = self.fail_provision[stack_name]
      if isinstance(failure, Exception):
        raise failure
      return ProvisionResult(stack_name, ProvisionStatus.FAILED, error=failure)
    self.deployed[stack_name] = dict(parameters)
    return ProvisionResult(stack_name, ProvisionStatus.SUCCEEDED, outputs=dict(self.outputs.get(stack_name, {})))

  def deprovision(self, stack_name):
    self.calls.append(("deprovision", stack_name))
    result = self.deprovision_results.get(stack_name, DeprovisionStatus.DESTROYED)
    if isinstance(result, Exception):
      raise result
    self.deployed.pop(stack_name, None)
    self.existing.discard(stack_name)
    detail = "stuck" if result is DeprovisionStatus.FAILED else ""
    return DeprovisionResult(stack_name, result, detail)

  def describe(self, stack_name):
    self.calls.append(("describe", stack_name))
    if stack_name not in self.existing and stack_name not in self.deployed:
      return {}
    return dict(self.outputs.get(stack_name, {}))

  def find_export(self, name):
    self.calls.append(("find_export", name))
    return self.exports.get(name)

  def identity(self):
    self.calls.append(("identity",))
    return {"name": "test-subscription"}

  def called(self, kind: str) -> List[str]:
    return [call[1] for call in self.calls if call[0] == kind]


def make_spec(name: str, depends_on=(), bindings: Optional[Dict[str, Any]] = None, **kwargs) -> StackSpec:
  parsed = {
    parameter: parse_binding(name, parameter, raw) for parameter, raw in (bindings or {}).items()
  }
  return StackSpec(name=name, depends_on=list(depends_on), parameter_bindings=parsed, **kwargs)


@pytest.fixture
def fake_backend():
  return FakeBackend()


@pytest.fixture
def chain_specs():
  """Linear chain A <- B <- C <- D."""
  return [
    make_spec("A"),
    make_spec("B", ["A"]),
    make_spec("C", ["B"]),
    make_spec("D", ["C"]),
  ]


@pytest.fixture
def plan_file(tmp_path: Path):
  """Write a plan file and return its path."""

  def _write(content: str, name: str = "stacks.yaml") -> Path:
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return path

  return _write
