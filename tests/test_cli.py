# =============================================================================
# CLI TESTS
# =============================================================================
# Commands run against a fake backend patched in place of the az backend.
# =============================================================================

import os
from unittest.mock import patch

import pytest

from conftest import FakeBackend
from stack_deployer.backend import DeprovisionStatus
from stack_deployer.cli import main, parse_arguments
from stack_deployer.errors import CredentialError

CHAIN_PLAN = """
stacks:
  - name: A
    outputs: [Url]
  - name: B
    dependsOn: [A]
    parameterBindings:
      upstream: A.Url
  - name: C
    dependsOn: [B]
  - name: D
    dependsOn: [C]
informational:
  - label: Frontend
    stack: A
    output: Url
  - label: Admin key
    export: AdminApiKeyArn
"""


@pytest.fixture
def chain_plan(plan_file):
  return str(plan_file(CHAIN_PLAN))


def _run(argv, backend):
  with patch("stack_deployer.cli.build_backend", return_value=backend) as factory:
    code = main(argv)
  return code, factory


class TestPlanCommand:
  """plan prints the order without touching a backend."""

  def test_prints_execution_order(self, chain_plan, capsys):
    code, factory = _run(["--plan", chain_plan, "--color", "never", "plan"], FakeBackend())
    out = capsys.readouterr().out
    assert code == 0
    factory.assert_not_called()
    assert "1. A" in out and "4. D" in out

  def test_skip_dependencies_requires_stacks(self, chain_plan, capsys):
    code, _ = _run(["--plan", chain_plan, "plan", "--skip-dependencies"], FakeBackend())
    assert code == 1
    assert "--skip-dependencies requires --stacks" in capsys.readouterr().err

  def test_cycle_is_reported(self, plan_file, capsys):
    path = plan_file("stacks:\n  - name: a\n    dependsOn: [b]\n  - name: b\n    dependsOn: [a]\n")
    code, _ = _run(["--plan", str(path), "plan"], FakeBackend())
    assert code == 1
    assert "Cyclic dependency" in capsys.readouterr().err


class TestDeployCommand:
  """deploy runs the orchestrator after the gate and identity check."""

  def test_deploy_all(self, chain_plan, capsys):
    backend = FakeBackend(outputs={"A": {"Url": "https://a"}})
    code, _ = _run(["--plan", chain_plan, "--color", "never", "deploy", "--yes"], backend)
    captured = capsys.readouterr()

    assert code == 0
    assert backend.calls[0] == ("identity",)
    assert backend.called("provision") == ["A", "B", "C", "D"]
    assert backend.deployed["B"] == {"upstream": "https://a"}
    assert "Frontend: https://a" in captured.out
    assert "AdminApiKeyArn" in captured.err

  def test_deploy_failure(self, chain_plan, capsys):
    backend = FakeBackend(outputs={"A": {"Url": "https://a"}}, fail_provision={"C": "quota exceeded"})
    code, _ = _run(["--plan", chain_plan, "--color", "never", "deploy", "--yes"], backend)
    err = capsys.readouterr().err

    assert code == 1
    assert backend.called("provision") == ["A", "B", "C"]
    assert "'C'" in err
    assert "quota exceeded" in err
    assert "Troubleshooting tips" in err

  def test_deploy_cancelled(self, chain_plan, capsys):
    backend = FakeBackend()
    with patch("builtins.input", return_value="n"):
      code, _ = _run(["--plan", chain_plan, "deploy"], backend)
    assert code == 0
    assert backend.calls == []
    assert "cancelled" in capsys.readouterr().out

  def test_second_confirmation_after_summary(self, chain_plan, capsys):
    backend = FakeBackend()
    with patch("builtins.input", side_effect=["y", ""]) as ask:
      code, _ = _run(["--plan", chain_plan, "--color", "never", "deploy"], backend)
    out = capsys.readouterr().out

    assert code == 0
    assert ask.call_count == 2
    assert backend.calls == [("identity",)]
    assert "Deployment summary:" in out
    assert "Subscription: test-subscription" in out
    assert "Deployment cancelled." in out

  def test_both_confirmations_accepted(self, chain_plan):
    backend = FakeBackend(outputs={"A": {"Url": "https://a"}})
    with patch("builtins.input", side_effect=["y", "y"]):
      code, _ = _run(["--plan", chain_plan, "deploy"], backend)
    assert code == 0
    assert backend.called("provision") == ["A", "B", "C", "D"]

  def test_backend_error_names_stack(self, chain_plan, capsys):
    backend = FakeBackend(
      outputs={"A": {"Url": "https://a"}},
      fail_provision={"B": CredentialError("token expired")},
    )
    code, _ = _run(["--plan", chain_plan, "--color", "never", "deploy", "--yes"], backend)
    err = capsys.readouterr().err

    assert code == 1
    assert "Error: Stack 'B': Credential check failed: token expired" in err
    assert "az login" in err

  def test_deploy_subset_with_existing_outputs(self, chain_plan):
    backend = FakeBackend(outputs={"A": {"Url": "https://live"}}, existing=["A"])
    code, _ = _run(["--plan", chain_plan, "deploy", "--yes", "--stacks", "B", "--skip-dependencies"], backend)
    assert code == 0
    assert backend.called("provision") == ["B"]
    assert backend.deployed["B"] == {"upstream": "https://live"}


class TestDestroyCommand:
  """destroy needs two confirmations and reports every stack."""

  def test_destroy_all(self, chain_plan, capsys):
    backend = FakeBackend()
    code, _ = _run(["--plan", chain_plan, "--color", "never", "destroy", "--yes", "--confirm", "DESTROY"], backend)
    out = capsys.readouterr().out

    assert code == 0
    assert backend.called("deprovision") == ["D", "C", "B", "A"]
    assert "D: Destroyed" in out

  def test_partial_failure_sets_exit_status(self, chain_plan, capsys):
    backend = FakeBackend(deprovision={"C": DeprovisionStatus.FAILED, "A": DeprovisionStatus.NOT_FOUND})
    code, _ = _run(["--plan", chain_plan, "--color", "never", "destroy", "--yes", "--confirm", "DESTROY"], backend)
    captured = capsys.readouterr()

    assert code == 1
    assert backend.called("deprovision") == ["D", "C", "B", "A"]
    assert "C: Failed" in captured.out
    assert "A: NotFound" in captured.out
    assert "failures in: C" in captured.err

  def test_wrong_phrase_cancels(self, chain_plan, capsys):
    backend = FakeBackend()
    code, factory = _run(["--plan", chain_plan, "destroy", "--yes", "--confirm", "destroy"], backend)
    assert code == 0
    assert backend.calls == []
    factory.assert_not_called()
    assert "cancelled" in capsys.readouterr().out

  def test_interactive_confirmation(self, chain_plan):
    backend = FakeBackend()
    with patch("builtins.input", side_effect=["y", "DESTROY"]):
      code, _ = _run(["--plan", chain_plan, "destroy"], backend)
    assert code == 0
    assert backend.calls[0] == ("identity",)
    assert len(backend.called("deprovision")) == 4

  def test_acknowledgement_refused(self, chain_plan):
    backend = FakeBackend()
    with patch("builtins.input", side_effect=["", "DESTROY"]) as ask:
      code, _ = _run(["--plan", chain_plan, "destroy"], backend)
    assert code == 0
    assert ask.call_count == 1
    assert backend.calls == []


class TestOutputsCommand:
  """outputs describes each stack."""

  def test_lists_outputs(self, chain_plan, capsys):
    backend = FakeBackend(outputs={"A": {"Url": "https://a"}}, existing=["A"])
    code, _ = _run(["--plan", chain_plan, "--color", "never", "outputs", "--stacks", "A"], backend)
    out = capsys.readouterr().out
    assert code == 0
    assert "Url: https://a" in out
    assert backend.called("describe")[0] == "A"


class TestArguments:
  """Argument parsing."""

  def test_unknown_arguments_forwarded(self):
    args = parse_arguments(["deploy", "--what-if", "--mode", "x"])
    assert args.extra_az_args == ["--what-if", "--mode", "x"]

  def test_dependency_mode_from_environment(self):
    with patch.dict(os.environ, {"STACK_DEPLOYER_DEPENDENCIES": "skip"}):
      assert parse_arguments(["deploy"]).dependency_mode == "skip"
      assert parse_arguments(["deploy", "--include-dependencies"]).dependency_mode == "include"

  def test_plan_from_environment(self):
    with patch.dict(os.environ, {"STACK_DEPLOYER_PLAN": "envplan.yaml"}):
      assert parse_arguments(["plan"]).plan == "envplan.yaml"

  def test_plan_rejects_unknown_arguments(self):
    with pytest.raises(SystemExit):
      parse_arguments(["plan", "--bogus"])
