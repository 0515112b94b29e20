# =============================================================================
# OUTPUT RESOLVER TESTS
# =============================================================================

from unittest.mock import MagicMock

import pytest

from conftest import FakeBackend
from stack_deployer.console import Phase, Status
from stack_deployer.errors import BackendUnavailable, OutputNotFound
from stack_deployer.outputs import OutputResolver


class TestRequiredLookups:
  """Lookups feeding a parameter must succeed."""

  def test_require_output(self):
    resolver = OutputResolver(FakeBackend(outputs={"app": {"LoadBalancerURL": "http://alb"}}, existing=["app"]))
    assert resolver.require_output("app", "LoadBalancerURL") == "http://alb"

  def test_require_output_missing(self):
    resolver = OutputResolver(FakeBackend(outputs={"app": {}}))
    with pytest.raises(OutputNotFound) as excinfo:
      resolver.require_output("app", "LoadBalancerURL", requested_by="frontend")
    assert "frontend" in str(excinfo.value)
    assert "LoadBalancerURL" in str(excinfo.value)

  def test_require_export(self):
    resolver = OutputResolver(FakeBackend(exports={"AdminApiKeyArn": "arn:1"}))
    assert resolver.require_export("AdminApiKeyArn") == "arn:1"

  def test_require_export_missing(self):
    with pytest.raises(OutputNotFound, match="Export 'AdminApiKeyArn'"):
      OutputResolver(FakeBackend()).require_export("AdminApiKeyArn")

  def test_backend_error_propagates(self):
    backend = MagicMock()
    backend.describe.side_effect = BackendUnavailable("offline")
    with pytest.raises(BackendUnavailable):
      OutputResolver(backend).require_output("app", "url")


class TestInformationalLookups:
  """Optional lookups are logged and treated as absent."""

  def test_present_output(self):
    resolver = OutputResolver(FakeBackend(outputs={"app": {"url": "http://alb"}}, existing=["app"]))
    assert resolver.informational(stack="app", output="url") == "http://alb"

  def test_absent_export_warns(self):
    events = []
    resolver = OutputResolver(FakeBackend(), on_event=events.append)
    assert resolver.informational(export="AdminApiKeyArn") is None
    assert events[0].phase is Phase.LOOKUP
    assert events[0].status is Status.WARNING
    assert "AdminApiKeyArn" in events[0].detail

  def test_failing_lookup_is_absorbed(self):
    events = []
    backend = MagicMock()
    backend.describe.side_effect = BackendUnavailable("offline")
    resolver = OutputResolver(backend, on_event=events.append)
    assert resolver.informational(stack="app", output="url") is None
    assert "offline" in events[0].detail


class TestDescribe:
  """describe() is a best-effort snapshot."""

  def test_snapshot(self):
    resolver = OutputResolver(FakeBackend(outputs={"app": {"url": "x"}}, existing=["app"]))
    assert resolver.describe("app") == {"url": "x"}

  def test_errors_give_empty_snapshot(self):
    events = []
    backend = MagicMock()
    backend.describe.side_effect = BackendUnavailable("offline")
    assert OutputResolver(backend, on_event=events.append).describe("app") == {}
    assert events[0].stack_name == "app"

  def test_find_export(self):
    resolver = OutputResolver(FakeBackend(exports={"Name": "value"}))
    assert resolver.find_export("Name") == "value"
    assert resolver.find_export("Other") is None
