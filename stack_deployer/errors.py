"""Error taxonomy for stack deployment runs.

Configuration problems are raised before the backend is ever called.
Backend problems carry the originating stack name and the backend's own
detail so the CLI can surface both.
"""
from __future__ import annotations

from typing import Iterable, Optional


class StackDeployError(Exception):
  """Base class for every error the deployer raises on purpose."""

  hint: Optional[str] = None
  stack_name: Optional[str] = None


class ConfigurationError(StackDeployError):
  pass


class CycleError(ConfigurationError):
  def __init__(self, members: Iterable[str]) -> None:
    self.members = list(members)
    path = " -> ".join(self.members)
    super().__init__(f"Cyclic dependency detected involving stack '{self.members[0]}' ({path}).")


class ValidationError(ConfigurationError):
  def __init__(self, message: str, stack_name: Optional[str] = None) -> None:
    self.stack_name = stack_name
    if stack_name:
      message = f"Stack '{stack_name}': {message}"
    super().__init__(message)


class CredentialError(StackDeployError):
  def __init__(self, detail: str, hint: str = "Run 'az login' to set up your Azure credentials.") -> None:
    super().__init__(f"Credential check failed: {detail}")
    self.detail = detail
    self.hint = hint


class BackendUnavailable(StackDeployError):
  def __init__(self, detail: str, hint: Optional[str] = None) -> None:
    super().__init__(detail)
    self.detail = detail
    self.hint = hint


class ProvisionFailed(StackDeployError):
  def __init__(self, stack_name: str, detail: str) -> None:
    super().__init__(f"Stack '{stack_name}' failed to provision: {detail}")
    self.stack_name = stack_name
    self.detail = detail


class DeprovisionFailed(StackDeployError):
  def __init__(self, stack_names: Iterable[str]) -> None:
    self.stack_names = list(stack_names)
    super().__init__(f"Teardown completed with failures in: {', '.join(self.stack_names)}")


class OutputNotFound(StackDeployError):
  def __init__(self, source: str, key: Optional[str] = None, requested_by: Optional[str] = None) -> None:
    self.source = source
    self.key = key
    self.requested_by = requested_by
    what = f"Output '{key}' from stack '{source}'" if key else f"Export '{source}'"
    message = f"{what} is unavailable"
    if requested_by:
      message += f"; required by stack '{requested_by}'"
    super().__init__(message + ".")
