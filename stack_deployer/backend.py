"""Provisioning backends.

``ProvisioningBackend`` is the contract the orchestrators depend on.
``AzureCliBackend`` implements it with subscription-scoped Azure deployment
stacks driven through the ``az`` executable.
"""
from __future__ import annotations

import json
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TextIO

from .errors import BackendUnavailable, CredentialError, ValidationError
from .manifest import StackSpec


class ProvisionStatus(str, Enum):
  SUCCEEDED = "Succeeded"
  FAILED = "Failed"


class DeprovisionStatus(str, Enum):
  DESTROYED = "Destroyed"
  NOT_FOUND = "NotFound"
  FAILED = "Failed"


@dataclass
class ProvisionResult:
  stack_name: str
  status: ProvisionStatus
  outputs: Dict[str, Any] = field(default_factory=dict)
  error: Optional[str] = None

  @property
  def succeeded(self) -> bool:
    return self.status is ProvisionStatus.SUCCEEDED


@dataclass
class DeprovisionResult:
  stack_name: str
  status: DeprovisionStatus
  detail: str = ""


class ProvisioningBackend(ABC):
  """Turns a stack name plus parameters into running resources.

  ``provision`` on an existing stack name updates that stack in place and
  ``deprovision`` of an absent stack reports NotFound, so every call is safe
  to repeat after an interrupted run.
  """

  def validate(self, spec: StackSpec) -> None:
    """Raise ValidationError if ``spec`` cannot be handed to this backend."""

  @abstractmethod
  def provision(self, stack_name: str, parameters: Dict[str, Any]) -> ProvisionResult:
    raise NotImplementedError

  @abstractmethod
  def deprovision(self, stack_name: str) -> DeprovisionResult:
    raise NotImplementedError

  @abstractmethod
  def describe(self, stack_name: str) -> Dict[str, Any]:
    raise NotImplementedError

  @abstractmethod
  def find_export(self, name: str) -> Optional[Any]:
    raise NotImplementedError

  @abstractmethod
  def identity(self) -> Dict[str, Any]:
    raise NotImplementedError


NOT_FOUND_MARKERS = (
  "DeploymentStackNotFound",
  "ResourceNotFound",
  "could not be found",
  "was not found",
)
CREDENTIAL_MARKERS = (
  "az login",
  "AADSTS",
  "InvalidAuthenticationToken",
  "ExpiredAuthenticationToken",
  "No subscription found",
)
NETWORK_MARKERS = (
  "Max retries exceeded",
  "Failed to establish a new connection",
  "Connection aborted",
  "Temporary failure in name resolution",
)


def format_command(command: Iterable[str]) -> str:
  return " ".join(json.dumps(arg) for arg in command)


def parse_stack_outputs(payload: Any) -> Dict[str, Any]:
  if not isinstance(payload, dict):
    return {}
  outputs = payload.get("outputs", {}) or {}
  if not isinstance(outputs, dict):
    return {}
  resolved: Dict[str, Any] = {}
  for key, value in outputs.items():
    if isinstance(value, dict) and "value" in value:
      resolved[key] = value["value"]
    else:
      resolved[key] = value
  return resolved


def _error_detail(completed: subprocess.CompletedProcess) -> str:
  text = (completed.stderr or "").strip() or (completed.stdout or "").strip()
  return text or f"exit code {completed.returncode}"


def _contains_any(text: str, markers: Sequence[str]) -> bool:
  return any(marker in text for marker in markers)


def build_az_command(
  spec: StackSpec,
  *,
  location: str,
  action_on_unmanage: str,
  deny_settings_mode: str,
  az_cli: str,
  extra_args: Iterable[str],
  parameter_overrides: Dict[str, Any],
) -> List[str]:
  extra_args = list(extra_args)
  if spec.template_file is None:
    raise ValidationError("no template file declared.", spec.name)

  command = [
    az_cli,
    "stack",
    "sub",
    "create",
    "--name",
    spec.name,
    "--location",
    spec.location or location,
    "--template-file",
    str(spec.template_file),
  ]

  if spec.parameter_file:
    command.extend(["--parameters", str(spec.parameter_file)])

  for param_name, value in parameter_overrides.items():
    serialized = json.dumps(value)
    command.extend(["--parameters", f"{param_name}={serialized}"])

  command.extend([
    "--action-on-unmanage",
    action_on_unmanage,
    "--deny-settings-mode",
    deny_settings_mode,
  ])

  if "--yes" not in extra_args:
    command.append("--yes")

  has_output_flag = any(
    arg == "--output"
    or arg.startswith("--output=")
    or arg == "-o"
    or (arg.startswith("-o") and len(arg) > 2)
    for arg in extra_args
  )
  if not has_output_flag:
    command.extend(["--output", "json"])

  command.extend(extra_args)
  return command


Runner = Callable[..., subprocess.CompletedProcess]


class AzureCliBackend(ProvisioningBackend):
  def __init__(
    self,
    specs: Sequence[StackSpec],
    *,
    az_cli: str = "az",
    location: str = "uksouth",
    action_on_unmanage: str = "deleteAll",
    deny_settings_mode: str = "none",
    extra_args: Iterable[str] = (),
    dry_run: bool = False,
    echo_commands: bool = False,
    stream: Optional[TextIO] = None,
    runner: Runner = subprocess.run,
  ) -> None:
    self._specs = {spec.name: spec for spec in specs}
    self._az_cli = az_cli
    self._az_path: Optional[str] = None
    self.location = location
    self.action_on_unmanage = action_on_unmanage
    self.deny_settings_mode = deny_settings_mode
    self.extra_args = list(extra_args)
    self.dry_run = dry_run
    self.echo_commands = echo_commands
    self._stream = stream
    self._runner = runner

  def _spec(self, stack_name: str) -> StackSpec:
    spec = self._specs.get(stack_name)
    if spec is None:
      raise ValidationError("stack is not declared in the plan.", stack_name)
    return spec

  def az_path(self) -> str:
    if self.dry_run:
      return self._az_cli
    if self._az_path is None:
      resolved = shutil.which(self._az_cli)
      if resolved is None:
        raise BackendUnavailable(
          f"Azure CLI executable '{self._az_cli}' was not found on PATH.",
          hint="Install Azure CLI or supply --az-cli with the full path to the executable.",
        )
      self._az_path = resolved
    return self._az_path

  def _echo(self, command: List[str]) -> None:
    if self.dry_run or self.echo_commands:
      prefix = "[dry-run] " if self.dry_run else ""
      print(f"{prefix}{format_command(command)}", file=self._stream or sys.stdout)

  def _run(self, command: List[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
    self._echo(command)
    try:
      return self._runner(command, cwd=cwd, check=False, capture_output=True, text=True)
    except FileNotFoundError as exc:
      raise BackendUnavailable(
        f"Command '{command[0]}' could not be executed ({exc.strerror or 'file not found'}).",
        hint="Ensure it is installed and available on PATH.",
      ) from exc

  def _raise_for_environment(self, detail: str) -> None:
    if _contains_any(detail, CREDENTIAL_MARKERS):
      raise CredentialError(detail)
    if _contains_any(detail, NETWORK_MARKERS):
      raise BackendUnavailable(detail, hint="Check your network connection and retry; completed stacks are kept.")

  def validate(self, spec: StackSpec) -> None:
    if spec.template_file is None:
      raise ValidationError("no template file declared.", spec.name)
    if not spec.template_file.exists():
      raise ValidationError(f"template file '{spec.template_file}' does not exist.", spec.name)
    if spec.parameter_file and not spec.parameter_file.exists():
      raise ValidationError(f"parameter file '{spec.parameter_file}' does not exist.", spec.name)

  def provision(self, stack_name: str, parameters: Dict[str, Any]) -> ProvisionResult:
    spec = self._spec(stack_name)
    command = build_az_command(
      spec,
      location=self.location,
      action_on_unmanage=self.action_on_unmanage,
      deny_settings_mode=self.deny_settings_mode,
      az_cli=self.az_path(),
      extra_args=list(spec.extra_az_args) + self.extra_args,
      parameter_overrides=parameters,
    )

    if self.dry_run:
      self._echo(command)
      outputs = {name: f"<dry-run:{stack_name}.{name}>" for name in spec.produces_outputs}
      return ProvisionResult(stack_name, ProvisionStatus.SUCCEEDED, outputs=outputs)

    completed = self._run(command, cwd=spec.base_directory)
    if completed.returncode != 0:
      detail = _error_detail(completed)
      self._raise_for_environment(detail)
      return ProvisionResult(stack_name, ProvisionStatus.FAILED, error=detail)

    try:
      outputs = parse_stack_outputs(json.loads(completed.stdout or "{}"))
    except json.JSONDecodeError:
      outputs = {}
    if not outputs and spec.produces_outputs:
      outputs = self.describe(stack_name)
    return ProvisionResult(stack_name, ProvisionStatus.SUCCEEDED, outputs=outputs)

  def deprovision(self, stack_name: str) -> DeprovisionResult:
    command = [
      self.az_path(),
      "stack",
      "sub",
      "delete",
      "--name",
      stack_name,
      "--action-on-unmanage",
      self.action_on_unmanage,
      "--yes",
    ]
    if self.dry_run:
      self._echo(command)
      return DeprovisionResult(stack_name, DeprovisionStatus.DESTROYED, "dry run")

    completed = self._run(command)
    if completed.returncode == 0:
      return DeprovisionResult(stack_name, DeprovisionStatus.DESTROYED)
    detail = _error_detail(completed)
    if _contains_any(detail, NOT_FOUND_MARKERS):
      return DeprovisionResult(stack_name, DeprovisionStatus.NOT_FOUND, "already absent")
    self._raise_for_environment(detail)
    return DeprovisionResult(stack_name, DeprovisionStatus.FAILED, detail)

  def describe(self, stack_name: str) -> Dict[str, Any]:
    command = [self.az_path(), "stack", "sub", "show", "--name", stack_name, "--output", "json"]
    if self.dry_run:
      spec = self._specs.get(stack_name)
      names = spec.produces_outputs if spec else []
      return {name: f"<dry-run:{stack_name}.{name}>" for name in names}
    completed = self._run(command)
    if completed.returncode != 0:
      detail = _error_detail(completed)
      if not _contains_any(detail, NOT_FOUND_MARKERS):
        self._raise_for_environment(detail)
      return {}
    try:
      payload = json.loads(completed.stdout)
    except json.JSONDecodeError:
      return {}
    return parse_stack_outputs(payload)

  def find_export(self, name: str) -> Optional[Any]:
    for spec in self._specs.values():
      if name in spec.exports:
        if self.dry_run:
          return f"<dry-run:export:{name}>"
        return self.describe(spec.name).get(spec.exports[name])
    return None

  def identity(self) -> Dict[str, Any]:
    command = [self.az_path(), "account", "show", "--output", "json"]
    if self.dry_run:
      return {"name": "dry-run"}
    completed = self._run(command)
    if completed.returncode != 0:
      raise CredentialError(_error_detail(completed))
    try:
      return json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as exc:
      raise CredentialError(f"unexpected 'az account show' output: {exc}") from exc
