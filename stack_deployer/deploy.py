"""Sequential deployment of a plan, with a second pass for deferred values.

Some parameters can only be known once a stack exists: a stack that needs
its own public URL, or one that needs an output of a stack deployed after
it. Those parameters are provisioned with the value the live stack already
holds, or a placeholder on a first run, and the stack is redeployed once, in
place, after the whole plan has gone through. A stack that reused a live
value is only redeployed when that value changed during the run.

Deploy stops at the first failed stack. Stacks already provisioned are left
standing; rerunning the same plan updates them in place.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Set, Tuple

from .backend import ProvisioningBackend
from .console import EventSink, Phase, ProgressEvent, Status, discard_event
from .errors import OutputNotFound, ProvisionFailed, StackDeployError
from .graph import DeploymentPlan
from .manifest import ParameterBinding, StackSpec, validate_parameters
from .outputs import OutputResolver

SELF_REFERENCE_REASON = "awaiting self-referential output"


class DeploymentContext:
  """Outputs of the stacks provisioned during one run, keyed by stack name."""

  def __init__(self) -> None:
    self._outputs: Dict[str, Dict[str, Any]] = {}

  def record(self, stack_name: str, outputs: Dict[str, Any]) -> None:
    merged = dict(self._outputs.get(stack_name, {}))
    merged.update(outputs or {})
    self._outputs[stack_name] = merged

  def __contains__(self, stack_name: object) -> bool:
    return stack_name in self._outputs

  def __len__(self) -> int:
    return len(self._outputs)

  def outputs(self, stack_name: str) -> Dict[str, Any]:
    return dict(self._outputs.get(stack_name, {}))

  def lookup(self, stack_name: str, key: str) -> Any:
    try:
      return self._outputs[stack_name][key]
    except KeyError as exc:
      raise OutputNotFound(stack_name, key) from exc

  def as_dict(self) -> Dict[str, Dict[str, Any]]:
    return copy.deepcopy(self._outputs)


@dataclass
class PendingRedeploy:
  stack_name: str
  reason: str
  resolved_parameters: Dict[str, Any]
  deferred: List[ParameterBinding] = field(default_factory=list)


@dataclass
class DeployResult:
  context: DeploymentContext
  pending: List[PendingRedeploy] = field(default_factory=list)
  redeployed: List[str] = field(default_factory=list)
  warnings: List[str] = field(default_factory=list)


class DeployOrchestrator:
  def __init__(
    self,
    backend: ProvisioningBackend,
    resolver: Optional[OutputResolver] = None,
    on_event: Optional[EventSink] = None,
  ) -> None:
    self._backend = backend
    self._emit = on_event or discard_event
    self._resolver = resolver or OutputResolver(backend, self._emit)

  def validate(self, plan: DeploymentPlan) -> Dict[str, Dict[str, Any]]:
    """Check every stack before the first backend call and return static parameters."""
    static: Dict[str, Dict[str, Any]] = {}
    for spec in plan:
      static[spec.name] = validate_parameters(spec)
      self._backend.validate(spec)
    return static

  def _current_value(self, binding: ParameterBinding, snapshots: Dict[str, Dict[str, Any]]) -> Any:
    """Value the source stack holds right now, or the placeholder if it has none yet."""
    if binding.source_stack not in snapshots:
      snapshots[binding.source_stack] = self._resolver.describe(binding.source_stack)
    value = snapshots[binding.source_stack].get(binding.output)
    return binding.placeholder if value is None else value

  def resolve_parameters(
    self,
    spec: StackSpec,
    static: Dict[str, Any],
    context: DeploymentContext,
    planned: Set[str],
    exporters: Optional[Dict[str, Tuple[str, str]]] = None,
    snapshots: Optional[Dict[str, Dict[str, Any]]] = None,
  ) -> Tuple[Dict[str, Any], List[Tuple[ParameterBinding, str]]]:
    """Fill bindings from this run's outputs, or from the backend for stacks outside the plan.

    Bindings to stacks that have not been provisioned yet in this run take
    the value the live stack already holds, or the placeholder when there is
    none, and are returned as deferred so the redeploy pass can settle them.
    ``exporters`` maps an export name to the planned stack and output that
    produce it.
    """
    exporters = exporters or {}
    snapshots = {} if snapshots is None else snapshots
    parameters = dict(static)
    deferred: List[Tuple[ParameterBinding, str]] = []

    for name, binding in spec.parameter_bindings.items():
      if binding.export:
        if binding.output not in exporters:
          parameters[name] = self._resolver.require_export(binding.output, requested_by=spec.name)
          continue
        source_stack, output = exporters[binding.output]
        binding = replace(binding, source_stack=source_stack, output=output, export=False)

      if spec.is_self_binding(binding):
        parameters[name] = self._current_value(binding, snapshots)
        deferred.append((binding, SELF_REFERENCE_REASON))
      elif binding.source_stack in context:
        try:
          parameters[name] = context.lookup(binding.source_stack, binding.output)
        except OutputNotFound as exc:
          raise OutputNotFound(binding.source_stack, binding.output, spec.name) from exc
      elif binding.source_stack in planned:
        parameters[name] = self._current_value(binding, snapshots)
        deferred.append((binding, f"awaiting output from {binding.source_stack}"))
      else:
        parameters[name] = self._resolver.require_output(
          binding.source_stack, binding.output, requested_by=spec.name
        )

    return parameters, deferred

  def deploy(self, plan: DeploymentPlan) -> DeployResult:
    static = self.validate(plan)
    planned = set(plan.names)
    exporters = {
      export: (spec.name, output) for spec in plan for export, output in spec.exports.items()
    }
    snapshots: Dict[str, Dict[str, Any]] = {}
    context = DeploymentContext()
    result = DeployResult(context=context)

    # Stacks provisioned with live values rather than placeholders.
    unconfirmed: List[PendingRedeploy] = []

    for spec in plan:
      parameters, deferred = self.resolve_parameters(
        spec, static[spec.name], context, planned, exporters, snapshots
      )
      self._provision(spec.name, parameters, context)
      if deferred:
        reasons = list(dict.fromkeys(reason for _, reason in deferred))
        entry = PendingRedeploy(
          stack_name=spec.name,
          reason="; ".join(reasons),
          resolved_parameters=parameters,
          deferred=[binding for binding, _ in deferred],
        )
        if any(parameters[binding.parameter] == binding.placeholder for binding, _ in deferred):
          result.pending.append(entry)
        else:
          unconfirmed.append(entry)

    for entry in unconfirmed:
      parameters, warning = self._discovered_parameters(entry, context)
      if warning is not None or parameters != entry.resolved_parameters:
        result.pending.append(entry)

    for pending in result.pending:
      parameters, warning = self._discovered_parameters(pending, context)
      if warning is None:
        warning = self._redeploy(pending, parameters, context)
      if warning is None:
        result.redeployed.append(pending.stack_name)
      else:
        result.warnings.append(warning)
        self._emit(ProgressEvent(pending.stack_name, Phase.REDEPLOY, Status.WARNING, warning))

    return result

  def _provision(self, stack_name: str, parameters: Dict[str, Any], context: DeploymentContext) -> None:
    self._emit(ProgressEvent(stack_name, Phase.PROVISION, Status.STARTED))
    try:
      outcome = self._backend.provision(stack_name, parameters)
    except StackDeployError as exc:
      if exc.stack_name is None:
        exc.stack_name = stack_name
      self._emit(ProgressEvent(stack_name, Phase.PROVISION, Status.FAILED, str(exc)))
      raise

    if not outcome.succeeded:
      detail = outcome.error or "backend reported failure"
      self._emit(ProgressEvent(stack_name, Phase.PROVISION, Status.FAILED, detail))
      raise ProvisionFailed(stack_name, detail)

    context.record(stack_name, outcome.outputs)
    self._emit(ProgressEvent(stack_name, Phase.PROVISION, Status.SUCCEEDED))

  def _discovered_parameters(
    self, pending: PendingRedeploy, context: DeploymentContext
  ) -> Tuple[Dict[str, Any], Optional[str]]:
    parameters = dict(pending.resolved_parameters)
    for binding in pending.deferred:
      try:
        parameters[binding.parameter] = context.lookup(binding.source_stack, binding.output)
      except OutputNotFound:
        return parameters, (
          f"{binding.reference} was not produced; '{binding.parameter}' on stack "
          f"'{pending.stack_name}' still holds its placeholder."
        )
    return parameters, None

  def _redeploy(
    self, pending: PendingRedeploy, parameters: Dict[str, Any], context: DeploymentContext
  ) -> Optional[str]:
    """Re-provision one stack with real values. Returns a warning instead of raising."""
    self._emit(ProgressEvent(pending.stack_name, Phase.REDEPLOY, Status.STARTED, pending.reason))
    try:
      outcome = self._backend.provision(pending.stack_name, parameters)
    except StackDeployError as exc:
      return f"Redeploy of '{pending.stack_name}' failed: {exc}. The stack is live with placeholder values."

    if not outcome.succeeded:
      detail = outcome.error or "backend reported failure"
      return f"Redeploy of '{pending.stack_name}' failed: {detail}. The stack is live with placeholder values."

    pending.resolved_parameters = parameters
    context.record(pending.stack_name, outcome.outputs)
    self._emit(ProgressEvent(pending.stack_name, Phase.REDEPLOY, Status.SUCCEEDED))
    return None
