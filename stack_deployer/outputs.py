"""Looks up stack outputs and named exports from the backend.

Snapshots may lag right after a mutating call. Lookups that only feed the
post-deploy summary are allowed to come back empty; lookups a downstream
parameter depends on are not.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from .backend import ProvisioningBackend
from .console import EventSink, Phase, ProgressEvent, Status, discard_event
from .errors import OutputNotFound, StackDeployError


class OutputResolver:
  def __init__(self, backend: ProvisioningBackend, on_event: Optional[EventSink] = None) -> None:
    self._backend = backend
    self._emit = on_event or discard_event

  def _warn(self, subject: str, detail: str) -> None:
    self._emit(ProgressEvent(subject, Phase.LOOKUP, Status.WARNING, detail))

  def describe(self, stack_name: str) -> Dict[str, Any]:
    try:
      return dict(self._backend.describe(stack_name) or {})
    except StackDeployError as exc:
      self._warn(stack_name, f"could not describe stack: {exc}")
      return {}

  def find_export(self, name: str) -> Optional[Any]:
    return self._backend.find_export(name)

  def require_output(self, stack_name: str, key: str, requested_by: Optional[str] = None) -> Any:
    outputs = self._backend.describe(stack_name) or {}
    if key not in outputs:
      raise OutputNotFound(stack_name, key, requested_by)
    return outputs[key]

  def require_export(self, name: str, requested_by: Optional[str] = None) -> Any:
    value = self._backend.find_export(name)
    if value is None:
      raise OutputNotFound(name, requested_by=requested_by)
    return value

  def informational(
    self,
    *,
    stack: Optional[str] = None,
    output: Optional[str] = None,
    export: Optional[str] = None,
  ) -> Optional[Any]:
    """Best-effort lookup; anything missing is reported and treated as absent."""
    subject = export or stack or "outputs"
    try:
      if export:
        value = self._backend.find_export(export)
      else:
        value = (self._backend.describe(stack) or {}).get(output)
    except StackDeployError as exc:
      self._warn(subject, f"lookup failed: {exc}")
      return None
    if value is None:
      missing = f"export '{export}'" if export else f"output '{output}'"
      self._warn(subject, f"{missing} not found")
    return value
