"""Best-effort teardown in reverse dependency order.

Every stack gets exactly one deprovision attempt. A stuck stack is recorded
and the run moves on, so independent stacks are never held hostage by it.
The run as a whole fails when any stack failed.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .backend import DeprovisionStatus, ProvisioningBackend
from .console import EventSink, Phase, ProgressEvent, Status, discard_event
from .errors import DeprovisionFailed
from .graph import DeploymentPlan


@dataclass
class TeardownEntry:
  stack_name: str
  status: DeprovisionStatus
  detail: str = ""


@dataclass
class TeardownReport:
  entries: List[TeardownEntry] = field(default_factory=list)

  @property
  def failed(self) -> List[TeardownEntry]:
    return [entry for entry in self.entries if entry.status is DeprovisionStatus.FAILED]

  @property
  def succeeded(self) -> bool:
    return not self.failed

  @property
  def exit_code(self) -> int:
    return 0 if self.succeeded else 1

  def raise_for_failures(self) -> None:
    if self.failed:
      raise DeprovisionFailed(entry.stack_name for entry in self.failed)


_STATUS_EVENTS = {
  DeprovisionStatus.DESTROYED: Status.SUCCEEDED,
  DeprovisionStatus.NOT_FOUND: Status.NOT_FOUND,
  DeprovisionStatus.FAILED: Status.FAILED,
}


class TeardownOrchestrator:
  def __init__(self, backend: ProvisioningBackend, on_event: Optional[EventSink] = None) -> None:
    self._backend = backend
    self._emit = on_event or discard_event

  def teardown(self, order: Iterable) -> TeardownReport:
    """Deprovision stacks in the order given, normally ``StackGraph.teardown_order()``."""
    if isinstance(order, DeploymentPlan):
      names = order.names
    else:
      names = [getattr(item, "name", item) for item in order]

    report = TeardownReport()
    for name in names:
      self._emit(ProgressEvent(name, Phase.DEPROVISION, Status.STARTED))
      try:
        outcome = self._backend.deprovision(name)
        entry = TeardownEntry(name, outcome.status, outcome.detail)
      except Exception as exc:  # pylint: disable=broad-except
        entry = TeardownEntry(name, DeprovisionStatus.FAILED, str(exc) or exc.__class__.__name__)
      report.entries.append(entry)
      self._emit(ProgressEvent(name, Phase.DEPROVISION, _STATUS_EVENTS[entry.status], entry.detail))
    return report
