"""Progress events and their console rendering."""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, TextIO

from .graph import DeploymentPlan

PALETTE_KEYS = ("heading", "root", "dependent", "arrow", "ok", "warn", "error", "reset")


class Phase(str, Enum):
  PROVISION = "provision"
  REDEPLOY = "redeploy"
  DEPROVISION = "deprovision"
  LOOKUP = "lookup"


class Status(str, Enum):
  STARTED = "started"
  SUCCEEDED = "succeeded"
  FAILED = "failed"
  NOT_FOUND = "not-found"
  WARNING = "warning"


@dataclass(frozen=True)
class ProgressEvent:
  stack_name: str
  phase: Phase
  status: Status
  detail: str = ""


EventSink = Callable[[ProgressEvent], None]


def discard_event(event: ProgressEvent) -> None:
  return None


class ColorMode(str, Enum):
  AUTO = "auto"
  ALWAYS = "always"
  NEVER = "never"


def _supports_color_output() -> bool:
  stream = getattr(sys.stdout, "isatty", None)
  return bool(stream and stream()) and os.environ.get("NO_COLOR") is None


def build_console_palette(requested_mode: str) -> Dict[str, str]:
  try:
    mode = ColorMode(requested_mode or ColorMode.AUTO.value)
  except ValueError:
    mode = ColorMode.AUTO

  use_color = mode is ColorMode.ALWAYS or (mode is ColorMode.AUTO and _supports_color_output())
  palette = {key: "" for key in PALETTE_KEYS}
  if use_color:
    palette.update({
      "heading": "\033[1m",
      "root": "\033[32m",
      "dependent": "\033[36m",
      "arrow": "\033[90m",
      "ok": "\033[32m",
      "warn": "\033[33m",
      "error": "\033[31m",
      "reset": "\033[0m",
    })
  return palette


_PHASE_VERBS = {
  Phase.PROVISION: "Deploying",
  Phase.REDEPLOY: "Redeploying",
  Phase.DEPROVISION: "Destroying",
  Phase.LOOKUP: "Looking up outputs of",
}


class ProgressPrinter:
  """Renders progress events; failures and warnings go to stderr."""

  def __init__(
    self,
    palette: Optional[Dict[str, str]] = None,
    out: Optional[TextIO] = None,
    err: Optional[TextIO] = None,
  ) -> None:
    self._palette = palette or {key: "" for key in PALETTE_KEYS}
    self._out = out
    self._err = err
    self.events: List[ProgressEvent] = []

  def __call__(self, event: ProgressEvent) -> None:
    self.events.append(event)
    out = self._out or sys.stdout
    err = self._err or sys.stderr
    reset = self._palette["reset"]
    detail = f": {event.detail}" if event.detail else ""

    if event.status is Status.STARTED:
      print(f"{_PHASE_VERBS[event.phase]} stack '{event.stack_name}'...", file=out)
    elif event.status is Status.SUCCEEDED:
      print(f"  {self._palette['ok']}{event.phase.value} ok{reset} {event.stack_name}{detail}", file=out)
    elif event.status is Status.NOT_FOUND:
      print(f"  {self._palette['warn']}not found{reset} {event.stack_name}{detail}", file=out)
    elif event.status is Status.WARNING:
      print(f"{self._palette['warn']}Warning{reset} [{event.stack_name}]{detail}", file=err)
    else:
      print(f"{self._palette['error']}{event.phase.value} failed{reset} [{event.stack_name}]{detail}", file=err)


def print_dependency_summary(
  plan: DeploymentPlan,
  palette: Optional[Dict[str, str]] = None,
  missing_dependencies: Optional[Dict[str, List[str]]] = None,
  plan_path: Optional[Path] = None,
  out: Optional[TextIO] = None,
) -> None:
  out = out or sys.stdout
  if not len(plan):
    print("No stacks selected for deployment.", file=out)
    return

  if palette is None:
    palette = {key: "" for key in PALETTE_KEYS}
  if missing_dependencies is None:
    missing_dependencies = {}

  execution_names = plan.names
  execution_index = {name: idx for idx, name in enumerate(execution_names)}

  heading = palette.get("heading", "")
  reset = palette.get("reset", "")
  print(f"{heading}Dependency map (selected scope):{reset}", file=out)
  dependency_map: Dict[str, Dict[str, List[str]]] = {}
  for spec in plan:
    dependency_map[spec.name] = {
      "internal": [name for name in spec.depends_on if name in execution_index],
      "external": list(missing_dependencies.get(spec.name, [])),
    }

  roots = [name for name, mapping in dependency_map.items() if not mapping["internal"] and not mapping["external"]]
  dependents = [name for name, mapping in dependency_map.items() if mapping["internal"] or mapping["external"]]

  print(f"  {heading}Root stacks:{reset}", file=out)
  if roots:
    for name in roots:
      print(f"    - {palette.get('root', '')}{name}{reset}", file=out)
  else:
    print("    (none)", file=out)

  print(f"  {heading}Dependent stacks:{reset}", file=out)
  if dependents:
    for name in dependents:
      print(f"    {palette.get('dependent', '')}{name}{reset}", file=out)
      for dependency_name in dependency_map[name]["internal"]:
        print(f"      {palette.get('arrow', '')}-> {reset}{palette.get('root', '')}{dependency_name}{reset}", file=out)
      for dependency_name in dependency_map[name]["external"]:
        print(
          f"      {palette.get('arrow', '')}-> {reset}{palette.get('root', '')}{dependency_name}{reset}"
          + f" {palette.get('arrow', '')}(existing outputs reused){reset}",
          file=out,
        )
  else:
    print("    (none)", file=out)

  print(file=out)

  origin = f" from {plan_path}" if plan_path else ""
  print(f"{heading}Execution order{origin}:{reset}", file=out)
  for position, name in enumerate(execution_names, 1):
    print(f"  {position}. {palette.get('dependent', '')}{name}{reset}", file=out)
  print(file=out)
