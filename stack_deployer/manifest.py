"""Plan file loading.

A plan file is YAML with a ``stacks`` list. Files may ``extends`` other
plan files; stack lists are merged by name so overlays only need to name
the stacks and keys they change.
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import yaml

from .errors import ConfigurationError, ValidationError

STACK_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
PLACEHOLDER = "__pending-output__"
SELF_REFERENCE = "self"
EXPORT_PREFIX = "export:"


def _sequence_key(item: Any) -> Optional[str]:
  if not isinstance(item, dict):
    return None
  name = item.get("name")
  if isinstance(name, str) and name:
    return name
  return None


def _merge_sequences(base: List[Any], override: List[Any]) -> List[Any]:
  if not base:
    return copy.deepcopy(override)
  if not override:
    return copy.deepcopy(base)

  if all(isinstance(item, dict) for item in base + override):
    keys: List[str] = []
    base_map: Dict[str, Any] = {}
    for item in base:
      key = _sequence_key(item)
      if key is None or key in base_map:
        # Fallback to overriding the full list when keys are not usable.
        return copy.deepcopy(override)
      keys.append(key)
      base_map[key] = copy.deepcopy(item)

    append_order: List[str] = []
    for item in override:
      key = _sequence_key(item)
      if key is None:
        return copy.deepcopy(override)
      if key in base_map:
        base_map[key] = _deep_merge(base_map[key], item)
      else:
        base_map[key] = copy.deepcopy(item)
        append_order.append(key)

    return [base_map[key] for key in keys + append_order]

  return copy.deepcopy(override)


def _deep_merge(base: Any, override: Any) -> Any:
  if isinstance(base, dict) and isinstance(override, dict):
    result = copy.deepcopy(base)
    for key, value in override.items():
      if key in result:
        result[key] = _deep_merge(result[key], value)
      else:
        result[key] = copy.deepcopy(value)
    return result
  if isinstance(base, list) and isinstance(override, list):
    return _merge_sequences(base, override)
  return copy.deepcopy(override)


@dataclass(frozen=True)
class ParameterBinding:
  """A parameter whose value comes from a stack output or a named export."""

  parameter: str
  output: str
  source_stack: Optional[str] = None
  export: bool = False
  placeholder: Any = PLACEHOLDER

  @property
  def reference(self) -> str:
    if self.export:
      return f"{EXPORT_PREFIX}{self.output}"
    return f"{self.source_stack}.{self.output}"


@dataclass
class StackSpec:
  name: str
  depends_on: List[str] = field(default_factory=list)
  parameters: Dict[str, Any] = field(default_factory=dict)
  produces_outputs: List[str] = field(default_factory=list)
  parameter_bindings: Dict[str, ParameterBinding] = field(default_factory=dict)
  exports: Dict[str, str] = field(default_factory=dict)
  template_file: Optional[Path] = None
  parameter_file: Optional[Path] = None
  location: Optional[str] = None
  description: Optional[str] = None
  extra_az_args: List[str] = field(default_factory=list)
  base_directory: Path = field(default_factory=Path.cwd)

  def is_self_binding(self, binding: ParameterBinding) -> bool:
    return not binding.export and binding.source_stack == self.name


@dataclass
class InformationalOutput:
  label: str
  stack: Optional[str] = None
  output: Optional[str] = None
  export: Optional[str] = None


@dataclass
class PlanConfig:
  path: Path
  stacks: List[StackSpec]
  defaults: Dict[str, Any] = field(default_factory=dict)
  informational: List[InformationalOutput] = field(default_factory=list)

  def stack_map(self) -> Dict[str, StackSpec]:
    return {spec.name: spec for spec in self.stacks}


def parse_binding(stack_name: str, parameter: str, raw: Any) -> ParameterBinding:
  placeholder: Any = PLACEHOLDER
  if isinstance(raw, dict):
    if "placeholder" in raw:
      placeholder = raw["placeholder"]
    raw = raw.get("from")

  if not isinstance(raw, str) or not raw:
    raise ConfigurationError(
      f"Stack '{stack_name}': parameter binding for '{parameter}' must be a string "
      "or a mapping with a 'from' key."
    )

  if raw.startswith(EXPORT_PREFIX):
    export_name = raw[len(EXPORT_PREFIX):]
    if not export_name:
      raise ConfigurationError(f"Stack '{stack_name}': binding '{raw}' for '{parameter}' names no export.")
    return ParameterBinding(parameter=parameter, output=export_name, export=True, placeholder=placeholder)

  if "." not in raw:
    raise ConfigurationError(
      f"Parameter binding '{raw}' for '{parameter}' in stack '{stack_name}' is invalid; "
      "expected 'Stack.Output', 'self.Output' or 'export:Name'."
    )
  source, output = raw.split(".", 1)
  if source == SELF_REFERENCE:
    source = stack_name
  if not source or not output:
    raise ConfigurationError(f"Parameter binding '{raw}' for '{parameter}' in stack '{stack_name}' is invalid.")
  return ParameterBinding(parameter=parameter, output=output, source_stack=source, placeholder=placeholder)


def validate_parameters(spec: StackSpec) -> Dict[str, Any]:
  """Return the stack's static parameters with local path values resolved.

  A parameter declared as ``{path: ..., requires: [...]}`` must point at an
  existing directory or file, and every required entry must exist beneath it.
  """
  resolved: Dict[str, Any] = {}
  for key, value in spec.parameters.items():
    if isinstance(value, dict) and "path" in value:
      raw_path = value["path"]
      if not isinstance(raw_path, str) or not raw_path:
        raise ValidationError(f"parameter '{key}' has an empty path.", spec.name)
      path = (spec.base_directory / raw_path).resolve()
      if not path.exists():
        raise ValidationError(f"parameter '{key}' references '{raw_path}', which does not exist.", spec.name)
      for required in value.get("requires", []) or []:
        if not (path / required).exists():
          raise ValidationError(f"parameter '{key}': no {required} found in {raw_path}.", spec.name)
      resolved[key] = str(path)
    else:
      resolved[key] = copy.deepcopy(value)
  return resolved


class PlanRepository:
  def __init__(self, plan_path: Path) -> None:
    self._path = plan_path

  def load(self) -> PlanConfig:
    if not self._path.is_file():
      raise ConfigurationError(f"Plan file '{self._path}' was not found.")
    data = self._load_plan_data(self._path)

    stacks_data = data.get("stacks")
    if not isinstance(stacks_data, list) or not stacks_data:
      raise ConfigurationError(f"Plan {self._path} must contain a non-empty 'stacks' list.")

    stacks = [self._parse_stack(row) for row in stacks_data]
    seen: Set[str] = set()
    for spec in stacks:
      if spec.name in seen:
        raise ConfigurationError(f"Duplicate stack name '{spec.name}' found in {self._path}.")
      seen.add(spec.name)

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
      raise ConfigurationError(f"Plan {self._path}: 'defaults' must be a mapping if provided.")

    informational = [self._parse_informational(row) for row in data.get("informational") or []]
    return PlanConfig(path=self._path, stacks=stacks, defaults=defaults, informational=informational)

  def _parse_stack(self, row: Any) -> StackSpec:
    if not isinstance(row, dict):
      raise ConfigurationError(f"Plan {self._path}: stack entries must be mappings.")

    name = row.get("name")
    if not name or not isinstance(name, str):
      raise ConfigurationError(f"Plan {self._path}: stack.name is required.")
    if not STACK_NAME_PATTERN.match(name):
      raise ValidationError(
        "name can only contain letters, numbers, hyphens, and underscores.", name
      )

    depends_on = row.get("dependsOn", []) or []
    if isinstance(depends_on, str):
      depends_on = [depends_on]
    if not isinstance(depends_on, list) or any(not isinstance(item, str) for item in depends_on):
      raise ConfigurationError(f"Plan {self._path}: stack '{name}' dependsOn must be a list of names.")

    parameters = row.get("parameters", {}) or {}
    if not isinstance(parameters, dict):
      raise ConfigurationError(f"Plan {self._path}: stack '{name}' parameters must be a mapping.")

    outputs = row.get("outputs", []) or []
    if not isinstance(outputs, list):
      raise ConfigurationError(f"Plan {self._path}: stack '{name}' outputs must be a list.")

    bindings_raw = row.get("parameterBindings", {}) or {}
    if not isinstance(bindings_raw, dict):
      raise ConfigurationError(f"Plan {self._path}: stack '{name}' parameterBindings must be a mapping when specified.")
    bindings = {
      parameter: parse_binding(name, parameter, raw) for parameter, raw in bindings_raw.items()
    }

    exports = row.get("exports", {}) or {}
    if not isinstance(exports, dict):
      raise ConfigurationError(f"Plan {self._path}: stack '{name}' exports must be a mapping if provided.")

    extra_az_args = row.get("extraAzArgs", []) or []
    if not isinstance(extra_az_args, list) or any(not isinstance(item, str) for item in extra_az_args):
      raise ConfigurationError(f"Plan {self._path}: stack '{name}' extraAzArgs must be an array of strings when specified.")

    template_file, parameter_file = self._template_paths(name, row.get("template") or {})

    return StackSpec(
      name=name,
      depends_on=list(dict.fromkeys(depends_on)),
      parameters=dict(parameters),
      produces_outputs=[str(item) for item in outputs],
      parameter_bindings=bindings,
      exports={str(key): str(value) for key, value in exports.items()},
      template_file=template_file,
      parameter_file=parameter_file,
      location=row.get("location"),
      description=row.get("description"),
      extra_az_args=list(extra_az_args),
      base_directory=self._path.parent.resolve(),
    )

  def _template_paths(self, name: str, template_section: Any) -> Tuple[Optional[Path], Optional[Path]]:
    if isinstance(template_section, str):
      template_section = {"file": template_section}
    if not isinstance(template_section, dict):
      raise ConfigurationError(f"Plan {self._path}: stack '{name}' template must be a path or mapping.")
    parent = self._path.parent
    template_file = template_section.get("file")
    parameter_file = template_section.get("parameters")
    template_path = (parent / template_file).resolve() if template_file else None
    parameter_path = (parent / parameter_file).resolve() if parameter_file else None
    return template_path, parameter_path

  def _parse_informational(self, row: Any) -> InformationalOutput:
    if not isinstance(row, dict):
      raise ConfigurationError(f"Plan {self._path}: informational entries must be mappings.")
    export = row.get("export")
    stack = row.get("stack")
    output = row.get("output")
    if not export and not (stack and output):
      raise ConfigurationError(
        f"Plan {self._path}: informational entries need either 'export' or both 'stack' and 'output'."
      )
    label = row.get("label") or export or f"{stack}.{output}"
    return InformationalOutput(label=label, stack=stack, output=output, export=export)

  def _load_plan_data(self, plan_path: Path, seen: Optional[Set[Path]] = None) -> Dict[str, Any]:
    if seen is None:
      seen = set()

    resolved_plan_path = plan_path.resolve()
    if resolved_plan_path in seen:
      raise ConfigurationError(f"Cyclic 'extends' reference detected at {plan_path}.")
    seen.add(resolved_plan_path)

    try:
      with plan_path.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
      raise ConfigurationError(f"Plan {plan_path} is not valid YAML: {exc}") from exc

    if not isinstance(loaded, dict):
      raise ConfigurationError(f"Plan {plan_path} must parse to a mapping.")

    extends_value = loaded.pop("extends", None)
    merged: Dict[str, Any] = {}

    if extends_value:
      if isinstance(extends_value, str):
        extends_list = [extends_value]
      elif isinstance(extends_value, list) and all(isinstance(item, str) for item in extends_value):
        extends_list = extends_value
      else:
        raise ConfigurationError(
          f"Plan {plan_path}: 'extends' must be a string or list of strings when specified."
        )

      for entry in extends_list:
        base_path = (plan_path.parent / entry).resolve()
        if not base_path.exists():
          raise ConfigurationError(f"Plan {plan_path}: extended file '{entry}' was not found.")
        base_data = self._load_plan_data(base_path, seen)
        merged = _deep_merge(merged, base_data)

    merged = _deep_merge(merged, loaded)
    self._ensure_absolute_template_paths(merged, plan_path)
    seen.remove(resolved_plan_path)
    return merged

  def _ensure_absolute_template_paths(self, data: Dict[str, Any], plan_path: Path) -> None:
    stacks = data.get("stacks")
    if not isinstance(stacks, list):
      return
    parent_dir = plan_path.parent
    for stack in stacks:
      if not isinstance(stack, dict):
        continue
      parameters = stack.get("parameters")
      if isinstance(parameters, dict):
        for value in parameters.values():
          if isinstance(value, dict) and isinstance(value.get("path"), str) and value["path"]:
            if not Path(value["path"]).is_absolute():
              value["path"] = str((parent_dir / value["path"]).resolve())
      template_section = stack.get("template")
      if isinstance(template_section, str):
        template_section = {"file": template_section}
        stack["template"] = template_section
      if not isinstance(template_section, dict):
        continue
      for key in ("file", "parameters"):
        value = template_section.get(key)
        if isinstance(value, str) and value:
          candidate = Path(value)
          if not candidate.is_absolute():
            template_section[key] = str((parent_dir / candidate).resolve())
