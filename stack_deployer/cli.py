"""Command-line entry point: plan, deploy, destroy and inspect stacks."""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .backend import AzureCliBackend, ProvisioningBackend
from .console import ColorMode, ProgressPrinter, build_console_palette, print_dependency_summary
from .deploy import DeployOrchestrator, DeployResult
from .errors import ConfigurationError, ProvisionFailed, StackDeployError
from .gates import BooleanGate, PhraseGate, confirm_all
from .graph import DeploymentPlan, StackGraph
from .manifest import PlanConfig, PlanRepository
from .outputs import OutputResolver
from .teardown import TeardownOrchestrator, TeardownReport

DESTROY_PHRASE = "DESTROY"
DEFAULT_LOCATION = "uksouth"
DEFAULT_ACTION_ON_UNMANAGE = "deleteAll"
DEFAULT_DENY_SETTINGS_MODE = "none"

DEPLOY_TIPS = (
  "Ensure Azure credentials are configured (az login)",
  "Verify the subscription and location are correct",
  "Check that you have sufficient permissions on the subscription",
  "Stacks that completed were left in place; rerun the same deploy to resume",
)
DESTROY_TIPS = (
  "Ensure Azure credentials are configured (az login)",
  "Some resources may have deny settings or locks preventing deletion",
  "Rerun the same destroy; stacks already removed are reported as not found",
)


def load_graph(args: argparse.Namespace) -> Tuple[PlanConfig, StackGraph]:
  config = PlanRepository(Path(args.plan)).load()
  return config, StackGraph(config.stacks)


def select_plan(args: argparse.Namespace, graph: StackGraph) -> DeploymentPlan:
  targets = args.stacks or None
  if args.dependency_mode == "skip":
    if not targets:
      raise ConfigurationError(
        "--skip-dependencies requires --stacks to target specific stacks; "
        "refusing to skip dependencies for a full run."
      )
    return graph.plan(targets, include_dependencies=False)
  return graph.plan(targets)


def stack_settings(args: argparse.Namespace, config: PlanConfig) -> Dict[str, str]:
  defaults = config.defaults
  return {
    "location": args.location or defaults.get("location") or DEFAULT_LOCATION,
    "action_on_unmanage": (
      args.action_on_unmanage or defaults.get("actionOnUnmanage") or DEFAULT_ACTION_ON_UNMANAGE
    ),
    "deny_settings_mode": (
      args.deny_settings_mode or defaults.get("denySettingsMode") or DEFAULT_DENY_SETTINGS_MODE
    ),
  }


def build_backend(args: argparse.Namespace, config: PlanConfig) -> ProvisioningBackend:
  return AzureCliBackend(
    config.stacks,
    az_cli=args.az_cli,
    extra_args=args.extra_az_args,
    dry_run=args.dry_run,
    echo_commands=args.verbose or args.echo,
    **stack_settings(args, config),
  )


def _print_tips(tips) -> None:
  print("\nTroubleshooting tips:", file=sys.stderr)
  for tip in tips:
    print(f"- {tip}", file=sys.stderr)


def command_plan(args: argparse.Namespace) -> int:
  config, graph = load_graph(args)
  plan = select_plan(args, graph)
  palette = build_console_palette(args.color)
  print_dependency_summary(plan, palette, graph.dependencies_outside(plan), config.path)
  return 0


def print_deploy_summary(result: DeployResult, config: PlanConfig, resolver: OutputResolver, palette) -> None:
  heading = palette.get("heading", "")
  reset = palette.get("reset", "")
  context = result.context.as_dict()
  print(f"\n{heading}Stack outputs:{reset}")
  for stack_name, outputs in context.items():
    print(f"  {stack_name}")
    for key, value in outputs.items():
      print(f"    {key}: {value}")
  if result.redeployed:
    print(f"Redeployed with discovered values: {', '.join(result.redeployed)}")
  if config.informational:
    print(f"\n{heading}Deployment information:{reset}")
    for item in config.informational:
      value = resolver.informational(stack=item.stack, output=item.output, export=item.export)
      if value is not None:
        print(f"  {item.label}: {value}")


def print_deployment_details(
  args: argparse.Namespace,
  config: PlanConfig,
  plan: DeploymentPlan,
  account: Dict[str, Any],
  palette,
) -> None:
  settings = stack_settings(args, config)
  subscription = account.get("name") or "unknown"
  if account.get("id"):
    subscription += f" ({account['id']})"
  print(f"\n{palette['heading']}Deployment summary:{palette['reset']}")
  print(f"  Subscription: {subscription}")
  print(f"  Location: {settings['location']}")
  print(f"  Stacks: {', '.join(plan.names)}")
  print(f"  Action on unmanage: {settings['action_on_unmanage']}")
  if args.dry_run:
    print("  Dry run: commands are printed, nothing is executed")


def command_deploy(args: argparse.Namespace) -> int:
  config, graph = load_graph(args)
  plan = select_plan(args, graph)
  palette = build_console_palette(args.color)
  print_dependency_summary(plan, palette, graph.dependencies_outside(plan), config.path)
  if not len(plan):
    return 0

  printer = ProgressPrinter(palette)
  backend = build_backend(args, config)
  resolver = OutputResolver(backend, printer)
  orchestrator = DeployOrchestrator(backend, resolver, printer)
  orchestrator.validate(plan)

  assume = True if args.yes else None
  if not BooleanGate(
    f"This will deploy {len(plan)} stack(s) with {args.az_cli}. Continue?",
    default=False,
    assume=assume,
  ).confirm():
    print("Deployment cancelled.")
    return 0

  account = backend.identity()
  print_deployment_details(args, config, plan, account, palette)
  if not BooleanGate("Proceed with deployment?", default=False, assume=assume).confirm():
    print("Deployment cancelled.")
    return 0

  try:
    result = orchestrator.deploy(plan)
  except ProvisionFailed as exc:
    print(f"{palette['error']}Deployment failed:{palette['reset']} {exc}", file=sys.stderr)
    _print_tips(DEPLOY_TIPS)
    return 1

  print_deploy_summary(result, config, resolver, palette)
  if result.warnings:
    print(f"\n{palette['warn']}Completed with {len(result.warnings)} warning(s):{palette['reset']}", file=sys.stderr)
    for warning in result.warnings:
      print(f"  - {warning}", file=sys.stderr)
  print(f"\n{palette['ok']}All stacks processed successfully.{palette['reset']}")
  print("To update the deployment, rerun the same deploy command.")
  return 0


def print_teardown_report(report: TeardownReport, palette) -> None:
  print(f"\n{palette['heading']}Teardown report:{palette['reset']}")
  for entry in report.entries:
    detail = f" ({entry.detail})" if entry.detail else ""
    print(f"  {entry.stack_name}: {entry.status.value}{detail}")


def command_destroy(args: argparse.Namespace) -> int:
  config, graph = load_graph(args)
  order = graph.teardown_order(args.stacks or None)
  palette = build_console_palette(args.color)

  print(f"{palette['warn']}WARNING: This action is irreversible!{palette['reset']}")
  print("All data in the following stacks will be permanently lost:")
  for spec in order:
    print(f"  - {spec.name}")

  gates = [
    BooleanGate(
      "This will permanently destroy the stacks above. Continue?",
      default=False,
      assume=True if args.yes else None,
    ),
    PhraseGate(f"Type '{DESTROY_PHRASE}' to confirm deletion", DESTROY_PHRASE, assume=args.confirm),
  ]
  if not confirm_all(gates):
    print("Destruction cancelled.")
    return 0

  printer = ProgressPrinter(palette)
  backend = build_backend(args, config)
  backend.identity()
  report = TeardownOrchestrator(backend, printer).teardown(order)
  print_teardown_report(report, palette)

  try:
    report.raise_for_failures()
  except StackDeployError as exc:
    print(f"{palette['error']}{exc}{palette['reset']}", file=sys.stderr)
    _print_tips(DESTROY_TIPS)
    return report.exit_code

  print(f"{palette['ok']}All stacks destroyed.{palette['reset']}")
  return 0


def command_outputs(args: argparse.Namespace) -> int:
  config, graph = load_graph(args)
  plan = graph.plan(args.stacks or None, include_dependencies=False)
  palette = build_console_palette(args.color)
  printer = ProgressPrinter(palette)
  resolver = OutputResolver(build_backend(args, config), printer)

  for spec in plan:
    outputs = resolver.describe(spec.name)
    print(f"{palette['heading']}{spec.name}{palette['reset']}")
    if not outputs:
      print("  (no outputs)")
    for key, value in outputs.items():
      print(f"  {key}: {value}")
  for item in config.informational:
    value = resolver.informational(stack=item.stack, output=item.output, export=item.export)
    if value is not None:
      print(f"{item.label}: {value}")
  return 0


def _add_stack_options(parser: argparse.ArgumentParser) -> None:
  parser.add_argument(
    "--stacks",
    nargs="*",
    help="Optional list of stack names to act on.",
  )


def _add_backend_options(parser: argparse.ArgumentParser) -> None:
  parser.add_argument(
    "--location",
    default=None,
    help=f"Azure location for the deployment stack record (default: plan defaults or {DEFAULT_LOCATION}).",
  )
  parser.add_argument(
    "--action-on-unmanage",
    default=None,
    help=f"Value for --action-on-unmanage (default: {DEFAULT_ACTION_ON_UNMANAGE}).",
  )
  parser.add_argument(
    "--deny-settings-mode",
    default=None,
    help=f"Value for --deny-settings-mode (default: {DEFAULT_DENY_SETTINGS_MODE}).",
  )
  parser.add_argument(
    "--az-cli",
    default="az",
    help="Azure CLI executable name (default: az).",
  )
  parser.add_argument(
    "--extra-az-args",
    nargs="*",
    default=[],
    help=(
      "Additional arguments appended to each az stack command. "
      "Arguments that are not recognized are also forwarded."
    ),
  )
  parser.add_argument(
    "--dry-run",
    action="store_true",
    help="Print commands without executing them.",
  )
  parser.add_argument(
    "--verbose",
    action="store_true",
    help="Print every constructed command.",
  )
  parser.add_argument(
    "--echo",
    action="store_true",
    help="Echo each Azure CLI command before execution (quiet by default).",
  )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(prog="stack-deployer", description="Deploy and tear down dependent stacks")
  parser.add_argument(
    "--plan",
    default=os.environ.get("STACK_DEPLOYER_PLAN", "stacks.yaml"),
    help="Plan file describing the stacks (default: stacks.yaml or STACK_DEPLOYER_PLAN).",
  )
  parser.add_argument(
    "--color",
    choices=[mode.value for mode in ColorMode],
    default=ColorMode.AUTO.value,
    help="Color output mode: auto (default), always, or never.",
  )
  subparsers = parser.add_subparsers(dest="command", required=True)

  plan_parser = subparsers.add_parser("plan", help="Show the dependency map and execution order.")
  _add_stack_options(plan_parser)

  deploy_parser = subparsers.add_parser("deploy", help="Deploy stacks in dependency order.")
  _add_stack_options(deploy_parser)
  _add_backend_options(deploy_parser)
  deploy_parser.add_argument(
    "--yes",
    action="store_true",
    help="Skip the confirmation prompt.",
  )

  destroy_parser = subparsers.add_parser("destroy", help="Destroy stacks in reverse dependency order.")
  _add_stack_options(destroy_parser)
  _add_backend_options(destroy_parser)
  destroy_parser.add_argument(
    "--yes",
    action="store_true",
    help="Answer yes to the first confirmation prompt.",
  )
  destroy_parser.add_argument(
    "--confirm",
    default=None,
    metavar="PHRASE",
    help=f"Supply the '{DESTROY_PHRASE}' confirmation phrase non-interactively.",
  )

  outputs_parser = subparsers.add_parser("outputs", help="Show the current outputs of deployed stacks.")
  _add_stack_options(outputs_parser)
  _add_backend_options(outputs_parser)

  for subparser in (plan_parser, deploy_parser):
    dependency_group = subparser.add_mutually_exclusive_group()
    dependency_group.add_argument(
      "--include-dependencies",
      action="store_true",
      help=(
        "Deploy dependency stacks alongside the selected stacks. "
        "This is the default behaviour unless overridden via environment variable."
      ),
    )
    dependency_group.add_argument(
      "--skip-dependencies",
      action="store_true",
      help=(
        "Skip deploying dependency stacks and reuse their existing outputs. "
        "Supports fast, targeted updates but should be used with caution."
      ),
    )

  env_dependency_mode = os.environ.get("STACK_DEPLOYER_DEPENDENCIES", "include").lower()
  base_dependency_mode = env_dependency_mode if env_dependency_mode in {"include", "skip"} else "include"

  args, remaining = parser.parse_known_args(argv)
  if remaining:
    if not hasattr(args, "extra_az_args"):
      parser.error(f"unrecognized arguments: {' '.join(remaining)}")
    args.extra_az_args.extend(remaining)
  dependency_mode = base_dependency_mode
  if getattr(args, "include_dependencies", False):
    dependency_mode = "include"
  elif getattr(args, "skip_dependencies", False):
    dependency_mode = "skip"
  args.dependency_mode = dependency_mode
  return args


def _error_message(exc: StackDeployError) -> str:
  message = str(exc)
  if exc.stack_name and f"'{exc.stack_name}'" not in message:
    message = f"Stack '{exc.stack_name}': {message}"
  return message


COMMANDS = {
  "plan": command_plan,
  "deploy": command_deploy,
  "destroy": command_destroy,
  "outputs": command_outputs,
}


def main(argv: Optional[List[str]] = None) -> int:
  args = parse_arguments(argv)
  try:
    return COMMANDS[args.command](args)
  except StackDeployError as exc:
    print(f"Error: {_error_message(exc)}", file=sys.stderr)
    if exc.hint:
      print(exc.hint, file=sys.stderr)
    return 1
  except KeyboardInterrupt:
    print("\nInterrupted. Rerun the same command to resume; completed stacks are kept.", file=sys.stderr)
    return 130
  except Exception as exc:  # pylint: disable=broad-except
    print(f"Unhandled error: {exc}", file=sys.stderr)
    return 1


if __name__ == "__main__":
  sys.exit(main())
