"""Orchestrates dependent deployment stacks: ordered deploy, redeploy of
deferred values, and best-effort teardown."""
from .backend import AzureCliBackend, ProvisioningBackend
from .deploy import DeployOrchestrator, DeploymentContext
from .errors import StackDeployError
from .gates import BooleanGate, PhraseGate
from .graph import DeploymentPlan, StackGraph
from .manifest import PlanRepository, StackSpec
from .outputs import OutputResolver
from .teardown import TeardownOrchestrator, TeardownReport

__version__ = "0.1.0"

__all__ = [
  "AzureCliBackend", "ProvisioningBackend",
  "DeployOrchestrator", "DeploymentContext",
  "StackDeployError",
  "BooleanGate", "PhraseGate",
  "DeploymentPlan", "StackGraph",
  "PlanRepository", "StackSpec",
  "OutputResolver",
  "TeardownOrchestrator", "TeardownReport",
]
