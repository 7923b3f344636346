"""Public package entrypoint for the envbake environment builder."""

from .backends import DockerBackend, InProcessBackend
from .builder import EnvironmentBuilder
from .errors import (
    BuildCancelled,
    EnvBakeError,
    IntegrityViolation,
    LockfileError,
    MalformedStepSpec,
    NetworkFailure,
    PolicyError,
    StepExecutionFailure,
    ValidationError,
)
from .models import (
    BaseImage,
    BuildState,
    EnvironmentImage,
    IntegrityPolicy,
    Layer,
    ProvisioningStep,
    StepKind,
)
from .policy import Policy, UnpinnedPackageWarning
from .recipe import Recipe

__all__ = [
    "BaseImage",
    "BuildCancelled",
    "BuildState",
    "DockerBackend",
    "EnvBakeError",
    "EnvironmentBuilder",
    "EnvironmentImage",
    "InProcessBackend",
    "IntegrityPolicy",
    "IntegrityViolation",
    "Layer",
    "LockfileError",
    "MalformedStepSpec",
    "NetworkFailure",
    "Policy",
    "PolicyError",
    "ProvisioningStep",
    "Recipe",
    "StepExecutionFailure",
    "StepKind",
    "UnpinnedPackageWarning",
    "ValidationError",
]
