"""Policy configuration and enforcement helpers."""

from __future__ import annotations

import ssl
import warnings
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from envbake.errors import PolicyError
from envbake.models import PackageInstall, ProvisioningStep, RemoteScriptInstall

NetworkMode = Literal["online", "offline"]
TlsVersion = Literal["1.2", "1.3"]

TLS_VERSIONS: dict[TlsVersion, ssl.TLSVersion] = {
    "1.2": ssl.TLSVersion.TLSv1_2,
    "1.3": ssl.TLSVersion.TLSv1_3,
}


class UnpinnedPackageWarning(UserWarning):
    """Warning raised when a package is installed without a pinned version."""


@dataclass(frozen=True, slots=True)
class Policy:
    require_frozen_lock: bool = False
    require_integrity: bool = True
    network_mode: NetworkMode = "online"
    min_tls_version: TlsVersion = "1.2"
    step_timeout: float | None = None
    require_pinned_packages: bool = False


def ensure_build_policy(*, policy: Policy, frozen: bool) -> None:
    if policy.require_frozen_lock and not frozen:
        raise PolicyError(
            "Frozen lock mode is required by policy.",
            hint="Build with frozen=True or relax policy.require_frozen_lock.",
            context={"operation": "build"},
        )


def ensure_network_allowed(*, policy: Policy, operation: str) -> None:
    if policy.network_mode == "offline":
        raise PolicyError(
            "Network operations are disabled by policy.",
            hint="Switch policy.network_mode to 'online' for this operation.",
            context={"operation": operation},
        )


def ensure_steps_allowed(*, policy: Policy, steps: Sequence[ProvisioningStep]) -> None:
    """Reject steps the policy forbids before anything is executed."""
    for step in steps:
        payload = step.payload
        if isinstance(payload, RemoteScriptInstall):
            if payload.integrity.kind == "none" and policy.require_integrity:
                raise PolicyError(
                    "Unverified installer content is not allowed by policy.",
                    hint="Pin the installer sha256, use integrity 'lock', "
                    "or relax policy.require_integrity.",
                    context={**step.context(), "url": payload.url},
                )
            if policy.network_mode == "offline" and payload.url.startswith("https://"):
                raise PolicyError(
                    "Network operations are disabled by policy.",
                    hint="Mirror the installer to a file:// URL or switch network_mode.",
                    context={**step.context(), "url": payload.url},
                )
        elif isinstance(payload, PackageInstall):
            unpinned = tuple(p for p in payload.packages if "=" not in p)
            if not unpinned:
                continue
            if policy.require_pinned_packages:
                raise PolicyError(
                    "Unpinned packages are not allowed by policy.",
                    hint="Declare packages as name=version.",
                    context={**step.context(), "packages": ",".join(unpinned)},
                )
            warnings.warn(
                f"Step {step.label} installs unpinned packages: {', '.join(unpinned)}",
                UnpinnedPackageWarning,
                stacklevel=3,
            )


def tls_context(policy: Policy | None) -> ssl.SSLContext:
    """Verified TLS client context with the policy's minimum protocol version."""
    context = ssl.create_default_context()
    version = policy.min_tls_version if policy is not None else "1.2"
    context.minimum_version = TLS_VERSIONS[version]
    return context
