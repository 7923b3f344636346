"""Protocol for build execution backends."""

from __future__ import annotations

import hashlib
import json
import shlex
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

from envbake.models import (
    BuildRequest,
    Cleanup,
    CommitResult,
    Layer,
    PackageInstall,
    ProvisioningStep,
    RemoteScriptInstall,
)


class BuildBackend(Protocol):
    name: str

    def prepare(self, request: BuildRequest) -> None:
        """Materialise the base image for this build without mutating it."""

    def apply(
        self,
        request: BuildRequest,
        step: ProvisioningStep,
        *,
        index: int,
        artifact: Path | None = None,
    ) -> Layer:
        """Apply one step on top of the current state and return its layer."""

    def probe(self, request: BuildRequest, paths: Sequence[str]) -> tuple[str, ...]:
        """Return the subset of *paths* missing from the current state."""

    def commit(
        self,
        request: BuildRequest,
        layers: Sequence[Layer],
        *,
        tag: str | None = None,
    ) -> CommitResult:
        """Publish the fully applied state as an image."""

    def discard(self, request: BuildRequest) -> None:
        """Drop every intermediate result of a failed or cancelled build."""

    def cleanup(self, request: BuildRequest) -> None:
        """Release backend runtime resources."""


# ---------------------------------------------------------------------------
# Shared utilities for backends that execute shell commands inside the image
# ---------------------------------------------------------------------------

INSTALLER_PATH = "/tmp/envbake-installer"


def package_install_command(payload: PackageInstall) -> str:
    packages = " ".join(shlex.quote(package) for package in payload.packages)
    if payload.manager == "apk":
        update = "apk update && " if payload.update_index else ""
        return f"{update}apk add {packages}"
    update = "apt-get update && " if payload.update_index else ""
    return f"export DEBIAN_FRONTEND=noninteractive && {update}apt-get install -y {packages}"


def cleanup_command(payload: Cleanup) -> str:
    # Paths are validated to a glob-safe charset, so they are left unquoted to expand.
    targets = " ".join(payload.paths)
    if not payload.preserve:
        return f"rm -rf -- {targets}"
    exclude = " ".join(
        f"! -path {shlex.quote(keep)} ! -path {shlex.quote(keep + '/*')}"
        for keep in payload.preserve
    )
    # Files go first, then directories left empty; ancestors of kept paths survive.
    return (
        f'for p in {targets}; do [ -e "$p" ] || [ -L "$p" ] || continue; '
        f'find "$p" -depth ! -type d {exclude} -exec rm -f -- {{}} +; '
        f'find "$p" -depth -type d -empty {exclude} -exec rmdir -- {{}} \\;; done'
    )


def installer_command(payload: RemoteScriptInstall, *, script_path: str = INSTALLER_PATH) -> str:
    argv = [payload.interpreter, script_path, *payload.args]
    assignments = [f"{key}={shlex.quote(value)}" for key, value in sorted(payload.env.items())]
    prefix = f"env {' '.join(assignments)} " if assignments else ""
    return f"{prefix}{shlex.join(argv)}"


def step_command(step: ProvisioningStep, *, script_path: str = INSTALLER_PATH) -> str:
    payload = step.payload
    if isinstance(payload, PackageInstall):
        return package_install_command(payload)
    if isinstance(payload, RemoteScriptInstall):
        run = installer_command(payload, script_path=script_path)
        return f"{run}; status=$?; rm -f {shlex.quote(script_path)}; exit $status"
    return cleanup_command(payload)


def layer_digest(payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
