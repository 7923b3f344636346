"""Pre-flight validation of build inputs.

Everything here runs before the backend is prepared and before any
installer is fetched, so a malformed recipe never causes a side effect.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from pathlib import PurePosixPath
from urllib.parse import urlparse

from envbake.errors import MalformedStepSpec, ValidationError
from envbake.models import (
    BaseImage,
    Cleanup,
    IntegrityPolicy,
    PackageInstall,
    ProvisioningStep,
    RemoteScriptInstall,
    StepKind,
)

PACKAGE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9+._:-]*(=[A-Za-z0-9+.~:_-]+)?$")
SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
CLEANUP_PATH_PATTERN = re.compile(r"^/[A-Za-z0-9._@+*?/_-]*$")

PAYLOAD_TYPES: dict[StepKind, type] = {
    StepKind.PACKAGE_INSTALL: PackageInstall,
    StepKind.REMOTE_SCRIPT_INSTALL: RemoteScriptInstall,
    StepKind.CLEANUP: Cleanup,
}
PACKAGE_MANAGERS = ("apt", "apk")
INTEGRITY_KINDS = ("sha256", "lock", "none")


def validate_build_inputs(base: BaseImage, steps: Sequence[ProvisioningStep]) -> None:
    """Validate the base reference and every step, in declared order."""
    if not isinstance(base, BaseImage) or not base.name:
        raise ValidationError(
            "build() requires a base image with a name.",
            hint="Use BaseImage.parse('ubuntu:22.04').",
        )
    if not steps:
        raise ValidationError(
            "build() requires at least one provisioning step.",
            context={"operation": "validate"},
        )
    previous_order: int | None = None
    for step in steps:
        validate_step(step)
        if previous_order is not None and step.order <= previous_order:
            raise MalformedStepSpec(
                "Step orders must be strictly increasing in declared sequence.",
                hint="Steps are never reordered; declare them in execution order.",
                context={**step.context(), "previous_order": str(previous_order)},
            )
        previous_order = step.order


def validate_step(step: ProvisioningStep) -> None:
    if not isinstance(step, ProvisioningStep):
        raise MalformedStepSpec(
            "Provisioning steps must be ProvisioningStep instances.",
            context={"type": type(step).__name__},
        )
    if not isinstance(step.kind, StepKind):
        raise MalformedStepSpec(
            "Unknown provisioning step kind.",
            context={"kind": repr(step.kind), "order": repr(step.order)},
        )
    expected_type = PAYLOAD_TYPES.get(step.kind)
    if expected_type is None or not isinstance(step.payload, expected_type):
        raise MalformedStepSpec(
            "Step payload does not match its kind.",
            context={**step.context(), "payload": type(step.payload).__name__},
        )
    if isinstance(step.order, bool) or not isinstance(step.order, int) or step.order < 0:
        raise MalformedStepSpec(
            "Step order must be a non-negative integer.",
            context={"order": repr(step.order), "kind": step.kind.value},
        )
    if step.timeout is not None and step.timeout <= 0:
        raise MalformedStepSpec("Step timeout must be positive.", context=step.context())
    for path in step.provides:
        _require_absolute(step, path, field_name="provides")

    payload = step.payload
    if isinstance(payload, PackageInstall):
        _validate_package_install(step, payload)
    elif isinstance(payload, RemoteScriptInstall):
        _validate_remote_script(step, payload)
    elif isinstance(payload, Cleanup):
        _validate_cleanup(step, payload)


def _validate_package_install(step: ProvisioningStep, payload: PackageInstall) -> None:
    if not payload.packages:
        raise MalformedStepSpec(
            "PackageInstall requires a non-empty package set.",
            context=step.context(),
        )
    if payload.manager not in PACKAGE_MANAGERS:
        raise MalformedStepSpec(
            "Unsupported package manager.",
            context={**step.context(), "manager": str(payload.manager)},
        )
    seen: set[str] = set()
    for package in payload.packages:
        if not isinstance(package, str) or not PACKAGE_PATTERN.fullmatch(package):
            raise MalformedStepSpec(
                "Invalid package identifier.",
                hint="Use name or name=version.",
                context={**step.context(), "package": repr(package)},
            )
        name = package.split("=", 1)[0]
        if name in seen:
            raise MalformedStepSpec(
                "Package is declared twice in one step.",
                context={**step.context(), "package": name},
            )
        seen.add(name)


def _validate_remote_script(step: ProvisioningStep, payload: RemoteScriptInstall) -> None:
    parsed = urlparse(payload.url) if isinstance(payload.url, str) else None
    if parsed is None or parsed.scheme not in ("https", "file"):
        raise MalformedStepSpec(
            "Installer URL must use https:// (or file:// for local mirrors).",
            context={**step.context(), "url": repr(payload.url)},
        )
    if parsed.scheme == "https" and not parsed.netloc:
        raise MalformedStepSpec(
            "Installer URL has no host.",
            context={**step.context(), "url": payload.url},
        )
    if parsed.scheme == "file" and not parsed.path:
        raise MalformedStepSpec(
            "Installer URL has no path.",
            context={**step.context(), "url": payload.url},
        )
    _validate_integrity(step, payload.integrity)
    if not payload.interpreter or not isinstance(payload.interpreter, str):
        raise MalformedStepSpec("Installer interpreter must be non-empty.", context=step.context())
    if not all(isinstance(arg, str) for arg in payload.args):
        raise MalformedStepSpec("Installer arguments must be strings.", context=step.context())
    for key, value in payload.env.items():
        if not ENV_NAME_PATTERN.fullmatch(key) or not isinstance(value, str):
            raise MalformedStepSpec(
                "Invalid installer environment variable.",
                context={**step.context(), "name": repr(key)},
            )


def _validate_integrity(step: ProvisioningStep, integrity: object) -> None:
    if not isinstance(integrity, IntegrityPolicy):
        raise MalformedStepSpec(
            "RemoteScriptInstall requires an explicit integrity policy.",
            hint="Use IntegrityPolicy.pinned(sha256), .locked() or .unverified().",
            context=step.context(),
        )
    if integrity.kind not in INTEGRITY_KINDS:
        raise MalformedStepSpec(
            "Unknown integrity policy kind.",
            context={**step.context(), "integrity": str(integrity.kind)},
        )
    if integrity.kind == "sha256":
        if not integrity.sha256 or not SHA256_PATTERN.fullmatch(integrity.sha256):
            raise MalformedStepSpec(
                "Integrity policy sha256 must be 64 lowercase hex characters.",
                context={**step.context(), "sha256": repr(integrity.sha256)},
            )
    elif integrity.sha256 is not None:
        raise MalformedStepSpec(
            "Only the sha256 integrity policy carries a digest.",
            context={**step.context(), "integrity": integrity.kind},
        )


def _validate_cleanup(step: ProvisioningStep, payload: Cleanup) -> None:
    if not payload.paths:
        raise MalformedStepSpec("Cleanup requires a non-empty path set.", context=step.context())
    for path in payload.paths:
        _require_absolute(step, path, field_name="paths")
        if not CLEANUP_PATH_PATTERN.fullmatch(path):
            raise MalformedStepSpec(
                "Cleanup paths may only contain path characters and * or ? globs.",
                context={**step.context(), "path": path},
            )
        if PurePosixPath(path).parts[1:] in ((), ("*",)):
            raise MalformedStepSpec(
                "Cleanup may not remove the filesystem root.",
                context={**step.context(), "path": path},
            )
    for path in payload.preserve:
        _require_absolute(step, path, field_name="preserve")
        if not CLEANUP_PATH_PATTERN.fullmatch(path):
            raise MalformedStepSpec(
                "Preserve patterns may only contain path characters and * or ? globs.",
                context={**step.context(), "path": path},
            )


def _require_absolute(step: ProvisioningStep, path: object, *, field_name: str) -> None:
    if not isinstance(path, str) or not path.startswith("/"):
        raise MalformedStepSpec(
            f"Step `{field_name}` entries must be absolute paths.",
            context={**step.context(), "path": repr(path)},
        )
    if ".." in PurePosixPath(path).parts:
        raise MalformedStepSpec(
            f"Step `{field_name}` entries may not contain '..'.",
            context={**step.context(), "path": path},
        )
