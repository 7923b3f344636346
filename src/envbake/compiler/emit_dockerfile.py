"""Dockerfile emission for environment recipes.

Generates a Dockerfile equivalent to a recipe:
- FROM with the base platform and reference
- WORKDIR and ENV from the recipe
- one RUN instruction per provisioning step, in declared order
- installer downloads restricted to HTTPS with a TLS floor, checked with
  ``sha256sum -c``; a download without a known digest is only emitted when
  integrity is not required
"""

from __future__ import annotations

import hashlib
import json
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from envbake.backends.base import (
    INSTALLER_PATH,
    cleanup_command,
    installer_command,
    package_install_command,
)
from envbake.errors import LockfileError, PolicyError, ValidationError
from envbake.models import (
    BaseImage,
    PackageInstall,
    ProvisioningStep,
    RemoteScriptInstall,
)
from envbake.validate import validate_build_inputs

DOCKERFILE_SYNTAX = "# syntax=docker/dockerfile:1"

CURL_TLS_FLAGS = {"1.2": "--tlsv1.2", "1.3": "--tlsv1.3"}


@dataclass(frozen=True, slots=True)
class DockerfileEmission:
    path: Path
    sha256: str


def render_dockerfile(
    base: BaseImage,
    steps: Sequence[ProvisioningStep],
    *,
    workdir: str = "/",
    env: Mapping[str, str] | None = None,
    locked: Mapping[str, str] | None = None,
    min_tls_version: str = "1.2",
    require_integrity: bool = True,
) -> str:
    validate_build_inputs(base, steps)
    lines = [DOCKERFILE_SYNTAX]
    if base.platform:
        lines.append(f"FROM --platform={base.platform} {base.reference}")
    else:
        lines.append(f"FROM {base.reference}")
    if workdir != "/":
        lines.append(f"WORKDIR {workdir}")
    for key, value in sorted((env or {}).items()):
        lines.append(f"ENV {key}={json.dumps(value)}")
    for step in steps:
        lines.append("")
        lines.append(f"# {step.label}")
        lines.append(f"RUN {_run_line(step, locked or {}, min_tls_version, require_integrity)}")
    return "\n".join(lines) + "\n"


def emit_dockerfile(
    base: BaseImage,
    steps: Sequence[ProvisioningStep],
    destination: str | Path,
    *,
    workdir: str = "/",
    env: Mapping[str, str] | None = None,
    locked: Mapping[str, str] | None = None,
    min_tls_version: str = "1.2",
    require_integrity: bool = True,
) -> DockerfileEmission:
    content = render_dockerfile(
        base,
        steps,
        workdir=workdir,
        env=env,
        locked=locked,
        min_tls_version=min_tls_version,
        require_integrity=require_integrity,
    )
    path = Path(destination)
    if path.is_dir():
        path = path / "Dockerfile"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return DockerfileEmission(
        path=path,
        sha256=hashlib.sha256(content.encode("utf-8")).hexdigest(),
    )


def _run_line(
    step: ProvisioningStep,
    locked: Mapping[str, str],
    min_tls_version: str,
    require_integrity: bool,
) -> str:
    payload = step.payload
    if isinstance(payload, PackageInstall):
        return package_install_command(payload)
    if isinstance(payload, RemoteScriptInstall):
        return _installer_run(step, payload, locked, min_tls_version, require_integrity)
    return cleanup_command(payload)


def _installer_run(
    step: ProvisioningStep,
    payload: RemoteScriptInstall,
    locked: Mapping[str, str],
    min_tls_version: str,
    require_integrity: bool,
) -> str:
    if not payload.url.startswith("https://"):
        raise ValidationError(
            "Only https installers can be emitted into a Dockerfile.",
            hint="Host the installer over https or build with the in-process backend.",
            context={**step.context(), "url": payload.url},
        )
    tls_flag = CURL_TLS_FLAGS.get(min_tls_version)
    if tls_flag is None:
        raise ValidationError(
            "Unsupported minimum TLS version.",
            context={"min_tls_version": min_tls_version},
        )
    target = shlex.quote(INSTALLER_PATH)
    parts = [f"curl --proto '=https' {tls_flag} -sSf {shlex.quote(payload.url)} -o {target}"]
    digest = payload.integrity.sha256 or locked.get(payload.url)
    if digest is None and payload.integrity.kind == "lock":
        raise LockfileError(
            "Lockfile has no digest for a lock-bound installer.",
            hint="Run `envbake lock` and pass the lockfile to emission.",
            context={**step.context(), "url": payload.url},
        )
    if digest is None and require_integrity:
        raise PolicyError(
            "Unverified installer content is not allowed by policy.",
            hint="Pin the installer sha256 or relax policy.require_integrity.",
            context={**step.context(), "url": payload.url},
        )
    if digest:
        parts.append(f'echo "{digest}  {INSTALLER_PATH}" | sha256sum -c -')
    parts.append(installer_command(payload))
    parts.append(f"rm -f {target}")
    return " \\\n    && ".join(parts)
