"""Lockfile resolution helpers."""

from __future__ import annotations

import dataclasses
import hashlib
import json
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from envbake.fetch import fetch
from envbake.lockfile.model import LockedFetch, Lockfile
from envbake.models import (
    BaseImage,
    IntegrityPolicy,
    ProvisioningStep,
    RemoteScriptInstall,
)
from envbake.policy import Policy

LOCKFILE_VERSION = 1


def recipe_payload(
    *,
    base: BaseImage,
    steps: Sequence[ProvisioningStep],
    workdir: str = "/",
    env: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    return {
        "base": base.to_payload(),
        "workdir": workdir,
        "env": dict(sorted((env or {}).items())),
        "steps": [step.to_payload() for step in steps],
    }


def recipe_digest(recipe: dict[str, Any]) -> str:
    canonical = json.dumps(recipe, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def recipe_dependencies(recipe: dict[str, Any]) -> list[str]:
    """Sorted package identifiers installed by a recipe payload."""
    dependencies: list[str] = []
    steps = recipe.get("steps", [])
    if isinstance(steps, list):
        for step in steps:
            if not isinstance(step, dict) or step.get("kind") != "package_install":
                continue
            packages = step.get("packages", [])
            if isinstance(packages, list) and all(isinstance(item, str) for item in packages):
                dependencies.extend(packages)
    return sorted(set(dependencies))


def build_lockfile(
    *,
    recipe: dict[str, Any],
    fetches: list[LockedFetch] | None = None,
) -> Lockfile:
    return Lockfile(
        version=LOCKFILE_VERSION,
        recipe_digest=recipe_digest(recipe),
        recipe=recipe,
        dependencies=recipe_dependencies(recipe),
        fetches=list(fetches or []),
    )


def resolve_fetches(
    steps: Sequence[ProvisioningStep],
    *,
    cache_dir: str | Path,
    policy: Policy | None = None,
) -> list[LockedFetch]:
    """Fetch every installer once and record the digest it must keep having.

    Installers declared with a pinned sha256 are verified against it; those
    bound to the lockfile (or unverified) are recorded as first observed.
    """
    active = policy or Policy()
    observing = dataclasses.replace(active, require_integrity=False)
    fetches: list[LockedFetch] = []
    for step in steps:
        payload = step.payload
        if not isinstance(payload, RemoteScriptInstall):
            continue
        if payload.integrity.kind == "sha256":
            result = fetch(
                payload.url,
                integrity=payload.integrity,
                cache_dir=cache_dir,
                policy=active,
            )
        else:
            result = fetch(
                payload.url,
                integrity=IntegrityPolicy.unverified(),
                cache_dir=cache_dir,
                policy=observing,
            )
        fetches.append(
            LockedFetch(
                source=payload.url,
                kind=urlparse(payload.url).scheme,
                digest=result.sha256,
            )
        )
    return fetches


def installer_digests(steps: Sequence[ProvisioningStep], lock: Lockfile) -> dict[str, str]:
    """Locked digests for the installers of *steps*, keyed by URL."""
    digests: dict[str, str] = {}
    for step in steps:
        payload = step.payload
        if isinstance(payload, RemoteScriptInstall):
            digest = lock.digest_for(payload.url)
            if digest is not None:
                digests[payload.url] = digest
    return digests

