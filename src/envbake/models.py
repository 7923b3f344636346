"""Core typed dataclasses for base images, provisioning steps and built images."""

from __future__ import annotations

import hashlib
import json
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Literal

import cbor2

from envbake.errors import ValidationError

PackageManager = Literal["apt", "apk"]
IntegrityKind = Literal["sha256", "lock", "none"]


class StepKind(StrEnum):
    PACKAGE_INSTALL = "package_install"
    REMOTE_SCRIPT_INSTALL = "remote_script_install"
    CLEANUP = "cleanup"


class BuildState(StrEnum):
    PENDING = "pending"
    APPLYING = "applying"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class BaseImage:
    name: str
    tag: str = "latest"
    platform: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, reference: str, *, platform: str | None = None) -> BaseImage:
        """Parse ``name[:tag][@digest]`` into a base image reference."""
        if not reference:
            raise ValidationError("Base image reference must be non-empty.")
        name, _, digest = reference.partition("@")
        tag = "latest"
        last_segment = name.rsplit("/", 1)[-1]
        if ":" in last_segment:
            name, _, tag = name.rpartition(":")
        if not name or not tag:
            raise ValidationError(
                "Base image reference is malformed.",
                hint="Use name:tag, e.g. ubuntu:22.04.",
                context={"reference": reference},
            )
        return cls(name=name, tag=tag, platform=platform, digest=digest or None)

    @property
    def reference(self) -> str:
        if self.digest:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag}"

    def to_payload(self) -> dict[str, object]:
        return {
            "name": self.name,
            "tag": self.tag,
            "platform": self.platform,
            "digest": self.digest,
        }


@dataclass(frozen=True, slots=True)
class IntegrityPolicy:
    """How fetched installer content is verified before it may execute."""

    kind: IntegrityKind
    sha256: str | None = None

    @classmethod
    def pinned(cls, sha256: str) -> IntegrityPolicy:
        return cls(kind="sha256", sha256=sha256)

    @classmethod
    def locked(cls) -> IntegrityPolicy:
        return cls(kind="lock")

    @classmethod
    def unverified(cls) -> IntegrityPolicy:
        return cls(kind="none")

    def to_payload(self) -> dict[str, object]:
        return {"kind": self.kind, "sha256": self.sha256}


@dataclass(frozen=True, slots=True)
class PackageInstall:
    packages: tuple[str, ...]
    manager: PackageManager = "apt"
    update_index: bool = True

    @property
    def package_names(self) -> tuple[str, ...]:
        return tuple(package.split("=", 1)[0] for package in self.packages)

    def to_payload(self) -> dict[str, object]:
        return {
            "packages": list(self.packages),
            "manager": self.manager,
            "update_index": self.update_index,
        }


@dataclass(frozen=True, slots=True)
class RemoteScriptInstall:
    url: str
    integrity: IntegrityPolicy
    args: tuple[str, ...] = ()
    interpreter: str = "sh"
    env: Mapping[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        return {
            "url": self.url,
            "integrity": self.integrity.to_payload(),
            "args": list(self.args),
            "interpreter": self.interpreter,
            "env": dict(sorted(self.env.items())),
        }


@dataclass(frozen=True, slots=True)
class Cleanup:
    paths: tuple[str, ...]
    preserve: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, object]:
        return {"paths": list(self.paths), "preserve": list(self.preserve)}


StepPayload = PackageInstall | RemoteScriptInstall | Cleanup


@dataclass(frozen=True, slots=True)
class ProvisioningStep:
    kind: StepKind
    payload: StepPayload
    order: int
    name: str | None = None
    provides: tuple[str, ...] = ()
    timeout: float | None = None

    @classmethod
    def package_install(
        cls,
        *packages: str,
        order: int,
        manager: PackageManager = "apt",
        update_index: bool = True,
        name: str | None = None,
        provides: tuple[str, ...] = (),
        timeout: float | None = None,
    ) -> ProvisioningStep:
        return cls(
            kind=StepKind.PACKAGE_INSTALL,
            payload=PackageInstall(
                packages=tuple(packages),
                manager=manager,
                update_index=update_index,
            ),
            order=order,
            name=name,
            provides=provides,
            timeout=timeout,
        )

    @classmethod
    def remote_script_install(
        cls,
        url: str,
        *,
        integrity: IntegrityPolicy,
        order: int,
        args: tuple[str, ...] = (),
        interpreter: str = "sh",
        env: Mapping[str, str] | None = None,
        name: str | None = None,
        provides: tuple[str, ...] = (),
        timeout: float | None = None,
    ) -> ProvisioningStep:
        return cls(
            kind=StepKind.REMOTE_SCRIPT_INSTALL,
            payload=RemoteScriptInstall(
                url=url,
                integrity=integrity,
                args=tuple(args),
                interpreter=interpreter,
                env=dict(env or {}),
            ),
            order=order,
            name=name,
            provides=provides,
            timeout=timeout,
        )

    @classmethod
    def cleanup(
        cls,
        *paths: str,
        order: int,
        preserve: tuple[str, ...] = (),
        name: str | None = None,
        timeout: float | None = None,
    ) -> ProvisioningStep:
        return cls(
            kind=StepKind.CLEANUP,
            payload=Cleanup(paths=tuple(paths), preserve=tuple(preserve)),
            order=order,
            name=name,
            timeout=timeout,
        )

    @property
    def label(self) -> str:
        return self.name or f"{self.order}:{self.kind.value}"

    def context(self) -> dict[str, str]:
        return {"step": self.label, "order": str(self.order), "kind": self.kind.value}

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "kind": self.kind.value,
            "order": self.order,
            "name": self.name,
            "provides": list(self.provides),
            "timeout": self.timeout,
        }
        payload.update(self.payload.to_payload())
        return payload


@dataclass(frozen=True, slots=True)
class BuildRequest:
    build_id: str
    base: BaseImage
    build_dir: Path
    workdir: str = "/"
    env: Mapping[str, str] = field(default_factory=dict)
    step_timeout: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event, compare=False)


@dataclass(frozen=True, slots=True)
class Layer:
    index: int
    kind: StepKind
    step: str
    digest: str
    size_delta: int = 0
    packages: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, object]:
        return {
            "index": self.index,
            "kind": self.kind.value,
            "step": self.step,
            "digest": self.digest,
            "size_delta": self.size_delta,
            "packages": list(self.packages),
        }


@dataclass(frozen=True, slots=True)
class CommitResult:
    reference: str
    size_bytes: int
    location: Path | None = None


@dataclass(frozen=True, slots=True)
class EnvironmentImage:
    reference: str
    digest: str
    base: BaseImage
    steps: tuple[ProvisioningStep, ...]
    layers: tuple[Layer, ...]
    backend: str
    created_at: datetime
    size_bytes: int = 0
    location: Path | None = None
    schema_version: int = 1

    @property
    def installed_packages(self) -> tuple[str, ...]:
        names: set[str] = set()
        for layer in self.layers:
            names.update(layer.packages)
        return tuple(sorted(names))

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def _payload(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "reference": self.reference,
            "digest": self.digest,
            "backend": self.backend,
            "base": self.base.to_payload(),
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "installed_packages": list(self.installed_packages),
            "steps": [step.to_payload() for step in self.steps],
            "layers": [layer.to_payload() for layer in self.layers],
        }


def image_digest(base: BaseImage, layers: tuple[Layer, ...]) -> str:
    """Content address of an image: base reference plus ordered layer digests."""
    canonical = json.dumps(
        {
            "base": base.reference,
            "platform": base.platform,
            "layers": [layer.digest for layer in layers],
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


__all__ = [
    "BaseImage",
    "BuildRequest",
    "BuildState",
    "Cleanup",
    "CommitResult",
    "EnvironmentImage",
    "IntegrityKind",
    "IntegrityPolicy",
    "Layer",
    "PackageInstall",
    "PackageManager",
    "ProvisioningStep",
    "RemoteScriptInstall",
    "StepKind",
    "StepPayload",
    "image_digest",
]
