"""Environment builder: applies provisioning steps in order, all or nothing."""

from __future__ import annotations

import os
import threading
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from envbake.backends.base import BuildBackend
from envbake.errors import (
    BuildCancelled,
    EnvBakeError,
    LockfileError,
    StepExecutionFailure,
    ValidationError,
)
from envbake.fetch import fetch
from envbake.lockfile import (
    installer_digests,
    read_lockfile,
    recipe_dependencies,
    recipe_digest,
    recipe_payload,
)
from envbake.models import (
    BaseImage,
    BuildRequest,
    BuildState,
    EnvironmentImage,
    Layer,
    ProvisioningStep,
    RemoteScriptInstall,
    image_digest,
)
from envbake.observability import StructuredLogger, write_report
from envbake.policy import Policy, ensure_build_policy, ensure_steps_allowed
from envbake.validate import validate_build_inputs

DEFAULT_LOCK_NAME = "envbake.lock"


@dataclass(slots=True)
class EnvironmentBuilder:
    """Turns a base image plus ordered steps into one environment image.

    A builder runs one build at a time.  Use separate builders (or distinct
    build directories) for concurrent builds.
    """

    backend: BuildBackend
    build_dir: Path = field(default_factory=lambda: Path("build"))
    policy: Policy = field(default_factory=Policy)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    _state: BuildState = field(init=False, default=BuildState.PENDING, repr=False)
    _current_step: int | None = field(init=False, default=None, repr=False)
    _cancel_event: threading.Event = field(init=False, default_factory=threading.Event, repr=False)
    _guard: threading.Lock = field(init=False, default_factory=threading.Lock, repr=False)
    _busy: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        self.build_dir = Path(self.build_dir)

    @property
    def state(self) -> BuildState:
        return self._state

    @property
    def current_step(self) -> int | None:
        return self._current_step

    def cancel(self) -> None:
        """Request cancellation of the in-flight build."""
        self._cancel_event.set()

    def default_lock_path(self) -> Path:
        return self.build_dir / DEFAULT_LOCK_NAME

    def build(
        self,
        base: BaseImage,
        steps: Sequence[ProvisioningStep],
        *,
        workdir: str = "/",
        env: Mapping[str, str] | None = None,
        tag: str | None = None,
        frozen: bool = False,
        lock_path: str | Path | None = None,
    ) -> EnvironmentImage:
        with self._guard:
            if self._busy:
                raise ValidationError(
                    "A build is already in progress on this builder.",
                    hint="Use a separate EnvironmentBuilder for concurrent builds.",
                )
            self._state = BuildState.PENDING
            self._current_step = None
            self._cancel_event = threading.Event()
            self._busy = True

        try:
            return self._build(
                base,
                tuple(steps),
                workdir=workdir,
                env_data=dict(env or {}),
                tag=tag,
                frozen=frozen,
                lock_path=lock_path,
            )
        finally:
            with self._guard:
                self._busy = False

    def _build(
        self,
        base: BaseImage,
        ordered: tuple[ProvisioningStep, ...],
        *,
        workdir: str,
        env_data: dict[str, str],
        tag: str | None,
        frozen: bool,
        lock_path: str | Path | None,
    ) -> EnvironmentImage:
        validate_build_inputs(base, ordered)
        ensure_build_policy(policy=self.policy, frozen=frozen)
        ensure_steps_allowed(policy=self.policy, steps=ordered)
        locked = self._locked_digests(
            base=base,
            steps=ordered,
            workdir=workdir,
            env=env_data,
            frozen=frozen,
            lock_path=lock_path,
        )

        request = BuildRequest(
            build_id=uuid.uuid4().hex[:12],
            base=base,
            build_dir=self.build_dir,
            workdir=workdir,
            env=env_data,
            step_timeout=self.policy.step_timeout,
            cancel_event=self._cancel_event,
        )
        self._log(request, "build_start", "Starting environment build.", extra={
            "base": base.reference,
            "steps": len(ordered),
            "backend": self.backend.name,
        })
        try:
            image = self._apply_all(request, ordered, locked=locked, tag=tag)
        except KeyboardInterrupt as exc:
            self._cancel_event.set()
            failure = BuildCancelled("Build was interrupted by the operator.")
            self._fail(request, ordered, failure)
            raise failure from exc
        except Exception as exc:
            self._fail(request, ordered, exc)
            raise
        finally:
            self.backend.cleanup(request)
        return image

    def _apply_all(
        self,
        request: BuildRequest,
        steps: tuple[ProvisioningStep, ...],
        *,
        locked: dict[str, str],
        tag: str | None,
    ) -> EnvironmentImage:
        self.backend.prepare(request)
        layers: list[Layer] = []
        for index, step in enumerate(steps):
            if self._cancel_event.is_set():
                raise BuildCancelled(context=step.context())
            self._state = BuildState.APPLYING
            self._current_step = index
            self._log(request, "step_start", "Applying step.", step=step)

            artifact: Path | None = None
            if isinstance(step.payload, RemoteScriptInstall):
                artifact = self._fetch_installer(request, step, locked=locked)
            layer = self.backend.apply(request, step, index=index, artifact=artifact)
            if step.provides:
                missing = self.backend.probe(request, step.provides)
                if missing:
                    raise StepExecutionFailure(
                        "Step completed but did not provide its declared paths.",
                        hint="Check the installer arguments and install prefix.",
                        context={**step.context(), "missing": ",".join(missing)},
                    )
            layers.append(layer)
            self._log(request, "step_complete", "Applied step.", step=step, extra={
                "layer": layer.digest,
                "size_delta": layer.size_delta,
            })

        if self._cancel_event.is_set():
            raise BuildCancelled("Build was cancelled before commit.")
        committed = self.backend.commit(request, layers, tag=tag)
        image = EnvironmentImage(
            reference=committed.reference,
            digest=image_digest(request.base, tuple(layers)),
            base=request.base,
            steps=steps,
            layers=tuple(layers),
            backend=self.backend.name,
            created_at=_build_timestamp(),
            size_bytes=committed.size_bytes,
            location=committed.location,
        )
        self._state = BuildState.COMPLETE
        self._current_step = None
        image.to_json(self._artifact_dir(request) / "manifest.json")
        self._log(request, "build_complete", "Environment build complete.", extra={
            "reference": image.reference,
            "digest": image.digest,
        })
        self._write_report(request, steps, image=image)
        return image

    def _fetch_installer(
        self,
        request: BuildRequest,
        step: ProvisioningStep,
        *,
        locked: dict[str, str],
    ) -> Path:
        payload = step.payload
        assert isinstance(payload, RemoteScriptInstall)
        result = fetch(
            payload.url,
            integrity=payload.integrity,
            cache_dir=self.build_dir / ".cache" / "fetch",
            policy=self.policy,
            expected_sha256=locked.get(payload.url),
            timeout=step.timeout or self.policy.step_timeout,
        )
        self._log(request, "fetch", "Fetched installer.", step=step, extra={
            "url": payload.url,
            "sha256": result.sha256,
            "verified": result.verified,
        })
        return result.path

    def _fail(
        self,
        request: BuildRequest,
        steps: tuple[ProvisioningStep, ...],
        exc: Exception,
    ) -> None:
        self._state = (
            BuildState.CANCELLED if isinstance(exc, BuildCancelled) else BuildState.FAILED
        )
        failed_step = steps[self._current_step] if self._current_step is not None else None
        if isinstance(exc, EnvBakeError):
            if failed_step is not None:
                exc.add_context(**failed_step.context())
            exc.add_context(build_id=request.build_id)
            error: dict[str, Any] = exc.to_dict()
        else:
            error = {"code": "E_INTERNAL", "message": str(exc), "type": type(exc).__name__}
        self._log(
            request,
            "build_failed",
            "Environment build failed; discarding partial state.",
            step=failed_step,
            level="error",
            extra={"error": error},
        )
        self.backend.discard(request)
        self._write_report(request, steps, error=error)

    def _locked_digests(
        self,
        *,
        base: BaseImage,
        steps: tuple[ProvisioningStep, ...],
        workdir: str,
        env: dict[str, str],
        frozen: bool,
        lock_path: str | Path | None,
    ) -> dict[str, str]:
        bound = [
            step
            for step in steps
            if isinstance(step.payload, RemoteScriptInstall)
            and step.payload.integrity.kind == "lock"
        ]
        if not frozen:
            if bound:
                raise LockfileError(
                    "Installer integrity is bound to the lockfile, which requires a frozen build.",
                    hint="Run `envbake lock` and build with --frozen.",
                    context=bound[0].context(),
                )
            return {}

        path = Path(lock_path) if lock_path is not None else self.default_lock_path()
        lock = read_lockfile(path)
        payload = recipe_payload(base=base, steps=steps, workdir=workdir, env=env)
        current = recipe_digest(payload)
        if lock.recipe_digest != current:
            raise LockfileError(
                "Frozen build lockfile is stale for the current recipe.",
                hint="Re-run `envbake lock` and commit the updated lockfile.",
                context={
                    "operation": "build",
                    "mode": "frozen",
                    "expected": current,
                    "actual": lock.recipe_digest,
                    "path": str(path),
                },
            )
        expected_dependencies = recipe_dependencies(payload)
        if lock.dependencies != expected_dependencies:
            raise LockfileError(
                "Frozen build lockfile pins a different package set than the recipe.",
                hint="Re-run `envbake lock` and commit the updated lockfile.",
                context={
                    "operation": "build",
                    "mode": "frozen",
                    "expected": ",".join(expected_dependencies),
                    "actual": ",".join(lock.dependencies),
                    "path": str(path),
                },
            )
        digests = installer_digests(steps, lock)
        for step in bound:
            assert isinstance(step.payload, RemoteScriptInstall)
            if step.payload.url not in digests:
                raise LockfileError(
                    "Lockfile has no digest for a lock-bound installer.",
                    hint="Re-run `envbake lock`.",
                    context={**step.context(), "url": step.payload.url, "path": str(path)},
                )
        return digests

    def _artifact_dir(self, request: BuildRequest) -> Path:
        path = self.build_dir / "builds" / request.build_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _write_report(
        self,
        request: BuildRequest,
        steps: tuple[ProvisioningStep, ...],
        *,
        image: EnvironmentImage | None = None,
        error: dict[str, Any] | None = None,
    ) -> Path:
        payload: dict[str, Any] = {
            "build_id": request.build_id,
            "state": self._state.value,
            "backend": self.backend.name,
            "base": request.base.to_payload(),
            "steps": [step.to_payload() for step in steps],
            "layers": [] if image is None else [layer.to_payload() for layer in image.layers],
            "image": None
            if image is None
            else {"reference": image.reference, "digest": image.digest, "size": image.size_bytes},
            "error": error,
            "logs": self.logger.records_for_build(request.build_id),
        }
        return write_report(self._artifact_dir(request) / "report.json", payload)

    def _log(
        self,
        request: BuildRequest,
        operation: str,
        message: str,
        *,
        step: ProvisioningStep | None = None,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.logger.log(
            operation=operation,
            build_id=request.build_id,
            step=None if step is None else step.label,
            kind=None if step is None else step.kind.value,
            message=message,
            level=level,
            extra=extra,
        )


def _build_timestamp() -> datetime:
    epoch = os.environ.get("SOURCE_DATE_EPOCH")
    if epoch and epoch.isdigit():
        return datetime.fromtimestamp(int(epoch), tz=timezone.utc)
    return datetime.now(timezone.utc)
