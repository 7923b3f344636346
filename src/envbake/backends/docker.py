"""Container build execution via the docker CLI.

Every step runs in a throwaway container created from the previous layer
and is committed as a new image, so each provisioning step becomes exactly
one image layer.  Installer scripts fetched (and verified) on the host are
copied into the container before it starts; nothing inside the container
ever downloads them itself.  Set ``squash=True`` to flatten the final image
through ``docker export | docker import`` so that cleanup steps actually
shrink it.
"""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from envbake.backends.base import INSTALLER_PATH, step_command
from envbake.errors import NetworkFailure, StepExecutionFailure
from envbake.models import (
    BuildRequest,
    CommitResult,
    Layer,
    PackageInstall,
    ProvisioningStep,
)
from envbake.process import CommandResult, run_command

PullPolicy = Literal["missing", "always", "never"]

COMMIT_CHANGES = ("ENTRYPOINT []", 'CMD ["/bin/sh"]')


@dataclass(slots=True)
class _DockerSession:
    current: str
    size: int
    created: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DockerBackend:
    name: str = "docker"
    docker: str = "docker"
    pull: PullPolicy = "missing"
    squash: bool = False
    _sessions: dict[str, _DockerSession] = field(default_factory=dict, init=False, repr=False)

    def prepare(self, request: BuildRequest) -> None:
        self._ensure_prerequisites()
        reference = request.base.reference
        if self.pull == "always" or (self.pull == "missing" and not self._image_exists(reference)):
            self._pull(request)
        self._sessions[request.build_id] = _DockerSession(
            current=reference,
            size=self._image_size(reference, request),
        )

    def apply(
        self,
        request: BuildRequest,
        step: ProvisioningStep,
        *,
        index: int,
        artifact: Path | None = None,
    ) -> Layer:
        session = self._sessions[request.build_id]
        container = f"envbake-{request.build_id}-{index:03d}"
        argv = [self.docker, "create", "--name", container]
        if request.base.platform:
            argv.extend(["--platform", request.base.platform])
        argv.extend(["--workdir", request.workdir])
        for key, value in sorted(request.env.items()):
            argv.extend(["--env", f"{key}={value}"])
        argv.extend(["--entrypoint", "/bin/sh", session.current, "-c", step_command(step)])
        self._check(self._docker(argv, request), step=step, operation="create")

        try:
            if artifact is not None:
                copied = self._docker(
                    [self.docker, "cp", str(artifact), f"{container}:{INSTALLER_PATH}"],
                    request,
                )
                self._check(copied, step=step, operation="copy_installer")
            started = run_command(
                [self.docker, "start", "--attach", container],
                operation="start",
                timeout=step.timeout or request.step_timeout,
                cancel_event=request.cancel_event,
            )
            self._check(started, step=step, operation="start")
            changes = [item for change in COMMIT_CHANGES for item in ("--change", change)]
            committed = self._docker([self.docker, "commit", *changes, container], request)
            self._check(committed, step=step, operation="commit")
        finally:
            self._docker([self.docker, "rm", "--force", container], request, cancellable=False)

        image_id = committed.stdout.strip()
        session.created.append(image_id)
        session.current = image_id
        size = self._image_size(image_id, request)
        size_delta = size - session.size
        session.size = size
        payload = step.payload
        packages = (
            tuple(sorted(payload.package_names)) if isinstance(payload, PackageInstall) else ()
        )
        return Layer(
            index=index,
            kind=step.kind,
            step=step.label,
            digest=image_id.removeprefix("sha256:"),
            size_delta=size_delta,
            packages=packages,
        )

    def probe(self, request: BuildRequest, paths: Sequence[str]) -> tuple[str, ...]:
        if not paths:
            return ()
        session = self._sessions[request.build_id]
        script = 'for p in "$@"; do [ -e "$p" ] || echo "$p"; done'
        result = self._docker(
            [
                self.docker, "run", "--rm", "--entrypoint", "/bin/sh",
                session.current, "-c", script, "probe", *paths,
            ],
            request,
        )
        if not result.ok:
            raise StepExecutionFailure(
                "Probing the image for provided paths failed.",
                context={"backend": self.name, "operation": "probe", **result.failure_context()},
            )
        return tuple(line for line in result.stdout.splitlines() if line)

    def commit(
        self,
        request: BuildRequest,
        layers: Sequence[Layer],
        *,
        tag: str | None = None,
    ) -> CommitResult:
        session = self._sessions[request.build_id]
        final = session.current
        if self.squash:
            final = self._squash(request, session)
        reference = final
        if tag:
            tagged = self._docker([self.docker, "tag", final, tag], request)
            if not tagged.ok:
                raise StepExecutionFailure(
                    "Tagging the built image failed.",
                    context={"backend": self.name, "tag": tag, **tagged.failure_context()},
                )
            reference = tag
        return CommitResult(reference=reference, size_bytes=self._image_size(final, request))

    def discard(self, request: BuildRequest) -> None:
        session = self._sessions.pop(request.build_id, None)
        if session is None:
            return
        # Base images are never in `created`, so they are never removed.
        for image_id in reversed(session.created):
            self._docker([self.docker, "rmi", "--force", image_id], request, cancellable=False)

    def cleanup(self, request: BuildRequest) -> None:
        self._sessions.pop(request.build_id, None)

    def _squash(self, request: BuildRequest, session: _DockerSession) -> str:
        container = f"envbake-{request.build_id}-squash"
        created = self._docker(
            [self.docker, "create", "--name", container, session.current],
            request,
        )
        if not created.ok:
            raise StepExecutionFailure(
                "Creating the squash container failed.",
                context={"backend": self.name, **created.failure_context()},
            )
        changes = [f"WORKDIR {request.workdir}", *COMMIT_CHANGES]
        changes.extend(f"ENV {key}={value}" for key, value in sorted(request.env.items()))
        import_argv = [self.docker, "import"]
        if request.base.platform:
            import_argv.extend(["--platform", request.base.platform])
        for change in changes:
            import_argv.extend(["--change", change])
        import_argv.append("-")
        try:
            exporter = subprocess.Popen(
                [self.docker, "export", container],
                stdout=subprocess.PIPE,
            )
            imported = subprocess.run(
                import_argv,
                stdin=exporter.stdout,
                capture_output=True,
                text=True,
                check=False,
            )
            if exporter.stdout is not None:
                exporter.stdout.close()
            export_code = exporter.wait()
        finally:
            self._docker([self.docker, "rm", "--force", container], request, cancellable=False)
        if export_code != 0 or imported.returncode != 0:
            raise StepExecutionFailure(
                "Squashing the built image failed.",
                context={
                    "backend": self.name,
                    "operation": "squash",
                    "export_returncode": str(export_code),
                    "import_returncode": str(imported.returncode),
                    "stderr": imported.stderr[-2000:],
                },
            )
        squashed = imported.stdout.strip()
        for image_id in reversed(session.created):
            self._docker([self.docker, "rmi", image_id], request)
        session.created = [squashed]
        session.current = squashed
        return squashed

    def _docker(
        self,
        argv: list[str],
        request: BuildRequest,
        *,
        cancellable: bool = True,
    ) -> CommandResult:
        # Teardown commands must still run once the build has been cancelled.
        cancel_event = request.cancel_event if cancellable else None
        return run_command(argv, operation=argv[1], cancel_event=cancel_event)

    def _check(self, result: CommandResult, *, step: ProvisioningStep, operation: str) -> None:
        if result.ok:
            return
        raise StepExecutionFailure(
            "Container step failed.",
            hint="Check the step output for details.",
            context={
                **step.context(),
                "backend": self.name,
                "operation": operation,
                **result.failure_context(),
            },
        )

    def _image_exists(self, reference: str) -> bool:
        result = run_command(
            [self.docker, "image", "inspect", reference],
            operation="inspect",
        )
        return result.ok

    def _image_size(self, reference: str, request: BuildRequest) -> int:
        result = self._docker(
            [self.docker, "image", "inspect", "--format", "{{.Size}}", reference],
            request,
        )
        if not result.ok:
            raise StepExecutionFailure(
                "Inspecting image size failed.",
                context={"backend": self.name, "image": reference, **result.failure_context()},
            )
        try:
            return int(result.stdout.strip())
        except ValueError as exc:
            raise StepExecutionFailure(
                "Image size reported by docker is not an integer.",
                context={"backend": self.name, "image": reference, "output": result.stdout},
            ) from exc

    def _pull(self, request: BuildRequest) -> None:
        argv = [self.docker, "pull"]
        if request.base.platform:
            argv.extend(["--platform", request.base.platform])
        argv.append(request.base.reference)
        result = self._docker(argv, request)
        if not result.ok:
            raise NetworkFailure(
                "Pulling the base image failed.",
                hint="Check registry connectivity and the base image reference.",
                context={
                    "backend": self.name,
                    "base": request.base.reference,
                    **result.failure_context(),
                },
            )

    def _ensure_prerequisites(self) -> None:
        if shutil.which(self.docker) is None:
            raise StepExecutionFailure(
                f"Docker backend requires `{self.docker}` in PATH.",
                hint="Install a docker-compatible CLI or use the in-process backend.",
                context={"backend": self.name, "operation": "prepare"},
            )
