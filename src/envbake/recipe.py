"""Declarative environment recipes: fluent Python API and JSON recipe files."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Self

from envbake.backends import BuildBackend, InProcessBackend
from envbake.builder import DEFAULT_LOCK_NAME, EnvironmentBuilder
from envbake.compiler import DockerfileEmission, emit_dockerfile
from envbake.errors import MalformedStepSpec, ValidationError
from envbake.lockfile import (
    Lockfile,
    build_lockfile,
    installer_digests,
    read_lockfile,
    recipe_payload,
    resolve_fetches,
    write_lockfile,
)
from envbake.models import (
    BaseImage,
    Cleanup,
    EnvironmentImage,
    IntegrityPolicy,
    PackageInstall,
    PackageManager,
    ProvisioningStep,
    RemoteScriptInstall,
    StepKind,
)
from envbake.observability import StructuredLogger
from envbake.policy import Policy, ensure_steps_allowed
from envbake.validate import validate_build_inputs

RECIPE_VERSION = 1


@dataclass(slots=True)
class Recipe:
    """An ordered environment recipe rooted at one base image.

    Steps are numbered in the order they are declared::

        recipe = Recipe("ubuntu:22.04")
        recipe.install("curl", "build-essential")
        recipe.run_installer("https://example.org/install.sh", sha256="...", args=("-y",))
        recipe.cleanup("/var/lib/apt/lists/*")
        image = recipe.bake()
    """

    base: BaseImage | str
    build_dir: Path = field(default_factory=lambda: Path("build"))
    policy: Policy = field(default_factory=Policy)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    _steps: list[ProvisioningStep] = field(init=False, default_factory=list, repr=False)
    _workdir: str = field(init=False, default="/", repr=False)
    _env: dict[str, str] = field(init=False, default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        if isinstance(self.base, str):
            self.base = BaseImage.parse(self.base)
        self.build_dir = Path(self.build_dir)

    @property
    def base_image(self) -> BaseImage:
        assert isinstance(self.base, BaseImage)
        return self.base

    @property
    def steps(self) -> tuple[ProvisioningStep, ...]:
        return tuple(self._steps)

    @property
    def working_dir(self) -> str:
        return self._workdir

    @property
    def environment(self) -> dict[str, str]:
        return dict(self._env)

    def set_policy(self, policy: Policy) -> Self:
        self.policy = policy
        return self

    def workdir(self, path: str) -> Self:
        if not path.startswith("/"):
            raise ValidationError(
                "workdir() requires an absolute path.",
                context={"workdir": path},
            )
        self._workdir = path
        return self

    def env(self, **values: str) -> Self:
        for key, value in values.items():
            if not isinstance(value, str):
                raise ValidationError(
                    "Environment values must be strings.",
                    context={"name": key},
                )
        self._env.update(values)
        return self

    def install(
        self,
        *packages: str,
        manager: PackageManager = "apt",
        update_index: bool = True,
        name: str | None = None,
        provides: tuple[str, ...] = (),
        timeout: float | None = None,
    ) -> Self:
        if not packages:
            raise ValidationError("install() requires at least one package.")
        self._steps.append(
            ProvisioningStep.package_install(
                *packages,
                order=self._next_order(),
                manager=manager,
                update_index=update_index,
                name=name,
                provides=tuple(provides),
                timeout=timeout,
            )
        )
        return self

    def run_installer(
        self,
        url: str,
        *,
        sha256: str | None = None,
        integrity: IntegrityPolicy | None = None,
        args: tuple[str, ...] = (),
        interpreter: str = "sh",
        env: Mapping[str, str] | None = None,
        name: str | None = None,
        provides: tuple[str, ...] = (),
        timeout: float | None = None,
    ) -> Self:
        """Fetch an installer script and run it with *args*.

        Exactly one of *sha256* or *integrity* must be given; unverified
        installers require ``integrity=IntegrityPolicy.unverified()``.
        """
        if sha256 is not None and integrity is not None:
            raise ValidationError(
                "run_installer() accepts either sha256 or integrity, not both.",
                context={"url": url},
            )
        if sha256 is not None:
            integrity = IntegrityPolicy.pinned(sha256)
        if integrity is None:
            raise ValidationError(
                "run_installer() requires an integrity policy.",
                hint="Pass sha256=..., integrity=IntegrityPolicy.locked(), "
                "or integrity=IntegrityPolicy.unverified().",
                context={"url": url},
            )
        self._steps.append(
            ProvisioningStep.remote_script_install(
                url,
                integrity=integrity,
                order=self._next_order(),
                args=tuple(args),
                interpreter=interpreter,
                env=env,
                name=name,
                provides=tuple(provides),
                timeout=timeout,
            )
        )
        return self

    def cleanup(
        self,
        *paths: str,
        preserve: tuple[str, ...] = (),
        name: str | None = None,
        timeout: float | None = None,
    ) -> Self:
        if not paths:
            raise ValidationError("cleanup() requires at least one path.")
        self._steps.append(
            ProvisioningStep.cleanup(
                *paths,
                order=self._next_order(),
                preserve=tuple(preserve),
                name=name,
                timeout=timeout,
            )
        )
        return self

    def add_step(self, step: ProvisioningStep) -> Self:
        self._steps.append(step)
        return self

    def validate(self) -> None:
        """Run every pre-flight check a build would run, without building."""
        validate_build_inputs(self.base_image, self.steps)
        ensure_steps_allowed(policy=self.policy, steps=self.steps)

    def to_payload(self) -> dict[str, Any]:
        return {"version": RECIPE_VERSION, **self._recipe_payload()}

    def dump(self, path: str | Path) -> Path:
        destination = Path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(
            json.dumps(self.to_payload(), indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        return destination

    @classmethod
    def load(cls, path: str | Path, **options: Any) -> Recipe:
        source = Path(path)
        try:
            raw = source.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ValidationError(
                "Recipe file does not exist.",
                context={"path": str(source)},
            ) from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(
                "Invalid recipe JSON.",
                hint=str(exc),
                context={"path": str(source)},
            ) from exc
        return cls.from_payload(payload, **options)

    @classmethod
    def from_payload(cls, payload: Any, **options: Any) -> Recipe:
        if not isinstance(payload, dict):
            raise ValidationError("Recipe document must be a JSON object.")
        version = payload.get("version", RECIPE_VERSION)
        if version != RECIPE_VERSION:
            raise ValidationError(
                "Unsupported recipe version.",
                context={"version": str(version)},
            )
        recipe = cls(_parse_base(payload.get("base")), **options)
        workdir = payload.get("workdir", "/")
        if not isinstance(workdir, str):
            raise ValidationError("Recipe `workdir` must be a string.")
        recipe.workdir(workdir)
        env = payload.get("env", {})
        if not isinstance(env, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in env.items()
        ):
            raise ValidationError("Recipe `env` must map strings to strings.")
        recipe.env(**env)
        steps = payload.get("steps")
        if not isinstance(steps, list):
            raise ValidationError("Recipe `steps` must be a list.")
        for index, entry in enumerate(steps):
            recipe.add_step(_parse_step(entry, index))
        return recipe

    def lock(self, path: str | Path | None = None) -> Path:
        """Fetch every installer once and pin the recipe plus installer digests."""
        self.validate()
        fetches = resolve_fetches(
            self.steps,
            cache_dir=self.build_dir / ".cache" / "fetch",
            policy=self.policy,
        )
        lock = build_lockfile(recipe=self._recipe_payload(), fetches=fetches)
        return write_lockfile(lock, self._lock_path(path))

    def emit_dockerfile(
        self,
        path: str | Path,
        *,
        lock: Lockfile | None = None,
    ) -> DockerfileEmission:
        """Write an equivalent Dockerfile.

        Without an explicit *lock*, the default lockfile is used when present.
        """
        if lock is None and self._lock_path(None).exists():
            lock = self.read_lock()
        locked = installer_digests(self.steps, lock) if lock is not None else {}
        return emit_dockerfile(
            self.base_image,
            self.steps,
            path,
            workdir=self._workdir,
            env=self._env,
            locked=locked,
            min_tls_version=self.policy.min_tls_version,
            require_integrity=self.policy.require_integrity,
        )

    def read_lock(self, path: str | Path | None = None) -> Lockfile:
        return read_lockfile(self._lock_path(path))

    def bake(
        self,
        backend: BuildBackend | None = None,
        *,
        tag: str | None = None,
        frozen: bool = False,
        lock_path: str | Path | None = None,
    ) -> EnvironmentImage:
        builder = EnvironmentBuilder(
            backend=backend or InProcessBackend(),
            build_dir=self.build_dir,
            policy=self.policy,
            logger=self.logger,
        )
        return builder.build(
            self.base_image,
            self.steps,
            workdir=self._workdir,
            env=self._env,
            tag=tag,
            frozen=frozen,
            lock_path=self._lock_path(lock_path),
        )

    def _recipe_payload(self) -> dict[str, Any]:
        return recipe_payload(
            base=self.base_image,
            steps=self.steps,
            workdir=self._workdir,
            env=self._env,
        )

    def _lock_path(self, path: str | Path | None) -> Path:
        if path is None:
            return self.build_dir / DEFAULT_LOCK_NAME
        return Path(path)

    def _next_order(self) -> int:
        if not self._steps:
            return 0
        return self._steps[-1].order + 1


def _parse_base(raw: Any) -> BaseImage:
    if isinstance(raw, str):
        return BaseImage.parse(raw)
    if not isinstance(raw, dict):
        raise ValidationError("Recipe `base` must be a reference string or an object.")
    name = raw.get("name")
    tag = raw.get("tag", "latest")
    platform = raw.get("platform")
    digest = raw.get("digest")
    if not isinstance(name, str) or not name or not isinstance(tag, str):
        raise ValidationError("Recipe `base` requires a string `name` and `tag`.")
    for key, value in (("platform", platform), ("digest", digest)):
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"Recipe `base.{key}` must be a string.")
    return BaseImage(name=name, tag=tag, platform=platform, digest=digest)


def _parse_step(entry: Any, index: int) -> ProvisioningStep:
    context = {"index": str(index)}
    if not isinstance(entry, dict):
        raise MalformedStepSpec("Recipe step must be an object.", context=context)
    try:
        kind = StepKind(entry.get("kind"))
    except ValueError as exc:
        raise MalformedStepSpec(
            "Unknown step kind.",
            hint=f"Use one of: {', '.join(kind.value for kind in StepKind)}.",
            context={**context, "kind": str(entry.get("kind"))},
        ) from exc
    context["kind"] = kind.value

    order = entry.get("order", index)
    if not isinstance(order, int) or isinstance(order, bool):
        raise MalformedStepSpec("Step `order` must be an integer.", context=context)
    timeout = entry.get("timeout")
    if timeout is not None and (
        not isinstance(timeout, int | float) or isinstance(timeout, bool)
    ):
        raise MalformedStepSpec("Step `timeout` must be a number.", context=context)
    name = _optional_str(entry, "name", context)
    provides = _str_tuple(entry, "provides", context, required=False)

    payload: PackageInstall | RemoteScriptInstall | Cleanup
    if kind is StepKind.PACKAGE_INSTALL:
        update_index = entry.get("update_index", True)
        if not isinstance(update_index, bool):
            raise MalformedStepSpec("Step `update_index` must be a boolean.", context=context)
        payload = PackageInstall(
            packages=_str_tuple(entry, "packages", context),
            manager=_optional_str(entry, "manager", context) or "apt",  # type: ignore[arg-type]
            update_index=update_index,
        )
    elif kind is StepKind.REMOTE_SCRIPT_INSTALL:
        url = _optional_str(entry, "url", context)
        if not url:
            raise MalformedStepSpec("Remote script step requires a `url`.", context=context)
        env = entry.get("env", {})
        if not isinstance(env, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in env.items()
        ):
            raise MalformedStepSpec("Step `env` must map strings to strings.", context=context)
        payload = RemoteScriptInstall(
            url=url,
            integrity=_parse_integrity(entry.get("integrity"), context),
            args=_str_tuple(entry, "args", context, required=False),
            interpreter=_optional_str(entry, "interpreter", context) or "sh",
            env=env,
        )
    else:
        payload = Cleanup(
            paths=_str_tuple(entry, "paths", context),
            preserve=_str_tuple(entry, "preserve", context, required=False),
        )
    return ProvisioningStep(
        kind=kind,
        payload=payload,
        order=order,
        name=name,
        provides=provides,
        timeout=None if timeout is None else float(timeout),
    )


def _parse_integrity(raw: Any, context: dict[str, str]) -> IntegrityPolicy:
    if not isinstance(raw, dict):
        raise MalformedStepSpec(
            "Remote script step requires an `integrity` object.",
            hint='Use {"kind": "sha256", "sha256": "..."}, {"kind": "lock"} or {"kind": "none"}.',
            context=context,
        )
    kind = raw.get("kind")
    sha256 = raw.get("sha256")
    if kind not in ("sha256", "lock", "none"):
        raise MalformedStepSpec(
            "Unknown integrity kind.",
            context={**context, "integrity": str(kind)},
        )
    if sha256 is not None and not isinstance(sha256, str):
        raise MalformedStepSpec("Integrity `sha256` must be a string.", context=context)
    return IntegrityPolicy(kind=kind, sha256=sha256)


def _optional_str(entry: dict[str, Any], key: str, context: dict[str, str]) -> str | None:
    value = entry.get(key)
    if value is not None and not isinstance(value, str):
        raise MalformedStepSpec(f"Step `{key}` must be a string.", context=context)
    return value


def _str_tuple(
    entry: dict[str, Any],
    key: str,
    context: dict[str, str],
    *,
    required: bool = True,
) -> tuple[str, ...]:
    value = entry.get(key)
    if value is None and not required:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise MalformedStepSpec(f"Step `{key}` must be a list of strings.", context=context)
    return tuple(value)
