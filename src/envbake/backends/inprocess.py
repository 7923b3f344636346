"""In-process build backend for testing and development.

Materialises the environment as a plain directory rootfs under the build
directory instead of a container image, making it suitable for:
- Unit tests that verify the builder pipeline end to end
- Development machines without a container engine
- CI environments without privileged containers

Package installs are resolved against a local package table rather than a
real repository.  Installer scripts really run on the host, with ``HOME``
and ``ENVBAKE_ROOT`` pointing into the rootfs being built.
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import os
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from envbake.backends.base import layer_digest
from envbake.errors import StepExecutionFailure, ValidationError
from envbake.models import (
    BuildRequest,
    Cleanup,
    CommitResult,
    Layer,
    PackageInstall,
    ProvisioningStep,
    RemoteScriptInstall,
    image_digest,
)
from envbake.process import run_command

# Executables dropped into the rootfs for well-known packages
PACKAGE_BINARIES: dict[str, tuple[str, ...]] = {
    "build-essential": ("usr/bin/cc", "usr/bin/gcc", "usr/bin/g++", "usr/bin/make"),
    "curl": ("usr/bin/curl",),
    "qemu-system": (
        "usr/bin/qemu-system-aarch64",
        "usr/bin/qemu-system-riscv64",
        "usr/bin/qemu-system-x86_64",
    ),
}

DEFAULT_PACKAGE_VERSION = "1.0"
ARCHIVE_SIZE = 64 * 1024
PACKAGE_DB = "var/lib/envbake/packages"

Snapshot = dict[str, tuple[str, int]]


@dataclass(slots=True)
class InProcessBackend:
    """Backend that builds a directory rootfs in-process."""

    name: str = "inprocess"
    base_roots: dict[str, Path] = field(default_factory=dict)
    unavailable_packages: frozenset[str] = frozenset()
    package_versions: dict[str, str] = field(default_factory=dict)
    keep_failed: bool = False
    _snapshots: dict[str, Snapshot] = field(default_factory=dict, init=False, repr=False)

    def prepare(self, request: BuildRequest) -> None:
        staging = self._staging_dir(request)
        if staging.exists():
            shutil.rmtree(staging)
        rootfs = staging / "rootfs"
        base_root = self.base_roots.get(request.base.reference)
        if base_root is not None:
            shutil.copytree(base_root, rootfs, symlinks=True)
        else:
            self._write_minimal_base(request, rootfs)
        (rootfs / request.workdir.lstrip("/")).mkdir(parents=True, exist_ok=True)
        (staging / "layers").mkdir(parents=True, exist_ok=True)
        self._snapshots[request.build_id] = _snapshot(rootfs)

    def apply(
        self,
        request: BuildRequest,
        step: ProvisioningStep,
        *,
        index: int,
        artifact: Path | None = None,
    ) -> Layer:
        rootfs = self._rootfs(request)
        payload = step.payload
        packages: tuple[str, ...] = ()
        if isinstance(payload, PackageInstall):
            self._install_packages(rootfs, step, payload)
            packages = tuple(sorted(payload.package_names))
        elif isinstance(payload, RemoteScriptInstall):
            if artifact is None:
                raise ValidationError(
                    "Remote script steps require fetched installer content.",
                    context={**step.context(), "backend": self.name},
                )
            self._run_installer(request, rootfs, step, payload, artifact)
        elif isinstance(payload, Cleanup):
            self._remove_paths(rootfs, payload)

        previous = self._snapshots[request.build_id]
        current = _snapshot(rootfs)
        self._snapshots[request.build_id] = current
        delta = _diff(previous, current)
        layer = Layer(
            index=index,
            kind=step.kind,
            step=step.label,
            digest=layer_digest(delta),
            size_delta=_total_size(current) - _total_size(previous),
            packages=packages,
        )
        record = self._staging_dir(request) / "layers" / f"{index:03d}.json"
        record.write_text(
            json.dumps({**layer.to_payload(), "delta": delta}, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        return layer

    def probe(self, request: BuildRequest, paths: Sequence[str]) -> tuple[str, ...]:
        rootfs = self._rootfs(request)
        return tuple(path for path in paths if not os.path.lexists(rootfs / path.lstrip("/")))

    def commit(
        self,
        request: BuildRequest,
        layers: Sequence[Layer],
        *,
        tag: str | None = None,
    ) -> CommitResult:
        digest = image_digest(request.base, tuple(layers))
        staging = self._staging_dir(request)
        destination = request.build_dir / "images" / digest
        if destination.exists():
            shutil.rmtree(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(staging), str(destination))
        rootfs = destination / "rootfs"
        reference = f"sha256:{digest}"
        if tag:
            tags_dir = request.build_dir / "tags"
            tags_dir.mkdir(parents=True, exist_ok=True)
            (tags_dir / tag.replace("/", "_")).write_text(digest + "\n", encoding="utf-8")
            reference = tag
        size = _total_size(self._snapshots.pop(request.build_id, None) or _snapshot(rootfs))
        return CommitResult(reference=reference, size_bytes=size, location=rootfs)

    def discard(self, request: BuildRequest) -> None:
        self._snapshots.pop(request.build_id, None)
        staging = self._staging_dir(request)
        if not staging.exists():
            return
        if self.keep_failed:
            failed = request.build_dir / "failed" / request.build_id
            failed.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(staging), str(failed))
        else:
            shutil.rmtree(staging)

    def cleanup(self, request: BuildRequest) -> None:
        self._snapshots.pop(request.build_id, None)
        staging_root = request.build_dir / ".staging"
        if staging_root.exists() and not any(staging_root.iterdir()):
            staging_root.rmdir()

    def _staging_dir(self, request: BuildRequest) -> Path:
        return request.build_dir / ".staging" / request.build_id

    def _rootfs(self, request: BuildRequest) -> Path:
        return self._staging_dir(request) / "rootfs"

    def _write_minimal_base(self, request: BuildRequest, rootfs: Path) -> None:
        for directory in ("bin", "etc", "root", "tmp", "usr/bin", "var/cache", "var/lib"):
            (rootfs / directory).mkdir(parents=True, exist_ok=True)
        (rootfs / "etc" / "os-release").write_text(
            f'NAME="{request.base.name}"\nVERSION_ID="{request.base.tag}"\n',
            encoding="utf-8",
        )

    def _install_packages(
        self,
        rootfs: Path,
        step: ProvisioningStep,
        payload: PackageInstall,
    ) -> None:
        missing = sorted(set(payload.package_names) & self.unavailable_packages)
        if missing:
            raise StepExecutionFailure(
                "Package resolution failed.",
                hint="Check the package names against the configured repository.",
                context={
                    **step.context(),
                    "backend": self.name,
                    "manager": payload.manager,
                    "packages": ",".join(missing),
                },
            )
        if payload.update_index:
            self._write_index(rootfs, payload)
        for package in payload.packages:
            name, _, pinned = package.partition("=")
            version = pinned or self.package_versions.get(name, DEFAULT_PACKAGE_VERSION)
            record = rootfs / PACKAGE_DB / name
            record.parent.mkdir(parents=True, exist_ok=True)
            record.write_text(f"{name} {version}\n", encoding="utf-8")
            for binary in PACKAGE_BINARIES.get(name, ()):
                target = rootfs / binary
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(f"#!/bin/sh\necho '{name} {version}'\n", encoding="utf-8")
                target.chmod(0o755)
            archive = rootfs / _archive_path(payload.manager, name, version)
            archive.parent.mkdir(parents=True, exist_ok=True)
            archive.write_bytes(_filler(f"{name}={version}", ARCHIVE_SIZE))

    def _write_index(self, rootfs: Path, payload: PackageInstall) -> None:
        if payload.manager == "apk":
            index = rootfs / "var/cache/apk/APKINDEX.envbake.tar.gz"
        else:
            index = rootfs / "var/lib/apt/lists/envbake_dists_stable_main_Packages"
        index.parent.mkdir(parents=True, exist_ok=True)
        index.write_bytes(_filler("index", ARCHIVE_SIZE))

    def _run_installer(
        self,
        request: BuildRequest,
        rootfs: Path,
        step: ProvisioningStep,
        payload: RemoteScriptInstall,
        artifact: Path,
    ) -> None:
        home = rootfs / "root"
        home.mkdir(parents=True, exist_ok=True)
        env = {
            "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
            "HOME": str(home),
            "ENVBAKE_ROOT": str(rootfs),
            **request.env,
            **payload.env,
        }
        result = run_command(
            [payload.interpreter, str(artifact), *payload.args],
            operation="remote_script_install",
            cwd=rootfs / request.workdir.lstrip("/"),
            env=env,
            timeout=step.timeout or request.step_timeout,
            cancel_event=request.cancel_event,
        )
        if not result.ok:
            raise StepExecutionFailure(
                "Installer script failed.",
                hint="Check the installer output for details.",
                context={**step.context(), "backend": self.name, **result.failure_context()},
            )

    def _remove_paths(self, rootfs: Path, payload: Cleanup) -> None:
        for pattern in payload.paths:
            for match in sorted(rootfs.glob(pattern.lstrip("/")), reverse=True):
                _remove_unpreserved(rootfs, match, payload.preserve)


def _archive_path(manager: str, name: str, version: str) -> str:
    if manager == "apk":
        return f"var/cache/apk/{name}-{version}.apk"
    return f"var/cache/apt/archives/{name}_{version}_amd64.deb"


def _filler(seed: str, size: int) -> bytes:
    block = hashlib.sha256(seed.encode("utf-8")).digest()
    return (block * (size // len(block) + 1))[:size]


def _snapshot(rootfs: Path) -> Snapshot:
    entries: Snapshot = {}
    for current, dirnames, filenames in os.walk(rootfs):
        base = Path(current)
        for dirname in dirnames:
            path = base / dirname
            rel = path.relative_to(rootfs).as_posix()
            if path.is_symlink():
                entries[rel] = (f"link:{os.readlink(path)}", 0)
            else:
                entries[rel] = ("dir", 0)
        for filename in filenames:
            path = base / filename
            rel = path.relative_to(rootfs).as_posix()
            if path.is_symlink():
                entries[rel] = (f"link:{os.readlink(path)}", 0)
                continue
            stat = path.stat()
            digest = hashlib.sha256(path.read_bytes()).hexdigest()
            entries[rel] = (f"{digest}:{stat.st_mode & 0o777:o}", stat.st_size)
    return entries


def _diff(previous: Snapshot, current: Snapshot) -> dict[str, object]:
    changed = {
        path: entry[0]
        for path, entry in sorted(current.items())
        if previous.get(path) != entry
    }
    removed = sorted(path for path in previous if path not in current)
    return {"changed": changed, "removed": removed}


def _total_size(snapshot: Snapshot) -> int:
    return sum(size for _, size in snapshot.values())


def _remove_unpreserved(rootfs: Path, path: Path, preserve: tuple[str, ...]) -> None:
    """Delete *path*, descending into directories that hold preserved entries."""
    if not os.path.lexists(path):
        return
    absolute = "/" + path.relative_to(rootfs).as_posix()
    if any(fnmatch.fnmatch(absolute, keep) for keep in preserve):
        return
    if path.is_dir() and not path.is_symlink():
        if any(_is_ancestor_of(absolute, keep) for keep in preserve):
            for child in sorted(path.iterdir()):
                _remove_unpreserved(rootfs, child, preserve)
            return
        shutil.rmtree(path)
    else:
        path.unlink()


def _is_ancestor_of(absolute: str, pattern: str) -> bool:
    parts = absolute.strip("/").split("/")
    pattern_parts = pattern.strip("/").split("/")
    if len(pattern_parts) <= len(parts):
        return False
    return all(fnmatch.fnmatch(part, keep) for part, keep in zip(parts, pattern_parts))
