from pathlib import Path

import pytest

from envbake import Recipe
from envbake.compiler import emit_dockerfile, render_dockerfile
from envbake.errors import LockfileError, MalformedStepSpec, PolicyError, ValidationError
from envbake.lockfile import LockedFetch, build_lockfile, write_lockfile
from envbake.models import BaseImage, IntegrityPolicy, ProvisioningStep
from envbake.policy import Policy
from envbake.profiles.toolchain import toolchain_recipe

DIGEST = "d" * 64


def test_toolchain_dockerfile_matches_recipe(tmp_path: Path) -> None:
    recipe = toolchain_recipe(build_dir=tmp_path / "build", rustup_sha256=DIGEST)

    emission = recipe.emit_dockerfile(tmp_path / "out" / "Dockerfile")
    content = emission.path.read_text(encoding="utf-8")

    assert content.splitlines()[:3] == [
        "# syntax=docker/dockerfile:1",
        "FROM --platform=linux/amd64 ubuntu:22.04",
        "WORKDIR /workspace",
    ]
    assert (
        "RUN export DEBIAN_FRONTEND=noninteractive && apt-get update "
        "&& apt-get install -y curl qemu-system build-essential"
    ) in content
    assert (
        "curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs -o /tmp/envbake-installer"
    ) in content
    assert f'echo "{DIGEST}  /tmp/envbake-installer" | sha256sum -c -' in content
    assert "sh /tmp/envbake-installer -y" in content
    assert "RUN rm -rf -- /var/lib/apt/lists/* /var/cache/apt/archives/*.deb" in content
    assert content.index("apt-get install") < content.index("sha256sum") < content.index("rm -rf")
    assert len(emission.sha256) == 64


def test_emission_is_deterministic(tmp_path: Path) -> None:
    recipe = toolchain_recipe(build_dir=tmp_path, rustup_sha256=DIGEST)

    first = recipe.emit_dockerfile(tmp_path / "a" / "Dockerfile")
    second = recipe.emit_dockerfile(tmp_path / "b" / "Dockerfile")

    assert first.sha256 == second.sha256


def test_lock_bound_installer_requires_locked_digest(tmp_path: Path) -> None:
    recipe = toolchain_recipe(build_dir=tmp_path)
    lock = build_lockfile(
        recipe={},
        fetches=[LockedFetch(source="https://sh.rustup.rs", kind="https", digest=DIGEST)],
    )

    with pytest.raises(LockfileError):
        recipe.emit_dockerfile(tmp_path / "unlocked" / "Dockerfile")
    assert not (tmp_path / "unlocked").exists()

    locked = recipe.emit_dockerfile(tmp_path / "locked", lock=lock)
    content = locked.path.read_text(encoding="utf-8")
    assert f'echo "{DIGEST}  /tmp/envbake-installer" | sha256sum -c -' in content


def test_default_lockfile_is_used_when_present(tmp_path: Path) -> None:
    recipe = toolchain_recipe(build_dir=tmp_path / "build")
    lock = build_lockfile(
        recipe={},
        fetches=[LockedFetch(source="https://sh.rustup.rs", kind="https", digest=DIGEST)],
    )
    write_lockfile(lock, tmp_path / "build" / "envbake.lock")

    emission = recipe.emit_dockerfile(tmp_path / "Dockerfile")

    assert "sha256sum -c" in emission.path.read_text(encoding="utf-8")


def test_unverified_installer_is_emitted_only_when_policy_allows(tmp_path: Path) -> None:
    recipe = Recipe("ubuntu:22.04", build_dir=tmp_path)
    recipe.run_installer("https://sh.rustup.rs", integrity=IntegrityPolicy.unverified())

    with pytest.raises(PolicyError):
        recipe.emit_dockerfile(tmp_path / "strict" / "Dockerfile")

    recipe.set_policy(Policy(require_integrity=False))
    emission = recipe.emit_dockerfile(tmp_path / "relaxed" / "Dockerfile")
    content = emission.path.read_text(encoding="utf-8")
    assert "sha256sum" not in content
    assert "sh /tmp/envbake-installer" in content


def test_emit_into_existing_directory_writes_dockerfile(tmp_path: Path) -> None:
    base = BaseImage.parse("alpine:3.20")
    steps = [ProvisioningStep.package_install("curl", order=0, manager="apk")]
    (tmp_path / "ctx").mkdir()

    emission = emit_dockerfile(base, steps, tmp_path / "ctx", env={"LANG": "C.UTF-8"})

    assert emission.path == tmp_path / "ctx" / "Dockerfile"
    content = emission.path.read_text(encoding="utf-8")
    assert "FROM alpine:3.20" in content
    assert 'ENV LANG="C.UTF-8"' in content
    assert "RUN apk update && apk add curl" in content


def test_tls13_floor_is_emitted() -> None:
    steps = [
        ProvisioningStep.remote_script_install(
            "https://sh.rustup.rs",
            integrity=IntegrityPolicy.pinned(DIGEST),
            order=0,
        )
    ]

    content = render_dockerfile(BaseImage.parse("ubuntu:22.04"), steps, min_tls_version="1.3")

    assert "--tlsv1.3" in content


def test_local_installers_cannot_be_emitted(tmp_path: Path) -> None:
    recipe = Recipe("ubuntu:22.04", build_dir=tmp_path)
    recipe.run_installer("file:///srv/mirror/install.sh", sha256=DIGEST)

    with pytest.raises(ValidationError):
        recipe.emit_dockerfile(tmp_path / "Dockerfile")


def test_emission_validates_steps_first(tmp_path: Path) -> None:
    steps = [ProvisioningStep.cleanup("/", order=0)]

    with pytest.raises(MalformedStepSpec):
        emit_dockerfile(BaseImage.parse("ubuntu:22.04"), steps, tmp_path / "Dockerfile")
    assert not (tmp_path / "Dockerfile").exists()
