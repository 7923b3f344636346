from pathlib import Path

from envbake import Recipe
from envbake.models import StepKind
from envbake.profiles import apply_toolchain_profile, toolchain_recipe
from envbake.profiles.toolchain import (
    APT_CACHE_PATHS,
    CARGO_BINARIES,
    RUSTUP_URL,
    TOOLCHAIN_PACKAGES,
)


def test_toolchain_recipe_reproduces_environment_pattern(tmp_path: Path) -> None:
    recipe = toolchain_recipe(build_dir=tmp_path)
    install, rustup, cleanup = recipe.steps

    assert recipe.base_image.reference == "ubuntu:22.04"
    assert recipe.base_image.platform == "linux/amd64"
    assert recipe.working_dir == "/workspace"
    assert install.kind is StepKind.PACKAGE_INSTALL
    assert install.payload.packages == TOOLCHAIN_PACKAGES  # type: ignore[union-attr]
    assert rustup.kind is StepKind.REMOTE_SCRIPT_INSTALL
    assert rustup.payload.url == RUSTUP_URL  # type: ignore[union-attr]
    assert rustup.payload.args == ("-y",)  # type: ignore[union-attr]
    assert rustup.payload.integrity.kind == "lock"  # type: ignore[union-attr]
    assert rustup.provides == CARGO_BINARIES
    assert cleanup.payload.paths == APT_CACHE_PATHS  # type: ignore[union-attr]


def test_pinned_rustup_digest_is_used(tmp_path: Path) -> None:
    recipe = toolchain_recipe(build_dir=tmp_path, rustup_sha256="e" * 64)

    integrity = recipe.steps[1].payload.integrity  # type: ignore[union-attr]
    assert integrity.kind == "sha256"
    assert integrity.sha256 == "e" * 64


def test_profile_appends_to_existing_recipe(tmp_path: Path) -> None:
    recipe = Recipe("debian:bookworm", build_dir=tmp_path)
    recipe.install("git")

    apply_toolchain_profile(recipe, packages=("curl", "gcc"))

    assert [step.order for step in recipe.steps] == [0, 1, 2, 3]
    assert recipe.steps[1].payload.packages == ("curl", "gcc")  # type: ignore[union-attr]
    recipe.validate()
