"""Toolchain environment profile.

Provisions a C toolchain, a system emulator and the Rust toolchain (through
rustup) on ``ubuntu:22.04`` for ``linux/amd64``, then drops the apt caches::

    recipe = toolchain_recipe(rustup_sha256="...")
    image = recipe.bake()
"""

from __future__ import annotations

from pathlib import Path

from envbake.models import BaseImage, IntegrityPolicy
from envbake.policy import Policy
from envbake.recipe import Recipe

TOOLCHAIN_BASE = "ubuntu:22.04"
TOOLCHAIN_PLATFORM = "linux/amd64"
TOOLCHAIN_WORKDIR = "/workspace"

TOOLCHAIN_PACKAGES: tuple[str, ...] = (
    "curl",
    "qemu-system",
    "build-essential",
)

# ---------------------------------------------------------------------------
# rustup installs cargo and rustc into $HOME/.cargo/bin
# ---------------------------------------------------------------------------

RUSTUP_URL = "https://sh.rustup.rs"
RUSTUP_ARGS: tuple[str, ...] = ("-y",)
CARGO_BINARIES: tuple[str, ...] = (
    "/root/.cargo/bin/cargo",
    "/root/.cargo/bin/rustc",
)

APT_CACHE_PATHS: tuple[str, ...] = (
    "/var/lib/apt/lists/*",
    "/var/cache/apt/archives/*.deb",
)


def apply_toolchain_profile(
    recipe: Recipe,
    *,
    rustup_url: str = RUSTUP_URL,
    rustup_sha256: str | None = None,
    rustup_integrity: IntegrityPolicy | None = None,
    packages: tuple[str, ...] = TOOLCHAIN_PACKAGES,
) -> Recipe:
    """Append the toolchain steps to *recipe*.

    Without a pinned *rustup_sha256* the installer digest is bound to the
    lockfile, so the recipe must be locked and built frozen.
    """
    if rustup_sha256 is None and rustup_integrity is None:
        rustup_integrity = IntegrityPolicy.locked()
    recipe.workdir(TOOLCHAIN_WORKDIR)
    recipe.install(*packages, name="toolchain-packages")
    recipe.run_installer(
        rustup_url,
        sha256=rustup_sha256,
        integrity=rustup_integrity,
        args=RUSTUP_ARGS,
        name="rustup",
        provides=CARGO_BINARIES,
    )
    recipe.cleanup(*APT_CACHE_PATHS, name="apt-cache")
    return recipe


def toolchain_recipe(
    *,
    build_dir: str | Path = "build",
    policy: Policy | None = None,
    rustup_url: str = RUSTUP_URL,
    rustup_sha256: str | None = None,
    rustup_integrity: IntegrityPolicy | None = None,
) -> Recipe:
    base = BaseImage.parse(TOOLCHAIN_BASE, platform=TOOLCHAIN_PLATFORM)
    recipe = Recipe(base, build_dir=Path(build_dir), policy=policy or Policy())
    return apply_toolchain_profile(
        recipe,
        rustup_url=rustup_url,
        rustup_sha256=rustup_sha256,
        rustup_integrity=rustup_integrity,
    )
