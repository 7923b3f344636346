"""Environment profile helpers."""

from __future__ import annotations

from .toolchain import apply_toolchain_profile, toolchain_recipe

__all__ = [
    "apply_toolchain_profile",
    "toolchain_recipe",
]
