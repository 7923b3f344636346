"""Lockfile model, parsing, and resolution."""

from __future__ import annotations

from .io import parse_lockfile, read_lockfile, serialize_lockfile, write_lockfile
from .model import LockedFetch, Lockfile
from .resolve import (
    LOCKFILE_VERSION,
    build_lockfile,
    installer_digests,
    recipe_dependencies,
    recipe_digest,
    recipe_payload,
    resolve_fetches,
)

__all__ = [
    "LOCKFILE_VERSION",
    "LockedFetch",
    "Lockfile",
    "build_lockfile",
    "installer_digests",
    "parse_lockfile",
    "read_lockfile",
    "recipe_dependencies",
    "recipe_digest",
    "recipe_payload",
    "resolve_fetches",
    "serialize_lockfile",
    "write_lockfile",
]
