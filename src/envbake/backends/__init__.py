"""Build execution backends."""

from __future__ import annotations

from typing import Any

from envbake.errors import ValidationError

from .base import BuildBackend
from .docker import DockerBackend
from .inprocess import InProcessBackend

BACKENDS: dict[str, type[DockerBackend] | type[InProcessBackend]] = {
    "docker": DockerBackend,
    "inprocess": InProcessBackend,
}


def get_backend(name: str, **options: Any) -> BuildBackend:
    backend_type = BACKENDS.get(name)
    if backend_type is None:
        raise ValidationError(
            "Unknown build backend.",
            hint=f"Choose one of: {', '.join(sorted(BACKENDS))}.",
            context={"backend": name},
        )
    return backend_type(**options)


__all__ = ["BACKENDS", "BuildBackend", "DockerBackend", "InProcessBackend", "get_backend"]
