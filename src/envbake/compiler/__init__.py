"""Compiler interfaces for emitting Dockerfile artifacts."""

from .emit_dockerfile import (
    DOCKERFILE_SYNTAX,
    DockerfileEmission,
    emit_dockerfile,
    render_dockerfile,
)

__all__ = [
    "DOCKERFILE_SYNTAX",
    "DockerfileEmission",
    "emit_dockerfile",
    "render_dockerfile",
]
