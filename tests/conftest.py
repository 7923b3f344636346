"""Shared test fixtures."""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from pathlib import Path

import pytest

from envbake.backends import InProcessBackend

InstallerFactory = Callable[[str], tuple[Path, str]]

FAKE_RUSTUP = """\
#!/bin/sh
set -e
[ "$1" = "-y" ] || exit 3
mkdir -p "$HOME/.cargo/bin"
for tool in rustc cargo; do
    printf '#!/bin/sh\\necho "%s 1.80.0"\\n' "$tool" > "$HOME/.cargo/bin/$tool"
    chmod 755 "$HOME/.cargo/bin/$tool"
done
"""


@pytest.fixture
def inprocess_backend() -> InProcessBackend:
    """Provide an in-process backend for tests that build images."""
    return InProcessBackend()


@pytest.fixture
def write_installer(tmp_path: Path) -> InstallerFactory:
    """Write an installer script under tmp_path and return (path, sha256)."""
    counter = {"value": 0}

    def _write(body: str) -> tuple[Path, str]:
        counter["value"] += 1
        path = tmp_path / "installers" / f"install-{counter['value']}.sh"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding="utf-8")
        return path, hashlib.sha256(body.encode("utf-8")).hexdigest()

    return _write


@pytest.fixture
def fake_rustup(write_installer: InstallerFactory) -> tuple[Path, str]:
    return write_installer(FAKE_RUSTUP)
