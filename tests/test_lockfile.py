import hashlib
from pathlib import Path

import pytest

from envbake import Recipe
from envbake.errors import LockfileError
from envbake.lockfile import (
    LockedFetch,
    build_lockfile,
    installer_digests,
    parse_lockfile,
    read_lockfile,
    recipe_digest,
    serialize_lockfile,
)
from envbake.models import IntegrityPolicy


def test_lockfile_roundtrip_parser_serializer() -> None:
    lock = build_lockfile(
        recipe={
            "base": {"name": "ubuntu", "tag": "22.04"},
            "steps": [{"kind": "package_install", "packages": ["qemu-system", "curl"]}],
        },
        fetches=[LockedFetch(source="https://sh.rustup.rs", kind="https", digest="abc")],
    )
    decoded = parse_lockfile(serialize_lockfile(lock))

    assert decoded == lock
    assert decoded.dependencies == ["curl", "qemu-system"]
    assert decoded.digest_for("https://sh.rustup.rs") == "abc"
    assert decoded.digest_for("https://other.invalid") is None


def test_recipe_digest_is_key_order_independent() -> None:
    assert recipe_digest({"a": 1, "b": [1, 2]}) == recipe_digest({"b": [1, 2], "a": 1})
    assert recipe_digest({"a": 1}) != recipe_digest({"a": 2})


def test_recipe_lock_records_installer_digests(tmp_path: Path) -> None:
    body = b"#!/bin/sh\nexit 0\n"
    installer = tmp_path / "install.sh"
    installer.write_bytes(body)
    recipe = Recipe("ubuntu:22.04", build_dir=tmp_path / "build")
    recipe.install("curl")
    recipe.run_installer(installer.as_uri(), integrity=IntegrityPolicy.locked())

    lock = read_lockfile(recipe.lock())

    assert lock.version == 1
    assert lock.dependencies == ["curl"]
    assert lock.recipe["base"]["name"] == "ubuntu"
    assert lock.fetches == [
        LockedFetch(
            source=installer.as_uri(),
            kind="file",
            digest=hashlib.sha256(body).hexdigest(),
        )
    ]
    assert installer_digests(recipe.steps, lock) == {
        installer.as_uri(): hashlib.sha256(body).hexdigest()
    }


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        '{"version": "1", "recipe_digest": "x", "recipe": {}, "dependencies": []}',
        '{"version": 1, "recipe_digest": "", "recipe": {}, "dependencies": []}',
        '{"version": 1, "recipe_digest": "x", "recipe": {}, "dependencies": [1]}',
        '{"version": 1, "recipe_digest": "x", "recipe": {}, "dependencies": [], "fetches": [1]}',
    ],
)
def test_parse_lockfile_rejects_invalid_documents(raw: str) -> None:
    with pytest.raises(LockfileError):
        parse_lockfile(raw)


def test_read_lockfile_requires_existing_file(tmp_path: Path) -> None:
    with pytest.raises(LockfileError) as excinfo:
        read_lockfile(tmp_path / "envbake.lock")

    assert excinfo.value.hint is not None
