import json
from pathlib import Path

import cbor2
import pytest

from envbake import Recipe
from envbake.cli import main
from envbake.lockfile import LockedFetch, build_lockfile, write_lockfile
from envbake.models import IntegrityPolicy


def _write_recipe(tmp_path: Path, installer: Path, sha256: str) -> Path:
    recipe = Recipe("ubuntu:22.04", build_dir=tmp_path / "build")
    recipe.workdir("/workspace")
    recipe.install("curl", "build-essential")
    recipe.run_installer(
        installer.as_uri(),
        sha256=sha256,
        args=("-y",),
        provides=("/root/.cargo/bin/rustc",),
    )
    recipe.cleanup("/var/lib/apt/lists/*")
    return recipe.dump(tmp_path / "recipe.json")


def test_build_command_writes_manifest(
    tmp_path: Path, fake_rustup: tuple[Path, str], capsys: pytest.CaptureFixture[str]
) -> None:
    recipe = _write_recipe(tmp_path, *fake_rustup)

    code = main(["build", str(recipe), "--build-dir", str(tmp_path / "build"), "--quiet"])

    assert code == 0
    output = json.loads(capsys.readouterr().out)
    manifest = json.loads(Path(output["manifest"]).read_text(encoding="utf-8"))
    assert manifest["digest"] == output["digest"]
    assert output["reference"] == f"sha256:{output['digest']}"


def test_build_command_can_write_cbor_manifest(
    tmp_path: Path, fake_rustup: tuple[Path, str], capsys: pytest.CaptureFixture[str]
) -> None:
    recipe = _write_recipe(tmp_path, *fake_rustup)
    manifest = tmp_path / "out" / "manifest.cbor"

    code = main([
        "build", str(recipe),
        "--build-dir", str(tmp_path / "build"),
        "--manifest-format", "cbor",
        "--manifest", str(manifest),
        "--tag", "toolchain:ci",
        "--quiet",
    ])

    assert code == 0
    decoded = cbor2.loads(manifest.read_bytes())
    assert decoded["reference"] == "toolchain:ci"
    assert decoded["installed_packages"] == ["build-essential", "curl"]


def test_build_logs_records_on_stderr(
    tmp_path: Path, fake_rustup: tuple[Path, str], capsys: pytest.CaptureFixture[str]
) -> None:
    recipe = _write_recipe(tmp_path, *fake_rustup)

    assert main(["build", str(recipe), "--build-dir", str(tmp_path / "build")]) == 0

    records = [json.loads(line) for line in capsys.readouterr().err.splitlines() if line]
    assert records[0]["operation"] == "build_start"
    assert records[-1]["operation"] == "build_complete"


def test_integrity_mismatch_exits_with_integrity_code(
    tmp_path: Path, fake_rustup: tuple[Path, str], capsys: pytest.CaptureFixture[str]
) -> None:
    installer, _ = fake_rustup
    recipe = _write_recipe(tmp_path, installer, "0" * 64)

    code = main(["build", str(recipe), "--build-dir", str(tmp_path / "build"), "--quiet"])

    assert code == 4
    error = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert error["code"] == "E_INTEGRITY"
    assert error["context"]["order"] == "1"


def test_malformed_recipe_exits_with_validation_code(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    recipe = tmp_path / "recipe.json"
    recipe.write_text(
        json.dumps({"base": "ubuntu:22.04", "steps": [{"kind": "cleanup", "paths": ["/"]}]}),
        encoding="utf-8",
    )

    assert main(["validate", str(recipe)]) == 2
    assert json.loads(capsys.readouterr().err)["code"] == "E_MALFORMED_STEP"


def test_offline_build_refuses_https_installer(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    recipe = Recipe("ubuntu:22.04", build_dir=tmp_path / "build")
    recipe.run_installer("https://sh.rustup.rs", sha256="a" * 64)
    path = recipe.dump(tmp_path / "recipe.json")

    code = main(["build", str(path), "--build-dir", str(tmp_path / "build"), "--offline"])

    assert code == 6
    assert json.loads(capsys.readouterr().err.strip().splitlines()[-1])["code"] == "E_POLICY"


def test_validate_and_emit_commands(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    recipe = Recipe("ubuntu:22.04", build_dir=tmp_path / "build")
    recipe.install("curl")
    recipe.run_installer("https://sh.rustup.rs", integrity=IntegrityPolicy.pinned("a" * 64))
    path = recipe.dump(tmp_path / "recipe.json")

    assert main(["validate", str(path)]) == 0
    assert json.loads(capsys.readouterr().out)["steps"] == 2

    dockerfile = tmp_path / "Dockerfile"
    assert main(["emit", str(path), "--output", str(dockerfile), "--tls", "1.3"]) == 0
    assert json.loads(capsys.readouterr().out)["dockerfile"] == str(dockerfile)
    assert "--tlsv1.3" in dockerfile.read_text(encoding="utf-8")


def test_lock_then_frozen_build(
    tmp_path: Path, fake_rustup: tuple[Path, str], capsys: pytest.CaptureFixture[str]
) -> None:
    installer, _ = fake_rustup
    recipe = Recipe("ubuntu:22.04", build_dir=tmp_path / "build")
    recipe.run_installer(installer.as_uri(), integrity=IntegrityPolicy.locked(), args=("-y",))
    path = recipe.dump(tmp_path / "recipe.json")
    build_dir = str(tmp_path / "build")

    assert main(["build", str(path), "--build-dir", build_dir, "--quiet"]) == 6
    assert main(["lock", str(path), "--build-dir", build_dir, "--quiet"]) == 0
    assert main(["build", str(path), "--build-dir", build_dir, "--frozen", "--quiet"]) == 0


def test_emit_requires_lock_for_lock_bound_installers(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    build_dir = tmp_path / "build"
    recipe = Recipe("ubuntu:22.04", build_dir=build_dir)
    recipe.run_installer("https://sh.rustup.rs", integrity=IntegrityPolicy.locked(), args=("-y",))
    path = recipe.dump(tmp_path / "recipe.json")
    dockerfile = tmp_path / "Dockerfile"
    argv = ["emit", str(path), "--build-dir", str(build_dir), "--output", str(dockerfile)]

    assert main(argv) == 6
    assert json.loads(capsys.readouterr().err)["code"] == "E_LOCKFILE"
    assert not dockerfile.exists()

    write_lockfile(
        build_lockfile(
            recipe={},
            fetches=[LockedFetch(source="https://sh.rustup.rs", kind="https", digest="b" * 64)],
        ),
        build_dir / "envbake.lock",
    )
    assert main(argv) == 0
    assert f'echo "{"b" * 64}  /tmp/envbake-installer" | sha256sum -c -' in dockerfile.read_text(
        encoding="utf-8"
    )
