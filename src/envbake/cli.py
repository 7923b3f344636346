"""Command-line entry point: ``envbake validate|lock|emit|build RECIPE``."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from envbake.backends import BACKENDS, BuildBackend, get_backend
from envbake.errors import EnvBakeError, ErrorCode
from envbake.observability import StructuredLogger
from envbake.policy import TLS_VERSIONS, Policy
from envbake.recipe import Recipe

EXIT_OK = 0
EXIT_CANCELLED = 130

EXIT_CODES: dict[str, int] = {
    ErrorCode.MALFORMED_STEP: 2,
    ErrorCode.VALIDATION: 2,
    ErrorCode.NETWORK: 3,
    ErrorCode.INTEGRITY: 4,
    ErrorCode.STEP_EXECUTION: 5,
    ErrorCode.POLICY: 6,
    ErrorCode.LOCKFILE: 6,
    ErrorCode.CANCELLED: EXIT_CANCELLED,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("recipe", type=Path, help="JSON recipe file")
    common.add_argument("--build-dir", type=Path, default=Path("build"))
    common.add_argument("--offline", action="store_true", help="block https fetches")
    common.add_argument(
        "--allow-unverified",
        action="store_true",
        help="allow installers declared with integrity 'none'",
    )
    common.add_argument("--require-pinned", action="store_true")
    common.add_argument("--tls", choices=sorted(TLS_VERSIONS), default="1.2")
    common.add_argument("--step-timeout", type=float, default=None)
    common.add_argument("--quiet", action="store_true", help="do not echo log records")

    parser = argparse.ArgumentParser(prog="envbake")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("validate", parents=[common], help="run pre-flight checks only")

    lock = commands.add_parser("lock", parents=[common], help="pin installer digests")
    lock.add_argument("--output", type=Path, default=None)

    emit = commands.add_parser("emit", parents=[common], help="emit an equivalent Dockerfile")
    emit.add_argument("--output", type=Path, default=Path("Dockerfile"))
    emit.add_argument("--lock", type=Path, default=None)

    build = commands.add_parser("build", parents=[common], help="build the environment image")
    build.add_argument("--backend", choices=sorted(BACKENDS), default="inprocess")
    build.add_argument("--tag", default=None)
    build.add_argument("--frozen", action="store_true")
    build.add_argument("--lock", type=Path, default=None)
    build.add_argument("--manifest-format", choices=("json", "cbor"), default="json")
    build.add_argument("--manifest", type=Path, default=None)
    build.add_argument("--keep-failed", action="store_true")
    build.add_argument("--squash", action="store_true")
    build.add_argument("--pull", choices=("missing", "always", "never"), default="missing")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return _dispatch(args)
    except EnvBakeError as exc:
        print(json.dumps(exc.to_dict(), sort_keys=True), file=sys.stderr)
        return EXIT_CODES.get(exc.code, 1)
    except KeyboardInterrupt:
        print(json.dumps({"code": ErrorCode.CANCELLED.value}), file=sys.stderr)
        return EXIT_CANCELLED


def _dispatch(args: argparse.Namespace) -> int:
    policy = Policy(
        require_integrity=not args.allow_unverified,
        network_mode="offline" if args.offline else "online",
        min_tls_version=args.tls,
        step_timeout=args.step_timeout,
        require_pinned_packages=args.require_pinned,
    )
    logger = StructuredLogger(stream=None if args.quiet else sys.stderr)
    recipe = Recipe.load(args.recipe, build_dir=args.build_dir, policy=policy, logger=logger)

    if args.command == "validate":
        recipe.validate()
        _emit({"status": "ok", "steps": len(recipe.steps)})
    elif args.command == "lock":
        path = recipe.lock(args.output)
        _emit({"status": "ok", "lockfile": str(path)})
    elif args.command == "emit":
        lock = recipe.read_lock(args.lock) if args.lock is not None else None
        emission = recipe.emit_dockerfile(args.output, lock=lock)
        _emit({"status": "ok", "dockerfile": str(emission.path), "sha256": emission.sha256})
    else:
        image = recipe.bake(
            _backend(args),
            tag=args.tag,
            frozen=args.frozen,
            lock_path=args.lock,
        )
        manifest = args.manifest or args.build_dir / f"manifest.{args.manifest_format}"
        manifest.parent.mkdir(parents=True, exist_ok=True)
        if args.manifest_format == "cbor":
            image.to_cbor(manifest)
        else:
            image.to_json(manifest)
        _emit({
            "status": "ok",
            "reference": image.reference,
            "digest": image.digest,
            "size_bytes": image.size_bytes,
            "manifest": str(manifest),
        })
    return EXIT_OK


def _backend(args: argparse.Namespace) -> BuildBackend:
    if args.backend == "docker":
        return get_backend("docker", pull=args.pull, squash=args.squash)
    return get_backend(args.backend, keep_failed=args.keep_failed)


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, sort_keys=True))
