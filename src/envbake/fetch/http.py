"""Integrity-enforced installer fetch over verified HTTPS or local files."""

from __future__ import annotations

import hashlib
import os
import ssl
from dataclasses import dataclass
from pathlib import Path
from urllib.error import URLError
from urllib.parse import urlparse
from urllib.request import urlopen

from envbake.errors import IntegrityViolation, MalformedStepSpec, NetworkFailure, ValidationError
from envbake.models import IntegrityPolicy
from envbake.policy import Policy, ensure_network_allowed, tls_context


@dataclass(frozen=True, slots=True)
class FetchResult:
    url: str
    path: Path
    sha256: str
    verified: bool


def fetch(
    url: str,
    *,
    integrity: IntegrityPolicy,
    cache_dir: str | Path,
    policy: Policy | None = None,
    expected_sha256: str | None = None,
    timeout: float | None = None,
) -> FetchResult:
    """Fetch installer content and return a content-addressed cached path.

    ``expected_sha256`` overrides the digest for ``lock`` integrity policies,
    where the digest is recorded in a lockfile rather than in the step.
    """
    scheme = urlparse(url).scheme
    if scheme not in ("https", "file"):
        raise MalformedStepSpec(
            "Installer URL must use https:// (or file:// for local mirrors).",
            context={"operation": "fetch", "url": url},
        )
    if policy is not None and scheme == "https":
        ensure_network_allowed(policy=policy, operation="fetch")

    expected = _expected_digest(integrity, expected_sha256=expected_sha256, url=url)
    if expected is None and (policy is None or policy.require_integrity):
        raise ValidationError(
            "fetch() requires a verified integrity policy.",
            hint="Relax policy.require_integrity to run unverified installers.",
            context={"operation": "fetch", "url": url, "integrity": integrity.kind},
        )

    cache_path = Path(cache_dir)
    cache_path.mkdir(parents=True, exist_ok=True)

    if expected is not None:
        artifact_path = cache_path / expected
        if artifact_path.exists():
            _assert_hash_matches(artifact_path, expected_sha256=expected, url=url)
            return FetchResult(url=url, path=artifact_path, sha256=expected, verified=True)

    payload = _download(url, policy=policy, timeout=timeout)
    actual = hashlib.sha256(payload).hexdigest()
    if expected is not None and actual != expected:
        raise IntegrityViolation(
            "Fetched installer content hash mismatch.",
            hint="Update the expected hash or point the URL at a trusted immutable artifact.",
            context={"operation": "fetch", "url": url, "expected": expected, "actual": actual},
        )

    artifact_path = cache_path / actual
    if not artifact_path.exists():
        temp_path = artifact_path.with_suffix(".tmp")
        temp_path.write_bytes(payload)
        os.replace(temp_path, artifact_path)
    return FetchResult(url=url, path=artifact_path, sha256=actual, verified=expected is not None)


def _expected_digest(
    integrity: IntegrityPolicy,
    *,
    expected_sha256: str | None,
    url: str,
) -> str | None:
    if integrity.kind == "sha256":
        return integrity.sha256
    if integrity.kind == "lock":
        if not expected_sha256:
            raise IntegrityViolation(
                "Installer integrity is bound to the lockfile but no locked digest is known.",
                hint="Run lock() and build in frozen mode.",
                context={"operation": "fetch", "url": url},
            )
        return expected_sha256
    return None


def _download(url: str, *, policy: Policy | None, timeout: float | None) -> bytes:
    context = tls_context(policy) if url.startswith("https://") else None
    try:
        with urlopen(url, timeout=timeout, context=context) as response:  # noqa: S310
            return response.read()
    except (URLError, ssl.SSLError, TimeoutError, ConnectionError) as exc:
        raise NetworkFailure(
            "Failed to fetch installer content.",
            hint="Check connectivity and that the endpoint supports the required TLS version.",
            context={"operation": "fetch", "url": url, "cause": str(exc)},
        ) from exc


def _assert_hash_matches(path: Path, *, expected_sha256: str, url: str) -> None:
    actual_sha256 = hashlib.sha256(path.read_bytes()).hexdigest()
    if actual_sha256 != expected_sha256:
        raise IntegrityViolation(
            "Cached installer hash mismatch.",
            hint="Clear the fetch cache and refetch from a trusted source.",
            context={
                "operation": "fetch",
                "url": url,
                "path": str(path),
                "expected": expected_sha256,
                "actual": actual_sha256,
            },
        )
