"""Blocking subprocess execution with timeout and cancellation."""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from envbake.errors import BuildCancelled, StepExecutionFailure

POLL_INTERVAL = 0.1
STDERR_EXCERPT = 2000


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def failure_context(self) -> dict[str, str]:
        return {
            "returncode": str(self.returncode),
            "command": " ".join(self.argv),
            "stderr": self.stderr[-STDERR_EXCERPT:] if self.stderr else "",
        }


def run_command(
    argv: Sequence[str],
    *,
    operation: str,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
    stdin: int | None = subprocess.DEVNULL,
) -> CommandResult:
    """Run *argv* to completion, killing it on timeout or cancellation."""
    command = tuple(argv)
    if cancel_event is not None and cancel_event.is_set():
        raise BuildCancelled(context={"operation": operation, "command": " ".join(command)})
    try:
        process = subprocess.Popen(
            command,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            stdin=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
    except OSError as exc:
        raise StepExecutionFailure(
            "Command could not be started.",
            hint="Ensure the executable exists on the build host.",
            context={"operation": operation, "command": " ".join(command), "cause": str(exc)},
        ) from exc

    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        wait = POLL_INTERVAL
        if deadline is not None:
            wait = max(0.0, min(wait, deadline - time.monotonic()))
        try:
            stdout, stderr = process.communicate(timeout=wait)
            break
        except KeyboardInterrupt:
            _kill(process)
            raise
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                _kill(process)
                raise BuildCancelled(
                    "Build was cancelled while a command was running.",
                    context={"operation": operation, "command": " ".join(command)},
                ) from None
            if deadline is not None and time.monotonic() >= deadline:
                _kill(process)
                raise StepExecutionFailure(
                    "Command exceeded its timeout.",
                    hint="Raise the step timeout or investigate the stalled command.",
                    context={
                        "operation": operation,
                        "command": " ".join(command),
                        "timeout": str(timeout),
                    },
                ) from None

    return CommandResult(
        argv=command,
        returncode=process.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
    )


def _kill(process: subprocess.Popen[str]) -> None:
    # Children run in their own session; kill the whole group so no
    # grandchild keeps the output pipes open.
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    process.communicate()
