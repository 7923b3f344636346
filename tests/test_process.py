import sys
import threading
import time

import pytest

from envbake.errors import BuildCancelled, StepExecutionFailure
from envbake.process import run_command


def test_run_command_captures_output_and_returncode() -> None:
    script = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"
    result = run_command([sys.executable, "-c", script], operation="probe")

    assert result.returncode == 3
    assert not result.ok
    assert result.stdout.strip() == "out"
    assert result.failure_context()["stderr"].strip() == "err"
    assert result.failure_context()["returncode"] == "3"


def test_run_command_passes_env_and_cwd(tmp_path) -> None:
    result = run_command(
        ["/bin/sh", "-c", 'echo "$GREETING"; pwd'],
        operation="env",
        cwd=tmp_path,
        env={"GREETING": "hello", "PATH": "/usr/bin:/bin"},
    )

    lines = result.stdout.splitlines()
    assert lines[0] == "hello"
    assert lines[1] == str(tmp_path.resolve())


def test_run_command_timeout_kills_process_tree() -> None:
    started = time.monotonic()

    with pytest.raises(StepExecutionFailure) as excinfo:
        run_command(["/bin/sh", "-c", "sleep 30; echo done"], operation="sleep", timeout=0.3)

    assert time.monotonic() - started < 10
    assert excinfo.value.context["timeout"] == "0.3"


def test_run_command_honours_cancellation() -> None:
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    started = time.monotonic()

    try:
        with pytest.raises(BuildCancelled):
            run_command(["/bin/sh", "-c", "sleep 30"], operation="sleep", cancel_event=cancel)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 10


def test_run_command_refuses_to_start_when_already_cancelled() -> None:
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(BuildCancelled):
        run_command(["/bin/true"], operation="noop", cancel_event=cancel)


def test_missing_executable_is_a_step_failure() -> None:
    with pytest.raises(StepExecutionFailure) as excinfo:
        run_command(["/nonexistent/envbake-tool"], operation="missing")

    assert excinfo.value.context["operation"] == "missing"
