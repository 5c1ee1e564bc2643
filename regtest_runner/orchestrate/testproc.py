"""Test process execution with a hard timeout and outcome classification."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Mapping, Sequence
import asyncio
import os
import signal
import subprocess
import time

from regtest_runner.orchestrate.errors import ExecutionTimeout, InfrastructureError


# libtest/panic output that means "the test ran and an assertion failed".
FAILURE_MARKERS = (
    "panicked at",
    "assertion failed",
    "assertion `left == right` failed",
    "test result: FAILED",
    "\nfailures:\n",
)


class RunStatus(str, Enum):
    passed = "passed"
    failed = "failed"
    errored = "errored"
    timed_out = "timed-out"


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    duration_s: float
    terminated: bool = False


@dataclass
class TestProcess:
    __test__ = False

    command: list[str]
    process: asyncio.subprocess.Process
    start_time: float
    stdout_handle: IO[str]
    stderr_handle: IO[str]
    terminated: bool = False


async def start_test_process(
    command: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str] | None,
    stdout_path: Path,
    stderr_path: Path,
) -> TestProcess:
    stdout_path.parent.mkdir(parents=True, exist_ok=True)
    stderr_path.parent.mkdir(parents=True, exist_ok=True)
    stdout_handle = open(stdout_path, "w", encoding="utf-8")
    stderr_handle = open(stderr_path, "w", encoding="utf-8")
    try:
        kwargs: dict[str, object] = {}
        if os.name == "posix":
            kwargs["start_new_session"] = True
        elif os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        process = await asyncio.create_subprocess_exec(
            *list(command),
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            stdout=stdout_handle,
            stderr=stderr_handle,
            **kwargs,
        )
    except OSError as exc:
        stdout_handle.close()
        stderr_handle.close()
        raise InfrastructureError(f"Failed to spawn {command[0]}: {exc}") from exc
    except BaseException:
        stdout_handle.close()
        stderr_handle.close()
        raise
    return TestProcess(
        command=list(command),
        process=process,
        start_time=time.monotonic(),
        stdout_handle=stdout_handle,
        stderr_handle=stderr_handle,
    )


async def wait_test_process(proc: TestProcess, *, timeout_s: float | None = None) -> ProcessResult:
    """Wait for the process; kill it and raise ExecutionTimeout past ``timeout_s``."""
    try:
        try:
            await asyncio.wait_for(proc.process.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            await terminate_test_process(proc)
            raise ExecutionTimeout(
                f"{Path(proc.command[0]).name} exceeded {timeout_s:.0f}s and was killed"
            ) from None
        except asyncio.CancelledError:
            await terminate_test_process(proc)
            raise
    finally:
        proc.stdout_handle.close()
        proc.stderr_handle.close()
    duration = time.monotonic() - proc.start_time
    exit_code = proc.process.returncode if proc.process.returncode is not None else 0
    return ProcessResult(exit_code=exit_code, duration_s=duration, terminated=proc.terminated)


async def terminate_test_process(proc: TestProcess, *, term_timeout_s: float = 5.0) -> None:
    if proc.process.returncode is not None:
        return
    proc.terminated = True
    pid = proc.process.pid
    if pid is None:
        return
    if os.name == "posix":
        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except OSError:
            proc.process.terminate()
    else:
        try:
            proc.process.terminate()
        except ProcessLookupError:
            return
    try:
        await asyncio.wait_for(proc.process.wait(), timeout=term_timeout_s)
        return
    except asyncio.TimeoutError:
        pass
    if os.name == "posix":
        try:
            os.killpg(pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except OSError:
            proc.process.kill()
    else:
        try:
            proc.process.kill()
        except ProcessLookupError:
            return
    await proc.process.wait()


def classify_outcome(exit_code: int, output: str) -> RunStatus:
    if exit_code == 0:
        return RunStatus.passed
    if exit_code < 0:
        # Killed by a signal: not an assertion failure.
        return RunStatus.errored
    if any(marker in output for marker in FAILURE_MARKERS):
        return RunStatus.failed
    return RunStatus.errored


def read_tail(path: Path, *, max_chars: int = 20_000) -> str:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    if len(text) <= max_chars:
        return text
    return text[-max_chars:]


__all__ = [
    "FAILURE_MARKERS",
    "ProcessResult",
    "RunStatus",
    "TestProcess",
    "classify_outcome",
    "read_tail",
    "start_test_process",
    "terminate_test_process",
    "wait_test_process",
]
