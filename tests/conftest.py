import os
import stat
import sys
import threading
from pathlib import Path

import pytest

from regtest_runner.orchestrate.lifecycle import LifecycleOptions, NodeLifecycleManager
from regtest_runner.orchestrate.resources import PortPool


FAKE_TEST_BINARY = """\
import os
import sys
import time

args = sys.argv[1:]
if "--list" in args:
    for name in os.environ.get("FAKE_TESTS", "tests::pass_one,tests::fail_one").split(","):
        print(f"{name}: test")
    print("bench_thing: benchmark")
    sys.exit(int(os.environ.get("FAKE_LIST_EXIT", "0")))
name = args[0] if args and not args[0].startswith("--") else ""
print(f"running {name} port={os.environ.get('BITCOIND_RPC_PORT')} backtrace={os.environ.get('RUST_BACKTRACE')}")
if "fail" in name:
    print(f"thread '{name}' panicked at src/lib.rs:10:5", file=sys.stderr)
    print("test result: FAILED. 0 passed; 1 failed")
    sys.exit(101)
if "crash" in name:
    print("segfault-ish", file=sys.stderr)
    sys.exit(3)
if "hang" in name:
    time.sleep(60)
print("test result: ok. 1 passed; 0 failed")
"""


class FakeBackend:
    """Node backend double recording every start/stop call."""

    def __init__(self, *, unhealthy=(), start_failures=None, start_error="port is already allocated") -> None:
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.health_calls = 0
        self._unhealthy = tuple(unhealthy)
        self._start_failures = dict(start_failures or {})
        self._start_error = start_error
        self._lock = threading.Lock()

    def start(self, name: str, host_port: int) -> str:
        with self._lock:
            self.started.append(name)
            remaining = self._start_failures.get(name, 0)
            if remaining:
                self._start_failures[name] = remaining - 1
                raise RuntimeError(self._start_error)
        return f"id-{name}"

    def healthcheck(self, instance_id: str) -> bool:
        with self._lock:
            self.health_calls += 1
        return not any(marker in instance_id for marker in self._unhealthy)

    def stop(self, instance_id: str) -> None:
        with self._lock:
            self.stopped.append(instance_id)

    def logs(self, instance_id: str) -> str:
        return f"bitcoind logs for {instance_id}\n"


@pytest.fixture
def fake_backend_cls():
    return FakeBackend


@pytest.fixture
def make_lifecycle():
    def _make(backend, **overrides) -> NodeLifecycleManager:
        options = {
            "rpc_user": "user",
            "rpc_password": "pass",
            "readiness_timeout_s": 0.3,
            "probe_interval_s": 0.05,
            "start_attempts": 3,
            "start_backoff_s": 0.0,
        }
        options.update(overrides)
        ports = options.pop("ports", None) or PortPool((19000, 19010), check_bind=False)
        on_event = options.pop("on_event", None)
        return NodeLifecycleManager(backend, ports, options=LifecycleOptions(**options), on_event=on_event)

    return _make


@pytest.fixture
def fake_test_binary(tmp_path: Path):
    def _make(name: str = "manager_tests-0123abcd", directory: Path | None = None) -> Path:
        target_dir = directory or tmp_path / "deps"
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        path.write_text(f"#!{sys.executable}\n{FAKE_TEST_BINARY}", encoding="utf-8")
        os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make
