import json
import shutil
from pathlib import Path

import pytest

from regtest_runner.orchestrate import cli
from regtest_runner.orchestrate.cli import _validate_schedule, main, prepare_items, resolve_run_id
from regtest_runner.orchestrate.config import load_plan
from regtest_runner.orchestrate.resources import PortPool


def _plan(tmp_path: Path, body: str = "") -> Path:
    workspace = tmp_path / "ws"
    workspace.mkdir(exist_ok=True)
    path = tmp_path / "plan.yaml"
    path.write_text(f"workspace: ws\ntest_prefixes: [manager_tests]\n{body}", encoding="utf-8")
    return path


def _deps(tmp_path: Path) -> Path:
    return tmp_path / "ws" / "target" / "debug" / "deps"


class FakeToolchain:
    calls: list[str] = []
    make_binary = None

    def __init__(self, workspace: Path) -> None:
        self._workspace = workspace

    def pin(self, package: str, version: str) -> None:
        FakeToolchain.calls.append(f"pin {package} {version}")

    def build_tests(self, extra_args=()) -> None:
        FakeToolchain.calls.append("build")
        FakeToolchain.make_binary()

    def identity(self) -> str:
        return "rustc 1.75.0"


@pytest.fixture
def fake_toolchain(monkeypatch, tmp_path: Path, fake_test_binary):
    FakeToolchain.calls = []
    FakeToolchain.make_binary = staticmethod(lambda: fake_test_binary("manager_tests-00ff", _deps(tmp_path)))
    monkeypatch.setattr(cli, "CargoToolchain", FakeToolchain)
    return FakeToolchain


def test_resolve_run_id_precedence(tmp_path: Path) -> None:
    plan = load_plan(_plan(tmp_path, "name: nightly build\ncache:\n  run_id: '99'\n  run_number: '2'\n"))

    assert resolve_run_id(plan, "explicit id") == "explicit-id"
    assert resolve_run_id(plan, None) == "99-2"
    plan.cache = None
    assert resolve_run_id(plan, None).startswith("nightly-build-")


def test_validate_schedule_requires_enough_ports() -> None:
    ports = PortPool((19000, 19001), check_bind=False)

    assert ports.capacity == 2
    _validate_schedule(ports=ports, max_parallel=2)
    with pytest.raises(ValueError, match="19000-19001 has 2 ports, but max_parallel=3"):
        _validate_schedule(ports=ports, max_parallel=3)


def test_build_without_test_binaries_exits_fatal(tmp_path: Path, fake_toolchain) -> None:
    fake_toolchain.make_binary = staticmethod(lambda: None)
    plan = _plan(tmp_path, "cache:\n  run_id: '7'\n  run_number: '1'\n")

    assert main(["--plan", str(plan), "--discover-only"]) == cli.EXIT_FATAL
    assert fake_toolchain.calls == ["build"]


def test_status_without_readable_summary_exits_fatal(tmp_path: Path) -> None:
    output_dir = tmp_path / "out"
    args = ["--plan", str(_plan(tmp_path)), "--status", "--output-dir", str(output_dir)]

    assert main(args) == cli.EXIT_FATAL
    output_dir.mkdir()
    (output_dir / "summary.json").write_text("{not json")
    assert main(args) == cli.EXIT_FATAL


def test_prepare_items_pins_builds_and_reuses_cache(tmp_path: Path, monkeypatch, fake_toolchain) -> None:
    monkeypatch.setenv("FAKE_TESTS", "tests::one")
    plan = load_plan(
        _plan(
            tmp_path,
            "pin:\n  package: secp256k1-sys\n  version: 0.4.1\ncache:\n  run_id: '7'\n  run_number: '1'\n",
        )
    )

    first = prepare_items(plan)
    shutil.rmtree(_deps(tmp_path))
    second = prepare_items(plan)

    assert [item.item_id for item in first] == ["manager_tests::tests::one"]
    assert [item.item_id for item in second] == ["manager_tests::tests::one"]
    assert fake_toolchain.calls == ["pin secp256k1-sys 0.4.1", "build", "pin secp256k1-sys 0.4.1"]


def test_discover_only_prints_matrix(tmp_path: Path, monkeypatch, capsys, fake_test_binary) -> None:
    monkeypatch.setenv("FAKE_TESTS", "tests::one,tests::two")
    fake_test_binary("manager_tests-00ff", _deps(tmp_path))
    matrix_path = tmp_path / "matrix.json"

    code = main(
        ["--plan", str(_plan(tmp_path)), "--discover-only", "--skip-build", "--emit-matrix", str(matrix_path)]
    )

    assert code == cli.EXIT_OK
    printed = json.loads(capsys.readouterr().out.strip())
    assert [entry["item_id"] for entry in printed] == ["manager_tests::tests::one", "manager_tests::tests::two"]
    assert json.loads(matrix_path.read_text()) == printed


def test_matrix_shard_dry_run(tmp_path: Path, capsys) -> None:
    matrix_path = tmp_path / "matrix.json"
    matrix_path.write_text(
        json.dumps(
            [
                {"item_id": "m::a", "binary": "/bin/m", "test_name": "a", "exact": True, "ignored": True},
                {"item_id": "m::b", "binary": "/bin/m", "test_name": "b", "exact": True, "ignored": True},
            ]
        )
    )

    code = main(["--plan", str(_plan(tmp_path)), "--matrix", str(matrix_path), "--item", "m::b", "--dry-run"])

    assert code == cli.EXIT_OK
    assert capsys.readouterr().out.strip() == "m::b\t/bin/m b --exact --ignored"


def test_discovery_failure_exits_fatal(tmp_path: Path) -> None:
    assert main(["--plan", str(_plan(tmp_path)), "--discover-only", "--skip-build"]) == cli.EXIT_FATAL


def test_invalid_plan_exits_fatal(tmp_path: Path) -> None:
    path = tmp_path / "plan.yaml"
    path.write_text("test_prefixes: []\n")
    assert main(["--plan", str(path)]) == cli.EXIT_FATAL


def _run_args(tmp_path: Path, matrix_path: Path) -> list[str]:
    return [
        "--plan",
        str(_plan(tmp_path, "readiness_timeout_s: 0.5\nprobe_interval_s: 0.05\nstart_backoff_s: 0\n")),
        "--matrix",
        str(matrix_path),
        "--port-range",
        "19500-19510",
        "--max-parallel",
        "2",
        "--output-dir",
        str(tmp_path / "out"),
        "--no-dashboard",
    ]


def _write_matrix(path: Path, binary: Path, *names: str) -> Path:
    path.write_text(
        json.dumps(
            [
                {"item_id": f"manager_tests::{name}", "binary": str(binary), "test_name": name, "exact": True}
                for name in names
            ]
        )
    )
    return path


def test_full_run_exit_codes(tmp_path: Path, monkeypatch, capsys, fake_backend_cls, fake_test_binary) -> None:
    backends = []

    def make_backend(**kwargs):
        backends.append(fake_backend_cls())
        return backends[-1]

    monkeypatch.setattr(cli, "DockerBitcoindBackend", make_backend)
    binary = fake_test_binary()

    passing = _write_matrix(tmp_path / "pass.json", binary, "tests::pass_one", "tests::pass_two")
    assert main(_run_args(tmp_path, passing)) == cli.EXIT_OK
    assert len(backends[-1].stopped) == 2

    failing = _write_matrix(tmp_path / "fail.json", binary, "tests::pass_one", "tests::fail_one")
    assert main(_run_args(tmp_path, failing)) == cli.EXIT_RUN_FAILED
    assert len(backends[-1].stopped) == 2

    capsys.readouterr()
    assert main([*_run_args(tmp_path, failing), "--status"]) == cli.EXIT_OK
    status_lines = capsys.readouterr().out.strip().splitlines()
    assert "manager_tests::tests::fail_one\tfailed\ttest_failure" in status_lines
