"""Cargo collaborator: pin a dependency, build test binaries, report the toolchain."""

from __future__ import annotations

import logging
from pathlib import Path
import shlex
import subprocess
from typing import Sequence

from regtest_runner.orchestrate.errors import BuildError, PinError


logger = logging.getLogger(__name__)


class CargoToolchain:
    def __init__(self, workspace: Path, *, cargo: str = "cargo", rustc: str = "rustc") -> None:
        self._workspace = workspace
        self._cargo = cargo
        self._rustc = rustc

    def pin(self, package: str, version: str) -> None:
        """Resolve ``package`` to exactly ``version`` in Cargo.lock."""
        self._run([self._cargo, "generate-lockfile", "--verbose"], error=PinError)
        self._run(
            [self._cargo, "update", "-p", package, "--precise", version, "--verbose"],
            error=PinError,
        )
        logger.info("Pinned %s to %s", package, version)

    def build_tests(self, extra_args: Sequence[str] = ()) -> None:
        self._run([self._cargo, "test", "--no-run", *extra_args], error=BuildError)

    def identity(self) -> str:
        completed = self._run([self._rustc, "--version"], error=BuildError)
        return completed.stdout.strip()

    def _run(self, command: list[str], *, error: type[Exception]) -> subprocess.CompletedProcess[str]:
        logger.debug("Running %s in %s", shlex.join(command), self._workspace)
        try:
            completed = subprocess.run(
                command,
                cwd=str(self._workspace),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise error(f"Failed to run {command[0]}: {exc}") from exc
        if completed.returncode != 0:
            lines = completed.stderr.strip().splitlines()
            detail = lines[-1] if lines else f"exit {completed.returncode}"
            raise error(f"{shlex.join(command)} failed: {detail}")
        return completed


__all__ = ["CargoToolchain"]
