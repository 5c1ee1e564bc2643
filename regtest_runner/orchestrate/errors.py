"""Error taxonomy for orchestrated integration-test runs."""

from __future__ import annotations


class RunnerError(RuntimeError):
    """Base class for orchestrator errors."""


class ProvisioningError(RunnerError):
    """Raised when a node fails to start or become ready within its bound."""


class ExecutionTimeout(RunnerError):
    """Raised when a test process exceeds its execution timeout."""


class TestFailure(RunnerError):
    """Raised when tests ran to completion but reported assertion failures."""

    __test__ = False


class InfrastructureError(RunnerError):
    """Raised for environment faults: spawn failures, resource exhaustion."""


class DiscoveryError(RunnerError):
    """Raised when test enumeration fails; fatal to the whole run."""


class PinError(RunnerError):
    """Raised when the pinned dependency version cannot be applied."""


class BuildError(RunnerError):
    """Raised when the test binaries cannot be compiled."""


FATAL_ERRORS = (DiscoveryError, PinError, BuildError)


__all__ = [
    "BuildError",
    "DiscoveryError",
    "ExecutionTimeout",
    "FATAL_ERRORS",
    "InfrastructureError",
    "PinError",
    "ProvisioningError",
    "RunnerError",
    "TestFailure",
]
