"""Configuration loader for the integration-test orchestrator."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Mapping

from omegaconf import OmegaConf
from pydantic import BaseModel, Field, ValidationError, field_validator


DEFAULT_ARTIFACT_DIR = Path("target") / "debug" / "deps"
DEFAULT_PORT_RANGE = "18443-18543"


class ConfigFormatError(ValueError):
    """Raised when a configuration file cannot be interpreted as a mapping."""


class PinConfig(BaseModel):
    """Exact version a transitive dependency must resolve to before building."""

    package: str
    version: str


class CacheConfig(BaseModel):
    dir: Path = Path(".regtest-cache")
    run_id: str = "local"
    run_number: str = "0"

    @property
    def run_identity(self) -> str:
        return f"{self.run_id}-{self.run_number}"


class NodeConfig(BaseModel):
    image: str = "ruimarinho/bitcoin-core:0.21"
    container_port: int = 18443
    rpc_user: str = "testuser"
    rpc_password: str = "testpass"
    bitcoind: dict[str, Any] = Field(default_factory=dict)
    env_file: Path | None = None
    volumes: list[str] | dict[str, dict[str, str]] | None = None
    probe_timeout_s: float = 5.0


class PlanConfig(BaseModel):
    """Schema for the orchestrator plan file."""

    name: str | None = None
    workspace: Path = Path(".")
    artifact_dir: Path = DEFAULT_ARTIFACT_DIR
    test_prefixes: list[str] = Field(..., min_length=1)
    shard_by: Literal["test", "binary"] = "test"
    pin: PinConfig | None = None
    cache: CacheConfig | None = None
    node: NodeConfig = Field(default_factory=NodeConfig)
    env_file: Path | None = None
    port_range: str | None = None
    run_id: str | None = None
    output_dir: Path | None = None
    max_parallel: int | None = None
    readiness_timeout_s: float = 120.0
    probe_interval_s: float = 1.0
    test_timeout_s: float = 900.0
    start_attempts: int = 3
    start_backoff_s: float = 2.0
    resume: bool = False
    rerun_failed: bool = False
    kill_orphans: bool = False

    @field_validator("max_parallel", "start_attempts")
    @classmethod
    def _positive(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("readiness_timeout_s", "probe_interval_s", "test_timeout_s")
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be > 0")
        return value


def load_plan(path: Path) -> PlanConfig:
    resolved = path.expanduser().resolve()
    payload = _load_mapping(resolved)
    try:
        plan = PlanConfig(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid plan file: {resolved}\n{exc}") from exc
    base_dir = resolved.parent
    plan.workspace = _resolve(plan.workspace, base_dir)
    plan.artifact_dir = _resolve(plan.artifact_dir, plan.workspace)
    if plan.env_file is not None:
        plan.env_file = _resolve(plan.env_file, base_dir)
    if plan.output_dir is not None:
        plan.output_dir = _resolve(plan.output_dir, base_dir)
    if plan.cache is not None:
        plan.cache.dir = _resolve(plan.cache.dir, plan.workspace)
    if plan.node.env_file is not None:
        plan.node.env_file = _resolve(plan.node.env_file, base_dir)
    return plan


def parse_port_range(expr: str | None) -> tuple[int, int]:
    """Parse "18443-18543" into an inclusive (start, end) tuple."""
    start_str, _, end_str = (expr or DEFAULT_PORT_RANGE).partition("-")
    start = int(start_str)
    end = int(end_str) if end_str else start
    if end < start:
        raise ValueError(f"Port range is invalid: {start}-{end}.")
    return start, end


def _resolve(value: Path, base_dir: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path.resolve()


def _load_mapping(path: Path) -> Mapping[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    if path.suffix not in {".yaml", ".yml", ".json"}:
        raise ValueError(f"Unsupported config format: {path} (expected .yaml/.yml/.json)")
    try:
        data = OmegaConf.to_container(OmegaConf.load(path), resolve=True)
    except Exception as exc:  # pragma: no cover - OmegaConf error types vary
        raise ConfigFormatError(f"Failed to load config: {path}") from exc
    if not isinstance(data, Mapping):
        raise ConfigFormatError(f"Config must be a mapping at top level: {path}")
    return data


__all__ = [
    "CacheConfig",
    "ConfigFormatError",
    "NodeConfig",
    "PinConfig",
    "PlanConfig",
    "load_plan",
    "parse_port_range",
]
