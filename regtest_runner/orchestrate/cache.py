"""Build cache for compiled test binaries, keyed by exact pin + toolchain + run."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
import hashlib
import json
import logging
from pathlib import Path
import shutil
import uuid


logger = logging.getLogger(__name__)

KEY_FILENAME = "cache_key.json"
ARTIFACT_DIRNAME = "artifact"


@dataclass(frozen=True)
class CacheKey:
    dependency: str
    pin_version: str
    toolchain: str
    run_id: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    def digest(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def label(self) -> str:
        return f"test-cache-{self.run_id}"


class BuildCache:
    """Directory-backed cache; a hit requires every key field to match exactly."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def _entry_dir(self, key: CacheKey) -> Path:
        return self._root / key.digest()

    def get(self, key: CacheKey) -> Path | None:
        entry = self._entry_dir(key)
        artifact = entry / ARTIFACT_DIRNAME
        stored = _read_key(entry / KEY_FILENAME)
        if stored is None or not artifact.is_dir():
            return None
        if stored != key:
            logger.warning("Cache entry %s does not match requested key; treating as miss", entry.name)
            return None
        return artifact

    def put(self, key: CacheKey, artifact_dir: Path) -> Path:
        if not artifact_dir.is_dir():
            raise FileNotFoundError(f"Artifact directory not found: {artifact_dir}")
        self._root.mkdir(parents=True, exist_ok=True)
        entry = self._entry_dir(key)
        staging = self._root / f".{entry.name}.tmp-{uuid.uuid4().hex}"
        try:
            shutil.copytree(artifact_dir, staging / ARTIFACT_DIRNAME, symlinks=True)
            with open(staging / KEY_FILENAME, "w", encoding="utf-8") as handle:
                json.dump(key.to_dict(), handle, indent=2, sort_keys=True)
            if entry.exists():
                shutil.rmtree(entry)
            staging.rename(entry)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        logger.info("Cached %s as %s", artifact_dir, key.label())
        return entry / ARTIFACT_DIRNAME

    def restore(self, key: CacheKey, dest: Path) -> bool:
        artifact = self.get(key)
        if artifact is None:
            return False
        dest.mkdir(parents=True, exist_ok=True)
        shutil.copytree(artifact, dest, symlinks=True, dirs_exist_ok=True)
        logger.info("Restored %s into %s", key.label(), dest)
        return True


def _read_key(path: Path) -> CacheKey | None:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, json.JSONDecodeError):
        return None
    names = {field.name for field in fields(CacheKey)}
    if not isinstance(payload, dict) or set(payload) != names:
        return None
    return CacheKey(**{name: str(payload[name]) for name in names})


__all__ = ["BuildCache", "CacheKey"]
