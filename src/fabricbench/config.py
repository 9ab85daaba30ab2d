from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(slots=True)
class BackendConfig:
    base_url: str
    api_prefix: str = "/api"
    timeout_seconds: float = 30.0

    @property
    def api_root(self) -> str:
        prefix = self.api_prefix.strip("/")
        root = self.base_url.rstrip("/")
        return f"{root}/{prefix}" if prefix else root


@dataclass(slots=True)
class ProbeConfig:
    interval_seconds: float = 2.0
    max_attempts: int = 300

    @property
    def max_wait_seconds(self) -> float:
        return self.interval_seconds * self.max_attempts


@dataclass(slots=True)
class PathsConfig:
    db: Path
    log: Path


@dataclass(slots=True)
class AppConfig:
    backend: BackendConfig
    paths: PathsConfig
    probe: ProbeConfig = field(default_factory=ProbeConfig)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    backend_raw = _require(raw, "backend", "root")
    if not isinstance(backend_raw, dict):
        raise ValueError("`backend` must be a mapping")
    probe_raw = _section(raw, "probe")
    paths_raw = _section(raw, "paths")

    backend = BackendConfig(
        base_url=str(_require(backend_raw, "base_url", "backend")).strip(),
        api_prefix=str(backend_raw.get("api_prefix", "/api")),
        timeout_seconds=float(backend_raw.get("timeout_seconds", 30)),
    )
    if not backend.base_url.startswith(("http://", "https://")):
        raise ValueError("`backend.base_url` must start with http:// or https://")
    if backend.timeout_seconds <= 0:
        raise ValueError("`backend.timeout_seconds` must be > 0")

    probe = ProbeConfig(
        interval_seconds=float(probe_raw.get("interval_seconds", 2)),
        max_attempts=int(probe_raw.get("max_attempts", 300)),
    )
    if probe.interval_seconds < 0:
        raise ValueError("`probe.interval_seconds` must be >= 0")
    if probe.max_attempts < 1:
        raise ValueError("`probe.max_attempts` must be >= 1")

    def to_path(key: str, default: str) -> Path:
        output = Path(str(paths_raw.get(key, default))).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(
        db=to_path("db", "fabricbench.db"),
        log=to_path("log", "fabricbench.log"),
    )

    return AppConfig(backend=backend, paths=paths, probe=probe)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
