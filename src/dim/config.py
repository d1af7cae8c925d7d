from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from ._version import __version__

DEFAULT_DATA_DIR = "data_files"
DEFAULT_MANIFEST_PATH = "dim.json"
DEFAULT_LOCK_PATH = "dim-lock.json"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MAX_WORKERS = 4
DEFAULT_USER_AGENT = f"dim/{__version__}"


@dataclass(frozen=True)
class Config:
    data_dir: str = DEFAULT_DATA_DIR
    manifest_path: str = DEFAULT_MANIFEST_PATH
    lock_path: str = DEFAULT_LOCK_PATH
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_workers: int = DEFAULT_MAX_WORKERS
    user_agent: str = DEFAULT_USER_AGENT


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("DIM_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("dim") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path


def _coerce(value: Any, cast: type, fallback: Any) -> Any:
    if value is None:
        return fallback
    try:
        return cast(value)
    except (TypeError, ValueError):
        return fallback


def merge_overrides(base: Config, overrides: dict[str, Any]) -> Config:
    """
    Layer environment variables and explicit overrides on top of a loaded config.

    Precedence: explicit override (CLI flag) > DIM_* environment variable > config file.
    """

    def pick(field: str, env: str) -> Any:
        value = overrides.get(field)
        if value is not None:
            return value
        return os.getenv(env)

    data_dir = pick("data_dir", "DIM_DATA_DIR") or base.data_dir
    manifest_path = pick("manifest_path", "DIM_MANIFEST_PATH") or base.manifest_path
    lock_path = pick("lock_path", "DIM_LOCK_PATH") or base.lock_path
    timeout_s = _coerce(pick("timeout_s", "DIM_TIMEOUT_S"), float, base.timeout_s)
    max_workers = _coerce(pick("max_workers", "DIM_MAX_WORKERS"), int, base.max_workers)
    if max_workers < 1:
        max_workers = base.max_workers

    return Config(
        data_dir=str(data_dir),
        manifest_path=str(manifest_path),
        lock_path=str(lock_path),
        timeout_s=timeout_s,
        max_workers=max_workers,
        user_agent=base.user_agent,
    )
