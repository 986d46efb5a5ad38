from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path

DEFAULT_DIRECTORY_URL = "https://flins.tech/directory.json"
DEFAULT_INDEX_URL = "https://pypi.org/pypi/{package}/json"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_LOG_LEVEL = "WARNING"


@dataclass(frozen=True)
class Config:
    directory_url: str = DEFAULT_DIRECTORY_URL
    index_url: str = DEFAULT_INDEX_URL  # "{package}" is substituted
    timeout_s: float = DEFAULT_TIMEOUT_S
    symlink: bool = True  # default install strategy for `add`
    update_check: bool = True
    log_level: str = DEFAULT_LOG_LEVEL


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("FLINS_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("flins") / "config.json"


def cache_dir() -> Path:
    if env := os.getenv("FLINS_CACHE_DIR"):
        return Path(env).expanduser()
    return user_cache_path("flins")


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return Config()
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

    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def merge_env(cfg: Config) -> Config:
    """Apply FLINS_* environment overrides on top of the file config."""
    directory_url = os.getenv("FLINS_DIRECTORY_URL") or cfg.directory_url
    log_level = os.getenv("FLINS_LOG_LEVEL") or cfg.log_level
    timeout_s: Any = os.getenv("FLINS_TIMEOUT_S") or cfg.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = cfg.timeout_s
    return Config(
        directory_url=directory_url,
        index_url=cfg.index_url,
        timeout_s=timeout_s_f,
        symlink=cfg.symlink,
        update_check=cfg.update_check,
        log_level=log_level,
    )
