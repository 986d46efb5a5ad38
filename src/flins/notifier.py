from __future__ import annotations

import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Callable, Mapping, TextIO

from ._version import __version__
from .client import DirectoryClient, FlinsError
from .config import Config, cache_dir

logger = logging.getLogger(__name__)

PACKAGE_NAME = "flins"
CHECK_INTERVAL_S = 24 * 60 * 60
STATE_FILENAME = "update-check.json"


def _version_tuple(v: str) -> tuple[int, ...]:
    parts: list[int] = []
    for piece in v.split("."):
        digits = ""
        for ch in piece:
            if not ch.isdigit():
                break
            digits += ch
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def is_newer(latest: str, current: str) -> bool:
    return _version_tuple(latest) > _version_tuple(current)


def should_check(
    cfg: Config,
    *,
    silent: bool,
    env: Mapping[str, str] | None = None,
    stream: TextIO | None = None,
) -> bool:
    env = os.environ if env is None else env
    stream = stream or sys.stdout
    if silent or not cfg.update_check:
        return False
    if env.get("NO_UPDATE_NOTIFIER"):
        return False
    if env.get("CI") == "true":
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def _read_state(path: Path) -> dict:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return raw if isinstance(raw, dict) else {}


def _write_state(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def latest_known_version(
    cfg: Config,
    *,
    now: float | None = None,
    state_path: Path | None = None,
    client_factory: Callable[[Config], DirectoryClient] | None = None,
) -> str | None:
    """
    Latest published version, asking the package index at most once per interval.
    Between checks the cached answer is returned.
    """
    path = state_path or cache_dir() / STATE_FILENAME
    now_ts = time.time() if now is None else now
    state = _read_state(path)
    last = state.get("last_check")
    cached = state.get("latest")
    if isinstance(last, (int, float)) and now_ts - last < CHECK_INTERVAL_S:
        return cached if isinstance(cached, str) else None

    factory = client_factory or (
        lambda c: DirectoryClient(directory_url=c.directory_url, index_url=c.index_url, timeout_s=c.timeout_s)
    )
    try:
        with factory(cfg) as client:
            latest = client.latest_version(PACKAGE_NAME)
    except FlinsError as e:
        logger.debug("Update check failed: %s", e)
        latest = cached if isinstance(cached, str) else None

    try:
        _write_state(path, {"last_check": now_ts, "latest": latest})
    except OSError as e:
        logger.debug("Could not cache update check in %s: %s", path, e)
    return latest


def check_for_updates(
    cfg: Config,
    *,
    silent: bool,
    out: TextIO | None = None,
    env: Mapping[str, str] | None = None,
    **kwargs,
) -> str | None:
    """Print a notice when a newer release exists. Returns the newer version, if any."""
    out = out or sys.stdout
    if not should_check(cfg, silent=silent, env=env, stream=out):
        return None
    latest = latest_known_version(cfg, **kwargs)
    if latest is None or not is_newer(latest, __version__):
        return None
    print(file=out)
    print(f"Update available {__version__} -> {latest}", file=out)
    print(f"Run `pip install -U {PACKAGE_NAME}` to update", file=out)
    return latest
