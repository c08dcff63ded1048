from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import sys
from typing import Mapping, Optional

from stockroom.domain.errors import ValidationError

ENV_PREFIX = "STOCKROOM_"


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class Settings:
    db_path: Path
    logs_dir: Path
    log_level: int = logging.INFO
    mutation_max_attempts: int = 5
    retry_backoff_seconds: float = 0.01
    sqlite_timeout_seconds: float = 5.0
    max_page_size: int = 100
    default_reorder_threshold: int = 10
    summary_cache_ttl_seconds: float = 0.0


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "Stockroom", env: Optional[Mapping[str, str]] = None) -> AppPaths:
    env = os.environ if env is None else env
    home = env.get(f"{ENV_PREFIX}HOME")
    if home:
        base = Path(home).expanduser()
    elif sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "stockroom.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


def _env_number(env: Mapping[str, str], name: str, default, cast, minimum):
    raw = env.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        raise ValidationError(f"{ENV_PREFIX}{name} must be a number. Received: {raw!r}") from None
    if value < minimum:
        raise ValidationError(f"{ENV_PREFIX}{name} must be >= {minimum}. Received: {raw!r}")
    return value


def _env_log_level(env: Mapping[str, str]) -> int:
    raw = (env.get(f"{ENV_PREFIX}LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(raw)
    if not isinstance(level, int):
        raise ValidationError(f"{ENV_PREFIX}LOG_LEVEL is not a logging level: {raw!r}")
    return level


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from STOCKROOM_* environment variables on top of the defaults."""
    env = os.environ if env is None else env
    paths = get_app_paths(env=env)
    db_override = env.get(f"{ENV_PREFIX}DB_PATH")

    return Settings(
        db_path=Path(db_override).expanduser() if db_override else paths.db_path,
        logs_dir=paths.logs_dir,
        log_level=_env_log_level(env),
        mutation_max_attempts=_env_number(env, "MUTATION_MAX_ATTEMPTS", 5, int, 1),
        retry_backoff_seconds=_env_number(env, "RETRY_BACKOFF_SECONDS", 0.01, float, 0),
        sqlite_timeout_seconds=_env_number(env, "SQLITE_TIMEOUT_SECONDS", 5.0, float, 0),
        max_page_size=_env_number(env, "MAX_PAGE_SIZE", 100, int, 1),
        default_reorder_threshold=_env_number(env, "DEFAULT_REORDER_THRESHOLD", 10, int, 0),
        summary_cache_ttl_seconds=_env_number(env, "SUMMARY_CACHE_TTL_SECONDS", 0.0, float, 0),
    )
