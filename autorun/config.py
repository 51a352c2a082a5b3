"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from autorun.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

STORAGE_BACKENDS = ("memory", "postgres")


@dataclass(frozen=True)
class Settings:
  """Typed settings for the autorun orchestrator service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  storage_backend: str
  pg_dsn: str | None
  auto_create_tables: bool
  default_format: str
  max_items_per_tick: int
  max_items_per_tick_limit: int
  claim_ttl_seconds: int
  max_attempts: int
  executor_timeout_seconds: float
  chunk_max_chars: int
  run_loop_initial_delay: float
  run_loop_max_delay: float
  run_loop_backoff_factor: float
  run_loop_transient_delay: float
  generation_url: str | None
  generation_secret: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  origins = [origin.strip() for origin in (raw or "http://localhost:5173").split(",") if origin.strip()]

  if not origins:
    raise ValueError("AUTORUN_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("AUTORUN_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("AUTORUN_ENV", "development").lower()
  debug = _parse_bool(os.getenv("AUTORUN_DEBUG"))

  log_backup_count = int(os.getenv("AUTORUN_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("AUTORUN_LOG_BACKUP_COUNT must be zero or a positive integer.")

  storage_backend = (os.getenv("AUTORUN_STORAGE_BACKEND") or "memory").strip().lower()
  if storage_backend not in STORAGE_BACKENDS:
    raise ValueError(f"AUTORUN_STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}.")

  pg_dsn = _optional_str(os.getenv("AUTORUN_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL"))
  if storage_backend == "postgres" and not pg_dsn:
    raise ValueError("AUTORUN_PG_DSN must be set when AUTORUN_STORAGE_BACKEND=postgres.")

  max_items_per_tick = _positive_int("AUTORUN_MAX_ITEMS_PER_TICK", "1")
  max_items_per_tick_limit = _positive_int("AUTORUN_MAX_ITEMS_PER_TICK_LIMIT", "10")
  if max_items_per_tick > max_items_per_tick_limit:
    raise ValueError("AUTORUN_MAX_ITEMS_PER_TICK must not exceed AUTORUN_MAX_ITEMS_PER_TICK_LIMIT.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("AUTORUN_ALLOWED_ORIGINS")),
    log_dir=(os.getenv("AUTORUN_LOG_DIR") or "./logs").strip(),
    log_max_bytes=_positive_int("AUTORUN_LOG_MAX_BYTES", "5242880"),
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("AUTORUN_LOG_HTTP_4XX")),
    storage_backend=storage_backend,
    pg_dsn=pg_dsn,
    auto_create_tables=_parse_bool(os.getenv("AUTORUN_AUTO_CREATE_TABLES")),
    default_format=(os.getenv("AUTORUN_DEFAULT_FORMAT") or "film").strip().lower(),
    max_items_per_tick=max_items_per_tick,
    max_items_per_tick_limit=max_items_per_tick_limit,
    claim_ttl_seconds=_positive_int("AUTORUN_CLAIM_TTL_SECONDS", "30"),
    max_attempts=_positive_int("AUTORUN_MAX_ATTEMPTS", "3"),
    executor_timeout_seconds=_positive_float("AUTORUN_EXECUTOR_TIMEOUT_SECONDS", "120"),
    chunk_max_chars=_positive_int("AUTORUN_CHUNK_MAX_CHARS", "12000"),
    run_loop_initial_delay=_positive_float("AUTORUN_RUN_LOOP_INITIAL_DELAY", "1.0"),
    run_loop_max_delay=_positive_float("AUTORUN_RUN_LOOP_MAX_DELAY", "8.0"),
    run_loop_backoff_factor=_positive_float("AUTORUN_RUN_LOOP_BACKOFF_FACTOR", "1.2"),
    run_loop_transient_delay=_positive_float("AUTORUN_RUN_LOOP_TRANSIENT_DELAY", "3.0"),
    generation_url=_optional_str(os.getenv("AUTORUN_GENERATION_URL")),
    generation_secret=_optional_str(os.getenv("AUTORUN_GENERATION_SECRET")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  debug = _parse_bool(os.getenv("AUTORUN_DEBUG"))
  pg_connect_timeout = _positive_int("AUTORUN_PG_CONNECT_TIMEOUT", "5")
  pg_dsn = _optional_str(os.getenv("AUTORUN_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL"))

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
