"""Application configuration loaded from environment variables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

_TASK_PROVIDERS = {"gcp", "http-push", "local-http"}
_STORAGE_BACKENDS = {"postgres", "memory"}
_ENV_FILE_KEYS = ("QUESTLINE_", "DATABASE_URL")


def _env_file_path() -> Path:
  override = os.getenv("QUESTLINE_ENV_FILE")
  if override:
    return Path(override).expanduser()
  return Path(__file__).resolve().parents[1] / ".env"


def _read_env_file(path: Path) -> dict[str, str]:
  """Parse `KEY=value` lines that configure this service; other keys are ignored."""
  if not path.is_file():
    return {}

  values: dict[str, str] = {}
  for raw_line in path.read_text(encoding="utf-8").splitlines():
    line = raw_line.strip().removeprefix("export ").strip()
    key, sep, value = line.partition("=")
    key = key.strip()
    if not sep or line.startswith("#") or not key.startswith(_ENV_FILE_KEYS):
      continue
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
      value = value[1:-1]
    values[key] = value
  return values


def _load_env_file() -> None:
  # The real environment always wins over the file.
  for key, value in _read_env_file(_env_file_path()).items():
    os.environ.setdefault(key, value)


_load_env_file()


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Questline service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  storage_backend: str
  pg_dsn: str | None
  pg_connect_timeout: int
  db_retry_attempts: int
  task_service_provider: str
  base_url: str | None
  worker_secret: str | None
  worker_id: str
  cloud_tasks_queue_path: str | None
  cloud_run_invoker_service_account: str | None
  broker_publish_url: str | None
  broker_token: str | None
  broker_dedup_header: str
  broker_delay_header: str
  broker_timeout_seconds: float
  job_default_timeout_seconds: float
  job_lease_ttl_seconds: int
  orphan_requeue_after_seconds: int
  sweep_batch_size: int
  llm_api_key: str | None
  llm_base_url: str
  llm_model: str
  llm_timeout_seconds: float
  job_timeouts: dict[str, float] = field(default_factory=dict, hash=False)

  def job_timeout_for(self, job_type: str) -> float:
    """Return the execution deadline for one job type."""
    return float(self.job_timeouts.get(job_type, self.job_default_timeout_seconds))

  @property
  def worker_url(self) -> str:
    """Absolute URL of the broker callback endpoint."""
    if not self.base_url:
      raise RuntimeError("QUESTLINE_BASE_URL must be set to publish worker callbacks.")
    return f"{self.base_url.rstrip('/')}/internal/tasks/run-job"


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("QUESTLINE_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("QUESTLINE_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("QUESTLINE_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _parse_positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _parse_positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_job_timeouts(raw: str | None) -> dict[str, float]:
  """Parse the per-job-type timeout map, e.g. '{"mission_order": 90}'."""
  if not raw:
    return {}
  try:
    data = json.loads(raw)
  except json.JSONDecodeError as exc:
    raise ValueError("QUESTLINE_JOB_TIMEOUTS must be a JSON object.") from exc
  if not isinstance(data, dict):
    raise ValueError("QUESTLINE_JOB_TIMEOUTS must be a JSON object.")

  timeouts: dict[str, float] = {}
  for job_type, seconds in data.items():
    value = float(seconds)
    if value <= 0:
      raise ValueError(f"QUESTLINE_JOB_TIMEOUTS[{job_type}] must be positive.")
    timeouts[str(job_type)] = value
  return timeouts


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

  environment = os.getenv("QUESTLINE_ENV", "development").lower()
  debug = _parse_bool(os.getenv("QUESTLINE_DEBUG"))

  log_max_bytes = _parse_positive_int("QUESTLINE_LOG_MAX_BYTES", "5242880")
  log_backup_count = int(os.getenv("QUESTLINE_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("QUESTLINE_LOG_BACKUP_COUNT must be zero or a positive integer.")

  storage_backend = os.getenv("QUESTLINE_STORAGE_BACKEND", "postgres").strip().lower()
  if storage_backend not in _STORAGE_BACKENDS:
    raise ValueError(f"QUESTLINE_STORAGE_BACKEND must be one of {sorted(_STORAGE_BACKENDS)}.")

  task_service_provider = os.getenv("QUESTLINE_TASK_SERVICE_PROVIDER", "local-http").strip().lower()
  if task_service_provider not in _TASK_PROVIDERS:
    raise ValueError(f"QUESTLINE_TASK_SERVICE_PROVIDER must be one of {sorted(_TASK_PROVIDERS)}.")

  base_url = _optional_str(os.getenv("QUESTLINE_BASE_URL"))

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("QUESTLINE_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("QUESTLINE_LOG_HTTP_4XX")),
    storage_backend=storage_backend,
    pg_dsn=os.getenv("QUESTLINE_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_parse_positive_int("QUESTLINE_PG_CONNECT_TIMEOUT", "5"),
    db_retry_attempts=_parse_positive_int("QUESTLINE_DB_RETRY_ATTEMPTS", "3"),
    task_service_provider=task_service_provider,
    base_url=base_url,
    worker_secret=_optional_str(os.getenv("QUESTLINE_WORKER_SECRET")),
    worker_id=_optional_str(os.getenv("QUESTLINE_WORKER_ID")) or f"worker:{base_url or 'local'}",
    cloud_tasks_queue_path=_optional_str(os.getenv("QUESTLINE_CLOUD_TASKS_QUEUE_PATH")),
    cloud_run_invoker_service_account=_optional_str(os.getenv("QUESTLINE_CLOUD_RUN_INVOKER_SERVICE_ACCOUNT")),
    broker_publish_url=_optional_str(os.getenv("QUESTLINE_BROKER_PUBLISH_URL")),
    broker_token=_optional_str(os.getenv("QUESTLINE_BROKER_TOKEN")),
    broker_dedup_header=(os.getenv("QUESTLINE_BROKER_DEDUP_HEADER") or "Upstash-Deduplication-Id").strip(),
    broker_delay_header=(os.getenv("QUESTLINE_BROKER_DELAY_HEADER") or "Upstash-Delay").strip(),
    broker_timeout_seconds=_parse_positive_float("QUESTLINE_BROKER_TIMEOUT_SECONDS", "10"),
    job_default_timeout_seconds=_parse_positive_float("QUESTLINE_JOB_TIMEOUT_SECONDS", "120"),
    job_lease_ttl_seconds=_parse_positive_int("QUESTLINE_JOB_LEASE_TTL_SECONDS", "900"),
    orphan_requeue_after_seconds=_parse_positive_int("QUESTLINE_ORPHAN_REQUEUE_AFTER_SECONDS", "120"),
    sweep_batch_size=_parse_positive_int("QUESTLINE_SWEEP_BATCH_SIZE", "100"),
    llm_api_key=_optional_str(os.getenv("QUESTLINE_LLM_API_KEY")),
    llm_base_url=(os.getenv("QUESTLINE_LLM_BASE_URL") or "https://openrouter.ai/api/v1").strip(),
    llm_model=(os.getenv("QUESTLINE_LLM_MODEL") or "openai/gpt-4o-mini").strip(),
    llm_timeout_seconds=_parse_positive_float("QUESTLINE_LLM_TIMEOUT_SECONDS", "60"),
    job_timeouts=_parse_job_timeouts(os.getenv("QUESTLINE_JOB_TIMEOUTS")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Migrations and offline scripts must not depend on unrelated env vars.
  pg_connect_timeout = _parse_positive_int("QUESTLINE_PG_CONNECT_TIMEOUT", "5")
  pg_dsn = os.getenv("QUESTLINE_PG_DSN") or os.getenv("DATABASE_URL")
  return DatabaseSettings(debug=_parse_bool(os.getenv("QUESTLINE_DEBUG")), pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
