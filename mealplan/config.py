"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache

from mealplan.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class MatcherSettings:
  """Tunable constants for catalog recipe matching."""

  min_confidence: float = 0.8
  similarity_threshold: float = 0.75
  trigram_size: int = 3
  meal_type_bonus: float = 0.08
  cuisine_bonus: float = 0.04
  candidate_limit: int = 6
  fallback_candidate_limit: int = 10
  max_execution_ms: int = 50000
  safety_buffer_ms: int = 5000
  save_interval: int = 3


@dataclass(frozen=True)
class PlannerSettings:
  """Tunable constants for the planner control loop and its retry wrappers."""

  model: str = "openai/gpt-4o-mini"
  max_iterations: int = 12
  tool_failure_limit: int = 2
  chunk_size: int = 7
  max_parallel_generations: int = 3
  recipe_retry_attempts: int = 2
  recipe_time_budget_ms: int = 45000
  history_limit: int = 25
  stale_job_seconds: int = 900
  draft_max_attempts: int = 3
  backoff_delays: tuple[float, ...] = (4.0, 8.0, 16.0)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the meal plan service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  firebase_project_id: str | None
  firebase_service_account_json_path: str | None
  system_user_id: str
  cloud_tasks_queue_path: str | None
  task_service_provider: str
  base_url: str | None
  task_secret: str | None
  cloud_run_invoker_service_account: str | None
  draft_generator_url: str | None
  recipe_generator_url: str | None
  service_token: str | None
  collaborator_timeout_seconds: float
  openrouter_api_key: str | None
  openrouter_base_url: str
  matcher: MatcherSettings = field(default_factory=MatcherSettings)
  planner: PlannerSettings = field(default_factory=PlannerSettings)


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("MEALPLAN_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("MEALPLAN_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("MEALPLAN_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _parse_positive_int(name: str, default: int) -> int:
  value = int(os.getenv(name, str(default)))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_unit_float(name: str, default: float) -> float:
  value = float(os.getenv(name, str(default)))
  if value < 0 or value > 1:
    raise ValueError(f"{name} must be between 0 and 1.")
  return value


def _parse_delays(raw: str | None, default: tuple[float, ...]) -> tuple[float, ...]:
  if not raw:
    return default
  delays = tuple(float(part) for part in raw.split(",") if part.strip())
  if not delays or any(delay < 0 for delay in delays):
    raise ValueError("MEALPLAN_DRAFT_BACKOFF_SECONDS must list non-negative delays.")
  return delays


def _load_matcher_settings() -> MatcherSettings:
  """Read matcher tunables, validating the relationships between budgets."""
  max_execution_ms = _parse_positive_int("MEALPLAN_MATCH_MAX_EXECUTION_MS", 50000)
  safety_buffer_ms = _parse_positive_int("MEALPLAN_MATCH_SAFETY_BUFFER_MS", 5000)
  if safety_buffer_ms >= max_execution_ms:
    raise ValueError("MEALPLAN_MATCH_SAFETY_BUFFER_MS must be smaller than MEALPLAN_MATCH_MAX_EXECUTION_MS.")

  return MatcherSettings(
    min_confidence=_parse_unit_float("MEALPLAN_MATCH_MIN_CONFIDENCE", 0.8),
    similarity_threshold=_parse_unit_float("MEALPLAN_MATCH_SIMILARITY_THRESHOLD", 0.75),
    trigram_size=_parse_positive_int("MEALPLAN_MATCH_TRIGRAM_SIZE", 3),
    meal_type_bonus=_parse_unit_float("MEALPLAN_MATCH_MEAL_TYPE_BONUS", 0.08),
    cuisine_bonus=_parse_unit_float("MEALPLAN_MATCH_CUISINE_BONUS", 0.04),
    candidate_limit=_parse_positive_int("MEALPLAN_MATCH_CANDIDATE_LIMIT", 6),
    fallback_candidate_limit=_parse_positive_int("MEALPLAN_MATCH_FALLBACK_LIMIT", 10),
    max_execution_ms=max_execution_ms,
    safety_buffer_ms=safety_buffer_ms,
    save_interval=_parse_positive_int("MEALPLAN_MATCH_SAVE_INTERVAL", 3),
  )


def _load_planner_settings() -> PlannerSettings:
  return PlannerSettings(
    model=os.getenv("MEALPLAN_PLANNER_MODEL", "openai/gpt-4o-mini").strip(),
    max_iterations=_parse_positive_int("MEALPLAN_PLANNER_MAX_ITERATIONS", 12),
    tool_failure_limit=_parse_positive_int("MEALPLAN_PLANNER_TOOL_FAILURE_LIMIT", 2),
    chunk_size=_parse_positive_int("MEALPLAN_GENERATION_CHUNK_SIZE", 7),
    max_parallel_generations=_parse_positive_int("MEALPLAN_GENERATION_PARALLELISM", 3),
    recipe_retry_attempts=_parse_positive_int("MEALPLAN_GENERATION_RETRY_ATTEMPTS", 2),
    recipe_time_budget_ms=_parse_positive_int("MEALPLAN_GENERATION_TIME_BUDGET_MS", 45000),
    history_limit=_parse_positive_int("MEALPLAN_HISTORY_LIMIT", 25),
    stale_job_seconds=_parse_positive_int("MEALPLAN_STALE_JOB_SECONDS", 900),
    draft_max_attempts=_parse_positive_int("MEALPLAN_DRAFT_MAX_ATTEMPTS", 3),
    backoff_delays=_parse_delays(os.getenv("MEALPLAN_DRAFT_BACKOFF_SECONDS"), (4.0, 8.0, 16.0)),
  )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("MEALPLAN_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("MEALPLAN_DEBUG"))

  log_max_bytes = int(os.getenv("MEALPLAN_LOG_MAX_BYTES", "5242880"))  # 5MB default
  if log_max_bytes <= 0:
    raise ValueError("MEALPLAN_LOG_MAX_BYTES must be a positive integer.")

  log_backup_count = int(os.getenv("MEALPLAN_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("MEALPLAN_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # The system identity owns recipes created on behalf of households.
  system_user_id = (os.getenv("MEALPLAN_SYSTEM_USER_ID") or "").strip()
  if not system_user_id:
    raise ValueError("MEALPLAN_SYSTEM_USER_ID must be set.")

  collaborator_timeout_seconds = float(os.getenv("MEALPLAN_COLLABORATOR_TIMEOUT_SECONDS", "40"))
  if collaborator_timeout_seconds <= 0:
    raise ValueError("MEALPLAN_COLLABORATOR_TIMEOUT_SECONDS must be positive.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("MEALPLAN_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("MEALPLAN_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("MEALPLAN_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=int(os.getenv("MEALPLAN_PG_CONNECT_TIMEOUT", "5")),
    firebase_project_id=os.getenv("FIREBASE_PROJECT_ID"),
    firebase_service_account_json_path=os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH"),
    system_user_id=system_user_id,
    cloud_tasks_queue_path=_optional_str(os.getenv("MEALPLAN_CLOUD_TASKS_QUEUE_PATH")),
    task_service_provider=os.getenv("MEALPLAN_TASK_SERVICE_PROVIDER", "local-http").lower(),
    base_url=_optional_str(os.getenv("MEALPLAN_BASE_URL")),
    task_secret=_optional_str(os.getenv("MEALPLAN_TASK_SECRET")),
    cloud_run_invoker_service_account=_optional_str(os.getenv("MEALPLAN_CLOUD_RUN_INVOKER_SERVICE_ACCOUNT")),
    draft_generator_url=_optional_str(os.getenv("MEALPLAN_DRAFT_GENERATOR_URL")),
    recipe_generator_url=_optional_str(os.getenv("MEALPLAN_RECIPE_GENERATOR_URL")),
    service_token=_optional_str(os.getenv("MEALPLAN_SERVICE_TOKEN")),
    collaborator_timeout_seconds=collaborator_timeout_seconds,
    openrouter_api_key=_optional_str(os.getenv("OPENROUTER_API_KEY")),
    openrouter_base_url=(os.getenv("OPENROUTER_BASE_URL") or "https://openrouter.ai/api/v1").strip(),
    matcher=_load_matcher_settings(),
    planner=_load_planner_settings(),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Migrations load only these values.
  debug = _parse_bool(os.getenv("MEALPLAN_DEBUG"))
  pg_connect_timeout = int(os.getenv("MEALPLAN_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("MEALPLAN_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("MEALPLAN_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
