"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from recipegen.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the recipe generation service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  openai_api_key: str | None
  openai_base_url: str | None
  recipe_model: str
  image_model: str
  image_size: str
  image_quality: str
  image_bucket: str
  image_object_prefix: str
  gcs_storage_host: str | None
  gcp_project_id: str | None
  placeholder_image_url: str
  convert_images_to_webp: bool
  max_batch_items: int
  default_chunk_size: int
  chunk_concurrency: int
  persistence_batch_size: int
  persistence_transactional: bool
  agent_max_retries: int
  retry_base_delay_ms: int
  retry_max_delay_ms: int
  retry_jitter: bool
  generation_timeout_seconds: float
  image_timeout_seconds: float
  upload_timeout_seconds: float
  upload_concurrency: int
  image_similarity_threshold: float
  image_uniqueness_retries: int
  calorie_pass_ratio: float
  calorie_fix_ratio: float
  macro_pass_grams: float
  macro_fix_grams: float
  progress_retention_seconds: int
  progress_cleanup_interval_seconds: int


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ("http://localhost:3000",)

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if "*" in origins:
    raise ValueError("RECIPEGEN_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None or raw.strip() == "":
    return default

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

  environment = os.getenv("RECIPEGEN_ENV", "development").lower()
  debug = _parse_bool(os.getenv("RECIPEGEN_DEBUG"))

  log_backup_count = int(os.getenv("RECIPEGEN_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("RECIPEGEN_LOG_BACKUP_COUNT must be zero or a positive integer.")

  agent_max_retries = int(os.getenv("RECIPEGEN_AGENT_MAX_RETRIES", "2"))
  if agent_max_retries < 0:
    raise ValueError("RECIPEGEN_AGENT_MAX_RETRIES must be zero or a positive integer.")

  image_uniqueness_retries = int(os.getenv("RECIPEGEN_IMAGE_UNIQUENESS_RETRIES", "3"))
  if image_uniqueness_retries < 0:
    raise ValueError("RECIPEGEN_IMAGE_UNIQUENESS_RETRIES must be zero or a positive integer.")

  similarity_threshold = float(os.getenv("RECIPEGEN_IMAGE_SIMILARITY_THRESHOLD", "0.95"))
  if not 0.0 < similarity_threshold <= 1.0:
    raise ValueError("RECIPEGEN_IMAGE_SIMILARITY_THRESHOLD must be in (0, 1].")

  # Tolerance bands must nest: the auto-fix band always contains the pass band.
  calorie_pass_ratio = _positive_float("RECIPEGEN_CALORIE_PASS_RATIO", "0.10")
  calorie_fix_ratio = _positive_float("RECIPEGEN_CALORIE_FIX_RATIO", "0.15")
  if calorie_fix_ratio < calorie_pass_ratio:
    raise ValueError("RECIPEGEN_CALORIE_FIX_RATIO must be >= RECIPEGEN_CALORIE_PASS_RATIO.")

  macro_pass_grams = _positive_float("RECIPEGEN_MACRO_PASS_GRAMS", "5")
  macro_fix_grams = _positive_float("RECIPEGEN_MACRO_FIX_GRAMS", "10")
  if macro_fix_grams < macro_pass_grams:
    raise ValueError("RECIPEGEN_MACRO_FIX_GRAMS must be >= RECIPEGEN_MACRO_PASS_GRAMS.")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("RECIPEGEN_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=_positive_int("RECIPEGEN_LOG_MAX_BYTES", "5242880"),
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("RECIPEGEN_LOG_HTTP_4XX")),
    pg_dsn=os.getenv("RECIPEGEN_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("RECIPEGEN_PG_CONNECT_TIMEOUT", "5"),
    openai_api_key=_optional_str(os.getenv("OPENAI_API_KEY")),
    openai_base_url=_optional_str(os.getenv("OPENAI_BASE_URL")),
    recipe_model=os.getenv("RECIPEGEN_RECIPE_MODEL", "gpt-4o"),
    image_model=os.getenv("RECIPEGEN_IMAGE_MODEL", "dall-e-3"),
    image_size=os.getenv("RECIPEGEN_IMAGE_SIZE", "1024x1024"),
    image_quality=os.getenv("RECIPEGEN_IMAGE_QUALITY", "hd"),
    image_bucket=os.getenv("RECIPEGEN_IMAGE_BUCKET", "recipegen-images"),
    image_object_prefix=(os.getenv("RECIPEGEN_IMAGE_OBJECT_PREFIX") or "recipes").strip().strip("/"),
    gcs_storage_host=_optional_str(os.getenv("GCS_STORAGE_HOST")),
    gcp_project_id=_optional_str(os.getenv("GCP_PROJECT_ID")),
    placeholder_image_url=os.getenv("RECIPEGEN_PLACEHOLDER_IMAGE_URL", "https://storage.googleapis.com/recipegen-images/placeholders/recipe.webp"),
    convert_images_to_webp=_parse_bool(os.getenv("RECIPEGEN_CONVERT_IMAGES_TO_WEBP"), default=True),
    max_batch_items=_positive_int("RECIPEGEN_MAX_BATCH_ITEMS", "100"),
    default_chunk_size=_positive_int("RECIPEGEN_DEFAULT_CHUNK_SIZE", "5"),
    chunk_concurrency=_positive_int("RECIPEGEN_CHUNK_CONCURRENCY", "1"),
    persistence_batch_size=_positive_int("RECIPEGEN_PERSISTENCE_BATCH_SIZE", "10"),
    persistence_transactional=_parse_bool(os.getenv("RECIPEGEN_PERSISTENCE_TRANSACTIONAL"), default=True),
    agent_max_retries=agent_max_retries,
    retry_base_delay_ms=_positive_int("RECIPEGEN_RETRY_BASE_DELAY_MS", "500"),
    retry_max_delay_ms=_positive_int("RECIPEGEN_RETRY_MAX_DELAY_MS", "8000"),
    retry_jitter=_parse_bool(os.getenv("RECIPEGEN_RETRY_JITTER"), default=True),
    generation_timeout_seconds=_positive_float("RECIPEGEN_GENERATION_TIMEOUT_SECONDS", "90"),
    image_timeout_seconds=_positive_float("RECIPEGEN_IMAGE_TIMEOUT_SECONDS", "45"),
    upload_timeout_seconds=_positive_float("RECIPEGEN_UPLOAD_TIMEOUT_SECONDS", "30"),
    upload_concurrency=_positive_int("RECIPEGEN_UPLOAD_CONCURRENCY", "5"),
    image_similarity_threshold=similarity_threshold,
    image_uniqueness_retries=image_uniqueness_retries,
    calorie_pass_ratio=calorie_pass_ratio,
    calorie_fix_ratio=calorie_fix_ratio,
    macro_pass_grams=macro_pass_grams,
    macro_fix_grams=macro_fix_grams,
    progress_retention_seconds=_positive_int("RECIPEGEN_PROGRESS_RETENTION_SECONDS", "1800"),
    progress_cleanup_interval_seconds=_positive_int("RECIPEGEN_PROGRESS_CLEANUP_INTERVAL_SECONDS", "300"),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring pipeline configuration."""
  # Keep database configuration isolated so offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("RECIPEGEN_DEBUG"))
  pg_connect_timeout = int(os.getenv("RECIPEGEN_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("RECIPEGEN_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("RECIPEGEN_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
