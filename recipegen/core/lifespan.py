import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from urllib.parse import urlparse

from fastapi import FastAPI

from recipegen.ai.coordinator import Coordinator
from recipegen.ai.providers.openai_provider import OpenAIProvider
from recipegen.config import Settings
from recipegen.core.database import dispose_engine
from recipegen.core.logging import _initialize_logging
from recipegen.services.storage_client import build_storage_client
from recipegen.storage.recipes_repo import PostgresRecipesRepository


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging, wire the coordinator and run progress cleanup."""
  from recipegen.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("recipegen.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except RuntimeError:
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  coordinator = getattr(app.state, "coordinator", None)
  if coordinator is None:
    coordinator = await _build_coordinator(settings, logger=logger)
    app.state.coordinator = coordinator

  cleanup_task: asyncio.Task[None] | None = None
  if coordinator is not None:
    cleanup_task = asyncio.create_task(_cleanup_loop(coordinator, settings, logger=logger), name="progress-cleanup")

  try:
    yield
  finally:
    if cleanup_task is not None:
      cleanup_task.cancel()
      with suppress(asyncio.CancelledError):
        await cleanup_task
    if coordinator is not None:
      await coordinator.shutdown()
    await dispose_engine()
    logger.info("Shutdown complete.")


async def _build_coordinator(settings: Settings, *, logger: logging.Logger) -> Coordinator | None:
  """Build the production coordinator, or None when a dependency is not configured."""
  if not settings.pg_dsn:
    logger.error("RECIPEGEN_PG_DSN is not set; batch endpoints are disabled.")
    return None
  logger.info("Using database %s", _redact_dsn(settings.pg_dsn))

  try:
    model = OpenAIProvider(settings).get_model()
  except ValueError as exc:
    logger.error("OpenAI provider unavailable; batch endpoints are disabled: %s", exc)
    return None

  storage_client = build_storage_client(settings)
  try:
    await storage_client.ensure_bucket()
    logger.info("Image bucket ensured: %s", storage_client.bucket_name)
  except Exception as exc:  # noqa: BLE001
    logger.warning("Failed to ensure image bucket at startup: %s", exc)

  return Coordinator.from_settings(settings, model=model, recipe_store=PostgresRecipesRepository(), blob_storage=storage_client)


async def _cleanup_loop(coordinator: Coordinator, settings: Settings, *, logger: logging.Logger) -> None:
  """Purge finished batches past the retention window."""
  retention_ms = settings.progress_retention_seconds * 1000
  while True:
    await asyncio.sleep(settings.progress_cleanup_interval_seconds)
    try:
      purged = await coordinator.cleanup_finished(retention_ms)
    except Exception:  # noqa: BLE001
      logger.warning("Progress cleanup failed", exc_info=True)
      continue
    if purged:
      logger.info("Purged %d finished batches", len(purged))


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
