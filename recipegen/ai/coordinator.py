"""Batch coordinator that drives recipes from concept to stored image."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from recipegen.ai.agents.base import BaseAgent
from recipegen.ai.agents.concept_planner import ConceptPlanner, validate_constraints
from recipegen.ai.agents.image_generator import ImageGenerator
from recipegen.ai.agents.image_storage import ImageStorageUploader, destination_key
from recipegen.ai.agents.nutrition_validator import NutritionValidator, ValidationTolerances
from recipegen.ai.agents.persistence import PersistenceOrchestrator
from recipegen.ai.agents.recipe_generator import RecipeGenerator
from recipegen.ai.errors import BatchNotFoundError, InvalidRequestError, ProgressUpdateRejected, StructuralError
from recipegen.ai.pipeline.contracts import ChunkDescriptor, Concept, ConceptPlan, GeneratedItem, GenerationChunk, GenerationRequest, PersistenceBatch, SavedRecord, ValidatedItem, ValidationBatch
from recipegen.ai.providers.base import AIModel
from recipegen.ai.retry import RetryPolicy
from recipegen.config import Settings
from recipegen.jobs.models import AgentStatus, BatchPhase, BatchProgress, ProgressDelta, ProgressError
from recipegen.jobs.progress import ProgressMonitor
from recipegen.services.storage_client import BlobStorage
from recipegen.storage.recipes_repo import RecipeStore
from recipegen.utils.ids import generate_batch_id

logger = logging.getLogger(__name__)


@dataclass
class _BatchRun:
  """In-process state of one running batch."""

  batch_id: str
  request: GenerationRequest
  cancelled: bool = False
  task: asyncio.Task[None] | None = None
  saved: list[SavedRecord] = field(default_factory=list)


class Coordinator:
  """Run generation batches in the background and expose their progress.

  Each batch is planned once, then processed chunk by chunk: generate,
  validate, persist, and finally create and upload one image per saved
  recipe. A failing chunk is recorded against the batch and the remaining
  chunks continue. Cancellation marks the batch failed immediately; work
  already in flight finishes but its results are discarded.
  """

  def __init__(
    self,
    *,
    planner: ConceptPlanner,
    generator: RecipeGenerator,
    validator: NutritionValidator,
    persistence: PersistenceOrchestrator,
    image_generator: ImageGenerator,
    uploader: ImageStorageUploader,
    monitor: ProgressMonitor | None = None,
    max_batch_items: int = 100,
    chunk_concurrency: int = 1,
    image_object_prefix: str = "recipes",
    placeholder_url: str = "",
  ) -> None:
    if chunk_concurrency <= 0:
      raise ValueError("chunk_concurrency must be a positive integer.")
    self._planner = planner
    self._generator = generator
    self._validator = validator
    self._persistence = persistence
    self._image_generator = image_generator
    self._uploader = uploader
    self._monitor = monitor or ProgressMonitor()
    self._max_batch_items = max_batch_items
    self._chunk_concurrency = chunk_concurrency
    self._image_object_prefix = image_object_prefix
    self._placeholder_url = placeholder_url
    # Image work shares the uploader's bound across every batch.
    self._image_slots = asyncio.Semaphore(uploader.concurrency)
    self._runs: dict[str, _BatchRun] = {}
    for agent in self.agents:
      if agent.state == "created":
        agent.initialize()

  @classmethod
  def from_settings(cls, settings: Settings, *, model: AIModel, recipe_store: RecipeStore, blob_storage: BlobStorage, monitor: ProgressMonitor | None = None) -> Coordinator:
    """Wire every stage from runtime settings."""
    policy = RetryPolicy.from_settings(settings)
    return cls(
      planner=ConceptPlanner(retry_policy=policy),
      generator=RecipeGenerator(model, timeout_seconds=settings.generation_timeout_seconds, retry_policy=policy),
      validator=NutritionValidator(tolerances=ValidationTolerances.from_settings(settings), retry_policy=policy),
      persistence=PersistenceOrchestrator(recipe_store, batch_size=settings.persistence_batch_size, transactional=settings.persistence_transactional, retry_policy=policy),
      image_generator=ImageGenerator(
        model,
        timeout_seconds=settings.image_timeout_seconds,
        similarity_threshold=settings.image_similarity_threshold,
        uniqueness_retries=settings.image_uniqueness_retries,
        retry_policy=policy,
      ),
      uploader=ImageStorageUploader(
        blob_storage,
        placeholder_url=settings.placeholder_image_url,
        concurrency=settings.upload_concurrency,
        timeout_seconds=settings.upload_timeout_seconds,
        convert_images=settings.convert_images_to_webp,
      ),
      monitor=monitor,
      max_batch_items=settings.max_batch_items,
      chunk_concurrency=settings.chunk_concurrency,
      image_object_prefix=settings.image_object_prefix,
      placeholder_url=settings.placeholder_image_url,
    )

  @property
  def agents(self) -> tuple[BaseAgent[Any, Any], ...]:
    return (self._planner, self._generator, self._validator, self._persistence, self._image_generator, self._uploader)

  @property
  def monitor(self) -> ProgressMonitor:
    return self._monitor

  async def start_batch(self, request: GenerationRequest) -> str:
    """Validate the request, initialize progress and start the batch in the background."""
    self._validate_request(request)
    batch_id = generate_batch_id()
    total_chunks = math.ceil(request.total_count / request.chunk_size)
    # Progress must exist before any stage can report against it.
    await self._monitor.init(batch_id, request.total_count, total_chunks=total_chunks)
    run = _BatchRun(batch_id=batch_id, request=request)
    self._runs[batch_id] = run
    run.task = asyncio.create_task(self._run_batch(run), name=f"batch-{batch_id}")
    logger.info("Batch started batch_id=%s total_count=%d chunk_size=%d", batch_id, request.total_count, request.chunk_size)
    return batch_id

  async def get_progress(self, batch_id: str) -> BatchProgress:
    return await self._monitor.get(batch_id)

  async def cancel(self, batch_id: str) -> bool:
    """Cancel a running batch. Returns False for unknown or finished batches."""
    run = self._runs.get(batch_id)
    if run is None or run.cancelled:
      return False
    # Set before the transition; stages check it at every checkpoint.
    run.cancelled = True
    try:
      snapshot = await self._monitor.cancel(batch_id, "Batch cancelled by request")
    except (BatchNotFoundError, ProgressUpdateRejected):
      snapshot = None
    if snapshot is None:
      # The batch finished before the cancel took the lock.
      run.cancelled = False
      return False
    logger.info("Batch cancelled batch_id=%s", batch_id)
    return True

  def get_metrics(self) -> dict[str, Any]:
    """Aggregate metrics from every agent."""
    metrics: dict[str, Any] = {agent.name: agent.get_metrics() for agent in self.agents}
    metrics["active_batches"] = sum(1 for run in self._runs.values() if run.task is not None and not run.task.done())
    return metrics

  def saved_records(self, batch_id: str) -> list[SavedRecord]:
    """Return the records saved so far for a batch, with linked image URLs."""
    run = self._runs.get(batch_id)
    if run is None:
      raise BatchNotFoundError(batch_id)
    return list(run.saved)

  async def wait(self, batch_id: str) -> BatchProgress:
    """Wait for a batch task to finish and return its final progress."""
    run = self._runs.get(batch_id)
    if run is None:
      raise BatchNotFoundError(batch_id)
    if run.task is not None:
      await asyncio.shield(run.task)
    return await self._monitor.get(batch_id)

  def stream_progress(self, batch_id: str) -> AsyncIterator[BatchProgress]:
    return self._monitor.stream(batch_id)

  async def cleanup_finished(self, older_than_ms: int) -> list[str]:
    """Purge finished batches from progress tracking and local state."""
    purged = await self._monitor.cleanup(older_than_ms)
    for batch_id in purged:
      self._runs.pop(batch_id, None)
    return purged

  async def shutdown(self) -> None:
    """Cancel running batch tasks and shut down every agent."""
    tasks = [run.task for run in self._runs.values() if run.task is not None and not run.task.done()]
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)
    for agent in self.agents:
      await agent.shutdown()
    logger.info("Coordinator shut down; cancelled %d running batches", len(tasks))

  def _validate_request(self, request: GenerationRequest) -> None:
    if request.total_count < 1 or request.total_count > self._max_batch_items:
      raise InvalidRequestError(f"total_count must be between 1 and {self._max_batch_items}.")
    validate_constraints(request.options.constraints)

  async def _run_batch(self, run: _BatchRun) -> None:
    batch_id = run.batch_id
    try:
      await self._update(run, ProgressDelta(agent_status={self._planner.name: "running"}))
      plan = await self._planner.process(run.request)
      await self._update(run, ProgressDelta(agent_status={self._planner.name: "completed"}))

      chunk_slots = asyncio.Semaphore(self._chunk_concurrency)

      async def _guarded(chunk: ChunkDescriptor) -> None:
        async with chunk_slots:
          if run.cancelled:
            return
          await self._process_chunk(run, plan, chunk)

      await asyncio.gather(*(_guarded(chunk) for chunk in plan.chunk_strategy))
      await self._finish(run)
    except asyncio.CancelledError:
      await self._fail_quietly(run, "Batch task cancelled during shutdown")
      raise
    except Exception as exc:  # noqa: BLE001
      logger.error("Batch failed batch_id=%s error=%s", batch_id, exc, exc_info=True)
      await self._fail_quietly(run, f"Batch failed: {exc}")
    finally:
      self._image_generator.clear_hash_cache(batch_id)

  async def _process_chunk(self, run: _BatchRun, plan: ConceptPlan, chunk: ChunkDescriptor) -> None:
    concepts = plan.concepts_for_chunk(chunk)
    features = run.request.options.features
    chunk_index = chunk.chunk_index

    await self._enter_stage(run, "generating", self._generator.name)
    try:
      items = await self._generator.process(GenerationChunk(batch_id=run.batch_id, chunk_index=chunk_index, concepts=concepts, options=run.request.options))
    except Exception as exc:  # noqa: BLE001
      await self._fail_chunk(run, chunk, "generating", self._generator.name, len(concepts), exc)
      return
    await self._update(run, ProgressDelta(agent_status={self._generator.name: "completed"}))
    if run.cancelled:
      return

    await self._enter_stage(run, "validating", self._validator.name)
    try:
      if features.enable_validation:
        validated = await self._validator.process(ValidationBatch(batch_id=run.batch_id, items=items, concepts=concepts, chunk_index=chunk_index))
      else:
        validated = _pass_through(items, concepts, run.batch_id, chunk_index)
    except Exception as exc:  # noqa: BLE001
      await self._fail_chunk(run, chunk, "validating", self._validator.name, len(concepts), exc)
      return
    await self._update(run, ProgressDelta(agent_status={self._validator.name: "completed"}))

    rejected = [item for item in validated if not item.validation_passed]
    passing = [item for item in validated if item.validation_passed]
    if rejected:
      errors = tuple(self._error("validating", _rejection_message(item), item_ref=item.name, chunk_index=chunk_index) for item in rejected)
      await self._update(run, ProgressDelta(failed=len(rejected), errors=errors))
    if run.cancelled:
      return
    if not passing:
      logger.info("No validated recipes to save batch_id=%s chunk_index=%d", run.batch_id, chunk_index)
      await self._update(run, ProgressDelta(completed_chunks=1))
      return

    await self._enter_stage(run, "persisting", self._persistence.name)
    try:
      report = await self._persistence.process(PersistenceBatch(batch_id=run.batch_id, items=passing, chunk_index=chunk_index))
    except Exception as exc:  # noqa: BLE001
      await self._fail_chunk(run, chunk, "persisting", self._persistence.name, len(passing), exc)
      return
    if report.failures:
      errors = tuple(self._error("persisting", f"Save failed: {failure.reason}", item_ref=failure.name, chunk_index=chunk_index) for failure in report.failures)
      await self._update(run, ProgressDelta(failed=len(report.failures), errors=errors))
    await self._update(run, ProgressDelta(agent_status={self._persistence.name: "completed" if not report.failures else "failed"}))
    if run.cancelled:
      return

    if not features.enable_image_generation or not report.saved:
      run.saved.extend(report.saved)
      await self._update(run, ProgressDelta(completed=len(report.saved), completed_chunks=1))
      return

    await self._enter_stage(run, "imaging", self._image_generator.name)
    await asyncio.gather(*(self._process_image(run, record, chunk_index) for record in report.saved))
    await self._update(run, ProgressDelta(completed_chunks=1, agent_status={self._image_generator.name: "completed", self._uploader.name: "completed"}))

  async def _process_image(self, run: _BatchRun, record: SavedRecord, chunk_index: int) -> None:
    features = run.request.options.features
    errors: list[ProgressError] = []
    async with self._image_slots:
      if run.cancelled:
        return
      try:
        asset = await self._image_generator.generate(record, run.batch_id)
      except Exception as exc:  # noqa: BLE001
        logger.warning("Image generation failed batch_id=%s record_id=%s error=%s", run.batch_id, record.id, exc)
        errors.append(self._error("imaging", f"Image generation failed, using placeholder: {exc}", item_ref=record.id, chunk_index=chunk_index))
        asset = ImageGenerator.placeholder(record, self._placeholder_url)
      if run.cancelled:
        return

      if features.enable_upload and not asset.is_placeholder:
        result = await self._uploader.upload(asset, destination_key(self._image_object_prefix, run.batch_id, record.id))
        if not result.was_uploaded:
          errors.append(self._error("imaging", f"Image upload failed, using fallback URL: {result.error}", item_ref=record.id, chunk_index=chunk_index))
        image_url = result.uploaded_url
      else:
        image_url = asset.source_url or self._placeholder_url
      if run.cancelled:
        return

    try:
      await self._persistence.link_image(record.id, image_url)
    except Exception as exc:  # noqa: BLE001
      logger.error("Linking image failed batch_id=%s record_id=%s error=%s", run.batch_id, record.id, exc)
      errors.append(self._error("imaging", f"Linking image failed: {exc}", item_ref=record.id, chunk_index=chunk_index))
    else:
      record = record.model_copy(update={"image_url": image_url})

    run.saved.append(record)
    await self._update(run, ProgressDelta(completed=1, errors=tuple(errors)))

  async def _finish(self, run: _BatchRun) -> None:
    if run.cancelled:
      return
    progress = await self._monitor.finish(run.batch_id, failure_message="All items failed")
    if progress is None:
      return
    if progress.current_phase == "failed":
      logger.warning("Batch failed batch_id=%s failed_items=%d", run.batch_id, progress.failed_items)
      return
    logger.info("Batch complete batch_id=%s completed=%d failed=%d", run.batch_id, progress.completed_items, progress.failed_items)

  async def _enter_stage(self, run: _BatchRun, phase: BatchPhase, agent_name: str) -> None:
    await self._update(run, ProgressDelta(phase=phase, agent_status={agent_name: "running"}))

  async def _fail_chunk(self, run: _BatchRun, chunk: ChunkDescriptor, phase: BatchPhase, agent_name: str, item_count: int, exc: Exception) -> None:
    logger.error("Chunk failed batch_id=%s chunk_index=%d phase=%s error=%s", run.batch_id, chunk.chunk_index, phase, exc)
    error = self._error(phase, f"Chunk {chunk.chunk_index} failed: {exc}", chunk_index=chunk.chunk_index)
    status: dict[str, AgentStatus] = {agent_name: "failed"}
    await self._update(run, ProgressDelta(failed=item_count, completed_chunks=1, agent_status=status, errors=(error,)))

  async def _update(self, run: _BatchRun, delta: ProgressDelta) -> BatchProgress | None:
    """Apply a progress delta; rejected updates after cancellation are dropped."""
    try:
      return await self._monitor.update(run.batch_id, delta)
    except (ProgressUpdateRejected, BatchNotFoundError) as exc:
      if run.cancelled:
        logger.debug("Dropping progress update for cancelled batch_id=%s: %s", run.batch_id, exc)
        return None
      raise

  async def _fail_quietly(self, run: _BatchRun, message: str) -> None:
    try:
      await self._monitor.fail(run.batch_id, message)
    except (ProgressUpdateRejected, BatchNotFoundError) as exc:
      logger.warning("Could not mark batch failed batch_id=%s: %s", run.batch_id, exc)

  def _error(self, phase: str, message: str, *, item_ref: str | None = None, chunk_index: int | None = None) -> ProgressError:
    return ProgressError(phase=phase, message=message, item_ref=item_ref, chunk_index=chunk_index)


def _pass_through(items: list[GeneratedItem], concepts: list[Concept], batch_id: str, chunk_index: int) -> list[ValidatedItem]:
  """Accept generated items unchecked when validation is disabled for a batch."""
  if len(items) != len(concepts):
    raise StructuralError("Generated items and concepts differ in length", batch_id=batch_id, chunk_index=chunk_index, expected=len(concepts), actual=len(items))
  validated: list[ValidatedItem] = []
  for item, concept in zip(items, concepts, strict=True):
    if item.concept_ref != concept.concept_id:
      raise StructuralError("Generated item does not belong to its concept", batch_id=batch_id, chunk_index=chunk_index, expected=concept.concept_id, actual=item.concept_ref)
    validated.append(ValidatedItem(concept_id=concept.concept_id, item=item, validation_passed=True))
  return validated


def _rejection_message(item: ValidatedItem) -> str:
  critical = [issue.message for issue in item.issues if issue.severity == "critical"]
  return "Validation failed: " + ("; ".join(critical) if critical else "unknown reason")
