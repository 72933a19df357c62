"""Batch progress tracking with per-batch serialization."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import AsyncIterator, Callable

from recipegen.ai.errors import BatchNotFoundError, PhaseTransitionError, ProgressUpdateRejected
from recipegen.jobs.models import PHASE_ORDER, BatchPhase, BatchProgress, ProgressDelta, ProgressError
from recipegen.storage.progress_store import InMemoryProgressStore, ProgressStore

logger = logging.getLogger(__name__)

_STREAM_CLOSED = None


class ProgressMonitor:
  """Maintain one progress record per batch.

  Every mutation of a batch runs under that batch's lock, so concurrent item
  completions never lose updates and different batches never contend. Cleanup
  takes the same lock and marks the batch as retiring; later updates are
  rejected instead of being written to a record that is about to disappear.
  """

  def __init__(self, store: ProgressStore | None = None, *, clock: Callable[[], float] = time.time) -> None:
    self._store: ProgressStore = store if store is not None else InMemoryProgressStore()
    self._clock = clock
    self._locks: dict[str, asyncio.Lock] = {}
    self._retiring: set[str] = set()
    self._subscribers: dict[str, set[asyncio.Queue[BatchProgress | None]]] = {}

  def _lock_for(self, batch_id: str) -> asyncio.Lock:
    lock = self._locks.get(batch_id)
    if lock is None:
      lock = asyncio.Lock()
      self._locks[batch_id] = lock
    return lock

  async def init(self, batch_id: str, total_items: int, *, total_chunks: int = 0) -> BatchProgress:
    """Create the progress record for a new batch."""
    if total_items < 0:
      raise ValueError("total_items must not be negative.")

    async with self._lock_for(batch_id):
      if await self._store.get(batch_id) is not None:
        raise ProgressUpdateRejected(f"Batch {batch_id} is already initialized.")
      now = self._clock()
      record = BatchProgress(batch_id=batch_id, total_items=total_items, total_chunks=total_chunks, start_time=now, updated_at=now)
      await self._store.set(record)
      logger.info("Progress initialized batch_id=%s total_items=%d total_chunks=%d", batch_id, total_items, total_chunks)
      return self._publish(record)

  async def get(self, batch_id: str) -> BatchProgress:
    """Return a snapshot of a batch's progress."""
    record = await self._store.get(batch_id)
    if record is None:
      raise BatchNotFoundError(batch_id)
    return copy.deepcopy(record)

  async def update(self, batch_id: str, delta: ProgressDelta) -> BatchProgress:
    """Apply a delta atomically and return the new snapshot."""
    self._reject_if_retiring(batch_id)
    async with self._lock_for(batch_id):
      self._reject_if_retiring(batch_id)
      record = await self._locked_record(batch_id)
      self._apply(record, delta)
      await self._store.set(record)
      return self._publish(record)

  async def set_phase(self, batch_id: str, phase: BatchPhase) -> BatchProgress:
    return await self.update(batch_id, ProgressDelta(phase=phase))

  async def record_error(self, batch_id: str, *, phase: str, message: str, item_ref: str | None = None, chunk_index: int | None = None) -> BatchProgress:
    error = ProgressError(phase=phase, message=message, item_ref=item_ref, chunk_index=chunk_index, timestamp=self._clock())
    return await self.update(batch_id, ProgressDelta(errors=(error,)))

  async def complete(self, batch_id: str) -> BatchProgress:
    """Move a batch to the terminal complete phase."""
    return await self.update(batch_id, ProgressDelta(phase="complete"))

  async def fail(self, batch_id: str, message: str, *, item_ref: str | None = None) -> BatchProgress:
    """Record an error and move the batch to failed unless it already finished."""
    self._reject_if_retiring(batch_id)
    async with self._lock_for(batch_id):
      self._reject_if_retiring(batch_id)
      record = await self._locked_record(batch_id)
      error = ProgressError(phase=record.current_phase, message=message, item_ref=item_ref, timestamp=self._clock())
      # A finished batch keeps its phase; the error is still appended.
      phase: BatchPhase | None = None if record.is_terminal else "failed"
      self._apply(record, ProgressDelta(phase=phase, errors=(error,)))
      await self._store.set(record)
      return self._publish(record)

  async def cancel(self, batch_id: str, message: str) -> BatchProgress | None:
    """Fail an active batch with `message`.

    The terminal check and the transition happen under the batch lock, so a
    batch that finishes concurrently is either cancelled or left untouched,
    never both. Returns None when the batch had already finished.
    """
    self._reject_if_retiring(batch_id)
    async with self._lock_for(batch_id):
      self._reject_if_retiring(batch_id)
      record = await self._locked_record(batch_id)
      if record.is_terminal:
        return None
      error = ProgressError(phase=record.current_phase, message=message, timestamp=self._clock())
      self._apply(record, ProgressDelta(phase="failed", errors=(error,)))
      await self._store.set(record)
      return self._publish(record)

  async def finish(self, batch_id: str, *, failure_message: str = "All items failed") -> BatchProgress | None:
    """Close out an active batch: complete if any item succeeded, failed otherwise.

    Returns None when the batch already reached a terminal phase.
    """
    self._reject_if_retiring(batch_id)
    async with self._lock_for(batch_id):
      self._reject_if_retiring(batch_id)
      record = await self._locked_record(batch_id)
      if record.is_terminal:
        return None
      if record.total_items > 0 and record.completed_items == 0:
        error = ProgressError(phase=record.current_phase, message=failure_message, timestamp=self._clock())
        delta = ProgressDelta(phase="failed", errors=(error,))
      else:
        delta = ProgressDelta(phase="complete")
      self._apply(record, delta)
      await self._store.set(record)
      return self._publish(record)

  async def cleanup(self, older_than_ms: int) -> list[str]:
    """Purge terminal batches that finished more than `older_than_ms` ago."""
    cutoff = self._clock() - older_than_ms / 1000.0
    purged: list[str] = []
    for batch_id in await self._store.list_expired(cutoff):
      lock = self._lock_for(batch_id)
      async with lock:
        record = await self._store.get(batch_id)
        # Re-check under the lock; the listing may be stale.
        if record is None or not record.is_terminal or record.finished_at is None or record.finished_at > cutoff:
          continue
        self._retiring.add(batch_id)
        try:
          await self._store.delete(batch_id)
          self._close_subscribers(batch_id)
          purged.append(batch_id)
        finally:
          self._retiring.discard(batch_id)
          if self._locks.get(batch_id) is lock:
            del self._locks[batch_id]
    if purged:
      logger.info("Progress cleanup purged %d batches", len(purged))
    return purged

  async def stream(self, batch_id: str) -> AsyncIterator[BatchProgress]:
    """Yield snapshots on every update until the batch reaches a terminal phase."""
    queue: asyncio.Queue[BatchProgress | None] = asyncio.Queue()
    self._subscribers.setdefault(batch_id, set()).add(queue)
    try:
      current = await self.get(batch_id)
      yield current
      if current.is_terminal:
        return
      while True:
        snapshot = await queue.get()
        if snapshot is _STREAM_CLOSED:
          return
        yield snapshot
        if snapshot.is_terminal:
          return
    finally:
      subscribers = self._subscribers.get(batch_id)
      if subscribers is not None:
        subscribers.discard(queue)
        if not subscribers:
          self._subscribers.pop(batch_id, None)

  async def _locked_record(self, batch_id: str) -> BatchProgress:
    record = await self._store.get(batch_id)
    if record is None:
      raise BatchNotFoundError(batch_id)
    return record

  def _reject_if_retiring(self, batch_id: str) -> None:
    if batch_id in self._retiring:
      raise ProgressUpdateRejected(f"Batch {batch_id} is being cleaned up; update rejected.")

  def _apply(self, record: BatchProgress, delta: ProgressDelta) -> None:
    if delta.completed < 0 or delta.failed < 0 or delta.completed_chunks < 0:
      raise ProgressUpdateRejected("Progress counters cannot decrease.")

    if delta.touches_counters and record.is_terminal:
      raise ProgressUpdateRejected(f"Batch {record.batch_id} is {record.current_phase}; counter updates rejected.")

    processed = record.processed_items + delta.completed + delta.failed
    if processed > record.total_items:
      raise ProgressUpdateRejected(f"Batch {record.batch_id} would exceed total_items ({processed} > {record.total_items}).")

    now = self._clock()
    if delta.phase is not None:
      self._transition(record, delta.phase, now)

    record.completed_items += delta.completed
    record.failed_items += delta.failed
    record.completed_chunks += delta.completed_chunks
    if delta.agent_status:
      record.per_agent_status.update(delta.agent_status)
    # Errors are appended in arrival order, never replaced.
    record.errors.extend(delta.errors)
    record.updated_at = now
    record.estimated_completion_time = self._estimate_completion(record, now)

  def _transition(self, record: BatchProgress, target: BatchPhase, now: float) -> None:
    current = record.current_phase
    if target == current:
      return
    if record.is_terminal:
      raise PhaseTransitionError(f"Batch {record.batch_id} is {current}; cannot move to {target}.")
    if target == "failed":
      record.current_phase = "failed"
      record.finished_at = now
      return
    # Chunks interleave stages, so an earlier phase request leaves the batch phase where it is.
    if PHASE_ORDER.index(target) < PHASE_ORDER.index(current):
      return
    record.current_phase = target
    if target == "complete":
      record.finished_at = now

  def _estimate_completion(self, record: BatchProgress, now: float) -> float | None:
    if record.is_terminal:
      return record.finished_at
    processed = record.processed_items
    if processed == 0:
      return None
    # Linear extrapolation from the running average time per processed item.
    per_item = (now - record.start_time) / processed
    return now + per_item * (record.total_items - processed)

  def _publish(self, record: BatchProgress) -> BatchProgress:
    snapshot = copy.deepcopy(record)
    for queue in self._subscribers.get(record.batch_id, ()):
      queue.put_nowait(snapshot)
    return snapshot

  def _close_subscribers(self, batch_id: str) -> None:
    for queue in self._subscribers.pop(batch_id, set()):
      queue.put_nowait(_STREAM_CLOSED)
