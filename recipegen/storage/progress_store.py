"""Storage interface for batch progress records."""

from __future__ import annotations

from typing import Protocol

from recipegen.jobs.models import BatchProgress


class ProgressStore(Protocol):
  """Repository contract for batch progress persistence."""

  async def get(self, batch_id: str) -> BatchProgress | None:
    """Fetch a progress record by batch id."""

  async def set(self, record: BatchProgress) -> None:
    """Insert or replace a progress record."""

  async def delete(self, batch_id: str) -> bool:
    """Remove a record. Returns True when a record was removed."""

  async def list_expired(self, finished_before: float) -> list[str]:
    """Return ids of terminal batches that finished before the given epoch time."""


class InMemoryProgressStore:
  """Process-local progress store."""

  def __init__(self) -> None:
    self._records: dict[str, BatchProgress] = {}

  async def get(self, batch_id: str) -> BatchProgress | None:
    return self._records.get(batch_id)

  async def set(self, record: BatchProgress) -> None:
    self._records[record.batch_id] = record

  async def delete(self, batch_id: str) -> bool:
    return self._records.pop(batch_id, None) is not None

  async def list_expired(self, finished_before: float) -> list[str]:
    return [batch_id for batch_id, record in self._records.items() if record.is_terminal and record.finished_at is not None and record.finished_at <= finished_before]

  def __len__(self) -> int:
    return len(self._records)
