"""Domain models for batch progress tracking."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal

BatchPhase = Literal["planning", "generating", "validating", "persisting", "imaging", "complete", "failed"]
AgentStatus = Literal["idle", "running", "completed", "failed"]

PHASE_ORDER: tuple[BatchPhase, ...] = ("planning", "generating", "validating", "persisting", "imaging", "complete")
TERMINAL_PHASES: frozenset[str] = frozenset({"complete", "failed"})


def _iso(timestamp: float | None) -> str | None:
  if timestamp is None:
    return None
  return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(timestamp))


@dataclass(frozen=True)
class ProgressError:
  """An error recorded against a batch, tagged with where it happened."""

  phase: str
  message: str
  item_ref: str | None = None
  chunk_index: int | None = None
  timestamp: float = field(default_factory=time.time)

  def to_dict(self) -> dict[str, Any]:
    return {"phase": self.phase, "message": self.message, "item_ref": self.item_ref, "chunk_index": self.chunk_index, "timestamp": _iso(self.timestamp)}


@dataclass(frozen=True)
class ProgressDelta:
  """Incremental change applied to a batch progress record."""

  completed: int = 0
  failed: int = 0
  completed_chunks: int = 0
  phase: BatchPhase | None = None
  agent_status: dict[str, AgentStatus] | None = None
  errors: tuple[ProgressError, ...] = ()

  @property
  def touches_counters(self) -> bool:
    return bool(self.completed or self.failed or self.completed_chunks)


@dataclass
class BatchProgress:
  """Progress of one generation batch."""

  batch_id: str
  total_items: int
  start_time: float
  total_chunks: int = 0
  completed_items: int = 0
  failed_items: int = 0
  completed_chunks: int = 0
  current_phase: BatchPhase = "planning"
  per_agent_status: dict[str, AgentStatus] = field(default_factory=dict)
  errors: list[ProgressError] = field(default_factory=list)
  estimated_completion_time: float | None = None
  updated_at: float | None = None
  finished_at: float | None = None

  @property
  def processed_items(self) -> int:
    return self.completed_items + self.failed_items

  @property
  def is_terminal(self) -> bool:
    return self.current_phase in TERMINAL_PHASES

  def percent_complete(self) -> float:
    if self.total_items == 0:
      return 100.0 if self.is_terminal else 0.0
    return round(self.processed_items * 100.0 / self.total_items, 2)

  def to_dict(self) -> dict[str, Any]:
    """Return a JSON-safe view of the record."""
    return {
      "batch_id": self.batch_id,
      "total_items": self.total_items,
      "completed_items": self.completed_items,
      "failed_items": self.failed_items,
      "total_chunks": self.total_chunks,
      "completed_chunks": self.completed_chunks,
      "current_phase": self.current_phase,
      "progress": self.percent_complete(),
      "per_agent_status": dict(self.per_agent_status),
      "start_time": _iso(self.start_time),
      "estimated_completion_time": _iso(self.estimated_completion_time),
      "finished_at": _iso(self.finished_at),
      "errors": [error.to_dict() for error in self.errors],
    }
