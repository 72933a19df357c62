"""Error taxonomy shared by the generation pipeline stages."""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
  """Base error for pipeline failures."""


class InvalidRequestError(PipelineError):
  """Raised when a generation request is malformed."""


class TransientProviderError(PipelineError):
  """Raised for timeouts and rate limits from remote providers; retryable."""

  def __init__(self, message: str, *, provider: str | None = None) -> None:
    super().__init__(message)
    self.provider = provider


class ValidationFailure(PipelineError):
  """Raised when an item fails content checks. Never retried."""


class PersistenceFailure(PipelineError):
  """Raised when a storage batch cannot be written."""

  def __init__(self, message: str, *, batch_index: int | None = None, item_refs: list[str] | None = None) -> None:
    super().__init__(message)
    self.batch_index = batch_index
    self.item_refs = list(item_refs or [])


class StructuralError(PipelineError):
  """Raised when inputs exchanged between stages have mismatched shapes."""

  def __init__(self, message: str, *, batch_id: str | None = None, chunk_index: int | None = None, expected: Any = None, actual: Any = None) -> None:
    detail = message
    if expected is not None or actual is not None:
      detail = f"{message} (expected={expected!r}, actual={actual!r})"
    if batch_id is not None:
      detail = f"{detail} [batch_id={batch_id}, chunk_index={chunk_index}]"
    super().__init__(detail)
    self.batch_id = batch_id
    self.chunk_index = chunk_index
    self.expected = expected
    self.actual = actual


class AgentStateError(PipelineError):
  """Base error for lifecycle misuse."""


class AlreadyInitializedError(AgentStateError):
  """Raised when initialize() is called twice without reset()."""


class NotInitializedError(AgentStateError):
  """Raised when process() is called before initialize() or after shutdown()."""


class BatchNotFoundError(PipelineError):
  """Raised when a batch id has no progress record."""

  def __init__(self, batch_id: str) -> None:
    super().__init__(f"Batch {batch_id} not found.")
    self.batch_id = batch_id


class ProgressUpdateRejected(PipelineError):
  """Raised when a progress update cannot be applied."""


class PhaseTransitionError(ProgressUpdateRejected):
  """Raised when a batch phase would leave a terminal state."""
