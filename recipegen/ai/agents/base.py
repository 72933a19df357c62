"""Base class for pipeline agents."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, Literal, TypeVar

from recipegen.ai.errors import AlreadyInitializedError, NotInitializedError
from recipegen.ai.retry import AgentMetrics, RetryPolicy, with_retry_and_metrics

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT")
LifecycleState = Literal["created", "initialized", "running", "stopped", "shutdown"]

logger = logging.getLogger(__name__)


class BaseAgent(ABC, Generic[InputT, OutputT]):
  """Lifecycle and metrics holder shared by every stage.

  `process` hands the stage's `run` coroutine to `with_retry_and_metrics`, so a
  retry always re-runs the whole stage input.
  """

  name: str

  def __init__(self, *, retry_policy: RetryPolicy | None = None) -> None:
    self._retry_policy = retry_policy or RetryPolicy()
    self._metrics = AgentMetrics()
    self._state: LifecycleState = "created"

  @property
  def state(self) -> LifecycleState:
    return self._state

  @property
  def retry_policy(self) -> RetryPolicy:
    return self._retry_policy

  def initialize(self) -> None:
    """Allocate stage state. Fails when called twice without reset()."""
    if self._state in {"initialized", "running", "stopped"}:
      raise AlreadyInitializedError(f"{self.name} is already initialized.")
    self._on_initialize()
    self._state = "initialized"
    logger.debug("Agent initialized: %s", self.name)

  def start(self) -> None:
    self._require_ready()
    self._state = "running"

  def stop(self) -> None:
    self._require_ready()
    self._state = "stopped"

  def reset(self) -> None:
    """Return to the uninitialized state. Metrics are kept."""
    self._on_reset()
    self._state = "created"

  async def shutdown(self) -> None:
    """Release resources; process() fails afterwards."""
    if self._state == "shutdown":
      return
    await self._on_shutdown()
    self._state = "shutdown"
    logger.debug("Agent shut down: %s", self.name)

  async def process(self, input_data: InputT) -> OutputT:
    """Run the stage with the agent's retry policy and metrics."""
    self._require_ready()
    return await with_retry_and_metrics(lambda: self.run(input_data), policy=self._retry_policy, operation_name=self.name, metrics=self._metrics)

  @abstractmethod
  async def run(self, input_data: InputT) -> OutputT:
    """Run the stage on input data once."""

  def get_metrics(self) -> dict[str, Any]:
    """Return a snapshot of the stage's counters."""
    snapshot = self._metrics.snapshot()
    snapshot["status"] = self._state
    return snapshot

  def _require_ready(self) -> None:
    if self._state not in {"initialized", "running", "stopped"}:
      raise NotInitializedError(f"{self.name} is not initialized (state={self._state}).")

  def _on_initialize(self) -> None:
    """Hook for subclasses that allocate state."""

  def _on_reset(self) -> None:
    """Hook for subclasses that clear state."""

  async def _on_shutdown(self) -> None:
    """Hook for subclasses that release resources."""
