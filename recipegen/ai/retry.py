"""Retry with exponential backoff and per-stage metrics.

`max_retries` counts retries only: an operation runs at most `max_retries + 1`
times (the initial attempt plus the retries).
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
import openai
from sqlalchemy.exc import DBAPIError

from recipegen.ai.errors import PipelineError, TransientProviderError
from recipegen.config import Settings
from recipegen.utils.db_retry import classify_db_failure

T = TypeVar("T")
logger = logging.getLogger(__name__)

_RETRYABLE_OPENAI_ERRORS = (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)


@dataclass(frozen=True)
class RetryPolicy:
  """Retry budget and backoff curve for one stage."""

  max_retries: int = 2
  base_delay_ms: int = 500
  max_delay_ms: int = 8000
  jitter: bool = True

  def __post_init__(self) -> None:
    if self.max_retries < 0:
      raise ValueError("max_retries must be zero or a positive integer.")
    if self.base_delay_ms < 0 or self.max_delay_ms < 0:
      raise ValueError("Retry delays must not be negative.")

  @property
  def max_attempts(self) -> int:
    """Return the total attempt budget including the initial try."""
    return self.max_retries + 1

  def backoff_ms(self, retry_number: int) -> float:
    """Return the delay before retry `retry_number` (1-based)."""
    delay = min(self.base_delay_ms * (2 ** (retry_number - 1)), self.max_delay_ms)
    if self.jitter and delay > 0:
      # Spread retries by +/-25% so concurrent items do not retry in lockstep.
      spread = delay * 0.25
      delay += random.uniform(-spread, spread)
    return max(delay, 0.0)

  @classmethod
  def from_settings(cls, settings: Settings) -> RetryPolicy:
    return cls(max_retries=settings.agent_max_retries, base_delay_ms=settings.retry_base_delay_ms, max_delay_ms=settings.retry_max_delay_ms, jitter=settings.retry_jitter)


class AgentMetrics:
  """Cumulative counters for one stage. Snapshots never reset them."""

  def __init__(self) -> None:
    self.operation_count = 0
    self.success_count = 0
    self.error_count = 0
    self.attempt_count = 0
    self.retry_count = 0
    self._total_duration_ms = 0.0

  def record_attempt(self, attempt: int) -> None:
    self.attempt_count += 1
    if attempt > 1:
      self.retry_count += 1

  def record_success(self, duration_ms: float) -> None:
    self.operation_count += 1
    self.success_count += 1
    self._total_duration_ms += duration_ms

  def record_failure(self, duration_ms: float) -> None:
    self.operation_count += 1
    self.error_count += 1
    self._total_duration_ms += duration_ms

  @property
  def average_duration_ms(self) -> float:
    if self.operation_count == 0:
      return 0.0
    return self._total_duration_ms / self.operation_count

  @property
  def success_rate(self) -> float:
    if self.operation_count == 0:
      return 0.0
    return self.success_count / self.operation_count

  def snapshot(self) -> dict[str, Any]:
    """Return a read-only copy of the counters."""
    return {
      "operation_count": self.operation_count,
      "success_count": self.success_count,
      "error_count": self.error_count,
      "attempt_count": self.attempt_count,
      "retry_count": self.retry_count,
      "average_duration_ms": round(self.average_duration_ms, 3),
      "success_rate": round(self.success_rate, 4),
    }


def is_retryable(exc: BaseException) -> bool:
  """Return True for failures that may succeed when replayed."""
  if isinstance(exc, TransientProviderError):
    return True
  if isinstance(exc, PipelineError):
    return False
  if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
    return True
  if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
    return True
  if isinstance(exc, _RETRYABLE_OPENAI_ERRORS):
    return True
  if isinstance(exc, DBAPIError):
    return classify_db_failure(exc).retryable
  return False


async def with_retry_and_metrics(
  operation: Callable[[], Awaitable[T]],
  *,
  policy: RetryPolicy,
  operation_name: str,
  metrics: AgentMetrics | None = None,
  retryable: Callable[[BaseException], bool] = is_retryable,
  sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
  """
  Run an async operation with retry, backoff and metrics.

  Args:
    operation: Zero-argument coroutine factory. Called once per attempt.
    policy: Retry budget and backoff curve.
    operation_name: Label used in log lines.
    metrics: Counters to update; one operation is recorded per call.
    retryable: Predicate deciding whether a failure consumes retry budget.
    sleep: Awaitable used for backoff delays (seconds).

  Raises:
    The last exception when it is not retryable or the budget is exhausted.
  """
  started = time.monotonic()
  attempt = 0

  while True:
    attempt += 1
    if metrics is not None:
      metrics.record_attempt(attempt)

    try:
      result = await operation()
    except Exception as exc:
      can_retry = retryable(exc)
      logger.warning("Operation failed: operation=%s, attempt=%d/%d, retryable=%s, error=%s", operation_name, attempt, policy.max_attempts, can_retry, exc)

      if not can_retry or attempt >= policy.max_attempts:
        if metrics is not None:
          metrics.record_failure((time.monotonic() - started) * 1000)
        if can_retry:
          logger.error("Operation failed after %d attempts: operation=%s - giving up", attempt, operation_name)
        raise

      backoff_ms = policy.backoff_ms(attempt)
      logger.info("Retrying operation after backoff: operation=%s, attempt=%d/%d, backoff_ms=%.1f", operation_name, attempt, policy.max_attempts, backoff_ms)
      await sleep(backoff_ms / 1000.0)
      continue

    if attempt > 1:
      logger.info("Operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, policy.max_attempts)
    if metrics is not None:
      metrics.record_success((time.monotonic() - started) * 1000)
    return result
