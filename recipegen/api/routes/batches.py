import asyncio
import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, status
from sse_starlette.sse import EventSourceResponse

from recipegen.ai.coordinator import Coordinator
from recipegen.api.deps import get_coordinator
from recipegen.api.models import BatchCancelResponse, BatchCreateResponse, BatchStatusResponse, CreateBatchRequest, MetricsResponse
from recipegen.config import Settings, get_settings

router = APIRouter()
logger = logging.getLogger("recipegen.api.routes.batches")

SSE_PING_SECONDS = 15


@router.post("", response_model=BatchCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_batch(  # noqa: B008
  payload: CreateBatchRequest,
  settings: Settings = Depends(get_settings),  # noqa: B008
  coordinator: Coordinator = Depends(get_coordinator),  # noqa: B008
) -> BatchCreateResponse:
  """Start a recipe generation batch; progress is polled or streamed."""
  request = payload.to_generation_request(settings.default_chunk_size)
  batch_id = await coordinator.start_batch(request)
  return BatchCreateResponse(batch_id=batch_id, total_items=request.total_count)


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(coordinator: Coordinator = Depends(get_coordinator)) -> MetricsResponse:  # noqa: B008
  """Return aggregate agent metrics."""
  metrics = coordinator.get_metrics()
  active_batches = metrics.pop("active_batches", 0)
  return MetricsResponse(agents=metrics, active_batches=active_batches)


@router.get("/{batch_id}", response_model=BatchStatusResponse)
async def get_batch(batch_id: str, coordinator: Coordinator = Depends(get_coordinator)) -> BatchStatusResponse:  # noqa: B008
  """Fetch the progress of a batch."""
  progress = await coordinator.get_progress(batch_id)
  return BatchStatusResponse.from_progress(progress)


@router.post("/{batch_id}/cancel", response_model=BatchCancelResponse)
async def cancel_batch(batch_id: str, coordinator: Coordinator = Depends(get_coordinator)) -> BatchCancelResponse:  # noqa: B008
  """Request cancellation of a running batch."""
  # Unknown ids are a 404, finished batches report cancelled=false.
  await coordinator.get_progress(batch_id)
  cancelled = await coordinator.cancel(batch_id)
  return BatchCancelResponse(batch_id=batch_id, cancelled=cancelled)


@router.get("/{batch_id}/events")
async def stream_batch(batch_id: str, coordinator: Coordinator = Depends(get_coordinator)) -> EventSourceResponse:  # noqa: B008
  """Stream progress snapshots as server-sent events until the batch finishes."""
  await coordinator.get_progress(batch_id)

  async def _events() -> AsyncIterator[dict[str, str]]:
    try:
      async for snapshot in coordinator.stream_progress(batch_id):
        yield {"event": "progress", "data": json.dumps(snapshot.to_dict())}
    except asyncio.CancelledError:
      # Client went away; the batch keeps running in the background.
      logger.info("Progress stream client disconnected batch_id=%s", batch_id)
      raise
    logger.debug("Progress stream closed batch_id=%s", batch_id)

  return EventSourceResponse(_events(), ping=SSE_PING_SECONDS)
