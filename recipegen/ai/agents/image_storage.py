"""Image uploader bounded by a shared concurrency limit."""

from __future__ import annotations

import asyncio
import io
import logging
import time
from typing import Any

from PIL import Image

from recipegen.ai.agents.base import BaseAgent
from recipegen.ai.pipeline.contracts import ImageAsset, RecordId, UploadResult
from recipegen.services.storage_client import BlobStorage

logger = logging.getLogger(__name__)


def destination_key(prefix: str, batch_id: str, record_id: RecordId, extension: str = "webp") -> str:
  """Return the object name for a record's image."""
  return f"{prefix}/{batch_id}/{record_id}.{extension}"


def convert_to_webp(image_bytes: bytes) -> bytes:
  """Convert provider image bytes into a WebP payload."""
  with Image.open(io.BytesIO(image_bytes)) as image:
    # Normalize palette and grayscale modes so the encoder accepts them.
    converted = image.convert("RGBA") if image.mode not in {"RGB", "RGBA"} else image
    output = io.BytesIO()
    converted.save(output, format="WEBP", quality=88, method=6)
    return output.getvalue()


class ImageStorageUploader(BaseAgent[tuple[ImageAsset, str], UploadResult]):
  """Upload generated images to blob storage.

  A single semaphore caps in-flight uploads for every batch that shares this
  uploader. Failures and timeouts never raise: the result falls back to the
  asset's temporary provider URL, or to the placeholder URL.
  """

  name = "ImageStorageUploader"

  def __init__(self, storage: BlobStorage, *, placeholder_url: str, concurrency: int = 5, timeout_seconds: float = 30.0, convert_images: bool = True) -> None:
    super().__init__()
    if concurrency <= 0:
      raise ValueError("concurrency must be a positive integer.")
    self._storage = storage
    self._placeholder_url = placeholder_url
    self._concurrency = concurrency
    self._timeout_seconds = timeout_seconds
    self._convert_images = convert_images
    self._semaphore = asyncio.Semaphore(concurrency)
    self._in_flight = 0
    self._peak_in_flight = 0
    self._total_uploads = 0
    self._successful_uploads = 0
    self._failed_uploads = 0
    self._fallbacks = 0
    self._total_upload_ms = 0.0

  @property
  def concurrency(self) -> int:
    return self._concurrency

  async def run(self, input_data: tuple[ImageAsset, str]) -> UploadResult:
    asset, key = input_data
    return await self.upload(asset, key)

  async def upload(self, asset: ImageAsset, destination_key: str) -> UploadResult:
    """Upload one asset; waits for a free slot under the shared limit."""
    self._require_ready()
    async with self._semaphore:
      self._in_flight += 1
      self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
      try:
        return await self._upload_one(asset, destination_key)
      finally:
        self._in_flight -= 1

  async def upload_batch(self, items: list[tuple[ImageAsset, str]]) -> list[UploadResult]:
    """Upload many assets in sub-chunks no larger than the concurrency limit."""
    results: list[UploadResult] = []
    for start in range(0, len(items), self._concurrency):
      chunk = items[start : start + self._concurrency]
      results.extend(await asyncio.gather(*(self.upload(asset, key) for asset, key in chunk)))
    return results

  def get_metrics(self) -> dict[str, Any]:
    average = self._total_upload_ms / self._total_uploads if self._total_uploads else 0.0
    return {
      "status": self.state,
      "total_uploads": self._total_uploads,
      "successful_uploads": self._successful_uploads,
      "failed_uploads": self._failed_uploads,
      "fallbacks": self._fallbacks,
      "average_upload_ms": round(average, 3),
      "in_flight": self._in_flight,
      "peak_in_flight": self._peak_in_flight,
      "concurrency_limit": self._concurrency,
    }

  async def _upload_one(self, asset: ImageAsset, key: str) -> UploadResult:
    started = time.monotonic()
    fallback_url = asset.source_url or self._placeholder_url
    if asset.is_placeholder or not asset.image_bytes:
      return self._finish(asset, started, uploaded_url=fallback_url, error="No image bytes to upload", attempted=False)

    try:
      payload, content_type = self._prepare(asset.image_bytes)
      uploaded_url = await asyncio.wait_for(self._storage.upload_image(payload, key, content_type), timeout=self._timeout_seconds)
    except asyncio.TimeoutError:
      logger.warning("Image upload timed out after %.1fs key=%s; using temporary URL", self._timeout_seconds, key)
      return self._finish(asset, started, uploaded_url=fallback_url, error=f"Upload timed out after {self._timeout_seconds:g}s")
    except Exception as exc:  # noqa: BLE001
      logger.warning("Image upload failed key=%s error=%s; using temporary URL", key, exc)
      return self._finish(asset, started, uploaded_url=fallback_url, error=str(exc))

    return self._finish(asset, started, uploaded_url=uploaded_url, error=None)

  def _prepare(self, image_bytes: bytes) -> tuple[bytes, str]:
    if not self._convert_images:
      return image_bytes, "image/png"
    return convert_to_webp(image_bytes), "image/webp"

  def _finish(self, asset: ImageAsset, started: float, *, uploaded_url: str, error: str | None, attempted: bool = True) -> UploadResult:
    duration_ms = (time.monotonic() - started) * 1000
    if error is not None:
      self._fallbacks += 1
    # Assets without bytes fall back without counting as an upload.
    if attempted:
      self._total_uploads += 1
      self._total_upload_ms += duration_ms
      if error is None:
        self._successful_uploads += 1
      else:
        self._failed_uploads += 1
    return UploadResult(source_item_id=asset.source_item_id, uploaded_url=uploaded_url, was_uploaded=error is None, duration_ms=duration_ms, error=error)
