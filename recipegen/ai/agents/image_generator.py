"""Image generator with perceptual-hash uniqueness checks per batch."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from PIL import UnidentifiedImageError

from recipegen.ai.agents.base import BaseAgent
from recipegen.ai.agents.prompts import render_image_prompt
from recipegen.ai.errors import TransientProviderError
from recipegen.ai.pipeline.contracts import ImageAsset, ImageRequest, SavedRecord
from recipegen.ai.providers.base import AIModel, GeneratedImage
from recipegen.ai.retry import RetryPolicy
from recipegen.ai.utils.image_hash import difference_hash, similarity

logger = logging.getLogger(__name__)


class ImageGenerator(BaseAgent[ImageRequest, ImageAsset]):
  """Generate one image per saved recipe, regenerating near-duplicates."""

  name = "ImageGenerator"

  def __init__(
    self,
    model: AIModel,
    *,
    timeout_seconds: float = 45.0,
    similarity_threshold: float = 0.95,
    uniqueness_retries: int = 3,
    check_uniqueness: bool = True,
    retry_policy: RetryPolicy | None = None,
  ) -> None:
    super().__init__(retry_policy=retry_policy)
    self._model = model
    self._timeout_seconds = timeout_seconds
    self._similarity_threshold = similarity_threshold
    self._uniqueness_retries = uniqueness_retries
    self._check_uniqueness = check_uniqueness
    self._hashes: dict[str, list[str]] = {}
    self._regenerations = 0
    self._duplicates_accepted = 0

  async def generate(self, record: SavedRecord, batch_id: str) -> ImageAsset:
    """Generate an image for a record under the agent retry policy."""
    return await self.process(ImageRequest(batch_id=batch_id, record=record))

  async def run(self, input_data: ImageRequest) -> ImageAsset:
    record = input_data.record
    batch_id = input_data.batch_id
    variation = 0
    while True:
      prompt = render_image_prompt(record, variation=variation)
      image = await self._call_provider(prompt)
      perceptual_hash = self._hash(image, record)

      duplicate = perceptual_hash is not None and self._is_duplicate(batch_id, perceptual_hash)
      if duplicate and variation < self._uniqueness_retries:
        variation += 1
        self._regenerations += 1
        logger.info("Image too similar to an earlier one; regenerating batch_id=%s record_id=%s variation=%d", batch_id, record.id, variation)
        continue

      if duplicate:
        self._duplicates_accepted += 1
        logger.warning("Accepting similar image after %d regenerations batch_id=%s record_id=%s", variation, batch_id, record.id)
      if perceptual_hash is not None:
        self._hashes.setdefault(batch_id, []).append(perceptual_hash)
      return ImageAsset(source_item_id=record.id, image_bytes=image.image_bytes, source_url=image.source_url, perceptual_hash=perceptual_hash, prompt=prompt, retry_count=variation, generated_at=datetime.now(UTC))

  @staticmethod
  def placeholder(record: SavedRecord, placeholder_url: str) -> ImageAsset:
    """Return the asset used when no image could be generated."""
    return ImageAsset(source_item_id=record.id, source_url=placeholder_url, is_placeholder=True, quality_score=0, generated_at=datetime.now(UTC))

  def clear_hash_cache(self, batch_id: str | None = None) -> None:
    """Forget recorded hashes for one batch, or for every batch."""
    if batch_id is None:
      self._hashes.clear()
    else:
      self._hashes.pop(batch_id, None)

  def get_image_stats(self) -> dict[str, Any]:
    return {"unique_images": sum(len(hashes) for hashes in self._hashes.values()), "batches_tracked": len(self._hashes), "regenerations": self._regenerations, "duplicates_accepted": self._duplicates_accepted}

  def get_metrics(self) -> dict[str, Any]:
    snapshot = super().get_metrics()
    snapshot.update(self.get_image_stats())
    return snapshot

  async def _call_provider(self, prompt: str) -> GeneratedImage:
    try:
      return await asyncio.wait_for(self._model.generate_image(prompt), timeout=self._timeout_seconds)
    except asyncio.TimeoutError as exc:
      raise TransientProviderError(f"Image generation timed out after {self._timeout_seconds:g}s", provider=getattr(self._model, "name", None)) from exc

  def _hash(self, image: GeneratedImage, record: SavedRecord) -> str | None:
    if not self._check_uniqueness:
      return None
    try:
      return difference_hash(image.image_bytes)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
      logger.warning("Could not hash generated image for record_id=%s: %s", record.id, exc)
      return None

  def _is_duplicate(self, batch_id: str, perceptual_hash: str) -> bool:
    return any(similarity(perceptual_hash, existing) >= self._similarity_threshold for existing in self._hashes.get(batch_id, ()))

  async def _on_shutdown(self) -> None:
    self._hashes.clear()
