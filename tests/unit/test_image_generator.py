from __future__ import annotations

import pytest

from recipegen.ai.agents.image_generator import ImageGenerator
from recipegen.ai.errors import TransientProviderError
from recipegen.ai.pipeline.contracts import SavedRecord
from recipegen.ai.retry import RetryPolicy
from recipegen.ai.utils.image_hash import difference_hash, hamming_distance, similarity

_POLICY = RetryPolicy(max_retries=2, base_delay_ms=0, max_delay_ms=0, jitter=False)


def _record(index: int) -> SavedRecord:
  return SavedRecord(id=f"3f0c9a7e-0000-4000-8000-{index:012d}", concept_id=f"c-{index}", name=f"Harissa Chickpea Bowl {index}", description="Roasted chickpeas with harissa yogurt.", meal_types=["Lunch"])


def _generator(model, **kwargs) -> ImageGenerator:
  generator = ImageGenerator(model, retry_policy=_POLICY, **kwargs)
  generator.initialize()
  return generator


@pytest.mark.anyio
async def test_distinct_images_are_accepted_first_time(fake_model) -> None:
  generator = _generator(fake_model)
  first = await generator.generate(_record(1), "batch-1")
  second = await generator.generate(_record(2), "batch-1")
  assert fake_model.image_calls == 2
  assert first.retry_count == second.retry_count == 0
  assert first.perceptual_hash != second.perceptual_hash
  assert first.source_item_id == _record(1).id
  assert "Served as a lunch" in first.prompt
  assert generator.get_image_stats()["unique_images"] == 2


@pytest.mark.anyio
async def test_near_duplicate_is_regenerated_with_variation(fake_model) -> None:
  fake_model.image_seeds = [1, 1, 2]
  generator = _generator(fake_model)
  await generator.generate(_record(1), "batch-1")
  asset = await generator.generate(_record(2), "batch-1")
  assert fake_model.image_calls == 3
  assert asset.retry_count == 1
  assert "Style variation 1" in asset.prompt
  assert generator.get_image_stats()["regenerations"] == 1


@pytest.mark.anyio
async def test_duplicate_is_accepted_after_retries_are_exhausted(fake_model) -> None:
  fake_model.image_seeds = [1, 1, 1, 1]
  generator = _generator(fake_model, uniqueness_retries=2)
  await generator.generate(_record(1), "batch-1")
  asset = await generator.generate(_record(2), "batch-1")
  assert fake_model.image_calls == 4
  assert asset.retry_count == 2
  assert generator.get_image_stats()["duplicates_accepted"] == 1


@pytest.mark.anyio
async def test_uniqueness_is_scoped_per_batch(fake_model) -> None:
  fake_model.image_seeds = [1, 1]
  generator = _generator(fake_model)
  await generator.generate(_record(1), "batch-a")
  asset = await generator.generate(_record(2), "batch-b")
  assert asset.retry_count == 0
  generator.clear_hash_cache("batch-a")
  assert generator.get_image_stats()["batches_tracked"] == 1


@pytest.mark.anyio
async def test_uniqueness_check_can_be_disabled(fake_model) -> None:
  fake_model.image_seeds = [1, 1]
  generator = _generator(fake_model, check_uniqueness=False)
  await generator.generate(_record(1), "batch-1")
  asset = await generator.generate(_record(2), "batch-1")
  assert asset.perceptual_hash is None
  assert fake_model.image_calls == 2


@pytest.mark.anyio
async def test_transient_provider_errors_are_retried(fake_model) -> None:
  fake_model.image_errors = [TransientProviderError("rate limited")]
  generator = _generator(fake_model)
  asset = await generator.generate(_record(1), "batch-1")
  assert asset.image_bytes
  assert generator.get_metrics()["retry_count"] == 1


def test_placeholder_asset_is_marked() -> None:
  asset = ImageGenerator.placeholder(_record(1), "https://placeholder.test/x.webp")
  assert asset.is_placeholder
  assert asset.quality_score == 0
  assert asset.source_url == "https://placeholder.test/x.webp"


def test_hash_similarity_helpers() -> None:
  assert similarity("ff00", "ff00") == 1.0
  assert hamming_distance("ff00", "ff01") == 1
  assert similarity("0000", "ffff") == 0.0
  with pytest.raises(ValueError):
    hamming_distance("ff", "ffff")


@pytest.mark.anyio
async def test_difference_hash_is_stable_for_identical_images(fake_model) -> None:
  fake_model.image_seeds = [5, 5, 6]
  first = await fake_model.generate_image("a")
  again = await fake_model.generate_image("b")
  other = await fake_model.generate_image("c")
  assert difference_hash(first.image_bytes) == difference_hash(again.image_bytes)
  assert len(difference_hash(first.image_bytes)) == 16
  assert similarity(difference_hash(first.image_bytes), difference_hash(other.image_bytes)) < 0.95
