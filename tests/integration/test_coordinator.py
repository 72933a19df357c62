"""End-to-end batch runs over in-memory model, store and blob storage."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from recipegen.ai.errors import BatchNotFoundError, InvalidRequestError
from recipegen.ai.pipeline.contracts import FeatureFlags, GenerationOptions, GenerationRequest, TargetConstraints

PLACEHOLDER_URL = "https://placeholder.test/recipe.webp"


def _request(total_count: int, chunk_size: int = 5, **features: bool) -> GenerationRequest:
  options = GenerationOptions(meal_types=("lunch", "dinner"), constraints=TargetConstraints(fitness_goal="maintenance", daily_calorie_target=2400), features=FeatureFlags(**features))
  return GenerationRequest(total_count=total_count, chunk_size=chunk_size, options=options)


@pytest.mark.anyio
async def test_batch_runs_every_stage_to_completion(coordinator_factory, fake_model, recipe_store, blob_storage) -> None:
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(7))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "complete"
  assert progress.completed_items == 7
  assert progress.failed_items == 0
  assert progress.total_chunks == 2
  assert progress.completed_chunks == 2
  assert progress.percent_complete() == 100.0
  assert progress.finished_at is not None
  assert progress.errors == []
  assert fake_model.structured_calls == 2
  assert fake_model.image_calls == 7
  assert len(recipe_store.rows) == 7
  assert recipe_store.transactions_committed == 2
  assert len(blob_storage.objects) == 7
  assert all(key.startswith(f"recipes/{batch_id}/") and key.endswith(".webp") for key in blob_storage.objects)

  saved = coordinator.saved_records(batch_id)
  assert len(saved) == 7
  assert {record.id for record in saved} == set(recipe_store.rows)
  for record in saved:
    assert record.image_url == recipe_store.image_urls[record.id]
    assert record.image_url.startswith("https://storage.test/recipes-bucket/recipes/")


@pytest.mark.anyio
async def test_progress_exists_as_soon_as_batch_starts(coordinator_factory) -> None:
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(12))
  progress = await coordinator.get_progress(batch_id)
  assert batch_id.startswith("batch_")
  assert progress.current_phase == "planning"
  assert progress.total_items == 12
  assert progress.total_chunks == 3
  assert progress.processed_items == 0
  await coordinator.wait(batch_id)


@pytest.mark.anyio
@pytest.mark.parametrize("total_count", [0, 101])
async def test_out_of_range_counts_are_rejected_before_any_work(coordinator_factory, fake_model, total_count: int) -> None:
  coordinator = coordinator_factory()
  with pytest.raises(InvalidRequestError):
    await coordinator.start_batch(_request(total_count))
  assert fake_model.structured_calls == 0
  assert coordinator.get_metrics()["active_batches"] == 0


@pytest.mark.anyio
async def test_contradictory_constraints_are_rejected(coordinator_factory) -> None:
  coordinator = coordinator_factory()
  options = GenerationOptions(constraints=TargetConstraints(min_calories=900, max_calories=400))
  with pytest.raises(InvalidRequestError, match="min_calories"):
    await coordinator.start_batch(GenerationRequest(total_count=3, options=options))


@pytest.mark.anyio
async def test_failed_generation_chunk_does_not_stop_other_chunks(coordinator_factory, fake_model) -> None:
  fake_model.recipe_errors = [RuntimeError("model rejected the chunk")]
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(7))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "complete"
  assert progress.failed_items == 5
  assert progress.completed_items == 2
  assert progress.completed_chunks == 2
  assert progress.per_agent_status["RecipeGenerator"] in {"completed", "failed"}
  chunk_errors = [error for error in progress.errors if error.phase == "generating"]
  assert len(chunk_errors) == 1
  assert chunk_errors[0].chunk_index == 0
  assert "model rejected the chunk" in chunk_errors[0].message


@pytest.mark.anyio
async def test_transient_generation_errors_are_retried(coordinator_factory, fake_model) -> None:
  fake_model.recipe_errors = [asyncio.TimeoutError()]
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(3))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "complete"
  assert progress.completed_items == 3
  assert fake_model.structured_calls == 2
  assert coordinator.get_metrics()["RecipeGenerator"]["retry_count"] == 1


@pytest.mark.anyio
async def test_items_failing_validation_are_counted_and_not_saved(coordinator_factory, fake_model, recipe_store) -> None:
  seen: list[str] = []

  def _overshoot_first_two(recipe: dict[str, Any]) -> None:
    seen.append(recipe["name"])
    if len(seen) <= 2:
      recipe["estimated_nutrition"]["calories"] *= 2

  fake_model.mutate = _overshoot_first_two
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(5))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "complete"
  assert progress.completed_items == 3
  assert progress.failed_items == 2
  assert len(recipe_store.rows) == 3
  rejected = [error for error in progress.errors if error.phase == "validating"]
  assert {error.item_ref for error in rejected} == set(seen[:2])
  assert all(error.message.startswith("Validation failed:") for error in rejected)


@pytest.mark.anyio
async def test_disabled_validation_saves_items_unchecked(coordinator_factory, fake_model, recipe_store) -> None:
  fake_model.mutate = lambda recipe: recipe["estimated_nutrition"].update(calories=recipe["estimated_nutrition"]["calories"] * 2)
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(4, enable_validation=False))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "complete"
  assert progress.completed_items == 4
  assert len(recipe_store.rows) == 4


@pytest.mark.anyio
async def test_batch_fails_when_every_item_fails(coordinator_factory, fake_model, recipe_store) -> None:
  fake_model.mutate = lambda recipe: recipe["estimated_nutrition"].update(calories=recipe["estimated_nutrition"]["calories"] * 3)
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(6))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "failed"
  assert progress.failed_items == 6
  assert progress.completed_items == 0
  assert recipe_store.rows == {}
  assert progress.errors[-1].message == "All items failed"


@pytest.mark.anyio
async def test_failed_transaction_is_isolated_to_its_chunk(coordinator_factory, recipe_store) -> None:
  recipe_store.failing_transactions = {0}
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(7))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "complete"
  assert progress.failed_items == 5
  assert progress.completed_items == 2
  assert len(recipe_store.rows) == 2
  persist_errors = [error for error in progress.errors if error.phase == "persisting"]
  assert len(persist_errors) == 5
  assert all(error.message.startswith("Save failed:") for error in persist_errors)


@pytest.mark.anyio
async def test_image_generation_failure_falls_back_to_placeholder(coordinator_factory, fake_model, recipe_store, blob_storage) -> None:
  fake_model.image_errors = [RuntimeError("content policy")]
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(3))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "complete"
  assert progress.completed_items == 3
  assert list(recipe_store.image_urls.values()).count(PLACEHOLDER_URL) == 1
  assert len(blob_storage.objects) == 2
  imaging_errors = [error for error in progress.errors if error.phase == "imaging"]
  assert len(imaging_errors) == 1
  assert "content policy" in imaging_errors[0].message


@pytest.mark.anyio
async def test_upload_failure_keeps_the_temporary_image_url(coordinator_factory, recipe_store, blob_storage) -> None:
  blob_storage.fail_all = True
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(2))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "complete"
  assert progress.completed_items == 2
  assert all(url.startswith("https://provider.test/images/") for url in recipe_store.image_urls.values())
  assert len([error for error in progress.errors if "Image upload failed" in error.message]) == 2
  assert coordinator.get_metrics()["ImageStorageUploader"]["failed_uploads"] == 2


@pytest.mark.anyio
async def test_disabled_images_complete_without_provider_calls(coordinator_factory, fake_model, recipe_store, blob_storage) -> None:
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(4, enable_image_generation=False))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "complete"
  assert progress.completed_items == 4
  assert fake_model.image_calls == 0
  assert blob_storage.calls == 0
  assert recipe_store.image_urls == {}


@pytest.mark.anyio
async def test_disabled_upload_links_provider_urls(coordinator_factory, recipe_store, blob_storage) -> None:
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(3, enable_upload=False))
  await coordinator.wait(batch_id)

  assert blob_storage.calls == 0
  assert len(recipe_store.image_urls) == 3
  assert all(url.startswith("https://provider.test/images/") for url in recipe_store.image_urls.values())


@pytest.mark.anyio
async def test_uploads_never_exceed_the_concurrency_limit(coordinator_factory, blob_storage) -> None:
  blob_storage.delay = 0.01
  coordinator = coordinator_factory(upload_concurrency=2, chunk_concurrency=3)
  first = await coordinator.start_batch(_request(9, chunk_size=3))
  second = await coordinator.start_batch(_request(6, chunk_size=3))
  await coordinator.wait(first)
  await coordinator.wait(second)

  assert blob_storage.calls == 15
  assert 1 <= blob_storage.peak_in_flight <= 2
  assert coordinator.get_metrics()["ImageStorageUploader"]["peak_in_flight"] <= 2


@pytest.mark.anyio
async def test_cancel_marks_batch_failed_and_stops_further_chunks(coordinator_factory, fake_model, recipe_store) -> None:
  fake_model.image_delay = 0.05
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(15))

  while fake_model.image_calls == 0:
    await asyncio.sleep(0.001)
  assert await coordinator.cancel(batch_id)
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "failed"
  assert progress.processed_items < 15
  assert any(error.message == "Batch cancelled by request" for error in progress.errors)
  assert fake_model.structured_calls == 1
  assert len(recipe_store.rows) == 5
  assert not await coordinator.cancel(batch_id)


@pytest.mark.anyio
async def test_cancel_returns_false_for_unknown_and_finished_batches(coordinator_factory) -> None:
  coordinator = coordinator_factory()
  assert not await coordinator.cancel("batch_missing")
  batch_id = await coordinator.start_batch(_request(1))
  await coordinator.wait(batch_id)
  assert not await coordinator.cancel(batch_id)
  assert (await coordinator.get_progress(batch_id)).current_phase == "complete"


@pytest.mark.anyio
async def test_cancelling_a_finished_batch_records_nothing(coordinator_factory) -> None:
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(3, enable_image_generation=False))
  await coordinator.wait(batch_id)

  results = await asyncio.gather(*(coordinator.cancel(batch_id) for _ in range(3)))

  assert results == [False, False, False]
  progress = await coordinator.get_progress(batch_id)
  assert progress.current_phase == "complete"
  assert progress.errors == []


@pytest.mark.anyio
async def test_concurrent_cancels_fail_the_batch_once(coordinator_factory, fake_model) -> None:
  fake_model.image_delay = 0.05
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(10))
  while fake_model.image_calls == 0:
    await asyncio.sleep(0.001)

  results = await asyncio.gather(*(coordinator.cancel(batch_id) for _ in range(3)))
  progress = await coordinator.wait(batch_id)

  assert sorted(results) == [False, False, True]
  assert progress.current_phase == "failed"
  assert [error.message for error in progress.errors].count("Batch cancelled by request") == 1


@pytest.mark.anyio
async def test_progress_stream_ends_with_terminal_snapshot(coordinator_factory) -> None:
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(6, chunk_size=3))
  phases = [snapshot.current_phase async for snapshot in coordinator.stream_progress(batch_id)]

  assert phases[0] == "planning"
  assert phases[-1] == "complete"
  assert "imaging" in phases


@pytest.mark.anyio
async def test_metrics_cover_every_agent(coordinator_factory) -> None:
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(2))
  await coordinator.wait(batch_id)
  metrics = coordinator.get_metrics()

  assert set(metrics) == {"ConceptPlanner", "RecipeGenerator", "NutritionValidator", "PersistenceOrchestrator", "ImageGenerator", "ImageStorageUploader", "active_batches"}
  assert metrics["active_batches"] == 0
  assert metrics["RecipeGenerator"]["success_count"] == 1
  assert metrics["ImageGenerator"]["regenerations"] == 0
  assert metrics["ImageStorageUploader"]["successful_uploads"] == 2
  assert metrics["PersistenceOrchestrator"]["committed_transactions"] == 1


@pytest.mark.anyio
async def test_cleanup_purges_finished_batches(coordinator_factory) -> None:
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(1))
  await coordinator.wait(batch_id)

  assert await coordinator.cleanup_finished(0) == [batch_id]
  with pytest.raises(BatchNotFoundError):
    await coordinator.get_progress(batch_id)
  with pytest.raises(BatchNotFoundError):
    coordinator.saved_records(batch_id)


@pytest.mark.anyio
async def test_shutdown_stops_running_batches(coordinator_factory, fake_model) -> None:
  fake_model.image_delay = 0.05
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(5))
  while fake_model.image_calls == 0:
    await asyncio.sleep(0.001)

  await coordinator.shutdown()
  progress = await coordinator.get_progress(batch_id)
  assert progress.current_phase == "failed"
  assert all(agent.state == "shutdown" for agent in coordinator.agents)


@pytest.mark.anyio
async def test_infinite_ingredient_amount_does_not_fail_its_chunk(coordinator_factory, fake_model, recipe_store) -> None:
  seen: list[str] = []

  def _infinite_first_amount(recipe: dict[str, Any]) -> None:
    seen.append(recipe["name"])
    if len(seen) == 1:
      recipe["ingredients"][0]["amount"] = float("inf")

  fake_model.mutate = _infinite_first_amount
  coordinator = coordinator_factory()
  batch_id = await coordinator.start_batch(_request(5, enable_image_generation=False))
  progress = await coordinator.wait(batch_id)

  assert progress.current_phase == "complete"
  assert progress.completed_items == 5
  assert progress.failed_items == 0
  assert len(recipe_store.rows) == 5
  stored = next(row for row in recipe_store.rows.values() if row.name == seen[0])
  assert stored.ingredients[0]["amount"] is None
