from __future__ import annotations

from decimal import Decimal

import pytest

from recipegen.ai.agents.persistence import PersistenceOrchestrator, to_decimal, to_storage_row
from recipegen.ai.errors import PersistenceFailure, TransientProviderError
from recipegen.ai.pipeline.contracts import GeneratedItem, Ingredient, ValidatedItem
from recipegen.ai.retry import RetryPolicy

_POLICY = RetryPolicy(max_retries=2, base_delay_ms=0, max_delay_ms=0, jitter=False)


def _validated(index: int, *, passed: bool = True) -> ValidatedItem:
  item = GeneratedItem(
    concept_ref=f"c-{index}",
    raw_name=f"Recipe {index}",
    raw_description="A recipe.",
    raw_ingredients=[Ingredient(name="oats", amount=0.5, unit="cup"), Ingredient(name="salt", amount="a pinch")],
    raw_instructions=["Mix.", "Bake."],
    actual_nutrition={"calories": 412.345, "protein": "22.5g", "carbs": 40, "fat": 12},
    meal_types=["Breakfast"],
  )
  return ValidatedItem(concept_id=f"c-{index}", item=item, validation_passed=passed, nutrition_accurate=passed)


def _orchestrator(store, **kwargs) -> PersistenceOrchestrator:
  orchestrator = PersistenceOrchestrator(store, retry_policy=_POLICY, **kwargs)
  orchestrator.initialize()
  return orchestrator


def test_to_decimal_rounds_half_up_to_cents() -> None:
  assert to_decimal(412.345) == Decimal("412.35")
  assert to_decimal("22.5g") == Decimal("22.50")
  assert to_decimal(None) == Decimal("0.00")


def test_storage_row_maps_generation_fields() -> None:
  row = to_storage_row(_validated(1), "batch-1")
  assert row.name == "Recipe 1"
  assert row.meal_types == ["breakfast"]
  assert row.calories_kcal == Decimal("412.35")
  assert row.protein_grams == Decimal("22.50")
  assert row.ingredients[0] == {"name": "oats", "amount": "0.50", "unit": "cup"}
  assert row.ingredients[1]["amount"] == "a pinch"


@pytest.mark.anyio
async def test_saves_in_groups_of_ten(recipe_store) -> None:
  orchestrator = _orchestrator(recipe_store)
  report = await orchestrator.save([_validated(index) for index in range(25)], "batch-1")
  assert recipe_store.transactions_started == 3
  assert report.transactions == 3
  assert len(report.saved) == 25
  assert [record.concept_id for record in report.saved] == [f"c-{index}" for index in range(25)]


@pytest.mark.anyio
async def test_failed_transaction_only_loses_its_own_items(recipe_store) -> None:
  recipe_store.failing_transactions = {1}
  orchestrator = _orchestrator(recipe_store)
  report = await orchestrator.save([_validated(index) for index in range(25)], "batch-1")
  saved_concepts = {record.concept_id for record in report.saved}
  failed_concepts = {failure.concept_id for failure in report.failures}
  assert failed_concepts == {f"c-{index}" for index in range(10, 20)}
  assert saved_concepts == {f"c-{index}" for index in range(25)} - failed_concepts
  assert {row.concept_id for row in recipe_store.rows.values()} == saved_concepts
  assert all(failure.batch_index == 1 for failure in report.failures)
  metrics = orchestrator.get_metrics()
  assert metrics["committed_transactions"] == 2
  assert metrics["failed_transactions"] == 1


@pytest.mark.anyio
async def test_retryable_commit_failure_is_retried(recipe_store) -> None:
  recipe_store.commit_errors = [TransientProviderError("connection reset")]
  orchestrator = _orchestrator(recipe_store)
  report = await orchestrator.save([_validated(index) for index in range(3)], "batch-1")
  assert len(report.saved) == 3
  assert report.failures == []
  assert recipe_store.transactions_started == 2


@pytest.mark.anyio
async def test_records_keep_storage_ids_as_opaque_strings(recipe_store) -> None:
  orchestrator = _orchestrator(recipe_store)
  report = await orchestrator.save([_validated(index) for index in range(4)], "batch-1")
  for record in report.saved:
    assert isinstance(record.id, str)
    assert record.id in recipe_store.rows
    assert recipe_store.rows[record.id].concept_id == record.concept_id


@pytest.mark.anyio
async def test_items_that_failed_validation_are_skipped(recipe_store) -> None:
  orchestrator = _orchestrator(recipe_store)
  report = await orchestrator.save([_validated(0), _validated(1, passed=False)], "batch-1")
  assert [record.concept_id for record in report.saved] == ["c-0"]
  assert report.skipped == ["c-1"]
  assert len(recipe_store.rows) == 1


@pytest.mark.anyio
async def test_nothing_to_save_is_reported(recipe_store) -> None:
  orchestrator = _orchestrator(recipe_store)
  report = await orchestrator.save([_validated(0, passed=False)], "batch-1")
  assert report.saved == []
  assert report.errors == ["No validated recipes to save"]
  assert recipe_store.transactions_started == 0


@pytest.mark.anyio
async def test_non_transactional_mode_isolates_single_items(recipe_store) -> None:
  recipe_store.failing_names = {"Recipe 2"}
  orchestrator = _orchestrator(recipe_store, transactional=False)
  report = await orchestrator.save([_validated(index) for index in range(4)], "batch-1")
  assert [record.concept_id for record in report.saved] == ["c-0", "c-1", "c-3"]
  assert [failure.concept_id for failure in report.failures] == ["c-2"]


@pytest.mark.anyio
async def test_link_image_updates_exactly_one_row(recipe_store) -> None:
  orchestrator = _orchestrator(recipe_store)
  report = await orchestrator.save([_validated(0)], "batch-1")
  record_id = report.saved[0].id
  await orchestrator.link_image(record_id, "https://storage.test/a.webp")
  stored = await recipe_store.get(record_id)
  assert stored is not None and stored.image_url == "https://storage.test/a.webp"
  with pytest.raises(PersistenceFailure):
    await orchestrator.link_image("missing-id", "https://storage.test/b.webp")


@pytest.mark.parametrize("amount", [float("inf"), float("-inf"), float("nan"), "Infinity", "NaN"])
def test_non_finite_amounts_are_stored_without_an_amount(amount) -> None:
  validated = _validated(1)
  validated.item.raw_ingredients[0] = Ingredient(name="oats", amount=amount, unit="cup")
  row = to_storage_row(validated, "batch-1")
  assert row.ingredients[0] == {"name": "oats", "amount": None, "unit": "cup"}


@pytest.mark.anyio
async def test_infinite_amount_does_not_stop_the_rest_of_the_group(recipe_store) -> None:
  items = [_validated(index) for index in range(5)]
  items[0].item.raw_ingredients[0] = Ingredient(name="oats", amount=float("inf"), unit="cup")
  report = await _orchestrator(recipe_store).save(items, "batch-1")
  assert len(report.saved) == 5
  assert report.failures == []


@pytest.mark.anyio
async def test_unconvertible_item_fails_alone(recipe_store, monkeypatch: pytest.MonkeyPatch) -> None:
  from recipegen.ai.agents import persistence

  original = persistence.to_storage_row

  def _convert(validated: ValidatedItem, batch_id: str):
    if validated.concept_id == "c-0":
      raise ArithmeticError("cannot represent amount")
    return original(validated, batch_id)

  monkeypatch.setattr(persistence, "to_storage_row", _convert)
  orchestrator = _orchestrator(recipe_store)
  report = await orchestrator.save([_validated(index) for index in range(5)], "batch-1")

  assert [record.concept_id for record in report.saved] == ["c-1", "c-2", "c-3", "c-4"]
  assert len(recipe_store.rows) == 4
  assert [failure.concept_id for failure in report.failures] == ["c-0"]
  assert report.failures[0].reason == "Could not convert recipe for storage: ArithmeticError"
  assert orchestrator.get_metrics()["failed_items"] == 1
