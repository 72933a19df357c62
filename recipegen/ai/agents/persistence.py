"""Persistence orchestrator: batched transactional writes with error isolation."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from recipegen.ai.agents.base import BaseAgent
from recipegen.ai.agents.nutrition_validator import parse_nutrient
from recipegen.ai.errors import PersistenceFailure
from recipegen.ai.pipeline.contracts import PersistenceBatch, RecordId, SavedRecord, SaveFailure, SaveReport, ValidatedItem
from recipegen.ai.retry import RetryPolicy, with_retry_and_metrics
from recipegen.storage.recipes_repo import RecipeRow, RecipeStore

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
  """Convert free-form numbers ('40g', 12.5, '500 kcal') to 2-decimal precision."""
  parsed = parse_nutrient(value)
  if parsed is None:
    return Decimal("0.00")
  try:
    return Decimal(str(parsed)).quantize(_CENTS, rounding=ROUND_HALF_UP)
  except InvalidOperation:
    return Decimal("0.00")


def _format_amount(amount: Any) -> str | None:
  if amount is None:
    return None
  text = str(amount).strip()
  if isinstance(amount, bool):
    return text
  try:
    value = Decimal(text)
  except InvalidOperation:
    # Fractions and free text ("1/2", "a pinch") are kept verbatim.
    return text or None
  # Infinity and NaN survive lenient JSON parsing but have no stored form.
  if not value.is_finite():
    return None
  try:
    return str(value.quantize(_CENTS, rounding=ROUND_HALF_UP))
  except InvalidOperation:
    return text


def to_storage_row(validated: ValidatedItem, batch_id: str) -> RecipeRow:
  """Map a validated generation-format item to its storage format."""
  item = validated.item
  nutrition = item.actual_nutrition or {}
  ingredients = [{"name": (ingredient.name or "").strip(), "amount": _format_amount(ingredient.amount), "unit": (ingredient.unit or "").strip() or None} for ingredient in item.raw_ingredients or []]
  return RecipeRow(
    batch_id=batch_id,
    concept_id=validated.concept_id,
    name=(item.raw_name or "").strip(),
    description=(item.raw_description or "").strip(),
    meal_types=[meal.lower() for meal in item.meal_types],
    dietary_tags=list(item.dietary_tags),
    main_ingredient_tags=list(item.main_ingredient_tags),
    ingredients=ingredients,
    instructions=list(item.raw_instructions or []),
    calories_kcal=to_decimal(nutrition.get("calories")),
    protein_grams=to_decimal(nutrition.get("protein")),
    carbs_grams=to_decimal(nutrition.get("carbs")),
    fat_grams=to_decimal(nutrition.get("fat")),
    prep_time_minutes=item.prep_time_minutes,
    cook_time_minutes=item.cook_time_minutes,
    servings=item.servings,
  )


def _require_opaque_id(record_id: Any) -> RecordId:
  # Ids pass through untouched; anything other than a non-empty string is a storage bug.
  if not isinstance(record_id, str) or not record_id:
    raise PersistenceFailure(f"Storage returned a non-string record id: {record_id!r}")
  return RecordId(record_id)


class PersistenceOrchestrator(BaseAgent[PersistenceBatch, SaveReport]):
  """Save validated recipes in fixed-size transactions.

  Items that did not pass validation are filtered out here as well as by the
  coordinator, and are reported in `SaveReport.skipped`. Each transaction
  is retried on retryable database failures; when it still fails only that
  transaction's items are reported as failures.
  """

  name = "PersistenceOrchestrator"

  def __init__(self, store: RecipeStore, *, batch_size: int = 10, transactional: bool = True, retry_policy: RetryPolicy | None = None) -> None:
    super().__init__(retry_policy=retry_policy)
    if batch_size <= 0:
      raise ValueError("batch_size must be a positive integer.")
    self._store = store
    self._batch_size = batch_size
    self._transactional = transactional
    self._committed_transactions = 0
    self._failed_transactions = 0
    self._failed_items = 0

  async def run(self, input_data: PersistenceBatch) -> SaveReport:
    return await self.save(input_data.items, input_data.batch_id)

  async def save(self, validated_items: list[ValidatedItem], batch_id: str) -> SaveReport:
    """Persist passing items and return saved records in input order."""
    self._require_ready()
    report = SaveReport()
    eligible: list[ValidatedItem] = []
    for item in validated_items:
      if item.validation_passed:
        eligible.append(item)
      else:
        report.skipped.append(item.concept_id)

    if not eligible:
      report.errors.append("No validated recipes to save")
      return report

    rows = self._convert(eligible, batch_id, report)
    if not rows:
      logger.warning("No convertible recipes to save batch_id=%s failed=%d", batch_id, len(report.failures))
      return report
    if self._transactional:
      await self._save_transactional(rows, batch_id, report)
    else:
      await self._save_individually(rows, batch_id, report)

    logger.info("Persisted batch_id=%s saved=%d failed=%d skipped=%d transactions=%d", batch_id, len(report.saved), len(report.failures), len(report.skipped), report.transactions)
    return report

  async def link_image(self, record_id: RecordId, image_url: str) -> None:
    """Attach an image URL to exactly one saved record."""
    self._require_ready()
    updated = await with_retry_and_metrics(lambda: self._store.update_image_url(record_id, image_url), policy=self._retry_policy, operation_name=f"{self.name}.link_image")
    if updated != 1:
      raise PersistenceFailure(f"Linking image to record {record_id} updated {updated} rows", item_refs=[record_id])

  def get_metrics(self) -> dict[str, Any]:
    snapshot = super().get_metrics()
    snapshot.update({"committed_transactions": self._committed_transactions, "failed_transactions": self._failed_transactions, "failed_items": self._failed_items})
    return snapshot

  def _convert(self, items: list[ValidatedItem], batch_id: str, report: SaveReport) -> list[tuple[ValidatedItem, RecipeRow]]:
    rows: list[tuple[ValidatedItem, RecipeRow]] = []
    for item in items:
      try:
        rows.append((item, to_storage_row(item, batch_id)))
      except Exception as exc:  # noqa: BLE001
        logger.error("Recipe conversion failed batch_id=%s item=%s error=%r", batch_id, item.concept_id, exc)
        self._failed_items += 1
        reason = f"Could not convert recipe for storage: {type(exc).__name__}"
        report.errors.append(f"Conversion of {item.name} failed: {type(exc).__name__}")
        report.failures.append(SaveFailure(concept_id=item.concept_id, name=item.name, reason=reason))
    return rows

  async def _save_transactional(self, rows: list[tuple[ValidatedItem, RecipeRow]], batch_id: str, report: SaveReport) -> None:
    for batch_index, start in enumerate(range(0, len(rows), self._batch_size)):
      group = rows[start : start + self._batch_size]
      try:
        record_ids = await with_retry_and_metrics(lambda group=group: self._write_group(group), policy=self._retry_policy, operation_name=f"{self.name}.transaction[{batch_index}]")
      except Exception as exc:  # noqa: BLE001
        logger.error("Persistence transaction failed batch_id=%s transaction=%d items=%d error=%s", batch_id, batch_index, len(group), exc)
        self._failed_transactions += 1
        self._failed_items += len(group)
        report.errors.append(f"Transaction {batch_index} failed: {exc}")
        report.failures.extend(SaveFailure(concept_id=item.concept_id, name=item.name, batch_index=batch_index, reason=str(exc)) for item, _ in group)
        continue

      self._committed_transactions += 1
      report.transactions += 1
      report.saved.extend(_saved_record(item, row, record_id) for (item, row), record_id in zip(group, record_ids, strict=True))

  async def _write_group(self, group: list[tuple[ValidatedItem, RecipeRow]]) -> list[RecordId]:
    record_ids: list[RecordId] = []
    async with self._store.transaction() as writer:
      for _, row in group:
        record_ids.append(_require_opaque_id(await writer.insert(row)))
    return record_ids

  async def _save_individually(self, rows: list[tuple[ValidatedItem, RecipeRow]], batch_id: str, report: SaveReport) -> None:
    for index, (item, row) in enumerate(rows):
      try:
        record_id = await with_retry_and_metrics(lambda row=row: self._store.insert_one(row), policy=self._retry_policy, operation_name=f"{self.name}.insert[{index}]")
        record_id = _require_opaque_id(record_id)
      except Exception as exc:  # noqa: BLE001
        logger.error("Persistence insert failed batch_id=%s item=%s error=%s", batch_id, item.concept_id, exc)
        self._failed_items += 1
        report.errors.append(f"Insert of {item.name} failed: {exc}")
        report.failures.append(SaveFailure(concept_id=item.concept_id, name=item.name, reason=str(exc)))
        continue
      report.saved.append(_saved_record(item, row, record_id))


def _saved_record(item: ValidatedItem, row: RecipeRow, record_id: RecordId) -> SavedRecord:
  return SavedRecord(id=record_id, concept_id=item.concept_id, name=row.name, description=row.description, meal_types=list(row.meal_types))
