"""Nutrition validation with tolerance bands and auto-fixes."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any

from recipegen.ai.agents.base import BaseAgent
from recipegen.ai.errors import StructuralError
from recipegen.ai.pipeline.contracts import NUTRIENTS, Concept, GeneratedItem, ValidatedItem, ValidationBatch, ValidationIssue
from recipegen.ai.retry import RetryPolicy
from recipegen.config import Settings

logger = logging.getLogger(__name__)

_NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")
_EPSILON = 1e-9
_MACROS = ("protein", "carbs", "fat")


@dataclass(frozen=True)
class ValidationTolerances:
  """Pass and auto-fix bands. Calories are relative; macros are absolute grams."""

  calorie_pass_ratio: float = 0.10
  calorie_fix_ratio: float = 0.15
  macro_pass_grams: float = 5.0
  macro_fix_grams: float = 10.0

  @classmethod
  def from_settings(cls, settings: Settings) -> ValidationTolerances:
    return cls(calorie_pass_ratio=settings.calorie_pass_ratio, calorie_fix_ratio=settings.calorie_fix_ratio, macro_pass_grams=settings.macro_pass_grams, macro_fix_grams=settings.macro_fix_grams)


def parse_nutrient(value: Any) -> float | None:
  """Parse numbers and strings such as '40g' or '500 kcal' into floats."""
  if value is None or isinstance(value, bool):
    return None
  if isinstance(value, (int, float)):
    return float(value) if math.isfinite(value) else None
  if isinstance(value, str):
    match = _NUMBER_PATTERN.search(value.replace(",", ""))
    if match:
      return float(match.group())
  return None


class NutritionValidator(BaseAgent[ValidationBatch, list[ValidatedItem]]):
  """Validate generated recipes against the concepts they were generated from."""

  name = "NutritionValidator"

  def __init__(self, *, tolerances: ValidationTolerances | None = None, retry_policy: RetryPolicy | None = None) -> None:
    super().__init__(retry_policy=retry_policy)
    self._tolerances = tolerances or ValidationTolerances()

  async def run(self, input_data: ValidationBatch) -> list[ValidatedItem]:
    return self.validate(input_data.items, input_data.concepts, input_data.batch_id, chunk_index=input_data.chunk_index)

  def validate(self, items: list[GeneratedItem], concepts: list[Concept], batch_id: str, *, chunk_index: int | None = None) -> list[ValidatedItem]:
    """Validate each item against the concept at the same position."""
    if len(items) != len(concepts):
      logger.error("Validator input misaligned batch_id=%s chunk_index=%s items=%d concepts=%d", batch_id, chunk_index, len(items), len(concepts))
      raise StructuralError("Generated items and concepts are not aligned", batch_id=batch_id, chunk_index=chunk_index, expected=len(concepts), actual=len(items))

    for position, (item, concept) in enumerate(zip(items, concepts, strict=True)):
      if item.concept_ref != concept.concept_id:
        logger.error("Validator concept mismatch batch_id=%s chunk_index=%s position=%d", batch_id, chunk_index, position)
        raise StructuralError(f"Item at position {position} references a different concept", batch_id=batch_id, chunk_index=chunk_index, expected=concept.concept_id, actual=item.concept_ref)

    results = [self._validate_item(item, concept) for item, concept in zip(items, concepts, strict=True)]
    passed = sum(1 for result in results if result.validation_passed)
    logger.info("Validated batch_id=%s chunk_index=%s passed=%d failed=%d", batch_id, chunk_index, passed, len(results) - passed)
    return results

  def _validate_item(self, item: GeneratedItem, concept: Concept) -> ValidatedItem:
    issues: list[ValidationIssue] = []
    fixes: list[str] = []
    name = (item.raw_name or "").strip()
    description = (item.raw_description or "").strip()
    instructions = [step.strip() for step in item.raw_instructions or [] if step and step.strip()]

    if not name:
      issues.append(ValidationIssue(field="name", severity="critical", message="Recipe name is required"))
    if not description:
      issues.append(ValidationIssue(field="description", severity="critical", message="Recipe description is required"))
    if not item.raw_ingredients:
      issues.append(ValidationIssue(field="ingredients", severity="critical", message="At least one ingredient is required"))
    else:
      for index, ingredient in enumerate(item.raw_ingredients):
        if not (ingredient.name or "").strip():
          issues.append(ValidationIssue(field=f"ingredients[{index}].name", severity="critical", message="Ingredient is missing a name"))
    if not instructions:
      issues.append(ValidationIssue(field="instructions", severity="critical", message="Instructions are required"))

    nutrition_accurate = False
    nutrition: dict[str, Any] | None = None
    if not item.actual_nutrition:
      issues.append(ValidationIssue(field="nutrition", severity="critical", message="Nutrition information is required"))
    else:
      nutrition, nutrition_accurate = self._check_nutrition(item.actual_nutrition, concept, issues, fixes)

    passed = not any(issue.severity == "critical" for issue in issues)
    update: dict[str, Any] = {"raw_name": name or item.raw_name, "raw_description": description or item.raw_description, "raw_instructions": instructions or item.raw_instructions}
    if nutrition is not None:
      update["actual_nutrition"] = nutrition
    fixed_item = item.model_copy(update=update)
    return ValidatedItem(concept_id=concept.concept_id, item=fixed_item, validation_passed=passed, nutrition_accurate=passed and nutrition_accurate, issues=issues, auto_fixes=fixes)

  def _check_nutrition(self, raw: dict[str, Any], concept: Concept, issues: list[ValidationIssue], fixes: list[str]) -> tuple[dict[str, Any], bool]:
    nutrition = dict(raw)
    accurate = True
    for nutrient in NUTRIENTS:
      value = parse_nutrient(raw.get(nutrient))
      if value is None:
        issues.append(ValidationIssue(field=f"nutrition.{nutrient}", severity="critical", message=f"{nutrient} is missing or not numeric"))
        accurate = False
        continue

      if value < 0:
        issues.append(ValidationIssue(field=f"nutrition.{nutrient}", severity="warning", message=f"Negative {nutrient} clamped to 0", actual=value, expected=0.0, fixed=True))
        fixes.append(f"{nutrient}: {value:g} -> 0")
        value = 0.0

      target = concept.target_nutrition.value(nutrient)
      outcome = self._classify(nutrient, value, target)
      if outcome == "fix":
        issues.append(ValidationIssue(field=f"nutrition.{nutrient}", severity="info", message=f"{nutrient} {value:g} auto-corrected to target {target:g}", actual=value, expected=target, fixed=True))
        fixes.append(f"{nutrient}: {value:g} -> {target:g}")
        value = target
      elif outcome == "fail":
        issues.append(ValidationIssue(field=f"nutrition.{nutrient}", severity="critical", message=f"{nutrient} {value:g} is outside tolerance of target {target:g}", actual=value, expected=target))
        accurate = False
      nutrition[nutrient] = value
    return nutrition, accurate

  def _classify(self, nutrient: str, value: float, target: float) -> str:
    tolerances = self._tolerances
    if nutrient == "calories":
      if target <= 0:
        deviation = 0.0 if value == 0 else math.inf
      else:
        deviation = abs(value - target) / target
      pass_band, fix_band = tolerances.calorie_pass_ratio, tolerances.calorie_fix_ratio
    else:
      deviation = abs(value - target)
      pass_band, fix_band = tolerances.macro_pass_grams, tolerances.macro_fix_grams

    if deviation <= pass_band + _EPSILON:
      return "pass"
    if deviation <= fix_band + _EPSILON:
      return "fix"
    return "fail"


def get_validation_stats(items: list[ValidatedItem]) -> dict[str, int]:
  """Summarize validation outcomes and issue severities."""
  issues = [issue for item in items for issue in item.issues]
  return {
    "total_items": len(items),
    "passed": sum(1 for item in items if item.validation_passed),
    "failed": sum(1 for item in items if not item.validation_passed),
    "auto_fixed_items": sum(1 for item in items if item.auto_fixes),
    "total_issues": len(issues),
    "critical": sum(1 for issue in issues if issue.severity == "critical"),
    "warnings": sum(1 for issue in issues if issue.severity == "warning"),
    "info": sum(1 for issue in issues if issue.severity == "info"),
    "fixed": sum(1 for issue in issues if issue.fixed),
  }
