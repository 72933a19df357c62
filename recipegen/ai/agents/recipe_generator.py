"""Recipe generator: sends a chunk of concepts to the LLM and maps the reply to items."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from recipegen.ai.agents.base import BaseAgent
from recipegen.ai.agents.prompts import recipe_batch_schema, render_recipe_prompt
from recipegen.ai.errors import StructuralError, TransientProviderError
from recipegen.ai.pipeline.contracts import Concept, GeneratedItem, GenerationChunk
from recipegen.ai.providers.base import AIModel
from recipegen.ai.retry import RetryPolicy

logger = logging.getLogger(__name__)


class RecipeGenerator(BaseAgent[GenerationChunk, list[GeneratedItem]]):
  """Generate one chunk of recipes through the structured LLM call."""

  name = "RecipeGenerator"

  def __init__(self, model: AIModel, *, timeout_seconds: float = 90.0, retry_policy: RetryPolicy | None = None) -> None:
    super().__init__(retry_policy=retry_policy)
    self._model = model
    self._timeout_seconds = timeout_seconds

  async def run(self, input_data: GenerationChunk) -> list[GeneratedItem]:
    prompt = render_recipe_prompt(input_data.concepts, input_data.options)
    try:
      response = await asyncio.wait_for(self._model.generate_structured(prompt, recipe_batch_schema()), timeout=self._timeout_seconds)
    except asyncio.TimeoutError as exc:
      raise TransientProviderError(f"Recipe generation timed out after {self._timeout_seconds:g}s", provider=getattr(self._model, "name", None)) from exc

    raw_recipes = response.content.get("recipes")
    if not isinstance(raw_recipes, list):
      raise StructuralError("Generator response has no recipes list", batch_id=input_data.batch_id, chunk_index=input_data.chunk_index, expected="list", actual=type(raw_recipes).__name__)

    items = _align(raw_recipes, input_data)
    logger.info("Generated batch_id=%s chunk_index=%d recipes=%d", input_data.batch_id, input_data.chunk_index, len(items))
    return items


def _align(raw_recipes: list[Any], chunk: GenerationChunk) -> list[GeneratedItem]:
  """Order generated recipes by concept, keyed on the echoed concept id."""
  if len(raw_recipes) != len(chunk.concepts):
    raise StructuralError("Generator returned a different number of recipes than concepts", batch_id=chunk.batch_id, chunk_index=chunk.chunk_index, expected=len(chunk.concepts), actual=len(raw_recipes))

  by_id: dict[str, dict[str, Any]] = {}
  for raw in raw_recipes:
    if isinstance(raw, dict) and isinstance(raw.get("concept_id"), str):
      by_id[raw["concept_id"]] = raw

  items: list[GeneratedItem] = []
  for position, concept in enumerate(chunk.concepts):
    raw = by_id.get(concept.concept_id)
    # Positional fallback only when the model echoed no ids at all.
    if raw is None and not by_id and isinstance(raw_recipes[position], dict):
      raw = raw_recipes[position]
    if raw is None:
      raise StructuralError("Generator response is missing a planned concept", batch_id=chunk.batch_id, chunk_index=chunk.chunk_index, expected=concept.concept_id, actual=sorted(by_id))
    items.append(_to_generated_item(raw, concept, chunk))
  return items


def _to_generated_item(raw: dict[str, Any], concept: Concept, chunk: GenerationChunk) -> GeneratedItem:
  try:
    return GeneratedItem(
      concept_ref=concept.concept_id,
      raw_name=raw.get("name"),
      raw_description=raw.get("description"),
      raw_ingredients=raw.get("ingredients"),
      raw_instructions=raw.get("instructions"),
      actual_nutrition=raw.get("estimated_nutrition"),
      meal_types=raw.get("meal_types") or [concept.category],
      dietary_tags=raw.get("dietary_tags") or list(concept.dietary_tags),
      main_ingredient_tags=raw.get("main_ingredient_tags") or [concept.main_ingredient],
      prep_time_minutes=raw.get("prep_time_minutes"),
      cook_time_minutes=raw.get("cook_time_minutes"),
      servings=raw.get("servings"),
    )
  except ValidationError as exc:
    raise StructuralError(f"Generated recipe for concept {concept.concept_id} has malformed fields: {exc.error_count()} errors", batch_id=chunk.batch_id, chunk_index=chunk.chunk_index) from exc
