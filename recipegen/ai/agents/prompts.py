"""Prompt helpers shared by agents."""

from __future__ import annotations

import json
from typing import Any

from recipegen.ai.pipeline.contracts import Concept, GenerationOptions, SavedRecord

# Appended in turn when an image must be regenerated because it looked too similar to an earlier one.
IMAGE_VARIATION_CUES: tuple[str, ...] = (
  "overhead flat-lay composition on a dark slate surface",
  "45-degree angle on a rustic wooden table with soft window light",
  "close-up with shallow depth of field on a bright marble counter",
  "side view in a ceramic bowl with colorful garnish and linen napkin",
)

_RECIPE_ITEM_SCHEMA: dict[str, Any] = {
  "type": "object",
  "properties": {
    "concept_id": {"type": "string"},
    "name": {"type": "string"},
    "description": {"type": "string"},
    "meal_types": {"type": "array", "items": {"type": "string"}},
    "dietary_tags": {"type": "array", "items": {"type": "string"}},
    "main_ingredient_tags": {"type": "array", "items": {"type": "string"}},
    "ingredients": {
      "type": "array",
      "items": {"type": "object", "properties": {"name": {"type": "string"}, "amount": {"type": "string"}, "unit": {"type": "string"}}, "required": ["name", "amount", "unit"]},
    },
    "instructions": {"type": "array", "items": {"type": "string"}},
    "prep_time_minutes": {"type": "integer"},
    "cook_time_minutes": {"type": "integer"},
    "servings": {"type": "integer"},
    "estimated_nutrition": {
      "type": "object",
      "properties": {"calories": {"type": "number"}, "protein": {"type": "number"}, "carbs": {"type": "number"}, "fat": {"type": "number"}},
      "required": ["calories", "protein", "carbs", "fat"],
    },
  },
  "required": ["concept_id", "name", "description", "meal_types", "ingredients", "instructions", "estimated_nutrition"],
}


def recipe_batch_schema() -> dict[str, Any]:
  """Return the JSON schema the generator must follow for a chunk."""
  return {"type": "object", "properties": {"recipes": {"type": "array", "items": _RECIPE_ITEM_SCHEMA}}, "required": ["recipes"]}


def render_recipe_prompt(concepts: list[Concept], options: GenerationOptions) -> str:
  """Build the generation prompt for one chunk of concepts."""
  planned = [
    {
      "concept_id": concept.concept_id,
      "name": concept.name,
      "meal_type": concept.category,
      "main_ingredient": concept.main_ingredient,
      "difficulty": concept.difficulty,
      "dietary_tags": list(concept.dietary_tags),
      "target_nutrition": concept.target_nutrition.model_dump(),
    }
    for concept in concepts
  ]
  lines = [
    f"Create {len(concepts)} complete recipes, one for each planned concept below, in the same order.",
    "Echo each concept_id unchanged. Nutrition values are per serving and must stay close to the targets.",
    "Use realistic ingredient amounts and step-by-step instructions.",
  ]
  if options.dietary_tags:
    lines.append(f"Every recipe must satisfy: {', '.join(options.dietary_tags)}.")
  lines.append("Planned concepts:")
  lines.append(json.dumps(planned, ensure_ascii=True, indent=2))
  return "\n".join(lines)


def render_image_prompt(record: SavedRecord, *, variation: int = 0) -> str:
  """Build a food photography prompt; variations steer away from earlier images."""
  meal_type = (record.meal_types[0] if record.meal_types else "meal").lower()
  description = record.description.strip().rstrip(".")
  prompt = f"Professional food photography of {record.name}: {description}. Served as a {meal_type}, appetizing and realistic, natural lighting, no text, no watermarks."
  if variation > 0:
    cue = IMAGE_VARIATION_CUES[(variation - 1) % len(IMAGE_VARIATION_CUES)]
    prompt = f"{prompt} Style variation {variation}: {cue}."
  return prompt
