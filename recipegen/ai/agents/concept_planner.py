"""Concept planner: chunking, diverse concepts and nutrition targets."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from recipegen.ai.agents.base import BaseAgent
from recipegen.ai.errors import InvalidRequestError
from recipegen.ai.pipeline.contracts import ChunkDescriptor, Concept, ConceptPlan, GenerationRequest, NutrientRange, NutritionTargets, TargetConstraints
from recipegen.ai.retry import RetryPolicy
from recipegen.utils.ids import generate_concept_id

logger = logging.getLogger(__name__)

DEFAULT_DAILY_CALORIES = 2000
DEFAULT_MEAL_TYPES: tuple[str, ...] = ("breakfast", "lunch", "dinner", "snack")
DEFAULT_MAIN_INGREDIENTS: tuple[str, ...] = (
  "chicken",
  "salmon",
  "turkey",
  "beef",
  "shrimp",
  "tofu",
  "eggs",
  "lentils",
  "chickpeas",
  "quinoa",
  "sweet potato",
  "greek yogurt",
  "tempeh",
  "cod",
  "black beans",
  "oats",
)
STYLES: tuple[str, ...] = ("Mediterranean", "Thai", "Mexican", "Japanese", "Indian", "Greek", "Korean", "Moroccan", "Tuscan", "Cajun", "Middle Eastern", "Nordic", "Californian", "Vietnamese", "Peruvian", "Caribbean")
DISH_FORMS: dict[str, tuple[str, ...]] = {
  "breakfast": ("Scramble", "Oat Bowl", "Frittata", "Parfait", "Hash", "Breakfast Wrap"),
  "lunch": ("Bowl", "Salad", "Wrap", "Soup", "Grain Bowl", "Lettuce Cups"),
  "dinner": ("Skillet", "Sheet-Pan Bake", "Curry", "Stir-Fry", "Roast", "Stew"),
  "snack": ("Bites", "Dip", "Energy Balls", "Crisps", "Skewers", "Roll-Ups"),
}
DEFAULT_DISH_FORMS: tuple[str, ...] = ("Plate", "Bowl", "Skillet", "Bake")

# Share of an average meal's calories taken by each category.
CATEGORY_CALORIE_WEIGHTS: dict[str, float] = {"breakfast": 0.85, "lunch": 1.0, "dinner": 1.15, "snack": 0.45}
_RANGE_SPREAD = 0.10


@dataclass(frozen=True)
class FitnessProfile:
  """Macro split (fraction of calories) and calorie modifier for a fitness goal."""

  protein_ratio: float
  carbs_ratio: float
  fat_ratio: float
  calorie_modifier: float


FITNESS_PROFILES: dict[str, FitnessProfile] = {
  "weight_loss": FitnessProfile(protein_ratio=0.35, carbs_ratio=0.30, fat_ratio=0.35, calorie_modifier=0.85),
  "muscle_gain": FitnessProfile(protein_ratio=0.30, carbs_ratio=0.45, fat_ratio=0.25, calorie_modifier=1.15),
  "maintenance": FitnessProfile(protein_ratio=0.25, carbs_ratio=0.45, fat_ratio=0.30, calorie_modifier=1.0),
  "athletic_performance": FitnessProfile(protein_ratio=0.25, carbs_ratio=0.55, fat_ratio=0.20, calorie_modifier=1.2),
  "general_health": FitnessProfile(protein_ratio=0.20, carbs_ratio=0.50, fat_ratio=0.30, calorie_modifier=1.0),
}


def normalize_goal(goal: str | None) -> str:
  """Normalize a free-form fitness goal into a profile key."""
  if not goal:
    return "general_health"
  key = goal.strip().lower().replace("-", "_").replace(" ", "_")
  return key if key in FITNESS_PROFILES else "general_health"


def round_half_up(value: float, places: int = 0) -> float:
  """Round half away from zero, unlike the builtin banker's rounding."""
  quantum = Decimal(1).scaleb(-places)
  return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def build_chunk_strategy(total_count: int, chunk_size: int) -> list[ChunkDescriptor]:
  """Split a batch into fixed-size chunks with the remainder last."""
  if total_count < 0:
    raise InvalidRequestError("total_count must not be negative.")
  if chunk_size <= 0:
    raise InvalidRequestError("chunk_size must be a positive integer.")

  chunks: list[ChunkDescriptor] = []
  offset = 0
  while offset < total_count:
    item_count = min(chunk_size, total_count - offset)
    chunks.append(ChunkDescriptor(chunk_index=len(chunks), item_count=item_count, start_offset=offset))
    offset += item_count
  return chunks


def compute_targets(category: str, constraints: TargetConstraints) -> tuple[NutritionTargets, NutrientRange]:
  """Derive per-serving targets for a category from the fitness goal and constraints."""
  profile = FITNESS_PROFILES[normalize_goal(constraints.fitness_goal)]
  daily = constraints.daily_calorie_target or DEFAULT_DAILY_CALORIES
  per_meal = daily * profile.calorie_modifier / constraints.meals_per_day
  calories = per_meal * CATEGORY_CALORIE_WEIGHTS.get(category, 1.0)
  if constraints.min_calories is not None:
    calories = max(calories, constraints.min_calories)
  if constraints.max_calories is not None:
    calories = min(calories, constraints.max_calories)

  protein = calories * profile.protein_ratio / 4
  carbs = calories * profile.carbs_ratio / 4
  fat = calories * profile.fat_ratio / 9
  if constraints.min_protein is not None:
    protein = max(protein, constraints.min_protein)
  if constraints.max_protein is not None:
    protein = min(protein, constraints.max_protein)
  if constraints.max_carbs is not None:
    carbs = min(carbs, constraints.max_carbs)
  if constraints.max_fat is not None:
    fat = min(fat, constraints.max_fat)

  low = calories * (1 - _RANGE_SPREAD)
  high = calories * (1 + _RANGE_SPREAD)
  if constraints.min_calories is not None:
    low = max(low, constraints.min_calories)
  if constraints.max_calories is not None:
    high = min(high, constraints.max_calories)

  targets = NutritionTargets(calories=round_half_up(calories), protein=round_half_up(protein), carbs=round_half_up(carbs), fat=round_half_up(fat))
  return targets, NutrientRange(minimum=round_half_up(low), maximum=round_half_up(high))


def validate_constraints(constraints: TargetConstraints) -> None:
  """Reject constraint sets whose minimums exceed their maximums."""
  pairs = (("min_calories", "max_calories"), ("min_protein", "max_protein"))
  for low_name, high_name in pairs:
    low = getattr(constraints, low_name)
    high = getattr(constraints, high_name)
    if low is not None and high is not None and low > high:
      raise InvalidRequestError(f"{low_name} ({low}) must not exceed {high_name} ({high}).")


class ConceptPlanner(BaseAgent[GenerationRequest, ConceptPlan]):
  """Plan chunked, non-duplicate recipe concepts for a batch."""

  name = "ConceptPlanner"

  def __init__(self, *, retry_policy: RetryPolicy | None = None, seed: int | None = None) -> None:
    super().__init__(retry_policy=retry_policy)
    self._seed = seed

  async def run(self, input_data: GenerationRequest) -> ConceptPlan:
    return self.plan(input_data)

  def plan(self, request: GenerationRequest) -> ConceptPlan:
    """Compute the chunk strategy and one concept per item."""
    chunks = build_chunk_strategy(request.total_count, request.chunk_size)
    constraints = request.options.constraints
    validate_constraints(constraints)
    if request.total_count == 0:
      return ConceptPlan()

    rng = random.Random(self._seed)
    categories = tuple(meal.strip().lower() for meal in request.options.meal_types if meal.strip()) or DEFAULT_MEAL_TYPES
    ingredients = list(ingredient.strip().lower() for ingredient in request.options.main_ingredients if ingredient.strip()) or list(DEFAULT_MAIN_INGREDIENTS)
    styles = list(STYLES)
    rng.shuffle(ingredients)
    rng.shuffle(styles)

    goal = normalize_goal(constraints.fitness_goal)
    seen_names: set[str] = set()
    seen_pairs: set[tuple[str, str]] = set()
    concepts: list[Concept] = []
    for index in range(request.total_count):
      category = categories[index % len(categories)]
      name, ingredient, style = self._pick_unique(index, category, ingredients, styles, seen_names, seen_pairs)
      seen_names.add(name.lower())
      seen_pairs.add((category, ingredient))
      targets, calorie_range = compute_targets(category, constraints)
      difficulty = "easy" if category == "snack" else ("easy", "medium", "hard")[index % 3]
      description = f"A {style}-inspired {category} built around {ingredient}, planned for a {goal.replace('_', ' ')} goal at about {int(targets.calories)} kcal per serving."
      concepts.append(
        Concept(
          concept_id=generate_concept_id(),
          name=name,
          description=description,
          category=category,
          main_ingredient=ingredient,
          style=style,
          dietary_tags=tuple(request.options.dietary_tags),
          difficulty=difficulty,
          target_nutrition=targets,
          calorie_range=calorie_range,
        )
      )

    logger.info("Planned %d concepts in %d chunks (goal=%s)", len(concepts), len(chunks), goal)
    return ConceptPlan(chunk_strategy=chunks, concepts=concepts)

  def _pick_unique(self, index: int, category: str, ingredients: list[str], styles: list[str], seen_names: set[str], seen_pairs: set[tuple[str, str]]) -> tuple[str, str, str]:
    forms = DISH_FORMS.get(category, DEFAULT_DISH_FORMS)
    form = forms[index % len(forms)]
    rotated_ingredients = [ingredients[(index + offset) % len(ingredients)] for offset in range(len(ingredients))]
    rotated_styles = [styles[(index + offset) % len(styles)] for offset in range(len(styles))]

    # Prefer an unused (category, ingredient) pair, rotating the style on name collisions.
    for ingredient in rotated_ingredients:
      if (category, ingredient) in seen_pairs:
        continue
      for style in rotated_styles:
        name = _compose_name(style, ingredient, form)
        if name.lower() not in seen_names:
          return name, ingredient, style

    # Pairs exhausted: any unused name across styles and dish forms.
    for ingredient in rotated_ingredients:
      for style in rotated_styles:
        for alt_form in forms:
          name = _compose_name(style, ingredient, alt_form)
          if name.lower() not in seen_names:
            return name, ingredient, style

    ingredient = rotated_ingredients[0]
    style = rotated_styles[0]
    base = _compose_name(style, ingredient, form)
    variation = 2
    while f"{base} (Variation {variation})".lower() in seen_names:
      variation += 1
    return f"{base} (Variation {variation})", ingredient, style


def _compose_name(style: str, ingredient: str, form: str) -> str:
  return f"{style} {ingredient.title()} {form}"
