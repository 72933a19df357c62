"""Shared data contracts exchanged between pipeline stages."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, NewType

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Storage-assigned identifier. Always an opaque string; never coerce to a number.
RecordId = NewType("RecordId", str)

Severity = Literal["critical", "warning", "info"]
NUTRIENTS: tuple[str, ...] = ("calories", "protein", "carbs", "fat")


class FeatureFlags(BaseModel):
  """Optional stages toggled per request."""

  model_config = ConfigDict(frozen=True)

  enable_image_generation: bool = True
  enable_upload: bool = True
  enable_validation: bool = True


class TargetConstraints(BaseModel):
  """Calorie and macro constraints applied while planning concepts."""

  model_config = ConfigDict(frozen=True)

  fitness_goal: str | None = None
  daily_calorie_target: int | None = Field(default=None, gt=0)
  meals_per_day: int = Field(default=3, ge=1, le=8)
  min_calories: int | None = Field(default=None, ge=0)
  max_calories: int | None = Field(default=None, ge=0)
  min_protein: int | None = Field(default=None, ge=0)
  max_protein: int | None = Field(default=None, ge=0)
  max_carbs: int | None = Field(default=None, ge=0)
  max_fat: int | None = Field(default=None, ge=0)


class GenerationOptions(BaseModel):
  """Item type filters, nutrition constraints and feature flags."""

  model_config = ConfigDict(frozen=True)

  meal_types: tuple[str, ...] = ()
  dietary_tags: tuple[str, ...] = ()
  main_ingredients: tuple[str, ...] = ()
  constraints: TargetConstraints = Field(default_factory=TargetConstraints)
  features: FeatureFlags = Field(default_factory=FeatureFlags)


class GenerationRequest(BaseModel):
  """Inputs for one generation batch. Immutable once the batch starts."""

  model_config = ConfigDict(frozen=True)

  total_count: int = Field(ge=0)
  chunk_size: int = Field(default=5, gt=0)
  options: GenerationOptions = Field(default_factory=GenerationOptions)


class ChunkDescriptor(BaseModel):
  """One chunk of a batch, addressed by its position in the plan."""

  model_config = ConfigDict(frozen=True)

  chunk_index: int = Field(ge=0)
  item_count: int = Field(gt=0)
  start_offset: int = Field(ge=0)


class NutritionTargets(BaseModel):
  """Per-serving nutrition targets for a concept."""

  model_config = ConfigDict(frozen=True)

  calories: float = Field(ge=0)
  protein: float = Field(ge=0)
  carbs: float = Field(ge=0)
  fat: float = Field(ge=0)

  def value(self, nutrient: str) -> float:
    return float(getattr(self, nutrient))


class NutrientRange(BaseModel):
  """Inclusive numeric range."""

  model_config = ConfigDict(frozen=True)

  minimum: float = Field(ge=0)
  maximum: float = Field(ge=0)


class Concept(BaseModel):
  """Planned outline for one recipe, prior to generation."""

  model_config = ConfigDict(frozen=True)

  concept_id: str
  name: str
  description: str
  category: str
  main_ingredient: str
  style: str
  dietary_tags: tuple[str, ...] = ()
  difficulty: Literal["easy", "medium", "hard"] = "medium"
  target_nutrition: NutritionTargets
  calorie_range: NutrientRange


class ConceptPlan(BaseModel):
  """Chunking strategy and concepts produced for one batch."""

  chunk_strategy: list[ChunkDescriptor] = Field(default_factory=list)
  concepts: list[Concept] = Field(default_factory=list)

  @model_validator(mode="after")
  def _check_alignment(self) -> ConceptPlan:
    planned = sum(chunk.item_count for chunk in self.chunk_strategy)
    if planned != len(self.concepts):
      raise ValueError(f"Chunk strategy covers {planned} items but {len(self.concepts)} concepts were planned.")
    return self

  def concepts_for_chunk(self, chunk: ChunkDescriptor) -> list[Concept]:
    """Return the concepts belonging to a chunk, in plan order."""
    return self.concepts[chunk.start_offset : chunk.start_offset + chunk.item_count]


class Ingredient(BaseModel):
  """Ingredient line as returned by the generator."""

  name: str | None = None
  amount: float | str | None = None
  unit: str | None = None


class GeneratedItem(BaseModel):
  """Raw output of the external generation step for one concept."""

  concept_ref: str
  raw_name: str | None = None
  raw_description: str | None = None
  raw_ingredients: list[Ingredient] | None = None
  raw_instructions: list[str] | None = None
  actual_nutrition: dict[str, Any] | None = None
  meal_types: list[str] = Field(default_factory=list)
  dietary_tags: list[str] = Field(default_factory=list)
  main_ingredient_tags: list[str] = Field(default_factory=list)
  prep_time_minutes: int | None = Field(default=None, ge=0)
  cook_time_minutes: int | None = Field(default=None, ge=0)
  servings: int | None = Field(default=None, ge=1)


class ValidationIssue(BaseModel):
  """A single finding raised while validating an item."""

  field: str
  severity: Severity
  message: str
  expected: float | None = None
  actual: float | None = None
  fixed: bool = False


class ValidatedItem(BaseModel):
  """Generated item after validation and auto-fixes."""

  concept_id: str
  item: GeneratedItem
  validation_passed: bool
  nutrition_accurate: bool = False
  issues: list[ValidationIssue] = Field(default_factory=list)
  auto_fixes: list[str] = Field(default_factory=list)

  @property
  def name(self) -> str:
    return self.item.raw_name or self.concept_id


class SavedRecord(BaseModel):
  """A persisted recipe, referenced downstream only by its storage id."""

  id: RecordId
  concept_id: str
  name: str
  description: str
  meal_types: list[str] = Field(default_factory=list)
  image_url: str | None = None


class SaveFailure(BaseModel):
  """An item that could not be written."""

  concept_id: str
  name: str
  batch_index: int | None = None
  reason: str


class SaveReport(BaseModel):
  """Outcome of persisting a list of validated items."""

  saved: list[SavedRecord] = Field(default_factory=list)
  failures: list[SaveFailure] = Field(default_factory=list)
  skipped: list[str] = Field(default_factory=list)
  errors: list[str] = Field(default_factory=list)
  transactions: int = 0


class ImageAsset(BaseModel):
  """Image produced for a saved record."""

  source_item_id: RecordId
  image_bytes: bytes | None = Field(default=None, repr=False)
  source_url: str | None = None
  perceptual_hash: str | None = None
  prompt: str = ""
  retry_count: int = 0
  is_placeholder: bool = False
  quality_score: int = 100
  generated_at: datetime | None = None
  uploaded_url: str | None = None


class UploadResult(BaseModel):
  """Outcome of uploading one image asset."""

  source_item_id: RecordId
  uploaded_url: str
  was_uploaded: bool
  duration_ms: float
  error: str | None = None


class ValidationBatch(BaseModel):
  """Generated items and their originating concepts as two aligned lists."""

  batch_id: str
  items: list[GeneratedItem]
  concepts: list[Concept]
  chunk_index: int | None = None


class PersistenceBatch(BaseModel):
  """Validated items to persist for one batch."""

  batch_id: str
  items: list[ValidatedItem]
  chunk_index: int | None = None


class ImageRequest(BaseModel):
  """A saved record that needs an image, scoped to its batch."""

  batch_id: str
  record: SavedRecord


class GenerationChunk(BaseModel):
  """Concepts of one chunk sent to the external generator."""

  batch_id: str
  chunk_index: int
  concepts: list[Concept]
  options: GenerationOptions = Field(default_factory=GenerationOptions)
