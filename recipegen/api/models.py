from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

from recipegen.ai.pipeline.contracts import FeatureFlags, GenerationOptions, GenerationRequest, TargetConstraints
from recipegen.jobs.models import BatchPhase, BatchProgress


class BatchFeatures(BaseModel):
  """Optional pipeline stages, all enabled by default."""

  enable_image_generation: bool = True
  enable_upload: bool = True
  enable_validation: bool = True
  model_config = ConfigDict(extra="forbid")


class CreateBatchRequest(BaseModel):
  """Request payload for starting a recipe generation batch."""

  total_count: StrictInt = Field(description="Number of recipes to generate (1-100 by default).", examples=[20])
  chunk_size: StrictInt | None = Field(default=None, gt=0, description="Recipes per generation call. Defaults to the server setting.")
  meal_types: list[StrictStr] = Field(default_factory=list, max_length=8, description="Meal categories to rotate through.", examples=[["breakfast", "dinner"]])
  dietary_tags: list[StrictStr] = Field(default_factory=list, max_length=10, examples=[["gluten-free"]])
  main_ingredients: list[StrictStr] = Field(default_factory=list, max_length=30, description="Main ingredients to draw concepts from.")
  fitness_goal: StrictStr | None = Field(default=None, examples=["muscle_gain"])
  daily_calorie_target: StrictInt | None = Field(default=None, gt=0)
  meals_per_day: StrictInt = Field(default=3, ge=1, le=8)
  min_calories: StrictInt | None = Field(default=None, ge=0)
  max_calories: StrictInt | None = Field(default=None, ge=0)
  min_protein: StrictInt | None = Field(default=None, ge=0)
  max_protein: StrictInt | None = Field(default=None, ge=0)
  max_carbs: StrictInt | None = Field(default=None, ge=0)
  max_fat: StrictInt | None = Field(default=None, ge=0)
  features: BatchFeatures = Field(default_factory=BatchFeatures)
  model_config = ConfigDict(extra="forbid")

  def to_generation_request(self, default_chunk_size: int) -> GenerationRequest:
    constraints = TargetConstraints(
      fitness_goal=self.fitness_goal,
      daily_calorie_target=self.daily_calorie_target,
      meals_per_day=self.meals_per_day,
      min_calories=self.min_calories,
      max_calories=self.max_calories,
      min_protein=self.min_protein,
      max_protein=self.max_protein,
      max_carbs=self.max_carbs,
      max_fat=self.max_fat,
    )
    options = GenerationOptions(
      meal_types=tuple(self.meal_types),
      dietary_tags=tuple(self.dietary_tags),
      main_ingredients=tuple(self.main_ingredients),
      constraints=constraints,
      features=FeatureFlags(**self.features.model_dump()),
    )
    # Negative counts are rejected by the coordinator with its own message.
    return GenerationRequest.model_construct(total_count=self.total_count, chunk_size=self.chunk_size or default_chunk_size, options=options)


class BatchCreateResponse(BaseModel):
  """Response payload for batch creation."""

  batch_id: StrictStr
  status: BatchPhase = "planning"
  total_items: StrictInt


class BatchErrorModel(BaseModel):
  phase: str
  message: str
  item_ref: str | None = None
  chunk_index: int | None = None
  timestamp: str | None = None


class BatchStatusResponse(BaseModel):
  """Progress payload for a batch."""

  batch_id: StrictStr
  total_items: int
  completed_items: int
  failed_items: int
  total_chunks: int
  completed_chunks: int
  current_phase: BatchPhase
  progress: float
  per_agent_status: dict[str, str]
  start_time: str | None = None
  estimated_completion_time: str | None = None
  finished_at: str | None = None
  errors: list[BatchErrorModel] = Field(default_factory=list)

  @classmethod
  def from_progress(cls, progress: BatchProgress) -> BatchStatusResponse:
    return cls.model_validate(progress.to_dict())


class BatchCancelResponse(BaseModel):
  batch_id: StrictStr
  cancelled: bool


class MetricsResponse(BaseModel):
  """Aggregate agent metrics keyed by agent name."""

  agents: dict[str, dict[str, Any]]
  active_batches: int
