"""Shared fixtures and in-memory doubles for pipeline tests."""

from __future__ import annotations

import asyncio
import io
import json
import random
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import pytest
from PIL import Image

from recipegen.ai.agents.concept_planner import ConceptPlanner
from recipegen.ai.agents.image_generator import ImageGenerator
from recipegen.ai.agents.image_storage import ImageStorageUploader
from recipegen.ai.agents.nutrition_validator import NutritionValidator
from recipegen.ai.agents.persistence import PersistenceOrchestrator
from recipegen.ai.agents.recipe_generator import RecipeGenerator
from recipegen.ai.coordinator import Coordinator
from recipegen.ai.pipeline.contracts import RecordId
from recipegen.ai.providers.base import AIModel, GeneratedImage, SimpleModelResponse, StructuredModelResponse
from recipegen.ai.retry import RetryPolicy
from recipegen.jobs.progress import ProgressMonitor
from recipegen.storage.recipes_repo import RecipeRecord, RecipeRow

PLACEHOLDER_URL = "https://placeholder.test/recipe.webp"
FAST_RETRY = RetryPolicy(max_retries=2, base_delay_ms=0, max_delay_ms=0, jitter=False)


@pytest.fixture
def anyio_backend():
  return "asyncio"


def make_image(seed: int) -> bytes:
  """Return a PNG whose difference hash is effectively random per seed."""
  rng = random.Random(seed)
  grid = Image.new("L", (9, 8))
  grid.putdata([rng.randrange(256) for _ in range(72)])
  image = grid.resize((144, 128), Image.Resampling.NEAREST).convert("RGB")
  buffer = io.BytesIO()
  image.save(buffer, format="PNG")
  return buffer.getvalue()


def planned_concepts(prompt: str) -> list[dict[str, Any]]:
  """Read the planned concept list back out of a generation prompt."""
  return json.loads(prompt.split("Planned concepts:\n", 1)[1])


def recipe_for(concept: dict[str, Any]) -> dict[str, Any]:
  """Build a complete recipe that matches a planned concept's targets exactly."""
  return {
    "concept_id": concept["concept_id"],
    "name": concept["name"],
    "description": f"A balanced {concept['meal_type']} with {concept['main_ingredient']}.",
    "meal_types": [concept["meal_type"]],
    "dietary_tags": concept["dietary_tags"],
    "main_ingredient_tags": [concept["main_ingredient"]],
    "ingredients": [{"name": concept["main_ingredient"], "amount": "150", "unit": "g"}, {"name": "olive oil", "amount": "1", "unit": "tbsp"}],
    "instructions": ["Prepare the ingredients.", "Cook until done.", "Serve warm."],
    "prep_time_minutes": 10,
    "cook_time_minutes": 20,
    "servings": 2,
    "estimated_nutrition": dict(concept["target_nutrition"]),
  }


class FakeModel(AIModel):
  """Scriptable stand-in for the OpenAI model."""

  name = "fake-model"
  supports_structured_output = True

  def __init__(self) -> None:
    self.structured_calls = 0
    self.image_calls = 0
    self.image_prompts: list[str] = []
    # Exceptions raised by successive calls before normal behaviour resumes.
    self.recipe_errors: list[BaseException] = []
    self.image_errors: list[BaseException] = []
    # Concept names whose generation call always fails.
    self.failing_names: set[str] = set()
    # Optional per-recipe mutation hook.
    self.mutate: Callable[[dict[str, Any]], None] | None = None
    # Seeds for successive images; unique seeds are used once this runs out.
    self.image_seeds: list[int] = []
    self.image_delay = 0.0
    self._next_seed = 10_000

  async def generate(self, prompt: str) -> SimpleModelResponse:
    return SimpleModelResponse(content="ok")

  async def generate_structured(self, prompt: str, schema: dict[str, Any]) -> StructuredModelResponse:
    self.structured_calls += 1
    if self.recipe_errors:
      raise self.recipe_errors.pop(0)
    concepts = planned_concepts(prompt)
    if any(concept["name"] in self.failing_names for concept in concepts):
      raise RuntimeError("model rejected the chunk")
    recipes = [recipe_for(concept) for concept in concepts]
    if self.mutate is not None:
      for recipe in recipes:
        self.mutate(recipe)
    return StructuredModelResponse(content={"recipes": recipes})

  async def generate_image(self, prompt: str) -> GeneratedImage:
    self.image_calls += 1
    self.image_prompts.append(prompt)
    if self.image_delay:
      await asyncio.sleep(self.image_delay)
    if self.image_errors:
      raise self.image_errors.pop(0)
    if self.image_seeds:
      seed = self.image_seeds.pop(0)
    else:
      seed = self._next_seed
      self._next_seed += 1
    return GeneratedImage(image_bytes=make_image(seed), source_url=f"https://provider.test/images/{seed}.png")


class _StagingWriter:
  def __init__(self, store: InMemoryRecipeStore) -> None:
    self._store = store
    self.staged: dict[str, RecipeRow] = {}

  async def insert(self, row: RecipeRow) -> RecordId:
    if row.name in self._store.failing_names:
      raise RuntimeError(f"insert rejected for {row.name}")
    record_id = str(uuid.uuid4())
    self.staged[record_id] = row
    return RecordId(record_id)


class InMemoryRecipeStore:
  """Recipe store whose transactions stage inserts and commit them together."""

  def __init__(self) -> None:
    self.rows: dict[str, RecipeRow] = {}
    self.image_urls: dict[str, str] = {}
    self.transactions_started = 0
    self.transactions_committed = 0
    # Zero-based transaction numbers whose commit fails.
    self.failing_transactions: set[int] = set()
    # Row names whose insert fails.
    self.failing_names: set[str] = set()
    # Errors raised by successive commits before normal behaviour resumes.
    self.commit_errors: list[BaseException] = []

  @asynccontextmanager
  async def transaction(self) -> AsyncIterator[_StagingWriter]:
    number = self.transactions_started
    self.transactions_started += 1
    writer = _StagingWriter(self)
    yield writer
    if self.commit_errors:
      raise self.commit_errors.pop(0)
    if number in self.failing_transactions:
      raise RuntimeError(f"commit failed for transaction {number}")
    self.rows.update(writer.staged)
    self.transactions_committed += 1

  async def insert_one(self, row: RecipeRow) -> RecordId:
    async with self.transaction() as writer:
      return await writer.insert(row)

  async def update_image_url(self, recipe_id: RecordId, image_url: str) -> int:
    if recipe_id not in self.rows:
      return 0
    self.image_urls[recipe_id] = image_url
    return 1

  async def get(self, recipe_id: RecordId) -> RecipeRecord | None:
    row = self.rows.get(recipe_id)
    if row is None:
      return None
    return RecipeRecord(
      id=recipe_id,
      batch_id=row.batch_id,
      concept_id=row.concept_id,
      name=row.name,
      description=row.description,
      meal_types=list(row.meal_types),
      calories_kcal=row.calories_kcal,
      protein_grams=row.protein_grams,
      carbs_grams=row.carbs_grams,
      fat_grams=row.fat_grams,
      image_url=self.image_urls.get(recipe_id),
    )


class FakeBlobStorage:
  """Blob storage double that tracks concurrent uploads."""

  def __init__(self) -> None:
    self.objects: dict[str, tuple[bytes, str]] = {}
    self.calls = 0
    self.in_flight = 0
    self.peak_in_flight = 0
    self.delay = 0.0
    self.failing_keys: set[str] = set()
    self.fail_all = False

  async def upload_image(self, image_bytes: bytes, object_name: str, content_type: str) -> str:
    self.calls += 1
    self.in_flight += 1
    self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
    try:
      await asyncio.sleep(self.delay)
      if self.fail_all or object_name in self.failing_keys:
        raise OSError("storage unavailable")
      self.objects[object_name] = (image_bytes, content_type)
      return f"https://storage.test/recipes-bucket/{object_name}"
    finally:
      self.in_flight -= 1


@pytest.fixture
def fake_model() -> FakeModel:
  return FakeModel()


@pytest.fixture
def recipe_store() -> InMemoryRecipeStore:
  return InMemoryRecipeStore()


@pytest.fixture
def blob_storage() -> FakeBlobStorage:
  return FakeBlobStorage()


@pytest.fixture
def coordinator_factory(fake_model: FakeModel, recipe_store: InMemoryRecipeStore, blob_storage: FakeBlobStorage) -> Callable[..., Coordinator]:
  """Build a coordinator over the in-memory doubles with instant retries."""

  def _build(*, upload_concurrency: int = 5, chunk_concurrency: int = 1, max_batch_items: int = 100, upload_timeout_seconds: float = 5.0) -> Coordinator:
    return Coordinator(
      planner=ConceptPlanner(retry_policy=FAST_RETRY, seed=7),
      generator=RecipeGenerator(fake_model, timeout_seconds=5.0, retry_policy=FAST_RETRY),
      validator=NutritionValidator(retry_policy=FAST_RETRY),
      persistence=PersistenceOrchestrator(recipe_store, batch_size=10, retry_policy=FAST_RETRY),
      image_generator=ImageGenerator(fake_model, timeout_seconds=5.0, retry_policy=FAST_RETRY),
      uploader=ImageStorageUploader(blob_storage, placeholder_url=PLACEHOLDER_URL, concurrency=upload_concurrency, timeout_seconds=upload_timeout_seconds),
      monitor=ProgressMonitor(),
      max_batch_items=max_batch_items,
      chunk_concurrency=chunk_concurrency,
      placeholder_url=PLACEHOLDER_URL,
    )

  return _build
