"""Repository for generated recipes using PostgreSQL."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from decimal import Decimal
from typing import Any, Protocol

import msgspec
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recipegen.ai.pipeline.contracts import RecordId
from recipegen.core.database import get_session_factory
from recipegen.schema.recipes import Recipe
from recipegen.utils.ids import generate_record_id


class RecipeRow(msgspec.Struct):
  """Storage-format recipe ready to insert."""

  batch_id: str
  concept_id: str
  name: str
  description: str
  meal_types: list[str]
  dietary_tags: list[str]
  main_ingredient_tags: list[str]
  ingredients: list[dict[str, Any]]
  instructions: list[str]
  calories_kcal: Decimal
  protein_grams: Decimal
  carbs_grams: Decimal
  fat_grams: Decimal
  prep_time_minutes: int | None = None
  cook_time_minutes: int | None = None
  servings: int | None = None


class RecipeRecord(msgspec.Struct):
  """Stored recipe as returned by reads."""

  id: str
  batch_id: str
  concept_id: str
  name: str
  description: str
  meal_types: list[str]
  calories_kcal: Decimal
  protein_grams: Decimal
  carbs_grams: Decimal
  fat_grams: Decimal
  image_url: str | None


class RecipeWriter(Protocol):
  """Inserts rows inside an open transaction."""

  async def insert(self, row: RecipeRow) -> RecordId:
    """Insert a row and return its storage-assigned id."""


class RecipeStore(Protocol):
  """Repository contract for recipe persistence."""

  def transaction(self) -> AbstractAsyncContextManager[RecipeWriter]:
    """Open a transaction; all inserts roll back together on error."""

  async def insert_one(self, row: RecipeRow) -> RecordId:
    """Insert a single row in its own transaction."""

  async def update_image_url(self, recipe_id: RecordId, image_url: str) -> int:
    """Set the image URL for a recipe and return the number of rows updated."""

  async def get(self, recipe_id: RecordId) -> RecipeRecord | None:
    """Fetch a recipe by id."""


class _SessionRecipeWriter:
  def __init__(self, session: AsyncSession) -> None:
    self._session = session

  async def insert(self, row: RecipeRow) -> RecordId:
    recipe = Recipe(id=generate_record_id(), **msgspec.structs.asdict(row))
    self._session.add(recipe)
    await self._session.flush()
    return RecordId(recipe.id)


class PostgresRecipesRepository:
  """Persist and retrieve recipes from Postgres using SQLAlchemy."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  @asynccontextmanager
  async def transaction(self) -> AsyncIterator[RecipeWriter]:
    async with self._session_factory() as session:
      async with session.begin():
        yield _SessionRecipeWriter(session)

  async def insert_one(self, row: RecipeRow) -> RecordId:
    async with self.transaction() as writer:
      return await writer.insert(row)

  async def update_image_url(self, recipe_id: RecordId, image_url: str) -> int:
    async with self._session_factory() as session:
      async with session.begin():
        result = await session.execute(update(Recipe).where(Recipe.id == recipe_id).values(image_url=image_url))
        return int(result.rowcount or 0)

  async def get(self, recipe_id: RecordId) -> RecipeRecord | None:
    async with self._session_factory() as session:
      recipe = await session.scalar(select(Recipe).where(Recipe.id == recipe_id))
      if recipe is None:
        return None
      return _to_record(recipe)


def _to_record(recipe: Recipe) -> RecipeRecord:
  return RecipeRecord(
    id=recipe.id,
    batch_id=recipe.batch_id,
    concept_id=recipe.concept_id,
    name=recipe.name,
    description=recipe.description,
    meal_types=list(recipe.meal_types or []),
    calories_kcal=recipe.calories_kcal,
    protein_grams=recipe.protein_grams,
    carbs_grams=recipe.carbs_grams,
    fat_grams=recipe.fat_grams,
    image_url=recipe.image_url,
  )
