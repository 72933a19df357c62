from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from recipegen.core.database import Base
from recipegen.utils.ids import generate_record_id


class Recipe(Base):
  """Persist generated recipes with fixed-precision nutrition values."""

  __tablename__ = "recipes"

  # as_uuid=False keeps ids as strings end to end.
  id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=generate_record_id)
  batch_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  concept_id: Mapped[str] = mapped_column(String, nullable=False)
  name: Mapped[str] = mapped_column(Text, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False)
  meal_types: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
  dietary_tags: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
  main_ingredient_tags: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
  ingredients: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
  instructions: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
  prep_time_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
  cook_time_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
  servings: Mapped[int | None] = mapped_column(Integer, nullable=True)
  calories_kcal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
  protein_grams: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
  carbs_grams: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
  fat_grams: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
  image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
  is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
