from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Integer, String, text
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import Mapped, mapped_column

from mealplan.core.database import Base


class Recipe(Base):
  __tablename__ = "recipes"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  slug: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  cuisine: Mapped[str | None] = mapped_column(String, nullable=True)
  dietary_tags: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, server_default=text("'{}'"))
  is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  created_by: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  prep_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
  cook_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
  updated_at: Mapped[str] = mapped_column(String, nullable=False)


class RecipeTag(Base):
  __tablename__ = "recipe_tags"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  recipe_id: Mapped[str] = mapped_column(ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True)
  tag: Mapped[str] = mapped_column(String, nullable=False)


class RecipeIngredient(Base):
  __tablename__ = "recipe_ingredients"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  recipe_id: Mapped[str] = mapped_column(ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True)
  ingredient_name: Mapped[str] = mapped_column(String, nullable=False)
