from __future__ import annotations

from typing import Optional

from sqlalchemy import Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from recipe_collections.db.base import Base


class Recipe(Base):
    __tablename__ = "recipes"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    cuisine_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    location_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    cook_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    prep_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    difficulty: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    servings: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    cover_image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[str] = mapped_column(String, nullable=False, default="")

    __table_args__ = (
        Index("idx_recipes_cuisine", "cuisine_id", "id"),
        Index("idx_recipes_location", "location_id", "id"),
    )


class RecipeTag(Base):
    __tablename__ = "recipe_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipe_id: Mapped[str] = mapped_column(String, nullable=False)
    tag_id: Mapped[str] = mapped_column(String, nullable=False)
    sub_category: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        Index("idx_recipe_tags_recipe", "recipe_id"),
        Index("idx_recipe_tags_tag", "tag_id", "recipe_id"),
    )
