from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from recipe_collections.db.base import Base
from recipe_collections.db.types import JSONText


class Collection(Base):
    __tablename__ = "collections"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, nullable=False)
    path: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    cover_image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    target_count: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    min_required: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    publication_state: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    published_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    rule_type: Mapped[str] = mapped_column(String, nullable=False)
    rules_json: Mapped[dict[str, Any]] = mapped_column(JSONText(), nullable=False, default=dict)
    rules_revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # "<field>:<id>" for auto collections, e.g. "cuisine:sichuan".
    linked_ref: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    excluded_item_ids: Mapped[list[str]] = mapped_column(JSONText(), nullable=False, default=list)
    pinned_item_ids: Mapped[list[str]] = mapped_column(JSONText(), nullable=False, default=list)

    cached_matched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cached_published_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cached_pending_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cached_draft_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cached_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    qualified_status: Mapped[str] = mapped_column(String, nullable=False, default="unqualified")

    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("path", name="uq_collections_path"),
        UniqueConstraint("linked_ref", name="uq_collections_linked_ref"),
        Index("idx_collections_listing", "category", "publication_state", "sort_order", "cached_published_count"),
    )


class CollectionTranslation(Base):
    __tablename__ = "collection_translations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_id: Mapped[str] = mapped_column(String, nullable=False)
    locale: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("collection_id", "locale", name="uq_collection_translations_locale"),
    )


class AggregationConfig(Base):
    __tablename__ = "aggregation_configs"

    section: Mapped[str] = mapped_column(String, primary_key=True)
    content_json: Mapped[dict[str, Any]] = mapped_column(JSONText(), nullable=False, default=dict)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_by: Mapped[str] = mapped_column(String, nullable=False)
