"""collections baseline

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _json_type() -> sa.TypeEngine:
    dialect_name = op.get_context().dialect.name
    if dialect_name == "postgresql":
        return postgresql.JSONB()
    return sa.Text()


def _has_table(table_name: str) -> bool:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    return table_name in set(insp.get_table_names())


def _existing_indexes(table_name: str) -> set[str]:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    try:
        return {str(i.get("name", "")) for i in insp.get_indexes(table_name)}
    except Exception:
        return set()


def _create_index_if_missing(name: str, table_name: str, cols: list[str]) -> None:
    if name in _existing_indexes(table_name):
        return
    op.create_index(name, table_name, cols, unique=False)


def upgrade() -> None:
    json_type = _json_type()

    if not _has_table("collections"):
        op.create_table(
            "collections",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("category", sa.String(), nullable=False),
            sa.Column("slug", sa.String(), nullable=False),
            sa.Column("path", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("cover_image", sa.Text(), nullable=True),
            sa.Column("target_count", sa.Integer(), nullable=False, server_default=sa.text("20")),
            sa.Column("min_required", sa.Integer(), nullable=False, server_default=sa.text("10")),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("publication_state", sa.String(), nullable=False, server_default="draft"),
            sa.Column("published_at", sa.String(), nullable=True),
            sa.Column("rule_type", sa.String(), nullable=False),
            sa.Column("rules_json", json_type, nullable=False),
            sa.Column("rules_revision", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("linked_ref", sa.String(), nullable=True),
            sa.Column("excluded_item_ids", json_type, nullable=False),
            sa.Column("pinned_item_ids", json_type, nullable=False),
            sa.Column("cached_matched_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("cached_published_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("cached_pending_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("cached_draft_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("cached_at", sa.String(), nullable=True),
            sa.Column("qualified_status", sa.String(), nullable=False, server_default="unqualified"),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.Column("updated_at", sa.String(), nullable=False),
            sa.UniqueConstraint("path", name="uq_collections_path"),
            sa.UniqueConstraint("linked_ref", name="uq_collections_linked_ref"),
        )
    _create_index_if_missing(
        "idx_collections_listing",
        "collections",
        ["category", "publication_state", "sort_order", "cached_published_count"],
    )

    if not _has_table("collection_translations"):
        op.create_table(
            "collection_translations",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("collection_id", sa.String(), nullable=False),
            sa.Column("locale", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("updated_at", sa.String(), nullable=False),
            sa.UniqueConstraint("collection_id", "locale", name="uq_collection_translations_locale"),
        )

    if not _has_table("aggregation_configs"):
        op.create_table(
            "aggregation_configs",
            sa.Column("section", sa.String(), primary_key=True),
            sa.Column("content_json", json_type, nullable=False),
            sa.Column("updated_at", sa.String(), nullable=False),
            sa.Column("updated_by", sa.String(), nullable=False),
        )

    if not _has_table("recipes"):
        op.create_table(
            "recipes",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("title", sa.Text(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="draft"),
            sa.Column("cuisine_id", sa.String(), nullable=True),
            sa.Column("location_id", sa.String(), nullable=True),
            sa.Column("cook_time", sa.Float(), nullable=True),
            sa.Column("prep_time", sa.Float(), nullable=True),
            sa.Column("difficulty", sa.Float(), nullable=True),
            sa.Column("servings", sa.Float(), nullable=True),
            sa.Column("cover_image", sa.Text(), nullable=True),
            sa.Column("updated_at", sa.String(), nullable=False, server_default=""),
        )
    _create_index_if_missing("idx_recipes_cuisine", "recipes", ["cuisine_id", "id"])
    _create_index_if_missing("idx_recipes_location", "recipes", ["location_id", "id"])

    if not _has_table("recipe_tags"):
        op.create_table(
            "recipe_tags",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("recipe_id", sa.String(), nullable=False),
            sa.Column("tag_id", sa.String(), nullable=False),
            sa.Column("sub_category", sa.String(), nullable=False),
        )
    _create_index_if_missing("idx_recipe_tags_recipe", "recipe_tags", ["recipe_id"])
    _create_index_if_missing("idx_recipe_tags_tag", "recipe_tags", ["tag_id", "recipe_id"])


def downgrade() -> None:
    for table in ("recipe_tags", "recipes", "aggregation_configs", "collection_translations", "collections"):
        if _has_table(table):
            op.drop_table(table)
