from __future__ import annotations

import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from recipe_collections.config import QualificationSettings, get_qualification_settings
from recipe_collections.db import models  # noqa: F401
from recipe_collections.db.base import Base
from recipe_collections.db.config import get_db_settings, redact_database_url
from recipe_collections.db.engine import make_engine
from recipe_collections.db.repo import CollectionsRepo, ContentFactsRepo
from recipe_collections.rules.describe import describe_rule
from recipe_collections.rules.errors import (
    COLL_002_COLLECTION_NOT_FOUND,
    COLL_006_INVALID_STATE,
    CollectionError,
    RulesValidationError,
)
from recipe_collections.rules.models import RULE_TYPE_AUTO, RULE_TYPE_CUSTOM, AutoRule
from recipe_collections.rules.validator import parse_rule_config
from recipe_collections.services.categories import AUTO_REF_TYPES, CATEGORIES, collection_path
from recipe_collections.services.qualification import (
    STATE_ARCHIVED,
    STATE_DRAFT,
    STATE_PUBLISHED,
    STATUS_QUALIFIED,
    CollectionSnapshot,
    derive_status,
    progress,
)

REQUIRED_TABLES = (
    "collections",
    "collection_translations",
    "aggregation_configs",
    "recipes",
    "recipe_tags",
)

_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sqlite_file(url: str) -> Path | None:
    try:
        parsed = make_url(url)
    except Exception:
        return None
    if not parsed.drivername.startswith("sqlite"):
        return None
    db_name = parsed.database or ""
    if not db_name or db_name == ":memory:":
        return None
    return Path(db_name)


def _clean_ids(ids: list[Any] | None) -> list[str]:
    out: list[str] = []
    for x in ids or []:
        s = str(x or "").strip()
        if s and s not in out:
            out.append(s)
    return out


class CollectionStore:
    """
    Collection rows, overrides, publication state and block config.

    Cached aggregate counts are never computed here; see
    ``recipe_collections.services.aggregate_cache``. The only cache field this
    class writes is ``qualified_status``, re-derived from already cached
    counts when thresholds or publication state change.
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        project_root: Path | None = None,
        auto_init: bool = True,
        settings: QualificationSettings | None = None,
    ) -> None:
        self.project_root = project_root or Path(__file__).resolve().parents[2]
        self.database_url = database_url or get_db_settings().database_url
        db_file = _sqlite_file(self.database_url)
        if db_file is not None:
            db_file.parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = make_engine(self.database_url)
        self._Session = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False)
        self.collections_repo = CollectionsRepo(self._Session)
        self.content_repo = ContentFactsRepo(self._Session)
        self.settings = settings or get_qualification_settings()
        self._logger = logging.getLogger("collection_store")
        if auto_init:
            self.ensure_schema()

    # ---- schema ----

    def _run_alembic_upgrade(self) -> None:
        alembic_ini = self.project_root / "alembic.ini"
        script_location = self.project_root / "alembic"
        if not alembic_ini.exists() or not script_location.exists():
            raise RuntimeError("Alembic configuration not found")
        cfg = Config(str(alembic_ini))
        cfg.set_main_option("script_location", str(script_location))
        cfg.set_main_option("sqlalchemy.url", self.database_url)
        prev = os.environ.get("DATABASE_URL")
        try:
            os.environ["DATABASE_URL"] = self.database_url
            command.upgrade(cfg, "head")
        finally:
            if prev is None:
                os.environ.pop("DATABASE_URL", None)
            else:
                os.environ["DATABASE_URL"] = prev

    def ensure_schema(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        insp = inspect(self.engine)
        missing = [name for name in REQUIRED_TABLES if not insp.has_table(name)]
        if not missing:
            return
        try:
            if self.engine.dialect.name == "sqlite":
                Base.metadata.create_all(self.engine)
            else:
                self._run_alembic_upgrade()
            insp = inspect(self.engine)
            still_missing = [name for name in REQUIRED_TABLES if not insp.has_table(name)]
            if still_missing:
                raise RuntimeError(f"missing tables after migration: {still_missing}")
        except Exception as e:
            raise RuntimeError(
                "Database schema is not ready; run `alembic upgrade head` "
                f"(url={redact_database_url(self.database_url)}): {e}"
            ) from e
        self._logger.info("schema created tables=%s", ",".join(missing))

    def observability_info(self) -> dict[str, str]:
        return {
            "db_backend": self.engine.dialect.name,
            "db_url": redact_database_url(self.database_url),
        }

    # ---- reads ----

    def get(self, collection_id: str) -> dict[str, Any]:
        row = self.collections_repo.get(collection_id)
        if row is None:
            raise CollectionError(COLL_002_COLLECTION_NOT_FOUND, f"id={collection_id}")
        return row

    def snapshot(self, collection_id: str) -> CollectionSnapshot:
        return CollectionSnapshot.from_row(self.get(collection_id))

    def view(self, row: dict[str, Any]) -> dict[str, Any]:
        """Admin projection: row plus progress and rule description."""
        out = dict(row)
        published = int(row["cached_published_count"])
        out["progress"] = progress(published, row["target_count"])
        out["progress_display"] = progress(published, row["target_count"], capped=True)
        out["missing_count"] = max(0, int(row["min_required"]) - published)
        try:
            out["rules_description"] = describe_rule(parse_rule_config(row["rules"] or None))
        except RulesValidationError:
            out["rules_description"] = ""
        return out

    def list_collections(
        self,
        *,
        category: str | None = None,
        state: str | None = None,
        qualified_status: str | None = None,
    ) -> list[dict[str, Any]]:
        rows = self.collections_repo.list(
            categories=[category] if category else None,
            states=[state] if state else None,
        )
        if qualified_status:
            rows = [r for r in rows if r["qualified_status"] == qualified_status]
        return [self.view(r) for r in rows]

    def list_published(self, categories: list[str]) -> list[dict[str, Any]]:
        return self.collections_repo.list_published(categories)

    def translated_names(self, collection_ids: list[str], locale: str) -> dict[str, str]:
        return self.collections_repo.translated_names(collection_ids, locale)

    # ---- writes ----

    @staticmethod
    def _check_slug(slug: str) -> str:
        s = str(slug or "").strip().lower()
        if not _SLUG_RE.match(s):
            raise ValueError(f"invalid slug: {slug!r}")
        return s

    @staticmethod
    def _check_thresholds(target_count: int, min_required: int) -> None:
        if int(target_count) < 1:
            raise ValueError("target_count must be >= 1")
        if int(min_required) < 0:
            raise ValueError("min_required must be >= 0")

    def _ensure_path_free(self, path: str, *, own_id: str | None = None) -> None:
        other = self.collections_repo.find_by(path=path)
        if other is not None and other["id"] != own_id:
            raise CollectionError(COLL_006_INVALID_STATE, f"path already used: {path}")

    def create_collection(
        self,
        *,
        name: str,
        category: str,
        slug: str,
        rules: dict[str, Any] | None = None,
        target_count: int | None = None,
        min_required: int | None = None,
        sort_order: int = 0,
        cover_image: str | None = None,
    ) -> dict[str, Any]:
        cat = str(category or "").strip().lower()
        if cat not in CATEGORIES:
            raise ValueError(f"invalid category: {category!r}")
        if not str(name or "").strip():
            raise ValueError("name is required")
        slug_v = self._check_slug(slug)
        target = int(target_count if target_count is not None else self.settings.default_target)
        need = int(min_required if min_required is not None else self.settings.default_min_required)
        self._check_thresholds(target, need)

        rule = parse_rule_config(rules)
        if isinstance(rule, AutoRule):
            raise RulesValidationError(["auto 规则由系统维护，不能手动创建"])

        path = collection_path(cat, slug_v)
        self._ensure_path_free(path)
        now = _utc_now()
        row = self.collections_repo.insert(
            {
                "id": uuid.uuid4().hex,
                "category": cat,
                "slug": slug_v,
                "path": path,
                "name": str(name).strip(),
                "cover_image": cover_image,
                "target_count": target,
                "min_required": need,
                "sort_order": int(sort_order),
                "publication_state": STATE_DRAFT,
                "rule_type": RULE_TYPE_CUSTOM,
                "rules_json": rule.to_dict(),
                "rules_revision": 1,
                "excluded_item_ids": [],
                "pinned_item_ids": [],
                "qualified_status": derive_status(STATE_DRAFT, 0, need, self.settings.near_fraction),
                "created_at": now,
                "updated_at": now,
            }
        )
        self._logger.info("collection created id=%s path=%s", row["id"], path)
        return row

    @staticmethod
    def _linked_ref(ref_type: str, ref_id: str) -> tuple[tuple[str, str | None, str], str]:
        """
        Resolve a reference type alias and build the link key.

        The key uses the collection category, so "region", "Region" and
        "location" all address the same row.
        """
        ref_mapping = AUTO_REF_TYPES.get(str(ref_type or "").strip().lower())
        if ref_mapping is None:
            raise ValueError(f"unsupported reference type: {ref_type!r}")
        rid = str(ref_id or "").strip()
        if not rid:
            raise ValueError("ref_id is required")
        return ref_mapping, f"{ref_mapping[2]}:{rid}"

    def ensure_auto_collection(self, ref_type: str, ref_id: str, *, name: str, slug: str) -> tuple[dict[str, Any], bool]:
        """Idempotent create of the auto collection linked to a cuisine, region or tag."""
        (field, sub_category, category), linked_ref = self._linked_ref(ref_type, ref_id)
        rid = linked_ref.split(":", 1)[1]
        slug_v = self._check_slug(slug)
        path = collection_path(category, slug_v)

        existing = self.collections_repo.find_by(linked_ref=linked_ref)
        if existing is not None:
            return existing, False
        self._ensure_path_free(path)

        rule = AutoRule(field=field, value=rid, sub_category=sub_category)
        now = _utc_now()
        need = self.settings.default_min_required
        row = self.collections_repo.insert(
            {
                "id": uuid.uuid4().hex,
                "category": category,
                "slug": slug_v,
                "path": path,
                "name": str(name or slug_v).strip(),
                "target_count": self.settings.default_target,
                "min_required": need,
                "sort_order": 0,
                "publication_state": STATE_DRAFT,
                "rule_type": RULE_TYPE_AUTO,
                "rules_json": rule.to_dict(),
                "rules_revision": 1,
                "linked_ref": linked_ref,
                "excluded_item_ids": [],
                "pinned_item_ids": [],
                "qualified_status": derive_status(STATE_DRAFT, 0, need, self.settings.near_fraction),
                "created_at": now,
                "updated_at": now,
            }
        )
        self._logger.info("auto collection created id=%s linked_ref=%s", row["id"], linked_ref)
        return row, True

    def sync_auto_collection(
        self,
        ref_type: str,
        ref_id: str,
        *,
        name: str | None = None,
        slug: str | None = None,
    ) -> dict[str, Any] | None:
        """Follow a rename of the linked reference. The rule itself keys on the id and stays."""
        row = self.collections_repo.find_by(linked_ref=self._linked_ref(ref_type, ref_id)[1])
        if row is None:
            return None
        values: dict[str, Any] = {}
        if name and str(name).strip():
            values["name"] = str(name).strip()
        if slug:
            slug_v = self._check_slug(slug)
            path = collection_path(row["category"], slug_v)
            self._ensure_path_free(path, own_id=row["id"])
            values["slug"] = slug_v
            values["path"] = path
        if not values:
            return row
        values["updated_at"] = _utc_now()
        self.collections_repo.update_fields(row["id"], values)
        return self.get(row["id"])

    def detach_auto_collection(self, ref_type: str, ref_id: str) -> dict[str, Any] | None:
        """The linked reference was deleted: back to draft, link cleared, row kept."""
        row = self.collections_repo.find_by(linked_ref=self._linked_ref(ref_type, ref_id)[1])
        if row is None:
            return None
        self.collections_repo.update_state(
            row["id"],
            {"publication_state": STATE_DRAFT, "linked_ref": None, "updated_at": _utc_now()},
            near_fraction=self.settings.near_fraction,
        )
        self._logger.warning("auto collection detached id=%s ref=%s:%s", row["id"], ref_type, ref_id)
        return self.get(row["id"])

    def save_rules(self, collection_id: str, rules: dict[str, Any] | None) -> dict[str, Any]:
        row = self.get(collection_id)
        if row["rule_type"] == RULE_TYPE_AUTO:
            raise CollectionError(COLL_006_INVALID_STATE, "auto collection rules are managed by sync")
        rule = parse_rule_config(rules)
        if isinstance(rule, AutoRule):
            raise RulesValidationError(["auto 规则由系统维护，不能手动设置"])
        self.collections_repo.update_rules(
            collection_id,
            {"rules_json": rule.to_dict(), "rule_type": RULE_TYPE_CUSTOM, "updated_at": _utc_now()},
        )
        return self.get(collection_id)

    def update_meta(self, collection_id: str, values: dict[str, Any]) -> dict[str, Any]:
        """
        Edit descriptive fields and thresholds.

        A ``min_required`` change re-derives ``qualified_status`` from the
        cached counts; rules are not re-evaluated.
        """
        row = self.get(collection_id)
        allowed = ("name", "slug", "cover_image", "target_count", "min_required", "sort_order")
        upd: dict[str, Any] = {k: values[k] for k in allowed if k in values and values[k] is not None}
        if "name" in upd:
            upd["name"] = str(upd["name"]).strip()
            if not upd["name"]:
                raise ValueError("name is required")
        if "slug" in upd:
            upd["slug"] = self._check_slug(upd["slug"])
            upd["path"] = collection_path(row["category"], upd["slug"])
            self._ensure_path_free(upd["path"], own_id=collection_id)
        target = int(upd.get("target_count", row["target_count"]))
        need = int(upd.get("min_required", row["min_required"]))
        self._check_thresholds(target, need)
        for key, num in (("target_count", target), ("min_required", need)):
            if key in upd:
                upd[key] = num
        upd["updated_at"] = _utc_now()
        # Status follows the count the row holds when this UPDATE lands.
        self.collections_repo.update_state(collection_id, upd, near_fraction=self.settings.near_fraction)
        return self.get(collection_id)

    def exclude_items(self, collection_id: str, item_ids: list[str]) -> dict[str, Any]:
        row = self.get(collection_id)
        ids = _clean_ids(item_ids)
        if not ids:
            raise ValueError("item_ids is required")
        excluded = _clean_ids(list(row["excluded_item_ids"]) + ids)
        pinned = [x for x in row["pinned_item_ids"] if x not in ids]
        self.collections_repo.update_rules(
            collection_id,
            {"excluded_item_ids": excluded, "pinned_item_ids": pinned, "updated_at": _utc_now()},
        )
        return self.get(collection_id)

    def include_items(self, collection_id: str, item_ids: list[str]) -> dict[str, Any]:
        row = self.get(collection_id)
        ids = set(_clean_ids(item_ids))
        excluded = [x for x in row["excluded_item_ids"] if x not in ids]
        self.collections_repo.update_rules(
            collection_id,
            {"excluded_item_ids": excluded, "updated_at": _utc_now()},
        )
        return self.get(collection_id)

    def pin_items(self, collection_id: str, item_ids: list[str], *, position: str = "end") -> dict[str, Any]:
        row = self.get(collection_id)
        ids = _clean_ids(item_ids)
        if not ids:
            raise ValueError("item_ids is required")
        blocked = [x for x in ids if x in row["excluded_item_ids"]]
        if blocked:
            raise CollectionError(COLL_006_INVALID_STATE, f"excluded items cannot be pinned: {','.join(blocked)}")
        current = [x for x in row["pinned_item_ids"] if x not in ids]
        pinned = ids + current if position == "start" else current + ids
        self.collections_repo.update_rules(
            collection_id,
            {"pinned_item_ids": pinned, "updated_at": _utc_now()},
        )
        return self.get(collection_id)

    def unpin_items(self, collection_id: str, item_ids: list[str]) -> dict[str, Any]:
        row = self.get(collection_id)
        ids = set(_clean_ids(item_ids))
        pinned = [x for x in row["pinned_item_ids"] if x not in ids]
        self.collections_repo.update_rules(
            collection_id,
            {"pinned_item_ids": pinned, "updated_at": _utc_now()},
        )
        return self.get(collection_id)

    def _set_state(self, row: dict[str, Any], state: str, extra: dict[str, Any] | None = None) -> dict[str, Any]:
        values: dict[str, Any] = {"publication_state": state, "updated_at": _utc_now()}
        values.update(extra or {})
        self.collections_repo.update_state(row["id"], values, near_fraction=self.settings.near_fraction)
        return self.get(row["id"])

    def publish(self, collection_id: str, *, force: bool = False) -> dict[str, Any]:
        """
        Publish even when under threshold; the caller gets a warning unless
        ``force`` is set. Counts are the cached ones, refresh first for live.
        """
        row = self.get(collection_id)
        if row["publication_state"] == STATE_PUBLISHED:
            return {"collection": row, "published": True, "warning": "", "message": "合集已经是发布状态"}
        extra = {} if row["published_at"] else {"published_at": _utc_now()}
        out = self._set_state(row, STATE_PUBLISHED, extra)
        warning = ""
        if out["qualified_status"] != STATUS_QUALIFIED and not force:
            warning = (
                f"警告：当前已发布食谱数 {out['cached_published_count']} 未达到最低要求 "
                f"{out['min_required']}，建议补充内容后再发布"
            )
        self._logger.info("collection published id=%s status=%s", collection_id, out["qualified_status"])
        return {"collection": out, "published": True, "warning": warning, "message": warning or "发布成功"}

    def unpublish(self, collection_id: str) -> dict[str, Any]:
        row = self.get(collection_id)
        if row["publication_state"] != STATE_PUBLISHED:
            raise CollectionError(COLL_006_INVALID_STATE, f"state={row['publication_state']}")
        return self._set_state(row, STATE_DRAFT)

    def archive(self, collection_id: str) -> dict[str, Any]:
        row = self.get(collection_id)
        if row["publication_state"] == STATE_ARCHIVED:
            return row
        return self._set_state(row, STATE_ARCHIVED)

    def upsert_translation(self, collection_id: str, locale: str, name: str) -> None:
        self.get(collection_id)
        loc = str(locale or "").strip()
        if not loc or not str(name or "").strip():
            raise ValueError("locale and name are required")
        self.collections_repo.upsert_translation(
            collection_id=collection_id, locale=loc, name=str(name).strip(), now=_utc_now()
        )

    # ---- aggregation config ----

    def get_config(self, section: str) -> dict[str, Any] | None:
        return self.collections_repo.get_config(section)

    def save_config(self, section: str, content: dict[str, Any], *, updated_by: str = "admin") -> None:
        self.collections_repo.save_config(section, content, updated_by=updated_by, now=_utc_now())
