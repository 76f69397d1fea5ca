from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from recipe_collections.config import QualificationSettings
from recipe_collections.rules.errors import CollectionError, RulesValidationError
from recipe_collections.services.aggregate_cache import AggregateCache
from recipe_collections.services.collection_store import CollectionStore


def _published(n: int, *, prefix: str = "r", cuisine: str = "sichuan") -> list[dict]:
    return [{"id": f"{prefix}{i:02d}", "title": f"T{i}", "status": "published", "cuisine": cuisine} for i in range(n)]


class CollectionStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name)
        self.store = CollectionStore(
            f"sqlite:///{(root / 'collections.db').as_posix()}",
            project_root=root,
            settings=QualificationSettings(near_fraction=0.8),
        )
        self.cache = AggregateCache(self.store)

    def tearDown(self) -> None:
        self.store.engine.dispose()
        self._td.cleanup()

    def _create(self, slug: str = "sichuan-classics", **kw) -> dict:
        params = {
            "name": "川菜经典",
            "category": "cuisine",
            "slug": slug,
            "rules": {"groups": [{"conditions": [{"field": "cuisine", "operator": "eq", "value": "sichuan"}]}]},
            "min_required": 10,
            "target_count": 20,
        }
        params.update(kw)
        return self.store.create_collection(**params)

    def test_create_defaults_and_path(self) -> None:
        row = self._create()
        self.assertEqual(row["path"], "/recipe/cuisine/sichuan-classics")
        self.assertEqual(row["publication_state"], "draft")
        self.assertEqual(row["rules_revision"], 1)
        self.assertEqual(row["cached_published_count"], 0)
        self.assertEqual(row["qualified_status"], "unqualified")

        crowd = self._create("kids", category="crowd")
        self.assertEqual(crowd["path"], "/recipe/dietary/kids")

    def test_create_rejects_bad_input(self) -> None:
        with self.assertRaises(ValueError):
            self._create(category="weather")
        with self.assertRaises(ValueError):
            self._create(slug="Bad Slug!")
        with self.assertRaises(ValueError):
            self._create(target_count=0)
        with self.assertRaises(RulesValidationError):
            self._create(rules={"groups": [{"conditions": [{"field": "cookTime", "operator": "eq", "value": "x"}]}]})
        with self.assertRaises(RulesValidationError):
            self._create(rules={"mode": "auto", "field": "cuisine", "value": "sichuan"})

    def test_duplicate_path_is_rejected(self) -> None:
        self._create()
        with self.assertRaises(CollectionError) as ctx:
            self._create()
        self.assertIn("COLL_006_INVALID_STATE", str(ctx.exception))

    def test_unknown_id_raises_not_found(self) -> None:
        with self.assertRaises(CollectionError) as ctx:
            self.store.get("missing")
        self.assertIn("COLL_002_COLLECTION_NOT_FOUND", str(ctx.exception))

    def test_publish_under_threshold_warns_unless_forced(self) -> None:
        self.store.content_repo.upsert_many(_published(6), now="2026-10-01T00:00:00+00:00")
        row = self._create()
        self.cache.refresh(row["id"])

        out = self.store.publish(row["id"])
        self.assertTrue(out["published"])
        self.assertIn("警告", out["warning"])
        self.assertEqual(out["collection"]["publication_state"], "published")
        self.assertEqual(out["collection"]["qualified_status"], "unqualified")
        self.assertIsNotNone(out["collection"]["published_at"])

        again = self.store.publish(row["id"])
        self.assertEqual(again["message"], "合集已经是发布状态")

        other = self._create("sichuan-more")
        self.cache.refresh(other["id"])
        forced = self.store.publish(other["id"], force=True)
        self.assertEqual(forced["warning"], "")

    def test_publish_at_threshold_qualifies(self) -> None:
        self.store.content_repo.upsert_many(_published(10), now="2026-10-01T00:00:00+00:00")
        row = self._create()
        self.cache.refresh(row["id"])
        out = self.store.publish(row["id"])
        self.assertEqual(out["warning"], "")
        self.assertEqual(out["collection"]["qualified_status"], "qualified")

    def test_unpublish_and_archive(self) -> None:
        self.store.content_repo.upsert_many(_published(10), now="2026-10-01T00:00:00+00:00")
        row = self._create()
        self.cache.refresh(row["id"])
        self.store.publish(row["id"])

        down = self.store.unpublish(row["id"])
        self.assertEqual(down["publication_state"], "draft")
        self.assertEqual(down["qualified_status"], "unqualified")
        with self.assertRaises(CollectionError):
            self.store.unpublish(row["id"])

        archived = self.store.archive(row["id"])
        self.assertEqual(archived["publication_state"], "archived")
        self.assertNotEqual(archived["qualified_status"], "qualified")

    def test_min_required_change_rederives_status(self) -> None:
        self.store.content_repo.upsert_many(_published(12), now="2026-10-01T00:00:00+00:00")
        row = self._create()
        self.cache.refresh(row["id"])
        self.store.publish(row["id"])
        self.assertEqual(self.store.get(row["id"])["qualified_status"], "qualified")

        raised = self.store.update_meta(row["id"], {"min_required": 14})
        self.assertEqual(raised["qualified_status"], "near")
        self.assertEqual(raised["cached_published_count"], 12)
        self.assertEqual(raised["rules_revision"], row["rules_revision"])

        lowered = self.store.update_meta(row["id"], {"min_required": 5})
        self.assertEqual(lowered["qualified_status"], "qualified")

    def test_save_rules_bumps_revision(self) -> None:
        row = self._create()
        saved = self.store.save_rules(row["id"], {"groups": [{"conditions": [{"field": "servings", "operator": "gte", "value": 2}]}]})
        self.assertEqual(saved["rules_revision"], 2)
        self.assertEqual(saved["rules"]["groups"][0]["conditions"][0]["field"], "servings")

    def test_exclude_removes_pin_and_pinning_excluded_is_rejected(self) -> None:
        row = self._create()
        self.store.pin_items(row["id"], ["a", "b"])
        self.store.pin_items(row["id"], ["c"], position="start")
        self.assertEqual(self.store.get(row["id"])["pinned_item_ids"], ["c", "a", "b"])

        after = self.store.exclude_items(row["id"], ["a"])
        self.assertEqual(after["excluded_item_ids"], ["a"])
        self.assertEqual(after["pinned_item_ids"], ["c", "b"])

        with self.assertRaises(CollectionError):
            self.store.pin_items(row["id"], ["a"])

        restored = self.store.include_items(row["id"], ["a"])
        self.assertEqual(restored["excluded_item_ids"], [])
        self.assertEqual(self.store.unpin_items(row["id"], ["c"])["pinned_item_ids"], ["b"])

    def test_auto_collection_is_idempotent_and_read_only(self) -> None:
        first, created = self.store.ensure_auto_collection("cuisine", "sichuan", name="川菜", slug="sichuan")
        second, created_again = self.store.ensure_auto_collection("cuisine", "sichuan", name="川菜", slug="sichuan")
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first["id"], second["id"])
        self.assertEqual(first["rule_type"], "auto")
        self.assertEqual(first["linked_ref"], "cuisine:sichuan")

        with self.assertRaises(CollectionError):
            self.store.save_rules(first["id"], {})

        renamed = self.store.sync_auto_collection("cuisine", "sichuan", name="四川菜", slug="sichuan-food")
        self.assertEqual(renamed["name"], "四川菜")
        self.assertEqual(renamed["path"], "/recipe/cuisine/sichuan-food")
        self.assertEqual(renamed["rules"], first["rules"])

    def test_auto_reference_aliases_share_one_collection(self) -> None:
        row, created = self.store.ensure_auto_collection("Region", "chengdu", name="成都", slug="chengdu")
        self.assertTrue(created)
        self.assertEqual(row["linked_ref"], "region:chengdu")

        again, created_again = self.store.ensure_auto_collection("location", " chengdu ", name="成都", slug="chengdu")
        self.assertFalse(created_again)
        self.assertEqual(again["id"], row["id"])

        renamed = self.store.sync_auto_collection("LOCATION", "chengdu", name="成都美食")
        self.assertEqual(renamed["name"], "成都美食")
        detached = self.store.detach_auto_collection("region", "chengdu")
        self.assertEqual(detached["id"], row["id"])
        with self.assertRaises(ValueError):
            self.store.detach_auto_collection("weather", "chengdu")

    def test_detach_auto_collection_returns_to_draft(self) -> None:
        self.store.content_repo.upsert_many(_published(10), now="2026-10-01T00:00:00+00:00")
        row, _ = self.store.ensure_auto_collection("cuisine", "sichuan", name="川菜", slug="sichuan")
        self.cache.refresh(row["id"])
        self.store.publish(row["id"])

        detached = self.store.detach_auto_collection("cuisine", "sichuan")
        self.assertEqual(detached["publication_state"], "draft")
        self.assertIsNone(detached["linked_ref"])
        self.assertNotEqual(detached["qualified_status"], "qualified")
        self.assertIsNone(self.store.detach_auto_collection("cuisine", "sichuan"))

    def test_view_progress_fields(self) -> None:
        self.store.content_repo.upsert_many(_published(25), now="2026-10-01T00:00:00+00:00")
        row = self._create()
        self.cache.refresh(row["id"])
        view = self.store.view(self.store.get(row["id"]))
        self.assertEqual(view["progress"], 125)
        self.assertEqual(view["progress_display"], 100)
        self.assertEqual(view["missing_count"], 0)
        self.assertTrue(view["rules_description"])

    def test_list_collections_filters(self) -> None:
        self._create()
        self._create("kids", category="crowd")
        self.assertEqual(len(self.store.list_collections()), 2)
        self.assertEqual([r["slug"] for r in self.store.list_collections(category="crowd")], ["kids"])
        self.assertEqual(self.store.list_collections(state="published"), [])
        self.assertEqual(len(self.store.list_collections(qualified_status="unqualified")), 2)


if __name__ == "__main__":
    unittest.main()
