from __future__ import annotations

import gc
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from recipe_collections.config import QualificationSettings
from recipe_collections.rules.errors import CollectionError
from recipe_collections.services import aggregate_cache as aggregate_cache_mod
from recipe_collections.services.aggregate_cache import AggregateCache
from recipe_collections.services.collection_store import CollectionStore
from recipe_collections.services.qualification import recompute as real_recompute

SPICY = {
    "mode": "custom",
    "groups": [{"logic": "AND", "conditions": [{"field": "tag", "operator": "eq", "value": "spicy", "subCategory": "taste"}]}],
}


def _recipes(n_published: int, n_pending: int = 0, n_draft: int = 0) -> list[dict]:
    out = []
    for i in range(n_published):
        out.append({"id": f"pub-{i:02d}", "title": f"P{i}", "status": "published", "cuisine": "sichuan", "tags": {"taste": ["spicy"]}})
    for i in range(n_pending):
        out.append({"id": f"pen-{i:02d}", "title": f"Q{i}", "status": "pending", "cuisine": "sichuan", "tags": {"taste": ["spicy"]}})
    for i in range(n_draft):
        out.append({"id": f"dra-{i:02d}", "title": f"D{i}", "status": "draft", "cuisine": "hunan", "tags": {"taste": ["spicy"]}})
    return out


class AggregateCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name)
        self.store = CollectionStore(
            f"sqlite:///{(root / 'data' / 'collections.db').as_posix()}",
            project_root=root,
            settings=QualificationSettings(near_fraction=0.8, content_batch_size=3),
        )
        self.cache = AggregateCache(self.store)
        self.store.content_repo.upsert_many(_recipes(10, n_pending=2, n_draft=1), now="2026-10-01T00:00:00+00:00")

    def tearDown(self) -> None:
        self.store.engine.dispose()
        self._td.cleanup()

    def _spicy(self, slug: str = "spicy", **kw) -> dict:
        return self.store.create_collection(name="Spicy", category="theme", slug=slug, rules=SPICY, min_required=10, **kw)

    def test_refresh_writes_counts_in_batches(self) -> None:
        row = self._spicy()
        out = self.cache.refresh(row["id"])
        self.assertTrue(out["written"])
        got = self.store.get(row["id"])
        self.assertEqual(got["cached_published_count"], 10)
        self.assertEqual(got["cached_pending_count"], 2)
        self.assertEqual(got["cached_draft_count"], 1)
        self.assertEqual(got["cached_matched_count"], 13)
        self.assertIsNotNone(got["cached_at"])
        # Draft collection: never qualified even at threshold.
        self.assertEqual(got["qualified_status"], "unqualified")

    def test_published_collection_ten_then_nine(self) -> None:
        row = self._spicy()
        self.cache.refresh(row["id"])
        self.store.publish(row["id"])
        self.assertEqual(self.store.get(row["id"])["qualified_status"], "qualified")

        self.store.content_repo.set_status("pub-00", "draft")
        self.cache.refresh(row["id"])
        got = self.store.get(row["id"])
        self.assertEqual(got["cached_published_count"], 9)
        self.assertEqual(got["qualified_status"], "near")

    def test_failure_leaves_cache_untouched(self) -> None:
        row = self._spicy()
        self.cache.refresh(row["id"])
        before = self.store.get(row["id"])

        self.store.content_repo.set_status("pub-00", "draft")
        with patch.object(aggregate_cache_mod, "recompute", side_effect=RuntimeError("db went away")):
            with self.assertRaises(CollectionError) as ctx:
                self.cache.refresh(row["id"])
        self.assertIn("COLL_003_RECOMPUTE_FAILED", str(ctx.exception))

        after = self.store.get(row["id"])
        for key in ("cached_published_count", "cached_pending_count", "cached_at", "qualified_status"):
            self.assertEqual(before[key], after[key], key)

    def test_stale_write_is_dropped(self) -> None:
        row = self._spicy()
        store = self.store

        def _edit_then_compute(snapshot, source, settings):
            # Rules change while the recompute is in flight.
            store.save_rules(row["id"], {"groups": [{"conditions": [{"field": "cuisine", "operator": "eq", "value": "none"}]}]})
            return real_recompute(snapshot, source, settings)

        with patch.object(aggregate_cache_mod, "recompute", side_effect=_edit_then_compute):
            out = self.cache.refresh(row["id"])
        self.assertFalse(out["written"])
        self.assertTrue(out["stale"])
        self.assertEqual(self.store.get(row["id"])["cached_published_count"], 0)

        self.cache.refresh(row["id"])
        self.assertEqual(self.store.get(row["id"])["cached_matched_count"], 0)

    def test_unpublish_during_recompute_keeps_new_state(self) -> None:
        row = self._spicy()
        self.cache.refresh(row["id"])
        self.store.publish(row["id"])
        store = self.store

        def _unpublish_then_compute(snapshot, source, settings):
            # Snapshot was taken while published; the row is draft by write time.
            store.unpublish(row["id"])
            return real_recompute(snapshot, source, settings)

        with patch.object(aggregate_cache_mod, "recompute", side_effect=_unpublish_then_compute):
            out = self.cache.refresh(row["id"])
        self.assertTrue(out["written"])
        self.assertEqual(out["qualified_status"], "unqualified")
        got = self.store.get(row["id"])
        self.assertEqual(got["publication_state"], "draft")
        self.assertEqual(got["cached_published_count"], 10)
        self.assertEqual(got["qualified_status"], "unqualified")

    def test_threshold_raised_during_recompute(self) -> None:
        row = self._spicy()
        self.cache.refresh(row["id"])
        self.store.publish(row["id"])
        store = self.store

        def _raise_min_then_compute(snapshot, source, settings):
            store.update_meta(row["id"], {"target_count": 60, "min_required": 50})
            return real_recompute(snapshot, source, settings)

        with patch.object(aggregate_cache_mod, "recompute", side_effect=_raise_min_then_compute):
            out = self.cache.refresh(row["id"])
        self.assertTrue(out["written"])
        got = self.store.get(row["id"])
        self.assertEqual(got["min_required"], 50)
        self.assertEqual(got["qualified_status"], "unqualified")

    def test_state_write_uses_count_held_by_row(self) -> None:
        row = self._spicy()
        # Counts land after the caller last read the row.
        self.cache.refresh(row["id"])
        self.store.collections_repo.update_state(
            row["id"], {"publication_state": "published"}, near_fraction=0.8
        )
        self.assertEqual(self.store.get(row["id"])["qualified_status"], "qualified")

        self.store.collections_repo.update_state(row["id"], {"min_required": 12}, near_fraction=0.8)
        self.assertEqual(self.store.get(row["id"])["qualified_status"], "near")

    def test_refresh_locks_are_released(self) -> None:
        a = self._spicy("spicy-a")
        b = self._spicy("spicy-b")
        self.cache.sweep([a["id"], b["id"]], max_workers=2)
        gc.collect()
        self.assertEqual(len(self.cache._locks), 0)

    def test_content_count_by_status(self) -> None:
        repo = self.store.content_repo
        self.assertEqual(repo.count(), 13)
        self.assertEqual(repo.count(status="published"), 10)
        self.assertEqual(repo.count(status="pending"), 2)
        self.assertEqual(repo.count(status="archived"), 0)

    def test_exclusion_bumps_revision_and_recount_drops_item(self) -> None:
        row = self._spicy()
        self.cache.refresh(row["id"])
        updated = self.store.exclude_items(row["id"], ["pub-01", "pub-02"])
        self.assertEqual(updated["rules_revision"], row["rules_revision"] + 1)
        self.cache.refresh(row["id"])
        self.assertEqual(self.store.get(row["id"])["cached_published_count"], 8)

    def test_sweep_reports_failures_per_collection(self) -> None:
        good = self._spicy("spicy-a")
        bad = self._spicy("spicy-b")
        calls = {"n": 0}

        def _flaky(snapshot, source, settings):
            calls["n"] += 1
            if snapshot.collection_id == bad["id"]:
                raise ValueError("boom")
            return real_recompute(snapshot, source, settings)

        with patch.object(aggregate_cache_mod, "recompute", side_effect=_flaky):
            summary = self.cache.sweep(max_workers=2)
        self.assertFalse(summary["ok"])
        self.assertEqual(summary["total"], 2)
        self.assertEqual(summary["failed"], 1)
        self.assertEqual(summary["refreshed"], 1)
        by_id = {d["id"]: d for d in summary["details"]}
        self.assertTrue(by_id[good["id"]]["ok"])
        self.assertFalse(by_id[bad["id"]]["ok"])
        self.assertEqual(self.store.get(good["id"])["cached_published_count"], 10)
        self.assertEqual(self.store.get(bad["id"])["cached_published_count"], 0)

    def test_sweep_skips_archived(self) -> None:
        row = self._spicy()
        self.store.archive(row["id"])
        self.assertEqual(self.cache.sweep()["total"], 0)
        self.assertEqual(self.cache.sweep(include_archived=True)["total"], 1)

    def test_preview_does_not_persist(self) -> None:
        row = self._spicy()
        preview = self.cache.preview(SPICY, collection_id=row["id"], sample_limit=3)
        self.assertEqual(preview["published_count"], 10)
        self.assertEqual(len(preview["samples"]), 3)
        self.assertTrue(preview["description"])
        self.assertEqual(self.store.get(row["id"])["cached_published_count"], 0)

    def test_auto_collection_counts_by_reference(self) -> None:
        row, created = self.store.ensure_auto_collection("cuisine", "sichuan", name="川菜", slug="sichuan")
        self.assertTrue(created)
        self.cache.refresh(row["id"])
        got = self.store.get(row["id"])
        self.assertEqual(got["cached_published_count"], 10)
        self.assertEqual(got["cached_draft_count"], 0)


if __name__ == "__main__":
    unittest.main()
