from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from recipe_collections.config import QualificationSettings
from recipe_collections.rules.errors import CollectionError
from recipe_collections.services.blocks import DEFAULT_BLOCKS, AggregationBlocks, resolve_blocks, validate_blocks
from recipe_collections.services.collection_store import CollectionStore


class ResolveBlocksTests(unittest.TestCase):
    def test_defaults_when_nothing_stored(self) -> None:
        blocks = resolve_blocks(None)
        self.assertEqual([b.category for b in blocks], [b.category for b in DEFAULT_BLOCKS])
        self.assertEqual(blocks[0].category, "cuisine")

    def test_stored_entry_replaces_default_entirely(self) -> None:
        blocks = resolve_blocks([{"type": "scene", "order": 0, "cardCount": 3, "title": "早餐专区"}])
        scene = blocks[0]
        self.assertEqual(scene.category, "scene")
        self.assertEqual(scene.card_count, 3)
        self.assertEqual(scene.title_en, "")
        self.assertEqual(len(blocks), len(DEFAULT_BLOCKS))

    def test_disabled_block_is_dropped(self) -> None:
        blocks = resolve_blocks([{"category": "taste", "enabled": False, "order": 4, "card_count": 6, "title": "口味"}])
        self.assertNotIn("taste", [b.category for b in blocks])

    def test_first_valid_duplicate_wins_and_invalid_skipped(self) -> None:
        stored = [
            {"category": "cuisine", "order": 9, "card_count": 0, "title": "bad"},
            {"category": "cuisine", "order": 9, "card_count": 2, "title": "first"},
            {"category": "cuisine", "order": 1, "card_count": 2, "title": "second"},
            {"category": "weather", "order": 1, "card_count": 2, "title": "x"},
        ]
        with self.assertLogs("aggregation_blocks", level="WARNING"):
            blocks = resolve_blocks(stored)
        cuisine = [b for b in blocks if b.category == "cuisine"]
        self.assertEqual(len(cuisine), 1)
        self.assertEqual(cuisine[0].title, "first")
        self.assertEqual(blocks[-1].category, "cuisine")

    def test_validate_reports_duplicates_and_ranges(self) -> None:
        _, errors = validate_blocks([
            {"category": "scene", "order": 1, "card_count": 6, "title": "a"},
            {"category": "scene", "order": 2, "card_count": 6, "title": "b"},
            {"category": "taste", "order": "x", "card_count": 99, "title": ""},
        ])
        self.assertTrue(any("重复" in e for e in errors))
        self.assertTrue(any("card_count" in e for e in errors))
        self.assertTrue(any("order" in e for e in errors))
        self.assertTrue(any("title" in e for e in errors))
        self.assertEqual(validate_blocks({"blocks": []})[1], ["blocks 必须是数组"])


class AggregationPageTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name)
        self.store = CollectionStore(
            f"sqlite:///{(root / 'collections.db').as_posix()}",
            project_root=root,
            settings=QualificationSettings(near_fraction=0.8),
        )
        self.blocks = AggregationBlocks(self.store)

    def tearDown(self) -> None:
        self.store.engine.dispose()
        self._td.cleanup()

    def _published(self, slug: str, category: str, count: int) -> None:
        row = self.store.create_collection(name=slug, category=category, slug=slug, min_required=10)
        self.store.collections_repo.update_fields(
            row["id"], {"cached_published_count": count, "publication_state": "published"}
        )

    def test_save_and_read_back(self) -> None:
        saved = self.blocks.save_blocks([{"category": "cuisine", "order": 3, "card_count": 4, "title": "菜系"}])
        self.assertIn("cuisine", [b.category for b in saved])
        stored = self.blocks.get_blocks()
        cuisine = next(b for b in stored if b.category == "cuisine")
        self.assertEqual(cuisine.card_count, 4)

    def test_save_invalid_raises(self) -> None:
        with self.assertRaises(CollectionError) as ctx:
            self.blocks.save_blocks([{"category": "cuisine", "order": 1, "card_count": 0, "title": "x"}])
        self.assertIn("COLL_004_BLOCKS_INVALID", str(ctx.exception))
        self.assertIsNone(self.store.get_config("aggregation_blocks"))

    def test_page_drops_empty_blocks_and_applies_threshold(self) -> None:
        self._published("sichuan", "cuisine", 12)
        self._published("hunan", "cuisine", 30)
        self._published("breakfast", "scene", 15)
        self.blocks.save_blocks([
            {"category": "cuisine", "order": 1, "card_count": 8, "min_threshold": 20, "title": "菜系"},
        ])
        page = self.blocks.build_aggregation_page("zh")
        self.assertEqual(page["locale"], "zh")
        cats = [b["category"] for b in page["blocks"]]
        self.assertEqual(cats, ["cuisine", "scene"])
        cuisine = page["blocks"][0]
        self.assertEqual([c["slug"] for c in cuisine["collections"]], ["hunan"])

    def test_card_count_limits_cards(self) -> None:
        for i in range(4):
            self._published(f"b{i}", "scene", 10 + i)
        self.blocks.save_blocks([{"category": "scene", "order": 1, "card_count": 2, "title": "场景"}])
        page = self.blocks.build_aggregation_page()
        scene = next(b for b in page["blocks"] if b["category"] == "scene")
        self.assertEqual([c["slug"] for c in scene["collections"]], ["b3", "b2"])


if __name__ == "__main__":
    unittest.main()
