from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from recipe_collections.config import QualificationSettings
from recipe_collections.services.collection_store import CollectionStore
from recipe_collections.services.resolver import CollectionResolver


class CollectionResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        root = Path(self._td.name)
        self.store = CollectionStore(
            f"sqlite:///{(root / 'collections.db').as_posix()}",
            project_root=root,
            settings=QualificationSettings(near_fraction=0.8),
        )
        self.resolver = CollectionResolver(self.store)

    def tearDown(self) -> None:
        self.store.engine.dispose()
        self._td.cleanup()

    def _seed(self, slug: str, *, category: str = "cuisine", published: int = 10, state: str = "published",
              sort_order: int = 0, min_required: int = 10) -> dict:
        row = self.store.create_collection(
            name=slug.upper(), category=category, slug=slug, min_required=min_required, sort_order=sort_order
        )
        # Fixture shortcut: cached counts as a finished recompute would leave them.
        self.store.collections_repo.update_fields(
            row["id"],
            {"cached_published_count": published, "cached_matched_count": published, "publication_state": state},
        )
        return self.store.get(row["id"])

    def test_only_published_and_qualified_are_listed(self) -> None:
        self._seed("ok")
        self._seed("short", published=9)
        self._seed("draft", state="draft", published=30)
        self._seed("archived", state="archived", published=30)
        cards = self.resolver.list_qualified("cuisine")
        self.assertEqual([c.slug for c in cards], ["ok"])

    def test_ordering_sort_order_then_count_then_id(self) -> None:
        self._seed("b", published=12, sort_order=1)
        self._seed("a", published=40, sort_order=2)
        self._seed("c", published=20, sort_order=1)
        cards = self.resolver.list_qualified("cuisine")
        self.assertEqual([c.slug for c in cards], ["c", "b", "a"])

    def test_limit_and_offset(self) -> None:
        for i in range(5):
            self._seed(f"s{i}", sort_order=i)
        self.assertEqual([c.slug for c in self.resolver.list_qualified("cuisine", limit=2)], ["s0", "s1"])
        self.assertEqual([c.slug for c in self.resolver.list_qualified("cuisine", limit=2, offset=3)], ["s3", "s4"])
        self.assertEqual(self.resolver.list_qualified("cuisine", limit=0), [])

    def test_theme_includes_topic_rows(self) -> None:
        self._seed("summer", category="theme")
        self._seed("legacy", category="topic")
        slugs = {c.slug for c in self.resolver.list_qualified("theme")}
        self.assertEqual(slugs, {"summer", "legacy"})
        paths = {c.path for c in self.resolver.list_qualified("theme")}
        self.assertEqual(paths, {"/recipe/theme/summer", "/recipe/theme/legacy"})

    def test_crowd_cards_use_dietary_path(self) -> None:
        self._seed("kids", category="crowd")
        (card,) = self.resolver.list_qualified("crowd")
        self.assertEqual(card.path, "/recipe/dietary/kids")

    def test_translation_with_fallback(self) -> None:
        a = self._seed("sichuan", sort_order=1)
        self._seed("hunan", sort_order=2)
        self.store.upsert_translation(a["id"], "en", "Sichuan Classics")
        names = [c.name for c in self.resolver.list_qualified("cuisine", locale="en")]
        self.assertEqual(names, ["Sichuan Classics", "HUNAN"])
        self.assertEqual([c.name for c in self.resolver.list_qualified("cuisine", locale="zh")], ["SICHUAN", "HUNAN"])

    def test_progress_fields(self) -> None:
        self._seed("big", published=30)
        (card,) = self.resolver.list_qualified("cuisine")
        self.assertEqual(card.progress, 150)
        self.assertEqual(card.progress_display, 100)
        self.assertEqual(card.to_dict()["published_count"], 30)

    def test_bad_category_or_locale_is_empty(self) -> None:
        self._seed("ok")
        self.assertEqual(self.resolver.list_qualified("weather"), [])
        self.assertEqual(self.resolver.list_qualified("cuisine", locale="english!"), [])

    def test_storage_failure_degrades_to_empty(self) -> None:
        self._seed("ok")
        with patch.object(self.store, "list_published", side_effect=RuntimeError("db down")):
            with self.assertLogs("collection_resolver", level="WARNING"):
                self.assertEqual(self.resolver.list_qualified("cuisine"), [])


if __name__ == "__main__":
    unittest.main()
