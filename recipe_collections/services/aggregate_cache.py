from __future__ import annotations

import logging
import threading
import time
import weakref
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Any

from recipe_collections.config import MAX_RECOMPUTE_WORKERS
from recipe_collections.rules.describe import describe_rule
from recipe_collections.rules.errors import COLL_003_RECOMPUTE_FAILED, CollectionError
from recipe_collections.rules.validator import parse_rule_config
from recipe_collections.services.collection_store import CollectionStore
from recipe_collections.services.qualification import (
    STATE_ARCHIVED,
    CollectionSnapshot,
    progress,
    recompute,
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AggregateCache:
    """
    Recomputes and persists the cached counts of collections.

    Each refresh reads one snapshot, evaluates the whole corpus, then issues a
    single UPDATE guarded by ``rules_revision``. If the rules moved on in the
    meantime the write is dropped as stale.
    """

    def __init__(self, store: CollectionStore) -> None:
        self.store = store
        # Entries vanish once no refresh holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()
        self._logger = logging.getLogger("aggregate_cache")

    def _lock_for(self, collection_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(collection_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[collection_id] = lock
            return lock

    def preview(
        self,
        rules: dict[str, Any] | None,
        *,
        collection_id: str | None = None,
        sample_limit: int = 10,
    ) -> dict[str, Any]:
        """
        Evaluate a candidate rule set without writing anything.

        With ``collection_id`` the collection's overrides and thresholds apply.
        """
        rule = parse_rule_config(rules)
        settings = self.store.settings
        if collection_id:
            base = self.store.snapshot(collection_id)
            snap = CollectionSnapshot(
                collection_id=base.collection_id,
                rule=rule,
                excluded_ids=base.excluded_ids,
                pinned_ids=base.pinned_ids,
                target_count=base.target_count,
                min_required=base.min_required,
                publication_state=base.publication_state,
                rules_revision=base.rules_revision,
            )
        else:
            snap = CollectionSnapshot(
                collection_id="",
                rule=rule,
                excluded_ids=frozenset(),
                pinned_ids=frozenset(),
                target_count=settings.default_target,
                min_required=settings.default_min_required,
                publication_state="draft",
                rules_revision=0,
            )
        result = recompute(snap, self.store.content_repo, settings, keep_ids=max(1, int(sample_limit)))
        return {
            "rules": rule.to_dict(),
            "description": describe_rule(rule),
            "matched_total": result.matched_total,
            "published_count": result.published_count,
            "pending_count": result.pending_count,
            "draft_count": result.draft_count,
            "qualified_status": result.qualified_status,
            "min_required": snap.min_required,
            "target_count": snap.target_count,
            "progress": progress(result.published_count, snap.target_count),
            "samples": self.store.content_repo.samples(list(result.matched_ids), limit=sample_limit),
        }

    def refresh(self, collection_id: str) -> dict[str, Any]:
        """Recompute and persist one collection. Raises ``CollectionError`` on failure."""
        started = time.monotonic()
        lock = self._lock_for(collection_id)
        with lock:
            snap = self.store.snapshot(collection_id)
            try:
                result = recompute(snap, self.store.content_repo, self.store.settings)
                written = self.store.collections_repo.write_aggregate(
                    collection_id,
                    expected_revision=snap.rules_revision,
                    values=result.cache_values(cached_at=_utc_now()),
                    near_fraction=self.store.settings.near_fraction,
                )
                status = self.store.get(collection_id)["qualified_status"] if written else result.qualified_status
            except CollectionError:
                raise
            except Exception as e:
                self._logger.exception("recompute failed id=%s", collection_id)
                raise CollectionError(COLL_003_RECOMPUTE_FAILED, f"id={collection_id} {type(e).__name__}: {e}") from e
        if not written:
            self._logger.warning(
                "stale aggregate dropped id=%s revision=%s", collection_id, snap.rules_revision
            )
        return {
            "id": collection_id,
            "written": written,
            "stale": not written,
            "rules_revision": snap.rules_revision,
            "matched_total": result.matched_total,
            "published_count": result.published_count,
            "pending_count": result.pending_count,
            "draft_count": result.draft_count,
            "qualified_status": status,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }

    def sweep(
        self,
        collection_ids: list[str] | None = None,
        *,
        max_workers: int | None = None,
        include_archived: bool = False,
    ) -> dict[str, Any]:
        """Bounded fan-out refresh over many collections; failures are reported per id."""
        if collection_ids:
            targets = [str(x).strip() for x in collection_ids if str(x).strip()]
        else:
            rows = self.store.collections_repo.list()
            targets = [r["id"] for r in rows if include_archived or r["publication_state"] != STATE_ARCHIVED]

        workers = max(1, min(MAX_RECOMPUTE_WORKERS, int(max_workers or self.store.settings.recompute_workers)))
        details: list[dict[str, Any]] = []
        with ThreadPoolExecutor(max_workers=workers) as ex:
            fut_map = {ex.submit(self.refresh, cid): cid for cid in targets}
            for fut in as_completed(fut_map):
                cid = fut_map[fut]
                try:
                    row = fut.result()
                    row["ok"] = True
                except Exception as e:
                    row = {"id": cid, "ok": False, "error": str(e)}
                details.append(row)

        details.sort(key=lambda r: str(r.get("id", "")))
        failed = [r for r in details if not r.get("ok")]
        stale = [r for r in details if r.get("ok") and r.get("stale")]
        self._logger.info(
            "sweep done total=%s refreshed=%s stale=%s failed=%s workers=%s",
            len(targets),
            len(details) - len(failed) - len(stale),
            len(stale),
            len(failed),
            workers,
        )
        return {
            "ok": not failed,
            "total": len(targets),
            "refreshed": len(details) - len(failed) - len(stale),
            "stale": len(stale),
            "failed": len(failed),
            "workers": workers,
            "details": details,
        }
