from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import Any

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from recipe_collections.services.aggregate_cache import AggregateCache


def _log(msg: str) -> None:
    print(f"[SWEEP] {msg}", file=sys.stderr, flush=True)


class SweepWorker:
    """Periodic batch recompute of every non-archived collection."""

    def __init__(self, cache: AggregateCache, *, interval_minutes: int = 30, max_workers: int | None = None) -> None:
        self.cache = cache
        self.interval_minutes = max(1, int(interval_minutes))
        self.max_workers = max_workers
        self.last_summary: dict[str, Any] = {}
        self.scheduler = BlockingScheduler(job_defaults={"max_instances": 1, "coalesce": True})

    def run_once(self) -> dict[str, Any]:
        summary = self.cache.sweep(max_workers=self.max_workers)
        self.last_summary = summary
        _log(
            f"done total={summary['total']} refreshed={summary['refreshed']} "
            f"stale={summary['stale']} failed={summary['failed']}"
        )
        for row in summary["details"]:
            if not row.get("ok"):
                _log(f"failed id={row['id']} error={row.get('error', '')}")
        return summary

    def _job(self) -> None:
        try:
            self.run_once()
        except Exception as e:
            # Keep the schedule alive; the next tick retries.
            _log(f"sweep aborted: {type(e).__name__}: {e}")

    def run_forever(self) -> None:
        self.scheduler.add_job(
            self._job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="collections-sweep",
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        _log(f"start interval_min={self.interval_minutes} workers={self.max_workers or 'default'}")
        try:
            self.scheduler.start()
        except KeyboardInterrupt:
            _log("stop (keyboard interrupt)")
        finally:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
            if self.last_summary:
                print(json.dumps({k: v for k, v in self.last_summary.items() if k != "details"}, ensure_ascii=False))
