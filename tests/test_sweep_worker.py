from __future__ import annotations

import unittest
from unittest.mock import MagicMock

from recipe_collections.workers.sweep_worker import SweepWorker


class SweepWorkerTests(unittest.TestCase):
    def test_run_once_keeps_last_summary(self) -> None:
        cache = MagicMock()
        cache.sweep.return_value = {
            "ok": False,
            "total": 2,
            "refreshed": 1,
            "stale": 0,
            "failed": 1,
            "workers": 2,
            "details": [{"id": "a", "ok": True}, {"id": "b", "ok": False, "error": "boom"}],
        }
        worker = SweepWorker(cache, interval_minutes=5, max_workers=2)
        summary = worker.run_once()
        cache.sweep.assert_called_once_with(max_workers=2)
        self.assertEqual(worker.last_summary, summary)
        self.assertEqual(summary["failed"], 1)

    def test_job_survives_sweep_crash(self) -> None:
        cache = MagicMock()
        cache.sweep.side_effect = RuntimeError("db down")
        worker = SweepWorker(cache)
        worker._job()
        self.assertEqual(worker.last_summary, {})

    def test_interval_floor(self) -> None:
        self.assertEqual(SweepWorker(MagicMock(), interval_minutes=0).interval_minutes, 1)


if __name__ == "__main__":
    unittest.main()
