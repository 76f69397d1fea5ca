from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url

from recipe_collections.config import MAX_RECOMPUTE_WORKERS


def engine_options(url: str) -> dict[str, Any]:
    backend = make_url(url).get_backend_name()
    if backend == "postgresql":
        # One connection per sweep worker plus headroom for API reads.
        return {"pool_pre_ping": True, "pool_size": MAX_RECOMPUTE_WORKERS, "max_overflow": 4}
    if backend == "sqlite":
        # Sweep workers share the engine across threads.
        return {"connect_args": {"check_same_thread": False}}
    return {}


def make_engine(url: str, *, extra_options: Mapping[str, Any] | None = None) -> Engine:
    options = engine_options(url)
    options.update(dict(extra_options or {}))
    return create_engine(url, **options)
