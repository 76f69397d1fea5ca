from __future__ import annotations

import os
from dataclasses import dataclass

MAX_RECOMPUTE_WORKERS = 8


@dataclass(frozen=True)
class QualificationSettings:
    near_fraction: float = 0.8
    recompute_workers: int = 4
    content_batch_size: int = 500
    default_target: int = 20
    default_min_required: int = 10


def _env_float(name: str, default: float, *, lo: float, hi: float) -> float:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return default
    try:
        v = float(raw)
    except ValueError:
        return default
    if v < lo or v > hi:
        return default
    return v


def _env_int(name: str, default: int, *, lo: int, hi: int | None = None) -> int:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return default
    try:
        v = int(raw)
    except ValueError:
        return default
    if v < lo:
        return default
    if hi is not None:
        v = min(v, hi)
    return v


def get_qualification_settings() -> QualificationSettings:
    return QualificationSettings(
        near_fraction=_env_float("COLLECTION_NEAR_FRACTION", 0.8, lo=0.0, hi=1.0),
        recompute_workers=_env_int("COLLECTION_RECOMPUTE_WORKERS", 4, lo=1, hi=MAX_RECOMPUTE_WORKERS),
        content_batch_size=_env_int("COLLECTION_CONTENT_BATCH_SIZE", 500, lo=1),
        default_target=_env_int("COLLECTION_DEFAULT_TARGET", 20, lo=1),
        default_min_required=_env_int("COLLECTION_DEFAULT_MIN_REQUIRED", 10, lo=0),
    )
