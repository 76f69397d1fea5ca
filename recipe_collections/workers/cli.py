from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from recipe_collections.rules.describe import describe_rule
from recipe_collections.rules.errors import COLL_005_PARSE_FAILED, CollectionError, RulesValidationError
from recipe_collections.rules.validator import validate
from recipe_collections.services.aggregate_cache import AggregateCache
from recipe_collections.services.blocks import AggregationBlocks
from recipe_collections.services.collection_store import CollectionStore
from recipe_collections.workers.sweep_worker import SweepWorker


def _get_opt(argv: list[str], key: str) -> str | None:
    if key not in argv:
        return None
    idx = argv.index(key)
    if idx + 1 >= len(argv):
        return None
    return argv[idx + 1]


def _flag(argv: list[str], key: str, default: bool = False) -> bool:
    if key not in argv:
        return default
    raw = _get_opt(argv, key)
    # Bare flag: "--once" alone or followed by another option.
    if raw is None or raw.startswith("--"):
        return True
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _print(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def _load_file(path_s: str | None) -> Any:
    if not path_s:
        raise CollectionError(COLL_005_PARSE_FAILED, "--file is required")
    path = Path(path_s)
    try:
        text = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except Exception as e:
        raise CollectionError(COLL_005_PARSE_FAILED, f"{path}: {e}") from e


def _store(argv: list[str]) -> CollectionStore:
    return CollectionStore(_get_opt(argv, "--db"))


def cmd_rules_validate(argv: list[str]) -> int:
    data = _load_file(_get_opt(argv, "--file"))
    result = validate(data)
    out = result.to_dict()
    out["ok"] = result.valid
    if result.valid and result.rule is not None:
        out["description"] = describe_rule(result.rule)
    _print(out)
    return 0 if result.valid else 3


def cmd_rules_preview(argv: list[str]) -> int:
    data = _load_file(_get_opt(argv, "--file"))
    store = _store(argv)
    preview = AggregateCache(store).preview(
        data,
        collection_id=_get_opt(argv, "--collection"),
        sample_limit=int(_get_opt(argv, "--samples") or "10"),
    )
    _print({"ok": True, "preview": preview})
    return 0


def cmd_collections_list(argv: list[str]) -> int:
    store = _store(argv)
    rows = store.list_collections(
        category=_get_opt(argv, "--category"),
        state=_get_opt(argv, "--state"),
        qualified_status=_get_opt(argv, "--status"),
    )
    keys = (
        "id",
        "category",
        "path",
        "name",
        "publication_state",
        "qualified_status",
        "cached_published_count",
        "min_required",
        "target_count",
        "progress",
        "cached_at",
    )
    _print({"ok": True, "count": len(rows), "collections": [{k: r[k] for k in keys} for r in rows]})
    return 0


def cmd_collections_create(argv: list[str]) -> int:
    data = _load_file(_get_opt(argv, "--file"))
    rows = data if isinstance(data, list) else [data]
    store = _store(argv)
    cache = AggregateCache(store)
    created: list[dict[str, Any]] = []
    for raw in rows:
        if not isinstance(raw, dict):
            raise CollectionError(COLL_005_PARSE_FAILED, "each collection must be an object")
        row = store.create_collection(
            name=str(raw.get("name", "")),
            category=str(raw.get("category", "")),
            slug=str(raw.get("slug", "")),
            rules=raw.get("rules"),
            target_count=raw.get("target_count"),
            min_required=raw.get("min_required"),
            sort_order=int(raw.get("sort_order", 0)),
            cover_image=raw.get("cover_image"),
        )
        cache.refresh(row["id"])
        created.append({"id": row["id"], "path": row["path"]})
    _print({"ok": True, "created": created})
    return 0


def cmd_collections_recompute(argv: list[str]) -> int:
    ids_raw = _get_opt(argv, "--ids") or ""
    ids = [x.strip() for x in ids_raw.split(",") if x.strip()]
    workers = _get_opt(argv, "--workers")
    store = _store(argv)
    summary = AggregateCache(store).sweep(
        ids or None,
        max_workers=int(workers) if workers else None,
        include_archived=_flag(argv, "--include-archived"),
    )
    _print(summary)
    return 0 if summary["ok"] else 4


def cmd_collections_sweep(argv: list[str]) -> int:
    interval = int(_get_opt(argv, "--interval-min") or "30")
    workers = _get_opt(argv, "--workers")
    worker = SweepWorker(
        AggregateCache(_store(argv)),
        interval_minutes=interval,
        max_workers=int(workers) if workers else None,
    )
    if _flag(argv, "--once"):
        summary = worker.run_once()
        _print(summary)
        return 0 if summary["ok"] else 4
    worker.run_forever()
    return 0


def cmd_auto_ensure(argv: list[str]) -> int:
    ref_type = _get_opt(argv, "--type") or ""
    ref_id = _get_opt(argv, "--id") or ""
    slug = _get_opt(argv, "--slug") or ref_id
    name = _get_opt(argv, "--name") or slug
    store = _store(argv)
    row, created = store.ensure_auto_collection(ref_type, ref_id, name=name, slug=slug)
    if created:
        AggregateCache(store).refresh(row["id"])
    _print({"ok": True, "created": created, "id": row["id"], "path": row["path"]})
    return 0


def cmd_auto_detach(argv: list[str]) -> int:
    store = _store(argv)
    row = store.detach_auto_collection(_get_opt(argv, "--type") or "", _get_opt(argv, "--id") or "")
    _print({"ok": row is not None, "id": row["id"] if row else None})
    return 0 if row is not None else 5


def cmd_content_import(argv: list[str]) -> int:
    data = _load_file(_get_opt(argv, "--file"))
    items = data.get("recipes") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise CollectionError(COLL_005_PARSE_FAILED, "expected a list of recipes or {recipes: [...]}")
    store = _store(argv)
    n = store.content_repo.upsert_many(
        [x for x in items if isinstance(x, dict)],
        now=datetime.now(timezone.utc).isoformat(),
    )
    _print({"ok": True, "imported": n})
    return 0


def cmd_blocks_print(argv: list[str]) -> int:
    store = _store(argv)
    blocks = AggregationBlocks(store)
    if _flag(argv, "--page"):
        _print({"ok": True, **blocks.build_aggregation_page(_get_opt(argv, "--locale") or "zh")})
        return 0
    _print({"ok": True, "blocks": [b.to_dict() for b in blocks.get_blocks()]})
    return 0


COMMANDS = {
    "rules:validate": cmd_rules_validate,
    "rules:preview": cmd_rules_preview,
    "collections:list": cmd_collections_list,
    "collections:create": cmd_collections_create,
    "collections:recompute": cmd_collections_recompute,
    "collections:sweep": cmd_collections_sweep,
    "auto:ensure": cmd_auto_ensure,
    "auto:detach": cmd_auto_detach,
    "content:import": cmd_content_import,
    "blocks:print": cmd_blocks_print,
}


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        print(
            "Usage: python -m recipe_collections.workers.cli " + "|".join(COMMANDS) + " [options]",
            file=sys.stderr,
        )
        return 2

    cmd = argv[0]
    tail = argv[1:]
    fn = COMMANDS.get(cmd)
    if fn is None:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        return 2
    try:
        return fn(tail)
    except RulesValidationError as e:
        print(json.dumps({"ok": False, "error_code": e.err.code, "errors": e.errors}, ensure_ascii=False))
        return 3
    except CollectionError as e:
        print(json.dumps({"ok": False, "error_code": e.err.code, "error": str(e)}, ensure_ascii=False))
        return 10
    except ValueError as e:
        print(json.dumps({"ok": False, "error_code": "COLL_400_BAD_INPUT", "error": str(e)}, ensure_ascii=False))
        return 2
    except Exception as e:  # pragma: no cover
        print(
            json.dumps(
                {"ok": False, "error_code": "COLL_999_UNEXPECTED", "error": str(e)},
                ensure_ascii=False,
            )
        )
        return 12


if __name__ == "__main__":
    raise SystemExit(main())
