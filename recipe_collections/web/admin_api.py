from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBasic, HTTPBasicCredentials, HTTPBearer
from pydantic import BaseModel, Field

from recipe_collections.rules.describe import describe_rule
from recipe_collections.rules.errors import (
    COLL_002_COLLECTION_NOT_FOUND,
    COLL_003_RECOMPUTE_FAILED,
    COLL_004_BLOCKS_INVALID,
    COLL_006_INVALID_STATE,
    CollectionError,
    RulesValidationError,
)
from recipe_collections.rules.validator import validate
from recipe_collections.services.aggregate_cache import AggregateCache
from recipe_collections.services.blocks import AggregationBlocks
from recipe_collections.services.collection_store import CollectionStore
from recipe_collections.services.diagnose import diagnose_collection
from recipe_collections.services.resolver import CollectionResolver

_ERROR_STATUS = {
    COLL_002_COLLECTION_NOT_FOUND.code: 404,
    COLL_003_RECOMPUTE_FAILED.code: 500,
    COLL_004_BLOCKS_INVALID.code: 422,
    COLL_006_INVALID_STATE.code: 409,
}


class RulesPayload(BaseModel):
    rules: dict[str, Any] | None = None


class PreviewPayload(BaseModel):
    rules: dict[str, Any] | None = None
    collection_id: str | None = None
    sample_limit: int = Field(default=10, ge=1, le=100)


class CollectionCreatePayload(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    category: str = Field(min_length=1, max_length=32)
    slug: str = Field(min_length=1, max_length=128)
    rules: dict[str, Any] | None = None
    target_count: int | None = None
    min_required: int | None = None
    sort_order: int = 0
    cover_image: str | None = None


class CollectionMetaPayload(BaseModel):
    name: str | None = None
    slug: str | None = None
    cover_image: str | None = None
    target_count: int | None = None
    min_required: int | None = None
    sort_order: int | None = None


class ItemIdsPayload(BaseModel):
    item_ids: list[str] = Field(default_factory=list)
    position: str = Field(default="end", pattern="^(start|end)$")


class PublishPayload(BaseModel):
    force: bool = False


class SweepPayload(BaseModel):
    ids: list[str] = Field(default_factory=list)
    workers: int | None = Field(default=None, ge=1, le=8)


class AutoSyncPayload(BaseModel):
    action: str = Field(default="ensure", pattern="^(ensure|sync|detach)$")
    ref_type: str
    ref_id: str
    name: str | None = None
    slug: str | None = None


class TranslationPayload(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class BlocksPayload(BaseModel):
    blocks: list[dict[str, Any]]
    updated_by: str = Field(default="admin", min_length=1, max_length=128)


basic = HTTPBasic(auto_error=False)
bearer = HTTPBearer(auto_error=False)


def _is_loopback(host: str | None) -> bool:
    return host in {"127.0.0.1", "::1", "localhost"}


def _auth_guard(
    request: Request,
    basic_cred: HTTPBasicCredentials | None = Depends(basic),
    bearer_cred: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> dict[str, str]:
    admin_token = os.environ.get("ADMIN_TOKEN", "").strip()
    admin_user = os.environ.get("ADMIN_USER", "").strip()
    admin_pass = os.environ.get("ADMIN_PASS", "").strip()

    if admin_token:
        if bearer_cred and bearer_cred.scheme.lower() == "bearer" and bearer_cred.credentials == admin_token:
            return {"auth": "bearer", "principal": "token-user"}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if admin_user and admin_pass:
        if basic_cred and basic_cred.username == admin_user and basic_cred.password == admin_pass:
            return {"auth": "basic", "principal": basic_cred.username}
        raise HTTPException(
            status_code=401,
            detail="unauthorized: basic auth required",
            headers={"WWW-Authenticate": 'Basic realm="CollectionsAdminAPI"'},
        )

    # No explicit credentials: only allow local requests.
    host = request.client.host if request.client else None
    if _is_loopback(host):
        return {"auth": "local", "principal": "localhost"}
    raise HTTPException(
        status_code=401,
        detail="unauthorized: configure ADMIN_TOKEN or ADMIN_USER/ADMIN_PASS",
        headers={"WWW-Authenticate": 'Basic realm="CollectionsAdminAPI"'},
    )


def _bad_request(e: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(e))


def create_app(project_root: Path | None = None, database_url: str | None = None) -> FastAPI:
    root = project_root or Path(__file__).resolve().parents[2]
    store = CollectionStore(database_url, project_root=root)
    cache = AggregateCache(store)
    resolver = CollectionResolver(store)
    blocks = AggregationBlocks(store, resolver)
    app = FastAPI(title="Collections Admin API", version="1.0.0")

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        # No auth: used by container healthchecks.
        obs = store.observability_info()
        return {
            "ok": True,
            "service": "collections-api",
            "db_url": obs["db_url"],
            "db_backend": obs["db_backend"],
            "ts": datetime.now(timezone.utc).isoformat(),
        }

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:  # type: ignore[override]
        payload = {"ok": False, "error": {"code": f"HTTP_{exc.status_code}", "message": str(exc.detail)}}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

    @app.exception_handler(RulesValidationError)
    async def _rules_invalid_handler(_: Request, exc: RulesValidationError) -> JSONResponse:
        payload = {
            "ok": False,
            "error": {"code": exc.err.code, "message": exc.err.message},
            "errors": exc.errors,
        }
        return JSONResponse(status_code=422, content=payload)

    @app.exception_handler(CollectionError)
    async def _collection_error_handler(_: Request, exc: CollectionError) -> JSONResponse:
        payload = {"ok": False, "error": {"code": exc.err.code, "message": str(exc)}}
        return JSONResponse(status_code=_ERROR_STATUS.get(exc.err.code, 400), content=payload)

    # ---- rules ----

    @app.post("/admin/api/rules/validate")
    def rules_validate(payload: RulesPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        result = validate(payload.rules)
        out = {"ok": True, **result.to_dict()}
        out["description"] = describe_rule(result.rule) if result.valid and result.rule is not None else ""
        return out

    @app.post("/admin/api/rules/preview")
    def rules_preview(payload: PreviewPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        preview = cache.preview(payload.rules, collection_id=payload.collection_id, sample_limit=payload.sample_limit)
        return {"ok": True, "preview": preview}

    # ---- collections ----

    @app.get("/admin/api/collections")
    def collections_list(
        category: str | None = None,
        state: str | None = None,
        qualified_status: str | None = None,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        rows = store.list_collections(category=category, state=state, qualified_status=qualified_status)
        return {"ok": True, "count": len(rows), "collections": rows}

    @app.post("/admin/api/collections")
    def collections_create(payload: CollectionCreatePayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        try:
            row = store.create_collection(**payload.model_dump())
        except ValueError as e:
            raise _bad_request(e) from e
        refreshed = cache.refresh(row["id"])
        return {"ok": True, "collection": store.view(store.get(row["id"])), "refresh": refreshed}

    @app.get("/admin/api/collections/{collection_id}")
    def collections_detail(collection_id: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, "collection": store.view(store.get(collection_id))}

    @app.patch("/admin/api/collections/{collection_id}")
    def collections_update_meta(
        collection_id: str,
        payload: CollectionMetaPayload,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        try:
            row = store.update_meta(collection_id, payload.model_dump(exclude_none=True))
        except ValueError as e:
            raise _bad_request(e) from e
        return {"ok": True, "collection": store.view(row)}

    @app.put("/admin/api/collections/{collection_id}/rules")
    def collections_save_rules(
        collection_id: str,
        payload: RulesPayload,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        store.save_rules(collection_id, payload.rules)
        refreshed = cache.refresh(collection_id)
        return {"ok": True, "collection": store.view(store.get(collection_id)), "refresh": refreshed}

    @app.post("/admin/api/collections/{collection_id}/test-rules")
    def collections_test_rules(
        collection_id: str,
        payload: RulesPayload,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        rules = payload.rules if payload.rules is not None else store.get(collection_id)["rules"]
        return {"ok": True, "preview": cache.preview(rules, collection_id=collection_id)}

    def _override(collection_id: str, fn: Any, payload: ItemIdsPayload, **kwargs: Any) -> dict[str, Any]:
        try:
            row = fn(collection_id, payload.item_ids, **kwargs)
        except ValueError as e:
            raise _bad_request(e) from e
        refreshed = cache.refresh(collection_id)
        return {
            "ok": True,
            "excluded_item_ids": row["excluded_item_ids"],
            "pinned_item_ids": row["pinned_item_ids"],
            "refresh": refreshed,
        }

    @app.post("/admin/api/collections/{collection_id}/exclude")
    def collections_exclude(collection_id: str, payload: ItemIdsPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return _override(collection_id, store.exclude_items, payload)

    @app.delete("/admin/api/collections/{collection_id}/exclude")
    def collections_unexclude(collection_id: str, payload: ItemIdsPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return _override(collection_id, store.include_items, payload)

    @app.post("/admin/api/collections/{collection_id}/pin")
    def collections_pin(collection_id: str, payload: ItemIdsPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return _override(collection_id, store.pin_items, payload, position=payload.position)

    @app.delete("/admin/api/collections/{collection_id}/pin")
    def collections_unpin(collection_id: str, payload: ItemIdsPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return _override(collection_id, store.unpin_items, payload)

    @app.post("/admin/api/collections/{collection_id}/publish")
    def collections_publish(
        collection_id: str,
        payload: PublishPayload | None = None,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        force = bool(payload.force) if payload is not None else False
        cache.refresh(collection_id)
        out = store.publish(collection_id, force=force)
        return {
            "ok": True,
            "published": out["published"],
            "warning": out["warning"],
            "message": out["message"],
            "collection": store.view(out["collection"]),
        }

    @app.delete("/admin/api/collections/{collection_id}/publish")
    def collections_unpublish(collection_id: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, "collection": store.view(store.unpublish(collection_id))}

    @app.post("/admin/api/collections/{collection_id}/archive")
    def collections_archive(collection_id: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, "collection": store.view(store.archive(collection_id))}

    @app.get("/admin/api/collections/{collection_id}/diagnose")
    def collections_diagnose(collection_id: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, **diagnose_collection(store, collection_id)}

    @app.post("/admin/api/collections/{collection_id}/refresh-counts")
    def collections_refresh(collection_id: str, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {"ok": True, "refresh": cache.refresh(collection_id)}

    @app.post("/admin/api/collections/refresh-counts")
    def collections_sweep(payload: SweepPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return cache.sweep(payload.ids or None, max_workers=payload.workers)

    @app.put("/admin/api/collections/{collection_id}/translations/{locale}")
    def collections_translation(
        collection_id: str,
        locale: str,
        payload: TranslationPayload,
        _: dict[str, str] = Depends(_auth_guard),
    ) -> dict[str, Any]:
        try:
            store.upsert_translation(collection_id, locale, payload.name)
        except ValueError as e:
            raise _bad_request(e) from e
        return {"ok": True, "id": collection_id, "locale": locale, "name": payload.name}

    @app.post("/admin/api/sync/auto")
    def sync_auto(payload: AutoSyncPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        try:
            if payload.action == "ensure":
                row, created = store.ensure_auto_collection(
                    payload.ref_type, payload.ref_id, name=payload.name or payload.slug or "", slug=payload.slug or ""
                )
                if created:
                    cache.refresh(row["id"])
                return {"ok": True, "created": created, "collection": store.view(store.get(row["id"]))}
            if payload.action == "sync":
                row = store.sync_auto_collection(payload.ref_type, payload.ref_id, name=payload.name, slug=payload.slug)
            else:
                row = store.detach_auto_collection(payload.ref_type, payload.ref_id)
        except ValueError as e:
            raise _bad_request(e) from e
        if row is None:
            raise HTTPException(status_code=404, detail="linked collection not found")
        return {"ok": True, "collection": store.view(row)}

    # ---- aggregation blocks ----

    @app.get("/admin/api/aggregation/blocks")
    def blocks_get_admin(_: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        return {
            "ok": True,
            "stored": blocks.stored_blocks(),
            "blocks": [b.to_dict() for b in blocks.get_blocks()],
        }

    @app.put("/admin/api/aggregation/blocks")
    def blocks_save(payload: BlocksPayload, _: dict[str, str] = Depends(_auth_guard)) -> dict[str, Any]:
        saved = blocks.save_blocks(payload.blocks, updated_by=payload.updated_by)
        return {"ok": True, "blocks": [b.to_dict() for b in saved]}

    # ---- public read API ----

    @app.get("/api/collections")
    def public_collections(category: str, locale: str = "zh", limit: int = 6, offset: int = 0) -> dict[str, Any]:
        cards = resolver.list_qualified(category, locale, limit=max(0, min(limit, 100)), offset=max(0, offset))
        return {"ok": True, "category": category, "collections": [c.to_dict() for c in cards]}

    @app.get("/api/aggregation/blocks")
    def public_blocks() -> dict[str, Any]:
        return {"ok": True, "blocks": [b.to_dict() for b in blocks.get_blocks()]}

    @app.get("/api/aggregation")
    def public_aggregation(locale: str = "zh") -> dict[str, Any]:
        return {"ok": True, **blocks.build_aggregation_page(locale)}

    return app


def run_server() -> None:
    host = os.environ.get("ADMIN_API_HOST", "127.0.0.1")
    port = int(os.environ.get("ADMIN_API_PORT", "8789"))
    uvicorn.run("recipe_collections.web.admin_api:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    run_server()
