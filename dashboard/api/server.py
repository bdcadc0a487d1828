"""FastAPI server for the autolink admin and preview surface.

Exposes rule / category / UTM template management backed by the DuckDB
``RuleStore``, plus render and preview endpoints that run the link engine.

Configuration (environment):
    AUTOLINK_DB             DuckDB file (created if missing)
    AUTOLINK_CONTENT_INDEX  JSON content directory (optional)
    AUTOLINK_SETTINGS       engine settings JSON (optional; AUTOLINK_* overrides apply)

Usage:
    uvicorn dashboard.api.server:app --reload --port 8000
"""
from __future__ import annotations

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from autolink.config import EngineSettings, load_settings, settings_to_dict
from autolink.content_lookup import JsonContentDirectory
from autolink.destinations import ContentLookupError
from autolink.engine import ContentNotFoundError, LinkEngine
from autolink.preview import PreviewFetchError, report_to_dict
from autolink.rule_store import DuckDBRenderCache, RecordNotFoundError, RuleStore
from autolink.rule_types import (
    RenderContext,
    category_to_dict,
    context_from_dict,
    rule_from_dict,
    rule_to_dict,
    template_to_dict,
)

# ---------------------------------------------------------------------------
# Globals
#
# DuckDB connections are NOT thread-safe. All endpoints MUST remain async def
# so they run on the single event loop thread; run with one uvicorn worker.
# ---------------------------------------------------------------------------
_store: RuleStore | None = None
_content: JsonContentDirectory | None = None
_engine: LinkEngine | None = None
_settings: EngineSettings = EngineSettings()
_db_path = Path(os.environ.get("AUTOLINK_DB", "data/autolink.duckdb"))


def configure(
    store: RuleStore,
    *,
    content: JsonContentDirectory | None = None,
    settings: EngineSettings | None = None,
) -> LinkEngine:
    """Wire the store, content directory and settings into a fresh engine."""
    global _store, _content, _engine, _settings  # noqa: PLW0603
    _store = store
    _content = content
    _settings = settings or EngineSettings()
    _engine = LinkEngine(
        store,
        content,
        settings=_settings,
        content_source=content,
        cache=DuckDBRenderCache(store),
    )
    return _engine


def _get_store() -> RuleStore:
    """Get the rule store, raising 503 if not available."""
    if _store is None:
        raise HTTPException(status_code=503, detail="Rule store not available")
    return _store


def _get_engine() -> LinkEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Link engine not available")
    return _engine


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    settings_path = os.environ.get("AUTOLINK_SETTINGS")
    settings = load_settings(Path(settings_path) if settings_path else None)

    content: JsonContentDirectory | None = None
    index_path = os.environ.get("AUTOLINK_CONTENT_INDEX")
    if index_path:
        try:
            content = JsonContentDirectory.from_file(Path(index_path))
            print(f"[autolink] Content index loaded: {len(content)} entries")
        except ContentLookupError as e:
            print(f"[autolink] Warning: could not load content index: {e}")

    _db_path.parent.mkdir(parents=True, exist_ok=True)
    store = RuleStore(_db_path, create_if_missing=True, settings=settings)
    configure(store, content=content, settings=settings)
    print(f"[autolink] Rule store at {_db_path} (version {store.current_version()})")

    yield
    store.close()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Autolink Admin API",
    version="0.1.0",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class RenderRequest(BaseModel):
    context: dict[str, Any] = Field(default_factory=dict)
    markup: str | None = None


class PreviewRequest(BaseModel):
    context: dict[str, Any] = Field(default_factory=dict)
    markup: str | None = None
    url: str | None = None
    draft_rules: list[dict[str, Any]] | None = None


class BulkStatusRequest(BaseModel):
    rule_ids: list[str] = Field(..., min_length=1)
    status: str = Field(..., pattern=r"^(active|inactive)$")


def _context(raw: dict[str, Any]) -> RenderContext:
    try:
        return context_from_dict(raw)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Invalid context: {e}") from e


# ---------------------------------------------------------------------------
# Routes: health / version
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "store": _store is not None,
        "content_index": len(_content) if _content is not None else 0,
    }


@app.get("/api/version")
async def version():
    """Current rule-set version token plus store counts and settings."""
    store = _get_store()
    return {
        "version": store.current_version(),
        "stats": store.stats(),
        "settings": settings_to_dict(_settings),
    }


# ---------------------------------------------------------------------------
# Routes: render / preview
# ---------------------------------------------------------------------------

@app.post("/api/render")
async def render(body: RenderRequest):
    engine = _get_engine()
    context = _context(body.context)
    try:
        result = engine.render(context, markup=body.markup)
    except ContentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {
        "markup": result.markup,
        "version": result.version,
        "links_inserted": result.links_inserted,
        "cached": result.cached,
        "diagnostics": [
            {"code": d.code, "message": d.message, "severity": d.severity}
            for d in result.diagnostics
        ],
    }


@app.post("/api/preview")
async def preview(body: PreviewRequest):
    """Run the pipeline for a content id, explicit markup or any URL; nothing is stored."""
    engine = _get_engine()
    context = _context(body.context)
    try:
        drafts = [rule_from_dict(r) for r in body.draft_rules or []]
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid draft rule: {e}") from e
    try:
        report = engine.preview(context, markup=body.markup, url=body.url, draft_rules=drafts or None)
    except ContentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except PreviewFetchError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return report_to_dict(report)


# ---------------------------------------------------------------------------
# Routes: rules
# ---------------------------------------------------------------------------

@app.get("/api/rules")
async def list_rules(
    status: str | None = Query(None, pattern=r"^(active|inactive)$"),
    category_id: str | None = Query(None),
    search: str | None = Query(None),
):
    rules = _get_store().get_rules(status=status, category_id=category_id, search=search)
    return {"total": len(rules), "rules": [rule_to_dict(r) for r in rules]}


@app.post("/api/rules")
async def save_rule(payload: dict[str, Any] = Body(...)):
    """Create or replace a rule (keywords may be a list or a comma/newline string)."""
    store = _get_store()
    try:
        rule = store.save_rule(payload)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return {"rule": rule_to_dict(rule), "version": store.current_version()}


@app.post("/api/rules/bulk-status")
async def bulk_status(body: BulkStatusRequest):
    store = _get_store()
    updated = store.bulk_set_status(body.rule_ids, body.status)
    return {"updated": updated, "version": store.current_version()}


@app.get("/api/rules/{rule_id}")
async def get_rule(rule_id: str):
    rule = _get_store().get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail=f"Rule not found: {rule_id}")
    return rule_to_dict(rule)


@app.delete("/api/rules/{rule_id}")
async def delete_rule(rule_id: str):
    store = _get_store()
    try:
        store.delete_rule(rule_id)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"deleted": True, "version": store.current_version()}


@app.post("/api/rules/{rule_id}/duplicate")
async def duplicate_rule(rule_id: str):
    store = _get_store()
    try:
        copy = store.duplicate_rule(rule_id)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"rule": rule_to_dict(copy), "version": store.current_version()}


# ---------------------------------------------------------------------------
# Routes: categories
# ---------------------------------------------------------------------------

@app.get("/api/categories")
async def list_categories():
    store = _get_store()
    counts: dict[str, int] = {}
    for rule in store.get_rules():
        if rule.category_id:
            counts[rule.category_id] = counts.get(rule.category_id, 0) + 1
    return {
        "categories": [
            {**category_to_dict(c), "rule_count": counts.get(c.category_id, 0)}
            for c in store.get_categories()
        ],
    }


@app.post("/api/categories")
async def save_category(payload: dict[str, Any] = Body(...)):
    store = _get_store()
    try:
        category = store.save_category(payload)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return {"category": category_to_dict(category), "version": store.current_version()}


@app.delete("/api/categories/{category_id}")
async def delete_category(category_id: str, reassign_to: str | None = Query(None)):
    store = _get_store()
    try:
        moved = store.delete_category(category_id, reassign_to=reassign_to)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"deleted": True, "rules_moved": moved, "version": store.current_version()}


# ---------------------------------------------------------------------------
# Routes: UTM templates
# ---------------------------------------------------------------------------

@app.get("/api/templates")
async def list_templates():
    return {"templates": [template_to_dict(t) for t in _get_store().get_templates()]}


@app.post("/api/templates")
async def save_template(payload: dict[str, Any] = Body(...)):
    store = _get_store()
    try:
        template = store.save_template(payload)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return {"template": template_to_dict(template), "version": store.current_version()}


@app.delete("/api/templates/{template_id}")
async def delete_template(template_id: str):
    store = _get_store()
    try:
        touched = store.delete_template(template_id)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"deleted": True, "rules_reset": touched, "version": store.current_version()}
