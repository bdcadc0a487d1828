"""DuckDB read/write store for link rules, categories and UTM templates.

Manages a single writable DuckDB file with:

* ``rules`` / ``categories`` / ``utm_templates``: indexed columns for listing
  and filtering, plus an orjson ``payload`` holding the full record
* ``store_state``: the rule-set version token, bumped on every mutation
* ``render_cache``: rendered markup keyed by content id (``DuckDBRenderCache``)

``RuleStore`` implements the engine's ``RuleRepository``: ``load_snapshot``
reads all three tables inside one transaction so a render never sees a
half-applied change.
"""
from __future__ import annotations

import contextlib
import importlib
import logging
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from autolink.config import EngineSettings
from autolink.engine import CachedRender, RenderCache, RuleRepository
from autolink.io_utils import json_dumps, json_loads
from autolink.rule_types import (
    Category,
    Rule,
    RuleSetSnapshot,
    UtmTemplate,
    category_from_dict,
    category_to_dict,
    rule_from_dict,
    rule_issues,
    rule_to_dict,
    template_from_dict,
    template_to_dict,
)

# Dynamic DuckDB import for pyright compatibility
_duckdb_mod = importlib.import_module("duckdb")

log = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    """A rule, category or template id does not exist in the store."""


def _uuid() -> str:
    return uuid.uuid4().hex[:12]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _to_dict(cols: list[str], row: tuple[Any, ...]) -> dict[str, Any]:
    """Zip column names with a row tuple into a dict (strict length check)."""
    return dict(zip(cols, row, strict=True))


_SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS store_state (
    key VARCHAR PRIMARY KEY,
    value VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS rules (
    rule_id VARCHAR PRIMARY KEY,
    title VARCHAR NOT NULL DEFAULT '',
    category_id VARCHAR,
    status VARCHAR NOT NULL DEFAULT 'active',
    priority INTEGER NOT NULL DEFAULT 0,
    keywords VARCHAR NOT NULL DEFAULT '',
    payload VARCHAR NOT NULL,
    created_at VARCHAR NOT NULL,
    updated_at VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS categories (
    category_id VARCHAR PRIMARY KEY,
    name VARCHAR NOT NULL,
    payload VARCHAR NOT NULL,
    created_at VARCHAR NOT NULL,
    updated_at VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS utm_templates (
    template_id VARCHAR PRIMARY KEY,
    name VARCHAR NOT NULL,
    payload VARCHAR NOT NULL,
    created_at VARCHAR NOT NULL,
    updated_at VARCHAR NOT NULL
);

CREATE TABLE IF NOT EXISTS render_cache (
    content_id VARCHAR PRIMARY KEY,
    version VARCHAR NOT NULL,
    source_digest VARCHAR NOT NULL,
    markup VARCHAR NOT NULL,
    rendered_at VARCHAR NOT NULL
)
"""


class RuleStore(RuleRepository):
    """Read/write interface to the autolink DuckDB file."""

    def __init__(
        self,
        db_path: Path | str,
        *,
        create_if_missing: bool = False,
        settings: EngineSettings | None = None,
    ) -> None:
        self._db_path = Path(db_path)
        if str(db_path) != ":memory:" and not self._db_path.exists() and not create_if_missing:
            raise FileNotFoundError(f"Rules database not found: {self._db_path}")
        self._conn: Any = _duckdb_mod.connect(str(db_path))
        self._in_transaction = False
        self.settings = settings or EngineSettings()
        self._create_schema()

    def _create_schema(self) -> None:
        """Create all tables if they don't exist."""
        for stmt in _SCHEMA_DDL.split(";"):
            stmt = stmt.strip()
            if stmt:
                with contextlib.suppress(Exception):
                    self._conn.execute(stmt)
        row = self._conn.execute("SELECT value FROM store_state WHERE key = 'version'").fetchone()
        if row is None:
            self._conn.execute("INSERT INTO store_state VALUES ('version', '1')")

    def __enter__(self) -> RuleStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the DuckDB connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[None]:
        """Run a multi-statement change atomically; nested calls join the outer one.

        Row writes and the version bump commit together, so a failed mutation
        never leaves changed rules under the old version token.
        """
        if self._in_transaction:
            yield
            return
        self._conn.execute("BEGIN TRANSACTION")
        self._in_transaction = True
        try:
            yield
            self._conn.execute("COMMIT")
        except Exception:
            with contextlib.suppress(Exception):
                self._conn.execute("ROLLBACK")
            raise
        finally:
            self._in_transaction = False

    # ─── Version token ───────────────────────────────────────────

    def current_version(self) -> str:
        row = self._conn.execute("SELECT value FROM store_state WHERE key = 'version'").fetchone()
        return str(row[0]) if row else "1"

    def bump_version(self) -> str:
        """Advance the version token; every cached render becomes stale."""
        current = self.current_version()
        nxt = str(int(current) + 1) if current.isdigit() else _uuid()
        self._conn.execute("UPDATE store_state SET value = ? WHERE key = 'version'", [nxt])
        return nxt

    # ─── Rules ───────────────────────────────────────────────────

    def _rule_from_row(self, payload: str) -> Rule:
        return rule_from_dict(json_loads(payload))

    def get_rules(
        self,
        *,
        status: str | None = None,
        category_id: str | None = None,
        search: str | None = None,
    ) -> list[Rule]:
        conditions: list[str] = []
        params: list[Any] = []
        if status:
            conditions.append("status = ?")
            params.append(status)
        if category_id:
            conditions.append("category_id = ?")
            params.append(category_id)
        if search:
            conditions.append("(title ILIKE ? OR keywords ILIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        rows = self._conn.execute(
            f"SELECT payload FROM rules{where} ORDER BY created_at, rule_id",
            params,
        ).fetchall()
        return [self._rule_from_row(row[0]) for row in rows]

    def get_rule(self, rule_id: str) -> Rule | None:
        row = self._conn.execute(
            "SELECT payload FROM rules WHERE rule_id = ?", [rule_id]
        ).fetchone()
        if row is None:
            return None
        return self._rule_from_row(row[0])

    def _write_rule(self, rule: Rule, now: str) -> None:
        self._conn.execute("""
            INSERT OR REPLACE INTO rules
            (rule_id, title, category_id, status, priority, keywords, payload, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            rule.rule_id,
            rule.title,
            rule.category_id,
            rule.status,
            rule.priority,
            "\n".join(rule.keywords),
            json_dumps(rule_to_dict(rule)),
            rule.created_at or now,
            now,
        ])

    def save_rule(self, rule: Rule | dict[str, Any], *, validate: bool = True) -> Rule:
        """Insert or replace a rule; assigns an id and ``created_at`` when missing.

        Raises:
            ValueError: the rule is malformed and *validate* is set.
        """
        if isinstance(rule, dict):
            rule = rule_from_dict(rule)
        now = _now()
        existing = self.get_rule(rule.rule_id) if rule.rule_id else None
        rule = replace(
            rule,
            rule_id=rule.rule_id or _uuid(),
            created_at=rule.created_at or (existing.created_at if existing else now),
        )
        if validate:
            issues = rule_issues(
                rule,
                case_sensitive=self.settings.case_sensitive,
                normalize_diacritics=self.settings.normalize_diacritics,
            )
            if issues:
                raise ValueError(f"Invalid rule {rule.rule_id}: {'; '.join(issues)}")
        with self._transaction():
            self._write_rule(rule, now)
            self.bump_version()
        return rule

    def duplicate_rule(self, rule_id: str, *, new_rule_id: str | None = None) -> Rule:
        """Copy a rule under a new id; the copy starts inactive."""
        original = self.get_rule(rule_id)
        if original is None:
            raise RecordNotFoundError(f"Rule not found: {rule_id}")
        data = rule_to_dict(original)
        data.update({
            "rule_id": new_rule_id or _uuid(),
            "title": f"{original.title} (copy)" if original.title else "",
            "status": "inactive",
            "created_at": _now(),
        })
        return self.save_rule(data, validate=False)

    def delete_rule(self, rule_id: str) -> None:
        if self.get_rule(rule_id) is None:
            raise RecordNotFoundError(f"Rule not found: {rule_id}")
        with self._transaction():
            self._conn.execute("DELETE FROM rules WHERE rule_id = ?", [rule_id])
            self.bump_version()

    def bulk_set_status(self, rule_ids: Iterable[str], status: str) -> int:
        """Activate or deactivate many rules; returns the number updated."""
        if status not in {"active", "inactive"}:
            raise ValueError(f"Invalid status: {status!r}")
        now = _now()
        updated = 0
        with self._transaction():
            for rule_id in dict.fromkeys(rule_ids):
                rule = self.get_rule(rule_id)
                if rule is None or rule.status == status:
                    continue
                data = rule_to_dict(rule)
                data["status"] = status
                self._write_rule(rule_from_dict(data), now)
                updated += 1
            if updated:
                self.bump_version()
        return updated

    # ─── Categories ──────────────────────────────────────────────

    def get_categories(self) -> list[Category]:
        rows = self._conn.execute(
            "SELECT payload FROM categories ORDER BY name, category_id"
        ).fetchall()
        return [category_from_dict(json_loads(row[0])) for row in rows]

    def get_category(self, category_id: str) -> Category | None:
        row = self._conn.execute(
            "SELECT payload FROM categories WHERE category_id = ?", [category_id]
        ).fetchone()
        return category_from_dict(json_loads(row[0])) if row else None

    def save_category(self, category: Category | dict[str, Any]) -> Category:
        if isinstance(category, dict):
            category = category_from_dict(category)
        if not category.name.strip():
            raise ValueError("Category name is required")
        if category.category_cap is not None and category.category_cap < 0:
            raise ValueError("category_cap must be >= 0")
        data = category_to_dict(category)
        data["category_id"] = category.category_id or _uuid()
        category = category_from_dict(data)
        now = _now()
        with self._transaction():
            existing = self._conn.execute(
                "SELECT created_at FROM categories WHERE category_id = ?", [category.category_id]
            ).fetchone()
            self._conn.execute("""
                INSERT OR REPLACE INTO categories (category_id, name, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, [
                category.category_id,
                category.name,
                json_dumps(category_to_dict(category)),
                existing[0] if existing else now,
                now,
            ])
            self.bump_version()
        return category

    def delete_category(self, category_id: str, *, reassign_to: str | None = None) -> int:
        """Delete a category; member rules move to *reassign_to* or become uncategorized.

        Returns the number of rules touched.
        """
        if self.get_category(category_id) is None:
            raise RecordNotFoundError(f"Category not found: {category_id}")
        if reassign_to is not None and self.get_category(reassign_to) is None:
            raise RecordNotFoundError(f"Category not found: {reassign_to}")
        now = _now()
        moved = 0
        with self._transaction():
            for rule in self.get_rules(category_id=category_id):
                data = rule_to_dict(rule)
                data["category_id"] = reassign_to
                self._write_rule(rule_from_dict(data), now)
                moved += 1
            self._conn.execute("DELETE FROM categories WHERE category_id = ?", [category_id])
            self.bump_version()
        return moved

    # ─── UTM templates ───────────────────────────────────────────

    def get_templates(self) -> list[UtmTemplate]:
        rows = self._conn.execute(
            "SELECT payload FROM utm_templates ORDER BY name, template_id"
        ).fetchall()
        return [template_from_dict(json_loads(row[0])) for row in rows]

    def get_template(self, template_id: str) -> UtmTemplate | None:
        row = self._conn.execute(
            "SELECT payload FROM utm_templates WHERE template_id = ?", [template_id]
        ).fetchone()
        return template_from_dict(json_loads(row[0])) if row else None

    def save_template(self, template: UtmTemplate | dict[str, Any]) -> UtmTemplate:
        if isinstance(template, dict):
            template = template_from_dict(template)
        if not template.name.strip():
            raise ValueError("Template name is required")
        if not template.fields():
            raise ValueError("Template needs at least one utm_* field")
        data = template_to_dict(template)
        data["template_id"] = template.template_id or _uuid()
        template = template_from_dict(data)
        now = _now()
        with self._transaction():
            existing = self._conn.execute(
                "SELECT created_at FROM utm_templates WHERE template_id = ?", [template.template_id]
            ).fetchone()
            self._conn.execute("""
                INSERT OR REPLACE INTO utm_templates (template_id, name, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, [
                template.template_id,
                template.name,
                json_dumps(template_to_dict(template)),
                existing[0] if existing else now,
                now,
            ])
            self.bump_version()
        return template

    def delete_template(self, template_id: str) -> int:
        """Delete a template; rules pointing at it fall back to ``inherit``.

        Category defaults referencing it are cleared. Returns the number of
        rules touched.
        """
        if self.get_template(template_id) is None:
            raise RecordNotFoundError(f"Template not found: {template_id}")
        now = _now()
        touched = 0
        with self._transaction():
            for rule in self.get_rules():
                if rule.utm_ref.mode == "template" and rule.utm_ref.template_id == template_id:
                    data = rule_to_dict(rule)
                    data["utm"] = {"mode": "inherit", "template_id": None, "apply_to": rule.utm_ref.apply_to}
                    self._write_rule(rule_from_dict(data), now)
                    touched += 1
            for category in self.get_categories():
                if category.default_utm_template_id == template_id:
                    data = category_to_dict(category)
                    data["default_utm_template_id"] = None
                    self._conn.execute(
                        "UPDATE categories SET payload = ?, updated_at = ? WHERE category_id = ?",
                        [json_dumps(data), now, category.category_id],
                    )
            self._conn.execute("DELETE FROM utm_templates WHERE template_id = ?", [template_id])
            self.bump_version()
        return touched

    # ─── Snapshot ────────────────────────────────────────────────

    def load_snapshot(self) -> RuleSetSnapshot:
        """Read every rule, category and template plus the version, atomically."""
        with self._transaction():
            version = self.current_version()
            rules = tuple(self.get_rules())
            categories = {c.category_id: c for c in self.get_categories()}
            templates = {t.template_id: t for t in self.get_templates()}
        return RuleSetSnapshot(
            rules=rules,
            categories=categories,
            templates=templates,
            version=version,
        )

    def stats(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for table in ("rules", "categories", "utm_templates", "render_cache"):
            row = self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
            out[table] = int(row[0]) if row else 0
        row = self._conn.execute("SELECT COUNT(*) FROM rules WHERE status = 'active'").fetchone()
        out["active_rules"] = int(row[0]) if row else 0
        return out

    @property
    def connection(self) -> Any:
        return self._conn


class DuckDBRenderCache(RenderCache):
    """Render cache stored in the ``render_cache`` table of a ``RuleStore``."""

    def __init__(self, store: RuleStore) -> None:
        self._store = store

    def get(self, content_id: str) -> CachedRender | None:
        conn = self._store.connection
        row = conn.execute(
            "SELECT * FROM render_cache WHERE content_id = ?", [content_id]
        ).fetchone()
        if row is None:
            return None
        cols = [d[0] for d in conn.description]
        data = _to_dict(cols, row)
        return CachedRender(
            content_id=data["content_id"],
            version=data["version"],
            source_digest=data["source_digest"],
            markup=data["markup"],
        )

    def put(self, entry: CachedRender) -> None:
        self._store.connection.execute("""
            INSERT OR REPLACE INTO render_cache (content_id, version, source_digest, markup, rendered_at)
            VALUES (?, ?, ?, ?, ?)
        """, [entry.content_id, entry.version, entry.source_digest, entry.markup, _now()])

    def invalidate(self, content_id: str | None = None) -> None:
        conn = self._store.connection
        if content_id is None:
            conn.execute("DELETE FROM render_cache")
        else:
            conn.execute("DELETE FROM render_cache WHERE content_id = ?", [content_id])

    def purge_stale(self, version: str) -> int:
        """Delete entries rendered under any version other than *version*."""
        conn = self._store.connection
        row = conn.execute(
            "SELECT COUNT(*) FROM render_cache WHERE version <> ?", [version]
        ).fetchone()
        count = int(row[0]) if row else 0
        conn.execute("DELETE FROM render_cache WHERE version <> ?", [version])
        if count:
            log.debug("purged %d stale render cache entries", count)
        return count
