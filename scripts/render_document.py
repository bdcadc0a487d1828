#!/usr/bin/env python3
"""Render or preview one document against the rule store.

Usage:
    python3 scripts/render_document.py --db data/autolink.duckdb \
      --markup-file post.html --page-path /blog/post-1 --content-type post

    python3 scripts/render_document.py --db data/autolink.duckdb \
      --content-index data/content.json --content-id 42 --preview

    python3 scripts/render_document.py --db data/autolink.duckdb \
      --url https://example.com/blog/post-1 --preview

Structured JSON output goes to stdout; human messages go to stderr.
"""
from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any

import orjson

from autolink.config import load_settings
from autolink.content_lookup import JsonContentDirectory
from autolink.destinations import ContentLookupError
from autolink.engine import ContentNotFoundError, LinkEngine, MemoryRenderCache
from autolink.preview import PreviewFetchError, report_to_dict
from autolink.rule_store import RuleStore
from autolink.rule_types import RenderContext

log = logging.getLogger("render_document")


def dump_json(obj: Any) -> None:
    sys.stdout.buffer.write(orjson.dumps(obj, option=orjson.OPT_INDENT_2))
    sys.stdout.buffer.write(b"\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Insert keyword links into one document (or preview what would be linked).",
    )
    parser.add_argument("--db", required=True, type=Path, help="Path to the rules DuckDB file")
    parser.add_argument("--settings", type=Path, default=None, help="Engine settings JSON")
    parser.add_argument("--content-index", type=Path, default=None, help="Content directory JSON")

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--markup-file", type=Path, help="HTML fragment to render")
    source.add_argument("--content-id", help="Render stored markup for this content id")
    source.add_argument("--url", help="Fetch a page and preview its content region")

    parser.add_argument("--page-path", default=None, help="Path of the page being rendered")
    parser.add_argument("--content-type", default=None, help="Content type (post, page, ...)")
    parser.add_argument("--post-title", default="")
    parser.add_argument("--slug", default="")
    parser.add_argument("--primary-category", default="")
    parser.add_argument("--author", default="")
    parser.add_argument("--site-name", default="")
    parser.add_argument("--date", default=None, help="Render date (YYYY-MM-DD) for UTM tokens")
    parser.add_argument("--widget", action="store_true", help="Render as a widget region")
    parser.add_argument("--preview", action="store_true", help="Emit a preview report instead of markup")
    parser.add_argument("--output", type=Path, default=None, help="Write rendered markup to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def build_context(args: argparse.Namespace, content: JsonContentDirectory | None) -> RenderContext:
    entry = content.entry(args.content_id) if content is not None and args.content_id else None
    entry = entry or {}
    page_path = args.page_path or str(entry.get("url") or "/")
    return RenderContext(
        content_id=args.content_id,
        content_type=args.content_type or entry.get("type"),
        page_path=page_path,
        post_title=args.post_title or str(entry.get("title") or ""),
        slug=args.slug,
        primary_category=args.primary_category,
        author=args.author,
        site_name=args.site_name,
        render_date=date.fromisoformat(args.date) if args.date else None,
        region="widget" if args.widget else "content",
    )


def run(args: argparse.Namespace) -> int:
    if not args.db.exists():
        print(f"Error: database not found: {args.db}", file=sys.stderr)
        return 1
    settings = load_settings(args.settings)

    content: JsonContentDirectory | None = None
    if args.content_index is not None:
        try:
            content = JsonContentDirectory.from_file(args.content_index)
        except ContentLookupError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    with RuleStore(args.db) as store:
        engine = LinkEngine(
            store,
            content,
            settings=settings,
            content_source=content,
            cache=MemoryRenderCache(),
        )
        context = build_context(args, content)
        markup = args.markup_file.read_text(encoding="utf-8") if args.markup_file else None

        issues = engine.snapshot_issues()
        if issues:
            print(f"{len(issues)} malformed rule(s) excluded", file=sys.stderr)

        try:
            if args.preview or args.url:
                report = engine.preview(context, markup=markup, url=args.url)
                dump_json(report_to_dict(report))
                print(
                    f"Preview at version {report.version}: {len(report.accepted)} accepted, "
                    f"{len(report.rejected)} rejected",
                    file=sys.stderr,
                )
                return 0
            result = engine.render(context, markup=markup)
        except (ContentNotFoundError, PreviewFetchError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if args.output is not None:
        args.output.write_text(result.markup, encoding="utf-8")
    dump_json({
        "version": result.version,
        "links_inserted": result.links_inserted,
        "diagnostics": [
            {"code": d.code, "message": d.message, "severity": d.severity}
            for d in result.diagnostics
        ],
        "markup": None if args.output is not None else result.markup,
    })
    print(f"Inserted {result.links_inserted} link(s) at version {result.version}", file=sys.stderr)
    return 0 if result.ok else 2


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
