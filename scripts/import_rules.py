#!/usr/bin/env python3
"""Bulk-import categories, UTM templates and rules into the rule store.

Input JSON:
    {
      "categories": [{"category_id": "seo", "name": "SEO", "category_cap": 3}],
      "templates":  [{"template_id": "newsletter", "name": "Newsletter",
                      "source": "blog", "medium": "internal", "campaign": "{post_type}-{rule_id}"}],
      "rules":      [{"rule_id": "42", "title": "SEO audit", "keywords": "seo audit, site audit",
                      "destination": {"type": "internal", "content_id": "17"}}]
    }

Usage:
    python3 scripts/import_rules.py --db data/autolink.duckdb --input rules.json

A summary goes to stdout as JSON; per-record problems go to stderr.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

import orjson

from autolink.config import load_settings
from autolink.io_utils import load_json
from autolink.rule_store import RuleStore

log = logging.getLogger("import_rules")


def dump_json(obj: Any) -> None:
    sys.stdout.buffer.write(orjson.dumps(obj, option=orjson.OPT_INDENT_2))
    sys.stdout.buffer.write(b"\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import link rules from a JSON file.")
    parser.add_argument("--db", required=True, type=Path, help="Path to the rules DuckDB file")
    parser.add_argument("--input", required=True, type=Path, help="JSON file to import")
    parser.add_argument("--settings", type=Path, default=None, help="Engine settings JSON (keyword folding)")
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Delete existing rules before importing.",
    )
    parser.add_argument(
        "--skip-invalid",
        action="store_true",
        help="Skip malformed records instead of aborting.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def import_payload(
    store: RuleStore,
    payload: dict[str, Any],
    *,
    replace: bool = False,
    skip_invalid: bool = False,
) -> dict[str, Any]:
    """Write categories, then templates, then rules; returns per-kind counts."""
    counts = {"categories": 0, "templates": 0, "rules": 0, "skipped": 0, "deleted": 0}
    errors: list[str] = []

    if replace:
        for rule in store.get_rules():
            store.delete_rule(rule.rule_id)
            counts["deleted"] += 1

    steps = (
        ("categories", store.save_category),
        ("templates", store.save_template),
        ("rules", store.save_rule),
    )
    for kind, save in steps:
        for record in payload.get(kind) or []:
            try:
                save(record)
            except (TypeError, ValueError) as e:
                if not skip_invalid:
                    raise
                errors.append(f"{kind}: {e}")
                counts["skipped"] += 1
                continue
            counts[kind] += 1
    log.debug("import counts: %s", counts)
    return {"counts": counts, "errors": errors, "version": store.current_version()}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        payload = load_json(args.input)
    except (OSError, ValueError) as e:
        print(f"Error: cannot read {args.input}: {e}", file=sys.stderr)
        return 1
    if not isinstance(payload, dict):
        print("Error: input must be a JSON object", file=sys.stderr)
        return 1

    settings = load_settings(args.settings)
    with RuleStore(args.db, create_if_missing=True, settings=settings) as store:
        try:
            summary = import_payload(
                store,
                payload,
                replace=args.replace,
                skip_invalid=args.skip_invalid,
            )
        except (TypeError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    for error in summary["errors"]:
        print(f"  skipped {error}", file=sys.stderr)
    dump_json(summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
