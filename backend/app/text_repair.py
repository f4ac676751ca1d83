"""Batch repair of titles and authors damaged by an old profanity filter.

Runs outside the store: it reads designs through :class:`DesignStore` and writes
fixes back with :meth:`DesignStore.update_text`.

Usage::

    python -m backend.app.text_repair repair --dry-run
    python -m backend.app.text_repair export --output censored_entries.json
    python -m backend.app.text_repair import corrections.json
"""
from __future__ import annotations

import argparse
import json
import logging
import re
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .database import DATABASE_URL, build_engine
from .designs import DesignStore, TextChange
from .errors import NotFoundError
from .storage import SqlCollectionStore

logger = logging.getLogger(__name__)

CENSOR_MARK = "***"

# Longer words first: "cl***y" must win over "cl***".
REPAIR_PATTERNS: Sequence[Tuple[re.Pattern, str]] = [
    (re.compile(pattern, re.IGNORECASE), replacement)
    for pattern, replacement in (
        (r"cl\*{3}y", "classy"),
        (r"cl\*{3}ic", "classic"),
        (r"cl\*{3}", "class"),
        (r"gl\*{3}", "glass"),
        (r"br\*{3}", "brass"),
        (r"gr\*{3}", "grass"),
        (r"m\*{3}", "mass"),
        (r"p\*{3}", "pass"),
        (r"b\*{3}", "bass"),
        (r"\*{3}\*{3}in", "assassin"),
        (r"\*{3}e\*{3}ment", "assessment"),
        (r"\*{3}ume", "assume"),
        (r"emb\*{3}y", "embassy"),
        (r"h\*{3}le", "hassle"),
        (r"ti\*{3}ue", "tissue"),
        (r"ca\*{3}ette", "cassette"),
        (r"ca\*{3}erole", "casserole"),
        (r"compa\*{3}", "compass"),
        (r"shi\*{3}a", "shitaya"),
    )
]


def repair_text(text: str) -> str:
    for pattern, replacement in REPAIR_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _repair_pair(title: str, author: str) -> Tuple[str, str]:
    return repair_text(title), repair_text(author)


def repair_designs(store: DesignStore, dry_run: bool = False) -> List[TextChange]:
    """Apply :data:`REPAIR_PATTERNS` to every title and author; return what changed.

    A real run rewrites the whole collection in one locked write. ``dry_run`` only reads.
    """

    if not dry_run:
        repairs = store.rewrite_text(_repair_pair)
    else:
        repairs = []
        for design in store.all():
            new_title, new_author = _repair_pair(design.title, design.author_name)
            change = TextChange(design.id, design.title, new_title, design.author_name, new_author)
            if change.changed:
                repairs.append(change)
    logger.info("Repaired %d designs with censored text%s", len(repairs), " (dry run)" if dry_run else "")
    return repairs


def find_censored(store: DesignStore) -> List[Dict[str, str]]:
    """List designs whose title or author still carries the censor mark."""

    return [
        {
            "id": design.id,
            "title": design.title,
            "author_name": design.author_name,
            "corrected_title": "",
            "corrected_author": "",
        }
        for design in store.all()
        if CENSOR_MARK in design.title or CENSOR_MARK in design.author_name
    ]


def apply_corrections(store: DesignStore, corrections: Iterable[Mapping[str, object]]) -> List[Dict[str, object]]:
    """Apply hand-written corrections, reporting success, skipped or error per entry."""

    results: List[Dict[str, object]] = []
    for correction in corrections:
        design_id = str(correction.get("id") or "")
        title = correction.get("corrected_title") or None
        author = correction.get("corrected_author") or None
        if not design_id:
            results.append({"id": design_id, "status": "error", "message": "Missing id"})
            continue
        if title is None and author is None:
            results.append({"id": design_id, "status": "skipped", "message": "No corrections supplied"})
            continue
        try:
            change = store.update_text(
                design_id,
                title=str(title) if title is not None else None,
                author_name=str(author) if author is not None else None,
            )
        except NotFoundError as exc:
            results.append({"id": design_id, "status": "error", "message": str(exc)})
            continue
        results.append(
            {
                "id": design_id,
                "status": "success",
                "new_title": change.new_title,
                "new_author": change.new_author,
            }
        )
    return results


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Repair censored design titles and authors")
    parser.add_argument(
        "--database-url",
        default=DATABASE_URL,
        help="Collection database URL (default: %(default)s or DESIGN_SERVER_DATABASE_URL)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    repair = commands.add_parser("repair", help="Apply the built-in repair patterns")
    repair.add_argument("--dry-run", action="store_true", help="Report changes without saving them")

    export = commands.add_parser("export", help="Write still-censored entries to a corrections template")
    export.add_argument("--output", type=Path, default=Path("censored_entries.json"))

    apply = commands.add_parser("import", help="Apply a corrections file")
    apply.add_argument("corrections", type=Path, help='JSON file shaped {"corrections": [...]}')
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = parse_args(argv)
    collections = SqlCollectionStore(build_engine(args.database_url))
    collections.initialize()
    store = DesignStore(collections)

    if args.command == "repair":
        for change in repair_designs(store, dry_run=args.dry_run):
            print(f"{change.design_id}: {change.old_title!r} -> {change.new_title!r}, "
                  f"{change.old_author!r} -> {change.new_author!r}")
        return 0

    if args.command == "export":
        entries = find_censored(store)
        args.output.write_text(
            json.dumps({"total_censored": len(entries), "entries": entries}, indent=2), encoding="utf-8"
        )
        print(f"Exported {len(entries)} censored entries to {args.output}")
        return 0

    try:
        document = json.loads(args.corrections.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"Could not read {args.corrections}: {exc}", file=sys.stderr)
        return 1
    corrections = document.get("corrections") if isinstance(document, dict) else None
    if not isinstance(corrections, list):
        print('Invalid format. Expected {"corrections": [...]}', file=sys.stderr)
        return 1
    results = apply_corrections(store, corrections)
    applied = sum(1 for result in results if result["status"] == "success")
    print(f"Applied {applied} of {len(results)} corrections")
    for result in results:
        print(f"{result['status']:>8} {result['id']} {result.get('message', '')}".rstrip())
    return 0


if __name__ == "__main__":
    sys.exit(main())
