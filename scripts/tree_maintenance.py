#!/usr/bin/env python
"""Maintenance commands for the question-bank category tree.

Usage:
    # Create missing tables
    python scripts/tree_maintenance.py init-db

    # Audit paths, closure rows and primary categories
    python scripts/tree_maintenance.py validate

    # Recompute paths and the closure table from parent pointers
    python scripts/tree_maintenance.py rebuild

    # Repair questions with zero or several primary categories
    python scripts/tree_maintenance.py fix

    # Export a subtree (or the whole tree) to JSON
    python scripts/tree_maintenance.py export --root 12 --output math.json

    # Import a JSON document below a parent
    python scripts/tree_maintenance.py import math.json --parent 3 --merge skip

Rebuild and fix are meant for maintenance windows: they hold the whole-tree
lock of this process only.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from qbank.infra.database import close_db_engine, create_schema, verify_db_connection
from qbank.infra.logging import get_logger, setup_logging
from qbank.schemas.transfer import MergeStrategy
from qbank.services import TreeTransfer, ValidationEngine

logger = get_logger(__name__)


async def run_validate() -> int:
    engine = ValidationEngine()
    tree = await engine.validate_tree_integrity()
    ledger = await engine.validate_categorization_integrity()

    print("\nTree integrity:")
    print("-" * 60)
    for issue in tree.issues:
        print(f"  [{issue.severity.value}] {issue.type.value}: {issue.description}")
    print(f"  Valid: {tree.is_valid} ({len(tree.issues)} issues)")

    print("\nCategorization integrity:")
    print("-" * 60)
    for issue in ledger.issues:
        print(f"  [{issue.severity.value}] {issue.type.value}: {issue.description}")
    print(f"  Valid: {ledger.is_valid} ({len(ledger.issues)} issues)")

    return 0 if tree.is_valid and ledger.is_valid else 2


async def run_rebuild() -> int:
    engine = ValidationEngine()
    rewritten = await engine.rebuild_tree_paths()
    inserted = await engine.rebuild_hierarchy_table()
    print(f"Paths rewritten: {rewritten}")
    print(f"Closure rows inserted: {inserted}")
    return 0


async def run_fix() -> int:
    fixed = await ValidationEngine().fix_invalid_question_category_relationships()
    print(f"Questions repaired: {fixed}")
    return 0


async def run_export(root_id: int | None, output: str | None, with_counts: bool) -> int:
    payload = await TreeTransfer().export_tree_json(root_id, include_question_counts=with_counts)
    if payload is None:
        print(f"Category not found or inactive: {root_id}")
        return 1
    if output:
        Path(output).write_text(payload, encoding="utf-8")
        print(f"Exported to {output}")
    else:
        print(payload)
    return 0


async def run_import(source: str, parent_id: int | None, merge: MergeStrategy) -> int:
    payload = Path(source).read_text(encoding="utf-8")
    result = await TreeTransfer().import_tree_json(payload, parent_id, merge)
    if not result.success:
        print(f"Import failed ({result.error_kind.value}): {result.error_message}")
        return 1
    for warning in result.warnings:
        print(f"  warning: {warning}")
    print(
        f"Created: {result.categories_created}, "
        f"skipped: {result.categories_skipped}, "
        f"updated: {result.categories_updated}"
    )
    return 0


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Question-bank category tree maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit JSON log lines regardless of environment",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create missing tables")
    commands.add_parser("validate", help="Audit tree and categorization integrity")
    commands.add_parser("rebuild", help="Rebuild paths and the closure table")
    commands.add_parser("fix", help="Repair primary categories")

    export = commands.add_parser("export", help="Export categories as JSON")
    export.add_argument("--root", type=int, help="Subtree root (default: whole tree)")
    export.add_argument("--output", type=str, help="Output file (default: stdout)")
    export.add_argument(
        "--with-counts",
        action="store_true",
        help="Include per-category question counts",
    )

    imp = commands.add_parser("import", help="Import categories from JSON")
    imp.add_argument("source", type=str, help="JSON document to import")
    imp.add_argument("--parent", type=int, help="Parent category (default: roots)")
    imp.add_argument(
        "--merge",
        choices=[strategy.value for strategy in MergeStrategy],
        default=MergeStrategy.SKIP.value,
        help="How to handle codes that already exist (default: skip)",
    )

    return parser.parse_args()


async def main() -> int:
    """Main entry point."""
    args = parse_args()
    setup_logging(level="DEBUG" if args.verbose else None, json_output=args.json_logs)

    if not await verify_db_connection():
        logger.error("Database is not reachable")
        return 1

    try:
        match args.command:
            case "init-db":
                await create_schema()
                print("Schema ensured")
                return 0
            case "validate":
                return await run_validate()
            case "rebuild":
                return await run_rebuild()
            case "fix":
                return await run_fix()
            case "export":
                return await run_export(args.root, args.output, args.with_counts)
            case "import":
                return await run_import(args.source, args.parent, MergeStrategy(args.merge))
            case _:
                print(f"Unknown command: {args.command}")
                return 1
    finally:
        await close_db_engine()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
