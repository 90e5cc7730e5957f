"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..errors import PricingError
from ..services import QuoteDesk
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="certquote",
        description="Price and reconcile certified-translation quotes",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--staff-id",
        type=int,
        default=None,
        help="Staff user performing the action",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init command
    init_parser = subparsers.add_parser("init", help="Create config file and state database")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # load-reference command
    reference_parser = subparsers.add_parser(
        "load-reference", help="Load certification types, languages, delivery options and staff"
    )
    reference_parser.add_argument("file", type=Path, help="YAML file with reference data")

    # new-quote command
    new_quote_parser = subparsers.add_parser("new-quote", help="Open a draft quote")
    new_quote_parser.add_argument("--source", type=str, help="Source language code")
    new_quote_parser.add_argument("--target", type=str, help="Target language code")
    new_quote_parser.add_argument("--rush", action="store_true", help="Rush delivery")
    new_quote_parser.add_argument(
        "--file",
        dest="files",
        action="append",
        default=[],
        help="Uploaded file reference (repeatable)",
    )

    # ingest command
    ingest_parser = subparsers.add_parser("ingest", help="Store a file's OCR/AI analysis")
    ingest_parser.add_argument("quote_id", type=int)
    ingest_parser.add_argument("file_id", type=int)
    ingest_parser.add_argument(
        "--analysis",
        type=Path,
        help="JSON/YAML file with the analysis (default: fetch from the analysis service)",
    )

    # recompute command
    recompute_parser = subparsers.add_parser("recompute", help="Recompute quote totals")
    recompute_parser.add_argument("quote_id", type=int)

    # show command
    show_parser = subparsers.add_parser("show", help="Show a quote's lines, groups and ledger")
    show_parser.add_argument("quote_id", type=int)

    # correct command
    correct_parser = subparsers.add_parser("correct", help="Apply a staff correction")
    correct_parser.add_argument("quote_id", type=int)
    correct_parser.add_argument("field_name", type=str)
    correct_parser.add_argument("value", type=str, help="Corrected value (JSON allowed)")
    correct_parser.add_argument("--analysis-id", type=int)
    correct_parser.add_argument("--group-id", type=int)
    correct_parser.add_argument("--file-id", type=int)
    correct_parser.add_argument("--page-id", type=int)
    correct_parser.add_argument("--reason", type=str)
    correct_parser.add_argument(
        "--knowledge-base",
        action="store_true",
        help="Submit the correction to the knowledge base",
    )
    correct_parser.add_argument("--comment", type=str, help="Knowledge base comment")

    # finalize command
    finalize_parser = subparsers.add_parser("finalize", help="Write a staff pricing snapshot")
    finalize_parser.add_argument("quote_id", type=int)
    finalize_parser.add_argument("snapshot", type=Path, help="JSON/YAML pricing snapshot")
    finalize_parser.add_argument("--notes", type=str, help="Staff notes")

    # corrections command
    corrections_parser = subparsers.add_parser("corrections", help="List staff corrections")
    corrections_parser.add_argument("--quote-id", type=int)
    corrections_parser.add_argument(
        "--knowledge-base",
        action="store_true",
        help="Only corrections flagged for the knowledge base",
    )
    corrections_parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum corrections to list (default: 50)",
    )

    # offset command
    offset_parser = subparsers.add_parser("offset", help="Offset a small balance difference")
    offset_parser.add_argument("quote_id", type=int)
    offset_parser.add_argument("amount", type=str)
    offset_parser.add_argument(
        "--type",
        dest="offset_type",
        choices=["discount", "credit"],
        default="credit",
        help="discount lowers the total, credit only the balance (default: credit)",
    )
    offset_parser.add_argument("--reason", type=str, required=True)

    # refund command
    refund_parser = subparsers.add_parser("refund", help="Record a refund")
    refund_parser.add_argument("quote_id", type=int)
    refund_parser.add_argument("amount", type=str)
    refund_parser.add_argument("--method", type=str, required=True, help="e.g. stripe, cash")
    refund_parser.add_argument("--reference", type=str)
    refund_parser.add_argument("--reason", type=str)

    # status command
    subparsers.add_parser("status", help="Show database statistics")

    return parser


def _read_structured(path: Path) -> Any:
    """Read a JSON or YAML file."""
    with open(path) as f:
        if path.suffix == ".json":
            return json.load(f)
        return yaml.safe_load(f)


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _print_result(result: dict[str, Any], ok_message: str) -> int:
    if not result.get("success"):
        print(f"❌ {result.get('error')}")
        return 1
    print(f"✓ {ok_message}")
    return 0


def cmd_init(config_path: Path, force: bool) -> int:
    """Create the default config and the state database."""
    if config_path.exists() and not force:
        print(f"⏭ Config {config_path} already exists (use --force to overwrite)")
    else:
        create_default_config(config_path)
        print(f"✓ Wrote default config to {config_path}")

    config = load_config(config_path)
    store = StateStore(config.state_db_path)
    print(f"✓ State database ready: {config.state_db_path} (schema v{store.get_migration_version()})")
    return 0


def cmd_load_reference(desk: QuoteDesk, path: Path) -> int:
    """Load reference data from YAML."""
    print(f"📚 Loading reference data from {path}...")
    data = _read_structured(path) or {}
    try:
        counts = desk.load_reference_data(data)
    except (PricingError, KeyError) as e:
        print(f"❌ Invalid reference data: {e}")
        return 1

    for section, count in counts.items():
        print(f"  {section:<22} {count}")
    return 0


def cmd_new_quote(
    desk: QuoteDesk, source: str | None, target: str | None, rush: bool, files: list[str]
) -> int:
    """Open a draft quote and register its files."""
    try:
        source_id = desk.rates.resolve_language(source).id if source else None
        target_id = desk.rates.resolve_language(target).id if target else None
    except PricingError as e:
        print(f"❌ {e.user_message}")
        return 1

    quote_id = desk.store.create_quote(
        tax_rate=desk.rates.default_tax_rate,
        source_language_id=source_id,
        target_language_id=target_id,
        is_rush=rush,
    )
    quote = desk.store.require_quote(quote_id)
    print(f"✓ Created quote {quote.quote_number} (id {quote_id})")
    for filename in files:
        file_id = desk.store.add_file(quote_id, filename)
        print(f"  📄 [{file_id}] {filename}")
    return 0


def cmd_ingest(desk: QuoteDesk, quote_id: int, file_id: int, analysis_path: Path | None, staff_id) -> int:
    """Store an analysis for one file."""
    analysis = _read_structured(analysis_path) if analysis_path else None
    result = desk.ingest_analysis(quote_id, file_id, analysis, staff_id=staff_id)
    return _print_result(result, f"Analysis {result.get('analysis_id')} stored for file {file_id}")


def _print_totals(totals: dict[str, Any]) -> None:
    print("\n💰 Quote Totals")
    print("=" * 40)
    for key in (
        "translation_total",
        "certification_total",
        "subtotal",
        "discount_total",
        "surcharge_total",
        "rush_fee",
        "delivery_fee",
        "tax_amount",
        "total",
    ):
        print(f"  {key:<22} {totals[key]:>12}")
    print()


def cmd_recompute(desk: QuoteDesk, quote_id: int, staff_id) -> int:
    """Recompute a quote's totals."""
    result = desk.recompute_quote_totals(quote_id, staff_id=staff_id)
    if not result.get("success"):
        print(f"❌ {result.get('error')}")
        return 1
    _print_totals(result)
    return 0


def cmd_show(desk: QuoteDesk, quote_id: int) -> int:
    """Show a quote."""
    store = desk.store
    quote = store.get_quote(quote_id)
    if quote is None:
        print(f"❌ Quote not found: {quote_id}")
        return 1

    print(f"\n🧾 {quote.quote_number} [{quote.status.value}]{' RUSH' if quote.is_rush else ''}")
    print("=" * 60)

    analyses = store.list_analyses(quote_id)
    if analyses:
        print("Documents:")
        for a in analyses:
            label = a.manual_label or (store.get_file(a.file_id).filename if a.file_id else "-")
            pinned = f" (pinned: {', '.join(a.overridden_fields)})" if a.overridden_fields else ""
            print(
                f"  [{a.id}] {label}: {a.word_count} words, {a.assessed_complexity}, "
                f"{a.billable_pages} pages → {a.line_total} + cert {a.certification_price}{pinned}"
            )

    groups = store.list_groups(quote_id)
    if groups:
        print("Groups:")
        for g in groups:
            print(
                f"  #{g.group_number} [{g.id}] {g.group_label}: {g.word_count} words, "
                f"{g.total_pages} pages, {g.complexity} → {g.line_total} + cert {g.certification_price}"
            )

    adjustments = store.list_adjustments(quote_id)
    if adjustments:
        print("Ledger:")
        for adj in adjustments:
            if adj.is_void:
                state = f" (voids {adj.supersedes_id})"
            elif not adj.is_active:
                state = f" (superseded by {adj.superseded_by_id})"
            else:
                state = ""
            print(f"  [{adj.id}] {adj.adjustment_type} {adj.calculated_amount} {adj.reason or ''}{state}")

    if quote.calculated_totals:
        _print_totals(quote.calculated_totals)
    print(f"  Paid: {quote.amount_paid}  Balance due: {quote.balance_due}  Refunded: {quote.refund_amount}")
    return 0


def cmd_correct(desk: QuoteDesk, args: argparse.Namespace) -> int:
    """Apply one correction."""
    target_ref = {"quote_id": args.quote_id}
    for key in ("analysis_id", "group_id", "file_id", "page_id"):
        if getattr(args, key) is not None:
            target_ref[key] = getattr(args, key)

    payload = {
        "target_ref": target_ref,
        "field_name": args.field_name,
        "corrected_value": _parse_value(args.value),
        "reason": args.reason,
        "knowledge_base_flag": args.knowledge_base,
        "knowledge_base_comment": args.comment,
    }
    result = desk.apply_correction(payload, staff_id=args.staff_id)
    code = _print_result(result, result.get("message", ""))
    for suggestion in result.get("suggested_corrections", []):
        print(f"  💡 Suggested: {suggestion['field_name']} → {suggestion['suggested_value']} ({suggestion['reason']})")
    return code


def cmd_finalize(desk: QuoteDesk, quote_id: int, snapshot_path: Path, notes: str | None, staff_id) -> int:
    """Finalize a quote from a snapshot file."""
    snapshot = _read_structured(snapshot_path) or {}
    result = desk.finalize_quote(quote_id, snapshot, staff_notes=notes, staff_id=staff_id)
    return _print_result(result, f"Quote {quote_id} finalized, total {result.get('total')}")


def cmd_corrections(desk: QuoteDesk, quote_id: int | None, knowledge_base: bool, limit: int) -> int:
    """List corrections."""
    if knowledge_base:
        result = desk.list_knowledge_base_corrections(limit)
    elif quote_id is not None:
        result = desk.list_corrections(quote_id)
    else:
        print("❌ Pass --quote-id or --knowledge-base")
        return 1

    if not result.get("success"):
        print(f"❌ {result.get('error')}")
        return 1

    corrections = result["corrections"][:limit]
    for c in corrections:
        kb = " 📚" if c["submit_to_knowledge_base"] else ""
        print(f"  [{c['id']}] quote {c['quote_id']} {c['field_name']}: {c['ai_value']} → {c['corrected_value']}{kb}")
        print(f"      {c['reason']} ({c['created_at']})")
    print(f"\n✓ {len(corrections)} correction(s)")
    return 0


def cmd_offset(desk: QuoteDesk, args: argparse.Namespace) -> int:
    """Offset a balance difference."""
    if args.staff_id is None:
        print("❌ --staff-id is required for balance offsets")
        return 1
    result = desk.offset_balance(args.quote_id, args.amount, args.offset_type, args.reason, args.staff_id)
    return _print_result(result, f"Offset recorded, balance due {result.get('balance_due')}")


def cmd_refund(desk: QuoteDesk, args: argparse.Namespace) -> int:
    """Record a refund."""
    result = desk.record_refund(
        args.quote_id,
        args.amount,
        args.method,
        reference=args.reference,
        staff_id=args.staff_id,
        reason=args.reason,
    )
    return _print_result(
        result, f"Refund recorded, status {result.get('status')}, balance due {result.get('balance_due')}"
    )


def cmd_status(config: Config) -> int:
    """Show database statistics."""
    store = StateStore(config.state_db_path)
    stats = store.get_stats()

    print("\n📊 Pricing Status")
    print("=" * 40)
    print(f"  Quotes:                 {stats['quotes']}")
    for status, count in sorted(stats["quotes_by_status"].items()):
        print(f"    {status:<20} {count}")
    print(f"  Files:                  {stats['quote_files']}")
    print(f"  Analyses:               {stats['analysis_results']}")
    print(f"  Document groups:        {stats['document_groups']}")
    print(f"  Ledger entries:         {stats['quote_adjustments']}")
    print(f"  Corrections:            {stats['staff_corrections']}")
    print(f"  Knowledge base:         {stats['knowledge_base_corrections']}")
    print(f"  Activity entries:       {stats['staff_activity_log']}")
    print()

    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init":
        return cmd_init(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
    except (OSError, yaml.YAMLError, ConfigValidationError) as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    problems = config.validate()
    if problems:
        for problem in problems:
            print(f"❌ Config: {problem}")
        return 1

    # Route to command
    if parsed.command == "status":
        return cmd_status(config)

    desk = QuoteDesk.from_config(config, with_client=parsed.command == "ingest")
    staff_id = parsed.staff_id

    if parsed.command == "load-reference":
        return cmd_load_reference(desk, parsed.file)
    elif parsed.command == "new-quote":
        return cmd_new_quote(desk, parsed.source, parsed.target, parsed.rush, parsed.files)
    elif parsed.command == "ingest":
        return cmd_ingest(desk, parsed.quote_id, parsed.file_id, parsed.analysis, staff_id)
    elif parsed.command == "recompute":
        return cmd_recompute(desk, parsed.quote_id, staff_id)
    elif parsed.command == "show":
        return cmd_show(desk, parsed.quote_id)
    elif parsed.command == "correct":
        return cmd_correct(desk, parsed)
    elif parsed.command == "finalize":
        return cmd_finalize(desk, parsed.quote_id, parsed.snapshot, parsed.notes, staff_id)
    elif parsed.command == "corrections":
        return cmd_corrections(desk, parsed.quote_id, parsed.knowledge_base, parsed.limit)
    elif parsed.command == "offset":
        return cmd_offset(desk, parsed)
    elif parsed.command == "refund":
        return cmd_refund(desk, parsed)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
