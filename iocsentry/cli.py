#!/usr/bin/env python3
"""
IOCSentry CLI - Command Line Interface

Resolve indicators against VirusTotal and browse stored verdicts.

Usage:
    iocsentry lookup 8.8.8.8 example.com
    iocsentry lookup -f indicators.txt -l phishing-campaign
    iocsentry history --verdict malicious
    iocsentry keys
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from iocsentry.config import settings
from iocsentry.output.console import IOCSentryConsole, get_console


# =============================================================================
# Input
# =============================================================================


def read_indicator_file(path: Path) -> list[str]:
    """
    Read one indicator per line.

    Blank lines and lines starting with '#' are skipped.
    """
    lines = path.read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip() and not line.strip().startswith("#")]


# =============================================================================
# Commands
# =============================================================================


async def run_lookup(args: argparse.Namespace, console: IOCSentryConsole) -> int:
    from iocsentry.lookup.orchestrator import get_orchestrator

    raws = list(args.indicators)
    if args.file:
        path = Path(args.file).expanduser()
        if not path.is_file():
            console.print_error(f"File not found: {path}")
            return 1
        raws.extend(read_indicator_file(path))

    if not raws:
        console.print_error("No indicators given")
        return 1

    if len(raws) > settings.max_batch_size:
        console.print_error(f"Too many indicators: {len(raws)} (max {settings.max_batch_size})")
        return 1

    orchestrator = get_orchestrator()
    if not orchestrator.is_configured:
        console.print_warning("No VirusTotal API keys configured, only stored records can be served")

    console.print_info(f"Resolving {len(raws)} indicator(s)...")
    try:
        result = await orchestrator.submit(
            raws,
            label=args.label,
            case_id=args.case_id,
            force_refresh=args.refresh,
        )
    finally:
        orchestrator.store.close()

    data = result.to_dict()
    console.print_submission(data)

    if args.output:
        output_path = Path(args.output)
        with open(output_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        console.print_success(f"Results saved to {output_path}")

    return 0 if not result.errors else 2


def run_history(args: argparse.Namespace, console: IOCSentryConsole) -> int:
    from iocsentry.lookup.models import IndicatorType, Verdict
    from iocsentry.lookup.store import RecordQuery, get_record_store

    store = get_record_store()
    try:
        page = store.query(RecordQuery(
            q=args.search,
            type=IndicatorType(args.type) if args.type else None,
            verdict=Verdict(args.verdict) if args.verdict else None,
            label=args.label,
            page_size=args.limit,
        ))
    finally:
        store.close()

    console.print_records(page.to_dict())
    return 0


def run_keys(args: argparse.Namespace, console: IOCSentryConsole) -> int:
    from iocsentry.lookup.keypool import KeyPool

    pool = KeyPool.from_settings(settings)
    console.print_keys(pool.snapshot())
    return 0


# =============================================================================
# Main Entry Point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    from iocsentry.lookup.models import IndicatorType, Verdict

    parser = argparse.ArgumentParser(
        prog="iocsentry",
        description="IOCSentry - Threat Indicator Lookups",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    iocsentry lookup 8.8.8.8 44d88612fea8a8f36de82e1278abb02f
    iocsentry lookup -f iocs.txt -l campaign-42 -o results.json
    iocsentry history --type domain --verdict malicious
    iocsentry keys
""",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    lookup = subparsers.add_parser("lookup", help="Resolve indicators")
    lookup.add_argument("indicators", nargs="*", help="Hashes, IPs, domains or URLs")
    lookup.add_argument("-f", "--file", help="Read indicators from a file (one per line)")
    lookup.add_argument("-l", "--label", help="Label stored on new records")
    lookup.add_argument("--case-id", help="Case reference stored on new records")
    lookup.add_argument("--refresh", action="store_true", help="Re-resolve even if a live record exists")
    lookup.add_argument("-o", "--output", type=str, help="Save results to JSON file")

    history = subparsers.add_parser("history", help="List stored records")
    history.add_argument("-q", "--search", help="Substring of the indicator")
    history.add_argument("--type", choices=[t.value for t in IndicatorType])
    history.add_argument("--verdict", choices=[v.value for v in Verdict])
    history.add_argument("-l", "--label")
    history.add_argument("--limit", type=int, default=50, help="Maximum records to show")

    subparsers.add_parser("keys", help="Show the API key pool")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    from iocsentry.main import configure_logging

    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(level="DEBUG" if args.verbose else "WARNING", log_format="console")
    console = get_console()

    try:
        if args.command == "lookup":
            console.print_banner()
            return asyncio.run(run_lookup(args, console))
        if args.command == "history":
            return run_history(args, console)
        if args.command == "keys":
            return run_keys(args, console)
    except KeyboardInterrupt:
        console.console.print("\n\n[yellow]Interrupted by user[/yellow]")
        return 130
    except Exception as e:
        console.print_error(str(e))
        if args.verbose:
            import traceback
            console.console.print(f"\n[dim]{traceback.format_exc()}[/dim]")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
