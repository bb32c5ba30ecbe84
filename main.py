#!/usr/bin/env python3
"""
Equipped trade-in desk: device lookup, instant valuation and activation-lock checks.
Runs against the local valuation engine and device catalog; no network access needed.

Usage:
  python main.py lookup C02XYZ123ABC
  python main.py lookup --file serials.txt
  python main.py quote C02XYZ123ABC
  python main.py quote C02XYZ123ABC --model "MacBook Air M1" --damage --bad-battery
  python main.py quote C02XYZ123ABC --format json
  python main.py findmy C02XYZ123ABC

Environment variables:
  CATALOG_PATH         Optional JSON file replacing the built-in device catalog.
  VALUATION_TTL_DAYS   Offer lifetime in days (default 30).
"""

import argparse
import re
from pathlib import Path

from core.catalog import load_catalog
from core.config import get_settings
from core.formatter import (
    disable_color,
    lookups_to_csv,
    print_find_my,
    print_lookup,
    print_valuation,
    to_csv,
    to_json,
)
from core.models import SERIAL_PATTERN, ConditionAssessment, normalize_serial
from core.valuation import ValuationEngine


def _load_file(path: str) -> list[str]:
    """Read serial numbers from a file, one per line, # comments and blank lines ignored.

    Resolves symlinks and verifies the path is a regular file before reading.
    """
    file_path = Path(path).resolve()
    if not file_path.is_file():
        print(f"  [!] '{path}' is not a readable file.")
        return []
    try:
        lines = file_path.read_text().splitlines()
    except OSError as e:
        print(f"  [!] Could not read file '{path}': {e}")
        return []
    return [line.strip() for line in lines if line.strip() and not line.strip().startswith("#")]


_SERIAL_RE = re.compile(SERIAL_PATTERN)


def _valid_serial(serial: str) -> bool:
    if _SERIAL_RE.match(normalize_serial(serial)):
        return True
    print(f"  [!] '{serial}' doesn't look like a serial number. Expected 8-20 letters or digits.")
    return False


def _build_engine() -> ValuationEngine:
    settings = get_settings()
    return ValuationEngine(load_catalog(settings.catalog_path), valuation_ttl_days=settings.valuation_ttl_days)


def _assessment_from_args(args: argparse.Namespace) -> ConditionAssessment:
    return ConditionAssessment(
        power_on=not args.no_power,
        screen_condition=not args.bad_screen,
        cosmetic_damage=args.damage,
        keyboard_trackpad=not args.bad_keyboard,
        battery_health=not args.bad_battery,
        ports_working=not args.bad_ports,
    )


def _output_options(default=None) -> argparse.ArgumentParser:
    """Parent parser holding --format and --no-color."""
    output = argparse.ArgumentParser(add_help=False)
    output.add_argument(
        "--format",
        choices=["terminal", "json", "csv"],
        default="terminal" if default is None else default,
        metavar="FORMAT",
        help="Output format: terminal (default), json, or csv",
    )
    output.add_argument(
        "--no-color",
        action="store_true",
        default=False if default is None else default,
        help="Disable ANSI color codes in terminal output",
    )
    return output


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_lookup(args: argparse.Namespace, engine: ValuationEngine) -> None:
    all_serials: list[str] = list(args.serials)
    if args.file:
        all_serials.extend(_load_file(args.file))

    seen: set[str] = set()
    serials: list[str] = []
    for s in all_serials:
        normalized = normalize_serial(s)
        if normalized not in seen:
            seen.add(normalized)
            serials.append(s)

    if not serials:
        print("  [!] No serial numbers given. Pass them as arguments or with --file.")
        return
    if args.file and len(all_serials) != len(serials):
        dupes = len(all_serials) - len(serials)
        print(f"  Loaded {len(all_serials)} serials, {dupes} duplicate(s) removed, {len(serials)} unique.\n")

    results = [engine.lookup_device(s) for s in serials if _valid_serial(s)]
    if not results:
        return

    if args.format == "json":
        print(to_json(results[0] if len(results) == 1 else results))
    elif args.format == "csv":
        print(lookups_to_csv(results))
    else:
        for r in results:
            print_lookup(r)

    missing = sum(1 for r in results if not r.success)
    if missing and args.format == "terminal":
        print(f"  [!] {missing} serial(s) not found.\n")


def cmd_quote(args: argparse.Namespace, engine: ValuationEngine) -> None:
    if not _valid_serial(args.serial):
        return
    model = args.model
    if not model:
        lookup = engine.lookup_device(args.serial)
        if not lookup.success or lookup.device is None:
            print(f"  [!] {lookup.error} Pass --model to quote an unlisted device.")
            return
        model = lookup.device.model

    valuation = engine.get_valuation(args.serial, model, _assessment_from_args(args))
    if args.format == "json":
        print(to_json(valuation))
    elif args.format == "csv":
        print(to_csv([valuation]))
    else:
        print_valuation(valuation)


def cmd_findmy(args: argparse.Namespace, engine: ValuationEngine) -> None:
    if not _valid_serial(args.serial):
        return
    status = engine.check_find_my(args.serial)
    if args.format == "json":
        print(to_json(status))
    else:
        print_find_my(status)


def main() -> None:
    output = _output_options()
    # Subcommands accept the same options; SUPPRESS keeps a value given before
    # the subcommand from being reset by the subparser default.
    sub_output = _output_options(default=argparse.SUPPRESS)

    parser = argparse.ArgumentParser(
        prog="equipped",
        description="Device lookup, trade-in valuation and activation-lock checks.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[output],
        epilog="""
Examples:
  python main.py lookup C02XYZ123ABC C02ABC456DEF
  python main.py lookup --file serials.txt --format csv > devices.csv
  python main.py quote C02XYZ123ABC --damage --bad-battery
  python main.py findmy C02XYZ123ABC
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_lookup = sub.add_parser("lookup", parents=[sub_output], help="Resolve serial numbers to device models")
    p_lookup.add_argument("serials", nargs="*", metavar="SERIAL", help="One or more serial numbers")
    p_lookup.add_argument(
        "--file",
        metavar="PATH",
        help="Path to a text file with one serial per line (# comments supported)",
    )
    p_lookup.set_defaults(handler=cmd_lookup)

    p_quote = sub.add_parser("quote", parents=[sub_output], help="Grade a device and issue a valuation")
    p_quote.add_argument("serial", metavar="SERIAL")
    p_quote.add_argument("--model", help="Model name (default: looked up from the serial)")
    p_quote.add_argument("--no-power", action="store_true", help="Device does not power on")
    p_quote.add_argument("--bad-screen", action="store_true", help="Screen is cracked or has dead pixels")
    p_quote.add_argument("--damage", action="store_true", help="Visible cosmetic damage (dents, deep scratches)")
    p_quote.add_argument("--bad-keyboard", action="store_true", help="Keyboard or trackpad faulty")
    p_quote.add_argument("--bad-battery", action="store_true", help="Battery health below 80%%")
    p_quote.add_argument("--bad-ports", action="store_true", help="One or more ports not working")
    p_quote.set_defaults(handler=cmd_quote)

    p_findmy = sub.add_parser("findmy", parents=[sub_output], help="Check Find My / activation lock")
    p_findmy.add_argument("serial", metavar="SERIAL")
    p_findmy.set_defaults(handler=cmd_findmy)

    args = parser.parse_args()
    if not getattr(args, "handler", None):
        parser.print_help()
        return

    if args.no_color:
        disable_color()

    args.handler(args, _build_engine())


if __name__ == "__main__":
    main()
