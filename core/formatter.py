"""
formatter.py -- Renders lookups, valuations and activation-lock checks to terminal, JSON or CSV.
"""

import csv
import io
import json
import os
import re
import sys
from dataclasses import asdict
from typing import Optional, Union

from .models import ConditionGrade, DeviceLookupResponse, FindMyStatusResponse, ValuationResponse

W = 68  # output width

# ---------------------------------------------------------------------------
# ANSI color control
# ---------------------------------------------------------------------------

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from a string."""
    return _ANSI_RE.sub("", text)


def _use_color() -> bool:
    """Return True if stdout is a TTY and color has not been disabled.

    Respects NO_COLOR env var (https://no-color.org) and checks sys.stdout.isatty().
    Can be overridden by calling disable_color() / enable_color().
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled: Optional[bool] = None  # None = auto-detect


def disable_color() -> None:
    """Force-disable color output (called when --no-color flag is set)."""
    global _color_enabled
    _color_enabled = False


def enable_color() -> None:
    global _color_enabled
    _color_enabled = True


def _color_active() -> bool:
    if _color_enabled is not None:
        return _color_enabled
    return _use_color()


# ---------------------------------------------------------------------------
# ANSI code helpers: return empty string when color is off
# ---------------------------------------------------------------------------

GRADE_COLORS = {
    ConditionGrade.excellent: "\033[92m",  # green
    ConditionGrade.good: "\033[94m",  # blue
    ConditionGrade.fair: "\033[93m",  # yellow
    ConditionGrade.poor: "\033[91m",  # red
}


def _reset() -> str:
    return "\033[0m" if _color_active() else ""


def _bold() -> str:
    return "\033[1m" if _color_active() else ""


def _dim() -> str:
    return "\033[2m" if _color_active() else ""


def _red() -> str:
    return "\033[91m" if _color_active() else ""


def _grade_color(grade: ConditionGrade) -> str:
    return GRADE_COLORS.get(grade, "") if _color_active() else ""


# ---------------------------------------------------------------------------
# Layout helpers
# ---------------------------------------------------------------------------


def _bar(char: str = "═") -> str:
    return char * W


def _row(label: str, value: str) -> str:
    return f"    {label:<20} {value}"


def _money(value: Optional[float]) -> str:
    if value is None:
        return "N/A"
    return f"${value:,.0f}" if float(value).is_integer() else f"${value:,.2f}"


# ---------------------------------------------------------------------------
# Terminal renderers
# ---------------------------------------------------------------------------


def print_lookup(lookup: DeviceLookupResponse) -> None:
    bold, reset, red = _bold(), _reset(), _red()
    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}{lookup.serial}{reset}")
    print(f"{bold}{_bar()}{reset}")
    if not lookup.success or lookup.device is None:
        print(f"  {red}[!] {lookup.error}{reset}\n")
        return
    device = lookup.device
    print(_row("Model", device.model))
    print(_row("Year", str(device.year)))
    print(_row("Color", device.color))
    if device.storage:
        print(_row("Storage", device.storage))
    for key, value in device.specs.items():
        print(_row(key.capitalize(), value))
    print()


def print_valuation(valuation: ValuationResponse) -> None:
    """Print an offer with its grade, breakdown and expiry."""
    bold, reset, dim, red = _bold(), _reset(), _dim(), _red()
    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}TRADE-IN OFFER  {valuation.serial}{reset}")
    print(f"{bold}{_bar()}{reset}")
    if not valuation.success:
        print(f"  {red}[!] {valuation.error}{reset}\n")
        return

    grade = valuation.condition_grade
    print(_row("Model", valuation.model))
    print(_row("Condition", f"{_grade_color(grade)}{bold}{grade.value.upper()}{reset}"))
    if valuation.breakdown is not None:
        b = valuation.breakdown
        print(_row("Base value", _money(b.base_value)))
        print(_row("Multiplier", f"x {b.condition_multiplier:.2f}"))
    print(_row("Estimated value", f"{bold}{_money(valuation.estimated_value)}{reset}"))
    print(_row("Valuation ID", valuation.valuation_id))
    print(_row("Expires", valuation.expires_at))
    print(f"\n  {dim}Accept this offer through the trade-in API before it expires.{reset}\n")


def print_find_my(status: FindMyStatusResponse) -> None:
    bold, reset, red = _bold(), _reset(), _red()
    if not status.success:
        print(f"\n  {red}[!] {status.error}{reset}\n")
        return
    if status.activation_locked:
        print(f"\n  {status.serial}: {bold}{red}ACTIVATION LOCKED{reset}")
        print("    Find My is still enabled. The device cannot be traded in until it is disabled.\n")
    else:
        print(f"\n  {status.serial}: not locked, eligible for trade-in.\n")


# ---------------------------------------------------------------------------
# JSON export
# ---------------------------------------------------------------------------


def to_json(result: Union[DeviceLookupResponse, ValuationResponse, FindMyStatusResponse, list]) -> str:
    """Serialize a response dataclass (or a list of them) to indented JSON."""
    if isinstance(result, list):
        return json.dumps([asdict(r) for r in result], indent=2)
    return json.dumps(asdict(result), indent=2)


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------

# Spreadsheet apps treat cells starting with these as formulas (CWE-1236).
_FORMULA_PREFIXES = ("=", "+", "-", "@")


def _sanitize_csv_cell(value) -> str:
    """Prefix formula-looking text cells with a tab so spreadsheets show them as text.

    Numbers are written as-is; a negative number is data, not a formula.
    """
    if value is None:
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    text = str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return "\t" + text
    return text


def _write_csv(headers: list[str], rows: list[list]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(headers)
    for row in rows:
        writer.writerow([_sanitize_csv_cell(cell) for cell in row])
    return buf.getvalue()


def to_csv(valuations: list[ValuationResponse]) -> str:
    """Render valuations as CSV.

    Columns: valuation_id, serial, model, condition_grade, base_value,
             condition_multiplier, estimated_value, expires_at, error
    """
    headers = [
        "valuation_id",
        "serial",
        "model",
        "condition_grade",
        "base_value",
        "condition_multiplier",
        "estimated_value",
        "expires_at",
        "error",
    ]
    rows = []
    for v in valuations:
        b = v.breakdown
        rows.append(
            [
                v.valuation_id,
                v.serial,
                v.model,
                v.condition_grade.value,
                b.base_value if b else None,
                b.condition_multiplier if b else None,
                v.estimated_value if v.success else None,
                v.expires_at,
                v.error,
            ]
        )
    return _write_csv(headers, rows)


def lookups_to_csv(lookups: list[DeviceLookupResponse]) -> str:
    """Render device lookups as CSV. Columns: serial, found, model, year, color, storage, error."""
    headers = ["serial", "found", "model", "year", "color", "storage", "error"]
    rows = []
    for r in lookups:
        d = r.device
        rows.append(
            [
                r.serial,
                "yes" if r.success else "no",
                d.model if d else None,
                d.year if d else None,
                d.color if d else None,
                d.storage if d else None,
                r.error,
            ]
        )
    return _write_csv(headers, rows)
