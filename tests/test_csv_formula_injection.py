"""
tests/test_csv_formula_injection.py -- Regression tests for CSV formula injection (CWE-1236).

Spreadsheet applications interpret cells that start with =, +, -, or @ as
formulas. The model name in a valuation export comes from the caller (the
partner API or the --model flag), so a value like =CMD|'/C calc' must not
reach a CSV cell verbatim.

Mitigation: cells starting with a dangerous character are prefixed with \t,
which spreadsheets treat as text.
"""

import csv
import io
from typing import Optional

from core.formatter import lookups_to_csv, to_csv
from core.models import ConditionGrade, DeviceLookupResponse, DeviceModel, ValuationBreakdown, ValuationResponse

# ---------------------------------------------------------------------------
# Test data helper
# ---------------------------------------------------------------------------


def _make_valuation(model: str, error: Optional[str] = None) -> ValuationResponse:
    """A successful MacBook valuation whose model column is the injection surface."""
    return ValuationResponse(
        success=error is None,
        serial="C02XYZ123ABC",
        model=model,
        condition_grade=ConditionGrade.good,
        estimated_value=450,
        original_value=600,
        breakdown=ValuationBreakdown(base_value=600, condition_multiplier=0.75, final_value=450),
        issued_at="2025-03-01T12:00:00+00:00",
        expires_at="2025-03-31T12:00:00+00:00",
        valuation_id="VAL-1740830400000-ABC123",
        error=error,
    )


def _rows(csv_output: str) -> list[list[str]]:
    rows = list(csv.reader(io.StringIO(csv_output)))
    # rows[0] = header row, rows[1] = data row
    assert len(rows) == 2, f"Expected header + 1 data row, got {len(rows)} rows"
    return rows


def _get_model_cell(model: str) -> str:
    """Call to_csv() and extract the model cell (third column)."""
    return _rows(to_csv([_make_valuation(model)]))[1][2]


# ---------------------------------------------------------------------------
# Tests for dangerous-prefix sanitization
# ---------------------------------------------------------------------------


def test_formula_prefix_equals_sanitized():
    """Cell starting with '=' must not start with '=' after to_csv()."""
    cell = _get_model_cell("=CMD|'/C calc'")
    assert not cell.startswith("="), f"CSV injection: model cell starts with '=' -- got: {cell!r}"


def test_formula_prefix_plus_sanitized():
    """Cell starting with '+' must not start with '+' after to_csv()."""
    cell = _get_model_cell("+1+1")
    assert not cell.startswith("+"), f"CSV injection: model cell starts with '+' -- got: {cell!r}"


def test_formula_prefix_minus_sanitized():
    """Cell starting with '-' must not start with '-' after to_csv()."""
    cell = _get_model_cell("-1+1")
    assert not cell.startswith("-"), f"CSV injection: model cell starts with '-' -- got: {cell!r}"


def test_formula_prefix_at_sanitized():
    """Cell starting with '@' must not start with '@' after to_csv()."""
    cell = _get_model_cell("@SUM(A1)")
    assert not cell.startswith("@"), f"CSV injection: model cell starts with '@' -- got: {cell!r}"


def test_sanitized_cell_keeps_original_text():
    """The tab prefix neutralizes the formula without losing the value."""
    assert _get_model_cell("=1+1") == "\t=1+1"


def test_error_column_sanitized():
    """Error text from the partner API is sanitized too."""
    rows = _rows(to_csv([_make_valuation("MacBook Air M1", error="=HYPERLINK(\"http://x\")")]))
    assert rows[1][-1].startswith("\t")


def test_lookup_export_sanitized():
    """Model names from device lookups go through the same sanitizer."""
    lookup = DeviceLookupResponse(
        success=True,
        serial="C02XYZ123ABC",
        device=DeviceModel(model="@evil", year=2021, color="Space Gray"),
    )
    rows = _rows(lookups_to_csv([lookup]))
    assert rows[1][2] == "\t@evil"


# ---------------------------------------------------------------------------
# Tests for safe values -- no false-positive sanitization
# ---------------------------------------------------------------------------


def test_safe_text_unchanged():
    """Safe text that does not start with a formula prefix is not modified."""
    cell = _get_model_cell("MacBook Air M1")
    assert cell == "MacBook Air M1", f"Safe text was incorrectly modified. Got: {cell!r}"


def test_numbers_unchanged():
    """Numeric columns are written as numbers, never tab-prefixed."""
    row = _rows(to_csv([_make_valuation("MacBook Air M1")]))[1]
    assert row[4] == "600"
    assert row[5] == "0.75"
    assert row[6] == "450"


def test_missing_error_is_empty():
    """A None error produces an empty string cell, not a tab."""
    row = _rows(to_csv([_make_valuation("MacBook Air M1")]))[1]
    assert row[-1] == "", f"Empty error should produce empty string cell. Got: {row[-1]!r}"
