"""Unit tests for fact cleaning."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pandas as pd
import pytest

from hcahps_analytics.core.data_loader import frame_from_records
from hcahps_analytics.core.dimensions import build_dimensions
from hcahps_analytics.core.fact_cleaner import (
    MALFORMED_DATE,
    MALFORMED_PERCENTAGE,
    UNRESOLVED_DIMENSION,
    RowCleaningError,
    clean_date,
    clean_facts,
    clean_percentage,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("85.5", Decimal("85.50")),
        (" 85.5 ", Decimal("85.50")),
        ("100", Decimal("100.00")),
        ("0", Decimal("0.00")),
        ("85.555", Decimal("85.56")),
        ("85.545", Decimal("85.55")),
    ],
)
def test_clean_percentage_parses_decimals(raw: str, expected: Decimal) -> None:
    """Numeric strings become two-place decimals, rounded half up."""
    assert clean_percentage(raw) == expected


@pytest.mark.parametrize("raw", ["Not Available", "  Not Available  ", "", "   ", None])
def test_clean_percentage_missing_values(raw) -> None:
    """The sentinel and blanks mean 'no value', never zero."""
    assert clean_percentage(raw) is None


@pytest.mark.parametrize(
    "raw",
    ["not available", "N/A", "abc", "NaN", "Infinity", "101", "-1", "85,5", "1e30", "1E1", "8_5", "\u0668\u0665", "1" * 30],
)
def test_clean_percentage_rejects_malformed(raw: str) -> None:
    """Anything else is a MalformedPercentage row error."""
    with pytest.raises(RowCleaningError) as exc_info:
        clean_percentage(raw)

    assert exc_info.value.reason == MALFORMED_PERCENTAGE


def test_clean_date_parses_month_day_year() -> None:
    """MM/DD/YYYY becomes a calendar date."""
    assert clean_date("12/31/2023", "end_date") == date(2023, 12, 31)
    assert clean_date(" 1/2/2023 ", "start_date") == date(2023, 1, 2)


@pytest.mark.parametrize("raw", ["2023-12-31", "12/31/23", "13/01/2023", "", None])
def test_clean_date_rejects_other_formats(raw) -> None:
    """Other layouts and two-digit years are MalformedDate."""
    with pytest.raises(RowCleaningError) as exc_info:
        clean_date(raw, "start_date")

    assert exc_info.value.reason == MALFORMED_DATE


def test_clean_facts_emits_one_fact_per_good_row(sample_raw: pd.DataFrame) -> None:
    """Every well-formed row becomes a fact, in input order."""
    dims = build_dimensions(sample_raw)

    result = clean_facts(sample_raw, dims)

    assert result.skipped == []
    assert len(result.facts) == len(sample_raw)
    assert list(result.facts["fact_id"]) == list(range(1, len(sample_raw) + 1))
    assert result.facts.loc[0, "answer_percent"] == 90.0
    assert pd.isna(result.facts.loc[5, "answer_percent"])
    assert result.facts.loc[5, "footnote"] == "5"
    assert pd.isna(result.facts.loc[0, "footnote"])
    assert result.facts.loc[8, "start_date"] == pd.Timestamp(2022, 7, 1)


def test_clean_facts_never_stores_zero_for_not_available(make_row) -> None:
    """'Not Available' rows load with a null percentage."""
    raw = frame_from_records([make_row("AZ", "H_COMP_1", "Always", "Not Available")])
    result = clean_facts(raw, build_dimensions(raw))

    value = result.facts.loc[0, "answer_percent"]
    assert pd.isna(value)


def test_clean_facts_skips_and_reports_bad_rows(make_row) -> None:
    """Malformed rows are skipped with a reason; the batch continues."""
    raw = frame_from_records(
        [
            make_row("AZ", "H_COMP_1", "Always", "90"),
            make_row("AZ", "H_COMP_1", "Always", "ninety"),
            make_row("AZ", "H_COMP_1", "Always", "90", start="2023-01-01"),
            make_row("", "H_COMP_1", "Always", "90"),
            make_row("CA", "H_COMP_1", "Always", "70"),
        ]
    )

    result = clean_facts(raw, build_dimensions(raw))

    assert len(result.facts) == 2
    assert [(s.row_number, s.reason) for s in result.skipped] == [
        (2, MALFORMED_PERCENTAGE),
        (3, MALFORMED_DATE),
        (4, UNRESOLVED_DIMENSION),
    ]
    assert result.skipped_by_reason == {
        MALFORMED_PERCENTAGE: 1,
        MALFORMED_DATE: 1,
        UNRESOLVED_DIMENSION: 1,
    }
    assert list(result.facts["fact_id"]) == [1, 2]


def test_clean_facts_skips_keys_missing_from_dimensions(make_row) -> None:
    """Rows whose key is absent from a partial dimension set are unresolved."""
    known = frame_from_records([make_row("AZ", "H_COMP_1", "Always", "90")])
    batch = frame_from_records(
        [make_row("AZ", "H_COMP_1", "Always", "90"), make_row("NV", "H_COMP_1", "Always", "90")]
    )

    result = clean_facts(batch, build_dimensions(known))

    assert len(result.facts) == 1
    assert result.skipped[0].reason == UNRESOLVED_DIMENSION
    assert "NV" in result.skipped[0].detail


def test_clean_facts_empty_batch_has_typed_columns() -> None:
    """No rows still yields the fact columns with their dtypes."""
    raw = frame_from_records([])

    result = clean_facts(raw, build_dimensions(raw))

    assert result.facts.empty
    assert str(result.facts["answer_percent"].dtype) == "float64"
    assert str(result.facts["start_date"].dtype).startswith("datetime64")
