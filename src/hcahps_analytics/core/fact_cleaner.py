from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from hcahps_analytics.core.data_loader import (
    ANSWER_COL,
    END_DATE_COL,
    FOOTNOTE_COL,
    MEASURE_ID_COL,
    PERCENT_RAW_COL,
    START_DATE_COL,
    STATE_COL,
)
from hcahps_analytics.core.dimensions import (
    ANSWER_KEY_COL,
    MEASURE_KEY_COL,
    STATE_ID_COL,
    DimensionTables,
    normalize_key,
)

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "Not Available"
DATE_FORMAT = "%m/%d/%Y"

PERCENT_COL = "answer_percent"
FACT_ID_COL = "fact_id"

FACT_COLUMNS = [
    FACT_ID_COL,
    STATE_ID_COL,
    MEASURE_KEY_COL,
    ANSWER_KEY_COL,
    PERCENT_COL,
    FOOTNOTE_COL,
    START_DATE_COL,
    END_DATE_COL,
]

# Skip reasons
MALFORMED_PERCENTAGE = "MalformedPercentage"
MALFORMED_DATE = "MalformedDate"
UNRESOLVED_DIMENSION = "UnresolvedDimension"

_TWO_PLACES = Decimal("0.01")
_PERCENT_MIN = Decimal("0")
_PERCENT_MAX = Decimal("100")

# Plain ASCII decimal literal: no exponent, underscores or non-ASCII digits
_DECIMAL_RE = re.compile(r"[+-]?([0-9]+(\.[0-9]*)?|\.[0-9]+)")


class RowCleaningError(ValueError):
    """A single raw row cannot become a fact. Never escapes clean_facts()."""

    def __init__(self, reason: str, detail: str) -> None:
        super().__init__(f"{reason}: {detail}")
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class SkippedRow:
    row_number: int   # 1-based position in the raw batch
    reason: str
    detail: str


@dataclass
class CleanResult:
    facts: pd.DataFrame
    skipped: List[SkippedRow]

    @property
    def skipped_by_reason(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for s in self.skipped:
            counts[s.reason] = counts.get(s.reason, 0) + 1
        return counts


# ---------------------------------------------------------------------------
# Field cleaners
# ---------------------------------------------------------------------------

def clean_percentage(raw: Any) -> Optional[Decimal]:
    """
    Parse a raw percentage string.

    Returns:
      - None for a missing value (None/blank or exactly 'Not Available' after trimming)
      - a Decimal with two fractional digits (half-up) otherwise

    Raises RowCleaningError(MalformedPercentage) for anything else: exponent
    notation, non-ASCII digits, non-finite numbers and values outside [0, 100].
    """
    text = normalize_key(raw)
    if text == "" or text == NOT_AVAILABLE:
        return None

    if not _DECIMAL_RE.fullmatch(text):
        raise RowCleaningError(MALFORMED_PERCENTAGE, f"not a decimal: {text!r}")

    try:
        value = Decimal(text).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        # quantize overflows the context precision for very long literals
        raise RowCleaningError(MALFORMED_PERCENTAGE, f"outside 0-100: {text!r}") from exc

    if value < _PERCENT_MIN or value > _PERCENT_MAX:
        raise RowCleaningError(MALFORMED_PERCENTAGE, f"outside 0-100: {text!r}")
    return value


def clean_date(raw: Any, field_name: str) -> date:
    """Parse MM/DD/YYYY (four-digit year)."""
    text = normalize_key(raw)
    try:
        return datetime.strptime(text, DATE_FORMAT).date()
    except ValueError as exc:
        raise RowCleaningError(MALFORMED_DATE, f"{field_name} {text!r} is not MM/DD/YYYY") from exc


def _resolve(lookup: Dict[str, int], raw: Any, dimension: str) -> int:
    key = normalize_key(raw)
    if not key:
        raise RowCleaningError(UNRESOLVED_DIMENSION, f"blank {dimension}")
    surrogate = lookup.get(key)
    if surrogate is None:
        raise RowCleaningError(UNRESOLVED_DIMENSION, f"unknown {dimension} {key!r}")
    return surrogate


def _clean_row(row: Dict[str, Any], dims: DimensionTables) -> Tuple[int, int, int, Optional[Decimal], Optional[str], date, date]:
    state_id = _resolve(dims.state_lookup, row.get(STATE_COL), "state")
    measure_key = _resolve(dims.measure_lookup, row.get(MEASURE_ID_COL), "measure")
    answer_key = _resolve(dims.answer_lookup, row.get(ANSWER_COL), "answer")

    percent = clean_percentage(row.get(PERCENT_RAW_COL))
    start = clean_date(row.get(START_DATE_COL), "start_date")
    end = clean_date(row.get(END_DATE_COL), "end_date")

    footnote = normalize_key(row.get(FOOTNOTE_COL)) or None
    return state_id, measure_key, answer_key, percent, footnote, start, end


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

def _empty_facts() -> pd.DataFrame:
    return pd.DataFrame(
        {
            FACT_ID_COL: pd.Series(dtype="int64"),
            STATE_ID_COL: pd.Series(dtype="int64"),
            MEASURE_KEY_COL: pd.Series(dtype="int64"),
            ANSWER_KEY_COL: pd.Series(dtype="int64"),
            PERCENT_COL: pd.Series(dtype="float64"),
            FOOTNOTE_COL: pd.Series(dtype=object),
            START_DATE_COL: pd.Series(dtype="datetime64[ns]"),
            END_DATE_COL: pd.Series(dtype="datetime64[ns]"),
        }
    )


def clean_facts(raw: pd.DataFrame, dims: DimensionTables) -> CleanResult:
    """
    Turn every raw row into zero or one fact.

    Rows that fail percentage/date parsing or dimension resolution are
    recorded in CleanResult.skipped; the batch itself never fails on them.
    Output order follows input order and fact_id counts from 1.
    """
    records: List[Dict[str, Any]] = []
    skipped: List[SkippedRow] = []

    for idx, row in enumerate(raw.to_dict("records"), start=1):
        try:
            state_id, measure_key, answer_key, percent, footnote, start, end = _clean_row(row, dims)
        except RowCleaningError as err:
            logger.debug("Skipping raw row %s: %s", idx, err)
            skipped.append(SkippedRow(row_number=idx, reason=err.reason, detail=err.detail))
            continue

        records.append(
            {
                FACT_ID_COL: len(records) + 1,
                STATE_ID_COL: state_id,
                MEASURE_KEY_COL: measure_key,
                ANSWER_KEY_COL: answer_key,
                PERCENT_COL: float(percent) if percent is not None else float("nan"),
                FOOTNOTE_COL: footnote,
                START_DATE_COL: start,
                END_DATE_COL: end,
            }
        )

    if records:
        facts = pd.DataFrame.from_records(records, columns=FACT_COLUMNS)
        facts[PERCENT_COL] = facts[PERCENT_COL].astype("float64")
        facts[START_DATE_COL] = pd.to_datetime(facts[START_DATE_COL])
        facts[END_DATE_COL] = pd.to_datetime(facts[END_DATE_COL])
    else:
        facts = _empty_facts()

    result = CleanResult(facts=facts, skipped=skipped)

    if skipped:
        logger.warning("Skipped %s of %s raw rows: %s", len(skipped), len(raw), result.skipped_by_reason)

    inverted = int((facts[START_DATE_COL] > facts[END_DATE_COL]).sum()) if len(facts) else 0
    if inverted:
        logger.warning("%s facts have a start_date after their end_date.", inverted)

    logger.info("Cleaned %s facts from %s raw rows", len(facts), len(raw))
    return result
