"""
Dimension tables for the state-level survey star schema.

Each dimension is a deduplicated lookup keyed by its natural key, with a
contiguous integer surrogate id assigned in first-encounter order:

  - dim_state   (state_id, state_code)
  - dim_measure (measure_key, measure_id, question)
  - dim_answer  (answer_key, answer_description)

Blank natural keys never produce a dimension row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

import pandas as pd

from hcahps_analytics.core.data_loader import (
    ANSWER_COL,
    MEASURE_ID_COL,
    QUESTION_COL,
    STATE_COL,
)

logger = logging.getLogger(__name__)

STATE_ID_COL = "state_id"
STATE_CODE_COL = "state_code"
MEASURE_KEY_COL = "measure_key"
ANSWER_KEY_COL = "answer_key"


def normalize_key(value: Any) -> str:
    """Trim a natural key; None and NaN become the blank key ''."""
    if value is None:
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value).strip()


def _build_lookup(df: pd.DataFrame, key_col: str, value_col: str) -> Dict[str, int]:
    """Natural key -> surrogate id."""
    return {str(k): int(v) for k, v in zip(df[key_col], df[value_col])}


@dataclass
class DimensionTables:
    dim_state: pd.DataFrame
    dim_measure: pd.DataFrame
    dim_answer: pd.DataFrame

    state_lookup: Dict[str, int] = field(init=False)
    measure_lookup: Dict[str, int] = field(init=False)
    answer_lookup: Dict[str, int] = field(init=False)

    def __post_init__(self) -> None:
        self.state_lookup = _build_lookup(self.dim_state, STATE_CODE_COL, STATE_ID_COL)
        self.measure_lookup = _build_lookup(self.dim_measure, MEASURE_ID_COL, MEASURE_KEY_COL)
        self.answer_lookup = _build_lookup(self.dim_answer, ANSWER_COL, ANSWER_KEY_COL)


def _distinct_keys(values: pd.Series) -> List[str]:
    seen: Dict[str, None] = {}
    for v in values:
        key = normalize_key(v)
        if key and key not in seen:
            seen[key] = None
    return list(seen)


def _with_surrogate(keys: List[str], id_col: str, key_col: str) -> pd.DataFrame:
    return pd.DataFrame(
        {
            id_col: pd.Series(range(1, len(keys) + 1), dtype="int64"),
            key_col: pd.Series(keys, dtype=object),
        }
    )


def build_state_dim(raw: pd.DataFrame) -> pd.DataFrame:
    return _with_surrogate(_distinct_keys(raw[STATE_COL]), STATE_ID_COL, STATE_CODE_COL)


def build_measure_dim(raw: pd.DataFrame) -> pd.DataFrame:
    """
    One row per measure id. The question text is the first non-blank
    question seen for that measure.
    """
    questions: Dict[str, str] = {}
    for measure, question in zip(raw[MEASURE_ID_COL], raw[QUESTION_COL]):
        key = normalize_key(measure)
        if not key:
            continue
        text = normalize_key(question)
        if key not in questions:
            questions[key] = text
        elif not questions[key] and text:
            questions[key] = text

    dim = _with_surrogate(list(questions), MEASURE_KEY_COL, MEASURE_ID_COL)
    dim[QUESTION_COL] = [questions[k] for k in dim[MEASURE_ID_COL]]
    return dim


def build_answer_dim(raw: pd.DataFrame) -> pd.DataFrame:
    return _with_surrogate(_distinct_keys(raw[ANSWER_COL]), ANSWER_KEY_COL, ANSWER_COL)


def build_dimensions(raw: pd.DataFrame) -> DimensionTables:
    """Build all three dimensions from the full raw batch (pure function)."""
    dims = DimensionTables(
        dim_state=build_state_dim(raw),
        dim_measure=build_measure_dim(raw),
        dim_answer=build_answer_dim(raw),
    )
    logger.info(
        "Built dimensions: %s states, %s measures, %s answers",
        len(dims.dim_state),
        len(dims.dim_measure),
        len(dims.dim_answer),
    )
    return dims
