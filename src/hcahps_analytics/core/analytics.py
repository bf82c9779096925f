"""
Analytical questions over the star schema.

The twenty report questions are thin parameterizations of a handful of
primitives (coverage, missingness, average ranking, partitioned ranking,
per-partition extremum, dispersion, buckets, measure gap, threshold share,
date range). Every primitive is a pure read of the FactStore and returns an
ordered DataFrame with a fresh RangeIndex.

Display values (averages, rates, gaps, std devs) are rounded to two decimals,
half up. Ordering and ranking always use the unrounded values; ties are
broken by the natural key ascending so results are deterministic.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from hcahps_analytics.config import (
    DEFAULT_GAP_MEASURES,
    DEFAULT_PARTITION_K,
    DEFAULT_TOP_N,
    HIGH_SCORE_THRESHOLD,
    QUESTION_PREVIEW_CHARS,
)
from hcahps_analytics.core.data_loader import (
    ANSWER_COL,
    END_DATE_COL,
    MEASURE_ID_COL,
    QUESTION_COL,
    START_DATE_COL,
)
from hcahps_analytics.core.dimensions import STATE_CODE_COL
from hcahps_analytics.core.fact_cleaner import PERCENT_COL
from hcahps_analytics.core.fact_store import FactStore, FactStoreError, check_group_columns

logger = logging.getLogger(__name__)

QUESTION_PREVIEW_COL = "question_preview"

BUCKET_LABELS = ["00-19", "20-39", "40-59", "60-79", "80-100"]
_BUCKET_EDGES = [float("-inf"), 20, 40, 60, 80, float("inf")]

_TWO_PLACES = Decimal("0.01")


class AnalyticsError(Exception):
    """Raised for unknown questions or invalid query parameters."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def round2(value: Any) -> float:
    """Round half up to two decimals; nulls stay NaN."""
    if value is None or pd.isna(value):
        return float("nan")
    return float(Decimal(repr(float(value))).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))


def _round_columns(df: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    for col in columns:
        df[col] = df[col].map(round2).astype("float64")
    return df


def _order(df: pd.DataFrame, value_col: str, ascending: bool, keys: Sequence[str]) -> pd.DataFrame:
    keys = [k for k in keys if k != value_col]
    return df.sort_values(
        [value_col] + keys,
        ascending=[ascending] + [True] * len(keys),
        kind="mergesort",
    ).reset_index(drop=True)


def _check_by(by: Sequence[str] | str) -> List[str]:
    cols = [by] if isinstance(by, str) else list(by)
    try:
        cols = check_group_columns(cols, "group")
    except FactStoreError as exc:
        raise AnalyticsError(str(exc)) from exc
    if not cols:
        raise AnalyticsError("At least one group column is required.")
    return cols


def _check_limit(limit: Optional[int], name: str = "limit") -> Optional[int]:
    if limit is None:
        return None
    if int(limit) <= 0:
        raise AnalyticsError(f"{name} must be a positive integer, got {limit!r}")
    return int(limit)


def _head(df: pd.DataFrame, limit: Optional[int]) -> pd.DataFrame:
    return df if limit is None else df.head(limit).reset_index(drop=True)


def _attach_question_preview(df: pd.DataFrame, store: FactStore) -> pd.DataFrame:
    """Insert question_preview right after measure_id (first 90 chars of the question)."""
    if MEASURE_ID_COL not in df.columns:
        return df

    previews = store.dimensions.dim_measure[[MEASURE_ID_COL, QUESTION_COL]].copy()
    previews[QUESTION_PREVIEW_COL] = previews[QUESTION_COL].fillna("").str.slice(0, QUESTION_PREVIEW_CHARS)
    out = df.merge(previews[[MEASURE_ID_COL, QUESTION_PREVIEW_COL]], on=MEASURE_ID_COL, how="left")

    cols = [c for c in out.columns if c != QUESTION_PREVIEW_COL]
    cols.insert(cols.index(MEASURE_ID_COL) + 1, QUESTION_PREVIEW_COL)
    return out[cols]


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def coverage(store: FactStore, by: Sequence[str] | str | None = None) -> pd.DataFrame:
    """Total rows and null vs numeric percentage counts, overall or per group."""
    df = store.labelled()
    df["_null"] = df[PERCENT_COL].isna().astype("int64")

    if by is None:
        total = len(df)
        nulls = int(df["_null"].sum())
        return pd.DataFrame(
            [{"total_rows": total, "null_answer_percent": nulls, "numeric_answer_percent": total - nulls}]
        )

    cols = _check_by(by)
    if df.empty:
        return pd.DataFrame(columns=cols + ["total_rows", "null_answer_percent", "numeric_answer_percent"])

    out = df.groupby(cols, sort=True).agg(total_rows=("_null", "size"), null_answer_percent=("_null", "sum"))
    out = out.reset_index()
    out["numeric_answer_percent"] = out["total_rows"] - out["null_answer_percent"]
    return out


def missing_counts(store: FactStore, by: Sequence[str] | str = MEASURE_ID_COL) -> pd.DataFrame:
    """Count of 'Not Available' percentages per group, most missing first."""
    cols = _check_by(by)
    df = store.filter(percent="null")
    if df.empty:
        out = pd.DataFrame(columns=cols + ["not_available_count"])
    else:
        out = df.groupby(cols, sort=True).size().reset_index(name="not_available_count")
    out = _order(out, "not_available_count", False, cols)
    return _attach_question_preview(out, store)


def missing_rate(store: FactStore, by: Sequence[str] | str = MEASURE_ID_COL) -> pd.DataFrame:
    """Share of 'Not Available' percentages per group, as a percentage."""
    cols = _check_by(by)
    df = store.labelled()
    if df.empty:
        return pd.DataFrame(columns=cols + ["not_available_rate_pct"])

    df["_null"] = df[PERCENT_COL].isna().astype("float64")
    out = df.groupby(cols, sort=True)["_null"].mean().reset_index(name="not_available_rate_pct")
    out["not_available_rate_pct"] = out["not_available_rate_pct"] * 100
    out = _order(out, "not_available_rate_pct", False, cols)
    return _round_columns(out, ["not_available_rate_pct"])


def average_ranking(
    store: FactStore,
    by: Sequence[str] | str = STATE_CODE_COL,
    ascending: bool = False,
    limit: Optional[int] = None,
    value_name: str = "avg_score",
) -> pd.DataFrame:
    """Mean of numeric percentages per group, ordered, optionally top-N."""
    cols = _check_by(by)
    limit = _check_limit(limit)

    agg = store.aggregate(cols)
    out = agg[cols + ["avg", "count"]].rename(columns={"avg": value_name, "count": "numeric_points"})
    out = _head(_order(out, value_name, ascending, cols), limit)
    out = _round_columns(out, [value_name])
    return _attach_question_preview(out, store)


def numeric_points(store: FactStore, by: Sequence[str] | str = MEASURE_ID_COL) -> pd.DataFrame:
    """Count of numeric percentages per group, most covered first."""
    cols = _check_by(by)
    agg = store.aggregate(cols)
    out = agg[cols + ["count"]].rename(columns={"count": "numeric_points"})
    return _order(out, "numeric_points", False, cols)


def partitioned_ranking(
    store: FactStore,
    partition_by: str = MEASURE_ID_COL,
    member: str = STATE_CODE_COL,
    k: int = DEFAULT_PARTITION_K,
    ascending: bool = False,
) -> pd.DataFrame:
    """
    Average per (partition, member), dense-ranked inside each partition.

    ascending=False keeps the top k ranks, ascending=True the bottom k.
    """
    cols = _check_by([partition_by, member])
    if partition_by == member:
        raise AnalyticsError("partition_by and member must differ.")
    k = _check_limit(k, "k")

    agg = store.aggregate(cols)
    out = agg[cols + ["avg"]].rename(columns={"avg": "avg_percent"})
    if out.empty:
        out["rnk"] = pd.Series(dtype="int64")
        return out

    out["rnk"] = FactStore.dense_rank(out, [partition_by], "avg_percent", ascending=ascending)
    out = out[out["rnk"] <= k]
    out = out.sort_values(
        [partition_by, "rnk", member], ascending=[True, True, True], kind="mergesort"
    ).reset_index(drop=True)
    return _round_columns(out, ["avg_percent"])


def partition_extremum(
    store: FactStore,
    partition_by: str = STATE_CODE_COL,
    member: str = MEASURE_ID_COL,
    best: bool = True,
) -> pd.DataFrame:
    """
    For each partition, the single member with the highest (best=True) or
    lowest average. Equal averages go to the member whose key sorts first.
    """
    cols = _check_by([partition_by, member])
    if partition_by == member:
        raise AnalyticsError("partition_by and member must differ.")

    agg = store.aggregate(cols)
    out = agg[cols + ["avg"]].rename(columns={"avg": "avg_percent"})
    if not out.empty:
        rn = FactStore.row_number(out, [partition_by], "avg_percent", ascending=not best, tie_breaker=[member])
        out = out[rn == 1]

    out = _order(out, "avg_percent", not best, [partition_by])
    out = _round_columns(out, ["avg_percent"])
    return _attach_question_preview(out, store)


def dispersion(store: FactStore, by: Sequence[str] | str = STATE_CODE_COL) -> pd.DataFrame:
    """Mean and population std dev per group, most consistent first."""
    cols = _check_by(by)
    agg = store.aggregate(cols)
    out = agg[cols + ["avg", "std_pop"]].rename(columns={"avg": "avg_score", "std_pop": "std_dev"})
    out = _order(out, "std_dev", True, cols)
    return _round_columns(out, ["avg_score", "std_dev"])


def score_buckets(store: FactStore) -> pd.DataFrame:
    """Histogram of numeric percentages in fixed 20-point buckets (all five listed)."""
    values = store.filter(percent="non_null")[PERCENT_COL]
    buckets = pd.cut(values, bins=_BUCKET_EDGES, labels=BUCKET_LABELS, right=False)
    counts = buckets.value_counts().reindex(BUCKET_LABELS, fill_value=0)
    return pd.DataFrame({"bucket": BUCKET_LABELS, "cnt": [int(c) for c in counts.tolist()]})


def measure_gap(
    store: FactStore,
    measure_1: str = DEFAULT_GAP_MEASURES[0],
    measure_2: str = DEFAULT_GAP_MEASURES[1],
    descending: bool = True,
) -> pd.DataFrame:
    """
    Per-state averages of two measures side by side, states having both,
    ordered by gap = measure1_avg - measure2_avg.
    """
    m1 = str(measure_1 or "").strip()
    m2 = str(measure_2 or "").strip()
    if not m1 or not m2:
        raise AnalyticsError("Both measure ids are required for a gap comparison.")

    agg = store.aggregate([STATE_CODE_COL, MEASURE_ID_COL])
    left = agg[agg[MEASURE_ID_COL] == m1][[STATE_CODE_COL, "avg"]].rename(columns={"avg": "measure1_avg"})
    right = agg[agg[MEASURE_ID_COL] == m2][[STATE_CODE_COL, "avg"]].rename(columns={"avg": "measure2_avg"})

    out = left.merge(right, on=STATE_CODE_COL, how="inner")
    out["gap"] = out["measure1_avg"] - out["measure2_avg"]
    out = _order(out, "gap", not descending, [STATE_CODE_COL])
    return _round_columns(out, ["measure1_avg", "measure2_avg", "gap"])


def threshold_share(
    store: FactStore,
    by: Sequence[str] | str = STATE_CODE_COL,
    threshold: float = HIGH_SCORE_THRESHOLD,
    ascending: bool = False,
    limit: Optional[int] = None,
) -> pd.DataFrame:
    """Percentage of numeric values >= threshold per group (always within 0-100)."""
    cols = _check_by(by)
    limit = _check_limit(limit)
    threshold = float(threshold)
    if not 0 <= threshold <= 100:
        raise AnalyticsError(f"threshold must lie in [0, 100], got {threshold}")

    value_name = f"pct_scores_{threshold:g}_plus"
    df = store.filter(percent="non_null")
    if df.empty:
        return pd.DataFrame(columns=cols + [value_name])

    df["_hit"] = (df[PERCENT_COL] >= threshold).astype("float64")
    out = df.groupby(cols, sort=True)["_hit"].mean().reset_index(name=value_name)
    out[value_name] = (out[value_name] * 100).round(9)
    out = _head(_order(out, value_name, ascending, cols), limit)
    return _round_columns(out, [value_name])


def date_range(store: FactStore) -> pd.DataFrame:
    """Earliest start date and latest end date across all facts."""
    facts = store.facts
    if facts.empty:
        return pd.DataFrame([{"min_start_date": None, "max_end_date": None}])
    return pd.DataFrame(
        [
            {
                "min_start_date": facts[START_DATE_COL].min().date(),
                "max_end_date": facts[END_DATE_COL].max().date(),
            }
        ]
    )


# ---------------------------------------------------------------------------
# Question catalog
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnalyticalQuestion:
    code: str
    title: str
    run: Callable[..., pd.DataFrame]
    defaults: Mapping[str, Any] = field(default_factory=dict)


ANALYTICAL_QUESTIONS: Dict[str, AnalyticalQuestion] = {
    q.code: q
    for q in [
        AnalyticalQuestion("Q1", "Total records and numeric coverage", coverage),
        AnalyticalQuestion(
            "Q2", "Measures with most 'Not Available'", missing_counts, {"by": MEASURE_ID_COL}
        ),
        AnalyticalQuestion(
            "Q3", "States with most 'Not Available'", missing_counts, {"by": STATE_CODE_COL}
        ),
        AnalyticalQuestion(
            "Q4",
            "Top states by overall average score",
            average_ranking,
            {"by": STATE_CODE_COL, "ascending": False, "limit": DEFAULT_TOP_N},
        ),
        AnalyticalQuestion(
            "Q5",
            "Bottom states by overall average score",
            average_ranking,
            {"by": STATE_CODE_COL, "ascending": True, "limit": DEFAULT_TOP_N},
        ),
        AnalyticalQuestion(
            "Q6",
            "National average by measure (best)",
            average_ranking,
            {"by": MEASURE_ID_COL, "ascending": False, "limit": DEFAULT_TOP_N, "value_name": "national_avg"},
        ),
        AnalyticalQuestion(
            "Q7",
            "National average by measure (worst)",
            average_ranking,
            {"by": MEASURE_ID_COL, "ascending": True, "limit": DEFAULT_TOP_N, "value_name": "national_avg"},
        ),
        AnalyticalQuestion(
            "Q8", "Top states per measure", partitioned_ranking, {"ascending": False}
        ),
        AnalyticalQuestion(
            "Q9", "Bottom states per measure", partitioned_ranking, {"ascending": True}
        ),
        AnalyticalQuestion(
            "Q10", "Best performing measure per state", partition_extremum, {"best": True}
        ),
        AnalyticalQuestion(
            "Q11", "Worst performing measure per state", partition_extremum, {"best": False}
        ),
        AnalyticalQuestion("Q12", "Score consistency per state (std dev)", dispersion),
        AnalyticalQuestion("Q13", "Score distribution buckets", score_buckets),
        AnalyticalQuestion("Q14", "Measures with most numeric responses", numeric_points),
        AnalyticalQuestion("Q15", "Two-measure gap by state", measure_gap),
        AnalyticalQuestion("Q16", "Reporting period coverage", date_range),
        AnalyticalQuestion(
            "Q17",
            "Answer categories by average percent",
            average_ranking,
            {"by": ANSWER_COL, "ascending": False, "value_name": "avg_percent"},
        ),
        AnalyticalQuestion(
            "Q18",
            "States with highest share of high scores",
            threshold_share,
            {"ascending": False, "limit": DEFAULT_TOP_N},
        ),
        AnalyticalQuestion(
            "Q19",
            "States with lowest share of high scores",
            threshold_share,
            {"ascending": True, "limit": DEFAULT_TOP_N},
        ),
        AnalyticalQuestion(
            "Q20", "'Not Available' rate by measure", missing_rate, {"by": MEASURE_ID_COL}
        ),
    ]
}


def run_question(store: FactStore, code: str, **overrides: Any) -> pd.DataFrame:
    """Run one catalog question, with keyword overrides of its defaults."""
    key = str(code).strip().upper()
    question = ANALYTICAL_QUESTIONS.get(key)
    if question is None:
        raise AnalyticsError(f"Unknown analytical question {code!r}. Known: {list(ANALYTICAL_QUESTIONS)}")

    params = {**question.defaults, **overrides}
    try:
        inspect.signature(question.run).bind(store, **params)
    except TypeError as exc:
        raise AnalyticsError(f"Invalid parameters for {key}: {exc}") from exc

    logger.info("Running %s (%s) with %s", key, question.title, params)
    return question.run(store, **params)


def run_all_questions(store: FactStore) -> Dict[str, pd.DataFrame]:
    """Run the full battery with default parameters, in catalog order."""
    return {code: run_question(store, code) for code in ANALYTICAL_QUESTIONS}
