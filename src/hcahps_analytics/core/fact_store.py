from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import List, Optional, Sequence, Union

import pandas as pd

from hcahps_analytics.core.data_loader import (
    ANSWER_COL,
    END_DATE_COL,
    FOOTNOTE_COL,
    MEASURE_ID_COL,
    QUESTION_COL,
    START_DATE_COL,
)
from hcahps_analytics.core.dimensions import (
    ANSWER_KEY_COL,
    MEASURE_KEY_COL,
    STATE_CODE_COL,
    STATE_ID_COL,
    DimensionTables,
)
from hcahps_analytics.core.fact_cleaner import FACT_COLUMNS, FACT_ID_COL, PERCENT_COL

logger = logging.getLogger(__name__)

# Natural-key columns a query may group or partition by
GROUP_COLUMNS = (STATE_CODE_COL, MEASURE_ID_COL, ANSWER_COL)

AGG_COLUMNS = ["count", "avg", "std_pop", "min", "max"]

PERCENT_FILTERS = (None, "null", "non_null")

FACT_TABLE = "fact_hcahps_state"

STAR_SCHEMA_DDL = f"""
DROP TABLE IF EXISTS {FACT_TABLE};
DROP TABLE IF EXISTS dim_state;
DROP TABLE IF EXISTS dim_measure;
DROP TABLE IF EXISTS dim_answer;

CREATE TABLE dim_state (
    state_id INTEGER PRIMARY KEY,
    state_code TEXT UNIQUE NOT NULL
);

CREATE TABLE dim_measure (
    measure_key INTEGER PRIMARY KEY,
    measure_id TEXT UNIQUE NOT NULL,
    question TEXT
);

CREATE TABLE dim_answer (
    answer_key INTEGER PRIMARY KEY,
    answer_description TEXT UNIQUE NOT NULL
);

-- answer_percent NULL means missing / Not Available
CREATE TABLE {FACT_TABLE} (
    fact_id INTEGER PRIMARY KEY,
    state_id INTEGER NOT NULL,
    measure_key INTEGER NOT NULL,
    answer_key INTEGER NOT NULL,
    answer_percent NUMERIC NULL,
    footnote TEXT,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    FOREIGN KEY (state_id) REFERENCES dim_state(state_id),
    FOREIGN KEY (measure_key) REFERENCES dim_measure(measure_key),
    FOREIGN KEY (answer_key) REFERENCES dim_answer(answer_key)
);
"""


class FactStoreError(Exception):
    """Raised for invalid store operations or persistence failures."""


def check_group_columns(columns: Sequence[str], what: str) -> List[str]:
    cols = list(columns)
    unknown = [c for c in cols if c not in GROUP_COLUMNS]
    if unknown:
        raise FactStoreError(f"Cannot {what} by {unknown}; allowed columns are {list(GROUP_COLUMNS)}.")
    return cols


class FactStore:
    """
    Read-only collection of cleaned facts plus their dimensions.

    The store never changes after construction; every accessor returns a
    copy, so callers may add columns freely.
    """

    def __init__(self, facts: pd.DataFrame, dimensions: DimensionTables) -> None:
        self._facts = facts.reset_index(drop=True).copy()
        self._dims = dimensions
        self._labelled = self._join_labels()

    def _join_labels(self) -> pd.DataFrame:
        df = self._facts.merge(
            self._dims.dim_state, on=STATE_ID_COL, how="left", validate="many_to_one"
        )
        df = df.merge(self._dims.dim_measure, on=MEASURE_KEY_COL, how="left", validate="many_to_one")
        df = df.merge(self._dims.dim_answer, on=ANSWER_KEY_COL, how="left", validate="many_to_one")

        dangling = df[[STATE_CODE_COL, MEASURE_ID_COL, ANSWER_COL]].isna().any(axis=1)
        if dangling.any():
            raise FactStoreError(
                f"{int(dangling.sum())} facts reference dimension rows that do not exist."
            )
        return df

    @property
    def dimensions(self) -> DimensionTables:
        return self._dims

    @property
    def facts(self) -> pd.DataFrame:
        return self._facts.copy()

    def __len__(self) -> int:
        return len(self._facts)

    def labelled(self) -> pd.DataFrame:
        """Facts with state_code, measure_id, question and answer_description attached."""
        return self._labelled.copy()

    # ------------------------------------------------------------------
    # Filter / aggregate
    # ------------------------------------------------------------------

    def filter(
        self,
        percent: Optional[str] = None,
        state_code: Optional[str] = None,
        measure_id: Optional[str] = None,
        answer_description: Optional[str] = None,
    ) -> pd.DataFrame:
        """
        Labelled facts matching every given condition.

        percent: None (any), 'null' (Not Available) or 'non_null' (numeric).
        """
        if percent not in PERCENT_FILTERS:
            raise FactStoreError(f"percent filter must be one of {PERCENT_FILTERS}, got {percent!r}")

        df = self._labelled
        mask = pd.Series(True, index=df.index)
        if percent == "null":
            mask &= df[PERCENT_COL].isna()
        elif percent == "non_null":
            mask &= df[PERCENT_COL].notna()
        if state_code is not None:
            mask &= df[STATE_CODE_COL] == state_code
        if measure_id is not None:
            mask &= df[MEASURE_ID_COL] == measure_id
        if answer_description is not None:
            mask &= df[ANSWER_COL] == answer_description
        return df[mask].copy()

    def aggregate(self, by: Sequence[str], non_null_only: bool = True) -> pd.DataFrame:
        """
        Group by any combination of state_code / measure_id / answer_description
        and compute count, avg, std_pop (ddof=0), min and max of answer_percent.

        With non_null_only (default) groups that have no numeric value are
        dropped instead of appearing with a null average.
        """
        cols = check_group_columns(by, "group")
        if not cols:
            raise FactStoreError("aggregate() needs at least one group column.")

        df = self.filter(percent="non_null") if non_null_only else self.labelled()
        if df.empty:
            return pd.DataFrame(columns=cols + AGG_COLUMNS)

        out = (
            df.groupby(cols, sort=True)[PERCENT_COL]
            .agg(
                count="count",
                avg="mean",
                std_pop=lambda s: s.std(ddof=0),
                min="min",
                max="max",
            )
            .reset_index()
        )
        out["count"] = out["count"].astype("int64")
        # float noise must not split ties between equal averages
        out["avg"] = out["avg"].round(9)
        out["std_pop"] = out["std_pop"].round(9)
        return out

    # ------------------------------------------------------------------
    # Window primitives
    # ------------------------------------------------------------------

    @staticmethod
    def dense_rank(
        frame: pd.DataFrame,
        partition_by: Sequence[str],
        order_by: str,
        ascending: bool = True,
    ) -> pd.Series:
        """
        DENSE_RANK() OVER (PARTITION BY partition_by ORDER BY order_by).

        Equal values share a rank and the next distinct value gets the next
        integer (1, 1, 2). order_by must not contain nulls.
        """
        if frame.empty:
            return pd.Series(dtype="int64", index=frame.index)

        parts = list(partition_by)
        if parts:
            ranks = frame.groupby(parts, sort=False)[order_by].rank(method="dense", ascending=ascending)
        else:
            ranks = frame[order_by].rank(method="dense", ascending=ascending)
        return ranks.astype("int64")

    @staticmethod
    def row_number(
        frame: pd.DataFrame,
        partition_by: Sequence[str],
        order_by: str,
        ascending: bool = True,
        tie_breaker: Sequence[str] = (),
    ) -> pd.Series:
        """
        ROW_NUMBER() OVER (PARTITION BY partition_by ORDER BY order_by, tie_breaker).

        Ties on order_by are broken by the tie_breaker columns ascending, so
        the numbering is the same on every run.
        """
        if frame.empty:
            return pd.Series(dtype="int64", index=frame.index)

        parts = list(partition_by)
        breakers = list(tie_breaker)
        ordered = frame.sort_values(
            parts + [order_by] + breakers,
            ascending=[True] * len(parts) + [ascending] + [True] * len(breakers),
            kind="mergesort",
        )
        if parts:
            numbers = ordered.groupby(parts, sort=False).cumcount() + 1
        else:
            numbers = pd.Series(range(1, len(ordered) + 1), index=ordered.index)
        return numbers.reindex(frame.index).astype("int64")


# ---------------------------------------------------------------------------
# SQLite persistence
# ---------------------------------------------------------------------------

def persist_star_schema(store: FactStore, db_path: Union[str, Path]) -> Path:
    """
    Write dim_state, dim_measure, dim_answer and fact_hcahps_state to a
    SQLite file. Existing tables are dropped and rebuilt.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    dims = store.dimensions
    facts = store.facts
    for col in (START_DATE_COL, END_DATE_COL):
        facts[col] = facts[col].dt.strftime("%Y-%m-%d")

    try:
        with closing(sqlite3.connect(str(path))) as conn:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(STAR_SCHEMA_DDL)
            dims.dim_state.to_sql("dim_state", conn, if_exists="append", index=False)
            dims.dim_measure.to_sql("dim_measure", conn, if_exists="append", index=False)
            dims.dim_answer.to_sql("dim_answer", conn, if_exists="append", index=False)
            facts[FACT_COLUMNS].to_sql(FACT_TABLE, conn, if_exists="append", index=False)
            conn.commit()
    except sqlite3.Error as exc:
        raise FactStoreError(f"Failed to persist star schema to {path}: {exc}") from exc

    logger.info("Persisted %s facts to %s", len(facts), path)
    return path


def load_star_schema(db_path: Union[str, Path]) -> FactStore:
    """Rebuild a FactStore from a SQLite file written by persist_star_schema()."""
    path = Path(db_path)
    if not path.exists():
        raise FactStoreError(f"Star schema database not found: {path}")

    try:
        with closing(sqlite3.connect(str(path))) as conn:
            dim_state = pd.read_sql("SELECT state_id, state_code FROM dim_state ORDER BY state_id", conn)
            dim_measure = pd.read_sql(
                "SELECT measure_key, measure_id, question FROM dim_measure ORDER BY measure_key", conn
            )
            dim_answer = pd.read_sql(
                "SELECT answer_key, answer_description FROM dim_answer ORDER BY answer_key", conn
            )
            facts = pd.read_sql(f"SELECT {', '.join(FACT_COLUMNS)} FROM {FACT_TABLE} ORDER BY fact_id", conn)
    except (sqlite3.Error, pd.errors.DatabaseError) as exc:
        raise FactStoreError(f"Failed to read star schema from {path}: {exc}") from exc

    dim_measure[QUESTION_COL] = dim_measure[QUESTION_COL].fillna("")
    facts[PERCENT_COL] = pd.to_numeric(facts[PERCENT_COL], errors="coerce").astype("float64")
    facts[FOOTNOTE_COL] = facts[FOOTNOTE_COL].where(facts[FOOTNOTE_COL].notna(), None)
    for col in (START_DATE_COL, END_DATE_COL):
        facts[col] = pd.to_datetime(facts[col], format="%Y-%m-%d")
    facts[FACT_ID_COL] = facts[FACT_ID_COL].astype("int64")

    dims = DimensionTables(dim_state=dim_state, dim_measure=dim_measure, dim_answer=dim_answer)
    logger.info("Loaded %s facts from %s", len(facts), path)
    return FactStore(facts, dims)
