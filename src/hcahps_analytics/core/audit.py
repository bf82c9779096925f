from __future__ import annotations

from dataclasses import dataclass
from typing import List

import pandas as pd

from hcahps_analytics.core.data_loader import ANSWER_COL, MEASURE_ID_COL
from hcahps_analytics.core.dimensions import (
    ANSWER_KEY_COL,
    MEASURE_KEY_COL,
    STATE_CODE_COL,
    STATE_ID_COL,
)
from hcahps_analytics.core.fact_cleaner import PERCENT_COL
from hcahps_analytics.core.pipeline import PipelineResult


@dataclass
class LoadAudit:
    """
    Row counts and integrity checks for one pipeline run.

    These are the numbers a reviewer compares after a load: staging vs fact
    rows, dimension sizes, null scores, plus the checks that must be zero for
    the star schema to be trusted.
    """
    staging_rows: int
    fact_rows: int
    skipped_rows: int
    states: int
    measures: int
    answers: int
    null_scores: int
    numeric_scores: int

    duplicate_natural_keys: int
    blank_natural_keys: int
    orphan_facts: int
    out_of_range_scores: int

    @property
    def is_consistent(self) -> bool:
        return (
            self.fact_rows + self.skipped_rows == self.staging_rows
            and self.null_scores + self.numeric_scores == self.fact_rows
            and self.duplicate_natural_keys == 0
            and self.blank_natural_keys == 0
            and self.orphan_facts == 0
            and self.out_of_range_scores == 0
        )

    def as_frame(self) -> pd.DataFrame:
        """Table-count view (t, c) of the load."""
        rows = [
            ("staging", self.staging_rows),
            ("fact", self.fact_rows),
            ("skipped", self.skipped_rows),
            ("states", self.states),
            ("measures", self.measures),
            ("answers", self.answers),
            ("null_scores", self.null_scores),
        ]
        return pd.DataFrame(rows, columns=["t", "c"])

    def problems(self) -> List[str]:
        issues: List[str] = []
        if self.fact_rows + self.skipped_rows != self.staging_rows:
            issues.append(
                f"fact rows ({self.fact_rows}) + skipped ({self.skipped_rows}) != staging rows ({self.staging_rows})"
            )
        if self.duplicate_natural_keys:
            issues.append(f"{self.duplicate_natural_keys} duplicate natural keys in dimensions")
        if self.blank_natural_keys:
            issues.append(f"{self.blank_natural_keys} blank natural keys in dimensions")
        if self.orphan_facts:
            issues.append(f"{self.orphan_facts} facts reference missing dimension rows")
        if self.out_of_range_scores:
            issues.append(f"{self.out_of_range_scores} scores outside 0-100")
        return issues


def _dupes(series: pd.Series) -> int:
    return int(series.duplicated().sum())


def _blanks(series: pd.Series) -> int:
    return int((series.fillna("").astype(str).str.strip() == "").sum())


def build_load_audit(result: PipelineResult) -> LoadAudit:
    """Compute the load audit for a finished pipeline run."""
    dims = result.dimensions
    facts = result.store.facts

    natural_keys = [
        dims.dim_state[STATE_CODE_COL],
        dims.dim_measure[MEASURE_ID_COL],
        dims.dim_answer[ANSWER_COL],
    ]

    orphans = (
        ~facts[STATE_ID_COL].isin(dims.dim_state[STATE_ID_COL])
        | ~facts[MEASURE_KEY_COL].isin(dims.dim_measure[MEASURE_KEY_COL])
        | ~facts[ANSWER_KEY_COL].isin(dims.dim_answer[ANSWER_KEY_COL])
        | facts[[STATE_ID_COL, MEASURE_KEY_COL, ANSWER_KEY_COL]].isna().any(axis=1)
    )

    scores = facts[PERCENT_COL]
    out_of_range = scores.notna() & ((scores < 0) | (scores > 100))

    return LoadAudit(
        staging_rows=result.report.total_input_rows,
        fact_rows=len(facts),
        skipped_rows=result.report.skipped_rows,
        states=len(dims.dim_state),
        measures=len(dims.dim_measure),
        answers=len(dims.dim_answer),
        null_scores=int(scores.isna().sum()),
        numeric_scores=int(scores.notna().sum()),
        duplicate_natural_keys=sum(_dupes(s) for s in natural_keys),
        blank_natural_keys=sum(_blanks(s) for s in natural_keys),
        orphan_facts=int(orphans.sum()),
        out_of_range_scores=int(out_of_range.sum()),
    )
