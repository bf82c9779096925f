from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Union

import pandas as pd

from hcahps_analytics.core.data_loader import load_raw_observations, normalize_raw_columns
from hcahps_analytics.core.dimensions import DimensionTables, build_dimensions
from hcahps_analytics.core.fact_cleaner import SkippedRow, clean_facts
from hcahps_analytics.core.fact_store import FactStore

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """What happened to every raw row of one run."""
    total_input_rows: int
    cleaned_facts: int
    skipped_rows: int
    skipped_by_reason: Dict[str, int]
    skipped: List[SkippedRow]
    elapsed_seconds: float = 0.0

    def skipped_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(s.row_number, s.reason, s.detail) for s in self.skipped],
            columns=["row_number", "reason", "detail"],
        )

    def summary(self) -> str:
        reasons = ", ".join(f"{k}={v}" for k, v in sorted(self.skipped_by_reason.items())) or "none"
        return (
            f"input rows={self.total_input_rows}, cleaned facts={self.cleaned_facts}, "
            f"skipped rows={self.skipped_rows} ({reasons})"
        )


@dataclass
class PipelineResult:
    raw: pd.DataFrame
    dimensions: DimensionTables
    store: FactStore
    report: RunReport


def run_pipeline(raw: pd.DataFrame) -> PipelineResult:
    """
    raw rows -> dimensions -> cleaned facts -> FactStore.

    Dimensions are built from the whole batch before any fact is cleaned.
    Only structurally broken input (missing columns) raises; bad rows are
    reported in the RunReport.
    """
    t0 = time.perf_counter()

    staged = normalize_raw_columns(raw)
    logger.info("Running pipeline over %s raw rows", len(staged))

    dims = build_dimensions(staged)
    cleaned = clean_facts(staged, dims)
    store = FactStore(cleaned.facts, dims)

    report = RunReport(
        total_input_rows=len(staged),
        cleaned_facts=len(store),
        skipped_rows=len(cleaned.skipped),
        skipped_by_reason=cleaned.skipped_by_reason,
        skipped=cleaned.skipped,
        elapsed_seconds=time.perf_counter() - t0,
    )
    logger.info("Pipeline finished in %.2fs: %s", report.elapsed_seconds, report.summary())

    return PipelineResult(raw=staged, dimensions=dims, store=store, report=report)


def run_pipeline_from_source(source: Union[str, Path, None] = None) -> PipelineResult:
    """Load the raw export (path, URL or configured default) and run the pipeline."""
    return run_pipeline(load_raw_observations(source))
