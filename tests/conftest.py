"""Shared fixtures for the test suite."""

from __future__ import annotations

from typing import Any, Callable, Dict, List

import pandas as pd
import pytest

from hcahps_analytics.core.data_loader import frame_from_records
from hcahps_analytics.core.pipeline import PipelineResult, run_pipeline

QUESTIONS = {
    "H_COMP_1": "Patients who reported that their nurses always communicated well",
    "H_COMP_2": "Patients who reported that their doctors always communicated well",
    "H_CLEAN": "Patients who reported that their room and bathroom were always clean",
}


def _row(
    state: str,
    measure: str,
    answer: str,
    pct: str,
    start: str = "01/01/2023",
    end: str = "12/31/2023",
    footnote: str = "",
) -> Dict[str, Any]:
    return {
        "state": state,
        "measure_id": measure,
        "question": QUESTIONS.get(measure, f"Question for {measure}"),
        "answer_description": answer,
        "answer_percent_raw": pct,
        "footnote": footnote,
        "start_date": start,
        "end_date": end,
    }


@pytest.fixture
def make_row() -> Callable[..., Dict[str, Any]]:
    """Factory for one raw row in staging column names."""
    return _row


@pytest.fixture
def sample_rows() -> List[Dict[str, Any]]:
    """Three states x three measures, two 'Not Available' scores."""
    return [
        _row("AZ", "H_COMP_1", "Always", "90"),
        _row("CA", "H_COMP_1", "Always", "70"),
        _row("TX", "H_COMP_1", "Always", "80"),
        _row("AZ", "H_COMP_2", "Always", "60"),
        _row("CA", "H_COMP_2", "Always", "75"),
        _row("TX", "H_COMP_2", "Always", "Not Available", footnote="5"),
        _row("AZ", "H_CLEAN", "Usually", "20"),
        _row("CA", "H_CLEAN", "Usually", "Not Available"),
        _row("TX", "H_CLEAN", "Usually", "85", start="07/01/2022", end="06/30/2024"),
    ]


@pytest.fixture
def sample_raw(sample_rows: List[Dict[str, Any]]) -> pd.DataFrame:
    return frame_from_records(sample_rows)


@pytest.fixture
def sample_result(sample_raw: pd.DataFrame) -> PipelineResult:
    return run_pipeline(sample_raw)
