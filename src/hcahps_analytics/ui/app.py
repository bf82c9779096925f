from __future__ import annotations

import logging
import time
import traceback
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st

from hcahps_analytics.config import (
    APP_NAME,
    APP_VERSION,
    DEFAULT_GAP_MEASURES,
    DEFAULT_PARTITION_K,
    DEFAULT_TOP_N,
    HCAHPS_CSV_PATH,
    HCAHPS_CSV_URL,
    HCAHPS_DB_PATH,
    HIGH_SCORE_THRESHOLD,
    LOG_LEVEL,
)
from hcahps_analytics.core.analytics import (
    ANALYTICAL_QUESTIONS,
    AnalyticsError,
    average_ranking,
    measure_gap,
    partitioned_ranking,
    run_question,
    threshold_share,
)
from hcahps_analytics.core.audit import build_load_audit
from hcahps_analytics.core.data_loader import (
    DataLoaderError,
    load_raw_buffer,
    load_raw_observations,
)
from hcahps_analytics.core.fact_store import FactStoreError, persist_star_schema
from hcahps_analytics.core.pipeline import PipelineResult, run_pipeline

logger = logging.getLogger(__name__)

RESULT_KEY = "pipeline_result"


def _render_source_loader() -> None:
    with st.expander("Load raw export", expanded=True):
        mode = st.radio("Source", options=["Local path", "URL", "Upload"], horizontal=True)

        raw: Optional[pd.DataFrame] = None
        path_value = ""
        url_value = ""
        upload = None

        if mode == "Local path":
            path_value = st.text_input("CSV path:", value=str(HCAHPS_CSV_PATH))
        elif mode == "URL":
            url_value = st.text_input("CSV URL:", value=HCAHPS_CSV_URL)
        else:
            upload = st.file_uploader("CSV export", type=["csv"])

        if not st.button("Run pipeline", key="run_pipeline_btn"):
            return

        status = st.status("Loading raw export…", expanded=True)
        t0 = time.perf_counter()
        try:
            if mode == "Upload":
                if upload is None:
                    raise DataLoaderError("Choose a CSV file to upload first.")
                raw = load_raw_buffer(upload)
            else:
                raw = load_raw_observations(path_value if mode == "Local path" else url_value)

            status.write(f"Loaded {len(raw)} raw rows in {time.perf_counter() - t0:0.2f}s")
            status.update(label="Building star schema…", state="running")

            result = run_pipeline(raw)
            st.session_state[RESULT_KEY] = result

            status.write(result.report.summary())
            status.update(label="Done.", state="complete")

        except DataLoaderError as err:
            status.update(label="Load failed.", state="error")
            st.error(f"Could not load raw export: {err}")

        except Exception as e:
            status.update(label="Unexpected error.", state="error")
            st.error("Unexpected error while running the pipeline.")
            st.code(repr(e))
            st.text_area("Traceback", value=traceback.format_exc(), height=260)


def _render_run_report(result: PipelineResult) -> None:
    with st.expander("Run report", expanded=True):
        report = result.report
        c1, c2, c3 = st.columns(3)
        c1.metric("Input rows", report.total_input_rows)
        c2.metric("Cleaned facts", report.cleaned_facts)
        c3.metric("Skipped rows", report.skipped_rows)

        if report.skipped_rows:
            st.write("Skipped rows by reason:")
            st.json(report.skipped_by_reason)
            st.dataframe(report.skipped_frame(), use_container_width=True)

        audit = build_load_audit(result)
        st.write("Load audit:")
        st.dataframe(audit.as_frame(), use_container_width=True)
        if audit.is_consistent:
            st.success("Referential integrity and row accounting checks passed.")
        else:
            for issue in audit.problems():
                st.warning(issue)


def _question_params(code: str) -> Dict[str, Any]:
    """Widgets for the parameters a question's primitive accepts."""
    question = ANALYTICAL_QUESTIONS[code]
    params: Dict[str, Any] = {}

    if question.run in (average_ranking, threshold_share) and "limit" in question.defaults:
        params["limit"] = int(
            st.number_input("Row limit", min_value=1, value=int(question.defaults.get("limit", DEFAULT_TOP_N)))
        )
    if question.run is threshold_share:
        params["threshold"] = float(
            st.number_input("High score threshold", min_value=0.0, max_value=100.0, value=HIGH_SCORE_THRESHOLD)
        )
    if question.run is partitioned_ranking:
        params["k"] = int(st.number_input("Ranks per measure", min_value=1, value=DEFAULT_PARTITION_K))
    if question.run is measure_gap:
        measures = _result_measures()
        if not measures:
            st.warning("No measures loaded; using the configured default pair.")
            return params
        m1_default, m2_default = DEFAULT_GAP_MEASURES
        params["measure_1"] = st.selectbox(
            "Measure 1", options=measures, index=measures.index(m1_default) if m1_default in measures else 0
        )
        params["measure_2"] = st.selectbox(
            "Measure 2",
            options=measures,
            index=measures.index(m2_default) if m2_default in measures else min(1, len(measures) - 1),
        )
    return params


def _result_measures() -> List[str]:
    result: Optional[PipelineResult] = st.session_state.get(RESULT_KEY)
    if result is None:
        return []
    return sorted(result.dimensions.measure_lookup)


def _render_question_runner(result: PipelineResult) -> None:
    with st.expander("Analytical questions", expanded=True):
        code = st.selectbox(
            "Question",
            options=list(ANALYTICAL_QUESTIONS),
            format_func=lambda k: f"{k}) {ANALYTICAL_QUESTIONS[k].title}",
        )
        params = _question_params(code)

        try:
            table = run_question(result.store, code, **params)
        except AnalyticsError as err:
            st.error(f"Query failed: {err}")
            return

        st.write(f"{len(table)} rows")
        st.dataframe(table, use_container_width=True)


def _render_persist(result: PipelineResult) -> None:
    with st.expander("Persist star schema (SQLite)", expanded=False):
        db_path = st.text_input("Database file:", value=str(HCAHPS_DB_PATH))
        if st.button("Write tables", key="persist_btn"):
            try:
                path = persist_star_schema(result.store, db_path)
                st.success(f"Wrote dim_state, dim_measure, dim_answer and fact_hcahps_state to {path}")
            except FactStoreError as err:
                st.error(str(err))


def run_app() -> None:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    st.set_page_config(page_title=APP_NAME, page_icon="📊", layout="wide")
    st.title(APP_NAME)
    st.caption(f"Version {APP_VERSION}")

    _render_source_loader()

    result: Optional[PipelineResult] = st.session_state.get(RESULT_KEY)
    if result is None:
        st.info("Load a raw export to build the star schema.")
        return

    _render_run_report(result)
    _render_question_runner(result)
    _render_persist(result)
