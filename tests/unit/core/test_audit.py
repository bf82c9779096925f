"""Unit tests for the load audit."""

from __future__ import annotations

from hcahps_analytics.core.audit import LoadAudit, build_load_audit
from hcahps_analytics.core.data_loader import frame_from_records
from hcahps_analytics.core.pipeline import PipelineResult, run_pipeline


def test_sample_load_is_consistent(sample_result: PipelineResult) -> None:
    """A clean load passes every integrity check."""
    audit = build_load_audit(sample_result)

    assert audit.is_consistent
    assert audit.problems() == []


def test_audit_table_counts(sample_result: PipelineResult) -> None:
    """Table counts match the sample batch."""
    frame = build_load_audit(sample_result).as_frame()

    assert dict(zip(frame["t"], frame["c"])) == {
        "staging": 9,
        "fact": 9,
        "skipped": 0,
        "states": 3,
        "measures": 3,
        "answers": 2,
        "null_scores": 2,
    }


def test_audit_counts_skipped_rows(make_row) -> None:
    """Skipped rows keep fact + skipped equal to staging."""
    result = run_pipeline(
        frame_from_records(
            [
                make_row("AZ", "H_COMP_1", "Always", "90"),
                make_row("", "H_COMP_1", "Always", "90"),
            ]
        )
    )

    audit = build_load_audit(result)

    assert audit.fact_rows == 1
    assert audit.skipped_rows == 1
    assert audit.blank_natural_keys == 0
    assert audit.is_consistent


def test_audit_reports_problems() -> None:
    """Broken counts show up as readable problems."""
    audit = LoadAudit(
        staging_rows=3,
        fact_rows=1,
        skipped_rows=1,
        states=1,
        measures=1,
        answers=1,
        null_scores=0,
        numeric_scores=1,
        duplicate_natural_keys=0,
        blank_natural_keys=0,
        orphan_facts=2,
        out_of_range_scores=1,
    )

    problems = audit.problems()

    assert not audit.is_consistent
    assert len(problems) == 3
    assert any("orphan" in p or "missing dimension" in p for p in problems)
