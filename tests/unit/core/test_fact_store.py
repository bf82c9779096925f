"""Unit tests for the fact store and its window primitives."""

from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest

from hcahps_analytics.core.data_loader import frame_from_records
from hcahps_analytics.core.dimensions import build_dimensions
from hcahps_analytics.core.fact_cleaner import clean_facts
from hcahps_analytics.core.fact_store import (
    FactStore,
    FactStoreError,
    load_star_schema,
    persist_star_schema,
)
from hcahps_analytics.core.pipeline import PipelineResult


def _store(rows) -> FactStore:
    raw = frame_from_records(rows)
    dims = build_dimensions(raw)
    return FactStore(clean_facts(raw, dims).facts, dims)


def test_labelled_attaches_natural_keys(sample_result: PipelineResult) -> None:
    """Labelled facts carry state, measure, question and answer text."""
    df = sample_result.store.labelled()

    assert {"state_code", "measure_id", "question", "answer_description"} <= set(df.columns)
    assert df.loc[0, "state_code"] == "AZ"
    assert df.loc[0, "measure_id"] == "H_COMP_1"


def test_filter_by_percent_and_dimension(sample_result: PipelineResult) -> None:
    """Filters combine null-ness and natural keys."""
    store = sample_result.store

    assert len(store.filter(percent="null")) == 2
    assert len(store.filter(percent="non_null")) == 7
    assert len(store.filter(state_code="AZ")) == 3
    assert len(store.filter(percent="non_null", measure_id="H_COMP_2")) == 2
    assert len(store.filter(answer_description="Usually", state_code="TX")) == 1


def test_filter_rejects_unknown_percent_mode(sample_result: PipelineResult) -> None:
    """Only None, 'null' and 'non_null' are valid percent filters."""
    with pytest.raises(FactStoreError):
        sample_result.store.filter(percent="zero")


def test_aggregate_mean_and_population_std(make_row) -> None:
    """[100, 0] for one state and measure: average 50, population std 50."""
    store = _store(
        [
            make_row("AZ", "H_COMP_1", "Always", "100"),
            make_row("AZ", "H_COMP_1", "Always", "0"),
        ]
    )

    agg = store.aggregate(["state_code", "measure_id"])

    assert len(agg) == 1
    assert agg.loc[0, "avg"] == pytest.approx(50.0)
    assert agg.loc[0, "std_pop"] == pytest.approx(50.0)
    assert agg.loc[0, "count"] == 2
    assert agg.loc[0, "min"] == 0.0
    assert agg.loc[0, "max"] == 100.0


def test_aggregate_single_point_has_zero_std(make_row) -> None:
    """A group with one value has std 0, never NaN."""
    store = _store([make_row("AZ", "H_COMP_1", "Always", "77")])

    agg = store.aggregate(["state_code"])

    assert agg.loc[0, "std_pop"] == 0.0


def test_aggregate_drops_groups_without_numbers(make_row) -> None:
    """A state with only 'Not Available' values is not aggregated."""
    store = _store(
        [
            make_row("AZ", "H_COMP_1", "Always", "80"),
            make_row("CA", "H_COMP_1", "Always", "Not Available"),
        ]
    )

    assert list(store.aggregate(["state_code"])["state_code"]) == ["AZ"]
    kept = store.aggregate(["state_code"], non_null_only=False)
    assert list(kept["state_code"]) == ["AZ", "CA"]
    assert kept.loc[1, "count"] == 0


def test_aggregate_rejects_unknown_group_column(sample_result: PipelineResult) -> None:
    """Grouping is limited to the three natural keys."""
    with pytest.raises(FactStoreError):
        sample_result.store.aggregate(["answer_percent"])


def test_dense_rank_shares_ranks_without_gaps() -> None:
    """Ties share a rank and the next value takes the next integer."""
    frame = pd.DataFrame(
        {
            "measure_id": ["M1", "M1", "M1", "M1", "M2"],
            "state_code": ["AZ", "CA", "TX", "NV", "AZ"],
            "avg": [90.0, 90.0, 80.0, 70.0, 50.0],
        }
    )

    ranks = FactStore.dense_rank(frame, ["measure_id"], "avg", ascending=False)

    assert list(ranks) == [1, 1, 2, 3, 1]


def test_dense_rank_ascending_without_partition() -> None:
    """Without partitions the whole frame is one window."""
    frame = pd.DataFrame({"avg": [70.0, 90.0, 70.0]})

    assert list(FactStore.dense_rank(frame, [], "avg", ascending=True)) == [1, 2, 1]


def test_row_number_breaks_ties_by_natural_key() -> None:
    """Equal values are numbered by the tie breaker ascending."""
    frame = pd.DataFrame(
        {
            "state_code": ["AZ", "AZ", "AZ", "CA"],
            "measure_id": ["H_B", "H_A", "H_C", "H_A"],
            "avg": [90.0, 90.0, 50.0, 10.0],
        }
    )

    numbers = FactStore.row_number(frame, ["state_code"], "avg", ascending=False, tie_breaker=["measure_id"])

    assert list(numbers) == [2, 1, 3, 1]


def test_store_accessors_return_copies(sample_result: PipelineResult) -> None:
    """Mutating an accessor's result leaves the store unchanged."""
    store = sample_result.store
    labelled = store.labelled()
    labelled["answer_percent"] = 0.0
    facts = store.facts
    facts.drop(facts.index, inplace=True)

    assert len(store) == 9
    assert store.labelled()["answer_percent"].isna().sum() == 2


def test_store_rejects_dangling_references(sample_result: PipelineResult) -> None:
    """A fact pointing at a missing state row breaks referential integrity."""
    facts = sample_result.store.facts
    facts.loc[0, "state_id"] = 999

    with pytest.raises(FactStoreError):
        FactStore(facts, sample_result.dimensions)


def test_persist_and_load_star_schema(sample_result: PipelineResult, tmp_path: Path) -> None:
    """The SQLite layout round-trips into an equivalent store."""
    db_path = tmp_path / "warehouse" / "star.db"

    persist_star_schema(sample_result.store, db_path)
    loaded = load_star_schema(db_path)

    assert db_path.exists()
    assert len(loaded) == len(sample_result.store)
    assert loaded.dimensions.state_lookup == sample_result.dimensions.state_lookup
    original = sample_result.store.labelled()
    reloaded = loaded.labelled()
    assert reloaded["answer_percent"].isna().sum() == original["answer_percent"].isna().sum()
    assert reloaded["answer_percent"].sum() == pytest.approx(original["answer_percent"].sum())
    assert reloaded["start_date"].min() == original["start_date"].min()


def test_persist_is_repeatable(sample_result: PipelineResult, tmp_path: Path) -> None:
    """Writing twice rebuilds the tables instead of duplicating rows."""
    db_path = tmp_path / "star.db"

    persist_star_schema(sample_result.store, db_path)
    persist_star_schema(sample_result.store, db_path)

    assert len(load_star_schema(db_path)) == len(sample_result.store)


def test_load_star_schema_raises_for_missing_file(tmp_path: Path) -> None:
    """Loading from a missing database is a store error."""
    with pytest.raises(FactStoreError):
        load_star_schema(tmp_path / "nope.db")
