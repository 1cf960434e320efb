"""
Tests for the long-to-wide pivot and the community/environment join.
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

import zooplankton_nmds_envfit_clusters as zn


@pytest.fixture
def long_records():
    return pd.DataFrame({
        "station": ["St1", "St1", "St1", "St2", "St3", "St3", "St4", "St4", "St10"],
        "taxon": ["Acartia", "Acartia", "Oithona", "Acartia", "Oithona", "Rare", "Acartia", "Oithona", "Acartia"],
        "abundance": [10.0, 5.0, 3.0, 0.0, 7.0, 1.0, 2.0, 2.0, 4.0],
    })


def test_pivot_community_sums_fills_and_drops(long_records):
    comm = zn.pivot_community(long_records, ["station"], min_occurrence=2)

    assert sorted(comm.index) == ["St1", "St10", "St3", "St4"]
    assert list(comm.columns) == ["Acartia", "Oithona"]
    assert comm.loc["St1", "Acartia"] == 15.0
    assert comm.loc["St3", "Acartia"] == 0.0
    assert "St2" not in comm.index


def test_pivot_community_keeps_single_occurrence_by_default(long_records):
    comm = zn.pivot_community(long_records, ["station"], min_occurrence=1)
    assert "Rare" in comm.columns


def test_join_environment_aligns_and_orders(long_records):
    comm = zn.pivot_community(long_records, ["station"], min_occurrence=2)
    env_raw = pd.DataFrame({
        "station": ["St10", "St1", "St3", "St3", "St99"],
        "Temp": [30.0, 25.0, 27.0, 29.0, 20.0],
    })
    env = zn.aggregate_environment(env_raw, ["station"], ["Temp"])

    c, e, meta = zn.join_environment(comm, env, ["station"])

    assert c.index.tolist() == ["St1", "St3", "St10"]
    assert e.index.tolist() == c.index.tolist()
    assert meta.index.tolist() == c.index.tolist()
    assert e.loc["St3", "Temp"] == pytest.approx(28.0)
    assert c.loc["St10", "Acartia"] == 4.0
    assert meta["station"].tolist() == ["St1", "St3", "St10"]
    assert meta["date"].isna().all()


def test_join_environment_labels_repeated_stations_with_dates():
    d1, d2 = pd.Timestamp("2024-01-15"), pd.Timestamp("2024-02-15")
    long = pd.DataFrame({
        "station": ["St1", "St1", "St2", "St2"],
        "date": [d2, d1, d1, d1],
        "taxon": ["Acartia", "Acartia", "Oithona", "Acartia"],
        "abundance": [4.0, 6.0, 3.0, 1.0],
    })
    env_raw = pd.DataFrame({
        "station": ["St1", "St1", "St2", "St2"],
        "date": [d1, d2, d1, d1],
        "Temp": [26.0, 28.0, 27.0, 27.5],
    })
    keys = zn.sample_keys(env_raw, long)
    comm = zn.pivot_community(long, keys)
    env = zn.aggregate_environment(env_raw, keys, ["Temp"])

    c, e, meta = zn.join_environment(comm, env, keys)

    assert c.index.tolist() == ["St1 2024-01-15", "St1 2024-02-15", "St2"]
    assert c.loc["St1 2024-01-15", "Acartia"] == 6.0
    assert e.loc["St1 2024-02-15", "Temp"] == 28.0
    assert e.loc["St2", "Temp"] == pytest.approx(27.25)
    assert meta.loc["St2", "date"] == d1


def test_join_environment_without_shared_samples_fails(long_records):
    comm = zn.pivot_community(long_records, ["station"])
    env = zn.aggregate_environment(pd.DataFrame({"station": ["X"], "Temp": [1.0]}), ["station"], ["Temp"])
    with pytest.raises(ValueError, match="No samples shared"):
        zn.join_environment(comm, env, ["station"])


def test_relative_composition_rows_sum_to_one(long_records):
    comm = zn.pivot_community(long_records, ["station"])
    rel = zn.relative_composition(comm, top_n=1)
    assert list(rel.columns) == ["Acartia", "Other"]
    np.testing.assert_allclose(rel.sum(axis=1).to_numpy(), 1.0)


def test_pivot_community_reports_undated_records(capsys):
    long = pd.DataFrame({
        "station": ["St1", "St2", "St3", "St3"],
        "date": [pd.Timestamp("2024-03-01"), pd.Timestamp("2024-03-01"), pd.NaT, pd.NaT],
        "taxon": ["Acartia", "Oithona", "Acartia", "Oithona"],
        "abundance": [4.0, 3.0, 2.0, 1.0],
    })
    comm = zn.pivot_community(long, ["station", "date"])

    assert comm.index.get_level_values("station").tolist() == ["St1", "St2"]
    out = capsys.readouterr().out
    assert "Dropped 2 composition records" in out
    assert "St3" in out


def test_unparseable_composition_date_is_dropped_and_reported(tmp_path, survey_frames, capsys):
    env, zoo = survey_frames
    zoo = zoo.astype({"Date": object})
    zoo.loc[zoo["Station"] == "Station 3", "Date"] = "not a date"
    env_path = tmp_path / "env.xlsx"
    zoo_path = tmp_path / "zoo.xlsx"
    env.to_excel(env_path, index=False)
    zoo.to_excel(zoo_path, index=False)

    env_raw, found = zn.load_environment(str(env_path))
    with pytest.warns(UserWarning, match="could not be parsed"):
        long = zn.load_zooplankton(str(zoo_path))
    assert long.loc[long["station"] == "St3", "date"].isna().all()

    keys = zn.sample_keys(env_raw, long)
    assert keys == ["station", "date"]
    comm = zn.pivot_community(long, keys)
    c, e, meta = zn.join_environment(comm, zn.aggregate_environment(env_raw, keys, found), keys)

    assert "St3" not in c.index
    assert c.index.tolist() == [f"St{i}" for i in range(1, 13) if i != 3]
    assert e.index.tolist() == c.index.tolist()
    out = capsys.readouterr().out
    assert "without a usable station/date: ['St3']" in out
    assert "Environmental rows without community data (dropped)" in out
