"""
Pytest fixtures: a small synthetic Batan Bay zooplankton survey with three well-separated
station groups, written to spreadsheets in tmp_path.
"""

from __future__ import annotations

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

TAXA = ["Acartia", "Oithona", "Paracalanus", "Penilia", "Oikopleura", "Lucifer"]

GROUP_PROFILES = {
    "A": [120.0, 80.0, 5.0, 0.0, 2.0, 0.0],
    "B": [3.0, 0.0, 150.0, 90.0, 0.0, 4.0],
    "C": [0.0, 5.0, 2.0, 0.0, 110.0, 140.0],
}

# Station number -> true group
STATION_GROUPS = {i: "ABC"[(i - 1) // 4] for i in range(1, 13)}


@pytest.fixture
def survey_frames():
    """(environment sheet, long composition sheet) as raw DataFrames with spreadsheet headers."""
    rng = np.random.default_rng(7)
    env_rows = []
    zoo_rows = []
    for st, grp in STATION_GROUPS.items():
        date = pd.Timestamp(2024, 3, st)
        gi = "ABC".index(grp)
        env_rows.append({
            "Station": f"Station {st}",
            "Date": date,
            "Temperature": 25.0 + 3.0 * gi + rng.normal(0, 0.2),
            "Salinity": 30.0 + rng.normal(0, 1.0),
            "DO": np.nan if st == 5 else 5.0 + rng.normal(0, 0.3),
            "Notes": "ok",
        })
        for taxon, base in zip(TAXA, GROUP_PROFILES[grp]):
            if base <= 0:
                continue
            zoo_rows.append({
                "Station": f"Station {st}",
                "Date": date,
                "Taxon": taxon,
                "Abundance (ind/m3)": round(base * rng.uniform(0.8, 1.2), 2),
            })
    return pd.DataFrame(env_rows), pd.DataFrame(zoo_rows)


@pytest.fixture
def survey_xlsx(tmp_path, survey_frames):
    env, zoo = survey_frames
    env_path = tmp_path / "environmental_station_data.xlsx"
    zoo_path = tmp_path / "zooplankton_composition.xlsx"
    env.to_excel(env_path, index=False)
    zoo.to_excel(zoo_path, index=False)
    return str(env_path), str(zoo_path)


@pytest.fixture
def true_groups():
    """True group per renamed station label."""
    return {f"St{st}": grp for st, grp in STATION_GROUPS.items()}
