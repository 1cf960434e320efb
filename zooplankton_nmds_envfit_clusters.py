# -*- coding: utf-8 -*-
# Copyright Ahmed Eladawy

"""
Zooplankton community ordination for Batan Bay (v1.3).

This script builds the NMDS figures and exports all analysis tables.
Steps:
- Reads the environmental station sheet and the zooplankton composition sheet.
- Renames stations, pivots the composition records to a sample x taxon matrix and joins the
  environmental covariates on station (and date, when both sheets carry one).
- Runs NMDS on Bray-Curtis dissimilarities and rotates the solution to principal axes.
- Fits environmental vectors onto the ordination (envfit) with a permutation test.
- Clusters the samples (UPGMA on the same dissimilarities) and outlines each cluster by its
  convex hull in ordination space.

Main outputs:
- {OUT_DIR}/figures/Zooplankton_NMDS_MAIN_v1_3_k{N_CLUSTERS}.png/pdf
- {OUT_DIR}/figures/Zooplankton_NMDS_SUPP_v1_3_k{N_CLUSTERS}.png/pdf
- {OUT_DIR}/figures/Zooplankton_NMDS_biplot_v1_3_k{N_CLUSTERS}.png/pdf
- {OUT_DIR}/tables/nmds_scores.csv, envfit_vectors.csv, envfit_arrows.csv, hull_vertices.csv
- Community, environment, cluster, silhouette, Shepard and cluster-profile tables.
"""

import os
import re
import warnings

import numpy as np
import pandas as pd

from scipy.spatial import ConvexHull, QhullError
from scipy.spatial.distance import pdist, squareform
from scipy.cluster.hierarchy import linkage, fcluster, leaves_list, cophenet, dendrogram

from sklearn.manifold import MDS
from sklearn.decomposition import PCA
from sklearn.isotonic import IsotonicRegression
from sklearn.metrics import silhouette_score

import matplotlib.pyplot as plt
from matplotlib.colors import to_hex

warnings.filterwarnings("ignore", category=FutureWarning)


# =============================================================================
# Configuration
# =============================================================================
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.path.join(BASE_DIR, "data", "plankton")

ENV_XLSX = os.path.join(DATA_DIR, "environmental_station_data.xlsx")
ZOO_XLSX = os.path.join(DATA_DIR, "zooplankton_composition.xlsx")
ENV_SHEET = 0
ZOO_SHEET = 0

OUT_DIR = os.path.join(BASE_DIR, "outputs", "zooplankton_nmds")
FIG_DIR = os.path.join(OUT_DIR, "figures")
TAB_DIR = os.path.join(OUT_DIR, "tables")

RANDOM_SEED = 42
VERSION_TAG = "v1_3"
FIG_DPI = 450

# Header candidates (matched case-insensitively, first hit wins)
STATION_COLS = ["Station", "Stn", "Station ID", "Site", "Comment"]
DATE_COLS = ["Date", "Sampling date", "Sampling Date", "Survey date"]
TAXON_COLS = ["Taxon", "Taxa", "Species", "Taxonomic group", "Group"]
ABUNDANCE_COLS = ["Abundance (ind/m3)", "Abundance", "Density (ind/m3)", "Density", "ind/m3", "Count"]
# Wide composition sheets: columns that are never taxa
NON_TAXON_COLS = ["Total", "Total abundance", "Sum", "Sample volume", "Volume", "Volume filtered (m3)",
                  "Net depth", "Depth", "Time", "Latitude", "Longitude", "Lat", "Lon", "Notes", "Remarks"]

ENV_VARIABLES = {
    "Temp":  ["Temp. [degC]", "Temperature", "Temp", "Water temperature", "WT"],
    "Sal":   ["Sal.", "Salinity", "Sal"],
    "DO":    ["DO [mg/l]", "DO", "Dissolved oxygen", "Oxygen"],
    "pH":    ["pH"],
    "Chla":  ["Chl-a [µg/l]", "Chl-a", "Chla", "Chlorophyll"],
    "Turb":  ["Turb. [FTU]", "Turbidity", "Turb"],
    "Depth": ["Depth [m]", "Depth", "Station depth"],
}

# Raw station codes -> labels used on the figures
STATION_RENAME = {
    "Station 1": "St1", "Station 2": "St2", "Station 3": "St3", "Station 4": "St4",
    "Station 5": "St5", "Station 6": "St6", "Station 7": "St7", "Station 8": "St8",
    "Station 9": "St9", "Station 10": "St10", "Station 11": "St11", "Station 12": "St12",
}

# Community matrix
MIN_TAXON_OCCURRENCE = 1
COMMUNITY_TRANSFORM = "auto"  # auto | none | sqrt | wisconsin | sqrt_wisconsin | hellinger

# NMDS
NMDS_K = 2
NMDS_N_INIT = 20
NMDS_MAX_ITER = 500

# envfit
ENVFIT_PERMUTATIONS = 999
ARROW_P_MAX = 0.05   # None draws every fitted variable
ARROW_FILL = 0.75
ARROW_LABEL_OFFSET = 1.12

# Clustering
LINKAGE_METHOD = "average"
LINKAGE_NAMES = {"average": "UPGMA", "ward": "Ward", "complete": "Complete-linkage", "single": "Single-linkage"}
N_CLUSTERS = 3
K_RANGE = range(2, 8)

# Composition panels
TOP_TAXA = 8


# =============================================================================
# Plot style
# =============================================================================

def set_style():
    plt.rcParams.update({
        "font.size": 11.5,
        "axes.titlesize": 13,
        "axes.labelsize": 11.5,
        "xtick.labelsize": 10.5,
        "ytick.labelsize": 10.5,
        "legend.fontsize": 10.5,
        "figure.titlesize": 15,
        "axes.linewidth": 1.0,
        "pdf.fonttype": 42,
        "ps.fonttype": 42,
    })


# =============================================================================
# Helper functions
# =============================================================================

def ensure_dirs(out_dir=None):
    if out_dir is None:
        out_dir, fig_dir, tab_dir = OUT_DIR, FIG_DIR, TAB_DIR
    else:
        fig_dir = os.path.join(out_dir, "figures")
        tab_dir = os.path.join(out_dir, "tables")
    os.makedirs(out_dir, exist_ok=True)
    os.makedirs(fig_dir, exist_ok=True)
    os.makedirs(tab_dir, exist_ok=True)
    return fig_dir, tab_dir

def find_col(df, candidates):
    cols = {str(c).strip().lower(): c for c in df.columns}
    for cand in candidates:
        if cand.lower() in cols:
            return cols[cand.lower()]
    return None

def station_label(raw, mapping=None):
    """Clean a raw station cell and apply the display rename."""
    if pd.isna(raw):
        return None
    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)
    s = re.sub(r"\s+", " ", str(raw).strip())
    if mapping:
        return mapping.get(s, s)
    return s

def station_sort_key(label):
    # St2 before St10
    s = str(label)
    m = re.search(r"(\d+)", s)
    if m is None:
        return (s.lower(), -1, "")
    return (s[:m.start()].lower(), int(m.group(1)), s[m.end():].lower())

def _date_key(d):
    if d is None or pd.isna(d):
        return (1, 0)
    return (0, pd.Timestamp(d).value)

def parse_dates(values):
    dates = pd.to_datetime(values, errors="coerce")
    n_bad = int(dates.isna().sum() - pd.isna(values).sum())
    if n_bad > 0:
        warnings.warn(f"{n_bad} date cell(s) could not be parsed and were set to NaT", UserWarning)
    return dates.dt.normalize()

def stress_label(stress):
    if not np.isfinite(stress):
        return "undefined"
    if stress < 0.05:
        return "excellent"
    if stress < 0.1:
        return "good"
    if stress < 0.2:
        return "fair"
    return "poor"

def cluster_colors(n_clusters):
    cmap = plt.get_cmap("viridis", max(n_clusters, 2))
    return {c: cmap(i) for i, c in enumerate(range(1, n_clusters + 1))}

def heatmap_with_text(ax, mat, vmin=-1.5, vmax=1.5, fmt="{:+.2f}"):
    im = ax.imshow(mat, aspect="auto", vmin=vmin, vmax=vmax, cmap="RdBu_r")
    for i in range(mat.shape[0]):
        for j in range(mat.shape[1]):
            if np.isfinite(mat[i, j]):
                ax.text(j, i, fmt.format(mat[i, j]), ha="center", va="center",
                        fontsize=9.5, color="white" if abs(mat[i, j]) > 0.9 else "black")
    return im

def significance_mark(p):
    if not np.isfinite(p):
        return ""
    if p < 0.001:
        return "***"
    if p < 0.01:
        return "**"
    if p < 0.05:
        return "*"
    return ""


# =============================================================================
# Load and prepare data
# =============================================================================

def load_environment(path=ENV_XLSX, sheet=ENV_SHEET, variables=None, rename=None):
    """
    Read the environmental station sheet.

    Returns a table with 'station', optional 'date', and one numeric column per environmental
    variable that could be found (named by the keys of `variables`).
    """
    variables = ENV_VARIABLES if variables is None else variables
    rename = STATION_RENAME if rename is None else rename

    raw = pd.read_excel(path, sheet_name=sheet)

    station_col = find_col(raw, STATION_COLS)
    if station_col is None:
        raise ValueError(f"Environmental sheet must include a station column (one of {STATION_COLS}).")
    date_col = find_col(raw, DATE_COLS)

    env = pd.DataFrame({"station": raw[station_col].map(lambda v: station_label(v, rename))})
    if date_col is not None:
        env["date"] = parse_dates(raw[date_col])

    found = []
    for name, candidates in variables.items():
        col = find_col(raw, candidates)
        if col is None:
            continue
        env[name] = pd.to_numeric(raw[col], errors="coerce")
        found.append(name)

    if not found:
        raise ValueError("No environmental variable columns found in the station sheet (check headers).")

    env = env.dropna(subset=["station"]).reset_index(drop=True)
    return env, found

def load_zooplankton(path=ZOO_XLSX, sheet=ZOO_SHEET, rename=None):
    """
    Read the zooplankton composition sheet as long records (station, [date], taxon, abundance).

    A wide sheet (one column per taxon) is melted to the same long form.
    """
    rename = STATION_RENAME if rename is None else rename

    raw = pd.read_excel(path, sheet_name=sheet)

    station_col = find_col(raw, STATION_COLS)
    if station_col is None:
        raise ValueError(f"Composition sheet must include a station column (one of {STATION_COLS}).")
    date_col = find_col(raw, DATE_COLS)
    taxon_col = find_col(raw, TAXON_COLS)
    abund_col = find_col(raw, ABUNDANCE_COLS)

    key_cols = [station_col] + ([date_col] if date_col is not None else [])

    if taxon_col is not None and abund_col is not None:
        long = raw[key_cols + [taxon_col, abund_col]].copy()
        long.columns = ["station"] + (["date"] if date_col is not None else []) + ["taxon", "abundance"]
    else:
        skip = {c.lower() for c in NON_TAXON_COLS}
        other = [c for c in raw.columns if c not in key_cols]
        taxa_cols = [c for c in other if str(c).strip().lower() not in skip]
        if len(taxa_cols) < len(other):
            print(f"Wide composition sheet: ignored non-taxon columns {[c for c in other if c not in taxa_cols]}")
        if not taxa_cols:
            raise ValueError("Composition sheet has neither taxon/abundance columns nor taxon columns.")
        long = raw.melt(id_vars=key_cols, value_vars=taxa_cols, var_name="taxon", value_name="abundance")
        long = long.rename(columns={station_col: "station", **({date_col: "date"} if date_col else {})})

    long["station"] = long["station"].map(lambda v: station_label(v, rename))
    if "date" in long.columns:
        long["date"] = parse_dates(long["date"])
    long = long.dropna(subset=["taxon"])
    long["taxon"] = long["taxon"].astype(str).str.strip()
    long["abundance"] = pd.to_numeric(long["abundance"], errors="coerce")

    long = long.dropna(subset=["station", "abundance"])
    long = long[long["taxon"] != ""].reset_index(drop=True)

    if (long["abundance"] < 0).any():
        bad = long.loc[long["abundance"] < 0, ["station", "taxon", "abundance"]]
        raise ValueError(f"Negative abundances in composition sheet:\n{bad.to_string(index=False)}")
    return long

def sample_keys(env, zoo):
    """Station, plus date when both sheets carry usable dates."""
    if ("date" in env.columns and "date" in zoo.columns
            and env["date"].notna().any() and zoo["date"].notna().any()):
        return ["station", "date"]
    return ["station"]

def pivot_community(long, keys, min_occurrence=MIN_TAXON_OCCURRENCE):
    undated = long[keys].isna().any(axis=1)
    if undated.any():
        stations = sorted(long.loc[undated, "station"].dropna().unique().tolist(), key=station_sort_key)
        print(f"Dropped {int(undated.sum())} composition records without a usable {'/'.join(keys)}: {stations}")
        long = long.loc[~undated]

    wide = long.pivot_table(index=keys, columns="taxon", values="abundance",
                            aggfunc="sum", fill_value=0.0)
    wide.columns.name = None
    wide = wide.astype(float)

    occ = (wide > 0).sum(axis=0)
    rare = occ.index[occ < min_occurrence].tolist()
    if rare:
        print(f"Dropped {len(rare)} taxa present in fewer than {min_occurrence} samples")
    wide = wide.loc[:, occ >= min_occurrence]

    totals = wide.sum(axis=1)
    empty = wide.index[totals <= 0].tolist()
    if empty:
        print(f"Dropped {len(empty)} samples with zero total abundance: {empty}")
    wide = wide.loc[totals > 0]
    return wide

def aggregate_environment(env, keys, variables):
    return env.groupby(keys, dropna=False)[variables].mean()

def join_environment(community, env, keys):
    """
    Align the community matrix and the environmental table on the sample keys.

    Returns (community, environment, meta) sharing one sample-label index, ordered by station
    then date.
    """
    common = community.index.intersection(env.index)

    only_comm = community.index.difference(env.index).tolist()
    only_env = env.index.difference(community.index).tolist()
    if only_comm:
        print(f"Samples without environmental data (dropped): {only_comm}")
    if only_env:
        print(f"Environmental rows without community data (dropped): {only_env}")
    if len(common) == 0:
        raise ValueError("No samples shared between the composition and environmental sheets.")

    meta = common.to_frame(index=False)[keys]
    if "date" not in meta.columns:
        meta["date"] = pd.NaT

    order = sorted(range(len(meta)),
                   key=lambda i: (station_sort_key(meta.at[i, "station"]), _date_key(meta.at[i, "date"])))
    meta = meta.iloc[order].reset_index(drop=True)
    ordered = common[order]

    repeated = meta["station"].duplicated(keep=False)
    labels = []
    for st, d, rep in zip(meta["station"], meta["date"], repeated):
        if rep:
            labels.append(f"{st} {pd.Timestamp(d):%Y-%m-%d}")
        else:
            labels.append(st)
    meta["sample"] = labels

    comm = community.loc[ordered].copy()
    envj = env.loc[ordered].copy()
    comm.index = pd.Index(labels, name="sample")
    envj.index = pd.Index(labels, name="sample")
    meta = meta.set_index("sample")
    return comm, envj, meta


# =============================================================================
# Ordination
# =============================================================================

def community_transform(X, method=COMMUNITY_TRANSFORM):
    X = np.asarray(X, float)
    if method == "auto":
        xmax = np.nanmax(X) if X.size else 0.0
        if xmax > 50:
            X = np.sqrt(X)
        if xmax > 9:
            X = _wisconsin(X)
        return X
    if method == "none":
        return X
    if method == "sqrt":
        return np.sqrt(X)
    if method == "wisconsin":
        return _wisconsin(X)
    if method == "sqrt_wisconsin":
        return _wisconsin(np.sqrt(X))
    if method == "hellinger":
        tot = X.sum(axis=1, keepdims=True)
        return np.sqrt(np.divide(X, tot, out=np.zeros_like(X), where=tot > 0))
    raise ValueError(f"Unknown community transform: {method!r}")

def _wisconsin(X):
    """Species divided by their maxima, then samples by their totals."""
    cmax = X.max(axis=0, keepdims=True)
    X = np.divide(X, cmax, out=np.zeros_like(X), where=cmax > 0)
    tot = X.sum(axis=1, keepdims=True)
    return np.divide(X, tot, out=np.zeros_like(X), where=tot > 0)

def bray_curtis_matrix(X):
    D = squareform(pdist(np.asarray(X, float), metric="braycurtis"))
    if not np.all(np.isfinite(D)):
        raise ValueError("Bray-Curtis dissimilarity undefined for some sample pairs (empty samples?).")
    return D

def run_nmds(D, k=NMDS_K, n_init=NMDS_N_INIT, max_iter=NMDS_MAX_ITER, seed=RANDOM_SEED, index=None):
    """
    Nonmetric MDS on a precomputed dissimilarity matrix.

    Scores are centered and rotated so that NMDS1 carries the largest spread.
    """
    n = D.shape[0]
    if n < k + 2:
        raise ValueError(f"NMDS needs at least {k + 2} samples for k={k}; got {n}.")

    nmds = MDS(n_components=k, metric=False, dissimilarity="precomputed",
               n_init=n_init, max_iter=max_iter, random_state=seed,
               normalized_stress=True)
    Y = nmds.fit_transform(D)
    Y = PCA(n_components=k).fit_transform(Y)

    axes = [f"NMDS{i + 1}" for i in range(k)]
    scores = pd.DataFrame(Y, columns=axes, index=index)
    return {
        "scores": scores,
        "stress": float(nmds.stress_),
        "n_iter": int(getattr(nmds, "n_iter_", -1)),
    }

def shepard_table(D, scores):
    d_obs = squareform(D, checks=False)
    d_ord = pdist(np.asarray(scores, float))
    fitted = IsotonicRegression(increasing=True).fit_transform(d_obs, d_ord)
    return pd.DataFrame({"dissimilarity": d_obs, "ordination_distance": d_ord, "monotone_fit": fitted})

def shepard_fit_r2(shep, stress):
    nonmetric = 1.0 - stress ** 2 if np.isfinite(stress) else np.nan
    a = shep["ordination_distance"].to_numpy(float)
    b = shep["monotone_fit"].to_numpy(float)
    linear = np.corrcoef(a, b)[0, 1] ** 2 if (np.std(a) > 0 and np.std(b) > 0) else np.nan
    return float(nonmetric), float(linear)


# =============================================================================
# Environmental fitting
# =============================================================================

def envfit_vectors(scores, env, n_perm=ENVFIT_PERMUTATIONS, seed=RANDOM_SEED):
    """
    Fit each environmental variable as a vector onto the ordination.

    The centered variable is regressed on the centered scores; the normalized coefficients give
    the arrow direction and r2 its length. Samples missing the variable are dropped for that
    variable only. p = (#{permuted r2 >= r2} + 1) / (n_perm + 1).
    """
    rng = np.random.default_rng(seed)
    axes = list(scores.columns)
    S = scores.to_numpy(float)

    rows = []
    for var in env.columns:
        y = pd.to_numeric(env[var], errors="coerce").to_numpy(float)
        ok = np.isfinite(y)
        n = int(ok.sum())
        row = {"variable": var, **{a: np.nan for a in axes}, "r2": np.nan, "p": np.nan, "n": n}

        if n < 3 or np.ptp(y[ok]) == 0:
            rows.append(row)
            continue
        X = S[ok] - S[ok].mean(axis=0)
        yc = y[ok] - y[ok].mean()
        sst = float(np.sum(yc ** 2))
        # centering residue on a near-constant column
        if sst <= 1e-12 * max(1.0, float(np.sum(y[ok] ** 2))):
            rows.append(row)
            continue

        B = np.linalg.lstsq(X, yc, rcond=None)[0]
        r2 = min(max(1.0 - np.sum((yc - X @ B) ** 2) / sst, 0.0), 1.0)
        norm = np.sqrt(np.sum(B ** 2))
        heads = B / norm if norm > 0 else np.full_like(B, np.nan)

        p = np.nan
        if n_perm and n_perm > 0:
            Yp = np.column_stack([yc[rng.permutation(n)] for _ in range(n_perm)])
            Bp = np.linalg.lstsq(X, Yp, rcond=None)[0]
            r2_perm = 1.0 - np.sum((Yp - X @ Bp) ** 2, axis=0) / sst
            p = (np.sum(r2_perm >= r2 - 1e-8) + 1) / (n_perm + 1)

        row.update({a: float(h) for a, h in zip(axes, heads)})
        row.update({"r2": float(r2), "p": float(p)})
        rows.append(row)

    return pd.DataFrame(rows).set_index("variable")

def plot_limits(scores, pad=0.10):
    x = scores.iloc[:, 0].to_numpy(float)
    y = scores.iloc[:, 1].to_numpy(float)
    xr = np.ptp(x) if np.ptp(x) > 0 else 1.0
    yr = np.ptp(y) if np.ptp(y) > 0 else 1.0
    return (x.min() - pad * xr, x.max() + pad * xr, y.min() - pad * yr, y.max() + pad * yr)

def arrow_multiplier(arrows, limits, fill=ARROW_FILL):
    """Largest scale that keeps every arrow inside the plot limits, times fill."""
    arrows = np.asarray(arrows, float).reshape(-1, 2)
    arrows = arrows[np.all(np.isfinite(arrows), axis=1)]
    if arrows.shape[0] == 0:
        return float(fill)
    u = np.asarray(limits, float)
    r = np.array([arrows[:, 0].min(), arrows[:, 0].max(), arrows[:, 1].min(), arrows[:, 1].max()])
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = u / r
    ratio = ratio[np.isfinite(ratio) & (ratio > 0)]
    if ratio.size == 0:
        return float(fill)
    return float(fill * ratio.min())

def arrow_table(fit, limits, p_max=ARROW_P_MAX, fill=ARROW_FILL, label_offset=ARROW_LABEL_OFFSET):
    axes = [c for c in fit.columns if c.startswith("NMDS")][:2]
    keep = np.isfinite(fit["r2"]) & np.all(np.isfinite(fit[axes]), axis=1)
    if p_max is not None:
        keep &= fit["p"] <= p_max
    sel = fit.loc[keep]

    vec = sel[axes].to_numpy(float) * np.sqrt(sel["r2"].to_numpy(float))[:, None]
    mul = arrow_multiplier(vec, limits, fill=fill)
    tips = vec * mul

    return pd.DataFrame({
        "x": tips[:, 0],
        "y": tips[:, 1],
        "label_x": tips[:, 0] * label_offset,
        "label_y": tips[:, 1] * label_offset,
        "ha": np.where(tips[:, 0] >= 0, "left", "right"),
        "r2": sel["r2"].to_numpy(float),
        "p": sel["p"].to_numpy(float),
        "multiplier": mul,
    }, index=sel.index)


# =============================================================================
# Clustering
# =============================================================================

def cluster_samples(D, method=LINKAGE_METHOD, k=N_CLUSTERS):
    """
    Agglomerative clustering of the samples.

    Cluster ids are renumbered 1..k in dendrogram leaf order (left to right).
    """
    n = D.shape[0]
    if k < 1 or k > n:
        raise ValueError(f"Number of clusters must be between 1 and {n}; got {k}.")

    condensed = squareform(D, checks=False)
    Z = linkage(condensed, method=method)
    raw = fcluster(Z, t=k, criterion="maxclust")
    leaves = leaves_list(Z)

    relabel = {}
    for leaf in leaves:
        if raw[leaf] not in relabel:
            relabel[raw[leaf]] = len(relabel) + 1
    labels = np.array([relabel[c] for c in raw], dtype=int)

    coph_r, _ = cophenet(Z, condensed)
    return {"linkage": Z, "labels": labels, "leaves": leaves, "cophenetic_r": float(coph_r)}

def silhouette_scan(D, Z, k_range=K_RANGE):
    n = D.shape[0]
    rows = []
    for k in k_range:
        sil = np.nan
        if 2 <= k <= n - 1:
            lab = fcluster(Z, t=k, criterion="maxclust")
            if 2 <= len(np.unique(lab)) <= n - 1:
                sil = float(silhouette_score(D, lab, metric="precomputed"))
        rows.append({"k": int(k), "silhouette": sil})
    return pd.DataFrame(rows)

def dendrogram_color_threshold(Z, k):
    heights = Z[:, 2]
    if k <= 1:
        return float(heights[-1]) * 1.01
    if k > len(heights):
        return 0.0
    return float(0.5 * (heights[-k] + heights[-k + 1]))

def link_cluster_map(Z, labels):
    """Cluster id of every dendrogram link whose leaves all share one cluster (else None)."""
    n = len(labels)
    node = {i: int(labels[i]) for i in range(n)}
    for i, (a, b) in enumerate(Z[:, :2].astype(int)):
        ca, cb = node[a], node[b]
        node[n + i] = ca if (ca is not None and ca == cb) else None
    return node


# =============================================================================
# Plot geometry
# =============================================================================

def hull_vertices(scores, groups):
    """
    Convex-hull vertices of each group in ordination space.

    Vertices are counterclockwise. Groups with fewer than three distinct points, or collinear
    points, keep their points as a degenerate polygon.
    """
    pts_all = np.asarray(scores, float)[:, :2]
    groups = np.asarray(groups)
    rows = []
    for g in sorted(np.unique(groups)):
        pts = np.unique(pts_all[groups == g], axis=0)
        poly = pts
        if pts.shape[0] >= 3:
            try:
                poly = pts[ConvexHull(pts).vertices]
            except QhullError:
                poly = pts[np.lexsort((pts[:, 1], pts[:, 0]))]
        for i, (x, y) in enumerate(poly):
            rows.append({"cluster": g, "order": i, "x": float(x), "y": float(y)})
    return pd.DataFrame(rows, columns=["cluster", "order", "x", "y"])

def relative_composition(community, top_n=TOP_TAXA):
    """Per-sample relative abundance of the top taxa (by mean share), remainder as 'Other'."""
    rel = community.div(community.sum(axis=1), axis=0)
    top = rel.mean(axis=0).sort_values(ascending=False).index[:top_n].tolist()
    out = rel[top].copy()
    out["Other"] = (1.0 - out.sum(axis=1)).clip(lower=0.0)
    return out

def cluster_taxa_profile(community, groups, top_n=TOP_TAXA):
    prof = relative_composition(community, top_n=top_n)
    prof["cluster"] = np.asarray(groups)
    return prof.groupby("cluster").mean()

def cluster_environment_profile(env, groups):
    z = (env - env.mean()) / env.std(ddof=1).replace(0, np.nan)
    z["cluster"] = np.asarray(groups)
    return z.groupby("cluster").median()


# =============================================================================
# Plot helpers
# =============================================================================

def draw_hulls(ax, hulls, colors, alpha=0.15, lw=1.2):
    for g, poly in hulls.groupby("cluster"):
        poly = poly.sort_values("order")
        x = poly["x"].to_numpy(float)
        y = poly["y"].to_numpy(float)
        if len(x) >= 3:
            ax.fill(x, y, color=colors[g], alpha=alpha, zorder=0)
        ax.plot(np.r_[x, x[0]], np.r_[y, y[0]], color=colors[g], lw=lw, alpha=0.8, zorder=1)

def draw_samples(ax, scores, groups, colors, labels=True):
    groups = np.asarray(groups)
    for g in sorted(np.unique(groups)):
        m = groups == g
        ax.scatter(scores.iloc[m, 0], scores.iloc[m, 1], s=80, alpha=0.95,
                   edgecolor="k", linewidth=0.35, color=colors[g], zorder=3,
                   label=f"Cluster {g}")
    if labels:
        for name, (x, y) in zip(scores.index, scores.iloc[:, :2].to_numpy(float)):
            ax.annotate(str(name), (x, y), xytext=(4, 4), textcoords="offset points",
                        fontsize=8.5, zorder=4)

def draw_arrows(ax, arrows, color="black"):
    for var, row in arrows.iterrows():
        ax.annotate("", xy=(row["x"], row["y"]), xytext=(0, 0),
                    arrowprops=dict(arrowstyle="-|>", lw=1.3, color=color), zorder=5)
        ax.text(row["label_x"], row["label_y"], var, ha=row["ha"], va="center",
                fontsize=10.5, fontweight="bold", color=color, zorder=6)

def nmds_axes(ax, limits, stress):
    ax.set_xlim(limits[0], limits[1])
    ax.set_ylim(limits[2], limits[3])
    ax.axhline(0, color="0.6", lw=0.6, ls=":", zorder=0)
    ax.axvline(0, color="0.6", lw=0.6, ls=":", zorder=0)
    ax.set_xlabel("NMDS1")
    ax.set_ylabel("NMDS2")
    ax.set_aspect("equal", adjustable="box")
    ax.text(0.98, 0.02, f"Stress = {stress:.3f}", transform=ax.transAxes,
            ha="right", va="bottom", fontsize=10,
            bbox=dict(fc="white", ec="none", alpha=0.75))

def save_figure(fig, fig_dir, stem, dpi=FIG_DPI):
    png = os.path.join(fig_dir, f"{stem}.png")
    pdf = os.path.join(fig_dir, f"{stem}.pdf")
    fig.savefig(png, dpi=dpi, bbox_inches="tight")
    fig.savefig(pdf, bbox_inches="tight")
    plt.close(fig)
    return png, pdf


# =============================================================================
# Figures
# =============================================================================

def build_main_figure(scores, stress, groups, hulls, arrows, limits, clus, composition, colors):
    fig = plt.figure(figsize=(20, 16))
    gs = fig.add_gridspec(2, 2, wspace=0.22, hspace=0.30)

    # A) NMDS by cluster
    axA = fig.add_subplot(gs[0, 0])
    draw_hulls(axA, hulls, colors)
    draw_samples(axA, scores, groups, colors, labels=True)
    nmds_axes(axA, limits, stress)
    axA.legend(frameon=False, loc="upper left")
    axA.set_title("A) NMDS of zooplankton composition (Bray-Curtis)\n"
                  f"Polygons: convex hulls of {LINKAGE_NAMES.get(LINKAGE_METHOD, LINKAGE_METHOD)} clusters")

    # B) same ordination with envfit arrows
    axB = fig.add_subplot(gs[0, 1])
    draw_hulls(axB, hulls, colors, alpha=0.10)
    draw_samples(axB, scores, groups, colors, labels=False)
    draw_arrows(axB, arrows)
    nmds_axes(axB, limits, stress)
    ptxt = f"p ≤ {ARROW_P_MAX}" if ARROW_P_MAX is not None else "all variables"
    axB.set_title(f"B) Environmental vectors (envfit, {ptxt})\nArrow length ∝ √r²")

    # C) dendrogram colored at the cut
    axC = fig.add_subplot(gs[1, 0])
    Z = clus["linkage"]
    k = len(np.unique(groups))
    link_map = link_cluster_map(Z, groups)

    def link_color(link_id):
        c = link_map.get(link_id)
        return to_hex(colors[c]) if c is not None else "0.45"

    dendrogram(Z, labels=scores.index.tolist(), ax=axC, link_color_func=link_color,
               leaf_rotation=90, leaf_font_size=9.5)
    axC.axhline(dendrogram_color_threshold(Z, k), color="0.3", ls="--", lw=1.0)
    axC.set_ylabel("Bray-Curtis dissimilarity")
    axC.set_title(f"C) {LINKAGE_NAMES.get(LINKAGE_METHOD, LINKAGE_METHOD)} "
                  f"clustering (k={k}; cophenetic r={clus['cophenetic_r']:.2f})")
    axC.grid(True, axis="y", alpha=0.20)

    # D) composition in dendrogram order
    axD = fig.add_subplot(gs[1, 1])
    comp = composition.iloc[clus["leaves"]]
    cmap = plt.get_cmap("tab20", comp.shape[1])
    bottom = np.zeros(len(comp))
    xs = np.arange(len(comp))
    for j, taxon in enumerate(comp.columns):
        vals = comp[taxon].to_numpy(float) * 100.0
        axD.bar(xs, vals, bottom=bottom, width=0.8, color=cmap(j),
                edgecolor="white", linewidth=0.3, label=taxon)
        bottom += vals
    axD.set_xticks(xs)
    axD.set_xticklabels(comp.index, rotation=90)
    for tick, g in zip(axD.get_xticklabels(), np.asarray(groups)[clus["leaves"]]):
        tick.set_color(colors[g])
    axD.set_ylim(0, 100)
    axD.set_ylabel("Relative abundance (%)")
    axD.set_title(f"D) Composition (top {comp.shape[1] - 1} taxa; dendrogram order)")
    axD.legend(frameon=False, loc="upper left", bbox_to_anchor=(1.01, 1.0), fontsize=9.5)

    return fig

def build_supp_figure(shep, stress, sil, fit, env_prof, k):
    fig = plt.figure(figsize=(20, 12))
    gs = fig.add_gridspec(2, 2, wspace=0.25, hspace=0.35)

    # S1) Shepard diagram
    axS1 = fig.add_subplot(gs[0, 0])
    r2_nm, r2_lin = shepard_fit_r2(shep, stress)
    axS1.scatter(shep["dissimilarity"], shep["ordination_distance"], s=14, alpha=0.45,
                 color="tab:blue", edgecolor="none")
    o = np.argsort(shep["dissimilarity"].to_numpy(float))
    axS1.step(shep["dissimilarity"].to_numpy(float)[o], shep["monotone_fit"].to_numpy(float)[o],
              where="post", color="tab:red", lw=1.6)
    axS1.set_xlabel("Observed dissimilarity")
    axS1.set_ylabel("Ordination distance")
    axS1.set_title(f"S1) Shepard diagram (stress={stress:.3f}, {stress_label(stress)})\n"
                   f"Non-metric R²={r2_nm:.3f}; linear fit R²={r2_lin:.3f}")
    axS1.grid(True, alpha=0.20)

    # S2) silhouette vs k
    axS2 = fig.add_subplot(gs[0, 1])
    axS2.plot(sil["k"], sil["silhouette"], marker="o", linewidth=2.2)
    if k in sil["k"].tolist():
        val = sil.loc[sil["k"] == k, "silhouette"].iloc[0]
        if np.isfinite(val):
            axS2.scatter([k], [val], s=160, facecolors="none", edgecolors="k", linewidth=1.6, zorder=5)
    axS2.set_xlabel("Number of clusters (k)")
    axS2.set_ylabel("Mean silhouette width")
    axS2.set_title("S2) Cluster support by silhouette width\n(ring: k used in the figures)")
    axS2.grid(True, alpha=0.20)

    # S3) envfit r2
    axS3 = fig.add_subplot(gs[1, 0])
    f = fit.sort_values("r2", ascending=False)
    xs = np.arange(len(f))
    vals = f["r2"].fillna(0.0).to_numpy(float)
    axS3.bar(xs, vals, color=["black" if (np.isfinite(p) and p <= 0.05) else "0.7" for p in f["p"]])
    for x, v, p in zip(xs, vals, f["p"]):
        axS3.text(x, v + 0.015, significance_mark(p), ha="center", fontsize=12)
    axS3.set_xticks(xs)
    axS3.set_xticklabels(f.index)
    axS3.set_ylim(0, 1.05)
    axS3.set_ylabel("envfit r²")
    axS3.set_title("S3) Environmental fit to the NMDS\n* p<0.05; ** p<0.01; *** p<0.001 (permutation)")
    axS3.grid(True, axis="y", alpha=0.20)

    # S4) cluster environment fingerprint
    axS4 = fig.add_subplot(gs[1, 1])
    im = heatmap_with_text(axS4, env_prof.to_numpy(float), vmin=-1.5, vmax=1.5)
    axS4.set_yticks(np.arange(len(env_prof.index)))
    axS4.set_yticklabels([f"Cluster {c}" for c in env_prof.index])
    axS4.set_xticks(np.arange(len(env_prof.columns)))
    axS4.set_xticklabels(env_prof.columns, rotation=45, ha="right")
    axS4.set_title("S4) Cluster environment fingerprint (standardized medians)")
    fig.colorbar(im, ax=axS4, fraction=0.046, pad=0.03)

    return fig

def build_biplot_figure(scores, stress, groups, hulls, arrows, limits, colors):
    fig, ax = plt.subplots(figsize=(9, 8))
    draw_hulls(ax, hulls, colors)
    draw_samples(ax, scores, groups, colors, labels=True)
    draw_arrows(ax, arrows)
    nmds_axes(ax, limits, stress)
    ax.legend(frameon=False, loc="upper left")
    return fig


# =============================================================================
# Main execution
# =============================================================================

def main(env_path=ENV_XLSX, zoo_path=ZOO_XLSX, out_dir=OUT_DIR,
         n_clusters=N_CLUSTERS, n_perm=ENVFIT_PERMUTATIONS, n_init=NMDS_N_INIT, dpi=FIG_DPI):
    fig_dir, tab_dir = ensure_dirs(out_dir)
    set_style()

    # Load raw data
    env_raw, env_vars = load_environment(env_path)
    zoo_long = load_zooplankton(zoo_path)
    print(f"Environmental rows: n={len(env_raw)}; variables: {env_vars}")
    print(f"Composition records: n={len(zoo_long)}; taxa: {zoo_long['taxon'].nunique()}")

    # Reshape and join
    keys = sample_keys(env_raw, zoo_long)
    community = pivot_community(zoo_long, keys, min_occurrence=MIN_TAXON_OCCURRENCE)
    env_agg = aggregate_environment(env_raw, keys, env_vars)
    community, env, meta = join_environment(community, env_agg, keys)
    print(f"Joined samples: n={len(community)} (keys: {keys}); taxa: {community.shape[1]}")

    community.to_csv(os.path.join(tab_dir, "community_matrix.csv"))
    env.to_csv(os.path.join(tab_dir, "environment_matrix.csv"))

    # NMDS
    Xt = community_transform(community.to_numpy(float), COMMUNITY_TRANSFORM)
    D = bray_curtis_matrix(Xt)
    nm = run_nmds(D, k=NMDS_K, n_init=n_init, max_iter=NMDS_MAX_ITER, seed=RANDOM_SEED,
                  index=community.index)
    scores, stress = nm["scores"], nm["stress"]
    print(f"NMDS stress: {stress:.4f} ({stress_label(stress)}); iterations: {nm['n_iter']}")

    shep = shepard_table(D, scores)
    r2_nm, r2_lin = shepard_fit_r2(shep, stress)
    scores.to_csv(os.path.join(tab_dir, "nmds_scores.csv"))
    shep.to_csv(os.path.join(tab_dir, "nmds_shepard_pairs.csv"), index=False)
    pd.DataFrame([{
        "n_samples": len(scores), "n_taxa": community.shape[1], "k": NMDS_K,
        "transform": COMMUNITY_TRANSFORM, "stress": stress, "stress_label": stress_label(stress),
        "nonmetric_R2": r2_nm, "linear_R2": r2_lin, "n_iter": nm["n_iter"],
    }]).to_csv(os.path.join(tab_dir, "nmds_stress.csv"), index=False)

    # envfit
    fit = envfit_vectors(scores, env, n_perm=n_perm, seed=RANDOM_SEED)
    fit.to_csv(os.path.join(tab_dir, "envfit_vectors.csv"))
    print("envfit:")
    for var, row in fit.iterrows():
        print(f"  {var}: r2={row['r2']:.3f}, p={row['p']:.3f} (n={int(row['n'])})")

    limits = plot_limits(scores)
    arrows = arrow_table(fit, limits, p_max=ARROW_P_MAX, fill=ARROW_FILL, label_offset=ARROW_LABEL_OFFSET)
    arrows.to_csv(os.path.join(tab_dir, "envfit_arrows.csv"))

    # Clustering
    k = int(min(n_clusters, len(scores)))
    clus = cluster_samples(D, method=LINKAGE_METHOD, k=k)
    groups = clus["labels"]
    meta["cluster"] = groups
    meta.join(scores).to_csv(os.path.join(tab_dir, "sample_clusters.csv"))
    print(f"Clusters (k={k}): " + ", ".join(
        f"{c}: {int(np.sum(groups == c))}" for c in sorted(np.unique(groups))))
    print(f"Cophenetic correlation: {clus['cophenetic_r']:.3f}")

    sil = silhouette_scan(D, clus["linkage"], K_RANGE)
    sil.to_csv(os.path.join(tab_dir, "silhouette_by_k.csv"), index=False)

    hulls = hull_vertices(scores.to_numpy(float), groups)
    hulls.to_csv(os.path.join(tab_dir, "hull_vertices.csv"), index=False)

    taxa_prof = cluster_taxa_profile(community, groups, top_n=TOP_TAXA)
    taxa_prof.to_csv(os.path.join(tab_dir, "cluster_taxa_profile.csv"))
    env_prof = cluster_environment_profile(env, groups)
    env_prof.to_csv(os.path.join(tab_dir, "cluster_environment_profile.csv"))

    # =============================================================================
    # Figures
    # =============================================================================
    colors = cluster_colors(k)
    composition = relative_composition(community, top_n=TOP_TAXA)

    fig1 = build_main_figure(scores, stress, groups, hulls, arrows, limits, clus, composition, colors)
    main_paths = save_figure(fig1, fig_dir, f"Zooplankton_NMDS_MAIN_{VERSION_TAG}_k{k}", dpi=dpi)

    fig2 = build_supp_figure(shep, stress, sil, fit, env_prof, k)
    supp_paths = save_figure(fig2, fig_dir, f"Zooplankton_NMDS_SUPP_{VERSION_TAG}_k{k}", dpi=dpi)

    fig3 = build_biplot_figure(scores, stress, groups, hulls, arrows, limits, colors)
    biplot_paths = save_figure(fig3, fig_dir, f"Zooplankton_NMDS_biplot_{VERSION_TAG}_k{k}", dpi=dpi)

    for p in main_paths + supp_paths + biplot_paths:
        print("Saved figure:", p)
    print("Saved tables to:", tab_dir)

    return {
        "community": community, "environment": env, "meta": meta,
        "scores": scores, "stress": stress, "envfit": fit, "arrows": arrows,
        "clusters": clus, "hulls": hulls, "silhouette": sil,
        "figures": list(main_paths + supp_paths + biplot_paths),
    }


if __name__ == "__main__":
    main()
