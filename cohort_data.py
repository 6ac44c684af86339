"""
cohort_data.py
==============
Framingham Cohort — Data Loading & Feature Engineering
=======================================================

Shared data layer for the BMI regression and blood-pressure classification
analyses.

Dataset
-------
Framingham Heart Study teaching dataset — one row per patient examination
(up to three visits per patient), fetched from a public CSV endpoint via
`requests` or read from a local copy.

Stages
------
1. load_data(source)             → raw visit table
2. summarize_cohort(df)          → descriptive statistics printed to console
3. add_lag_features(df)          → past_bmi / last_exam per patient
4. categorize_blood_pressure()   → ordinal BP category (1..5 or NaN)
5. build_model_frame(df, ...)    → dense numeric matrix + target column
"""

from __future__ import annotations

import os
from io import StringIO

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import requests

# ── Global constants ─────────────────────────────────────────────────────────
RANDOM_STATE: int = 42        # seeds the single Generator created in main()
SHOW_PLOTS:   bool = True     # plt.show() after each figure; tests switch off

DATASET_URL = (
    "https://raw.githubusercontent.com/LUCE-Blockchain/Databases-for-teaching/"
    "refs/heads/main/Framingham%20Dataset.csv"
)

ID_COL:     str = "RANDID"
PERIOD_COL: str = "PERIOD"
TIME_COL:   str = "TIME"
BMI_COL:    str = "BMI"
SYS_COL:    str = "SYSBP"
DIA_COL:    str = "DIABP"

PAST_BMI_COL:  str = "past_bmi"
LAST_EXAM_COL: str = "last_exam"
CATEGORY_COL:  str = "bp_category"

# Columns the loader refuses to run without
REQUIRED_COLS: list[str] = [ID_COL, PERIOD_COL, TIME_COL, BMI_COL, SYS_COL, DIA_COL]

# Events observed after the visit and their follow-up times; never predictors
OUTCOME_COLS: list[str] = [
    "DEATH", "ANGINA", "HOSPMI", "MI_FCHD", "ANYCHD", "STROKE", "CVD",
    "HYPERTEN", "TIMEAP", "TIMEMI", "TIMEMIFC", "TIMECHD", "TIMESTRK",
    "TIMECVD", "TIMEDTH", "TIMEHYP",
]

# Columns with a larger share of NaN than this are dropped before row-wise drop
MAX_MISSING_FRACTION: float = 0.30

# Ordinal blood-pressure categories (code → name), least to most severe
BP_CATEGORIES: dict[int, str] = {
    1: "normal",
    2: "elevated",
    3: "stage_1",
    4: "stage_2",
    5: "crisis",
}


def show_figure(fig: plt.Figure) -> plt.Figure:
    """Lay out `fig` and display it when SHOW_PLOTS is on."""
    fig.tight_layout()
    if SHOW_PLOTS:
        plt.show()
    return fig


def seed_from(rng: np.random.Generator) -> int:
    """Draw an int seed for sklearn APIs that do not accept a Generator."""
    return int(rng.integers(0, 2**31 - 1))


# ════════════════════════════════════════════════════════════════════════════
# Stage 1 — Data Acquisition
# ════════════════════════════════════════════════════════════════════════════

def load_data(source: str = DATASET_URL) -> pd.DataFrame:
    """
    Read the Framingham visit table from a URL or a local CSV path.

    Parameters
    ----------
    source : str
        http(s) URL (fetched with `requests`) or filesystem path.

    Returns
    -------
    pd.DataFrame
        One row per patient visit, columns as in the source file.

    Raises
    ------
    requests.HTTPError
        If the remote endpoint returns a non-2xx status code.
    FileNotFoundError
        If a local path does not exist.
    ValueError
        If any of REQUIRED_COLS is absent.
    """
    if source.startswith(("http://", "https://")):
        print(f"[load_data] Fetching dataset from:\n  {source}\n")
        response = requests.get(source, timeout=30)
        response.raise_for_status()
        df = pd.read_csv(StringIO(response.text))
    else:
        print(f"[load_data] Reading dataset from {os.path.abspath(source)}\n")
        df = pd.read_csv(source)

    missing = [col for col in REQUIRED_COLS if col not in df.columns]
    if missing:
        raise ValueError(f"Dataset is missing required columns: {missing}")

    print(f"[load_data] Loaded {len(df)} visits, {df.shape[1]} columns, "
          f"{df[ID_COL].nunique()} patients.")
    return df


def summarize_cohort(df: pd.DataFrame) -> pd.DataFrame:
    """Print and return mean/median/std of key risk factors grouped by sex."""
    cols = [c for c in ["AGE", BMI_COL, SYS_COL, DIA_COL, "TOTCHOL", "HEARTRTE"]
            if c in df.columns]
    if "SEX" in df.columns:
        summary = df.groupby("SEX")[cols].agg(["mean", "median", "std"]).T.round(2)
    else:
        summary = df[cols].agg(["mean", "median", "std"]).T.round(2)

    print("[summarize_cohort] Risk factors (by SEX where available):")
    print(summary.to_string())
    print(f"  Visits per period:\n{df[PERIOD_COL].value_counts().sort_index().to_string()}\n")
    return summary


# ════════════════════════════════════════════════════════════════════════════
# Stage 2 — Feature Engineering
# ════════════════════════════════════════════════════════════════════════════

def add_lag_features(df: pd.DataFrame) -> pd.DataFrame:
    """
    Add `past_bmi` and `last_exam` computed per patient in visit order.

    Rows are sorted by (RANDID, PERIOD) with a stable sort before the group
    scan, so the result does not depend on the incoming row order. The first
    visit of every patient gets NaN for both columns.

    Returns
    -------
    pd.DataFrame
        Copy of `df` sorted by patient and period, index reset.
    """
    out = df.sort_values([ID_COL, PERIOD_COL], kind="mergesort").reset_index(drop=True)
    grouped = out.groupby(ID_COL, sort=False)
    out[PAST_BMI_COL] = grouped[BMI_COL].shift(1)
    out[LAST_EXAM_COL] = out[TIME_COL] - grouped[TIME_COL].shift(1)

    n_lagged = int(out[PAST_BMI_COL].notna().sum())
    print(f"[add_lag_features] {n_lagged}/{len(out)} visits have a previous visit.")
    return out


def _categorize_pair(systolic: float, diastolic: float) -> int | float:
    if pd.isna(systolic) or pd.isna(diastolic):
        return np.nan
    if systolic > 180 or diastolic > 120:
        return 5
    if systolic >= 140 or diastolic >= 90:
        return 4
    if systolic >= 130 or diastolic >= 80:
        return 3
    if systolic >= 120:
        return 2
    return 1


def categorize_blood_pressure(systolic, diastolic):
    """
    Map systolic/diastolic pressure to an ordinal category code.

    Rules (applied in priority order, first match wins)
    ---------------------------------------------------
    crisis   (5) : systolic > 180  OR  diastolic > 120
    stage_2  (4) : systolic >= 140 OR  diastolic >= 90
    stage_1  (3) : systolic >= 130 OR  diastolic >= 80
    elevated (2) : systolic >= 120
    normal   (1) : all other cases
    NaN          : either reading missing

    Accepts scalars or equal-length array-likes / Series. Scalars return an
    int code or NaN; sequences are paired by position and return a float
    Series on the systolic index.

    Raises
    ------
    ValueError
        If the two sequences differ in length.
    """
    if pd.api.types.is_scalar(systolic) or np.ndim(systolic) == 0:
        return _categorize_pair(systolic, diastolic)

    sys_s = pd.Series(systolic)
    dia_values = np.asarray(diastolic, dtype=object)
    if len(dia_values) != len(sys_s):
        raise ValueError(
            f"systolic and diastolic differ in length: {len(sys_s)} vs {len(dia_values)}"
        )
    codes = [_categorize_pair(s, d) for s, d in zip(sys_s, dia_values)]
    return pd.Series(codes, index=sys_s.index, dtype=float, name=CATEGORY_COL)


def add_bp_category(df: pd.DataFrame) -> pd.DataFrame:
    """Return a copy of `df` with the `bp_category` column."""
    out = df.copy()
    out[CATEGORY_COL] = categorize_blood_pressure(out[SYS_COL], out[DIA_COL])
    counts = out[CATEGORY_COL].map(BP_CATEGORIES).value_counts()
    print(f"[add_bp_category] Category distribution:\n{counts.to_string()}\n")
    return out


def drop_sparse_columns(
    df: pd.DataFrame,
    max_missing: float = MAX_MISSING_FRACTION,
    keep: list[str] | None = None,
) -> pd.DataFrame:
    """Drop columns whose NaN fraction exceeds `max_missing`, except `keep`."""
    frac = df.isna().mean()
    sparse = [c for c in frac[frac > max_missing].index if c not in (keep or [])]
    for col in sparse:
        print(f"  {col:<12s}  {frac[col]:>6.1%} missing → dropped")
    return df.drop(columns=sparse)


def build_model_frame(
    df: pd.DataFrame,
    target: str,
    exclude: list[str] | None = None,
    max_missing: float = MAX_MISSING_FRACTION,
) -> tuple[pd.DataFrame, pd.Series]:
    """
    Turn the visit table into a dense numeric design matrix plus target.

    Steps
    -----
    1. Remove the patient id, outcome columns and any `exclude` columns.
    2. Drop first visits (rows with no past_bmi / last_exam) when the lag
       features are present.
    3. Drop columns with excessive missingness (target and lag features are
       never dropped).
    4. Drop every remaining row with a NaN — no imputation.

    Returns
    -------
    X : pd.DataFrame
        Fully dense float feature matrix.
    y : pd.Series
        Target column aligned with X.
    """
    drop = [ID_COL] + OUTCOME_COLS + list(exclude or [])
    frame = df.drop(columns=[c for c in drop if c in df.columns and c != target])
    frame = frame.select_dtypes(include=[np.number])

    print(f"[build_model_frame] target={target}")
    lag_cols = [c for c in (PAST_BMI_COL, LAST_EXAM_COL) if c in frame.columns]
    if lag_cols:
        n_visits = len(frame)
        frame = frame.dropna(subset=lag_cols)
        print(f"  Rows: {n_visits} → {len(frame)} after dropping first visits")

    frame = drop_sparse_columns(frame, max_missing, keep=[target] + lag_cols)

    n_before = len(frame)
    frame = frame.dropna().reset_index(drop=True)
    print(f"  Rows: {n_before} → {len(frame)} after dropping rows with NaN")

    y = frame.pop(target)
    X = frame.astype(float)
    print(f"  X shape : {X.shape}\n")
    return X, y
