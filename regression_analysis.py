"""
regression_analysis.py
======================
BMI Regression — LASSO, Manual k-Fold CV, PCA + OLS
====================================================

Predicts a visit's BMI from the risk factors measured at that visit plus the
patient's previous BMI (`past_bmi`) and the time since that previous exam
(`last_exam`).

Pipeline Stages
---------------
1. select_lasso_penalty(...)   → CV error over a penalty path + one-SE rule
2. run_lasso(...)              → refit at the one-SE penalty, list dropped features
3. cross_validated_error(...)  → manual k-fold train/test MSE for any model
4. fit_pca(...)                → correlation matrix, components, scores
5. fit_pca_ols(...)            → statsmodels OLS of BMI on leading components
6. compare_regression_errors() → LASSO vs PCA-OLS error table
"""

from __future__ import annotations

from typing import Callable

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import statsmodels.api as sm
from joblib import Parallel, delayed

from sklearn.decomposition import PCA
from sklearn.linear_model import Lasso, LassoCV, LinearRegression, lasso_path
from sklearn.metrics import mean_squared_error
from sklearn.model_selection import KFold
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler

from cohort_data import seed_from, show_figure

# ── Global constants ─────────────────────────────────────────────────────────
CV_FOLDS:     int = 10      # folds for both LassoCV and the manual CV loop
SE_MULTIPLE:  float = 1.0   # one-standard-error rule
N_COMPONENTS: int = 5       # leading principal components kept for OLS
MAX_ITER:     int = 10_000  # coordinate-descent iterations for Lasso


# ════════════════════════════════════════════════════════════════════════════
# Stage 1 — Manual k-fold Cross-Validation
# ════════════════════════════════════════════════════════════════════════════

def assign_folds(n_rows: int, n_folds: int, rng: np.random.Generator) -> list[np.ndarray]:
    """
    Partition row indices 0..n_rows-1 into `n_folds` random, roughly equal folds.

    Every index lands in exactly one fold; fold sizes differ by at most one.

    Raises
    ------
    ValueError
        If n_folds < 2 or n_folds > n_rows.
    """
    if n_folds < 2 or n_folds > n_rows:
        raise ValueError(f"n_folds must be in [2, {n_rows}], got {n_folds}")
    return np.array_split(rng.permutation(n_rows), n_folds)


def fold_error(
    X: np.ndarray,
    y: np.ndarray,
    folds: list[np.ndarray],
    fold: int,
    make_model: Callable[[], object],
) -> tuple[float, float]:
    """Fit on every fold but `fold`; return (train MSE, held-out MSE)."""
    test_idx = folds[fold]
    train_idx = np.concatenate([f for i, f in enumerate(folds) if i != fold])

    model = make_model()
    model.fit(X[train_idx], y[train_idx])
    train_mse = mean_squared_error(y[train_idx], model.predict(X[train_idx]))
    test_mse = mean_squared_error(y[test_idx], model.predict(X[test_idx]))
    return float(train_mse), float(test_mse)


def cross_validated_error(
    X,
    y,
    make_model: Callable[[], object],
    rng: np.random.Generator,
    n_folds: int = CV_FOLDS,
    n_jobs: int = 1,
) -> dict:
    """
    Estimate generalisation error with a hand-rolled k-fold loop.

    Parameters
    ----------
    X, y : array-like
        Design matrix and target.
    make_model : callable
        Zero-argument factory returning an unfitted estimator with
        fit/predict. Called once per fold.
    rng : np.random.Generator
        Drives fold assignment; pass the pipeline's generator for reproducibility.
    n_folds : int
        Number of folds.
    n_jobs : int
        Folds are independent; >1 evaluates them with joblib.

    Returns
    -------
    dict
        'train_mse' : float — mean training-fold MSE
        'test_mse'  : float — mean held-out MSE (generalisation estimate)
        'per_fold'  : pd.DataFrame — one row per fold
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    folds = assign_folds(len(y), n_folds, rng)

    errors = Parallel(n_jobs=n_jobs)(
        delayed(fold_error)(X, y, folds, i, make_model) for i in range(n_folds)
    )
    per_fold = pd.DataFrame(errors, columns=["train_mse", "test_mse"])
    per_fold.index.name = "fold"
    return {
        "train_mse": float(per_fold["train_mse"].mean()),
        "test_mse": float(per_fold["test_mse"].mean()),
        "per_fold": per_fold,
    }


# ════════════════════════════════════════════════════════════════════════════
# Stage 2 — LASSO
# ════════════════════════════════════════════════════════════════════════════

def _linear_model(alpha: float):
    if alpha < 0:
        raise ValueError(f"alpha must be >= 0, got {alpha}")
    return LinearRegression() if alpha == 0 else Lasso(alpha=alpha, max_iter=MAX_ITER)


def fit_lasso(X, y, alpha: float):
    """
    Fit an L1-penalised linear model at a single penalty.

    alpha == 0 is ordinary least squares; sklearn's Lasso advises against
    coordinate descent without a penalty, so LinearRegression is fitted instead.
    """
    return _linear_model(alpha).fit(X, y)


def one_se_alpha(
    alphas: np.ndarray,
    mean_mse: np.ndarray,
    se_mse: np.ndarray,
    se_multiple: float = SE_MULTIPLE,
) -> tuple[float, float]:
    """
    Apply the one-standard-error rule to a CV error curve.

    Returns
    -------
    (alpha_min, alpha_se) : tuple of float
        alpha_min minimises mean CV MSE; alpha_se is the largest penalty whose
        mean CV MSE is within `se_multiple` standard errors of that minimum.
    """
    alphas = np.asarray(alphas, dtype=float)
    mean_mse = np.asarray(mean_mse, dtype=float)
    se_mse = np.asarray(se_mse, dtype=float)

    best = int(np.argmin(mean_mse))
    alpha_min = alphas[best]
    threshold = mean_mse[best] + se_multiple * se_mse[best]
    within = (mean_mse <= threshold) & (alphas >= alpha_min)
    return float(alpha_min), float(alphas[within].max())


def select_lasso_penalty(
    X,
    y,
    rng: np.random.Generator,
    n_folds: int = CV_FOLDS,
    se_multiple: float = SE_MULTIPLE,
) -> dict:
    """
    Cross-validate LASSO over sklearn's automatic penalty path.

    Returns
    -------
    dict
        'alphas'    : penalty path (descending)
        'mean_mse'  : mean CV MSE per penalty
        'se_mse'    : standard error of CV MSE per penalty
        'alpha_min' : penalty with minimum mean CV MSE
        'alpha_se'  : one-SE penalty (operating point)
        'lasso_cv'  : fitted LassoCV
    """
    cv = KFold(n_splits=n_folds, shuffle=True, random_state=seed_from(rng))
    lasso_cv = LassoCV(cv=cv, max_iter=MAX_ITER).fit(X, y)

    mse_path = lasso_cv.mse_path_                      # (n_alphas, n_folds)
    mean_mse = mse_path.mean(axis=1)
    se_mse = mse_path.std(axis=1, ddof=1) / np.sqrt(mse_path.shape[1])
    alpha_min, alpha_se = one_se_alpha(lasso_cv.alphas_, mean_mse, se_mse, se_multiple)

    print(f"[select_lasso_penalty] {len(lasso_cv.alphas_)} penalties × {n_folds} folds")
    print(f"  alpha_min : {alpha_min:.5f}  (CV MSE {mean_mse.min():.4f})")
    print(f"  alpha_1se : {alpha_se:.5f}  ({se_multiple:g} SE rule)\n")
    return {
        "alphas": lasso_cv.alphas_,
        "mean_mse": mean_mse,
        "se_mse": se_mse,
        "alpha_min": alpha_min,
        "alpha_se": alpha_se,
        "lasso_cv": lasso_cv,
    }


def run_lasso(
    X: pd.DataFrame,
    y: pd.Series,
    rng: np.random.Generator,
    n_folds: int = CV_FOLDS,
    se_multiple: float = SE_MULTIPLE,
) -> dict:
    """
    Standardise features, pick the one-SE penalty and refit there.

    Returns
    -------
    dict
        'scaler'       : StandardScaler fitted on X
        'model'        : Lasso refitted at alpha_se
        'coefficients' : pd.Series of standardised coefficients by feature
        'selected'     : features with a non-zero coefficient
        'dropped'      : features shrunk to exactly zero
        plus every key returned by select_lasso_penalty().
    """
    scaler = StandardScaler()
    X_std = scaler.fit_transform(X.values)

    selection = select_lasso_penalty(X_std, y.values, rng, n_folds, se_multiple)
    model = fit_lasso(X_std, y.values, selection["alpha_se"])

    coefficients = pd.Series(model.coef_, index=X.columns, name="coef")
    selected = coefficients.index[coefficients != 0].tolist()
    dropped = coefficients.index[coefficients == 0].tolist()

    print("[run_lasso] Standardised coefficients at alpha_1se:")
    print(coefficients.round(4).sort_values(key=np.abs, ascending=False).to_string())
    print(f"  Kept    : {len(selected)}  {selected}")
    print(f"  Dropped : {len(dropped)}  {dropped}\n")

    return {
        **selection,
        "scaler": scaler,
        "model": model,
        "coefficients": coefficients,
        "selected": selected,
        "dropped": dropped,
    }


def plot_lasso_path(X_std: np.ndarray, y: np.ndarray, lasso: dict, feature_names: list[str]) -> plt.Figure:
    """Coefficient paths over the CV penalty grid with alpha_min / alpha_1se marked."""
    alphas, coefs, _ = lasso_path(X_std, y, alphas=lasso["alphas"], max_iter=MAX_ITER)

    fig, ax = plt.subplots(figsize=(8, 5))
    for name, path in zip(feature_names, coefs):
        ax.plot(np.log10(alphas), path, label=name)
    ax.axvline(np.log10(lasso["alpha_min"]), ls="--", c="grey", label="alpha_min")
    ax.axvline(np.log10(lasso["alpha_se"]), ls=":", c="black", label="alpha_1se")
    ax.set_xlabel("log10(alpha)")
    ax.set_ylabel("standardised coefficient")
    ax.set_title("LASSO coefficient paths")
    ax.legend(fontsize=7, ncol=2)
    return show_figure(fig)


def plot_cv_curve(lasso: dict) -> plt.Figure:
    """Mean CV MSE ± 1 SE against log10(alpha)."""
    log_alpha = np.log10(lasso["alphas"])
    fig, ax = plt.subplots(figsize=(7, 4))
    ax.errorbar(log_alpha, lasso["mean_mse"], yerr=lasso["se_mse"],
                fmt="o", ms=3, ecolor="lightgrey", c="tab:red")
    ax.axvline(np.log10(lasso["alpha_min"]), ls="--", c="grey")
    ax.axvline(np.log10(lasso["alpha_se"]), ls=":", c="black")
    ax.set_xlabel("log10(alpha)")
    ax.set_ylabel("CV mean squared error")
    ax.set_title("LASSO cross-validation error")
    return show_figure(fig)


# ════════════════════════════════════════════════════════════════════════════
# Stage 3 — PCA + OLS
# ════════════════════════════════════════════════════════════════════════════

def fit_pca(X: pd.DataFrame, n_components: int = N_COMPONENTS) -> dict:
    """
    Standardise X, compute its correlation matrix and principal components.

    Returns
    -------
    dict
        'scaler'      : StandardScaler fitted on X
        'corr'        : pd.DataFrame correlation matrix of X
        'eigenvalues' : eigenvalues of the correlation matrix, descending
        'pca'         : PCA with all components (for the scree plot)
        'scores'      : pd.DataFrame of the first `n_components` PC scores
        'loadings'    : pd.DataFrame variable/component correlations
    """
    if n_components < 1 or n_components > X.shape[1]:
        raise ValueError(f"n_components must be in [1, {X.shape[1]}], got {n_components}")

    scaler = StandardScaler()
    X_std = scaler.fit_transform(X.values)
    corr = pd.DataFrame(np.corrcoef(X_std, rowvar=False), index=X.columns, columns=X.columns)
    eigenvalues = np.sort(np.linalg.eigvalsh(corr.values))[::-1]

    pca = PCA().fit(X_std)
    pc_names = [f"PC{i + 1}" for i in range(pca.n_components_)]
    scores = pd.DataFrame(pca.transform(X_std)[:, :n_components], columns=pc_names[:n_components])
    # components scaled by sqrt(eigenvalue) of the correlation matrix are the
    # variable/component correlations
    loadings = pd.DataFrame(
        pca.components_.T * np.sqrt(np.clip(eigenvalues[:pca.n_components_], 0, None)),
        index=X.columns,
        columns=pc_names,
    )

    print(f"[fit_pca] {X.shape[1]} standardised features → {n_components} components")
    ratio = pd.Series(pca.explained_variance_ratio_, index=pc_names)
    print(f"  Explained variance ratio:\n{ratio.round(4).to_string()}")
    print(f"  Cumulative (first {n_components}) : {ratio.iloc[:n_components].sum():.4f}\n")
    return {
        "scaler": scaler,
        "corr": corr,
        "eigenvalues": eigenvalues,
        "pca": pca,
        "scores": scores,
        "loadings": loadings,
    }


def fit_pca_ols(scores: pd.DataFrame, y: pd.Series):
    """OLS of the target on PC scores; returns the statsmodels results object."""
    design = sm.add_constant(scores.astype(np.float64))
    results = sm.OLS(np.asarray(y, dtype=np.float64), design).fit()

    table = pd.DataFrame({
        "coef": results.params,
        "std_err": results.bse,
        "p_value": results.pvalues,
    })
    print("[fit_pca_ols] OLS on principal components:")
    print(table.round(4).to_string())
    print(f"  R²        : {results.rsquared:.4f}")
    print(f"  Train MSE : {np.mean(results.resid ** 2):.4f}\n")
    return results


def make_pca_ols(n_components: int = N_COMPONENTS) -> Pipeline:
    """Unfitted StandardScaler → PCA → OLS pipeline for cross_validated_error()."""
    return Pipeline([
        ("scaler", StandardScaler()),
        ("pca", PCA(n_components=n_components)),
        ("ols", LinearRegression()),
    ])


def make_lasso(alpha: float) -> Pipeline:
    """Unfitted StandardScaler → Lasso pipeline for cross_validated_error()."""
    return Pipeline([
        ("scaler", StandardScaler()),
        ("lasso", _linear_model(alpha)),
    ])


def plot_scree(pca_fit: dict) -> plt.Figure:
    """Eigenvalue (bar) and cumulative explained variance (line) per component."""
    ratio = pca_fit["pca"].explained_variance_ratio_
    idx = np.arange(1, len(ratio) + 1)

    fig, ax = plt.subplots(figsize=(7, 4))
    ax.bar(idx, pca_fit["eigenvalues"], color="tab:blue", alpha=0.7)
    ax.set_xlabel("principal component")
    ax.set_ylabel("eigenvalue")
    ax2 = ax.twinx()
    ax2.plot(idx, np.cumsum(ratio), "o-", c="tab:orange")
    ax2.set_ylim(0, 1.05)
    ax2.set_ylabel("cumulative explained variance")
    ax.set_title("Scree plot")
    return show_figure(fig)


def plot_correlation_circle(pca_fit: dict) -> plt.Figure:
    """Variables' correlations with PC1 and PC2 on the unit circle."""
    loadings = pca_fit["loadings"]
    fig, ax = plt.subplots(figsize=(6, 6))
    ax.add_patch(plt.Circle((0, 0), 1, fill=False, ls="--", color="grey"))
    for name, (x, y) in loadings[["PC1", "PC2"]].iterrows():
        ax.arrow(0, 0, x, y, head_width=0.02, length_includes_head=True, color="tab:blue")
        ax.text(x * 1.08, y * 1.08, name, fontsize=8, ha="center", va="center")
    ax.set_xlim(-1.1, 1.1)
    ax.set_ylim(-1.1, 1.1)
    ax.axhline(0, c="lightgrey", lw=0.5)
    ax.axvline(0, c="lightgrey", lw=0.5)
    ax.set_xlabel("PC1")
    ax.set_ylabel("PC2")
    ax.set_aspect("equal")
    ax.set_title("Variable correlation circle")
    return show_figure(fig)


# ════════════════════════════════════════════════════════════════════════════
# Stage 4 — Error Comparison
# ════════════════════════════════════════════════════════════════════════════

def compare_regression_errors(results: dict[str, dict]) -> pd.DataFrame:
    """Tabulate {'model name': cross_validated_error() output} side by side."""
    table = pd.DataFrame(
        {name: {"train_mse": r["train_mse"], "test_mse": r["test_mse"]}
         for name, r in results.items()}
    ).T.round(4)

    print("=" * 60)
    print("REGRESSION — Manual k-fold CV Error")
    print("=" * 60)
    print(table.to_string())
    print()
    return table
