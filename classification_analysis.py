"""
classification_analysis.py
==========================
Blood-Pressure Category Classification — KNN & One-Hot Linear Classifier
=========================================================================

Predicts the ordinal blood-pressure category (normal / elevated / stage_1 /
stage_2 / crisis, codes 1..5) from the other risk factors of a visit.
Systolic and diastolic pressure define the label and are never features.

Both classifiers are scored with category_loss(): the mean squared distance
between predicted and observed category codes, scaled to [0, 1], so that
calling a crisis "normal" costs far more than calling it "stage_2".

Pipeline Stages
---------------
1. split_and_standardize(...)  → stratified 80/20 split, per-partition scaling
2. tune_knn(...)               → category_loss over a sweep of k
3. fit_one_hot_classifier(...) → normal-equation solve on indicator targets
4. evaluate_model(...)         → loss, accuracy, report + confusion matrix
5. compare_classifiers(...)    → KNN vs one-hot table
"""

from __future__ import annotations

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from sklearn.metrics import (
    accuracy_score,
    classification_report,
    ConfusionMatrixDisplay,
)
from sklearn.model_selection import train_test_split
from sklearn.neighbors import KNeighborsClassifier
from sklearn.preprocessing import StandardScaler

from cohort_data import BP_CATEGORIES, seed_from, show_figure

# ── Global constants ─────────────────────────────────────────────────────────
CATEGORY_CODES: list[int] = sorted(BP_CATEGORIES)

# (max code - min code)^2; 16 for five categories
MAX_CATEGORY_DISTANCE_SQ: int = (max(CATEGORY_CODES) - min(CATEGORY_CODES)) ** 2

K_RANGE:   range = range(1, 41)   # neighbour counts swept by tune_knn()
TEST_SIZE: float = 0.20           # 80 / 20 train-test split


# ════════════════════════════════════════════════════════════════════════════
# Stage 1 — Penalised Loss
# ════════════════════════════════════════════════════════════════════════════

def category_loss(predicted, observed) -> float:
    """
    Mean squared category distance normalised by the largest possible one.

    0.0 means every prediction is exact; 1.0 means every prediction is as far
    from the truth as the category scale allows (e.g. crisis vs normal).

    Raises
    ------
    ValueError
        If the inputs differ in length or are empty.
    """
    predicted = np.asarray(predicted, dtype=float)
    observed = np.asarray(observed, dtype=float)
    if predicted.shape != observed.shape:
        raise ValueError(
            f"predicted and observed differ in shape: {predicted.shape} vs {observed.shape}"
        )
    if predicted.size == 0:
        raise ValueError("category_loss needs at least one observation")
    return float(np.mean((predicted - observed) ** 2) / MAX_CATEGORY_DISTANCE_SQ)


# ════════════════════════════════════════════════════════════════════════════
# Stage 2 — Split + KNN Grid Search
# ════════════════════════════════════════════════════════════════════════════

def split_and_standardize(
    X,
    y,
    rng: np.random.Generator,
    test_size: float = TEST_SIZE,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Stratified train/test split, then scale each partition by its own mean/std.

    Returns
    -------
    X_train, X_test, y_train, y_test : np.ndarray
        X_* are standardised (zero mean, unit variance within the partition);
        y_* are integer category codes.
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y).astype(int)
    X_train, X_test, y_train, y_test = train_test_split(
        X, y,
        test_size=test_size,
        random_state=seed_from(rng),
        stratify=y,                 # keep category proportions in both sets
    )
    X_train = StandardScaler().fit_transform(X_train)
    X_test = StandardScaler().fit_transform(X_test)

    print("[split_and_standardize] Stratified split, per-partition scaling")
    print(f"  Train : {X_train.shape[0]} samples")
    print(f"  Test  : {X_test.shape[0]} samples\n")
    return X_train, X_test, y_train, y_test


def knn_loss(X_train, y_train, X_test, y_test, k: int) -> float:
    """Fit KNN with `k` neighbours on the training set; category_loss on the test set."""
    knn = KNeighborsClassifier(n_neighbors=k).fit(X_train, y_train)
    return category_loss(knn.predict(X_test), y_test)


def tune_knn(
    X_train: np.ndarray,
    y_train: np.ndarray,
    X_test: np.ndarray,
    y_test: np.ndarray,
    k_range=K_RANGE,
    n_jobs: int = 1,
) -> tuple[KNeighborsClassifier, int, pd.DataFrame]:
    """
    Sweep k and keep the neighbour count with the lowest test category_loss.

    k values larger than the training set are skipped. Ties resolve to the
    smallest k.

    Returns
    -------
    best_model : KNeighborsClassifier
        Refitted on X_train with the best k.
    best_k : int
    results : pd.DataFrame
        Columns 'k' and 'loss', one row per evaluated k.

    Raises
    ------
    ValueError
        If no k in `k_range` is usable.
    """
    ks = [k for k in k_range if 1 <= k <= len(y_train)]
    if not ks:
        raise ValueError(f"No usable k in {k_range!r} for {len(y_train)} training samples")

    losses = Parallel(n_jobs=n_jobs)(
        delayed(knn_loss)(X_train, y_train, X_test, y_test, k) for k in ks
    )
    results = pd.DataFrame({"k": ks, "loss": losses})
    best_k = int(results.loc[results["loss"].idxmin(), "k"])
    best_model = KNeighborsClassifier(n_neighbors=best_k).fit(X_train, y_train)

    print("=" * 60)
    print("KNN GRID SEARCH — category_loss on test set")
    print("=" * 60)
    print(f"  k range   : {ks[0]}..{ks[-1]}  ({len(ks)} values)")
    print(f"  Best k    : {best_k}")
    print(f"  Best loss : {results['loss'].min():.4f}\n")
    return best_model, best_k, results


def plot_k_curve(results: pd.DataFrame, best_k: int) -> plt.Figure:
    fig, ax = plt.subplots(figsize=(7, 4))
    ax.plot(results["k"], results["loss"], "o-", ms=3)
    ax.axvline(best_k, ls="--", c="grey", label=f"best k = {best_k}")
    ax.set_xlabel("k (n_neighbors)")
    ax.set_ylabel("category loss (test)")
    ax.set_title("KNN — k vs penalised loss")
    ax.legend()
    return show_figure(fig)


# ════════════════════════════════════════════════════════════════════════════
# Stage 3 — One-Hot Linear Classifier
# ════════════════════════════════════════════════════════════════════════════

def one_hot_encode(y, categories: list[int] = CATEGORY_CODES) -> np.ndarray:
    """
    Indicator matrix with one column per category, in `categories` order.

    Raises
    ------
    ValueError
        If `y` contains a value outside `categories` (rows must sum to 1).
    """
    y = np.asarray(y)
    unknown = set(np.unique(y).tolist()) - set(categories)
    if unknown:
        raise ValueError(f"Unknown categories {sorted(unknown)}; expected {categories}")
    return (y[:, None] == np.asarray(categories)[None, :]).astype(float)


def _with_intercept(X) -> np.ndarray:
    X = np.asarray(X, dtype=float)
    return np.column_stack([np.ones(len(X)), X])


def fit_one_hot_classifier(X, y, categories: list[int] = CATEGORY_CODES) -> np.ndarray:
    """
    Solve XᵀX B = XᵀY for the coefficient matrix B.

    X gets an intercept column; Y is one_hot_encode(y). B has shape
    (n_features + 1, n_categories): one score column per category.

    Raises
    ------
    numpy.linalg.LinAlgError
        If XᵀX is singular (e.g. a constant or duplicated feature).
    """
    design = _with_intercept(X)
    indicators = one_hot_encode(y, categories)
    return np.linalg.solve(design.T @ design, design.T @ indicators)


def predict_one_hot(coef: np.ndarray, X, categories: list[int] = CATEGORY_CODES) -> np.ndarray:
    """Category code of the highest score per row."""
    scores = _with_intercept(X) @ coef
    return np.asarray(categories)[np.argmax(scores, axis=1)]


# ════════════════════════════════════════════════════════════════════════════
# Stage 4 — Evaluate & Compare
# ════════════════════════════════════════════════════════════════════════════

def evaluate_model(y_true, y_pred, name: str, plot: bool = True) -> dict:
    """
    Report category_loss and accuracy for one set of predictions.

    Prints a classification report and, when `plot`, shows a confusion matrix
    labelled with category names.

    Returns
    -------
    dict : {'category_loss': float, 'accuracy': float}
    """
    y_true = np.asarray(y_true).astype(int)
    y_pred = np.asarray(y_pred).astype(int)
    labels = [c for c in CATEGORY_CODES if c in set(y_true) | set(y_pred)]
    names = [BP_CATEGORIES[c] for c in labels]

    metrics = {
        "category_loss": category_loss(y_pred, y_true),
        "accuracy": accuracy_score(y_true, y_pred),
    }

    print("=" * 60)
    print(f"MODEL EVALUATION — {name}")
    print("=" * 60)
    print(f"  Category loss : {metrics['category_loss']:.4f}")
    print(f"  Accuracy      : {metrics['accuracy']:.4f}")
    print()
    print("Classification Report:")
    print(classification_report(
        y_true, y_pred,
        labels=labels,
        target_names=names,
        zero_division=0,
    ))

    if plot:
        fig, ax = plt.subplots(figsize=(6, 5))
        ConfusionMatrixDisplay.from_predictions(
            y_true, y_pred,
            labels=labels,
            display_labels=names,
            colorbar=True,
            ax=ax,
            cmap="Blues",
        )
        ax.set_title(f"Confusion Matrix — {name}", fontsize=12)
        show_figure(fig)

    return metrics


def compare_classifiers(metrics: dict[str, dict]) -> pd.DataFrame:
    """Tabulate {'model name': evaluate_model() output} side by side."""
    table = pd.DataFrame(metrics).T.round(4)
    print("=" * 60)
    print("CLASSIFICATION — KNN (test) vs One-Hot Linear (in-sample)")
    print("=" * 60)
    print(table.to_string())
    print()
    return table
