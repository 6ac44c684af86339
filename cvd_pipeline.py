"""
cvd_pipeline.py
===============
Framingham BMI & Blood-Pressure Risk — Analysis Pipeline
=========================================================

Standalone script running the full exploratory analysis end to end:

Regression   : BMI  ← risk factors + past_bmi + last_exam
               LASSO (one-SE penalty)  vs  OLS on leading principal components
Classification: BP category (normal … crisis) ← risk factors
               KNN (k tuned on category loss)  vs  one-hot linear classifier

Pipeline Stages
---------------
1. load_data()                 → raw visit table (URL or local CSV)
2. add_lag_features(df)        → past_bmi / last_exam per patient
3. run_regression(df, rng)     → LASSO, manual CV, PCA + OLS, comparison
4. run_classification(df, rng) → KNN grid, one-hot classifier, comparison
5. run_sanity_checks(...)      → assert-based checks on every artefact

Usage
-----
    python cvd_pipeline.py                    # fetch the public CSV
    python cvd_pipeline.py frmgham2.csv       # local copy
"""

from __future__ import annotations

import sys

import numpy as np
import pandas as pd

import cohort_data as cd
import classification_analysis as ca
import regression_analysis as ra


# ════════════════════════════════════════════════════════════════════════════
# Regression Pipeline
# ════════════════════════════════════════════════════════════════════════════

def run_regression(df: pd.DataFrame, rng: np.random.Generator, n_jobs: int = 1) -> dict:
    """
    LASSO with one-SE penalty, PCA + OLS on the LASSO-kept features, and a
    manual k-fold comparison of both.

    Returns
    -------
    dict
        'X', 'y'     : dense design matrix and BMI target
        'lasso'      : run_lasso() output
        'pca'        : fit_pca() output
        'ols'        : statsmodels results of BMI on PC scores
        'cv'         : {'LASSO': ..., 'PCA + OLS': ...} cross_validated_error() outputs
        'comparison' : pd.DataFrame error table
    """
    X, y = cd.build_model_frame(df, target=cd.BMI_COL, exclude=[cd.CATEGORY_COL])

    lasso = ra.run_lasso(X, y, rng)
    ra.plot_lasso_path(lasso["scaler"].transform(X.values), y.values, lasso, list(X.columns))
    ra.plot_cv_curve(lasso)

    # Fall back to every feature when LASSO keeps too few for the PCA
    pca_cols = lasso["selected"] if len(lasso["selected"]) >= ra.N_COMPONENTS else list(X.columns)
    n_components = min(ra.N_COMPONENTS, len(pca_cols))
    pca = ra.fit_pca(X[pca_cols], n_components)
    ra.plot_scree(pca)
    ra.plot_correlation_circle(pca)
    ols = ra.fit_pca_ols(pca["scores"], y)

    alpha = lasso["alpha_se"]
    cv = {
        "LASSO": ra.cross_validated_error(
            X, y, lambda: ra.make_lasso(alpha), rng, n_jobs=n_jobs),
        "PCA + OLS": ra.cross_validated_error(
            X[pca_cols], y, lambda: ra.make_pca_ols(n_components), rng, n_jobs=n_jobs),
    }
    comparison = ra.compare_regression_errors(cv)

    return {
        "X": X, "y": y,
        "lasso": lasso,
        "pca": pca,
        "ols": ols,
        "cv": cv,
        "comparison": comparison,
    }


# ════════════════════════════════════════════════════════════════════════════
# Classification Pipeline
# ════════════════════════════════════════════════════════════════════════════

def run_classification(df: pd.DataFrame, rng: np.random.Generator, n_jobs: int = 1) -> dict:
    """
    KNN tuned on test category loss vs an in-sample one-hot linear classifier.

    Returns
    -------
    dict
        'X', 'y'                           : dense design matrix and category codes
        'X_train', 'X_test', 'y_train', 'y_test'
        'knn', 'best_k', 'k_results'       : tune_knn() output
        'one_hot_coef'                     : coefficient matrix B
        'metrics'                          : {'KNN': ..., 'One-hot linear': ...}
        'comparison'                       : pd.DataFrame
    """
    labelled = cd.add_bp_category(df)
    X, y = cd.build_model_frame(
        labelled, target=cd.CATEGORY_COL, exclude=[cd.SYS_COL, cd.DIA_COL])
    y = y.astype(int)

    X_train, X_test, y_train, y_test = ca.split_and_standardize(X, y, rng)
    knn, best_k, k_results = ca.tune_knn(X_train, y_train, X_test, y_test, n_jobs=n_jobs)
    ca.plot_k_curve(k_results, best_k)

    coef = ca.fit_one_hot_classifier(X.values, y.values)
    coef_table = pd.DataFrame(
        coef,
        index=["intercept"] + list(X.columns),
        columns=[cd.BP_CATEGORIES[c] for c in ca.CATEGORY_CODES],
    )
    print("[run_classification] One-hot linear classifier coefficients:")
    print(coef_table.round(4).to_string())
    print()

    metrics = {
        f"KNN (k={best_k})": ca.evaluate_model(y_test, knn.predict(X_test), f"KNN (k={best_k})"),
        "One-hot linear": ca.evaluate_model(
            y.values, ca.predict_one_hot(coef, X.values), "One-hot linear (in-sample)"),
    }
    comparison = ca.compare_classifiers(metrics)

    return {
        "X": X, "y": y,
        "X_train": X_train, "X_test": X_test,
        "y_train": y_train, "y_test": y_test,
        "knn": knn, "best_k": best_k, "k_results": k_results,
        "one_hot_coef": coef,
        "metrics": metrics,
        "comparison": comparison,
    }


# ════════════════════════════════════════════════════════════════════════════
# Sanity Checks
# ════════════════════════════════════════════════════════════════════════════

def run_sanity_checks(regression: dict, classification: dict) -> int:
    """
    Assert-based sanity checks across every pipeline artefact.

    Checks
    ------
     1  Regression X is dense and aligned with y
     1a Regression X keeps past_bmi / last_exam
     1b No first-visit (PERIOD == 1) rows in either design matrix
     2  alpha_1se >= alpha_min
     3  Every LASSO feature is either kept or dropped
     4  Manual CV errors are finite and non-negative
     5  PCA explained variance ratio sums to <= 1
     6  Correlation eigenvalues sum to the feature count
     7  Classification X is dense and aligned with y
     8  Category codes all lie in BP_CATEGORIES
     9  Train + Test == classification rows
    10  Best k lies inside K_RANGE
    11  One-hot indicator rows sum to 1
    12  Category losses in [0, 1]

    Returns
    -------
    int : number of checks passed.

    Raises
    ------
    AssertionError  On the first failing check, with label + FIX hint.
    """
    checks_passed = 0

    def check(condition: bool, label: str, fix: str = "") -> None:
        nonlocal checks_passed
        msg = label + (f"\n         FIX → {fix}" if fix else "")
        assert condition, msg
        checks_passed += 1
        print(f"  [PASS]  {label}")

    print("=" * 60)
    print("SANITY CHECKS")
    print("=" * 60)

    # ── Regression ───────────────────────────────────────────────────────────
    X, y = regression["X"], regression["y"]
    check(
        not X.isna().any().any() and len(X) == len(y),
        f"Regression X dense and aligned  ({X.shape[0]} rows)",
        "build_model_frame() must drop NaN rows before popping the target.",
    )

    lag_cols = [cd.PAST_BMI_COL, cd.LAST_EXAM_COL]
    check(
        all(col in X.columns for col in lag_cols),
        f"Regression X keeps lag features {lag_cols}",
        "build_model_frame() must exempt past_bmi / last_exam from drop_sparse_columns().",
    )
    for name, frame in [("Regression", X), ("Classification", classification["X"])]:
        n_first = int((frame[cd.PERIOD_COL] == 1).sum()) if cd.PERIOD_COL in frame.columns else 0
        check(
            n_first == 0,
            f"{name} X has no first-visit rows  (found {n_first})",
            "Drop rows with a null past_bmi / last_exam before fitting.",
        )

    lasso = regression["lasso"]
    check(
        lasso["alpha_se"] >= lasso["alpha_min"],
        f"alpha_1se ({lasso['alpha_se']:.5f}) >= alpha_min ({lasso['alpha_min']:.5f})",
        "one_se_alpha() must only consider penalties >= alpha_min.",
    )
    check(
        len(lasso["selected"]) + len(lasso["dropped"]) == X.shape[1],
        f"LASSO kept ({len(lasso['selected'])}) + dropped ({len(lasso['dropped'])}) == {X.shape[1]}",
    )

    for name, cv in regression["cv"].items():
        ok = all(np.isfinite(cv[k]) and cv[k] >= 0 for k in ("train_mse", "test_mse"))
        check(ok, f"{name} CV errors finite and >= 0", "Inspect per_fold for NaN folds.")

    pca = regression["pca"]
    ratio_sum = float(pca["pca"].explained_variance_ratio_.sum())
    check(ratio_sum <= 1 + 1e-9, f"PCA explained variance ratio sum <= 1  ({ratio_sum:.4f})")
    n_pca = pca["corr"].shape[0]
    check(
        np.isclose(pca["eigenvalues"].sum(), n_pca),
        f"Correlation eigenvalues sum to {n_pca}",
        "fit_pca() must run on standardised features.",
    )

    # ── Classification ───────────────────────────────────────────────────────
    Xc, yc = classification["X"], classification["y"]
    check(
        not Xc.isna().any().any() and len(Xc) == len(yc),
        f"Classification X dense and aligned  ({Xc.shape[0]} rows)",
    )
    check(
        set(np.unique(yc)) <= set(ca.CATEGORY_CODES),
        f"Category codes within {ca.CATEGORY_CODES}",
        "Check categorize_blood_pressure() — it must return only 1..5 or NaN.",
    )
    n_split = len(classification["y_train"]) + len(classification["y_test"])
    check(
        n_split == len(yc),
        f"Train + Test ({n_split}) == {len(yc)}",
        "Pass the same X/y from build_model_frame() to split_and_standardize().",
    )
    check(
        classification["best_k"] in ca.K_RANGE,
        f"Best k ({classification['best_k']}) in K_RANGE",
    )
    check(
        np.allclose(ca.one_hot_encode(yc).sum(axis=1), 1.0),
        "One-hot indicator rows sum to 1",
    )
    for name, m in classification["metrics"].items():
        check(
            0.0 <= m["category_loss"] <= 1.0,
            f"{name} category loss in [0, 1]  ({m['category_loss']:.4f})",
        )

    print()
    print("=" * 60)
    print(f"  {checks_passed} checks passed")
    print("=" * 60)
    return checks_passed


# ════════════════════════════════════════════════════════════════════════════
# Orchestrator — main()
# ════════════════════════════════════════════════════════════════════════════

def main(source: str = cd.DATASET_URL, seed: int = cd.RANDOM_STATE, n_jobs: int = 1) -> dict:
    """
    End-to-end analysis. One numpy Generator, seeded once, drives every
    stochastic step (LassoCV folds, manual CV folds, train/test split).

        load_data()
            └─► add_lag_features(df)
                    ├─► run_regression(df, rng)
                    └─► run_classification(df, rng)
                            └─► run_sanity_checks(...)

    Returns
    -------
    dict
        'df'             : lag-featured visit table
        'regression'     : run_regression() output
        'classification' : run_classification() output
    """
    print("╔══════════════════════════════════════════════════════╗")
    print("║   Framingham BMI & BP Risk — Pipeline Run            ║")
    print("╚══════════════════════════════════════════════════════╝\n")
    rng = np.random.default_rng(seed)

    # ── Stage 1: Acquire data ────────────────────────────────────────────
    print("── Stage 1: Data Acquisition ──────────────────────────")
    df_raw = cd.load_data(source)
    cd.summarize_cohort(df_raw)

    # ── Stage 2: Feature engineering ─────────────────────────────────────
    print("── Stage 2: Lag Features ──────────────────────────────")
    df = cd.add_lag_features(df_raw)

    # ── Stage 3: Regression ──────────────────────────────────────────────
    print("── Stage 3: BMI Regression ────────────────────────────")
    regression = run_regression(df, rng, n_jobs=n_jobs)

    # ── Stage 4: Classification ──────────────────────────────────────────
    print("── Stage 4: BP Category Classification ────────────────")
    classification = run_classification(df, rng, n_jobs=n_jobs)

    # ── Stage 5: Sanity checks ───────────────────────────────────────────
    print("── Stage 5: Sanity Checks ─────────────────────────────")
    run_sanity_checks(regression, classification)

    print("╔══════════════════════════════════════════════════════╗")
    print("║   Pipeline complete.                                 ║")
    print("╚══════════════════════════════════════════════════════╝")

    return {"df": df, "regression": regression, "classification": classification}


# ── Entry point ──────────────────────────────────────────────────────────────
if __name__ == "__main__":
    results = main(sys.argv[1] if len(sys.argv) > 1 else cd.DATASET_URL)

    # ── Sample predictions from tuned KNN ───────────────────────────────────
    clf = results["classification"]
    print("\n── Sample Predictions from Tuned KNN (first 10) ───────")
    preds = clf["knn"].predict(clf["X_test"][:10])
    for i, (true, pred) in enumerate(zip(clf["y_test"][:10], preds)):
        match = "✓" if true == pred else "✗"
        print(f"  Sample {i+1:02d}: true={cd.BP_CATEGORIES[true]:<9s}  "
              f"pred={cd.BP_CATEGORIES[pred]:<9s}  {match}")

    sys.exit(0)
