import numpy as np
import pandas as pd
import pytest

import classification_analysis as ca


# ── Penalised loss ───────────────────────────────────────────────────────────

def test_perfect_prediction_costs_nothing():
    assert ca.category_loss([1, 2, 3], [1, 2, 3]) == 0.0
    assert ca.category_loss([5, 4, 1, 1], [5, 4, 1, 1]) == 0.0


def test_maximal_distance_costs_one():
    assert ca.category_loss([5, 5, 5], [1, 1, 1]) == 1.0
    assert ca.category_loss([1, 1], [5, 5]) == 1.0


def test_loss_scales_with_distance():
    assert ca.category_loss([2], [1]) == pytest.approx(1 / 16)
    assert ca.category_loss([3], [1]) == pytest.approx(4 / 16)
    assert ca.category_loss([2, 4], [1, 1]) == pytest.approx((1 + 9) / 2 / 16)


def test_loss_invariant_under_distance_preserving_shift():
    observed = [1, 2, 3, 2]
    predicted = [2, 2, 4, 1]
    shifted = ca.category_loss(np.add(predicted, 1), np.add(observed, 1))
    assert shifted == ca.category_loss(predicted, observed)


def test_normaliser_is_squared_category_span():
    assert ca.MAX_CATEGORY_DISTANCE_SQ == 16


@pytest.mark.parametrize("predicted, observed", [([1, 2], [1, 2, 3]), ([], [])])
def test_loss_rejects_bad_inputs(predicted, observed):
    with pytest.raises(ValueError):
        ca.category_loss(predicted, observed)


# ── One-hot encoding & linear classifier ─────────────────────────────────────

def test_one_hot_rows_sum_to_one():
    y = np.array([1, 5, 3, 3, 2, 4, 1])
    Y = ca.one_hot_encode(y)
    assert Y.shape == (7, 5)
    np.testing.assert_array_equal(Y.sum(axis=1), np.ones(7))
    np.testing.assert_array_equal(Y[1], [0, 0, 0, 0, 1])
    np.testing.assert_array_equal(np.asarray(ca.CATEGORY_CODES)[Y.argmax(axis=1)], y)


def test_one_hot_rejects_unknown_category():
    with pytest.raises(ValueError, match="Unknown"):
        ca.one_hot_encode([1, 2, 6])


@pytest.fixture
def triangle_clusters():
    gen = np.random.default_rng(2)
    centres = {1: (0.0, 0.0), 3: (10.0, 0.0), 5: (0.0, 10.0)}
    X, y = [], []
    for code, centre in centres.items():
        X.append(gen.normal(centre, 0.3, size=(30, 2)))
        y.extend([code] * 30)
    return np.vstack(X), np.array(y)


def test_one_hot_classifier_solves_normal_equations(triangle_clusters):
    X, y = triangle_clusters
    coef = ca.fit_one_hot_classifier(X, y)
    assert coef.shape == (3, 5)

    design = np.column_stack([np.ones(len(X)), X])
    np.testing.assert_allclose(
        design.T @ design @ coef, design.T @ ca.one_hot_encode(y), atol=1e-8)


def test_one_hot_classifier_separates_clusters(triangle_clusters):
    X, y = triangle_clusters
    coef = ca.fit_one_hot_classifier(X, y)
    pred = ca.predict_one_hot(coef, X)
    np.testing.assert_array_equal(pred, y)
    assert ca.category_loss(pred, y) == 0.0


def test_one_hot_classifier_dead_feature_raises(triangle_clusters):
    X, y = triangle_clusters
    X_dead = np.column_stack([X, np.zeros(len(X))])
    with pytest.raises(np.linalg.LinAlgError):
        ca.fit_one_hot_classifier(X_dead, y)


# ── Split + KNN ──────────────────────────────────────────────────────────────

@pytest.fixture
def five_class_data():
    gen = np.random.default_rng(4)
    y = np.repeat(ca.CATEGORY_CODES, 20)
    X = np.column_stack([y * 3.0 + gen.normal(0, 1, len(y)), gen.normal(50, 10, len(y))])
    return X, y


def test_split_is_stratified_and_standardised(five_class_data, rng):
    X, y = five_class_data
    X_train, X_test, y_train, y_test = ca.split_and_standardize(X, y, rng)

    assert len(y_train) == 80 and len(y_test) == 20
    assert pd.Series(y_test).value_counts().tolist() == [4] * 5
    np.testing.assert_allclose(X_train.mean(axis=0), 0, atol=1e-10)
    np.testing.assert_allclose(X_test.mean(axis=0), 0, atol=1e-10)
    np.testing.assert_allclose(X_test.std(axis=0), 1, atol=1e-10)


def test_tune_knn_picks_lowest_loss(five_class_data, rng):
    X, y = five_class_data
    X_train, X_test, y_train, y_test = ca.split_and_standardize(X, y, rng)
    model, best_k, results = ca.tune_knn(X_train, y_train, X_test, y_test, k_range=range(1, 16))

    assert results["k"].tolist() == list(range(1, 16))
    assert results.loc[results["k"] == best_k, "loss"].item() == results["loss"].min()
    assert model.n_neighbors == best_k
    assert ca.category_loss(model.predict(X_test), y_test) == pytest.approx(results["loss"].min())
    ca.plot_k_curve(results, best_k)


def test_tune_knn_ties_resolve_to_smallest_k():
    X_train = np.array([[0.0], [0.1], [0.2], [10.0], [10.1], [10.2]])
    y_train = np.array([1, 1, 1, 5, 5, 5])
    X_test = np.array([[0.05], [10.05]])
    y_test = np.array([1, 5])
    _, best_k, results = ca.tune_knn(X_train, y_train, X_test, y_test, k_range=range(1, 4))
    assert (results["loss"] == 0).all()
    assert best_k == 1


def test_tune_knn_skips_k_beyond_training_size():
    X_train = np.array([[0.0], [1.0], [2.0]])
    y_train = np.array([1, 1, 2])
    _, _, results = ca.tune_knn(X_train, y_train, X_train, y_train, k_range=range(1, 10))
    assert results["k"].tolist() == [1, 2, 3]

    with pytest.raises(ValueError):
        ca.tune_knn(X_train, y_train, X_train, y_train, k_range=range(5, 9))


def test_tune_knn_parallel_matches_sequential(five_class_data, rng):
    X, y = five_class_data
    X_train, X_test, y_train, y_test = ca.split_and_standardize(X, y, rng)
    _, k_seq, res_seq = ca.tune_knn(X_train, y_train, X_test, y_test, k_range=range(1, 8))
    _, k_par, res_par = ca.tune_knn(
        X_train, y_train, X_test, y_test, k_range=range(1, 8), n_jobs=2)
    assert k_seq == k_par
    pd.testing.assert_frame_equal(res_seq, res_par)


# ── Evaluation ───────────────────────────────────────────────────────────────

def test_evaluate_and_compare():
    y_true = np.array([1, 2, 3, 4, 5, 5])
    y_pred = np.array([1, 2, 3, 4, 5, 1])
    metrics = ca.evaluate_model(y_true, y_pred, "toy")
    assert metrics["category_loss"] == pytest.approx(16 / 6 / 16)
    assert metrics["accuracy"] == pytest.approx(5 / 6)

    table = ca.compare_classifiers({"toy": metrics, "perfect": ca.evaluate_model(y_true, y_true, "p", plot=False)})
    assert table.loc["perfect", "category_loss"] == 0.0
