"""
Tests for drift statistics and model metric helpers.

Covers:
  - KS statistic against hand-computed CDF gaps
  - PSI with the zero-frequency floor
  - feature_drift dispatch and insufficient-data results
  - Classification / regression metrics and live prediction scoring
"""

import math

import pytest

from db.models import DriftMethod, FeatureType, ModelType
from ml.drift import feature_drift, ks_statistic, population_stability_index
from ml.metrics import calculate_metrics, confusion_matrix, is_correct_prediction, is_number


class TestKSStatistic:
    def test_identical_samples(self):
        assert ks_statistic([1, 2, 3, 4], [4, 3, 2, 1]) == 0.0

    def test_disjoint_samples(self):
        assert ks_statistic([1, 2, 3], [10, 11, 12]) == 1.0

    def test_partial_overlap(self):
        # at x=2: F_base = 2/4, F_cmp = 0/4
        assert ks_statistic([1, 2, 3, 4], [3, 4, 5, 6]) == pytest.approx(0.5)

    def test_empty_sample_rejected(self):
        with pytest.raises(ValueError):
            ks_statistic([], [1.0])


class TestPSI:
    def test_identical_distributions(self):
        assert population_stability_index(["a", "b", "a", "b"], ["b", "a", "b", "a"]) == pytest.approx(0.0)

    def test_shifted_distribution(self):
        base = ["a"] * 50 + ["b"] * 50
        cmp_ = ["a"] * 90 + ["b"] * 10
        expected = (0.9 - 0.5) * math.log(0.9 / 0.5) + (0.1 - 0.5) * math.log(0.1 / 0.5)
        assert population_stability_index(base, cmp_) == pytest.approx(expected)

    def test_new_category_uses_floor(self):
        psi = population_stability_index(["a", "a"], ["a", "c"], floor=0.0001)
        expected = (0.5 - 1.0) * math.log(0.5 / 1.0) + (0.5 - 0.0001) * math.log(0.5 / 0.0001)
        assert psi == pytest.approx(expected)
        assert math.isfinite(psi)


class TestFeatureDrift:
    def test_empty_baseline_is_insufficient(self):
        result = feature_drift(FeatureType.NUMERICAL, [], [1.0, 2.0])
        assert result.drift_score == 1.0
        assert result.is_drift
        assert result.method == DriftMethod.INSUFFICIENT_DATA

    def test_all_null_comparison_is_insufficient(self):
        result = feature_drift(FeatureType.CATEGORICAL, ["a"], [None, None])
        assert result.method == DriftMethod.INSUFFICIENT_DATA
        assert result.comparison_count == 0

    def test_numerical_uses_ks(self):
        result = feature_drift(FeatureType.NUMERICAL, [1, 2, 3], [1, 2, 3])
        assert result.method == DriftMethod.KOLMOGOROV_SMIRNOV
        assert result.drift_score == pytest.approx(0.0)
        assert not result.is_drift

    def test_categorical_uses_psi(self):
        result = feature_drift(FeatureType.CATEGORICAL, ["x"] * 10, ["y"] * 10)
        assert result.method == DriftMethod.POPULATION_STABILITY_INDEX
        assert result.is_drift

    def test_threshold_is_strict(self):
        # KS of exactly the threshold is not drift
        result = feature_drift(FeatureType.NUMERICAL, [1, 2], [2, 3], threshold=0.5)
        assert result.drift_score == pytest.approx(0.5)
        assert not result.is_drift

    def test_structured_values_compared_by_value(self):
        result = feature_drift(FeatureType.TIME_SERIES, [[1, 2], [1, 2]], [[1, 2], [1, 2]])
        assert result.drift_score == pytest.approx(0.0)


class TestMetrics:
    def test_classification(self):
        metrics = calculate_metrics(["a", "a", "b", "b"], ["a", "b", "b", "b"], ModelType.CLASSIFICATION)
        assert metrics.accuracy == pytest.approx(0.75)
        # precision a=1.0, b=2/3 ; recall a=0.5, b=1.0
        assert metrics.precision == pytest.approx((1.0 + 2 / 3) / 2)
        assert metrics.recall == pytest.approx(0.75)
        # macro F1 averages per-class F1: a=2/3, b=0.8
        assert metrics.f1_score == pytest.approx((2 / 3 + 0.8) / 2)

    def test_confusion_matrix_covers_label_union(self):
        matrix = confusion_matrix(["a", "b"], ["a", "c"])
        assert list(matrix.index) == ["a", "b", "c"]
        assert matrix.loc["b", "c"] == 1
        assert matrix.loc["a", "a"] == 1
        assert int(matrix.to_numpy().sum()) == 2

    def test_unseen_predicted_label(self):
        metrics = calculate_metrics(["a", "a"], ["a", "z"], ModelType.CLASSIFICATION)
        assert metrics.accuracy == pytest.approx(0.5)
        assert metrics.precision == pytest.approx(0.5)
        assert metrics.recall == pytest.approx(0.25)

    def test_constant_target_r2(self):
        metrics = calculate_metrics([5.0, 5.0, 5.0], [5.0, 5.0, 5.0], ModelType.REGRESSION)
        assert metrics.r2_score == 0.0
        assert metrics.mse == 0.0
        assert metrics.accuracy == pytest.approx(1.0)

    def test_regression(self):
        metrics = calculate_metrics([10.0, 20.0, 30.0], [10.2, 20.0, 36.0], ModelType.REGRESSION)
        assert metrics.accuracy == pytest.approx(2 / 3)
        assert metrics.mae == pytest.approx((0.2 + 0 + 6) / 3)
        assert metrics.rmse == pytest.approx(math.sqrt((0.04 + 36) / 3))

    def test_prediction_correctness(self):
        assert is_correct_prediction(104, 100)
        assert not is_correct_prediction(106, 100)
        assert is_correct_prediction(0, 0)
        assert not is_correct_prediction(0.01, 0)
        assert is_correct_prediction("spam", "spam")
        assert not is_correct_prediction("spam", "ham")

    def test_is_number_excludes_bool(self):
        assert is_number(1.5)
        assert not is_number(True)
        assert not is_number("1")
