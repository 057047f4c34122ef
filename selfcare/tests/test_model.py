"""
SelfCare Coordinator - Local Training Tests

Run with: pytest selfcare/tests/test_model.py -v
"""

import math

import numpy as np
import pytest

from selfcare.errors import EmptyDatasetError, MalformedRecordError, TrainingError
from selfcare.model import LinearRegressionModel, normalize_features, records_to_frame, train
from selfcare.records import FEATURE_NAMES, PatientRecord
from selfcare.tests.factories import diverging_records, make_record


class TestRecordsToFrame:
    """Tests for flattening records into a training matrix."""

    def test_columns_in_feature_order(self, sample_records):
        frame = records_to_frame(sample_records)
        assert list(frame.columns) == list(FEATURE_NAMES) + ["life_expectancy"]
        assert frame.shape == (3, 5)
        assert frame.iloc[1]["age"] == 60.0

    def test_empty_input(self):
        with pytest.raises(EmptyDatasetError):
            records_to_frame([])

    def test_missing_target_is_malformed(self):
        data = make_record().model_dump()
        data["target"] = {}
        with pytest.raises(MalformedRecordError):
            records_to_frame([PatientRecord.model_validate(data)])


class TestTraining:
    """Tests for gradient descent training."""

    def test_train_empty_fails(self):
        with pytest.raises(EmptyDatasetError):
            train([])

    def test_single_epoch_update(self):
        """One step from zero: bias and weights move along the negative gradient."""
        record = make_record(hr=1, dia=2, sys=3, age=4, y=10)
        model = LinearRegressionModel(learning_rate=0.01, epochs=1, history_interval=1)

        result = model.fit([record])

        assert result.bias == pytest.approx(0.1)
        assert result.weights == pytest.approx((0.1, 0.2, 0.3, 0.4))
        # History is recorded after the update
        assert len(result.history) == 1
        assert result.history[0].epoch == 0
        assert result.history[0].mse == pytest.approx((10 - 3.1) ** 2)
        assert result.final_mse == pytest.approx(result.history[0].mse)

    def test_default_history_schedule(self, sample_records):
        result = train(sample_records, learning_rate=1e-6, epochs=1000)

        assert [p.epoch for p in result.history] == list(range(0, 1000, 100))
        assert result.sample_count == 3
        assert result.epochs == 1000
        assert len(result.weights) == 4

    def test_training_is_deterministic(self, sample_records):
        """Identical inputs give bit-identical weights, bias and history."""
        first = train(sample_records)
        second = train(list(sample_records))

        assert first.weights == second.weights
        assert first.bias == second.bias
        assert first.history == second.history

    def test_mse_decreases(self, sample_records):
        result = train(sample_records)
        assert result.history[-1].mse < result.history[0].mse

    def test_divergence_is_reported_not_raised(self, sample_records):
        result = LinearRegressionModel(learning_rate=1.0, epochs=200).fit(sample_records)
        assert not math.isfinite(result.final_mse)

    def test_invalid_hyperparameters(self):
        with pytest.raises(TrainingError):
            LinearRegressionModel(learning_rate=-0.1)


class TestEvaluate:
    """Tests for evaluation metrics."""

    def test_metrics(self, sample_records):
        model = LinearRegressionModel()
        model.fit(sample_records)

        metrics = model.evaluate(sample_records)

        assert set(metrics) == {"mse", "rmse", "mae", "r_squared"}
        assert metrics["rmse"] == pytest.approx(math.sqrt(metrics["mse"]))

    def test_r_squared_undefined_for_single_record(self):
        model = LinearRegressionModel()
        model.fit([make_record()])
        assert math.isnan(model.evaluate([make_record()])["r_squared"])

    def test_diverged_model_reports_nan_metrics(self):
        records = diverging_records()
        model = LinearRegressionModel(learning_rate=1e-6, epochs=1000)
        result = model.fit(records)

        metrics = model.evaluate(records)

        assert not math.isfinite(result.final_mse)
        assert set(metrics) == {"mse", "rmse", "mae", "r_squared"}
        assert all(math.isnan(value) for value in metrics.values())

    def test_unfitted_model(self, sample_records):
        with pytest.raises(RuntimeError):
            LinearRegressionModel().evaluate(sample_records)


class TestNormalizeFeatures:
    def test_zero_variance_column(self):
        X = np.array([[1.0, 5.0], [3.0, 5.0]])
        normalized, stats = normalize_features(X)
        assert normalized[:, 0].tolist() == [-1.0, 1.0]
        assert normalized[:, 1].tolist() == [0.0, 0.0]
        assert stats["stds"] == [1.0, 0.0]
