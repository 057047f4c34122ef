"""
SelfCare Coordinator - Predictor Tests

Run with: pytest selfcare/tests/test_predictor.py -v
"""

import pytest

from selfcare.errors import ModelNotReadyError, NonFiniteModelError, SchemaMismatchError
from selfcare.predictor import PredictionInput, predict, raw_prediction, round_half_away_from_zero
from selfcare.records import GlobalModel


@pytest.fixture
def global_model():
    return GlobalModel(
        weights=(0.1, -0.05, 0.02, -0.03),
        bias=70.0,
        total_samples=40,
        contributor_count=2,
    )


class TestPredict:
    """Tests for predictions from the global model."""

    def test_half_rounds_up(self, global_model):
        """70 + 7.2 - 4 + 2.4 - 1.35 = 74.25 -> 74.3"""
        features = PredictionInput(72, 80, 120, 45).as_vector()

        assert raw_prediction(global_model, features) == pytest.approx(74.25)
        assert predict(global_model, features) == 74.3

    def test_missing_model(self):
        with pytest.raises(ModelNotReadyError):
            predict(None, [72, 80, 120, 45])

    def test_model_with_wrong_weight_count(self):
        model = GlobalModel(weights=(0.1, 0.2), bias=1.0, total_samples=1, contributor_count=1)
        with pytest.raises(SchemaMismatchError):
            predict(model, [72, 80, 120, 45])

    @pytest.mark.parametrize(
        "weights, bias",
        [
            ((float("inf"), 0.0, 0.0, 0.0), 70.0),
            ((0.1, 0.2, 0.3, 0.4), float("nan")),
            ((1e308, 1e308, 0.0, 0.0), 0.0),
        ],
    )
    def test_non_finite_model(self, weights, bias):
        model = GlobalModel(weights=weights, bias=bias, total_samples=3, contributor_count=1)

        with pytest.raises(NonFiniteModelError) as exc_info:
            predict(model, [72, 80, 120, 45])

        assert exc_info.value.kind == "model_not_finite"

    def test_wrong_feature_count(self, global_model):
        with pytest.raises(SchemaMismatchError):
            predict(global_model, [72, 80, 120])


class TestRounding:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (74.25, 74.3),
            (-74.25, -74.3),
            (74.24, 74.2),
            (0.05, 0.1),
            (80.0, 80.0),
        ],
    )
    def test_half_away_from_zero(self, value, expected):
        assert round_half_away_from_zero(value) == expected
