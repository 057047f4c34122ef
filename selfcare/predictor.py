"""
SelfCare Coordinator - Global Model Predictor

Applies the persisted global model to the four vital-sign features:

    prediction = bias + w1·heartrate + w2·diastolic + w3·systolic + w4·age

The result is rounded to one decimal place, halves away from zero
(74.25 -> 74.3, -74.25 -> -74.3).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence, Tuple

from .errors import ModelNotReadyError, NonFiniteModelError, SchemaMismatchError
from .records import NUM_FEATURES, GlobalModel


@dataclass(frozen=True)
class PredictionInput:
    """Input features for a life expectancy prediction."""
    heartrate_average_last_3_days: float
    blood_pressure_diastolic: float
    blood_pressure_sistolic: float
    age: float

    def as_vector(self) -> Tuple[float, ...]:
        return (
            self.heartrate_average_last_3_days,
            self.blood_pressure_diastolic,
            self.blood_pressure_sistolic,
            self.age,
        )


def round_half_away_from_zero(value: float, places: int = 1) -> float:
    # Decimal on the shortest repr, so 74.25 is treated as exactly 74.25
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_HALF_UP))


def raw_prediction(model: GlobalModel, features: Sequence[float]) -> float:
    if model is None:
        raise ModelNotReadyError()
    if len(model.weights) != NUM_FEATURES:
        raise SchemaMismatchError(
            f"The model must contain exactly {NUM_FEATURES} weights, "
            f"but it contains {len(model.weights)}."
        )
    if len(features) != NUM_FEATURES:
        raise SchemaMismatchError(
            f"Expected {NUM_FEATURES} features, got {len(features)}."
        )
    value = model.bias + sum(w * float(x) for w, x in zip(model.weights, features))
    if not math.isfinite(value):
        raise NonFiniteModelError()
    return value


def predict(model: Optional[GlobalModel], features: Sequence[float]) -> float:
    """
    Predict the life expectancy for one feature vector.

    Raises:
        ModelNotReadyError: no global model has been aggregated yet
        SchemaMismatchError: the model or the input does not have 4 entries
        NonFiniteModelError: the model parameters (or the result) are not finite
    """
    return round_half_away_from_zero(raw_prediction(model, features), places=1)
