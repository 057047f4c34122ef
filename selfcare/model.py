"""
SelfCare Coordinator - Local Linear Regression Model

This module implements the LinearRegressionModel that every hospital's
verified records are fitted with before their parameters are averaged into the
global model.

================================================================================
MODEL
================================================================================

    life_expectancy ≈ bias + w1·heartrate + w2·diastolic + w3·systolic + w4·age

Fitted by full-batch gradient descent on the mean squared error:

    for epoch in range(epochs):
        error = (bias + X @ w) - y
        bias -= lr * Σ error / N
        w    -= lr * Xᵀ error / N

All arithmetic is float64, there is no clipping and no early stopping:
exactly ``epochs`` iterations always run, so the result only depends on the
record order and the hyperparameters.

KNOWN LIMITATION: FEATURES ARE NOT NORMALIZED
──────────────────────────────────────────────
With raw vital signs (values around 50-200) and lr = 1e-6 the model is far
from converged after 1000 epochs, and a larger learning rate can diverge.
``normalize_features`` exists but ``fit`` does not call it; enabling it
changes every stored weight and therefore the global model.
================================================================================
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score

from .config import settings
from .errors import EmptyDatasetError, MalformedRecordError, TrainingError
from .records import FEATURE_NAMES, NUM_FEATURES, TARGET_NAME, PatientRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryPoint:
    epoch: int
    mse: float


@dataclass(frozen=True)
class TrainingResult:
    """Output of one local training run."""
    weights: Tuple[float, ...]
    bias: float
    history: Tuple[HistoryPoint, ...]
    final_mse: float
    sample_count: int
    learning_rate: float
    epochs: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def history_as_dicts(self) -> List[Dict[str, float]]:
        return [{"epoch": p.epoch, "mse": p.mse} for p in self.history]


# =============================================================================
# DATA PREPARATION
# =============================================================================

def records_to_frame(records: Sequence[PatientRecord]) -> pd.DataFrame:
    """
    Flatten records into a DataFrame with the four features and the target.

    Raises:
        EmptyDatasetError: no records
        MalformedRecordError: a feature or target is missing or not finite
    """
    if not records:
        raise EmptyDatasetError("Training data must be a non-empty sequence of records")

    rows = []
    for index, record in enumerate(records):
        if not isinstance(record, PatientRecord):
            raise MalformedRecordError(
                f"Record {index} is not a patient record: {type(record).__name__}"
            )
        row = {name: getattr(record.features, name) for name in FEATURE_NAMES}
        row[TARGET_NAME] = record.target.life_expectancy
        for name, value in row.items():
            if value is None:
                raise MalformedRecordError(
                    f"Record {record.uuid or index} is missing numeric field '{name}'"
                )
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise MalformedRecordError(
                    f"Record {record.uuid or index} has a non-numeric value for '{name}': {value!r}"
                )
        rows.append(row)

    return pd.DataFrame(rows, columns=list(FEATURE_NAMES) + [TARGET_NAME], dtype=np.float64)


def split_features_target(frame: pd.DataFrame) -> Tuple[np.ndarray, np.ndarray]:
    X = frame[list(FEATURE_NAMES)].to_numpy(dtype=np.float64)
    y = frame[TARGET_NAME].to_numpy(dtype=np.float64)
    return X, y


def normalize_features(X: np.ndarray) -> Tuple[np.ndarray, Dict[str, List[float]]]:
    """
    Z-score normalize each feature column.

    Not used by ``LinearRegressionModel.fit`` (see module docstring).
    Columns with zero variance are divided by 1.
    """
    X = np.asarray(X, dtype=np.float64)
    means = X.mean(axis=0)
    stds = X.std(axis=0)
    safe_stds = np.where(stds == 0, 1.0, stds)
    return (X - means) / safe_stds, {"means": means.tolist(), "stds": stds.tolist()}


# =============================================================================
# MODEL
# =============================================================================

class LinearRegressionModel:
    """
    Linear regression fitted by batch gradient descent.

    Attributes:
        learning_rate: Gradient descent step size
        epochs: Number of full passes over the data
        history_interval: MSE is recorded every ``history_interval`` epochs
        weights: Fitted weight vector (length 4), None before fit
        bias: Fitted bias
        is_fitted: Whether the model has been trained

    Example:
        >>> model = LinearRegressionModel()
        >>> result = model.fit(verified_records)
        >>> result.weights, result.final_mse
    """

    def __init__(
        self,
        learning_rate: Optional[float] = None,
        epochs: Optional[int] = None,
        history_interval: Optional[int] = None,
    ) -> None:
        self.learning_rate = float(learning_rate or settings.training_learning_rate)
        self.epochs = int(epochs or settings.training_epochs)
        self.history_interval = int(history_interval or settings.training_history_interval)

        if self.learning_rate <= 0:
            raise TrainingError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.epochs < 1:
            raise TrainingError(f"epochs must be at least 1, got {self.epochs}")

        self.weights: Optional[np.ndarray] = None
        self.bias: float = 0.0
        self.is_fitted: bool = False
        self.training_metadata: Dict[str, Any] = {}

    def _mse(self, X: np.ndarray, y: np.ndarray) -> float:
        errors = (self.bias + X @ self.weights) - y
        return float(np.mean(errors * errors))

    def fit(self, records: Sequence[PatientRecord]) -> TrainingResult:
        """
        Train on verified records.

        Args:
            records: Non-empty ordered sequence of verified records

        Returns:
            TrainingResult with weights in fixed feature order

        Raises:
            EmptyDatasetError: empty input
            MalformedRecordError: a record lacks a numeric feature/target
        """
        frame = records_to_frame(records)
        X, y = split_features_target(frame)
        n_samples = X.shape[0]

        self.weights = np.zeros(NUM_FEATURES, dtype=np.float64)
        self.bias = 0.0
        history: List[HistoryPoint] = []

        with np.errstate(over="ignore", invalid="ignore"):
            for epoch in range(self.epochs):
                errors = (self.bias + X @ self.weights) - y

                bias_gradient = float(np.sum(errors))
                weight_gradients = X.T @ errors

                self.bias -= (self.learning_rate * bias_gradient) / n_samples
                self.weights = self.weights - (self.learning_rate * weight_gradients) / n_samples

                if epoch % self.history_interval == 0:
                    history.append(HistoryPoint(epoch=epoch, mse=self._mse(X, y)))

            final_mse = self._mse(X, y)

        if not math.isfinite(final_mse):
            logger.warning(
                "Gradient descent diverged (non-finite MSE); features are not normalized",
                extra={"learning_rate": self.learning_rate, "epochs": self.epochs},
            )

        self.is_fitted = True
        self.training_metadata = {
            "n_samples": n_samples,
            "learning_rate": self.learning_rate,
            "epochs": self.epochs,
            "final_mse": final_mse,
            "trained_at": datetime.utcnow().isoformat(),
        }

        logger.info("LinearRegressionModel training complete", extra=self.training_metadata)

        return TrainingResult(
            weights=tuple(float(w) for w in self.weights),
            bias=float(self.bias),
            history=tuple(history),
            final_mse=final_mse,
            sample_count=n_samples,
            learning_rate=self.learning_rate,
            epochs=self.epochs,
            metadata=dict(self.training_metadata),
        )

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Predict targets for a (n_samples, 4) feature matrix."""
        if not self.is_fitted:
            raise RuntimeError("Model must be fitted before prediction")
        X = np.atleast_2d(np.asarray(X, dtype=np.float64))
        if X.shape[1] != NUM_FEATURES:
            raise MalformedRecordError(
                f"Expected {NUM_FEATURES} features per row, got {X.shape[1]}"
            )
        return self.bias + X @ self.weights

    def evaluate(self, records: Sequence[PatientRecord]) -> Dict[str, float]:
        """
        Evaluate model performance on labelled records.

        Returns:
            Dictionary with r_squared, mse, rmse and mae (all NaN when the
            fitted parameters diverged)
        """
        if not self.is_fitted:
            raise RuntimeError("Model must be fitted before evaluation")

        X, y = split_features_target(records_to_frame(records))
        with np.errstate(over="ignore", invalid="ignore"):
            predictions = self.predict(X)

        if not np.isfinite(predictions).all():
            logger.warning("Skipping evaluation metrics: model produces non-finite predictions")
            return {name: float("nan") for name in ("mse", "rmse", "mae", "r_squared")}

        mse = float(mean_squared_error(y, predictions))
        metrics = {
            "mse": mse,
            "rmse": float(np.sqrt(mse)),
            "mae": float(mean_absolute_error(y, predictions)),
            # r2 is undefined for a single sample
            "r_squared": float(r2_score(y, predictions)) if len(y) > 1 else float("nan"),
        }
        return metrics

    def to_dict(self) -> Dict[str, Any]:
        """Serialize hyperparameters and fitted parameters."""
        if not self.is_fitted:
            raise RuntimeError("Cannot save unfitted model")
        return {
            "weights": [float(w) for w in self.weights],
            "bias": float(self.bias),
            "learning_rate": self.learning_rate,
            "epochs": self.epochs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LinearRegressionModel":
        model = cls(
            learning_rate=data.get("learning_rate"),
            epochs=data.get("epochs"),
        )
        weights = data.get("weights")
        if weights is None or len(weights) != NUM_FEATURES:
            raise MalformedRecordError(f"Stored model must contain {NUM_FEATURES} weights")
        model.weights = np.asarray(weights, dtype=np.float64)
        model.bias = float(data.get("bias", 0.0))
        model.is_fitted = True
        return model


def train(
    records: Sequence[PatientRecord],
    learning_rate: Optional[float] = None,
    epochs: Optional[int] = None,
) -> TrainingResult:
    """Fit a fresh LinearRegressionModel on ``records``."""
    return LinearRegressionModel(learning_rate=learning_rate, epochs=epochs).fit(records)
