"""
SelfCare Coordinator - MLflow Tracking

Optional experiment tracking for local training runs. When enabled, every
hospital retraining is logged as one MLflow run with its hyperparameters,
final MSE, evaluation metrics and the MSE history.

Tracking is an audit aid, not part of the training contract: a tracking
failure is logged and never fails the request.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Dict, Optional

import mlflow
from mlflow.exceptions import MlflowException

from .config import Settings, settings as default_settings
from .model import TrainingResult

logger = logging.getLogger(__name__)


class TrainingTracker:
    """
    Logs local training runs to MLflow.

    Attributes:
        enabled: Whether runs are logged at all
        tracking_uri: MLflow tracking server URI
        experiment_name: Name of the MLflow experiment

    Example:
        >>> tracker = TrainingTracker(enabled=True)
        >>> run_id = tracker.log_training("hospital-a", result, {"mae": 3.1})
    """

    def __init__(
        self,
        enabled: Optional[bool] = None,
        tracking_uri: Optional[str] = None,
        experiment_name: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or default_settings
        self.enabled = settings.mlflow_enabled if enabled is None else enabled
        self.tracking_uri = tracking_uri or settings.mlflow_tracking_uri
        self.experiment_name = experiment_name or settings.mlflow_experiment_name
        self.environment = settings.environment
        self.service_name = settings.service_name
        self._configured = False

    def _setup_experiment(self) -> None:
        if self._configured:
            return
        mlflow.set_tracking_uri(self.tracking_uri)
        mlflow.set_experiment(self.experiment_name)
        self._configured = True
        logger.info(
            "MLflow tracker initialized",
            extra={"tracking_uri": self.tracking_uri, "experiment_name": self.experiment_name},
        )

    def log_training(
        self,
        contributor_id: str,
        result: TrainingResult,
        evaluation: Optional[Dict[str, float]] = None,
    ) -> Optional[str]:
        """
        Log one training run.

        Returns:
            The MLflow run id, or None when tracking is disabled or failed
        """
        if not self.enabled:
            return None

        run_name = f"{contributor_id}_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}"
        tags = {
            "environment": self.environment,
            "service": self.service_name,
            "hospital": contributor_id,
        }

        try:
            self._setup_experiment()
            with mlflow.start_run(run_name=run_name, tags=tags) as run:
                mlflow.log_params({
                    "learning_rate": str(result.learning_rate),
                    "epochs": str(result.epochs),
                    "n_samples": str(result.sample_count),
                })
                metrics = {"final_mse": result.final_mse}
                metrics.update(evaluation or {})
                mlflow.log_metrics({k: v for k, v in metrics.items() if math.isfinite(v)})
                for point in result.history:
                    if math.isfinite(point.mse):
                        mlflow.log_metric("mse", point.mse, step=point.epoch)
                run_id = run.info.run_id

            logger.info(f"Logged training run {run_id} for hospital {contributor_id}")
            return run_id

        except (MlflowException, OSError) as e:
            logger.warning(f"Could not log training run to MLflow: {e}")
            return None
