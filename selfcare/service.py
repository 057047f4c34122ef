"""
SelfCare Coordinator - Coordinator Service

Orchestrates one hospital submission end to end:

    ┌──────────────────┐
    │ POST /compute    │  hospitalUUID, patients?
    └────────┬─────────┘
             ▼
    ┌──────────────────┐  duplicate id → ConflictError, nothing written
    │ append records   │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐  per-record outcomes, batch never aborted
    │ verify proofs    │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐  zero verified records → EmptyDatasetError
    │ local training   │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐  overwrite this hospital's model
    │ save weights     │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐  shared with POST /compute-aggregate
    │ aggregate        │
    └──────────────────┘

The service holds its collaborators explicitly (stores, verifier, tracker) and
is built once per process; there is no module-level state.

Work for the same hospital is serialized with a per-hospital lock, different
hospitals train in parallel. A hospital's lock is dropped again once no
request holds or waits for it. Store calls and training are blocking and run
in the default executor. Aggregation (read all models, average, save) is
serialized with a single lock so the stored global model always corresponds
to one complete aggregation.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Optional, Sequence, Tuple

from sqlalchemy.engine import Engine

from .aggregation import aggregate, aggregation_weights
from .config import ProofMode, Settings, get_settings
from .errors import EmptyDatasetError, ValidationError
from .ledger import LedgerClient, Web3LedgerClient
from .model import LinearRegressionModel, TrainingResult
from .predictor import predict
from .proof_verifier import ProofVerifier
from .records import ContributorModel, GlobalModel, PatientRecord, VerificationReport, utcnow
from .storage import ModelStore, RecordStore, create_db_engine
from .tracking import TrainingTracker

logger = logging.getLogger(__name__)


@dataclass
class ComputeResult:
    """Everything produced by one hospital submission."""
    hospital_id: str
    stored_records: int
    total_records: int
    report: VerificationReport
    training: TrainingResult
    evaluation: Dict[str, float]
    contributor_model: ContributorModel
    global_model: GlobalModel
    coefficients: Dict[str, float] = field(default_factory=dict)
    mlflow_run_id: Optional[str] = None


class CoordinatorService:
    """
    The coordinator: record intake, proof verification, local training,
    federated averaging and prediction.

    Attributes:
        record_store: Per-hospital patient records
        model_store: Per-hospital models and the global model
        verifier: Ledger proof verifier
        tracker: Optional MLflow training tracker
        learning_rate / epochs: Hyperparameters of local training
    """

    def __init__(
        self,
        record_store: RecordStore,
        model_store: ModelStore,
        verifier: ProofVerifier,
        tracker: Optional[TrainingTracker] = None,
        learning_rate: Optional[float] = None,
        epochs: Optional[int] = None,
        history_interval: Optional[int] = None,
        ledger: Optional[LedgerClient] = None,
    ) -> None:
        self.record_store = record_store
        self.model_store = model_store
        self.verifier = verifier
        self.tracker = tracker or TrainingTracker(enabled=False)
        self.ledger = ledger
        self.learning_rate = learning_rate
        self.epochs = epochs
        self.history_interval = history_interval

        # hospital id -> (lock, number of requests holding or waiting for it)
        self._contributor_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}
        self._aggregation_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        engine: Optional[Engine] = None,
        ledger: Optional[LedgerClient] = None,
    ) -> "CoordinatorService":
        """
        Build the service and its collaborators from configuration.

        In LEDGER mode a Web3 ledger client is created unless one is given;
        missing ledger settings raise ConfigurationError instead of silently
        falling back to TRUST mode.
        """
        settings = settings or get_settings()
        engine = engine or create_db_engine(settings.database_url, settings.db_echo)

        if settings.proof_mode is ProofMode.LEDGER and ledger is None:
            ledger = Web3LedgerClient.from_settings(settings)

        verifier = ProofVerifier(
            ledger=ledger if settings.proof_mode is ProofMode.LEDGER else None,
            mode=settings.proof_mode,
            timeout=settings.ledger_timeout_seconds,
            max_concurrency=settings.ledger_max_concurrency,
        )

        logger.info(
            "Coordinator service configured",
            extra={"proof_mode": settings.proof_mode.value, "environment": settings.environment},
        )

        return cls(
            record_store=RecordStore(engine),
            model_store=ModelStore(engine),
            verifier=verifier,
            tracker=TrainingTracker(settings=settings),
            learning_rate=settings.training_learning_rate,
            epochs=settings.training_epochs,
            history_interval=settings.training_history_interval,
            ledger=ledger,
        )

    @asynccontextmanager
    async def _contributor_lock(self, hospital_id: str) -> AsyncIterator[None]:
        lock, users = self._contributor_locks.get(hospital_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._contributor_locks[hospital_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._contributor_locks[hospital_id]
            if users <= 1:
                del self._contributor_locks[hospital_id]
            else:
                self._contributor_locks[hospital_id] = (lock, users - 1)

    @staticmethod
    async def _blocking(func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    # =========================================================================
    # LOCAL TRAINING
    # =========================================================================

    def _fit(self, records: Sequence[PatientRecord]) -> Tuple[TrainingResult, Dict[str, float]]:
        model = LinearRegressionModel(
            learning_rate=self.learning_rate,
            epochs=self.epochs,
            history_interval=self.history_interval,
        )
        result = model.fit(records)
        return result, model.evaluate(records)

    async def compute(
        self,
        hospital_id: str,
        patients: Optional[Sequence[PatientRecord]] = None,
    ) -> ComputeResult:
        """
        Store new records, retrain the hospital's model and re-aggregate.

        Raises:
            ValidationError: empty hospital identifier
            ConflictError: a submitted record id is already stored
            EmptyDatasetError: no stored records, or none passed verification
            MalformedRecordError: a verified record lacks numeric data
            NoContributorsError / SchemaMismatchError: aggregation failed
            StorageError: store failure
        """
        if not hospital_id or not hospital_id.strip():
            raise ValidationError(["hospitalUUID is required"])

        logger.info(f"Regression calculation for hospital: {hospital_id}")

        async with self._contributor_lock(hospital_id):
            stored = 0
            if patients:
                stored = await self._blocking(
                    self.record_store.append_records, hospital_id, list(patients)
                )

            records = await self._blocking(self.record_store.load_records, hospital_id)
            if not records:
                raise EmptyDatasetError(f"No data found for hospital {hospital_id}")

            report = await self.verifier.verify(records)
            if report.mismatched:
                logger.warning(f"{len(report.mismatched)} rows with invalid proofs")
            if report.errored:
                logger.warning(f"{len(report.errored)} errors when verifying proofs")

            verified = report.verified_records
            if not verified:
                raise EmptyDatasetError("No valid data found after verifying proofs")

            logger.info(f"Use {len(verified)}/{len(records)} rows of valid data for training")

            training, evaluation = await self._blocking(self._fit, verified)

            contributor_model = ContributorModel(
                contributor_id=hospital_id,
                weights=training.weights,
                bias=training.bias,
                sample_count=training.sample_count,
                timestamp=utcnow(),
            )
            await self._blocking(self.model_store.save_contributor_model, contributor_model)

            run_id = await self._blocking(
                self.tracker.log_training, hospital_id, training, evaluation
            )

        global_model, coefficients = await self._aggregate()

        return ComputeResult(
            hospital_id=hospital_id,
            stored_records=stored,
            total_records=len(records),
            report=report,
            training=training,
            evaluation=evaluation,
            contributor_model=contributor_model,
            global_model=global_model,
            coefficients=coefficients,
            mlflow_run_id=run_id,
        )

    # =========================================================================
    # AGGREGATION
    # =========================================================================

    async def _aggregate(self) -> Tuple[GlobalModel, Dict[str, float]]:
        async with self._aggregation_lock:
            models = await self._blocking(self.model_store.load_all_contributor_models)
            global_model = aggregate(models)
            await self._blocking(self.model_store.save_global_model, global_model)
            return global_model, aggregation_weights(models)

    async def aggregate(self) -> GlobalModel:
        """
        Recompute the global model from every stored hospital model.

        The previous global model is only replaced when aggregation succeeds.

        Raises:
            NoContributorsError: no hospital model stored yet
            SchemaMismatchError: hospital weight vectors differ in length
        """
        global_model, _ = await self._aggregate()
        return global_model

    # =========================================================================
    # PREDICTION
    # =========================================================================

    def global_model(self) -> Optional[GlobalModel]:
        return self.model_store.load_global_model()

    def predict(self, features: Sequence[float]) -> float:
        """
        Predict with the stored global model.

        Raises:
            ModelNotReadyError: nothing aggregated yet
            SchemaMismatchError: stored model does not have 4 weights
        """
        return predict(self.model_store.load_global_model(), features)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def health(self) -> Dict[str, Dict[str, object]]:
        checks: Dict[str, Dict[str, object]] = {}

        db_check: Dict[str, object] = {"status": "ok"}
        try:
            self.model_store.ping()
        except Exception as e:
            db_check = {"status": "error", "message": str(e)}
        checks["database"] = db_check

        ledger_check: Dict[str, object] = {"status": "ok", "mode": self.verifier.mode.value}
        if self.verifier.mode is ProofMode.TRUST:
            ledger_check["status"] = "disabled"
        elif self.ledger is not None and hasattr(self.ledger, "is_connected"):
            if not self.ledger.is_connected():
                ledger_check["status"] = "error"
        checks["ledger"] = ledger_check

        model_check: Dict[str, object] = {"status": "ok"}
        try:
            model = self.model_store.load_global_model()
        except Exception as e:
            model = None
            model_check = {"status": "error", "message": str(e)}
        else:
            if model is None:
                model_check = {"status": "degraded", "message": "No global model aggregated yet"}
            else:
                model_check["contributors"] = model.contributor_count
                model_check["total_samples"] = model.total_samples
        checks["model"] = model_check

        return checks
