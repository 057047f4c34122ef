"""
SelfCare Coordinator - FastAPI Application

This module provides the REST API of the federated coordinator. Hospitals
submit records and trigger local training, anyone can trigger aggregation,
and patients query the global model for a prediction.

================================================================================
ENDPOINTS
================================================================================

    POST /compute             store records, verify, train, aggregate
    POST /compute-aggregate   aggregate every stored hospital model
    POST /predict-result      life expectancy from four vital signs
    GET  /health              service, database, ledger and model status
    GET  /model/info          the stored global model

ERROR RESPONSES
───────────────
Every handled failure returns the same body:

    {"error": "<kind>", "message": "<text>", "success": false, "errors": [...]}

    400  validation error (every violation listed), empty dataset,
         malformed record, model with the wrong number of weights
    404  no hospital model to aggregate, no usable global model to predict
         with (none aggregated yet, or one with non-finite parameters)
    409  record identifier already stored for the hospital
    500  storage or unexpected failure
================================================================================
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import (
    ConflictError,
    CoordinatorError,
    ModelNotReadyError,
    NoContributorsError,
    SchemaMismatchError,
    TrainingError,
    ValidationError,
)
from .predictor import PredictionInput
from .records import GlobalModel, PatientRecord
from .serde import global_model_to_dict
from .service import ComputeResult, CoordinatorService

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS (Request/Response Schemas)
# =============================================================================

class ComputeRequest(BaseModel):
    """Request schema for a hospital submission."""

    hospitalUUID: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Identifier of the submitting hospital",
    )
    patients: Optional[List[PatientRecord]] = Field(
        default=None,
        description="New records to append before training",
    )

    class Config:
        extra = "forbid"
        json_schema_extra = {
            "example": {
                "hospitalUUID": "3f2b8c1e-6a4d-4f7e-9b2a-1c5d8e7f6a3b",
                "patients": [PatientRecord.model_config["json_schema_extra"]["example"]],
            }
        }


class PredictRequest(BaseModel):
    """Request schema for a life expectancy prediction."""

    heartrate_average_last_3_days: float = Field(
        ..., strict=True, gt=0, le=300,
        description="Average heart rate over the last 3 days (bpm)",
    )
    blood_pressure_diastolic: float = Field(
        ..., strict=True, gt=0, le=200,
        description="Diastolic blood pressure (mmHg)",
    )
    blood_pressure_sistolic: float = Field(
        ..., strict=True, gt=0, le=300,
        description="Systolic blood pressure (mmHg)",
    )
    age: float = Field(
        ..., strict=True, gt=0, le=150,
        description="Age in years",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "heartrate_average_last_3_days": 72,
                "blood_pressure_diastolic": 80,
                "blood_pressure_sistolic": 120,
                "age": 45,
            }
        }

    def to_input(self) -> PredictionInput:
        return PredictionInput(
            heartrate_average_last_3_days=self.heartrate_average_last_3_days,
            blood_pressure_diastolic=self.blood_pressure_diastolic,
            blood_pressure_sistolic=self.blood_pressure_sistolic,
            age=self.age,
        )


class PredictResponse(BaseModel):
    message: str
    prediction: float
    success: bool = True


class HealthResponse(BaseModel):
    """Response schema for health checks."""

    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]


# =============================================================================
# RESPONSE BUILDERS
# =============================================================================

def json_safe(value: Any) -> Any:
    """Replace NaN and infinities (undefined r2, diverged training) with None."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def aggregate_response(model: GlobalModel) -> Dict[str, Any]:
    return json_safe(global_model_to_dict(model))


def compute_response(result: ComputeResult) -> Dict[str, Any]:
    report = result.report
    training = result.training
    return json_safe({
        "success": True,
        "message": "Regression calculated successfully",
        "hospital": {"uuid": result.hospital_id},
        "model": {
            "weights": list(training.weights),
            "bias": training.bias,
        },
        "training": {
            "finalMSE": training.final_mse,
            "epochs": training.epochs,
            "learningRate": training.learning_rate,
            "history": training.history_as_dicts(),
            "evaluation": result.evaluation,
            "mlflowRunId": result.mlflow_run_id,
        },
        "data": {
            "storedRows": result.stored_records,
            "totalRows": result.total_records,
            "validRows": len(report.verified),
            "invalidRows": len(report.mismatched),
            "errors": len(report.errored),
        },
        "proofVerification": {
            **report.summary(),
            "details": [
                {
                    "uuid": outcome.record.uuid,
                    "status": outcome.status.value,
                    "reason": outcome.reason,
                    "digest": outcome.digest,
                    "anchoredDigest": outcome.anchored_digest,
                }
                for outcome in report.mismatched + report.errored
            ],
        },
        "aggregation": {
            **aggregate_response(result.global_model),
            "coefficients": result.coefficients,
        },
    })


# =============================================================================
# ERROR MAPPING
# =============================================================================

def status_for(exc: CoordinatorError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (NoContributorsError, ModelNotReadyError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (SchemaMismatchError, TrainingError)):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _describe(error: Dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
    return f"{location or 'body'}: {error.get('msg', 'invalid value')}"


# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def get_service(request: Request) -> CoordinatorService:
    return request.app.state.service


def create_app(
    service: Optional[CoordinatorService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Pre-built coordinator service (tests); built from settings
            at startup when omitted
        settings: Configuration (defaults to environment settings)
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.service_name} v{settings.service_version}")
        if getattr(app.state, "service", None) is None:
            app.state.service = CoordinatorService.from_settings(settings)
        yield
        logger.info("Shutting down coordinator")

    app = FastAPI(
        title="SelfCare Federated Coordinator",
        description="""
    Federated life expectancy model built from hospital records that never
    leave the coordinator as raw data in the global model.

    ## Usage
    1. POST `/compute` with a hospital id and its patient records
    2. POST `/compute-aggregate` to rebuild the global model
    3. POST `/predict-result` with four vital signs
    """,
        version=settings.service_version,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={"duration_ms": round((time.perf_counter() - started) * 1000, 2)},
        )
        return response

    # -------------------------------------------------------------------------
    # EXCEPTION HANDLERS
    # -------------------------------------------------------------------------

    @app.exception_handler(CoordinatorError)
    async def coordinator_error_handler(request: Request, exc: CoordinatorError):
        code = status_for(exc)
        if code >= 500:
            logger.error(f"{exc.kind}: {exc.message}", exc_info=exc)
        else:
            logger.warning(f"{exc.kind}: {exc.message}")
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError([_describe(e) for e in exc.errors()])
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=error.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.debug else None,
                "success": False,
            },
        )

    # -------------------------------------------------------------------------
    # ENDPOINTS
    # -------------------------------------------------------------------------

    @app.post("/compute", tags=["Training"])
    async def compute(
        request: ComputeRequest,
        service: CoordinatorService = Depends(get_service),
    ) -> Dict[str, Any]:
        """
        Store a hospital's new records, verify every record against the
        ledger, retrain the hospital model and re-aggregate the global model.
        """
        request_id = str(uuid.uuid4())
        logger.info(
            f"Compute request: {request_id}",
            extra={"hospital": request.hospitalUUID, "patients": len(request.patients or [])},
        )
        result = await service.compute(request.hospitalUUID, request.patients)
        return compute_response(result)

    @app.post("/compute-aggregate", tags=["Training"])
    async def compute_aggregate(
        service: CoordinatorService = Depends(get_service),
    ) -> Dict[str, Any]:
        """Rebuild the global model from every stored hospital model."""
        model = await service.aggregate()
        return aggregate_response(model)

    @app.post("/predict-result", response_model=PredictResponse, tags=["Predictions"])
    async def predict_result(
        request: PredictRequest,
        service: CoordinatorService = Depends(get_service),
    ) -> PredictResponse:
        """Predict the life expectancy with the global model."""
        prediction = service.predict(request.to_input().as_vector())
        return PredictResponse(
            message=f"Your expected life expectancy is {prediction} years.",
            prediction=prediction,
        )

    @app.get("/health", response_model=HealthResponse, tags=["Operations"])
    async def health_check(service: CoordinatorService = Depends(get_service)) -> HealthResponse:
        """Health check endpoint for container orchestration."""
        checks = service.health()
        overall = "healthy"
        if any(c.get("status") == "error" for c in checks.values()):
            overall = "unhealthy"
        elif any(c.get("status") == "degraded" for c in checks.values()):
            overall = "degraded"
        return HealthResponse(
            status=overall,
            service=settings.service_name,
            version=settings.service_version,
            timestamp=datetime.utcnow(),
            checks=checks,
        )

    @app.get("/model/info", tags=["Operations"])
    async def get_model_info(service: CoordinatorService = Depends(get_service)) -> Dict[str, Any]:
        """Information about the stored global model."""
        model = service.global_model()
        if model is None:
            return {"loaded": False, "message": "No global model aggregated yet"}
        return {"loaded": True, **aggregate_response(model)}

    return app


app = create_app()


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "selfcare.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
