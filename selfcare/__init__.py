"""
SelfCare Federated Coordinator

A service that builds a shared life expectancy model from the records of
several hospitals. Only fitted parameters are averaged into the global model.

This package provides:
- Ledger proof verification of every submitted record (SHA-256 digests)
- Local linear regression fitted by batch gradient descent
- Sample-weighted federated averaging of the hospital models
- Rounded predictions from the global model
- REST API for submissions, aggregation and predictions

Components:
-----------
- config: Environment-based configuration
- hashing: Canonical record string and digest
- ledger: Web3 and in-memory ledger clients
- proof_verifier: Per-record verification against the ledger
- model: LinearRegressionModel and training helpers
- aggregation: Federated averaging
- predictor: Global model prediction and rounding
- storage: SQLAlchemy record and model stores
- serde: Stored/wire form of the models
- tracking: MLflow integration utilities
- service: CoordinatorService orchestrating the pipeline
- api: FastAPI application

Usage:
------
    # As API server
    python -m selfcare.api

    # Or with uvicorn directly
    uvicorn selfcare.api:app --host 0.0.0.0 --port 3000

Author: SelfCare Platform Team
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "SelfCare Platform Team"

from .aggregation import aggregate
from .config import ProofMode, settings
from .model import LinearRegressionModel
from .predictor import predict
from .proof_verifier import ProofVerifier
from .service import CoordinatorService

__all__ = [
    "settings",
    "ProofMode",
    "LinearRegressionModel",
    "ProofVerifier",
    "CoordinatorService",
    "aggregate",
    "predict",
    "__version__",
]
