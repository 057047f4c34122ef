"""
SelfCare Coordinator - Configuration Module

This module centralizes all environment-based configuration for the federated
coordinator. It follows the 12-factor app methodology by externalizing
configuration through environment variables (prefixed with ``SELFCARE_``).

Architecture Note:
------------------
The coordinator verifies record provenance in one of two modes:
1. LEDGER: every record digest is checked against the hash anchored on-chain
2. TRUST: the ledger is skipped and every record is accepted as-is

TRUST mode changes the security posture of the whole system, so it is never
inferred from missing ledger settings: it must be selected explicitly through
``SELFCARE_PROOF_MODE=trust``.
"""

from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class ProofMode(str, Enum):
    """How submitted records are checked before training."""

    LEDGER = "ledger"
    TRUST = "trust"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic Settings automatically reads from environment variables,
    with support for .env files and type validation.
    """

    # ==========================================================================
    # SERVICE IDENTIFICATION
    # ==========================================================================
    service_name: str = Field(
        default="selfcare-coordinator",
        description="Unique identifier for this service"
    )
    service_version: str = Field(
        default="1.0.0",
        description="Semantic version of the coordinator"
    )
    environment: str = Field(
        default="development",
        description="Runtime environment (development, staging, production)"
    )

    # ==========================================================================
    # DATABASE CONFIGURATION
    # ==========================================================================
    # Holds patient records, per-hospital models and the global model
    database_url: str = Field(
        default="sqlite:///./data/selfcare.db",
        description="SQLAlchemy connection string for the record and model stores"
    )
    db_echo: bool = Field(
        default=False,
        description="Echo SQL statements to the log"
    )

    # ==========================================================================
    # PROOF / LEDGER CONFIGURATION
    # ==========================================================================
    proof_mode: ProofMode = Field(
        default=ProofMode.LEDGER,
        description="ledger = verify against anchored hashes, trust = accept all records"
    )
    ledger_rpc_url: Optional[str] = Field(
        default=None,
        description="JSON-RPC endpoint of the chain holding the anchored hashes"
    )
    ledger_contract_address: Optional[str] = Field(
        default=None,
        description="Address of the read-only hash registry contract"
    )
    ledger_hash_function: str = Field(
        default="getHash",
        description="Contract view function returning the anchored hash for a uint256 id"
    )
    ledger_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=120,
        description="Deadline for a single ledger lookup"
    )
    ledger_max_concurrency: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Maximum number of ledger lookups in flight per batch"
    )

    # ==========================================================================
    # TRAINING CONFIGURATION
    # ==========================================================================
    # Defaults reproduce the historical gradient descent settings exactly
    training_learning_rate: float = Field(
        default=1e-6,
        gt=0,
        description="Gradient descent learning rate"
    )
    training_epochs: int = Field(
        default=1000,
        ge=1,
        description="Number of full-batch gradient descent epochs"
    )
    training_history_interval: int = Field(
        default=100,
        ge=1,
        description="Record the MSE every N epochs"
    )

    # ==========================================================================
    # MLFLOW CONFIGURATION
    # ==========================================================================
    mlflow_enabled: bool = Field(
        default=False,
        description="Log local training runs to MLflow"
    )
    mlflow_tracking_uri: str = Field(
        default="http://mlflow:5000",
        description="MLflow tracking server URI for experiment logging"
    )
    mlflow_experiment_name: str = Field(
        default="selfcare_local_training",
        description="MLflow experiment name for organizing runs"
    )

    # ==========================================================================
    # API CONFIGURATION
    # ==========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=3000,
        description="API server port"
    )
    api_workers: int = Field(
        default=1,
        description="Number of Uvicorn workers"
    )
    cors_allow_origins: List[str] = Field(
        default=["*"],
        description="Origins allowed to call the API"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # ==========================================================================
    # LOGGING CONFIGURATION
    # ==========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    class Config:
        env_prefix = "SELFCARE_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached Settings instance.

    Using lru_cache ensures we only parse environment variables once,
    improving performance and consistency across the application.
    """
    return Settings()


settings = get_settings()
