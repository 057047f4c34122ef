"""
SelfCare Coordinator - Error Taxonomy

Every failure the coordinator can report carries a machine-readable ``kind``
and a human-readable message. The API layer maps each class to an HTTP status
code; per-record proof failures never leave the verifier and end up as
``errored`` outcomes instead.
"""

from __future__ import annotations

from typing import List, Optional


class CoordinatorError(Exception):
    """Base class for all coordinator errors."""

    kind = "coordinator_error"

    def __init__(self, message: str, kind: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, "success": False}


class ConfigurationError(CoordinatorError):
    kind = "configuration_error"


# =============================================================================
# REQUEST-LEVEL ERRORS
# =============================================================================

class ValidationError(CoordinatorError):
    """Malformed or missing request fields. Lists every violation found."""

    kind = "validation_error"

    def __init__(self, errors: List[str], message: str = "Errors in the parameters validation") -> None:
        super().__init__(message)
        self.errors = list(errors)

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["errors"] = self.errors
        return payload


class ConflictError(CoordinatorError):
    """A submitted record identifier already exists for the contributor."""

    kind = "conflict"

    def __init__(self, duplicates: List[str]) -> None:
        super().__init__(
            f"Record identifiers already stored for this hospital: {', '.join(duplicates)}"
        )
        self.duplicates = list(duplicates)

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["duplicates"] = self.duplicates
        return payload


# =============================================================================
# PROOF ERRORS (per record)
# =============================================================================

class ProofError(CoordinatorError):
    kind = "proof_error"


class MissingFieldError(ProofError):
    """A field required for canonicalization is absent."""

    kind = "missing_field"

    def __init__(self, field: str) -> None:
        super().__init__(f"missing field: {field}")
        self.field = field


class LedgerKeyError(ProofError):
    """The record identifier cannot be turned into a ledger key."""

    kind = "invalid_ledger_key"


class LedgerError(ProofError):
    """Transport or contract failure while reading the ledger."""

    kind = "ledger_error"


# =============================================================================
# TRAINING / AGGREGATION / PREDICTION ERRORS
# =============================================================================

class TrainingError(CoordinatorError):
    kind = "training_error"


class EmptyDatasetError(TrainingError):
    kind = "empty_dataset"

    def __init__(self, message: str = "No valid data found for training") -> None:
        super().__init__(message)


class MalformedRecordError(TrainingError):
    kind = "malformed_record"


class AggregationError(CoordinatorError):
    kind = "aggregation_error"


class NoContributorsError(AggregationError):
    kind = "no_contributors"

    def __init__(self, message: str = "no model data found") -> None:
        super().__init__(message)


class SchemaMismatchError(AggregationError):
    """Weight vectors do not have the expected length."""

    kind = "schema_mismatch"


class ModelNotReadyError(CoordinatorError):
    kind = "model_not_ready"

    def __init__(
        self,
        message: str = "No global model is available. Please first calculate the aggregation.",
    ) -> None:
        super().__init__(message)


class NonFiniteModelError(ModelNotReadyError):
    """The global model holds NaN or infinite parameters (a hospital model diverged)."""

    kind = "model_not_finite"

    def __init__(
        self,
        message: str = "The global model contains non-finite parameters. "
        "Retrain the diverged hospital models and aggregate again.",
    ) -> None:
        super().__init__(message)


class StorageError(CoordinatorError):
    kind = "storage_error"
