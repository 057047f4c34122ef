"""
SelfCare Coordinator - Domain Types

Patient records arrive as JSON and are modelled with pydantic; the fitted
models and proof outcomes are plain dataclasses owned by the coordinator.

A record has exactly one accepted shape:

    {
        "uuid": "0x1f",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "birthdate": "1815-12-10",
        "features": {
            "heartrate_average_last_3_days": 72,
            "blood_pressure_diastolic": 80,
            "blood_pressure_sistolic": 120,
            "age": 45
        },
        "target": {"life_expectancy": 81.5}
    }

Fields may be missing in stored data; the canonicalizer and the trainer are
responsible for rejecting incomplete records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field

# Fixed feature order used by training, aggregation and prediction
FEATURE_NAMES: Tuple[str, ...] = (
    "heartrate_average_last_3_days",
    "blood_pressure_diastolic",
    "blood_pressure_sistolic",
    "age",
)
TARGET_NAME = "life_expectancy"
NUM_FEATURES = len(FEATURE_NAMES)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# PATIENT RECORDS
# =============================================================================

class PatientFeatures(BaseModel):
    """The four vital-sign features, in the fixed training order."""

    heartrate_average_last_3_days: Optional[float] = Field(
        default=None, strict=True, allow_inf_nan=False,
        description="Average heart rate over the last 3 days (bpm)",
    )
    blood_pressure_diastolic: Optional[float] = Field(
        default=None, strict=True, allow_inf_nan=False,
        description="Diastolic blood pressure (mmHg)",
    )
    blood_pressure_sistolic: Optional[float] = Field(
        default=None, strict=True, allow_inf_nan=False,
        description="Systolic blood pressure (mmHg)",
    )
    age: Optional[float] = Field(
        default=None, strict=True, allow_inf_nan=False,
        description="Patient age in years",
    )

    class Config:
        frozen = True
        extra = "forbid"

    def as_tuple(self) -> Tuple[Optional[float], ...]:
        return tuple(getattr(self, name) for name in FEATURE_NAMES)


class PatientTarget(BaseModel):
    life_expectancy: Optional[float] = Field(
        default=None, strict=True, allow_inf_nan=False,
        description="Observed life expectancy label (years)",
    )

    class Config:
        frozen = True
        extra = "forbid"


class PatientRecord(BaseModel):
    """One labelled training example belonging to a hospital."""

    uuid: Optional[str] = Field(
        default=None,
        description="Record identifier, also the index of the anchored hash on the ledger",
    )
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    birthdate: Optional[str] = None
    features: PatientFeatures = Field(default_factory=PatientFeatures)
    target: PatientTarget = Field(default_factory=PatientTarget)

    class Config:
        frozen = True
        extra = "forbid"
        json_schema_extra = {
            "example": {
                "uuid": "0x1f",
                "first_name": "Ada",
                "last_name": "Lovelace",
                "birthdate": "1815-12-10",
                "features": {
                    "heartrate_average_last_3_days": 72,
                    "blood_pressure_diastolic": 80,
                    "blood_pressure_sistolic": 120,
                    "age": 45,
                },
                "target": {"life_expectancy": 81.5},
            }
        }


# =============================================================================
# MODELS
# =============================================================================

@dataclass(frozen=True)
class ContributorModel:
    """Fitted local model for one hospital. One stored per hospital."""
    contributor_id: str
    weights: Tuple[float, ...]
    bias: float
    sample_count: int
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class GlobalModel:
    """Sample-weighted average of every stored contributor model."""
    weights: Tuple[float, ...]
    bias: float
    total_samples: int
    contributor_count: int
    timestamp: datetime = field(default_factory=utcnow)


# =============================================================================
# PROOF OUTCOMES
# =============================================================================

class ProofStatus(str, Enum):
    VERIFIED = "verified"
    MISMATCHED = "mismatched"
    ERRORED = "errored"


@dataclass(frozen=True)
class ProofOutcome:
    """Verification result for a single record."""
    record: PatientRecord
    status: ProofStatus
    digest: Optional[str] = None
    anchored_digest: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class VerificationReport:
    """
    Partition of a batch into verified, mismatched and errored outcomes.

    Each input record appears in exactly one sequence, and every sequence
    keeps the original input order.
    """
    verified: Tuple[ProofOutcome, ...] = ()
    mismatched: Tuple[ProofOutcome, ...] = ()
    errored: Tuple[ProofOutcome, ...] = ()

    @classmethod
    def from_outcomes(cls, outcomes) -> "VerificationReport":
        outcomes = list(outcomes)
        return cls(
            verified=tuple(o for o in outcomes if o.status is ProofStatus.VERIFIED),
            mismatched=tuple(o for o in outcomes if o.status is ProofStatus.MISMATCHED),
            errored=tuple(o for o in outcomes if o.status is ProofStatus.ERRORED),
        )

    @property
    def total(self) -> int:
        return len(self.verified) + len(self.mismatched) + len(self.errored)

    @property
    def verified_records(self) -> Tuple[PatientRecord, ...]:
        return tuple(o.record for o in self.verified)

    def summary(self) -> dict:
        return {
            "valid": len(self.verified),
            "invalid": len(self.mismatched),
            "errors": len(self.errored),
        }
