"""
SelfCare Coordinator - Model Serialization Utilities

Converts contributor and global models to JSON-compatible dictionaries and
back, for the model store and for API responses.

================================================================================
SERIALIZATION FORMAT
================================================================================

Contributor model (one per hospital):

    {
        "uuidHospital": "5f0c...",
        "weight": {"weights": [w1, w2, w3, w4], "bias": b, "numberOfSamples": n},
        "timestamp": "2024-01-15T10:00:00+00:00"
    }

Global model (exactly one):

    {
        "aggregatedWeight": {"weights": [...], "bias": b, "numberOfSamples": N},
        "numberOfHospitals": k,
        "totalSamples": N,
        "timestamp": "..."
    }

Floats go through ``json`` unchanged (shortest repr round-trips exactly), so
a model read back from the store is bit-identical to the one that was saved.
================================================================================
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict

from .errors import SchemaMismatchError
from .records import ContributorModel, GlobalModel, utcnow

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not value:
        return utcnow()
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _require_weight_block(block: Any, what: str) -> Dict[str, Any]:
    if not isinstance(block, dict):
        raise SchemaMismatchError(f"The {what} does not contain the necessary weights and bias.")
    weights = block.get("weights")
    bias = block.get("bias")
    if not isinstance(weights, (list, tuple)) or isinstance(bias, bool) or not isinstance(bias, (int, float)):
        raise SchemaMismatchError(f"The {what} does not contain the necessary weights and bias.")
    return block


# =============================================================================
# CONTRIBUTOR MODELS
# =============================================================================

def contributor_model_to_dict(model: ContributorModel) -> Dict[str, Any]:
    return {
        "uuidHospital": model.contributor_id,
        "weight": {
            "weights": [float(w) for w in model.weights],
            "bias": float(model.bias),
            "numberOfSamples": int(model.sample_count),
        },
        "timestamp": model.timestamp.isoformat(),
    }


def contributor_model_from_dict(data: Dict[str, Any]) -> ContributorModel:
    block = _require_weight_block(data.get("weight"), "contributor model")
    return ContributorModel(
        contributor_id=str(data["uuidHospital"]),
        weights=tuple(float(w) for w in block["weights"]),
        bias=float(block["bias"]),
        sample_count=int(block.get("numberOfSamples", 0)),
        timestamp=_parse_timestamp(data.get("timestamp")),
    )


# =============================================================================
# GLOBAL MODEL
# =============================================================================

def global_model_to_dict(model: GlobalModel) -> Dict[str, Any]:
    return {
        "aggregatedWeight": {
            "weights": [float(w) for w in model.weights],
            "bias": float(model.bias),
            "numberOfSamples": int(model.total_samples),
        },
        "numberOfHospitals": int(model.contributor_count),
        "totalSamples": int(model.total_samples),
        "timestamp": model.timestamp.isoformat(),
    }


def global_model_from_dict(data: Dict[str, Any]) -> GlobalModel:
    """
    Rebuild a GlobalModel from its stored form.

    The weight count is not checked here: a stored model with the wrong
    number of weights is reported by the predictor.

    Raises:
        SchemaMismatchError: weights or bias missing
    """
    block = _require_weight_block(data.get("aggregatedWeight"), "model")
    total = data.get("totalSamples", block.get("numberOfSamples", 0))
    return GlobalModel(
        weights=tuple(float(w) for w in block["weights"]),
        bias=float(block["bias"]),
        total_samples=int(total),
        contributor_count=int(data.get("numberOfHospitals", 0)),
        timestamp=_parse_timestamp(data.get("timestamp")),
    )


# =============================================================================
# JSON HELPERS
# =============================================================================

def dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True)


def loads(text: str) -> Dict[str, Any]:
    data = json.loads(text)
    if not isinstance(data, dict):
        raise SchemaMismatchError("Stored payload is not a JSON object")
    return data
