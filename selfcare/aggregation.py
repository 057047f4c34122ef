"""
SelfCare Coordinator - Federated Averaging

Combines every stored hospital model into the single global model.

================================================================================
FEDERATED AVERAGING
================================================================================

    w_global = Σ (n_k / N) * w_k
    b_global = Σ (n_k / N) * b_k

    where:
    - w_k, b_k = weights and bias fitted by hospital k
    - n_k = number of verified records hospital k trained on
    - N = Σ n_k

The coefficients are non-negative and sum to 1, so the global weight vector is
a convex combination of the hospital vectors.

Contributions are always summed in contributor-id order, so re-aggregating
unchanged models is bit-identical.

Aggregation always recomputes from all currently stored models; there are no
incremental rounds.
================================================================================
"""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence

from .errors import AggregationError, NoContributorsError, SchemaMismatchError
from .records import ContributorModel, GlobalModel, utcnow

logger = logging.getLogger(__name__)


def _ordered(models: Sequence[ContributorModel]) -> List[ContributorModel]:
    return sorted(models, key=lambda m: m.contributor_id)


def _check_schema(models: Sequence[ContributorModel]) -> int:
    num_weights = len(models[0].weights)
    mismatched = [m.contributor_id for m in models if len(m.weights) != num_weights]
    if mismatched:
        raise SchemaMismatchError(
            f"Contributor weight vectors differ in length (expected {num_weights}): "
            f"{', '.join(mismatched)}"
        )
    return num_weights


def aggregation_weights(models: Sequence[ContributorModel]) -> Dict[str, float]:
    """
    Calculate the FedAvg coefficient of every contributor.

    Returns:
        Mapping contributor_id -> n_k / N, in contributor-id order
    """
    if not models:
        raise NoContributorsError()

    ordered = _ordered(models)
    negative = [m.contributor_id for m in ordered if m.sample_count < 0]
    if negative:
        raise AggregationError(f"Negative sample count for: {', '.join(negative)}")

    total_samples = sum(m.sample_count for m in ordered)
    if total_samples <= 0:
        raise AggregationError("Total sample count must be positive to aggregate")

    return {m.contributor_id: m.sample_count / total_samples for m in ordered}


def aggregate(models: Sequence[ContributorModel]) -> GlobalModel:
    """
    Compute the sample-count-weighted average of contributor models.

    Args:
        models: Every stored contributor model

    Returns:
        The new GlobalModel

    Raises:
        NoContributorsError: no models to aggregate
        SchemaMismatchError: weight vectors of different lengths
        AggregationError: total sample count is not positive
    """
    if not models:
        raise NoContributorsError()

    ordered = _ordered(models)
    num_weights = _check_schema(ordered)
    coefficients = aggregation_weights(ordered)

    # Weighted sum
    averaged = [0.0] * num_weights
    bias = 0.0
    for model in ordered:
        coefficient = coefficients[model.contributor_id]
        for i in range(num_weights):
            averaged[i] += model.weights[i] * coefficient
        bias += model.bias * coefficient

    total_samples = sum(m.sample_count for m in ordered)
    global_model = GlobalModel(
        weights=tuple(averaged),
        bias=bias,
        total_samples=total_samples,
        contributor_count=len(ordered),
        timestamp=utcnow(),
    )

    logger.info(
        f"Aggregated {len(ordered)} contributor models. "
        f"Weights: {dict((k, f'{w:.3f}') for k, w in coefficients.items())}",
        extra={"total_samples": total_samples},
    )
    return global_model
