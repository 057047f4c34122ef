"""
SelfCare Coordinator - Coordinator Service Tests

Run with: pytest selfcare/tests/test_service.py -v
"""

import asyncio
import math

import pytest

from selfcare.config import ProofMode, Settings
from selfcare.errors import (
    ConfigurationError,
    ConflictError,
    EmptyDatasetError,
    ModelNotReadyError,
    NoContributorsError,
    NonFiniteModelError,
    SchemaMismatchError,
    ValidationError,
)
from selfcare.records import ContributorModel
from selfcare.service import CoordinatorService
from selfcare.tests.factories import anchor_all, diverging_records, make_record


class TestCompute:
    """Tests for the hospital submission pipeline."""

    def test_compute_trains_and_aggregates(self, service, ledger, sample_records):
        anchor_all(ledger, sample_records)

        result = asyncio.run(service.compute("hospital-a", sample_records))

        assert result.stored_records == 3
        assert result.total_records == 3
        assert result.report.summary() == {"valid": 3, "invalid": 0, "errors": 0}
        assert result.contributor_model.sample_count == 3
        assert result.global_model.weights == result.training.weights
        assert result.coefficients == {"hospital-a": 1.0}
        assert service.global_model().total_samples == 3

    def test_unverified_records_are_not_trained_on(self, service, ledger, sample_records):
        anchor_all(ledger, sample_records[:2])

        result = asyncio.run(service.compute("hospital-a", sample_records))

        assert result.report.summary() == {"valid": 2, "invalid": 0, "errors": 1}
        assert result.training.sample_count == 2

    def test_compute_without_new_records_uses_stored_set(self, service, ledger, sample_records):
        anchor_all(ledger, sample_records)
        asyncio.run(service.compute("hospital-a", sample_records))

        result = asyncio.run(service.compute("hospital-a"))

        assert result.stored_records == 0
        assert result.total_records == 3

    def test_no_verified_records_keeps_previous_model(self, service, ledger, sample_records):
        anchor_all(ledger, sample_records[:1])
        first = asyncio.run(service.compute("hospital-a", sample_records[:1]))

        ledger.anchored.clear()
        with pytest.raises(EmptyDatasetError):
            asyncio.run(service.compute("hospital-a", sample_records[1:]))

        stored = service.model_store.load_contributor_model("hospital-a")
        assert stored.weights == first.contributor_model.weights
        assert stored.sample_count == 1

    def test_unknown_hospital_without_records(self, service):
        with pytest.raises(EmptyDatasetError):
            asyncio.run(service.compute("hospital-a"))

        assert service._contributor_locks == {}

    def test_duplicate_submission(self, service, ledger, sample_records):
        anchor_all(ledger, sample_records)
        asyncio.run(service.compute("hospital-a", sample_records))

        with pytest.raises(ConflictError):
            asyncio.run(service.compute("hospital-a", sample_records[:1]))

        assert len(service.record_store.load_records("hospital-a")) == 3

    def test_empty_hospital_id(self, service, sample_records):
        with pytest.raises(ValidationError):
            asyncio.run(service.compute("  ", sample_records))


class TestAggregateAndPredict:
    """Tests for aggregation across hospitals and prediction."""

    def test_two_hospitals_weighted_by_samples(self, service, ledger):
        hospital_a = [make_record("0x1", "A"), make_record("0x2", "B", age=50)]
        hospital_b = [make_record("0x3", "C", age=70, y=70.0)]
        anchor_all(ledger, hospital_a + hospital_b)

        a = asyncio.run(service.compute("hospital-a", hospital_a))
        b = asyncio.run(service.compute("hospital-b", hospital_b))

        assert b.coefficients == pytest.approx({"hospital-a": 2 / 3, "hospital-b": 1 / 3})
        expected_bias = a.training.bias * 2 / 3 + b.training.bias / 3
        assert b.global_model.bias == pytest.approx(expected_bias)
        assert b.global_model.total_samples == 3
        assert b.global_model.contributor_count == 2

    def test_aggregate_is_repeatable(self, service, ledger, sample_records):
        anchor_all(ledger, sample_records)
        asyncio.run(service.compute("hospital-a", sample_records))

        first = asyncio.run(service.aggregate())
        second = asyncio.run(service.aggregate())

        assert first.weights == second.weights
        assert first.bias == second.bias

    def test_aggregate_without_models(self, service):
        with pytest.raises(NoContributorsError):
            asyncio.run(service.aggregate())

    def test_predict_before_aggregation(self, service):
        with pytest.raises(ModelNotReadyError):
            service.predict([72, 80, 120, 45])

    def test_predict_after_compute(self, service, ledger, sample_records):
        anchor_all(ledger, sample_records)
        asyncio.run(service.compute("hospital-a", sample_records))

        prediction = service.predict([72, 80, 120, 45])

        assert isinstance(prediction, float)
        assert prediction == round(prediction, 1)


class TestFromSettings:
    """Tests for building the service from configuration."""

    def test_ledger_mode_requires_ledger_settings(self, engine):
        settings = Settings(proof_mode=ProofMode.LEDGER, ledger_rpc_url=None, ledger_contract_address=None)
        with pytest.raises(ConfigurationError):
            CoordinatorService.from_settings(settings, engine=engine)

    def test_trust_mode(self, engine):
        settings = Settings(proof_mode=ProofMode.TRUST)
        service = CoordinatorService.from_settings(settings, engine=engine)

        assert service.verifier.mode is ProofMode.TRUST
        assert service.health()["ledger"]["status"] == "disabled"

    def test_health_without_model(self, service):
        checks = service.health()
        assert checks["database"]["status"] == "ok"
        assert checks["ledger"]["status"] == "ok"
        assert checks["model"]["status"] == "degraded"


class TestFailedAggregation:
    def test_previous_global_model_is_kept(self, service, ledger, sample_records):
        anchor_all(ledger, sample_records)
        before = asyncio.run(service.compute("hospital-a", sample_records)).global_model
        service.model_store.save_contributor_model(
            ContributorModel("hospital-b", (1.0, 2.0, 3.0), 0.5, 4)
        )

        with pytest.raises(SchemaMismatchError):
            asyncio.run(service.aggregate())

        stored = service.global_model()
        assert stored.weights == before.weights
        assert stored.contributor_count == 1


class TestDivergedTraining:
    """A hospital whose gradient descent diverges still completes its compute."""

    def test_diverging_compute_completes(self, service, ledger):
        records = diverging_records()
        anchor_all(ledger, records)

        result = asyncio.run(service.compute("hospital-a", records))

        assert not math.isfinite(result.training.final_mse)
        assert all(math.isnan(value) for value in result.evaluation.values())
        assert service.model_store.load_contributor_model("hospital-a") is not None
        assert result.global_model.contributor_count == 1

    def test_prediction_from_diverged_model_is_refused(self, service, ledger):
        records = diverging_records()
        anchor_all(ledger, records)
        asyncio.run(service.compute("hospital-a", records))

        with pytest.raises(NonFiniteModelError):
            service.predict([72, 80, 120, 45])


class TestConcurrency:
    """Per-hospital serialization and whole-model aggregation under concurrency."""

    def test_parallel_hospitals_leave_complete_global_model(self, service, ledger):
        hospital_a = [make_record("0x1", "A"), make_record("0x2", "B", age=50)]
        hospital_b = [make_record("0x3", "C", age=70, y=70.0)]
        anchor_all(ledger, hospital_a + hospital_b)

        async def submit_both():
            return await asyncio.gather(
                service.compute("hospital-a", hospital_a),
                service.compute("hospital-b", hospital_b),
            )

        asyncio.run(submit_both())

        stored = service.global_model()
        assert stored.contributor_count == 2
        assert stored.total_samples == 3

        fresh = asyncio.run(service.aggregate())
        assert stored.weights == fresh.weights
        assert stored.bias == fresh.bias
        assert stored.total_samples == fresh.total_samples

    def test_same_hospital_requests_are_serialized(self, service, ledger, sample_records):
        anchor_all(ledger, sample_records)

        async def submit_twice():
            return await asyncio.gather(
                service.compute("hospital-a", sample_records[:2]),
                service.compute("hospital-a", sample_records[2:]),
            )

        first, second = asyncio.run(submit_twice())

        # The second request only starts once the first has stored and trained
        assert first.total_records == 2
        assert second.total_records == 3

        models = service.model_store.load_all_contributor_models()
        assert len(models) == 1
        assert models[0].sample_count == 3
        assert service._contributor_locks == {}
