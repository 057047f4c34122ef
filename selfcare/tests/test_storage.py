"""
SelfCare Coordinator - Record and Model Store Tests

Run with: pytest selfcare/tests/test_storage.py -v
"""

import pytest

from selfcare.errors import ConflictError
from selfcare.records import ContributorModel, GlobalModel
from selfcare.tests.factories import make_record


class TestRecordStore:
    """Tests for the per-hospital record sets."""

    def test_unknown_hospital_has_no_records(self, record_store):
        assert record_store.load_records("hospital-a") == []

    def test_append_keeps_insertion_order(self, record_store, sample_records):
        assert record_store.append_records("hospital-a", sample_records[:2]) == 2
        record_store.append_records("hospital-a", sample_records[2:])

        assert record_store.load_records("hospital-a") == sample_records

    def test_hospitals_are_isolated(self, record_store, sample_records):
        record_store.append_records("hospital-a", sample_records)
        record_store.append_records("hospital-b", sample_records[:1])

        assert len(record_store.load_records("hospital-a")) == 3
        assert len(record_store.load_records("hospital-b")) == 1

    def test_duplicate_identifier_is_rejected_without_write(self, record_store, sample_records):
        """A batch with an already stored id is rejected and nothing is written."""
        record_store.append_records("hospital-a", sample_records[:1])
        batch = [make_record("0x9"), make_record(sample_records[0].uuid)]

        with pytest.raises(ConflictError) as exc_info:
            record_store.append_records("hospital-a", batch)

        assert exc_info.value.duplicates == [sample_records[0].uuid]
        assert record_store.load_records("hospital-a") == sample_records[:1]

    def test_duplicate_within_batch_is_rejected(self, record_store):
        with pytest.raises(ConflictError):
            record_store.append_records("hospital-a", [make_record("0x1"), make_record("0x1")])

        assert record_store.load_records("hospital-a") == []

    def test_empty_batch(self, record_store):
        assert record_store.append_records("hospital-a", []) == 0


class TestModelStore:
    """Tests for contributor and global model persistence."""

    def test_contributor_model_is_overwritten(self, model_store):
        model_store.save_contributor_model(
            ContributorModel("hospital-a", (1.0, 2.0, 3.0, 4.0), 0.5, 3)
        )
        model_store.save_contributor_model(
            ContributorModel("hospital-a", (0.1, 0.2, 0.3, 0.4), 0.25, 5)
        )

        stored = model_store.load_contributor_model("hospital-a")
        assert stored.weights == (0.1, 0.2, 0.3, 0.4)
        assert stored.sample_count == 5
        assert len(model_store.load_all_contributor_models()) == 1

    def test_contributor_models_sorted_by_id(self, model_store):
        for contributor_id in ["hospital-c", "hospital-a", "hospital-b"]:
            model_store.save_contributor_model(
                ContributorModel(contributor_id, (1.0, 1.0, 1.0, 1.0), 0.0, 1)
            )

        ids = [m.contributor_id for m in model_store.load_all_contributor_models()]
        assert ids == ["hospital-a", "hospital-b", "hospital-c"]

    def test_global_model_round_trip(self, model_store):
        assert model_store.load_global_model() is None

        model = GlobalModel((0.1, -0.05, 0.02, -0.03), 70.0, 40, 2)
        model_store.save_global_model(model)

        stored = model_store.load_global_model()
        assert stored.weights == model.weights
        assert stored.bias == model.bias
        assert stored.total_samples == 40
        assert stored.contributor_count == 2
        assert stored.timestamp == model.timestamp

    def test_ping(self, model_store):
        assert model_store.ping() is True
