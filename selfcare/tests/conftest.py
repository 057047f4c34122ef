"""Shared fixtures: a temporary SQLite database and an in-memory ledger."""

import pytest

from selfcare.config import ProofMode
from selfcare.ledger import InMemoryLedgerClient
from selfcare.proof_verifier import ProofVerifier
from selfcare.service import CoordinatorService
from selfcare.storage import ModelStore, RecordStore, create_db_engine
from selfcare.tests.factories import make_record


@pytest.fixture
def engine(tmp_path):
    return create_db_engine(f"sqlite:///{tmp_path / 'selfcare.db'}", echo=False)


@pytest.fixture
def record_store(engine):
    return RecordStore(engine)


@pytest.fixture
def model_store(engine):
    return ModelStore(engine)


@pytest.fixture
def ledger():
    return InMemoryLedgerClient()


@pytest.fixture
def sample_records():
    return [
        make_record("0x1", "Ada", 72, 80, 120, 45, 81.5),
        make_record("0x2", "Bob", 65, 75, 118, 60, 78.0),
        make_record("0x3", "Cleo", 88, 90, 140, 70, 72.5),
    ]


@pytest.fixture
def service(record_store, model_store, ledger):
    verifier = ProofVerifier(ledger=ledger, mode=ProofMode.LEDGER, timeout=1.0)
    return CoordinatorService(
        record_store=record_store,
        model_store=model_store,
        verifier=verifier,
        learning_rate=1e-6,
        epochs=1000,
        history_interval=100,
        ledger=ledger,
    )
