"""Record builders shared by the test modules."""

from selfcare.hashing import record_digest
from selfcare.proof_verifier import parse_ledger_key
from selfcare.records import PatientRecord


def make_record(uuid="0x1", first_name="Ada", hr=72, dia=80, sys=120, age=45, y=81.5):
    return PatientRecord.model_validate({
        "uuid": uuid,
        "first_name": first_name,
        "last_name": "Lovelace",
        "birthdate": "1980-01-01",
        "features": {
            "heartrate_average_last_3_days": hr,
            "blood_pressure_diastolic": dia,
            "blood_pressure_sistolic": sys,
            "age": age,
        },
        "target": {"life_expectancy": y},
    })


def anchor_all(ledger, records):
    """Anchor the current digest of every record on an in-memory ledger."""
    for record in records:
        ledger.anchor(parse_ledger_key(record.uuid), record_digest(record))


def diverging_records():
    """Valid, finite records whose feature scale makes default gradient descent blow up."""
    return [
        make_record("0x11", "Hal", hr=1e6, dia=2e6, sys=3e6, age=1e6, y=80.0),
        make_record("0x12", "Ivy", hr=2e6, dia=1e6, sys=3e6, age=2e6, y=75.0),
        make_record("0x13", "Jon", hr=3e6, dia=3e6, sys=1e6, age=3e6, y=70.0),
    ]
