"""
SelfCare Coordinator - Record Canonicalization and Hashing

The ledger stores, for every record identifier, the digest of the record as it
was when the hospital anchored it. Verification only works if the coordinator
rebuilds exactly the same string and hashes it with exactly the same function,
so both the field order and the algorithm are fixed here and are not
configurable per call.

    first_name,last_name,f1,f2,f3,f4,y,birthdate
        │
        ▼ UTF-8
    SHA-256 ──► lowercase hex digest (no 0x prefix)
"""

from __future__ import annotations

import hashlib
import math
from typing import Any, List, Tuple

from .errors import MissingFieldError
from .records import FEATURE_NAMES, TARGET_NAME, PatientRecord

HASH_ALGORITHM = "sha256"
DELIMITER = ","


def _render(value: Any) -> str:
    # Numbers are rendered like JSON numbers: 72.0 -> "72", 81.5 -> "81.5"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def canonical_fields(record: PatientRecord) -> List[Tuple[str, Any]]:
    """Return the (name, value) pairs that make up the canonical string, in order."""
    fields: List[Tuple[str, Any]] = [
        ("first_name", record.first_name),
        ("last_name", record.last_name),
    ]
    fields.extend((name, getattr(record.features, name)) for name in FEATURE_NAMES)
    fields.append((TARGET_NAME, record.target.life_expectancy))
    fields.append(("birthdate", record.birthdate))
    return fields


def canonicalize(record: PatientRecord) -> str:
    """
    Serialize a record into its canonical string.

    Raises:
        MissingFieldError: if any canonical field is absent
    """
    parts = []
    for name, value in canonical_fields(record):
        if value is None:
            raise MissingFieldError(name)
        parts.append(_render(value))
    return DELIMITER.join(parts)


def digest(text: str) -> str:
    """SHA-256 of the UTF-8 bytes of ``text``, as lowercase hex."""
    return hashlib.new(HASH_ALGORITHM, text.encode("utf-8")).hexdigest()


def record_digest(record: PatientRecord) -> str:
    return digest(canonicalize(record))


def normalize_digest(value: Any) -> str:
    """
    Bring a ledger answer into the textual form of ``digest``.

    Raw bytes become lowercase hex. Strings are returned unchanged, so the
    comparison with ``digest`` is an exact string equality.
    """
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return str(value)
