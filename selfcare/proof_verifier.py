"""
SelfCare Coordinator - Ledger Proof Verifier

Checks that every record submitted by a hospital is unmodified since it was
anchored on the ledger, by recomputing its digest and comparing it with the
anchored value.

================================================================================
VERIFICATION PIPELINE (per record)
================================================================================

    ┌──────────────┐   missing    ┌──────────┐
    │ identifier?  │─────────────►│ errored  │
    └──────┬───────┘              └──────────┘
           ▼
    ┌──────────────┐   missing    ┌──────────┐
    │ canonicalize │─────────────►│ errored  │
    │ + SHA-256    │   field      └──────────┘
    └──────┬───────┘
           ▼
    ┌──────────────┐   bad key    ┌──────────┐
    │ uint256 key  │─────────────►│ errored  │
    └──────┬───────┘              └──────────┘
           ▼
    ┌──────────────┐   absent /   ┌──────────┐
    │ ledger       │─────────────►│ errored  │
    │ lookup       │   timeout /  └──────────┘
    └──────┬───────┘   failure
           ▼
    ┌──────────────┐   differs    ┌────────────┐
    │ compare      │─────────────►│ mismatched │
    └──────┬───────┘              └────────────┘
           ▼
      ┌──────────┐
      │ verified │
      └──────────┘

A failing record never aborts the batch. Lookups for different records run
concurrently, and the report is reassembled in input order.

TRUST MODE
──────────
With ``ProofMode.TRUST`` the ledger is not consulted and every record is
accepted. This is a different trust model and must be selected explicitly in
the configuration; a missing ledger client in LEDGER mode is a configuration
error, never a silent downgrade.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid as uuid_lib
from typing import Iterable, Optional, Sequence

from .config import ProofMode
from .errors import ConfigurationError, LedgerError, LedgerKeyError, MissingFieldError
from .hashing import normalize_digest, record_digest
from .ledger import LedgerClient
from .records import PatientRecord, ProofOutcome, ProofStatus, VerificationReport

logger = logging.getLogger(__name__)

# The registry is indexed by uint256
LEDGER_KEY_BITS = 256
MAX_LEDGER_KEY = (1 << LEDGER_KEY_BITS) - 1

_HEX_KEY = re.compile(r"^0[xX][0-9a-fA-F]+$")
_DECIMAL_KEY = re.compile(r"^[0-9]+$")
_UUID_KEY = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

REASON_IDENTIFIER_MISSING = "identifier missing"
REASON_NOT_ANCHORED = "no anchored hash for identifier"
REASON_TIMEOUT = "ledger lookup timed out"
REASON_MISMATCH = "hash mismatch with ledger data"


def parse_ledger_key(identifier: str) -> int:
    """
    Convert a record identifier into the ledger's uint256 key.

    Accepted forms:
        - hex with ``0x`` prefix: ``0x1f``
        - decimal: ``31``
        - canonical UUID: ``550e8400-e29b-41d4-a716-446655440000`` (128-bit value)

    Raises:
        LedgerKeyError: unparseable identifier or value outside the key domain
    """
    text = (identifier or "").strip()
    if _HEX_KEY.match(text):
        key = int(text, 16)
    elif _DECIMAL_KEY.match(text):
        key = int(text, 10)
    elif _UUID_KEY.match(text):
        key = uuid_lib.UUID(text).int
    else:
        raise LedgerKeyError(f"identifier is not a valid ledger key: {identifier!r}")

    if key > MAX_LEDGER_KEY:
        raise LedgerKeyError(
            f"identifier exceeds the {LEDGER_KEY_BITS}-bit ledger key range: {identifier!r}"
        )
    return key


class ProofVerifier:
    """
    Partitions a batch of records into verified / mismatched / errored.

    Attributes:
        ledger: Client used to read anchored digests (required in LEDGER mode)
        mode: ProofMode.LEDGER or ProofMode.TRUST
        timeout: Deadline in seconds for a single ledger lookup
        max_concurrency: Maximum number of lookups in flight

    Example:
        >>> verifier = ProofVerifier(ledger=InMemoryLedgerClient({31: digest}))
        >>> report = await verifier.verify(records)
        >>> report.summary()
        {'valid': 1, 'invalid': 0, 'errors': 0}
    """

    def __init__(
        self,
        ledger: Optional[LedgerClient] = None,
        mode: ProofMode = ProofMode.LEDGER,
        timeout: float = 5.0,
        max_concurrency: int = 8,
    ) -> None:
        self.mode = ProofMode(mode)
        if self.mode is ProofMode.LEDGER and ledger is None:
            raise ConfigurationError("Ledger proof mode requires a ledger client")
        self.ledger = ledger
        self.timeout = timeout
        self.max_concurrency = max_concurrency

        if self.mode is ProofMode.TRUST:
            logger.warning(
                "Proof verification runs in TRUST mode: records are accepted "
                "without checking the ledger"
            )

    async def verify(self, records: Sequence[PatientRecord]) -> VerificationReport:
        """Verify every record and return the three ordered outcome sequences."""
        records = list(records)
        if not records:
            return VerificationReport()

        if self.mode is ProofMode.TRUST:
            outcomes = [self._trusted(record) for record in records]
        else:
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def bounded(record: PatientRecord) -> ProofOutcome:
                async with semaphore:
                    return await self._verify_one(record)

            # gather preserves input order
            outcomes = await asyncio.gather(*(bounded(r) for r in records))

        report = VerificationReport.from_outcomes(outcomes)
        logger.info(
            f"Verified {report.total} records",
            extra=report.summary(),
        )
        return report

    def _trusted(self, record: PatientRecord) -> ProofOutcome:
        try:
            record_hash = record_digest(record)
        except MissingFieldError:
            record_hash = None
        return ProofOutcome(record=record, status=ProofStatus.VERIFIED, digest=record_hash)

    async def _verify_one(self, record: PatientRecord) -> ProofOutcome:
        if not record.uuid:
            return _errored(record, REASON_IDENTIFIER_MISSING)

        try:
            record_hash = record_digest(record)
        except MissingFieldError as e:
            return _errored(record, e.message)

        try:
            key = parse_ledger_key(record.uuid)
        except LedgerKeyError as e:
            return _errored(record, e.message, digest=record_hash)

        try:
            anchored = await asyncio.wait_for(
                self.ledger.get_anchored_digest(key),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Ledger lookup timed out for record {record.uuid}")
            return _errored(record, REASON_TIMEOUT, digest=record_hash)
        except LedgerError as e:
            logger.warning(f"Ledger lookup failed for record {record.uuid}: {e}")
            return _errored(record, e.message, digest=record_hash)
        except Exception as e:
            logger.warning(f"Unexpected ledger failure for record {record.uuid}: {e}")
            return _errored(record, str(e) or type(e).__name__, digest=record_hash)

        if anchored is None or anchored == "" or anchored == b"":
            return _errored(record, REASON_NOT_ANCHORED, digest=record_hash)

        anchored_hash = normalize_digest(anchored)
        if anchored_hash == record_hash:
            return ProofOutcome(record=record, status=ProofStatus.VERIFIED, digest=record_hash)

        logger.warning(f"Hash mismatch for record {record.uuid}")
        return ProofOutcome(
            record=record,
            status=ProofStatus.MISMATCHED,
            digest=record_hash,
            anchored_digest=anchored_hash,
            reason=REASON_MISMATCH,
        )


def _errored(record: PatientRecord, reason: str, digest: Optional[str] = None) -> ProofOutcome:
    return ProofOutcome(record=record, status=ProofStatus.ERRORED, digest=digest, reason=reason)


def verify_all(verifier: ProofVerifier, records: Iterable[PatientRecord]) -> VerificationReport:
    """Synchronous wrapper, for scripts and tests outside an event loop."""
    return asyncio.run(verifier.verify(list(records)))
