"""
SelfCare Coordinator - Record and Model Stores

Persistence for the three kinds of state the coordinator owns:

    patient_records      one row per submitted record, keyed by (hospital, record id)
    contributor_models   one row per hospital, overwritten on every retraining
    global_model         exactly one row (key "global"), overwritten on aggregation

Every write runs in a single transaction, so a failed operation never leaves a
partially written record batch or a torn model behind. Database failures are
wrapped in StorageError and surfaced; retries are left to the caller.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    insert,
    select,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import serde
from .config import settings
from .errors import ConflictError, StorageError
from .records import ContributorModel, GlobalModel, PatientRecord, utcnow

logger = logging.getLogger(__name__)

GLOBAL_MODEL_KEY = "global"

metadata = MetaData()

patient_records = Table(
    "patient_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(128), nullable=False, index=True),
    Column("record_uuid", String(256), nullable=True),
    Column("payload", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("owner_id", "record_uuid", name="uq_patient_records_owner_uuid"),
)

contributor_models = Table(
    "contributor_models",
    metadata,
    Column("contributor_id", String(128), primary_key=True),
    Column("payload", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

global_model = Table(
    "global_model",
    metadata,
    Column("key", String(32), primary_key=True),
    Column("payload", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


def create_db_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create the SQLAlchemy engine and make sure the schema exists.

    For SQLite files the parent directory is created on demand.
    """
    url = make_url(str(database_url or settings.database_url))
    kwargs = {"echo": settings.db_echo if echo is None else echo}

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["pool_pre_ping"] = True  # Verify connections before use

    try:
        engine = create_engine(url, **kwargs)
        metadata.create_all(engine)
    except SQLAlchemyError as e:
        raise StorageError(f"Unable to initialize the database: {e}") from e

    logger.info("Database ready", extra={"backend": url.get_backend_name()})
    return engine


class RecordStore:
    """Per-hospital patient records. Records are appended, never modified."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def load_records(self, owner_id: str) -> List[PatientRecord]:
        """Return every stored record of a hospital in insertion order (empty if none)."""
        query = (
            select(patient_records.c.payload)
            .where(patient_records.c.owner_id == owner_id)
            .order_by(patient_records.c.id)
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        except SQLAlchemyError as e:
            logger.error(f"Database query failed: {e}")
            raise StorageError("It is not possible to retrieve data") from e

        return [PatientRecord.model_validate_json(row.payload) for row in rows]

    def append_records(self, owner_id: str, records: Sequence[PatientRecord]) -> int:
        """
        Append records to a hospital's set.

        The whole batch is rejected, before anything is written, if one of its
        identifiers is already stored or appears twice in the batch.

        Returns:
            Number of records written

        Raises:
            ConflictError: duplicate record identifier
            StorageError: database failure
        """
        records = list(records)
        if not records:
            return 0

        seen = set()
        batch_duplicates = []
        for record in records:
            if record.uuid is None:
                continue
            if record.uuid in seen:
                batch_duplicates.append(record.uuid)
            seen.add(record.uuid)

        now = utcnow()
        try:
            with self.engine.begin() as conn:
                existing = set(
                    conn.execute(
                        select(patient_records.c.record_uuid).where(
                            patient_records.c.owner_id == owner_id,
                            patient_records.c.record_uuid.in_(sorted(seen)),
                        )
                    ).scalars()
                ) if seen else set()

                duplicates = sorted(existing.union(batch_duplicates))
                if duplicates:
                    raise ConflictError(duplicates)

                conn.execute(
                    insert(patient_records),
                    [
                        {
                            "owner_id": owner_id,
                            "record_uuid": record.uuid,
                            "payload": record.model_dump_json(),
                            "created_at": now,
                        }
                        for record in records
                    ],
                )
        except IntegrityError as e:
            # A concurrent submission stored the same identifier first
            raise ConflictError([r.uuid for r in records if r.uuid is not None]) from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to store records for hospital {owner_id}: {e}")
            raise StorageError("Unable to store patient records") from e

        logger.info(f"Stored {len(records)} records for hospital {owner_id}")
        return len(records)


class ModelStore:
    """Contributor models (one per hospital) and the single global model."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def load_contributor_model(self, contributor_id: str) -> Optional[ContributorModel]:
        query = select(contributor_models.c.payload).where(
            contributor_models.c.contributor_id == contributor_id
        )
        try:
            with self.engine.connect() as conn:
                payload = conn.execute(query).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError("Unable to retrieve weights data") from e
        if payload is None:
            return None
        return serde.contributor_model_from_dict(serde.loads(payload))

    def save_contributor_model(self, model: ContributorModel) -> None:
        """Store a hospital's model, replacing the previous one."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    delete(contributor_models).where(
                        contributor_models.c.contributor_id == model.contributor_id
                    )
                )
                conn.execute(
                    insert(contributor_models).values(
                        contributor_id=model.contributor_id,
                        payload=serde.dumps(serde.contributor_model_to_dict(model)),
                        updated_at=utcnow(),
                    )
                )
        except SQLAlchemyError as e:
            logger.error(f"Error when storing weight for hospital {model.contributor_id}: {e}")
            raise StorageError("Unable to store weight data") from e

        logger.info(f"Weight stored successfully for hospital {model.contributor_id}")

    def load_all_contributor_models(self) -> List[ContributorModel]:
        """Every stored contributor model, sorted by contributor id."""
        query = select(contributor_models.c.payload).order_by(contributor_models.c.contributor_id)
        try:
            with self.engine.connect() as conn:
                payloads = conn.execute(query).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Error when reading weights: {e}")
            raise StorageError("Unable to retrieve weights data") from e
        return [serde.contributor_model_from_dict(serde.loads(p)) for p in payloads]

    def load_global_model(self) -> Optional[GlobalModel]:
        query = select(global_model.c.payload).where(global_model.c.key == GLOBAL_MODEL_KEY)
        try:
            with self.engine.connect() as conn:
                payload = conn.execute(query).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError("Unable to retrieve model data") from e
        if payload is None:
            return None
        return serde.global_model_from_dict(serde.loads(payload))

    def save_global_model(self, model: GlobalModel) -> None:
        """Atomically replace the global model."""
        try:
            with self.engine.begin() as conn:
                conn.execute(delete(global_model).where(global_model.c.key == GLOBAL_MODEL_KEY))
                conn.execute(
                    insert(global_model).values(
                        key=GLOBAL_MODEL_KEY,
                        payload=serde.dumps(serde.global_model_to_dict(model)),
                        updated_at=utcnow(),
                    )
                )
        except SQLAlchemyError as e:
            logger.error(f"Error when storing model: {e}")
            raise StorageError("Unable to store model data") from e

        logger.info("Model stored successfully")

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True
