"""Idempotent batch ingestion.

Every record is written with ``INSERT ... ON CONFLICT (<natural key>) DO
NOTHING`` and committed on its own. The unique constraint on the natural key
decides which of two racing writers wins; the loser sees zero affected rows
and is tallied as a duplicate. A record that fails validation or is refused
by the store only rolls back itself, so siblings stay committed and replaying
a whole batch is always safe.

Failed records come in two flavours. ``REJECTED`` ones can never be stored
(bad payload, constraint violation) and resending them changes nothing.
``FAILED`` ones hit a transient store error and may succeed on a later try.
Both count towards ``failed``; ``rejected`` reports the permanent share.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import DBAPIError, DataError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import dialect_insert
from app.errors import MalformedBatchError, StoreUnavailableError
from app.keys import ECG_KEY_COLUMNS, HEART_RATE_KEY_COLUMNS, normalize_timestamp
from app.models import EcgRecording, HeartRateSample
from app.schemas import BatchStats, DeviceInfoSchema, EcgRecordingIn, HeartRateSampleIn

logger = logging.getLogger("health-sync.ingest")


class RecordOutcome(enum.Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class BatchOutcome:
    received: int = 0
    inserted: int = 0
    duplicate: int = 0
    failed: int = 0
    rejected: int = 0

    def record(self, outcome: RecordOutcome) -> None:
        self.received += 1
        if outcome is RecordOutcome.INSERTED:
            self.inserted += 1
        elif outcome is RecordOutcome.DUPLICATE:
            self.duplicate += 1
        else:
            self.failed += 1
            if outcome is RecordOutcome.REJECTED:
                self.rejected += 1

    @property
    def is_balanced(self) -> bool:
        return self.received == self.inserted + self.duplicate + self.failed

    def to_stats(self) -> BatchStats:
        return BatchStats(
            received=self.received,
            inserted=self.inserted,
            updated=0,
            duplicates=self.duplicate,
            failed=self.failed,
            rejected=self.rejected,
        )


# ---------------------------------------------------------------------------
# Record kinds
# ---------------------------------------------------------------------------
def _device_info(payload) -> dict:
    return payload.deviceInfo.model_dump(mode="json") if payload.deviceInfo else {}


def _heart_rate_row(payload: HeartRateSampleIn) -> Dict[str, Any]:
    return {
        "timestamp": normalize_timestamp(payload.timestamp),
        "heart_rate": float(payload.heartRate),
        "source_device": payload.sourceDevice,
        "metadata_json": payload.metadataJSON,
        "device_info": _device_info(payload),
    }


def _ecg_row(payload: EcgRecordingIn) -> Dict[str, Any]:
    return {
        "timestamp": normalize_timestamp(payload.timestamp),
        "classification": int(payload.classification),
        "average_heart_rate": payload.averageHeartRate,
        "sampling_frequency": payload.samplingFrequency,
        "voltage_measurements": [m.model_dump(mode="json") for m in payload.voltageMeasurements],
        "symptom_status": payload.symptomStatus,
        "device_info": _device_info(payload),
    }


@dataclass(frozen=True)
class RecordKind:
    name: str
    model: Type
    schema: Type[BaseModel]
    key_columns: Tuple[str, ...]
    to_row: Callable[[Any], Dict[str, Any]]


HEART_RATE = RecordKind(
    name="heart rate",
    model=HeartRateSample,
    schema=HeartRateSampleIn,
    key_columns=HEART_RATE_KEY_COLUMNS,
    to_row=_heart_rate_row,
)

ECG = RecordKind(
    name="ECG",
    model=EcgRecording,
    schema=EcgRecordingIn,
    key_columns=ECG_KEY_COLUMNS,
    to_row=_ecg_row,
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
def enrich_records(data: Iterable[Any], device_info: Optional[DeviceInfoSchema]) -> List[Any]:
    """Attach the envelope's deviceInfo to every record lacking its own."""
    if device_info is None:
        return list(data)
    envelope_info = device_info.model_dump(mode="json")
    enriched = []
    for record in data:
        if isinstance(record, dict) and not record.get("deviceInfo"):
            record = {**record, "deviceInfo": envelope_info}
        enriched.append(record)
    return enriched


async def insert_if_absent(db: AsyncSession, kind: RecordKind, row: Dict[str, Any]) -> bool:
    """Insert and commit ``row`` unless its natural key exists.

    Returns True if a row was written. Each call commits on its own.
    """
    insert = dialect_insert(db)
    stmt = insert(kind.model).values(**row).on_conflict_do_nothing(
        index_elements=list(kind.key_columns)
    )
    try:
        result = await db.execute(stmt)
        inserted = result.rowcount == 1
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise
    return inserted


def _is_disconnect(exc: SQLAlchemyError) -> bool:
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


async def _commit_record(db: AsyncSession, kind: RecordKind, row: Dict[str, Any]) -> RecordOutcome:
    attempt = 0
    while True:
        try:
            inserted = await insert_if_absent(db, kind, row)
            return RecordOutcome.INSERTED if inserted else RecordOutcome.DUPLICATE
        except (IntegrityError, DataError) as e:
            # Constraint other than the natural key (range checks, NOT NULL)
            logger.warning("Rejected %s record at %s: %s", kind.name, row["timestamp"], e.orig)
            return RecordOutcome.REJECTED
        except OperationalError as e:
            if _is_disconnect(e):
                raise StoreUnavailableError() from e
            if attempt >= settings.INGEST_MAX_RETRIES:
                logger.error(
                    "Giving up on %s record at %s after %d attempts: %s",
                    kind.name, row["timestamp"], attempt + 1, e.orig,
                )
                return RecordOutcome.FAILED
            attempt += 1
            await asyncio.sleep(settings.INGEST_RETRY_BACKOFF_SECONDS * attempt)
        except SQLAlchemyError as e:
            if _is_disconnect(e):
                raise StoreUnavailableError() from e
            logger.error("Store rejected %s record at %s: %s", kind.name, row["timestamp"], e)
            return RecordOutcome.FAILED


async def upsert_batch(db: AsyncSession, kind: RecordKind, records: Iterable[Any]) -> BatchOutcome:
    """Commit each record insert-if-absent; one record never blocks another."""
    outcome = BatchOutcome()
    for index, record in enumerate(records):
        try:
            row = kind.to_row(kind.schema.model_validate(record))
        except (ValidationError, ValueError, OverflowError) as e:
            reason = e.errors()[0].get("msg") if isinstance(e, ValidationError) else e
            logger.info("Invalid %s record #%d: %s", kind.name, index, reason)
            outcome.record(RecordOutcome.REJECTED)
            continue
        outcome.record(await _commit_record(db, kind, row))
    return outcome


async def ingest_batch(
    db: AsyncSession,
    kind: RecordKind,
    data: Any,
    device_info: Optional[DeviceInfoSchema] = None,
) -> BatchOutcome:
    if not isinstance(data, list):
        raise MalformedBatchError(f"Data must be an array of {kind.name} records")

    logger.info("Received %d %s records", len(data), kind.name)
    outcome = await upsert_batch(db, kind, enrich_records(data, device_info))
    logger.info(
        "Ingest OK [%s]: received=%d inserted=%d duplicates=%d failed=%d",
        kind.name,
        outcome.received,
        outcome.inserted,
        outcome.duplicate,
        outcome.failed,
    )
    return outcome
