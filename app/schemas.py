from datetime import datetime, timezone
from enum import IntEnum
from typing import Annotated, Any, List, Optional
from uuid import UUID

from pydantic import AfterValidator, BaseModel, Field, field_serializer, field_validator

from app.keys import normalize_timestamp


def utc_timestamp(v: datetime) -> datetime:
    """Naive UTC at millisecond precision, the form natural keys are built from."""
    try:
        return normalize_timestamp(v)
    except OverflowError:
        raise ValueError("Timestamp is out of range once converted to UTC")


# For query parameters; request bodies use the field validators below
UtcDatetime = Annotated[datetime, AfterValidator(utc_timestamp)]


class DeviceInfoSchema(BaseModel):
    deviceModel: Optional[str] = None
    osVersion: Optional[str] = None
    appVersion: Optional[str] = None

    model_config = {"extra": "ignore"}


class EcgClassification(IntEnum):
    UNSET = 0
    SINUS_RHYTHM = 1
    ATRIAL_FIBRILLATION = 2
    INCONCLUSIVE_LOW_HR = 3
    INCONCLUSIVE_HIGH_HR = 4
    INCONCLUSIVE_POOR_READING = 5


# ---------------------------------------------------------------------------
# Per-record payloads (validated one at a time by app.ingest)
# ---------------------------------------------------------------------------
class HeartRateSampleIn(BaseModel):
    timestamp: datetime
    heartRate: float = Field(ge=0, le=300)
    sourceDevice: str = Field(min_length=1)
    metadataJSON: Optional[str] = None
    deviceInfo: Optional[DeviceInfoSchema] = None

    model_config = {"extra": "ignore"}

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return utc_timestamp(v)


class VoltageMeasurementSchema(BaseModel):
    timeSinceStart: float
    voltage: Optional[float] = None

    model_config = {"extra": "ignore"}


class EcgRecordingIn(BaseModel):
    timestamp: datetime
    classification: EcgClassification
    averageHeartRate: Optional[float] = Field(default=None, ge=0, le=300)
    samplingFrequency: Optional[float] = Field(default=None, ge=0)
    voltageMeasurements: List[VoltageMeasurementSchema] = Field(default_factory=list)
    symptomStatus: int
    deviceInfo: Optional[DeviceInfoSchema] = None

    model_config = {"extra": "ignore"}

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return utc_timestamp(v)

    @field_validator("classification", mode="before")
    @classmethod
    def validate_classification(cls, v: Any) -> Any:
        # Codes arrive as JSON integers; "1", true or 1.0 are client bugs
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError("classification must be an integer code")
        return v


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------
class IngestRequest(BaseModel):
    # Items stay untyped here: a bad record is tallied as failed, while a
    # non-list ``data`` rejects the whole request.
    data: List[Any]
    deviceInfo: Optional[DeviceInfoSchema] = None


class BatchStats(BaseModel):
    received: int
    inserted: int
    updated: int = 0
    duplicates: int
    failed: int
    rejected: int = 0


class IngestResponse(BaseModel):
    success: bool = True
    message: str
    stats: BatchStats


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------
def _isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"


class _RecordOut(BaseModel):
    id: UUID
    timestamp: datetime
    deviceInfo: Optional[dict] = Field(default=None, validation_alias="device_info")
    syncedAt: Optional[datetime] = Field(default=None, validation_alias="synced_at")

    model_config = {"from_attributes": True, "populate_by_name": True}

    @field_serializer("timestamp", "syncedAt")
    def _serialize_time(self, value: Optional[datetime]) -> Optional[str]:
        return _isoformat_utc(value)


class HeartRateOut(_RecordOut):
    heartRate: float = Field(validation_alias="heart_rate")
    sourceDevice: str = Field(validation_alias="source_device")
    metadataJSON: Optional[str] = Field(default=None, validation_alias="metadata_json")


class EcgOut(_RecordOut):
    classification: int
    averageHeartRate: Optional[float] = Field(default=None, validation_alias="average_heart_rate")
    samplingFrequency: Optional[float] = Field(default=None, validation_alias="sampling_frequency")
    voltageMeasurements: List[VoltageMeasurementSchema] = Field(
        default_factory=list, validation_alias="voltage_measurements"
    )
    symptomStatus: int = Field(validation_alias="symptom_status")


class HeartRateQueryResponse(BaseModel):
    success: bool = True
    count: int
    data: List[HeartRateOut]


class EcgQueryResponse(BaseModel):
    success: bool = True
    count: int
    data: List[EcgOut]


class SummaryStats(BaseModel):
    totalHeartRateSamples: int
    totalECGRecordings: int
    latestHeartRateTimestamp: Optional[datetime] = None
    latestECGTimestamp: Optional[datetime] = None

    @field_serializer("latestHeartRateTimestamp", "latestECGTimestamp")
    def _serialize_time(self, value: Optional[datetime]) -> Optional[str]:
        return _isoformat_utc(value)


class StatsResponse(BaseModel):
    success: bool = True
    stats: SummaryStats


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    database: str
