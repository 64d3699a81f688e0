import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB

from app.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class HeartRateSample(Base):
    __tablename__ = "heart_rate_samples"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Naive UTC, truncated to whole milliseconds (see app.keys)
    timestamp = Column(DateTime, nullable=False, index=True)
    heart_rate = Column(Float, nullable=False)
    source_device = Column(String, nullable=False)
    metadata_json = Column(Text, nullable=True)
    device_info = Column(JSONType, nullable=True)

    synced_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "timestamp",
            "heart_rate",
            "source_device",
            name="uq_heart_rate_natural_key",
        ),
        CheckConstraint(
            "heart_rate >= 0 AND heart_rate <= 300",
            name="ck_heart_rate_range",
        ),
        Index("ix_heart_rate_time_device", timestamp.desc(), "source_device"),
    )


class EcgRecording(Base):
    __tablename__ = "ecg_recordings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    timestamp = Column(DateTime, nullable=False)
    # 0 unset, 1 sinus rhythm, 2 atrial fibrillation,
    # 3-5 inconclusive (low HR, high HR, poor reading)
    classification = Column(Integer, nullable=False)
    average_heart_rate = Column(Float, nullable=True)
    sampling_frequency = Column(Float, nullable=True)
    # [{"timeSinceStart": float, "voltage": float | null}, ...] in recording order
    voltage_measurements = Column(JSONType, nullable=False, default=list)
    symptom_status = Column(Integer, nullable=False)
    device_info = Column(JSONType, nullable=True)

    synced_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        # A device cannot record two ECGs at the same instant
        UniqueConstraint("timestamp", name="uq_ecg_natural_key"),
        CheckConstraint(
            "classification >= 0 AND classification <= 5",
            name="ck_ecg_classification",
        ),
        CheckConstraint(
            "average_heart_rate IS NULL OR (average_heart_rate >= 0 AND average_heart_rate <= 300)",
            name="ck_ecg_average_heart_rate_range",
        ),
        Index("ix_ecg_time_classification", timestamp.desc(), "classification"),
    )
