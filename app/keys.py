"""Natural-key derivation for synced samples.

A sample's identity comes from its own fields, never from a server-assigned
id. Timestamps are normalized to naive UTC at millisecond precision, the
resolution every client serializer in use can round-trip, so the same
physical instant always produces the same key however often it is encoded.
"""

from datetime import datetime, timezone
from typing import Any, Tuple

HEART_RATE_KEY_COLUMNS = ("timestamp", "heart_rate", "source_device")
ECG_KEY_COLUMNS = ("timestamp",)


def normalize_timestamp(value: datetime) -> datetime:
    """Convert to naive UTC truncated to whole milliseconds.

    Naive inputs are taken to be UTC already.
    """
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def _field(sample: Any, wire_name: str, column_name: str) -> Any:
    # Accept validated payloads (camelCase) and ORM rows (snake_case) alike
    if hasattr(sample, wire_name):
        return getattr(sample, wire_name)
    return getattr(sample, column_name)


def heart_rate_key(sample: Any) -> Tuple[datetime, float, str]:
    return (
        normalize_timestamp(sample.timestamp),
        float(_field(sample, "heartRate", "heart_rate")),
        _field(sample, "sourceDevice", "source_device"),
    )


def ecg_key(sample: Any) -> Tuple[datetime]:
    return (normalize_timestamp(sample.timestamp),)
