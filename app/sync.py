"""Device-side sync session.

The server never stores the sync cursor. This module is the reference caller:
it bounds each session by ``[last successful sync, now)``, uploads every
record kind, and advances the cursor only after every upload was verified.
Any failure, including cancellation, leaves the cursor where it was so the
next session re-sends the same window and the server folds the repeats into
its duplicate count.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel

logger = logging.getLogger("health-sync.client")

DEFAULT_LOOKBACK = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncError(Exception):
    pass


class SyncInProgressError(SyncError):
    """Another session is already running for this cursor."""


class SyncTransportError(SyncError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncVerificationError(SyncError):
    """The server answered 2xx but its tally does not cover every record sent."""


# ---------------------------------------------------------------------------
# Sync window tracker
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SyncWindow:
    start: datetime
    end: datetime

    def __contains__(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


class CursorStore(Protocol):
    def load(self) -> Optional[datetime]: ...

    def save(self, value: datetime) -> None: ...


class MemoryCursorStore:
    def __init__(self, value: Optional[datetime] = None):
        self.value = value

    def load(self) -> Optional[datetime]:
        return self.value

    def save(self, value: datetime) -> None:
        self.value = value


class FileCursorStore:
    """Keeps the cursor as ``{"lastSyncDate": "<iso>"}`` in a JSON file."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Optional[datetime]:
        if not self.path.exists():
            return None
        raw = json.loads(self.path.read_text()).get("lastSyncDate")
        return datetime.fromisoformat(raw) if raw else None

    def save(self, value: datetime) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps({"lastSyncDate": value.isoformat()}))
        tmp.replace(self.path)


class SyncWindowTracker:
    def __init__(
        self,
        store: CursorStore,
        lookback: timedelta = DEFAULT_LOOKBACK,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.lookback = lookback
        self.clock = clock

    @property
    def last_sync(self) -> Optional[datetime]:
        return self.store.load()

    def current_window(self) -> SyncWindow:
        now = self.clock()
        start = self.store.load() or now - self.lookback
        return SyncWindow(start=start, end=now)

    def advance(self, window: SyncWindow) -> None:
        # The next window starts exactly where this one ended; never rewind.
        current = self.store.load()
        if current is not None and window.end <= current:
            return
        self.store.save(window.end)
        logger.info("Sync cursor advanced to %s", window.end.isoformat())


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
class SampleExtractor(Protocol):
    async def fetch_heart_rate(self, start: datetime, end: datetime) -> Sequence[Any]: ...

    async def fetch_ecg(self, start: datetime, end: datetime) -> Sequence[Any]: ...


def _encode(sample: Any) -> Any:
    if isinstance(sample, BaseModel):
        return sample.model_dump(mode="json", exclude_none=True)
    if isinstance(sample, dict):
        return {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in sample.items()
        }
    return sample


class HealthSyncClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        device_info: Optional[Dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.device_info = device_info or {}
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HealthSyncClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _post_batch(self, path: str, samples: Sequence[Any]) -> Dict[str, int]:
        payload = {"data": [_encode(s) for s in samples], "deviceInfo": self.device_info}
        try:
            response = await self._client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"X-API-Key": self.api_key},
            )
        except httpx.HTTPError as e:
            raise SyncTransportError(f"POST {path} failed: {e}") from e

        if not response.is_success:
            raise SyncTransportError(
                f"POST {path} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response.json()["stats"]

    async def sync_heart_rate(self, samples: Sequence[Any]) -> Dict[str, int]:
        return await self._post_batch("/health-data/heartrate", samples)

    async def sync_ecg(self, samples: Sequence[Any]) -> Dict[str, int]:
        return await self._post_batch("/health-data/ecg", samples)

    async def test_connection(self) -> bool:
        try:
            response = await self._client.get(f"{self.base_url}/health")
        except httpx.HTTPError:
            return False
        return response.is_success


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
class SessionState(enum.Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    TRANSMITTING = "transmitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class SessionResult:
    state: SessionState
    window: SyncWindow
    heart_rate_count: int = 0
    ecg_count: int = 0
    heart_rate_stats: Optional[Dict[str, int]] = None
    ecg_stats: Optional[Dict[str, int]] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is SessionState.SUCCEEDED

    @property
    def summary(self) -> str:
        return (
            f"Synced {self.heart_rate_count} heart rate samples and "
            f"{self.ecg_count} ECG recordings from {self.window.start.isoformat()} "
            f"to {self.window.end.isoformat()}"
        )


def verify_stats(kind: str, sent: int, stats: Dict[str, int]) -> None:
    """Raise unless every record sent is stored or can never be stored.

    Rejected records fail the same way on every resend, so they do not hold
    the cursor back. Any other failure does.
    """
    received = stats.get("received")
    if received != sent:
        raise SyncVerificationError(f"{kind}: sent {sent} but server received {received}")
    rejected = stats.get("rejected", 0)
    retryable = stats.get("failed", 0) - rejected
    if retryable:
        raise SyncVerificationError(f"{kind}: server failed to store {retryable} of {sent}")
    if rejected:
        logger.warning("%s: server rejected %d of %d records as invalid", kind, rejected, sent)


@dataclass
class SyncSession:
    extractor: SampleExtractor
    client: HealthSyncClient
    tracker: SyncWindowTracker
    state: SessionState = SessionState.IDLE
    history: List[SessionState] = field(default_factory=list)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def _enter(self, state: SessionState) -> None:
        self.state = state
        self.history.append(state)

    async def run(self) -> SessionResult:
        if self._lock.locked():
            raise SyncInProgressError("A sync session is already running")
        async with self._lock:
            self.history = []
            return await self._run()

    async def _run(self) -> SessionResult:
        window = self.tracker.current_window()
        result = SessionResult(state=SessionState.IDLE, window=window)
        logger.info("Starting sync from %s to %s", window.start.isoformat(), window.end.isoformat())

        try:
            self._enter(SessionState.EXTRACTING)
            heart_rate = list(await self.extractor.fetch_heart_rate(window.start, window.end))
            ecg = list(await self.extractor.fetch_ecg(window.start, window.end))
            result.heart_rate_count = len(heart_rate)
            result.ecg_count = len(ecg)
            logger.info("Fetched %d heart rate samples, %d ECG recordings", len(heart_rate), len(ecg))

            self._enter(SessionState.TRANSMITTING)
            if heart_rate:
                result.heart_rate_stats = await self.client.sync_heart_rate(heart_rate)
                verify_stats("heart rate", len(heart_rate), result.heart_rate_stats)
            if ecg:
                result.ecg_stats = await self.client.sync_ecg(ecg)
                verify_stats("ECG", len(ecg), result.ecg_stats)
        except asyncio.CancelledError:
            self._enter(SessionState.FAILED)
            logger.warning("Sync cancelled; cursor left at %s", window.start.isoformat())
            raise
        except Exception as e:
            self._enter(SessionState.FAILED)
            result.state = SessionState.FAILED
            result.error = str(e)
            logger.error("Sync failed: %s", e)
            return result

        self.tracker.advance(window)
        self._enter(SessionState.SUCCEEDED)
        result.state = SessionState.SUCCEEDED
        logger.info(result.summary)
        return result
