import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import Base, engine, get_db
from app.errors import MalformedBatchError, StoreUnavailableError, register_exception_handlers
from app.ingest import ECG, HEART_RATE, RecordKind, ingest_batch
from app.models import EcgRecording, HeartRateSample
from app.queries import query_records, summarize
from app.schemas import (
    EcgOut,
    EcgQueryResponse,
    HealthResponse,
    HeartRateOut,
    HeartRateQueryResponse,
    IngestRequest,
    IngestResponse,
    StatsResponse,
    UtcDatetime,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="[%(asctime)s] [%(levelname)s] %(name)s - %(message)s",
)
logger = logging.getLogger("health-sync")

VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Lifespan: create tables (dev only; use Alembic in prod)
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Connected to database (%s)", engine.dialect.name)
    yield
    await engine.dispose()
    logger.info("Database connection closed")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(title="Health Sync API", version=VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s %d %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------
async def verify_api_key(x_api_key: Optional[str] = Header(None)):
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key is required. Please include X-API-Key header.",
        )
    if x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
    return x_api_key


router = APIRouter(
    prefix=f"{settings.API_PREFIX}/health-data",
    dependencies=[Depends(verify_api_key)],
)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------
async def _parse_envelope(request: Request, kind: RecordKind) -> IngestRequest:
    """Parse the body only after auth has passed; structural errors write nothing."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise MalformedBatchError("Request body must be valid JSON")
    try:
        return IngestRequest.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        location = first.get("loc", ())
        if location[:1] == ("data",):
            message = f"Data must be an array of {kind.name} records"
        elif location:
            path = ".".join(str(part) for part in location)
            message = f"{path}: {first['msg']}"
        else:
            message = "Request body must be an object with a data array"
        raise MalformedBatchError(message)


async def _ingest(request: Request, kind: RecordKind, db: AsyncSession) -> IngestResponse:
    payload = await _parse_envelope(request, kind)
    outcome = await ingest_batch(db, kind, payload.data, payload.deviceInfo)
    return IngestResponse(
        message=f"{kind.name[:1].upper()}{kind.name[1:]} data synced successfully",
        stats=outcome.to_stats(),
    )


async def _query(db: AsyncSession, model, kind: RecordKind, start, end, limit):
    try:
        return await query_records(db, model, start, end, limit)
    except SQLAlchemyError as e:
        logger.error("Error fetching %s data: %s", kind.name, e)
        raise StoreUnavailableError(f"Failed to fetch {kind.name} data")


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------
@router.post("/heartrate", response_model=IngestResponse)
async def ingest_heart_rate(request: Request, db: AsyncSession = Depends(get_db)):
    return await _ingest(request, HEART_RATE, db)


@router.post("/ecg", response_model=IngestResponse)
async def ingest_ecg(request: Request, db: AsyncSession = Depends(get_db)):
    return await _ingest(request, ECG, db)


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------
@router.get("/heartrate", response_model=HeartRateQueryResponse)
async def get_heart_rate(
    startDate: Optional[UtcDatetime] = Query(None),
    endDate: Optional[UtcDatetime] = Query(None),
    limit: int = Query(settings.DEFAULT_HEART_RATE_LIMIT, ge=1, le=settings.MAX_QUERY_LIMIT),
    db: AsyncSession = Depends(get_db),
):
    rows = await _query(db, HeartRateSample, HEART_RATE, startDate, endDate, limit)
    data = [HeartRateOut.model_validate(row) for row in rows]
    return HeartRateQueryResponse(count=len(data), data=data)


@router.get("/ecg", response_model=EcgQueryResponse)
async def get_ecg(
    startDate: Optional[UtcDatetime] = Query(None),
    endDate: Optional[UtcDatetime] = Query(None),
    limit: int = Query(settings.DEFAULT_ECG_LIMIT, ge=1, le=settings.MAX_QUERY_LIMIT),
    db: AsyncSession = Depends(get_db),
):
    rows = await _query(db, EcgRecording, ECG, startDate, endDate, limit)
    data = [EcgOut.model_validate(row) for row in rows]
    return EcgQueryResponse(count=len(data), data=data)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(db: AsyncSession = Depends(get_db)):
    try:
        stats = await summarize(db)
    except SQLAlchemyError as e:
        logger.error("Error fetching stats: %s", e)
        raise StoreUnavailableError("Failed to fetch statistics")
    return StatsResponse(stats=stats)


app.include_router(router)


# ---------------------------------------------------------------------------
# Liveness and index (no auth)
# ---------------------------------------------------------------------------
@app.get(f"{settings.API_PREFIX}/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as e:
        logger.warning("Health check could not reach the database: %s", e)
        database = "disconnected"
    return HealthResponse(
        status="healthy" if database == "connected" else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        database=database,
    )


@app.get("/")
async def root():
    prefix = settings.API_PREFIX
    return {
        "message": "Health Sync API",
        "version": VERSION,
        "endpoints": {
            "health": f"GET {prefix}/health",
            "syncHeartRate": f"POST {prefix}/health-data/heartrate",
            "syncECG": f"POST {prefix}/health-data/ecg",
            "getHeartRate": f"GET {prefix}/health-data/heartrate",
            "getECG": f"GET {prefix}/health-data/ecg",
            "getStats": f"GET {prefix}/health-data/stats",
        },
    }
