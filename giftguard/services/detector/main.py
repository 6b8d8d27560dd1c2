# giftguard/services/detector/main.py

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from aiokafka.errors import KafkaError
import redis.asyncio as redis
import logging

from giftguard.common.config import settings
from giftguard.common.db import SessionLocal, create_tables
from giftguard.common.errors import ConflictError, InvalidDefenseActionError, JobAlreadyRunningError, StorageError
from giftguard.common.kafka_utils import build_kafka_producer, ensure_topics
from giftguard.services.auto_defense.alerts import KafkaAlertPublisher

# ---------------------------------------------------------------------
# Import API routers
# ---------------------------------------------------------------------
from giftguard.services.detector.api.endpoints_v1 import router as v1_router
from giftguard.services.detector.api.admin import router as admin_router
from giftguard.services.detector.api.health import router as health_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handles startup and shutdown events for the FastAPI application.
    """
    logger.info("GiftGuard API starting...")
    await create_tables()
    app.state.session_factory = SessionLocal
    app.state.redis = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)

    await ensure_topics([settings.KAFKA_FRAUD_ALERTS_TOPIC])

    # Alerts are best-effort: the API serves traffic without a broker.
    producer = build_kafka_producer()
    try:
        await producer.start()
        app.state.kafka_producer = producer
        app.state.alert_publisher = KafkaAlertPublisher(producer, settings.KAFKA_FRAUD_ALERTS_TOPIC)
    except KafkaError as e:
        logger.warning(f"Kafka unavailable, fraud alerts disabled: {e}")
        app.state.kafka_producer = None
        app.state.alert_publisher = None

    yield  # Application runs here

    logger.info("GiftGuard API shutting down...")
    if app.state.kafka_producer is not None:
        await app.state.kafka_producer.stop()
    await app.state.redis.aclose()


app = FastAPI(
    title="GiftGuard API",
    version="1.0.0",
    description="Fraud checks for gift-card redemptions plus admin control of the automated defenses.",
    lifespan=lifespan
)

app.include_router(health_router, prefix="/health", tags=["Health"])
app.include_router(v1_router, prefix="/api/v1", tags=["API v1"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["Admin"])


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                        content={"detail": "Storage temporarily unavailable"})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": "Conflicts with an existing record"})


@app.exception_handler(JobAlreadyRunningError)
async def job_running_handler(request: Request, exc: JobAlreadyRunningError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(InvalidDefenseActionError)
async def invalid_action_handler(request: Request, exc: InvalidDefenseActionError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    uvicorn.run(
        "giftguard.services.detector.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=False
    )
