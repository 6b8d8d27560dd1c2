# giftguard/services/detector/dependencies.py

from typing import Optional
from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import async_sessionmaker

# Import shared dependencies from giftguard/common
from giftguard.common.config import DefenseConfig, settings
from giftguard.common.db import SessionLocal
from giftguard.services.detector.store import FraudStore
from giftguard.services.fraud_engine.detection_engine import FraudDetectionEngine
from giftguard.services.redemption.service import RedemptionService
from giftguard.services.defense_worker.pipeline import DefensePipeline


def get_session_factory(request: Request) -> async_sessionmaker:
    """Prefer the factory attached at startup; fall back to the shared one."""
    return getattr(request.app.state, "session_factory", None) or SessionLocal


def get_config() -> DefenseConfig:
    return settings.DEFENSE


def get_store(request: Request, config: DefenseConfig = Depends(get_config)) -> FraudStore:
    return FraudStore(get_session_factory(request), timeout_seconds=config.store_timeout_seconds)


def get_detection_engine(store: FraudStore = Depends(get_store),
                         config: DefenseConfig = Depends(get_config)) -> FraudDetectionEngine:
    return FraudDetectionEngine(store, config)


def get_redemption_service(store: FraudStore = Depends(get_store),
                           engine: FraudDetectionEngine = Depends(get_detection_engine)) -> RedemptionService:
    return RedemptionService(store, engine)


def get_pipeline(request: Request, store: FraudStore = Depends(get_store),
                 config: DefenseConfig = Depends(get_config)) -> DefensePipeline:
    return DefensePipeline(
        store,
        config,
        redis_client=getattr(request.app.state, "redis", None),
        alert_publisher=getattr(request.app.state, "alert_publisher", None),
    )


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded: Optional[str] = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

async def get_api_key(api_key_header: str = Security(api_key_header)):
    if api_key_header == settings.API_KEY:
        return api_key_header
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Could not validate credentials",
    )
