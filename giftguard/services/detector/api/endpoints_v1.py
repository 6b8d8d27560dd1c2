# giftguard/services/detector/api/endpoints_v1.py

from fastapi import APIRouter, Depends, HTTPException, Request, status
import logging

# Import Pydantic schemas
from giftguard.services.detector.schemas import (
    RedemptionAttempt,
    RedemptionCheckRequest,
    RedemptionCheckResponse,
    RedemptionRequest,
    RedemptionResult,
)

# Import dependencies
from giftguard.services.detector.dependencies import (
    get_client_ip,
    get_detection_engine,
    get_redemption_service,
)
from giftguard.services.fraud_engine.detection_engine import FraudDetectionEngine
from giftguard.services.redemption.service import RedemptionService

LOG = logging.getLogger("giftguard.api")

router = APIRouter()


def _attempt(request: Request, body: RedemptionCheckRequest) -> RedemptionAttempt:
    return RedemptionAttempt(
        gan=body.gan,
        merchant_id=body.merchant_id,
        device_fingerprint=body.device_fingerprint,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )

# ----------------------
# Redemption Endpoints
# ----------------------
@router.post("/redemptions/check", response_model=RedemptionCheckResponse)
async def check_redemption_endpoint(
    body: RedemptionCheckRequest,
    request: Request,
    engine: FraudDetectionEngine = Depends(get_detection_engine),
):
    """
    Runs the fraud check for a redemption attempt without touching the balance.
    Blocked attempts get a generic 403; the matched rule is only visible to admins.
    """
    result = await engine.check_redemption(_attempt(request, body))
    if result.is_blocked:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=result.public_message)
    return RedemptionCheckResponse(is_blocked=False, risk_level=result.risk_level)

REDEMPTION_STATUS = {
    "blocked": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
}

@router.post("/redemptions", response_model=RedemptionResult)
async def redeem_endpoint(
    body: RedemptionRequest,
    request: Request,
    service: RedemptionService = Depends(get_redemption_service),
):
    result = await service.redeem(_attempt(request, body), body.amount_cents)
    if result.success:
        return result
    if result.outcome != "blocked":
        LOG.info(f"Redemption {result.outcome} for gan={body.gan}: {result.message}")
    raise HTTPException(status_code=REDEMPTION_STATUS[result.outcome], detail=result.message)
