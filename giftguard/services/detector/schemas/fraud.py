# giftguard/services/detector/schemas/fraud.py

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Literal
from datetime import datetime
import uuid

RiskLevel = Literal["low", "medium", "high"]

BLOCKED_MESSAGE = "Redemption blocked for security reasons."


class RedemptionAttempt(BaseModel):
    """Request context the detection engine sees for one redemption."""
    gan: str = Field(..., min_length=1, max_length=64)
    merchant_id: Optional[str] = Field(None, max_length=64)
    ip_address: str = Field("unknown", max_length=64)
    device_fingerprint: Optional[str] = Field(None, max_length=255)
    user_agent: Optional[str] = None


class RedemptionCheckRequest(BaseModel):
    gan: str = Field(..., min_length=1, max_length=64)
    merchant_id: Optional[str] = Field(None, max_length=64)
    device_fingerprint: Optional[str] = Field(None, max_length=255)


class RedemptionRequest(RedemptionCheckRequest):
    amount_cents: int = Field(..., gt=0)


class FraudCheckResult(BaseModel):
    is_blocked: bool
    reason: Optional[str] = None
    risk_level: RiskLevel = "low"
    signal_id: Optional[uuid.UUID] = None
    matched_rule_id: Optional[uuid.UUID] = None
    matched_action_id: Optional[uuid.UUID] = None

    @property
    def public_message(self) -> Optional[str]:
        # Callers outside the admin surface never see which rule matched.
        return BLOCKED_MESSAGE if self.is_blocked else None


class RedemptionCheckResponse(BaseModel):
    is_blocked: bool
    risk_level: RiskLevel


RedemptionOutcome = Literal["redeemed", "blocked", "conflict", "not_found"]


class RedemptionResult(BaseModel):
    success: bool
    outcome: RedemptionOutcome
    message: str
    gan: str
    amount_cents: int


class FraudSignalCreate(BaseModel):
    ip_address: str = "unknown"
    gan: Optional[str] = None
    merchant_id: Optional[str] = None
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    severity: RiskLevel = "low"
    blocked: bool = False
    matched_rule_id: Optional[uuid.UUID] = None
    matched_action_id: Optional[uuid.UUID] = None
    # Only set when backfilling; live signals take the database default.
    created_at: Optional[datetime] = None


class FraudSignalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    ip_address: str
    gan: Optional[str] = None
    merchant_id: Optional[str] = None
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None
    severity: RiskLevel
    blocked: bool
    matched_rule_id: Optional[uuid.UUID] = None
    matched_action_id: Optional[uuid.UUID] = None
    created_at: datetime


class FailureReasonCount(BaseModel):
    reason: str
    count: int


class FraudStatistics(BaseModel):
    total_signals: int
    last_24h: int
    unique_ips_24h: int
    top_failure_reasons: List[FailureReasonCount] = []
