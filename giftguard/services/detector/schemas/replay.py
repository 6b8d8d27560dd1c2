# giftguard/services/detector/schemas/replay.py

from pydantic import BaseModel, Field
from typing import Optional, List, Literal
import uuid

ReplayOutcome = Literal["blocked_correctly", "gap_closed", "still_missed", "false_positive", "clean", "errored"]


class SuggestedRule(BaseModel):
    type: Literal["ip", "device", "gan"]
    value: str
    reason: str
    confidence: int = Field(..., ge=0, le=100)


class ThreatReplayReport(BaseModel):
    signal_id: uuid.UUID
    would_block_now: bool
    matched_rule_id: Optional[uuid.UUID] = None
    matched_action_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None
    original_outcome: Literal["blocked", "allowed"]
    outcome: ReplayOutcome
    ip_address: Optional[str] = None
    gan: Optional[str] = None
    device_fingerprint: Optional[str] = None
    suggested_rule: Optional[SuggestedRule] = None


class ReplaySummary(BaseModel):
    total_analyzed: int = 0
    blocked_correctly: int = 0
    gap_closed: int = 0
    still_missed: int = 0
    false_positive: int = 0
    clean: int = 0
    errored: int = 0
    new_rules_suggested: int = 0
    reports: List[ThreatReplayReport] = []


class LearningResult(BaseModel):
    rules_created: int = 0
    rules_failed: int = 0
    clusters_considered: int = 0
    actions_created: int = 0
    learning_effectiveness: float = 0.0
    recommendations: List[str] = []


class ThreatReplayResponse(BaseModel):
    replay: ReplaySummary
    learning: LearningResult
