# giftguard/services/fraud_engine/rules/base_rule.py
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import uuid

from giftguard.common.config import DefenseConfig
from giftguard.services.detector.schemas import RedemptionAttempt
from giftguard.services.detector.store import FraudStore


@dataclass
class RuleContext:
    store: FraudStore
    config: DefenseConfig
    now: datetime
    # Velocity windows end here; replay sets it to the signal's own time.
    as_of: datetime
    record_hits: bool = True


@dataclass
class RuleMatch:
    kind: str
    reason: str
    risk_level: str
    rule_id: Optional[uuid.UUID] = None
    action_id: Optional[uuid.UUID] = None


class BaseRule(ABC):
    def __init__(self, name: str, priority: int = 10):
        self.name = name
        self.priority = priority  # Lower number = higher priority

    @abstractmethod
    async def evaluate(self, attempt: RedemptionAttempt, context: RuleContext) -> Optional[RuleMatch]:
        """
        Evaluates the rule against one redemption attempt.
        Returns a RuleMatch when the attempt must be blocked, otherwise None.
        """
        pass

    def __lt__(self, other):
        return self.priority < other.priority


def attempt_targets(attempt: RedemptionAttempt):
    """(kind, value) pairs an attempt can be matched on, skipping unknowns."""
    targets = []
    if attempt.ip_address and attempt.ip_address != "unknown":
        targets.append(("ip", attempt.ip_address))
    if attempt.device_fingerprint:
        targets.append(("device", attempt.device_fingerprint))
    if attempt.gan:
        targets.append(("gan", attempt.gan))
    return targets
