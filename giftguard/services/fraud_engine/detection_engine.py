# giftguard/services/fraud_engine/detection_engine.py
"""
Synchronous fraud check for a single redemption attempt.

The decision comes from the rule engine (defense actions, learned rules,
velocity, already-redeemed). Every call then appends exactly one FraudSignal
recording the outcome; losing that write never changes the decision.
"""
import logging
from collections import Counter
from datetime import timedelta
from typing import List, Optional

from giftguard.common.config import DefenseConfig
from giftguard.common.errors import StorageError
from giftguard.models.base import utcnow
from giftguard.services.detector.schemas import (
    RedemptionAttempt,
    FraudCheckResult,
    FraudSignalCreate,
    FraudStatistics,
    FailureReasonCount,
)
from giftguard.services.detector.store import FraudStore
from giftguard.services.fraud_engine.rule_engine import RuleEngine, default_rules
from giftguard.services.fraud_engine.rules.base_rule import BaseRule, RuleContext

logger = logging.getLogger(__name__)

STATISTICS_SAMPLE_SIZE = 1000


class FraudDetectionEngine:
    def __init__(self, store: FraudStore, config: DefenseConfig, rules: Optional[List[BaseRule]] = None):
        self.store = store
        self.config = config
        self.rule_engine = RuleEngine(
            rules if rules is not None else default_rules(),
            on_error="open" if config.fail_open else "closed",
        )

    async def evaluate(self, attempt: RedemptionAttempt) -> FraudCheckResult:
        """The decision alone; nothing is written."""
        now = utcnow()
        context = RuleContext(store=self.store, config=self.config, now=now, as_of=now)
        match = await self.rule_engine.evaluate(attempt, context)

        if match is None:
            return FraudCheckResult(is_blocked=False, risk_level="low")
        logger.info(f"Blocked redemption gan={attempt.gan} ip={attempt.ip_address}: {match.reason}")
        return FraudCheckResult(
            is_blocked=True,
            reason=match.reason,
            risk_level=match.risk_level,
            matched_rule_id=match.rule_id,
            matched_action_id=match.action_id,
        )

    @staticmethod
    def _signal_for(attempt: RedemptionAttempt, result: FraudCheckResult,
                    failure_reason: Optional[str] = None) -> FraudSignalCreate:
        return FraudSignalCreate(
            ip_address=attempt.ip_address,
            gan=attempt.gan,
            merchant_id=attempt.merchant_id,
            device_fingerprint=attempt.device_fingerprint,
            user_agent=attempt.user_agent,
            failure_reason=result.reason or failure_reason,
            severity=result.risk_level,
            blocked=result.is_blocked,
            matched_rule_id=result.matched_rule_id,
            matched_action_id=result.matched_action_id,
        )

    async def record_signal(self, attempt: RedemptionAttempt, result: FraudCheckResult,
                            failure_reason: Optional[str] = None) -> FraudCheckResult:
        """Appends the one FraudSignal for this attempt; a failed write is logged, never raised."""
        try:
            created = await self.store.create_fraud_log(self._signal_for(attempt, result, failure_reason))
            result.signal_id = created.id
        except StorageError as e:
            logger.error(f"audit-log-write-failed gan={attempt.gan} ip={attempt.ip_address} "
                         f"blocked={result.is_blocked}: {e}")
        return result

    async def check_redemption(self, attempt: RedemptionAttempt) -> FraudCheckResult:
        return await self.record_signal(attempt, await self.evaluate(attempt))

    async def get_recent_fraud_logs(self, limit: int = 100):
        return await self.store.get_recent_fraud_logs(limit)

    async def get_fraud_statistics(self) -> FraudStatistics:
        signals = await self.store.get_recent_fraud_logs(STATISTICS_SAMPLE_SIZE)
        cutoff = utcnow() - timedelta(hours=24)
        last_day = [s for s in signals if s.created_at >= cutoff]
        reasons = Counter(s.failure_reason for s in signals if s.failure_reason)
        return FraudStatistics(
            total_signals=len(signals),
            last_24h=len(last_day),
            unique_ips_24h=len({s.ip_address for s in last_day}),
            top_failure_reasons=[
                FailureReasonCount(reason=reason, count=count)
                for reason, count in reasons.most_common(5)
            ],
        )
