# giftguard/services/threat_analysis/replay_service.py
import logging
from datetime import datetime
from typing import Optional

from giftguard.common.config import DefenseConfig
from giftguard.common.errors import StorageError
from giftguard.models.base import utcnow
from giftguard.services.detector.schemas import RedemptionAttempt, ReplaySummary, SuggestedRule, ThreatReplayReport
from giftguard.services.detector.store import FraudStore
from giftguard.services.fraud_engine.rule_engine import RuleEngine, replay_rules
from giftguard.services.fraud_engine.rules.base_rule import RuleContext
from giftguard.services.threat_analysis.cluster_engine import is_failed

logger = logging.getLogger(__name__)


def classify(was_blocked: bool, was_threat: bool, would_block_now: bool, block_lifted: bool = False) -> str:
    if would_block_now:
        return "blocked_correctly" if was_blocked else "gap_closed"
    # An admin took back the rule or action that blocked it.
    if was_blocked and block_lifted:
        return "false_positive"
    return "still_missed" if was_threat else "clean"


def suggest_rule(signal) -> Optional[SuggestedRule]:
    """The defense rule that would most likely have stopped a missed threat."""
    reason = signal.failure_reason or ""
    ip_known = bool(signal.ip_address) and signal.ip_address != "unknown"
    if ip_known and "already redeemed" in reason:
        return SuggestedRule(type="ip", value=signal.ip_address,
                             reason="IP attempting to reuse already redeemed gift cards", confidence=90)
    if ip_known and "rate exceeded" in reason:
        return SuggestedRule(type="ip", value=signal.ip_address,
                             reason=f"IP {signal.ip_address} detected in multiple fraud attempts", confidence=85)
    if signal.device_fingerprint:
        return SuggestedRule(type="device", value=signal.device_fingerprint,
                             reason="Device fingerprint involved in fraudulent activity", confidence=75)
    if ip_known:
        return SuggestedRule(type="ip", value=signal.ip_address,
                             reason=f"IP {signal.ip_address} involved in a missed threat", confidence=70)
    if signal.gan:
        return SuggestedRule(type="gan", value=signal.gan,
                             reason=f"Gift card {signal.gan} targeted in a missed threat", confidence=60)
    return None


class ThreatReplayService:
    """Re-runs historical signals through today's actions and rules.

    Nothing is mutated: hit counts stay put and velocity is measured in the
    window ending at each signal's own timestamp.
    """

    def __init__(self, store: FraudStore, config: DefenseConfig):
        self.store = store
        self.config = config
        self.rule_engine = RuleEngine(replay_rules(), on_error="raise")

    async def load_recent_fraud_logs(self, limit: Optional[int] = None):
        return await self.store.get_recent_fraud_logs(limit or self.config.replay_batch_size)

    async def block_lifted(self, signal, now: datetime) -> bool:
        """True when the rule or action behind an original block was deactivated by hand."""
        if signal.matched_action_id:
            action = await self.store.get_defense_action_by_id(signal.matched_action_id)
            # Expired actions ran their course; only early deactivation counts.
            return (action is not None and not action.is_active
                    and (action.expires_at is None or action.expires_at > now))
        if signal.matched_rule_id:
            rule = await self.store.get_auto_defense_rule_by_id(signal.matched_rule_id)
            return rule is not None and not rule.is_active
        return False

    async def simulate(self, signal, now=None) -> ThreatReplayReport:
        now = now or utcnow()
        attempt = RedemptionAttempt.model_construct(
            gan=signal.gan or "",
            merchant_id=signal.merchant_id,
            ip_address=signal.ip_address or "unknown",
            device_fingerprint=signal.device_fingerprint,
            user_agent=signal.user_agent,
        )
        base = dict(
            signal_id=signal.id,
            original_outcome="blocked" if signal.blocked else "allowed",
            ip_address=signal.ip_address,
            gan=signal.gan,
            device_fingerprint=signal.device_fingerprint,
        )
        context = RuleContext(
            store=self.store,
            config=self.config,
            now=now,
            as_of=signal.created_at,
            record_hits=False,
        )
        try:
            match = await self.rule_engine.evaluate(attempt, context)
            would_block_now = match is not None
            lifted = bool(signal.blocked) and not would_block_now and await self.block_lifted(signal, now)
        except StorageError as e:
            logger.warning(f"Replay of signal {signal.id} failed: {e}")
            return ThreatReplayReport(would_block_now=False, outcome="errored", **base)

        outcome = classify(bool(signal.blocked), is_failed(signal), would_block_now, lifted)
        return ThreatReplayReport(
            would_block_now=would_block_now,
            matched_rule_id=match.rule_id if match else None,
            matched_action_id=match.action_id if match else None,
            reason=match.reason if match else None,
            outcome=outcome,
            suggested_rule=suggest_rule(signal) if outcome == "still_missed" else None,
            **base,
        )

    async def run_threat_replay(self, limit: Optional[int] = None) -> ReplaySummary:
        signals = await self.load_recent_fraud_logs(limit)
        now = utcnow()
        summary = ReplaySummary()
        for signal in signals:
            report = await self.simulate(signal, now=now)
            summary.reports.append(report)
            setattr(summary, report.outcome, getattr(summary, report.outcome) + 1)
            if report.suggested_rule is not None:
                summary.new_rules_suggested += 1
        summary.total_analyzed = len(summary.reports)
        logger.info(
            f"Threat replay analyzed {summary.total_analyzed} signals: "
            f"{summary.gap_closed} gaps closed, {summary.still_missed} still missed, "
            f"{summary.false_positive} false positives, {summary.errored} errored"
        )
        return summary
