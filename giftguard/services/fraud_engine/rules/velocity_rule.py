# giftguard/services/fraud_engine/rules/velocity_rule.py
import logging

from giftguard.common.errors import StorageError
from giftguard.services.fraud_engine.rules.base_rule import BaseRule, RuleContext, RuleMatch
from giftguard.services.detector.schemas import RedemptionAttempt

logger = logging.getLogger(__name__)


class VelocityRule(BaseRule):
    """Blocks when an IP or merchant has more recent signals than allowed.

    Active ``velocity`` auto-defense rules can only tighten the IP threshold;
    the lowest value wins and the rule responsible gets the hit.
    """

    def __init__(self, name: str = "velocity_check"):
        super().__init__(name, priority=5)

    async def _ip_threshold(self, context: RuleContext):
        threshold = context.config.ip_velocity_threshold
        tightening_rule = None
        for rule in await context.store.get_auto_defense_rules_by_type("velocity"):
            try:
                value = int(rule.value)
            except ValueError:
                logger.warning(f"Ignoring velocity rule {rule.id} with non-integer value {rule.value!r}")
                continue
            if 0 < value < threshold:
                threshold = value
                tightening_rule = rule
        return threshold, tightening_rule

    async def evaluate(self, attempt: RedemptionAttempt, context: RuleContext):
        config = context.config

        if attempt.ip_address and attempt.ip_address != "unknown":
            threshold, tightening_rule = await self._ip_threshold(context)
            ip_count = await context.store.count_fraud_logs_by_ip(
                attempt.ip_address, config.ip_velocity_window_minutes, as_of=context.as_of
            )
            if ip_count > threshold:
                rule_id = tightening_rule.id if tightening_rule else None
                if tightening_rule is not None and context.record_hits:
                    try:
                        await context.store.update_auto_defense_rule_hit_count(tightening_rule.id)
                    except StorageError as e:
                        logger.warning(f"Failed to increment hit count for rule {tightening_rule.id}: {e}")
                return RuleMatch(
                    kind="velocity",
                    reason=(f"rate exceeded for ip {attempt.ip_address}: {ip_count} attempts in "
                            f"{config.ip_velocity_window_minutes} minutes (limit {threshold})"),
                    risk_level="medium",
                    rule_id=rule_id,
                )

        if attempt.merchant_id:
            merchant_count = await context.store.count_fraud_logs_by_merchant(
                attempt.merchant_id, config.merchant_velocity_window_minutes, as_of=context.as_of
            )
            if merchant_count > config.merchant_velocity_threshold:
                return RuleMatch(
                    kind="velocity",
                    reason=(f"rate exceeded for merchant {attempt.merchant_id}: {merchant_count} attempts in "
                            f"{config.merchant_velocity_window_minutes} minutes "
                            f"(limit {config.merchant_velocity_threshold})"),
                    risk_level="medium",
                )
        return None
