# giftguard/services/fraud_engine/rules/auto_defense_rule.py
import logging

from giftguard.common.errors import StorageError
from giftguard.services.fraud_engine.rules.base_rule import BaseRule, RuleContext, RuleMatch, attempt_targets
from giftguard.services.detector.schemas import RedemptionAttempt

logger = logging.getLogger(__name__)


class AutoDefenseRuleCheck(BaseRule):
    def __init__(self, name: str = "auto_defense_rule_check"):
        super().__init__(name, priority=2)

    async def evaluate(self, attempt: RedemptionAttempt, context: RuleContext):
        for kind, value in attempt_targets(attempt):
            rule = await context.store.check_auto_defense_rule(kind, value)
            if rule is None:
                continue
            if context.record_hits:
                try:
                    await context.store.update_auto_defense_rule_hit_count(rule.id)
                except StorageError as e:
                    # The block stands even if the counter could not be bumped.
                    logger.warning(f"Failed to increment hit count for rule {rule.id}: {e}")
            return RuleMatch(
                kind="auto_defense_rule",
                reason=f"matched {kind} rule {rule.id}",
                risk_level="high",
                rule_id=rule.id,
            )
        return None
