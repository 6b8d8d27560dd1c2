# giftguard/services/fraud_engine/rules/defense_action_rule.py
from giftguard.services.fraud_engine.rules.base_rule import BaseRule, RuleContext, RuleMatch, attempt_targets
from giftguard.services.detector.schemas import RedemptionAttempt

ACTION_FOR_TARGET = {"ip": "block_ip", "device": "block_device", "gan": "block_gan"}


class DefenseActionRule(BaseRule):
    def __init__(self, name: str = "defense_action_check"):
        super().__init__(name, priority=1)  # Highest priority, quick reject

    async def evaluate(self, attempt: RedemptionAttempt, context: RuleContext):
        for kind, value in attempt_targets(attempt):
            action = await context.store.get_blocking_defense_action(
                value, ACTION_FOR_TARGET[kind], now=context.now
            )
            if action is not None:
                return RuleMatch(
                    kind="defense_action",
                    reason=f"target blocked by defense action {action.id}",
                    risk_level="high",
                    action_id=action.id,
                )
        return None
