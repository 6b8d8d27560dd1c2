# giftguard/services/fraud_engine/rules/redeemed_rule.py
from giftguard.services.fraud_engine.rules.base_rule import BaseRule, RuleContext, RuleMatch
from giftguard.services.detector.schemas import RedemptionAttempt


class AlreadyRedeemedRule(BaseRule):
    # Pre-check only; the conditional UPDATE in redeem_gift_card is what
    # actually prevents double redemption.
    def __init__(self, name: str = "already_redeemed_check"):
        super().__init__(name, priority=8)

    async def evaluate(self, attempt: RedemptionAttempt, context: RuleContext):
        if await context.store.is_gift_card_redeemed(attempt.gan):
            return RuleMatch(kind="already_redeemed", reason="already redeemed", risk_level="high")
        return None
