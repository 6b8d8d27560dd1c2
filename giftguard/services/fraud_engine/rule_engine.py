# giftguard/services/fraud_engine/rule_engine.py
import logging
from typing import List, Literal, Optional

from giftguard.common.errors import StorageError
from giftguard.services.detector.schemas import RedemptionAttempt
from giftguard.services.fraud_engine.rules.base_rule import BaseRule, RuleContext, RuleMatch
from giftguard.services.fraud_engine.rules.defense_action_rule import DefenseActionRule
from giftguard.services.fraud_engine.rules.auto_defense_rule import AutoDefenseRuleCheck
from giftguard.services.fraud_engine.rules.velocity_rule import VelocityRule
from giftguard.services.fraud_engine.rules.redeemed_rule import AlreadyRedeemedRule

logger = logging.getLogger(__name__)

ErrorPolicy = Literal["open", "closed", "raise"]


class RuleEngine:
    """Runs rules in priority order; the first match decides.

    ``on_error`` controls what a StorageError from a rule does:
    ``open`` skips that rule, ``closed`` blocks the attempt and ``raise``
    hands the error to the caller.
    """

    def __init__(self, rules: List[BaseRule], on_error: ErrorPolicy = "open"):
        self.rules = sorted(rules)  # Sort by priority
        self.on_error = on_error

    async def evaluate(self, attempt: RedemptionAttempt, context: RuleContext) -> Optional[RuleMatch]:
        for rule in self.rules:
            try:
                match = await rule.evaluate(attempt, context)
            except StorageError as e:
                if self.on_error == "raise":
                    raise
                if self.on_error == "closed":
                    logger.error(f"Rule {rule.name} could not be evaluated, failing closed: {e}")
                    return RuleMatch(kind="store_unavailable", reason="fraud check unavailable", risk_level="high")
                logger.warning(f"Rule {rule.name} could not be evaluated, failing open: {e}")
                continue

            if match is not None:
                logger.debug(f"Rule {rule.name} matched gan={attempt.gan}: {match.reason}")
                return match
        return None


def default_rules() -> List[BaseRule]:
    return [DefenseActionRule(), AutoDefenseRuleCheck(), VelocityRule(), AlreadyRedeemedRule()]


def replay_rules() -> List[BaseRule]:
    # Replay asks whether today's rules and actions would have caught a signal;
    # redemption state is not part of that question.
    return [DefenseActionRule(), AutoDefenseRuleCheck(), VelocityRule()]
