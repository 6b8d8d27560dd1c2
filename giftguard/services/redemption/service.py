# giftguard/services/redemption/service.py
import logging

from giftguard.common.errors import StorageError
from giftguard.services.detector.schemas import RedemptionAttempt, RedemptionResult
from giftguard.services.detector.store import FraudStore
from giftguard.services.fraud_engine.detection_engine import FraudDetectionEngine

logger = logging.getLogger(__name__)

REDEMPTION_CONFLICT = "already redeemed or insufficient balance"
UNKNOWN_CARD = "unknown gift card"


class RedemptionService:
    """Fraud check followed by the atomic balance update.

    The engine's already-redeemed rule is only a pre-check; the conditional
    UPDATE decides who wins when attempts race on one card. Each attempt
    leaves exactly one FraudSignal carrying its final outcome.
    """

    def __init__(self, store: FraudStore, engine: FraudDetectionEngine):
        self.store = store
        self.engine = engine

    def _result(self, attempt: RedemptionAttempt, amount_cents: int, outcome: str, message: str) -> RedemptionResult:
        return RedemptionResult(success=outcome == "redeemed", outcome=outcome, message=message,
                                gan=attempt.gan, amount_cents=amount_cents)

    async def redeem(self, attempt: RedemptionAttempt, amount_cents: int) -> RedemptionResult:
        check = await self.engine.evaluate(attempt)
        if check.is_blocked:
            await self.engine.record_signal(attempt, check)
            return self._result(attempt, amount_cents, "blocked", check.public_message)

        try:
            redeemed = await self.store.redeem_gift_card(attempt.gan, amount_cents)
        except StorageError:
            await self.engine.record_signal(attempt, check, failure_reason="redemption store unavailable")
            raise

        if redeemed:
            await self.engine.record_signal(attempt, check)
            logger.info(f"Redeemed {amount_cents} cents from gan={attempt.gan}")
            return self._result(attempt, amount_cents, "redeemed", "redeemed")

        if await self.store.get_gift_card_by_gan(attempt.gan) is None:
            await self.engine.record_signal(attempt, check, failure_reason=UNKNOWN_CARD)
            return self._result(attempt, amount_cents, "not_found", UNKNOWN_CARD)

        await self.engine.record_signal(attempt, check, failure_reason=REDEMPTION_CONFLICT)
        return self._result(attempt, amount_cents, "conflict", REDEMPTION_CONFLICT)
