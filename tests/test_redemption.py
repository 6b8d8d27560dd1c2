# giftguard/tests/test_redemption.py
import asyncio

import pytest

from giftguard.common.errors import ConflictError
from giftguard.services.detector.schemas import AutoDefenseRuleCreate, RedemptionAttempt
from giftguard.services.fraud_engine.detection_engine import FraudDetectionEngine
from giftguard.services.redemption.service import REDEMPTION_CONFLICT, UNKNOWN_CARD, RedemptionService


class TestAtomicRedemption:
    @pytest.mark.asyncio
    async def test_concurrent_store_redemptions_only_one_wins(self, store):
        await store.create_gift_card("GAN-RACE", 5000)

        results = await asyncio.gather(*[store.redeem_gift_card("GAN-RACE", 5000) for _ in range(8)])

        assert results.count(True) == 1
        card = await store.get_gift_card_by_gan("GAN-RACE")
        assert card.redeemed is True
        assert card.balance_cents == 0

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, store):
        await store.create_gift_card("GAN-LOW", 100)
        assert await store.redeem_gift_card("GAN-LOW", 500) is False
        assert await store.is_gift_card_redeemed("GAN-LOW") is False

    @pytest.mark.asyncio
    async def test_duplicate_card_is_a_conflict(self, store):
        await store.create_gift_card("GAN-DUP", 100)
        with pytest.raises(ConflictError):
            await store.create_gift_card("GAN-DUP", 200)
        assert (await store.get_gift_card_by_gan("GAN-DUP")).balance_cents == 100


class TestRedemptionService:
    @pytest.fixture
    def service(self, store, config):
        return RedemptionService(store, FraudDetectionEngine(store, config))

    @pytest.mark.asyncio
    async def test_concurrent_redeems_one_success(self, store, service):
        await store.create_gift_card("GAN-1", 2500)
        attempts = [RedemptionAttempt(gan="GAN-1", ip_address=f"10.0.0.{i}") for i in range(3)]

        results = await asyncio.gather(*[service.redeem(a, 2500) for a in attempts])

        assert sum(r.success for r in results) == 1
        for r in results:
            if not r.success:
                assert r.message in (REDEMPTION_CONFLICT, "Redemption blocked for security reasons.")

    @pytest.mark.asyncio
    async def test_second_redeem_is_refused(self, store, service):
        await store.create_gift_card("GAN-2", 1000)
        attempt = RedemptionAttempt(gan="GAN-2", ip_address="10.0.0.1")

        first = await service.redeem(attempt, 1000)
        second = await service.redeem(attempt, 1000)

        assert first.success is True
        assert first.outcome == "redeemed"
        assert second.success is False
        assert second.outcome == "blocked"
        # The engine's pre-check catches it and answers generically.
        assert second.message == "Redemption blocked for security reasons."

    @pytest.mark.asyncio
    async def test_lost_race_is_logged_as_failure(self, store, service):
        await store.create_gift_card("GAN-3", 100)

        result = await service.redeem(RedemptionAttempt(gan="GAN-3", ip_address="10.0.0.5"), 500)

        assert result.success is False
        assert result.outcome == "conflict"
        assert result.message == REDEMPTION_CONFLICT
        # One attempt, one signal, carrying the final outcome.
        [signal] = await store.get_fraud_logs_by_gan("GAN-3")
        assert signal.failure_reason == REDEMPTION_CONFLICT
        assert signal.blocked is False

    @pytest.mark.asyncio
    async def test_unknown_card_is_not_found(self, store, service):
        result = await service.redeem(RedemptionAttempt(gan="GAN-NOPE", ip_address="10.0.0.6"), 500)

        assert result.success is False
        assert result.outcome == "not_found"
        assert result.message == UNKNOWN_CARD
        [signal] = await store.get_fraud_logs_by_gan("GAN-NOPE")
        assert signal.failure_reason == UNKNOWN_CARD

    @pytest.mark.asyncio
    async def test_blocked_attempt_does_not_touch_balance(self, store, service):
        await store.create_gift_card("GAN-4", 1000)
        await store.create_auto_defense_rule(AutoDefenseRuleCreate(type="gan", value="GAN-4"))

        result = await service.redeem(RedemptionAttempt(gan="GAN-4"), 1000)

        assert result.success is False
        assert result.outcome == "blocked"
        [signal] = await store.get_fraud_logs_by_gan("GAN-4")
        assert signal.blocked is True
        assert (await store.get_gift_card_by_gan("GAN-4")).balance_cents == 1000
