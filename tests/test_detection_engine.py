# giftguard/tests/test_detection_engine.py
"""
Tests for the synchronous redemption fraud check: rule order, audit logging
and the behaviour on store failures.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from giftguard.common.config import DefenseConfig
from giftguard.common.errors import StorageError
from giftguard.models.base import utcnow
from giftguard.services.auto_defense.action_layer import DefenseActionLayer
from giftguard.services.detector.schemas import AutoDefenseRuleCreate, RedemptionAttempt
from giftguard.services.fraud_engine.detection_engine import FraudDetectionEngine


async def count_signals(store):
    return len(await store.get_recent_fraud_logs(1000))


class TestCheckRedemption:
    @pytest.mark.asyncio
    async def test_clean_attempt_is_allowed_and_logged(self, store, config):
        engine = FraudDetectionEngine(store, config)
        result = await engine.check_redemption(RedemptionAttempt(gan="GAN-OK", ip_address="10.0.0.1"))

        assert result.is_blocked is False
        assert result.risk_level == "low"
        assert result.public_message is None
        signals = await store.get_recent_fraud_logs(10)
        assert len(signals) == 1
        assert signals[0].id == result.signal_id
        assert signals[0].blocked is False
        assert signals[0].severity == "low"

    @pytest.mark.asyncio
    async def test_ip_velocity_blocks_with_rate_exceeded(self, store, config, seed_signals):
        await seed_signals(6, minutes_ago=1, ip_address="1.2.3.4", gan="OTHER")
        engine = FraudDetectionEngine(store, config)

        result = await engine.check_redemption(RedemptionAttempt(gan="GAN-A", ip_address="1.2.3.4"))

        assert result.is_blocked is True
        assert "rate exceeded" in result.reason
        assert result.risk_level == "medium"
        assert result.public_message == "Redemption blocked for security reasons."

    @pytest.mark.asyncio
    async def test_signals_outside_window_do_not_count(self, store, config, seed_signals):
        await seed_signals(6, minutes_ago=61, ip_address="1.2.3.4")
        engine = FraudDetectionEngine(store, config)

        result = await engine.check_redemption(RedemptionAttempt(gan="GAN-A", ip_address="1.2.3.4"))

        assert result.is_blocked is False

    @pytest.mark.asyncio
    async def test_merchant_velocity(self, store, seed_signals):
        config = DefenseConfig(merchant_velocity_threshold=3)
        await seed_signals(4, minutes_ago=10, merchant_id="m-1", ip_address="unknown")
        engine = FraudDetectionEngine(store, config)

        result = await engine.check_redemption(RedemptionAttempt(gan="G", merchant_id="m-1"))

        assert result.is_blocked is True
        assert "rate exceeded for merchant m-1" in result.reason

    @pytest.mark.asyncio
    async def test_velocity_rule_tightens_ip_threshold(self, store, config, seed_signals):
        await seed_signals(3, minutes_ago=2, ip_address="5.5.5.5")
        rule = await store.create_auto_defense_rule(AutoDefenseRuleCreate(type="velocity", value="2"))
        engine = FraudDetectionEngine(store, config)

        result = await engine.check_redemption(RedemptionAttempt(gan="G", ip_address="5.5.5.5"))

        assert result.is_blocked is True
        assert result.matched_rule_id == rule.id
        rules = await store.get_auto_defense_rules()
        assert rules[0].hit_count == 1

    @pytest.mark.asyncio
    async def test_gan_rule_blocks_and_increments_hit_count_once(self, store, config):
        rule = await store.create_auto_defense_rule(AutoDefenseRuleCreate(type="gan", value="GAN123"))
        engine = FraudDetectionEngine(store, config)

        result = await engine.check_redemption(RedemptionAttempt(gan="GAN123", ip_address="8.8.8.8"))

        assert result.is_blocked is True
        assert result.risk_level == "high"
        assert result.matched_rule_id == rule.id
        refreshed = await store.check_auto_defense_rule("gan", "GAN123")
        assert refreshed.hit_count == 1
        assert refreshed.last_triggered is not None

    @pytest.mark.asyncio
    async def test_deactivated_rule_no_longer_blocks(self, store, config):
        rule = await store.create_auto_defense_rule(AutoDefenseRuleCreate(type="device", value="dev-1"))
        await store.deactivate_auto_defense_rule(rule.id)
        engine = FraudDetectionEngine(store, config)

        result = await engine.check_redemption(RedemptionAttempt(gan="G", device_fingerprint="dev-1"))

        assert result.is_blocked is False

    @pytest.mark.asyncio
    async def test_blocked_ip_is_blocked_before_anything_else(self, store, config):
        layer = DefenseActionLayer(store)
        action = await layer.block_target("block_ip", "9.9.9.9", expires_in=timedelta(hours=1))
        # A matching rule exists too; the defense action must win.
        await store.create_auto_defense_rule(AutoDefenseRuleCreate(type="ip", value="9.9.9.9"))
        engine = FraudDetectionEngine(store, config)

        assert await layer.is_target_blocked("9.9.9.9", "block_ip") is True
        result = await engine.check_redemption(RedemptionAttempt(gan="G", ip_address="9.9.9.9"))

        assert result.is_blocked is True
        assert result.reason == f"target blocked by defense action {action.id}"
        assert result.matched_action_id == action.id
        rule = await store.check_auto_defense_rule("ip", "9.9.9.9")
        assert rule.hit_count == 0

    @pytest.mark.asyncio
    async def test_already_redeemed_card(self, store, config):
        await store.create_gift_card("GAN-USED", 1000)
        assert await store.redeem_gift_card("GAN-USED", 1000) is True
        engine = FraudDetectionEngine(store, config)

        result = await engine.check_redemption(RedemptionAttempt(gan="GAN-USED", ip_address="10.1.1.1"))

        assert result.is_blocked is True
        assert result.reason == "already redeemed"

    @pytest.mark.asyncio
    async def test_every_call_writes_exactly_one_signal(self, store, config):
        await store.create_auto_defense_rule(AutoDefenseRuleCreate(type="gan", value="BAD"))
        engine = FraudDetectionEngine(store, config)

        attempts = [
            RedemptionAttempt(gan="BAD", ip_address="1.1.1.1"),
            RedemptionAttempt(gan="GOOD", ip_address="1.1.1.2"),
            RedemptionAttempt(gan="GOOD2"),
        ]
        for i, attempt in enumerate(attempts, start=1):
            await engine.check_redemption(attempt)
            assert await count_signals(store) == i

        signals = await store.get_fraud_logs_by_gan("BAD")
        assert len(signals) == 1
        assert signals[0].blocked is True
        assert signals[0].severity == "high"


class TestStoreFailures:
    def failing_store(self, store, method):
        setattr(store, method, AsyncMock(side_effect=StorageError("db down")))
        return store

    @pytest.mark.asyncio
    async def test_fail_open_allows_when_rules_unreadable(self, store, config):
        self.failing_store(store, "check_auto_defense_rule")
        await store.create_auto_defense_rule(AutoDefenseRuleCreate(type="gan", value="GAN123"))
        engine = FraudDetectionEngine(store, config)

        result = await engine.check_redemption(RedemptionAttempt(gan="GAN123", ip_address="2.2.2.2"))

        assert result.is_blocked is False
        assert await count_signals(store) == 1

    @pytest.mark.asyncio
    async def test_fail_closed_blocks_when_rules_unreadable(self, store):
        self.failing_store(store, "get_blocking_defense_action")
        engine = FraudDetectionEngine(store, DefenseConfig(fail_open=False))

        result = await engine.check_redemption(RedemptionAttempt(gan="G", ip_address="2.2.2.2"))

        assert result.is_blocked is True
        assert result.risk_level == "high"

    @pytest.mark.asyncio
    async def test_audit_write_failure_keeps_decision(self, store, config, caplog):
        await store.create_auto_defense_rule(AutoDefenseRuleCreate(type="gan", value="GAN123"))
        self.failing_store(store, "create_fraud_log")
        engine = FraudDetectionEngine(store, config)

        result = await engine.check_redemption(RedemptionAttempt(gan="GAN123"))

        assert result.is_blocked is True
        assert result.signal_id is None
        assert "audit-log-write-failed" in caplog.text

    @pytest.mark.asyncio
    async def test_hit_count_failure_does_not_unblock(self, store, config):
        await store.create_auto_defense_rule(AutoDefenseRuleCreate(type="gan", value="GAN123"))
        self.failing_store(store, "update_auto_defense_rule_hit_count")
        engine = FraudDetectionEngine(store, config)

        result = await engine.check_redemption(RedemptionAttempt(gan="GAN123"))

        assert result.is_blocked is True


class TestFraudStatistics:
    @pytest.mark.asyncio
    async def test_statistics(self, store, config, seed_signals):
        await seed_signals(3, ip_address="1.1.1.1", failure_reason="invalid code")
        await seed_signals(1, ip_address="2.2.2.2", failure_reason="insufficient balance")
        await seed_signals(2, minutes_ago=60 * 30, ip_address="3.3.3.3")
        engine = FraudDetectionEngine(store, config)

        stats = await engine.get_fraud_statistics()

        assert stats.total_signals == 6
        assert stats.last_24h == 4
        assert stats.unique_ips_24h == 2
        assert stats.top_failure_reasons[0].reason == "invalid code"
        assert stats.top_failure_reasons[0].count == 3

    @pytest.mark.asyncio
    async def test_evaluate_writes_nothing_until_recorded(self, store, config):
        engine = FraudDetectionEngine(store, config)
        attempt = RedemptionAttempt(gan="G", ip_address="4.4.4.4")

        check = await engine.evaluate(attempt)
        assert await store.get_fraud_logs_by_gan("G") == []

        await engine.record_signal(attempt, check, failure_reason="invalid code")
        [signal] = await store.get_fraud_logs_by_gan("G")
        assert check.signal_id == signal.id
        assert signal.failure_reason == "invalid code"
        assert signal.blocked is False
        assert signal.created_at <= utcnow()
