# giftguard/tests/test_cluster_engine.py
"""
Tests for the batch threat clustering job.
"""
from unittest.mock import AsyncMock

import pytest

from giftguard.common.config import DefenseConfig
from giftguard.services.detector.schemas import (
    ClusterMetadata,
    DeviceRepeatDetail,
    SubnetDetail,
    UserAgentDetail,
    VelocityDetail,
)
from giftguard.services.threat_analysis.cluster_engine import (
    ThreatClusterEngine,
    cluster_fingerprint,
    severity_from_score,
    severity_score,
    subnet_of,
    user_agent_signature,
)


class TestClusterHelpers:
    def test_subnet_of(self):
        assert subnet_of("203.0.113.45") == "203.0.113.0/24"
        assert subnet_of("2001:db8::1") is None
        assert subnet_of("unknown") is None

    def test_severity_grows_with_size_and_blocked_ratio(self):
        small = severity_from_score(severity_score(5, 0.0, 5))
        large = severity_from_score(severity_score(20, 0.0, 5))
        blocked = severity_from_score(severity_score(20, 1.0, 5))
        assert 1 <= small < large < blocked <= 10
        assert blocked == 10

    def test_fingerprint_ignores_member_order(self):
        assert cluster_fingerprint("ip_repeat", ["b", "a"]) == cluster_fingerprint("ip_repeat", ["a", "b"])
        assert cluster_fingerprint("ip_repeat", ["a"]) != cluster_fingerprint("device_repeat", ["a"])

    def test_user_agent_signature_ignores_versions(self):
        assert user_agent_signature("GiftBot/1.2 (Linux)") == user_agent_signature("giftbot/10.0  (linux)")
        assert user_agent_signature("GiftBot/1.2") != user_agent_signature("curl/8.1")
        assert len(user_agent_signature("curl/8.1")) == 12


class TestThreatClusterEngine:
    @pytest.mark.asyncio
    async def test_device_repeat_cluster(self, store, config, seed_signals):
        # Distinct IPv6 peers so no IP or subnet group forms.
        for i in range(7):
            await seed_signals(1, minutes_ago=10 + i, ip_address=f"2001:db8::{i}", device_fingerprint="dev-7")
        engine = ThreatClusterEngine(store, config)

        result = await engine.analyze_threats()

        assert result.threats_analyzed == 7
        assert result.clusters_found == 1
        cluster = result.clusters[0]
        assert cluster.pattern_type == "device_repeat"
        assert cluster.threat_count == 7
        assert cluster.metadata.primary_target == "dev-7"
        assert len(cluster.metadata.signal_ids) == 7
        patterns = await store.get_cluster_patterns(cluster.id)
        assert len(patterns) >= 1
        detail = DeviceRepeatDetail.model_validate(patterns[0].pattern_detail)
        assert detail.attempts == 7
        assert detail.unique_ips == 7

    @pytest.mark.asyncio
    async def test_ip_repeat_carries_subnet_pattern(self, store, config, seed_signals):
        await seed_signals(5, ip_address="198.51.100.7", blocked=True)
        engine = ThreatClusterEngine(store, config)

        result = await engine.analyze_threats()

        assert [c.pattern_type for c in result.clusters] == ["ip_repeat"]
        cluster = result.clusters[0]
        assert isinstance(cluster.metadata, ClusterMetadata)
        assert cluster.metadata.blocked_ratio == 1.0
        patterns = await store.get_cluster_patterns(cluster.id)
        descriptions = {p.description for p in patterns}
        assert "IP subnet 198.51.100.0/24" in descriptions
        subnet = [p for p in patterns if p.pattern_detail["kind"] == "subnet"][0]
        assert SubnetDetail.model_validate(subnet.pattern_detail).unique_ips == 1

    @pytest.mark.asyncio
    async def test_subnet_cluster_needs_several_ips(self, store, seed_signals):
        config = DefenseConfig(subnet_cluster_threshold=4)
        for i in range(4):
            await seed_signals(1, ip_address=f"192.0.2.{i + 1}")
        engine = ThreatClusterEngine(store, config)

        result = await engine.analyze_threats()

        assert [c.pattern_type for c in result.clusters] == ["subnet_repeat"]
        assert result.clusters[0].metadata.unique_ips == 4

    @pytest.mark.asyncio
    async def test_gan_targeting_counts_only_failures(self, store, config, seed_signals):
        await seed_signals(2, gan="GAN-T", failure_reason="invalid pin", ip_address="unknown")
        await seed_signals(4, gan="GAN-T", ip_address="unknown")
        engine = ThreatClusterEngine(store, config)
        assert (await engine.analyze_threats()).clusters_found == 0

        await seed_signals(1, gan="GAN-T", blocked=True, ip_address="unknown")
        result = await engine.analyze_threats()

        assert result.clusters_found == 1
        assert result.clusters[0].pattern_type == "gan_targeting"
        assert result.clusters[0].threat_count == 3

    @pytest.mark.asyncio
    async def test_signals_outside_window_are_ignored(self, store, config, seed_signals):
        await seed_signals(6, minutes_ago=60 * 25, device_fingerprint="old-dev", ip_address="unknown")
        engine = ThreatClusterEngine(store, config)

        result = await engine.analyze_threats()

        assert result.threats_analyzed == 0
        assert result.clusters_found == 0

    @pytest.mark.asyncio
    async def test_reruns_duplicate_unless_dedupe_enabled(self, store, seed_signals):
        await seed_signals(5, device_fingerprint="dev-d", ip_address="unknown")

        plain = ThreatClusterEngine(store, DefenseConfig())
        await plain.analyze_threats()
        await plain.analyze_threats()
        assert len(await store.get_fraud_clusters()) == 2

        deduping = ThreatClusterEngine(store, DefenseConfig(cluster_dedupe=True))
        assert (await deduping.analyze_threats()).clusters_found == 0
        assert len(await store.get_fraud_clusters()) == 2

    @pytest.mark.asyncio
    async def test_new_cluster_publishes_alert(self, store, config, seed_signals):
        await seed_signals(5, device_fingerprint="dev-a", ip_address="unknown")
        publisher = AsyncMock()
        engine = ThreatClusterEngine(store, config, alert_publisher=publisher)

        result = await engine.analyze_threats()

        publisher.publish.assert_awaited_once()
        alert_type, payload = publisher.publish.await_args.args
        assert alert_type == "new-fraud-cluster"
        assert payload["cluster_id"] == str(result.clusters[0].id)

    @pytest.mark.asyncio
    async def test_cluster_stats(self, store, config, seed_signals):
        await seed_signals(5, device_fingerprint="dev-s", ip_address="unknown")
        await ThreatClusterEngine(store, config).analyze_threats()

        stats = await store.get_fraud_cluster_stats()

        assert stats["total_clusters"] == 1
        assert stats["recent_clusters"] == 1
        assert stats["pattern_types"] == {"device_repeat": 1}
        assert stats["avg_severity"] >= 1

    @pytest.mark.asyncio
    async def test_velocity_cluster_from_several_ips(self, store, config, seed_signals):
        seeded = []
        for i in range(3):
            seeded += await seed_signals(1, minutes_ago=1 + i, ip_address=f"203.0.113.{i + 1}",
                                         failure_reason="invalid code")
        engine = ThreatClusterEngine(store, config)

        result = await engine.analyze_threats()

        assert [c.pattern_type for c in result.clusters] == ["velocity"]
        cluster = result.clusters[0]
        assert cluster.threat_count == 3
        oldest = min(s.created_at for s in seeded)
        assert cluster.metadata.primary_target == oldest.isoformat(timespec="seconds")
        [pattern] = await store.get_cluster_patterns(cluster.id)
        detail = VelocityDetail.model_validate(pattern.pattern_detail)
        assert detail.unique_ips == 3
        assert detail.window_seconds == config.velocity_cluster_window_minutes * 60

    @pytest.mark.asyncio
    async def test_spread_out_failures_are_not_velocity(self, store, config, seed_signals):
        for i in range(3):
            await seed_signals(1, minutes_ago=1 + 10 * i, ip_address=f"203.0.113.{i + 1}",
                               failure_reason="invalid code")

        result = await ThreatClusterEngine(store, config).analyze_threats()

        assert result.clusters_found == 0

    @pytest.mark.asyncio
    async def test_user_agent_cluster_across_versions(self, store, config, seed_signals):
        # Twenty minutes apart so the failures never form a velocity burst.
        for i, version in enumerate(["1.2", "1.3", "2.0.1"]):
            await seed_signals(1, minutes_ago=5 + 20 * i, ip_address=f"2001:db8::{i}",
                               user_agent=f"GiftBot/{version} (Linux)", blocked=True)
        await seed_signals(2, minutes_ago=90, ip_address="2001:db8::9", user_agent="GiftBot/3.0 (Linux)")

        result = await ThreatClusterEngine(store, config).analyze_threats()

        assert [c.pattern_type for c in result.clusters] == ["user_agent"]
        cluster = result.clusters[0]
        assert cluster.threat_count == 3
        assert cluster.metadata.primary_target == user_agent_signature("GiftBot/1.2 (Linux)")
        [pattern] = await store.get_cluster_patterns(cluster.id)
        assert UserAgentDetail.model_validate(pattern.pattern_detail).unique_ips == 3
