# giftguard/tests/test_pipeline.py
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from giftguard.common.errors import JobAlreadyRunningError
from giftguard.common.locks import single_flight
from giftguard.services.defense_worker.main import run_cycle
from giftguard.services.defense_worker.pipeline import DefensePipeline
from giftguard.services.detector.schemas import ActionCondition, ActionRuleCreate


def fake_redis(acquired=True):
    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock()
    client = MagicMock()
    client.lock.return_value = lock
    return client, lock


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_lock_acquired_and_released(self):
        client, lock = fake_redis()

        async with single_flight(client, "cluster-analysis", 30):
            pass

        client.lock.assert_called_once_with("giftguard:jobs:cluster-analysis", timeout=30)
        lock.acquire.assert_awaited_once_with(blocking=False)
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_held_lock_raises(self):
        client, lock = fake_redis(acquired=False)

        with pytest.raises(JobAlreadyRunningError) as exc_info:
            async with single_flight(client, "learning-loop", 30):
                pytest.fail("body must not run")

        assert exc_info.value.job_name == "learning-loop"
        lock.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_redis_runs_unguarded(self):
        ran = []
        async with single_flight(None, "learning-loop", 30):
            ran.append(True)
        assert ran == [True]


class TestDefensePipeline:
    @pytest.mark.asyncio
    async def test_cluster_analysis_feeds_defense(self, store, config, seed_signals):
        await seed_signals(20, ip_address="7.7.7.7", blocked=True)
        pipeline = DefensePipeline(store, config)

        result = await pipeline.run_cluster_analysis()

        assert result.clusters_found == 1
        assert result.actions_created == 1

    @pytest.mark.asyncio
    async def test_threat_replay_runs_learning(self, store, config, seed_signals):
        await seed_signals(3, ip_address="6.6.6.6", failure_reason="invalid code")
        pipeline = DefensePipeline(store, config)

        response = await pipeline.run_threat_replay(limit=500)

        assert response.replay.total_analyzed == 3
        assert response.replay.still_missed == 3
        assert response.learning.rules_created == 1

    @pytest.mark.asyncio
    async def test_overlapping_job_is_refused(self, store, config):
        client, _ = fake_redis(acquired=False)
        pipeline = DefensePipeline(store, config, redis_client=client)

        with pytest.raises(JobAlreadyRunningError):
            await pipeline.run_threat_replay()

    @pytest.mark.asyncio
    async def test_worker_cycle_swallows_lock_contention(self, store, config):
        client, _ = fake_redis(acquired=False)
        pipeline = DefensePipeline(store, config, redis_client=client)

        await run_cycle(pipeline)

    @pytest.mark.asyncio
    async def test_worker_cycle_survives_unexpected_errors(self, store, config):
        client, lock = fake_redis()
        lock.acquire.side_effect = RedisConnectionError("redis went away")
        pipeline = DefensePipeline(store, config, redis_client=client)
        pipeline.sweep_expired_actions = AsyncMock(side_effect=RuntimeError("boom"))

        await run_cycle(pipeline)
        await run_cycle(pipeline)

        assert pipeline.sweep_expired_actions.await_count == 2
        assert lock.acquire.await_count == 2

    @pytest.mark.asyncio
    async def test_replay_does_not_revive_deactivated_action(self, store, config, seed_signals):
        rule = await store.create_action_rule(ActionRuleCreate(
            name="Severe cluster IP block",
            condition=ActionCondition(field="severity", operator="gte", value=7),
            action_type="block_ip",
        ))
        await seed_signals(20, ip_address="7.7.7.7", blocked=True)
        pipeline = DefensePipeline(store, config)
        assert (await pipeline.run_cluster_analysis()).actions_created == 1
        [action] = await store.get_active_defense_actions()
        assert await store.deactivate_defense_action(action.id) is True

        await pipeline.run_threat_replay(limit=1)
        response = await pipeline.run_threat_replay(limit=1)

        assert response.learning.actions_created == 0
        assert await store.get_active_defense_actions() == []
        assert (await store.get_action_rule_by_id(rule.id)).trigger_count == 0
