# giftguard/services/defense_worker/pipeline.py
import logging
from datetime import timedelta
from typing import Optional

from giftguard.common.config import DefenseConfig
from giftguard.common.locks import single_flight
from giftguard.models.base import utcnow
from giftguard.services.auto_defense.action_layer import DefenseActionLayer
from giftguard.services.auto_defense.learning_engine import AutoDefenseEngine
from giftguard.services.detector.schemas import (
    ClusterAnalysisResult,
    FraudClusterResponse,
    ThreatReplayResponse,
)
from giftguard.services.detector.store import FraudStore
from giftguard.services.threat_analysis.cluster_engine import ThreatClusterEngine
from giftguard.services.threat_analysis.replay_service import ThreatReplayService

logger = logging.getLogger(__name__)

CLUSTER_ANALYSIS_JOB = "cluster-analysis"
LEARNING_LOOP_JOB = "learning-loop"

MAX_REPLAY_LIMIT = 200


class DefensePipeline:
    """Wires the batch engines together and serialises overlapping runs.

    Used by the admin endpoints and the background worker alike.
    """

    def __init__(self, store: FraudStore, config: DefenseConfig, redis_client=None, alert_publisher=None):
        self.store = store
        self.config = config
        self.redis_client = redis_client
        self.action_layer = DefenseActionLayer(store)
        self.cluster_engine = ThreatClusterEngine(store, config, alert_publisher=alert_publisher)
        self.replay_service = ThreatReplayService(store, config)
        self.defense_engine = AutoDefenseEngine(
            store, config, action_layer=self.action_layer, alert_publisher=alert_publisher
        )

    async def run_cluster_analysis(self) -> ClusterAnalysisResult:
        async with single_flight(self.redis_client, CLUSTER_ANALYSIS_JOB, self.config.job_lock_ttl_seconds):
            result = await self.cluster_engine.analyze_threats()
            result.actions_created = await self.defense_engine.defend_from_clusters(result.clusters)
        logger.info(f"Cluster analysis: {result.clusters_found} clusters from {result.threats_analyzed} "
                    f"signals, {result.actions_created} defense actions")
        return result

    async def run_threat_replay(self, limit: Optional[int] = None) -> ThreatReplayResponse:
        if limit is not None:
            limit = max(1, min(limit, MAX_REPLAY_LIMIT))
        async with single_flight(self.redis_client, LEARNING_LOOP_JOB, self.config.job_lock_ttl_seconds):
            summary = await self.replay_service.run_threat_replay(limit)
            clusters = await self._recent_clusters()
            learning = await self.defense_engine.run(summary, clusters)
        return ThreatReplayResponse(replay=summary, learning=learning)

    async def _recent_clusters(self):
        """Recent clusters not yet defended. A cluster is defended at most once."""
        cutoff = utcnow() - timedelta(hours=self.config.cluster_window_hours)
        clusters = [
            c for c in await self.store.get_fraud_clusters(self.config.cluster_candidate_limit)
            if c.created_at >= cutoff
        ]
        defended = await self.store.get_defended_cluster_ids([c.id for c in clusters])
        return [FraudClusterResponse.model_validate(c) for c in clusters if c.id not in defended]

    async def sweep_expired_actions(self) -> int:
        return await self.action_layer.expire_defense_actions()
