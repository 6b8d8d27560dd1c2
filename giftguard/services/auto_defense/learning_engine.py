# giftguard/services/auto_defense/learning_engine.py
"""
Auto Defense Engine (the learning loop).

Two inputs feed it:

* replay reports: a target (IP, device or GAN) that shows up in at least
  ``learning_min_repeats`` "still missed" reports becomes a permanent
  AutoDefenseRule, unless an active rule for the same (type, value) exists;
* fresh clusters: high-severity clusters and clusters matching an admin
  action rule become time-bound DefenseActions on the cluster's target.

Each candidate is handled on its own. A failed write is counted and logged
and never rolls back what was already created, so the returned counts are
what actually happened.
"""
import logging
from collections import Counter
from datetime import timedelta
from typing import Iterable, List, Optional

from giftguard.common.config import DefenseConfig
from giftguard.common.errors import StorageError
from giftguard.models.base import utcnow
from giftguard.services.auto_defense.action_layer import DefenseActionLayer
from giftguard.services.auto_defense.action_rules import calculate_expiry, evaluate_condition, target_for
from giftguard.services.detector.schemas import (
    ActionCondition,
    ActionMetadata,
    AutoDefenseRuleCreate,
    DefenseRuleStats,
    FraudClusterResponse,
    LearningResult,
    ReplaySummary,
)
from giftguard.services.detector.store import FraudStore

logger = logging.getLogger(__name__)

CLUSTER_BLOCK_ACTION = {
    "ip_repeat": "block_ip",
    "device_repeat": "block_device",
    "gan_targeting": "block_gan",
}


def missed_targets(summary: ReplaySummary) -> Counter:
    counts = Counter()
    for report in summary.reports:
        if report.outcome != "still_missed":
            continue
        if report.ip_address and report.ip_address != "unknown":
            counts[("ip", report.ip_address)] += 1
        if report.device_fingerprint:
            counts[("device", report.device_fingerprint)] += 1
        if report.gan:
            counts[("gan", report.gan)] += 1
    return counts


def learning_effectiveness(summary: ReplaySummary, rules_created: int) -> float:
    if summary.total_analyzed == 0:
        return 0.0
    caught = summary.blocked_correctly + summary.gap_closed
    threats = caught + summary.still_missed
    detection_rate = caught / threats if threats else 1.0
    bonus = 10 if rules_created > 0 and summary.still_missed > 0 else 0
    # Up to 30 points off for legitimate traffic that was blocked.
    penalty = summary.false_positive / summary.total_analyzed * 30
    return float(round(max(0.0, min(100.0, detection_rate * 80 + bonus - penalty))))


def build_recommendations(summary: ReplaySummary, rules_created: int) -> List[str]:
    recommendations = []
    total = summary.total_analyzed
    missed = summary.still_missed
    if total and missed > total * 0.3:
        recommendations.append(
            f"High miss rate detected: {missed}/{total} threats should have been blocked. "
            "Consider tightening security rules."
        )
    if rules_created == 0 and missed > 0:
        recommendations.append(
            "No new rules created despite missed threats. Consider lowering the repeat threshold for rule creation."
        )
    if total and summary.false_positive > total * 0.1:
        recommendations.append(
            f"High false positive rate: {summary.false_positive}/{total} legitimate requests blocked. "
            "Review rule precision."
        )
    if rules_created > 0:
        recommendations.append(f"Successfully created {rules_created} new defense rules to improve threat detection.")
    if summary.errored:
        recommendations.append(f"{summary.errored} signals could not be replayed; check store health.")
    return recommendations


class AutoDefenseEngine:
    def __init__(self, store: FraudStore, config: DefenseConfig,
                 action_layer: Optional[DefenseActionLayer] = None, alert_publisher=None):
        self.store = store
        self.config = config
        self.action_layer = action_layer or DefenseActionLayer(store)
        self.alert_publisher = alert_publisher

    async def _alert(self, alert_type: str, payload: dict) -> None:
        if self.alert_publisher is not None:
            await self.alert_publisher.publish(alert_type, payload)

    async def _history(self, result: str, **kwargs) -> None:
        try:
            await self.store.create_defense_history(result, **kwargs)
        except StorageError as e:
            logger.warning(f"Failed to record defense history ({result}): {e}")

    async def learn_from_replay(self, summary: ReplaySummary) -> LearningResult:
        result = LearningResult()
        for (rule_type, value), repeats in sorted(missed_targets(summary).items()):
            if repeats < self.config.learning_min_repeats:
                continue
            try:
                if await self.store.check_auto_defense_rule(rule_type, value) is not None:
                    continue
                rule = await self.store.create_auto_defense_rule(AutoDefenseRuleCreate(
                    type=rule_type,
                    value=value,
                    reason=f"Seen in {repeats} missed threats during replay",
                    confidence=min(95, 50 + 10 * repeats),
                    source="replay",
                ))
            except StorageError as e:
                result.rules_failed += 1
                logger.error(f"Failed to create {rule_type} rule for {value}: {e}")
                continue

            result.rules_created += 1
            logger.info(f"Learned {rule_type} rule {rule.id} for {value} (confidence {rule.confidence}%)")
            await self._history("rule_created", rule_id=rule.id, details=rule.reason)
            await self._alert("rule-learned", {
                "rule_id": str(rule.id), "type": rule_type, "value": value, "confidence": rule.confidence,
            })

        result.learning_effectiveness = learning_effectiveness(summary, result.rules_created)
        result.recommendations = build_recommendations(summary, result.rules_created)
        return result

    async def _block_for_cluster(self, cluster: FraudClusterResponse, action_type: str, target: str,
                                 severity: int, expires_in: timedelta, metadata: ActionMetadata,
                                 name: str) -> bool:
        if await self.action_layer.is_target_blocked(target, action_type):
            logger.debug(f"{target} already blocked ({action_type}), not adding another action")
            await self._history("already_blocked", cluster_id=cluster.id,
                                action_rule_id=metadata.action_rule_id, details=f"{action_type} {target}")
            return False
        action = await self.action_layer.block_target(
            action_type, target,
            severity=severity,
            triggered_by=f"cluster:{cluster.id}",
            expires_in=expires_in,
            metadata=metadata,
            name=name,
        )
        await self._history(
            "action_created",
            action_id=action.id,
            cluster_id=cluster.id,
            action_rule_id=metadata.action_rule_id,
            details=f"{action_type} {target}",
        )
        await self._alert("defense-action-triggered", {
            "action_id": str(action.id), "cluster_id": str(cluster.id),
            "action_type": action_type, "target_value": target, "severity": severity,
        })
        return True

    async def defend_from_clusters(self, clusters: Iterable[FraudClusterResponse]) -> int:
        """Returns the number of DefenseActions created."""
        clusters = list(clusters)
        if not clusters:
            return 0
        try:
            action_rules = await self.store.get_active_action_rules()
        except StorageError as e:
            logger.error(f"Could not load action rules, using severity blocks only: {e}")
            action_rules = []

        actions_created = 0
        for cluster in clusters:
            target = cluster.metadata.primary_target if cluster.metadata else None
            action_type = CLUSTER_BLOCK_ACTION.get(cluster.pattern_type)

            if action_type and target and cluster.severity >= self.config.cluster_block_severity:
                try:
                    if await self._block_for_cluster(
                        cluster, action_type, target,
                        severity=cluster.severity,
                        expires_in=timedelta(hours=self.config.cluster_block_hours),
                        metadata=ActionMetadata(source="cluster", cluster_id=cluster.id,
                                                pattern_type=cluster.pattern_type, reason=cluster.label),
                        name=f"Cluster block: {cluster.label}",
                    ):
                        actions_created += 1
                except StorageError as e:
                    logger.error(f"Failed to block {target} for cluster {cluster.id}: {e}")
                    await self._history("failed", cluster_id=cluster.id, details=str(e))

            for rule in action_rules:
                condition = ActionCondition.model_validate(rule.condition)
                if not evaluate_condition(condition, cluster):
                    continue
                rule_target = target_for(rule.action_type, cluster)
                if rule_target is None:
                    continue
                now = utcnow()
                try:
                    created = await self._block_for_cluster(
                        cluster, rule.action_type, rule_target,
                        severity=rule.severity,
                        expires_in=calculate_expiry(rule.action_type, rule.severity, now) - now,
                        metadata=ActionMetadata(source="action_rule", cluster_id=cluster.id,
                                                action_rule_id=rule.id, pattern_type=cluster.pattern_type,
                                                reason=rule.name),
                        name=f"Auto: {rule.name}",
                    )
                    if created:
                        actions_created += 1
                        await self.store.record_action_rule_trigger(rule.id)
                except StorageError as e:
                    logger.error(f"Action rule {rule.name} failed for cluster {cluster.id}: {e}")
                    await self._history("failed", cluster_id=cluster.id, action_rule_id=rule.id, details=str(e))
        return actions_created

    async def run(self, summary: ReplaySummary,
                  clusters: Optional[Iterable[FraudClusterResponse]] = None) -> LearningResult:
        clusters = list(clusters or [])
        result = await self.learn_from_replay(summary)
        result.clusters_considered = len(clusters)
        result.actions_created = await self.defend_from_clusters(clusters)
        return result

    async def get_defense_statistics(self) -> DefenseRuleStats:
        rules = await self.store.get_auto_defense_rules()
        active = [r for r in rules if r.is_active]
        cutoff = utcnow() - timedelta(hours=24)
        by_type = Counter(r.type for r in active)
        return DefenseRuleStats(
            total_rules=len(rules),
            active_rules=len(active),
            rules_by_type=dict(by_type),
            recent_triggers=sum(1 for r in rules if r.last_triggered and r.last_triggered >= cutoff),
            average_confidence=round(sum(r.confidence for r in active) / len(active), 1) if active else 0.0,
        )
