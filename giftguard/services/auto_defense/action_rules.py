# giftguard/services/auto_defense/action_rules.py
"""
Admin-configured action rules: a condition over cluster fields and the
defense action to take when a cluster satisfies it.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from giftguard.common.errors import StorageError
from giftguard.services.detector.schemas import ActionCondition, ActionRuleCreate
from giftguard.services.detector.store import FraudStore

logger = logging.getLogger(__name__)

# Which cluster pattern each action type can target.
ACTION_TARGET_PATTERN = {
    "block_ip": "ip_repeat",
    "block_device": "device_repeat",
    "block_gan": "gan_targeting",
}

DEFAULT_ACTION_RULES = [
    ActionRuleCreate(
        name="High Severity IP Block",
        description="Auto-block IPs in high-severity clusters",
        condition=ActionCondition(field="severity", operator="gte", value=7),
        action_type="block_ip",
        severity=7,
    ),
    ActionRuleCreate(
        name="High Score Device Block",
        description="Block devices in high-score clusters",
        condition=ActionCondition(field="score", operator="gte", value=8.0),
        action_type="block_device",
        severity=6,
    ),
    ActionRuleCreate(
        name="GAN Targeting Block",
        description="Temporarily block gift cards under repeated failed attempts",
        condition=ActionCondition(field="pattern_type", operator="eq", value="gan_targeting"),
        action_type="block_gan",
        severity=5,
    ),
]


def cluster_value(cluster, field: str) -> Any:
    return {
        "severity": cluster.severity,
        "score": float(cluster.score),
        "threat_count": cluster.threat_count,
        "pattern_type": cluster.pattern_type,
    }.get(field)


def evaluate_condition(condition: ActionCondition, cluster) -> bool:
    actual = cluster_value(cluster, condition.field)
    expected = condition.value
    if actual is None:
        return False
    if condition.operator == "contains":
        return str(expected) in str(actual)
    if condition.operator == "eq":
        return actual == expected
    try:
        if condition.operator == "gte":
            return actual >= expected
        if condition.operator == "gt":
            return actual > expected
    except TypeError:
        # e.g. "gte" against pattern_type; such a rule never matches
        logger.warning(f"Cannot compare {condition.field}={actual!r} with {expected!r}")
        return False
    return False


def calculate_expiry(action_type: str, severity: int, now: datetime) -> Optional[datetime]:
    if action_type == "block_ip":
        # Higher severity = longer block (4h steps, at most a day)
        return now + timedelta(hours=min(severity * 4, 24))
    if action_type == "block_device":
        return now + timedelta(days=min(severity, 7))
    if action_type == "block_gan":
        return now + timedelta(hours=24)
    return None


def target_for(action_type: str, cluster) -> Optional[str]:
    if ACTION_TARGET_PATTERN.get(action_type) != cluster.pattern_type:
        return None
    if cluster.metadata is None:
        return None
    return cluster.metadata.primary_target


async def create_default_action_rules(store: FraudStore) -> List:
    created = []
    for rule_data in DEFAULT_ACTION_RULES:
        try:
            if await store.get_action_rule_by_name(rule_data.name) is not None:
                continue
            created.append(await store.create_action_rule(rule_data))
            logger.info(f"Created default action rule: {rule_data.name}")
        except StorageError as e:
            logger.error(f"Error creating action rule {rule_data.name}: {e}")
    return created
