from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, or_
from datetime import datetime, timedelta
import uuid
from typing import Any, Dict, List, Optional, Set

# Import ORM models
from giftguard.models import (
    FraudSignal,
    GiftCard,
    AutoDefenseRule,
    FraudCluster,
    ClusterPattern,
    DefenseAction,
    ActionRule,
    DefenseHistory,
)
from giftguard.models.base import utcnow
# Import Pydantic schemas for type hinting
from giftguard.services.detector.schemas import (
    FraudSignalCreate,
    AutoDefenseRuleCreate,
    FraudClusterCreate,
    ClusterPatternCreate,
    ActionRuleCreate,
    ActionRuleUpdate,
    ActionMetadata,
)

# ----------------------
# Fraud log CRUD
# ----------------------
async def create_fraud_log(db: AsyncSession, signal_data: FraudSignalCreate) -> FraudSignal:
    values = signal_data.model_dump(exclude_none=True)
    new_signal = FraudSignal(**values)
    db.add(new_signal)
    await db.commit()
    await db.refresh(new_signal)
    return new_signal

def _window(window_minutes: int, as_of: Optional[datetime]):
    end = as_of or utcnow()
    return end - timedelta(minutes=window_minutes), end

async def get_fraud_logs_by_ip(db: AsyncSession, ip_address: str, window_minutes: int,
                               as_of: Optional[datetime] = None) -> List[FraudSignal]:
    start, end = _window(window_minutes, as_of)
    result = await db.execute(
        select(FraudSignal)
        .where(FraudSignal.ip_address == ip_address,
               FraudSignal.created_at >= start, FraudSignal.created_at < end)
        .order_by(FraudSignal.created_at.desc())
    )
    return result.scalars().all()

async def count_fraud_logs_by_ip(db: AsyncSession, ip_address: str, window_minutes: int,
                                 as_of: Optional[datetime] = None) -> int:
    start, end = _window(window_minutes, as_of)
    result = await db.execute(
        select(func.count(FraudSignal.id))
        .where(FraudSignal.ip_address == ip_address,
               FraudSignal.created_at >= start, FraudSignal.created_at < end)
    )
    return result.scalar_one()

async def get_fraud_logs_by_gan(db: AsyncSession, gan: str) -> List[FraudSignal]:
    result = await db.execute(
        select(FraudSignal).where(FraudSignal.gan == gan).order_by(FraudSignal.created_at.desc())
    )
    return result.scalars().all()

async def get_fraud_logs_by_merchant(db: AsyncSession, merchant_id: str, window_minutes: int,
                                     as_of: Optional[datetime] = None) -> List[FraudSignal]:
    start, end = _window(window_minutes, as_of)
    result = await db.execute(
        select(FraudSignal)
        .where(FraudSignal.merchant_id == merchant_id,
               FraudSignal.created_at >= start, FraudSignal.created_at < end)
        .order_by(FraudSignal.created_at.desc())
    )
    return result.scalars().all()

async def count_fraud_logs_by_merchant(db: AsyncSession, merchant_id: str, window_minutes: int,
                                       as_of: Optional[datetime] = None) -> int:
    start, end = _window(window_minutes, as_of)
    result = await db.execute(
        select(func.count(FraudSignal.id))
        .where(FraudSignal.merchant_id == merchant_id,
               FraudSignal.created_at >= start, FraudSignal.created_at < end)
    )
    return result.scalar_one()

async def get_recent_fraud_logs(db: AsyncSession, limit: int = 100) -> List[FraudSignal]:
    result = await db.execute(
        select(FraudSignal).order_by(FraudSignal.created_at.desc()).limit(limit)
    )
    return result.scalars().all()

async def get_fraud_logs_since(db: AsyncSession, since: datetime, limit: int = 1000) -> List[FraudSignal]:
    result = await db.execute(
        select(FraudSignal)
        .where(FraudSignal.created_at >= since)
        .order_by(FraudSignal.created_at.desc())
        .limit(limit)
    )
    return result.scalars().all()

# ----------------------
# AutoDefenseRule CRUD
# ----------------------
async def create_auto_defense_rule(db: AsyncSession, rule_data: AutoDefenseRuleCreate) -> AutoDefenseRule:
    new_rule = AutoDefenseRule(**rule_data.model_dump())
    db.add(new_rule)
    await db.commit()
    await db.refresh(new_rule)
    return new_rule

async def get_auto_defense_rules(db: AsyncSession, active_only: bool = False) -> List[AutoDefenseRule]:
    query = select(AutoDefenseRule).order_by(AutoDefenseRule.created_at.desc())
    if active_only:
        query = query.where(AutoDefenseRule.is_active == True)
    result = await db.execute(query)
    return result.scalars().all()

async def get_auto_defense_rules_by_type(db: AsyncSession, rule_type: str) -> List[AutoDefenseRule]:
    result = await db.execute(
        select(AutoDefenseRule)
        .where(AutoDefenseRule.type == rule_type, AutoDefenseRule.is_active == True)
        .order_by(AutoDefenseRule.created_at)
    )
    return result.scalars().all()

async def get_auto_defense_rule_by_id(db: AsyncSession, rule_id: uuid.UUID) -> AutoDefenseRule | None:
    return await db.get(AutoDefenseRule, rule_id)

async def update_auto_defense_rule_hit_count(db: AsyncSession, rule_id: uuid.UUID) -> bool:
    # Increment happens in the database so concurrent matches never lose updates.
    result = await db.execute(
        update(AutoDefenseRule).execution_options(synchronize_session=False)
        .where(AutoDefenseRule.id == rule_id)
        .values(hit_count=AutoDefenseRule.hit_count + 1, last_triggered=utcnow())
    )
    await db.commit()
    return result.rowcount > 0

async def deactivate_auto_defense_rule(db: AsyncSession, rule_id: uuid.UUID) -> bool:
    result = await db.execute(
        update(AutoDefenseRule).execution_options(synchronize_session=False)
        .where(AutoDefenseRule.id == rule_id, AutoDefenseRule.is_active == True)
        .values(is_active=False)
    )
    await db.commit()
    return result.rowcount > 0

async def check_auto_defense_rule(db: AsyncSession, rule_type: str, value: str) -> AutoDefenseRule | None:
    result = await db.execute(
        select(AutoDefenseRule)
        .where(AutoDefenseRule.type == rule_type,
               AutoDefenseRule.value == value,
               AutoDefenseRule.is_active == True)
        .order_by(AutoDefenseRule.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()

# ----------------------
# FraudCluster CRUD
# ----------------------
def _pattern_row(cluster_id: uuid.UUID, pattern: ClusterPatternCreate) -> ClusterPattern:
    return ClusterPattern(
        cluster_id=cluster_id,
        pattern_value=pattern.pattern_value,
        description=pattern.description,
        match_count=pattern.match_count,
        pattern_detail=pattern.detail.model_dump(mode="json"),
    )

async def create_fraud_cluster(db: AsyncSession, cluster_data: FraudClusterCreate) -> FraudCluster:
    """Cluster and its patterns are written in one transaction."""
    new_cluster = FraudCluster(
        pattern_type=cluster_data.pattern_type,
        label=cluster_data.label,
        severity=cluster_data.severity,
        score=cluster_data.score,
        threat_count=cluster_data.threat_count,
        fingerprint=cluster_data.fingerprint,
        cluster_metadata=cluster_data.metadata.model_dump(mode="json"),
    )
    db.add(new_cluster)
    await db.flush()
    for pattern in cluster_data.patterns:
        db.add(_pattern_row(new_cluster.id, pattern))
    await db.commit()
    await db.refresh(new_cluster)
    return new_cluster

async def get_fraud_clusters(db: AsyncSession, limit: int = 50) -> List[FraudCluster]:
    result = await db.execute(
        select(FraudCluster).order_by(FraudCluster.created_at.desc()).limit(limit)
    )
    return result.scalars().all()

async def get_fraud_cluster_by_id(db: AsyncSession, cluster_id: uuid.UUID) -> FraudCluster | None:
    return await db.get(FraudCluster, cluster_id)

async def get_cluster_patterns(db: AsyncSession, cluster_id: uuid.UUID) -> List[ClusterPattern]:
    result = await db.execute(
        select(ClusterPattern)
        .where(ClusterPattern.cluster_id == cluster_id)
        .order_by(ClusterPattern.created_at)
    )
    return result.scalars().all()

async def add_cluster_pattern(db: AsyncSession, cluster_id: uuid.UUID,
                              pattern: ClusterPatternCreate) -> ClusterPattern:
    new_pattern = _pattern_row(cluster_id, pattern)
    db.add(new_pattern)
    await db.commit()
    await db.refresh(new_pattern)
    return new_pattern

async def fraud_cluster_exists(db: AsyncSession, fingerprint: str) -> bool:
    result = await db.execute(
        select(FraudCluster.id).where(FraudCluster.fingerprint == fingerprint).limit(1)
    )
    return result.first() is not None

async def get_fraud_cluster_stats(db: AsyncSession) -> Dict[str, Any]:
    total = (await db.execute(select(func.count(FraudCluster.id)))).scalar_one()
    recent = (await db.execute(
        select(func.count(FraudCluster.id))
        .where(FraudCluster.created_at >= utcnow() - timedelta(hours=24))
    )).scalar_one()
    avg_severity = (await db.execute(select(func.avg(FraudCluster.severity)))).scalar_one()
    by_type = await db.execute(
        select(FraudCluster.pattern_type, func.count(FraudCluster.id))
        .group_by(FraudCluster.pattern_type)
    )
    return {
        "total_clusters": total,
        "recent_clusters": recent,
        "avg_severity": round(float(avg_severity or 0.0), 2),
        "pattern_types": {pattern_type: count for pattern_type, count in by_type.all()},
    }

# ----------------------
# DefenseAction CRUD
# ----------------------
async def create_defense_action(db: AsyncSession, action_type: str, target_value: str, name: str,
                                severity: int = 5, expires_at: Optional[datetime] = None,
                                triggered_by: Optional[str] = None,
                                metadata: Optional[ActionMetadata] = None) -> DefenseAction:
    new_action = DefenseAction(
        name=name,
        action_type=action_type,
        target_value=target_value,
        severity=severity,
        expires_at=expires_at,
        triggered_by=triggered_by,
        action_metadata=metadata.model_dump(mode="json") if metadata else None,
    )
    db.add(new_action)
    await db.commit()
    await db.refresh(new_action)
    return new_action

def _unexpired(now: datetime):
    return or_(DefenseAction.expires_at.is_(None), DefenseAction.expires_at >= now)

async def get_active_defense_actions(db: AsyncSession) -> List[DefenseAction]:
    result = await db.execute(
        select(DefenseAction)
        .where(DefenseAction.is_active == True, _unexpired(utcnow()))
        .order_by(DefenseAction.created_at.desc())
    )
    return result.scalars().all()

async def get_defense_actions_by_type(db: AsyncSession, action_type: str) -> List[DefenseAction]:
    result = await db.execute(
        select(DefenseAction)
        .where(DefenseAction.action_type == action_type)
        .order_by(DefenseAction.created_at.desc())
    )
    return result.scalars().all()

async def get_defense_action_by_id(db: AsyncSession, action_id: uuid.UUID) -> DefenseAction | None:
    return await db.get(DefenseAction, action_id)

async def get_blocking_defense_action(db: AsyncSession, target_value: str, action_type: str,
                                      now: Optional[datetime] = None) -> DefenseAction | None:
    # The expiry check here is what makes a stale is_active flag harmless.
    result = await db.execute(
        select(DefenseAction)
        .where(DefenseAction.action_type == action_type,
               DefenseAction.target_value == target_value,
               DefenseAction.is_active == True,
               _unexpired(now or utcnow()))
        .order_by(DefenseAction.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()

async def is_target_blocked(db: AsyncSession, target_value: str, action_type: str,
                            now: Optional[datetime] = None) -> bool:
    return await get_blocking_defense_action(db, target_value, action_type, now) is not None

async def expire_defense_actions(db: AsyncSession, now: Optional[datetime] = None) -> int:
    # Conditional update: a concurrent second sweep matches zero rows.
    result = await db.execute(
        update(DefenseAction).execution_options(synchronize_session=False)
        .where(DefenseAction.is_active == True,
               DefenseAction.expires_at.is_not(None),
               DefenseAction.expires_at <= (now or utcnow()))
        .values(is_active=False)
    )
    await db.commit()
    return result.rowcount

async def deactivate_defense_action(db: AsyncSession, action_id: uuid.UUID) -> bool:
    result = await db.execute(
        update(DefenseAction).execution_options(synchronize_session=False)
        .where(DefenseAction.id == action_id, DefenseAction.is_active == True)
        .values(is_active=False)
    )
    await db.commit()
    return result.rowcount > 0

# ----------------------
# ActionRule CRUD
# ----------------------
async def get_action_rules(db: AsyncSession) -> List[ActionRule]:
    result = await db.execute(select(ActionRule).order_by(ActionRule.created_at))
    return result.scalars().all()

async def get_active_action_rules(db: AsyncSession) -> List[ActionRule]:
    result = await db.execute(
        select(ActionRule).where(ActionRule.is_active == True).order_by(ActionRule.created_at)
    )
    return result.scalars().all()

async def get_action_rule_by_id(db: AsyncSession, rule_id: uuid.UUID) -> ActionRule | None:
    return await db.get(ActionRule, rule_id)

async def get_action_rule_by_name(db: AsyncSession, name: str) -> ActionRule | None:
    result = await db.execute(select(ActionRule).where(ActionRule.name == name))
    return result.scalar_one_or_none()

async def create_action_rule(db: AsyncSession, rule_data: ActionRuleCreate) -> ActionRule:
    values = rule_data.model_dump(mode="json")
    new_rule = ActionRule(**values)
    db.add(new_rule)
    await db.commit()
    await db.refresh(new_rule)
    return new_rule

async def update_action_rule(db: AsyncSession, rule_id: uuid.UUID,
                             rule_data: ActionRuleUpdate) -> ActionRule | None:
    rule = await db.get(ActionRule, rule_id)
    if rule is None:
        return None
    for key, value in rule_data.model_dump(mode="json", exclude_unset=True).items():
        setattr(rule, key, value)
    await db.commit()
    await db.refresh(rule)
    return rule

async def delete_action_rule(db: AsyncSession, rule_id: uuid.UUID) -> bool:
    # Soft delete; defense_history rows keep pointing at the rule.
    result = await db.execute(
        update(ActionRule).execution_options(synchronize_session=False)
        .where(ActionRule.id == rule_id, ActionRule.is_active == True)
        .values(is_active=False, updated_at=utcnow())
    )
    await db.commit()
    return result.rowcount > 0

async def record_action_rule_trigger(db: AsyncSession, rule_id: uuid.UUID) -> bool:
    result = await db.execute(
        update(ActionRule).execution_options(synchronize_session=False)
        .where(ActionRule.id == rule_id)
        .values(trigger_count=ActionRule.trigger_count + 1, last_triggered=utcnow())
    )
    await db.commit()
    return result.rowcount > 0

# ----------------------
# DefenseHistory / stats
# ----------------------
async def create_defense_history(db: AsyncSession, result: str,
                                 action_id: Optional[uuid.UUID] = None,
                                 cluster_id: Optional[uuid.UUID] = None,
                                 rule_id: Optional[uuid.UUID] = None,
                                 action_rule_id: Optional[uuid.UUID] = None,
                                 details: Optional[str] = None) -> DefenseHistory:
    entry = DefenseHistory(
        result=result,
        action_id=action_id,
        cluster_id=cluster_id,
        rule_id=rule_id,
        action_rule_id=action_rule_id,
        details=details,
    )
    db.add(entry)
    await db.commit()
    await db.refresh(entry)
    return entry

async def get_defense_history(db: AsyncSession, limit: int = 100) -> List[DefenseHistory]:
    result = await db.execute(
        select(DefenseHistory).order_by(DefenseHistory.created_at.desc()).limit(limit)
    )
    return result.scalars().all()

DEFENDED_RESULTS = ("action_created", "already_blocked")

async def get_defended_cluster_ids(db: AsyncSession, cluster_ids: List[uuid.UUID]) -> Set[uuid.UUID]:
    """Clusters that already produced an action or found their target blocked."""
    if not cluster_ids:
        return set()
    result = await db.execute(
        select(DefenseHistory.cluster_id)
        .where(DefenseHistory.cluster_id.in_(cluster_ids), DefenseHistory.result.in_(DEFENDED_RESULTS))
        .distinct()
    )
    return set(result.scalars().all())

async def get_defense_stats(db: AsyncSession) -> Dict[str, Any]:
    now = utcnow()
    total_actions = (await db.execute(select(func.count(DefenseAction.id)))).scalar_one()
    active_actions = (await db.execute(
        select(func.count(DefenseAction.id))
        .where(DefenseAction.is_active == True, _unexpired(now))
    )).scalar_one()
    by_type = await db.execute(
        select(DefenseAction.action_type, func.count(DefenseAction.id))
        .where(DefenseAction.is_active == True, _unexpired(now))
        .group_by(DefenseAction.action_type)
    )
    total_rules = (await db.execute(select(func.count(AutoDefenseRule.id)))).scalar_one()
    active_rules = (await db.execute(
        select(func.count(AutoDefenseRule.id)).where(AutoDefenseRule.is_active == True)
    )).scalar_one()
    active_action_rules = (await db.execute(
        select(func.count(ActionRule.id)).where(ActionRule.is_active == True)
    )).scalar_one()
    history_24h = (await db.execute(
        select(func.count(DefenseHistory.id))
        .where(DefenseHistory.created_at >= now - timedelta(hours=24))
    )).scalar_one()
    return {
        "total_actions": total_actions,
        "active_actions": active_actions,
        "actions_by_type": {action_type: count for action_type, count in by_type.all()},
        "total_rules": total_rules,
        "active_rules": active_rules,
        "active_action_rules": active_action_rules,
        "history_last_24h": history_24h,
    }

# ----------------------
# GiftCard CRUD
# ----------------------
async def create_gift_card(db: AsyncSession, gan: str, balance_cents: int,
                           merchant_id: Optional[str] = None) -> GiftCard:
    card = GiftCard(gan=gan, balance_cents=balance_cents, merchant_id=merchant_id)
    db.add(card)
    await db.commit()
    await db.refresh(card)
    return card

async def get_gift_card_by_gan(db: AsyncSession, gan: str) -> GiftCard | None:
    return await db.get(GiftCard, gan)

async def is_gift_card_redeemed(db: AsyncSession, gan: str) -> bool:
    result = await db.execute(select(GiftCard.redeemed).where(GiftCard.gan == gan))
    return bool(result.scalar_one_or_none())

async def redeem_gift_card(db: AsyncSession, gan: str, amount_cents: int) -> bool:
    """Single conditional update; of N concurrent callers at most one sees True."""
    result = await db.execute(
        update(GiftCard).execution_options(synchronize_session=False)
        .where(GiftCard.gan == gan,
               GiftCard.redeemed == False,
               GiftCard.balance_cents >= amount_cents)
        .values(balance_cents=GiftCard.balance_cents - amount_cents,
                redeemed=True,
                redeemed_at=utcnow())
    )
    await db.commit()
    return result.rowcount == 1
