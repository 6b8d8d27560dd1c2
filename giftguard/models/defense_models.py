# giftguard/models/defense_models.py
"""
Defense-side ORM models: learned rules, clusters, time-bound actions,
admin-configured action rules and the provenance history tying them together.
"""
import uuid
from sqlalchemy import Column, String, DateTime, Boolean, Text, Integer, Float, ForeignKey, Uuid, Index
from sqlalchemy.orm import relationship
from giftguard.models.base import Base, JSONType, utcnow


class AutoDefenseRule(Base):
    __tablename__ = "auto_defense_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type = Column(String(20), nullable=False)  # ip | device | gan | velocity
    value = Column(String(255), nullable=False)
    reason = Column(Text, nullable=True)
    confidence = Column(Integer, default=100, nullable=False)
    source = Column(String(20), default="manual", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    hit_count = Column(Integer, default=0, nullable=False)
    last_triggered = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_auto_defense_rules_type_value", "type", "value"),
    )


class FraudCluster(Base):
    __tablename__ = "fraud_clusters"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    pattern_type = Column(String(30), nullable=False, index=True)
    label = Column(String(255), nullable=False)
    severity = Column(Integer, nullable=False)
    score = Column(Float, nullable=False)
    threat_count = Column(Integer, nullable=False)
    fingerprint = Column(String(64), nullable=False, index=True)
    cluster_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    patterns = relationship("ClusterPattern", back_populates="cluster", lazy="raise")


class ClusterPattern(Base):
    __tablename__ = "cluster_patterns"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    cluster_id = Column(Uuid, ForeignKey("fraud_clusters.id"), nullable=False, index=True)
    pattern_value = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    match_count = Column(Integer, nullable=False)
    pattern_detail = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    cluster = relationship("FraudCluster", back_populates="patterns", lazy="raise")


class DefenseAction(Base):
    __tablename__ = "defense_actions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    action_type = Column(String(20), nullable=False)  # block_ip | block_device | block_gan
    target_value = Column(String(255), nullable=False)
    severity = Column(Integer, default=5, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime, nullable=True)
    triggered_by = Column(String(255), nullable=True)
    action_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_defense_actions_target", "action_type", "target_value", "is_active"),
    )


class ActionRule(Base):
    __tablename__ = "action_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    condition = Column(JSONType, nullable=False)
    action_type = Column(String(20), nullable=False)
    severity = Column(Integer, default=5, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    trigger_count = Column(Integer, default=0, nullable=False)
    last_triggered = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class DefenseHistory(Base):
    __tablename__ = "defense_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    action_id = Column(Uuid, ForeignKey("defense_actions.id"), nullable=True)
    cluster_id = Column(Uuid, ForeignKey("fraud_clusters.id"), nullable=True)
    rule_id = Column(Uuid, ForeignKey("auto_defense_rules.id"), nullable=True)
    action_rule_id = Column(Uuid, ForeignKey("action_rules.id"), nullable=True)
    result = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
