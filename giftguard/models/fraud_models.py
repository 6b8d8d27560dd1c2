# giftguard/models/fraud_models.py
"""
FraudSignal: the append-only log of redemption attempts.

Rows are written once by the detection engine and never updated or deleted;
clustering and replay read them back.
"""
import uuid
from sqlalchemy import Column, String, DateTime, Boolean, Text, Uuid, Index
from giftguard.models.base import Base, utcnow


class FraudSignal(Base):
    __tablename__ = "fraud_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ip_address = Column(String(64), nullable=False, default="unknown", index=True)
    gan = Column(String(64), nullable=True, index=True)
    merchant_id = Column(String(64), nullable=True, index=True)
    device_fingerprint = Column(String(255), nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    failure_reason = Column(String(255), nullable=True)
    severity = Column(String(10), default="low", nullable=False)
    blocked = Column(Boolean, default=False, nullable=False)
    # What made the block; replay uses these to spot blocks an admin later lifted.
    matched_rule_id = Column(Uuid, nullable=True)
    matched_action_id = Column(Uuid, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_fraud_logs_ip_created", "ip_address", "created_at"),
    )
