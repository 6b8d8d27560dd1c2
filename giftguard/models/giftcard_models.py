# giftguard/models/giftcard_models.py
from sqlalchemy import Column, String, DateTime, Boolean, Integer
from giftguard.models.base import Base, utcnow


class GiftCard(Base):
    __tablename__ = "gift_cards"

    gan = Column(String(64), primary_key=True)
    balance_cents = Column(Integer, nullable=False, default=0)
    redeemed = Column(Boolean, default=False, nullable=False)
    redeemed_at = Column(DateTime, nullable=True)
    merchant_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
