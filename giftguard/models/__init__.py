# giftguard/models/__init__.py
# For convenient imports like `from giftguard.models import FraudSignal`
from .base import Base
from .fraud_models import FraudSignal
from .giftcard_models import GiftCard
from .defense_models import (
    AutoDefenseRule,
    FraudCluster,
    ClusterPattern,
    DefenseAction,
    ActionRule,
    DefenseHistory,
)
