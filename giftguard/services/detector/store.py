# giftguard/services/detector/store.py
"""
FraudStore: the storage collaborator handed to every engine.

Each call opens its own session from the injected factory, runs one crud
function under a timeout and turns driver-level failures into StorageError,
so engines only ever have to reason about a single infrastructure error type.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftguard.common.errors import ConflictError, StorageError
from giftguard.services.detector import crud

logger = logging.getLogger(__name__)


class FraudStore:
    def __init__(self, session_factory: async_sessionmaker, timeout_seconds: Optional[float] = None):
        self.session_factory = session_factory
        self.timeout_seconds = timeout_seconds

    async def _run(self, op: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        async def call():
            async with self.session_factory() as session:
                return await op(session, *args, **kwargs)

        try:
            if self.timeout_seconds:
                return await asyncio.wait_for(call(), timeout=self.timeout_seconds)
            return await call()
        except asyncio.TimeoutError as e:
            raise StorageError(f"{op.__name__} timed out after {self.timeout_seconds}s") from e
        except IntegrityError as e:
            raise ConflictError(f"{op.__name__} conflicts with an existing row: {e.orig}") from e
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"{op.__name__} failed: {e}") from e

    # Fraud logs
    async def create_fraud_log(self, signal_data):
        return await self._run(crud.create_fraud_log, signal_data)

    async def get_fraud_logs_by_ip(self, ip_address, window_minutes, as_of=None):
        return await self._run(crud.get_fraud_logs_by_ip, ip_address, window_minutes, as_of)

    async def count_fraud_logs_by_ip(self, ip_address, window_minutes, as_of=None):
        return await self._run(crud.count_fraud_logs_by_ip, ip_address, window_minutes, as_of)

    async def get_fraud_logs_by_gan(self, gan):
        return await self._run(crud.get_fraud_logs_by_gan, gan)

    async def get_fraud_logs_by_merchant(self, merchant_id, window_minutes, as_of=None):
        return await self._run(crud.get_fraud_logs_by_merchant, merchant_id, window_minutes, as_of)

    async def count_fraud_logs_by_merchant(self, merchant_id, window_minutes, as_of=None):
        return await self._run(crud.count_fraud_logs_by_merchant, merchant_id, window_minutes, as_of)

    async def get_recent_fraud_logs(self, limit=100):
        return await self._run(crud.get_recent_fraud_logs, limit)

    async def get_fraud_logs_since(self, since, limit=1000):
        return await self._run(crud.get_fraud_logs_since, since, limit)

    # Auto defense rules
    async def create_auto_defense_rule(self, rule_data):
        return await self._run(crud.create_auto_defense_rule, rule_data)

    async def get_auto_defense_rules(self, active_only=False):
        return await self._run(crud.get_auto_defense_rules, active_only)

    async def get_auto_defense_rules_by_type(self, rule_type):
        return await self._run(crud.get_auto_defense_rules_by_type, rule_type)

    async def update_auto_defense_rule_hit_count(self, rule_id):
        return await self._run(crud.update_auto_defense_rule_hit_count, rule_id)

    async def get_auto_defense_rule_by_id(self, rule_id):
        return await self._run(crud.get_auto_defense_rule_by_id, rule_id)

    async def deactivate_auto_defense_rule(self, rule_id):
        return await self._run(crud.deactivate_auto_defense_rule, rule_id)

    async def check_auto_defense_rule(self, rule_type, value):
        return await self._run(crud.check_auto_defense_rule, rule_type, value)

    # Clusters
    async def create_fraud_cluster(self, cluster_data):
        return await self._run(crud.create_fraud_cluster, cluster_data)

    async def get_fraud_clusters(self, limit=50):
        return await self._run(crud.get_fraud_clusters, limit)

    async def get_fraud_cluster_by_id(self, cluster_id):
        return await self._run(crud.get_fraud_cluster_by_id, cluster_id)

    async def get_cluster_patterns(self, cluster_id):
        return await self._run(crud.get_cluster_patterns, cluster_id)

    async def add_cluster_pattern(self, cluster_id, pattern):
        return await self._run(crud.add_cluster_pattern, cluster_id, pattern)

    async def fraud_cluster_exists(self, fingerprint):
        return await self._run(crud.fraud_cluster_exists, fingerprint)

    async def get_fraud_cluster_stats(self):
        return await self._run(crud.get_fraud_cluster_stats)

    # Defense actions
    async def create_defense_action(self, action_type, target_value, name, **kwargs):
        return await self._run(crud.create_defense_action, action_type, target_value, name, **kwargs)

    async def get_active_defense_actions(self):
        return await self._run(crud.get_active_defense_actions)

    async def get_defense_actions_by_type(self, action_type):
        return await self._run(crud.get_defense_actions_by_type, action_type)

    async def get_blocking_defense_action(self, target_value, action_type, now=None):
        return await self._run(crud.get_blocking_defense_action, target_value, action_type, now)

    async def is_target_blocked(self, target_value, action_type, now=None):
        return await self._run(crud.is_target_blocked, target_value, action_type, now)

    async def expire_defense_actions(self, now=None):
        return await self._run(crud.expire_defense_actions, now)

    async def get_defense_action_by_id(self, action_id):
        return await self._run(crud.get_defense_action_by_id, action_id)

    async def deactivate_defense_action(self, action_id):
        return await self._run(crud.deactivate_defense_action, action_id)

    # Action rules
    async def get_action_rules(self):
        return await self._run(crud.get_action_rules)

    async def get_active_action_rules(self):
        return await self._run(crud.get_active_action_rules)

    async def get_action_rule_by_id(self, rule_id):
        return await self._run(crud.get_action_rule_by_id, rule_id)

    async def get_action_rule_by_name(self, name):
        return await self._run(crud.get_action_rule_by_name, name)

    async def create_action_rule(self, rule_data):
        return await self._run(crud.create_action_rule, rule_data)

    async def update_action_rule(self, rule_id, rule_data):
        return await self._run(crud.update_action_rule, rule_id, rule_data)

    async def delete_action_rule(self, rule_id):
        return await self._run(crud.delete_action_rule, rule_id)

    async def record_action_rule_trigger(self, rule_id):
        return await self._run(crud.record_action_rule_trigger, rule_id)

    # History and stats
    async def create_defense_history(self, result, **kwargs):
        return await self._run(crud.create_defense_history, result, **kwargs)

    async def get_defense_history(self, limit=100):
        return await self._run(crud.get_defense_history, limit)

    async def get_defended_cluster_ids(self, cluster_ids):
        return await self._run(crud.get_defended_cluster_ids, cluster_ids)

    async def get_defense_stats(self):
        return await self._run(crud.get_defense_stats)

    # Gift cards
    async def create_gift_card(self, gan, balance_cents, merchant_id=None):
        return await self._run(crud.create_gift_card, gan, balance_cents, merchant_id)

    async def get_gift_card_by_gan(self, gan):
        return await self._run(crud.get_gift_card_by_gan, gan)

    async def is_gift_card_redeemed(self, gan):
        return await self._run(crud.is_gift_card_redeemed, gan)

    async def redeem_gift_card(self, gan, amount_cents):
        return await self._run(crud.redeem_gift_card, gan, amount_cents)
