# giftguard/services/auto_defense/action_layer.py
import logging
from datetime import timedelta
from typing import Optional
import uuid

from giftguard.common.errors import InvalidDefenseActionError
from giftguard.models.base import utcnow
from giftguard.services.detector.schemas import ACTION_TYPES, ActionMetadata
from giftguard.services.detector.store import FraudStore

logger = logging.getLogger(__name__)


class DefenseActionLayer:
    """The single place that answers "is this target blocked right now"."""

    def __init__(self, store: FraudStore):
        self.store = store

    async def is_target_blocked(self, target_value: str, action_type: str) -> bool:
        if action_type not in ACTION_TYPES:
            raise InvalidDefenseActionError(f"Unknown action type: {action_type}")
        return await self.store.is_target_blocked(target_value, action_type, now=utcnow())

    async def block_target(self, action_type: str, target_value: str, severity: int = 5,
                           triggered_by: str = "manual", expires_in: Optional[timedelta] = None,
                           metadata: Optional[ActionMetadata] = None, name: Optional[str] = None):
        if action_type not in ACTION_TYPES:
            raise InvalidDefenseActionError(f"Unknown action type: {action_type}")
        if not target_value or target_value == "unknown":
            raise InvalidDefenseActionError(f"Cannot {action_type} an empty or unknown target")

        expires_at = utcnow() + expires_in if expires_in is not None else None
        action = await self.store.create_defense_action(
            action_type,
            target_value,
            name or f"{action_type} {target_value}",
            severity=severity,
            expires_at=expires_at,
            triggered_by=triggered_by,
            metadata=metadata or ActionMetadata(),
        )
        logger.info(f"Defense action {action.id}: {action_type} {target_value} until {expires_at or 'revoked'}")
        return action

    async def deactivate(self, action_id: uuid.UUID) -> bool:
        deactivated = await self.store.deactivate_defense_action(action_id)
        if deactivated:
            logger.info(f"Defense action {action_id} deactivated")
        return deactivated

    async def expire_defense_actions(self) -> int:
        expired = await self.store.expire_defense_actions(now=utcnow())
        if expired:
            logger.info(f"Expired {expired} defense actions")
        return expired

    async def get_active_defense_actions(self):
        return await self.store.get_active_defense_actions()
