# giftguard/services/detector/schemas/defense.py

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Dict, Literal, Union
from datetime import datetime
import uuid

RuleType = Literal["ip", "device", "gan", "velocity"]
RuleSource = Literal["manual", "replay", "cluster"]
ActionType = Literal["block_ip", "block_device", "block_gan"]

ACTION_TYPES = ("block_ip", "block_device", "block_gan")


class AutoDefenseRuleCreate(BaseModel):
    type: RuleType
    value: str = Field(..., min_length=1, max_length=255)
    reason: Optional[str] = None
    confidence: int = Field(100, ge=0, le=100)
    source: RuleSource = "manual"

    @model_validator(mode="after")
    def check_velocity_value(self):
        # Velocity rules carry a per-IP attempt threshold instead of a target.
        if self.type == "velocity" and not (self.value.isdigit() and int(self.value) > 0):
            raise ValueError("velocity rule value must be a positive integer")
        return self


class AutoDefenseRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: RuleType
    value: str
    reason: Optional[str] = None
    confidence: int
    source: str
    is_active: bool
    hit_count: int
    last_triggered: Optional[datetime] = None
    created_at: datetime


class DefenseRuleStats(BaseModel):
    total_rules: int
    active_rules: int
    rules_by_type: Dict[str, int]
    recent_triggers: int
    average_confidence: float


class ActionCondition(BaseModel):
    field: Literal["severity", "score", "threat_count", "pattern_type"]
    operator: Literal["gte", "gt", "eq", "contains"]
    value: Union[int, float, str]


class ActionRuleCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=100)
    description: Optional[str] = None
    condition: ActionCondition
    action_type: ActionType
    severity: int = Field(5, ge=1, le=10)
    is_active: bool = True


class ActionRuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = None
    condition: Optional[ActionCondition] = None
    action_type: Optional[ActionType] = None
    severity: Optional[int] = Field(None, ge=1, le=10)
    is_active: Optional[bool] = None


class ActionRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: Optional[str] = None
    condition: ActionCondition
    action_type: ActionType
    severity: int
    is_active: bool
    trigger_count: int
    last_triggered: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ActionMetadata(BaseModel):
    source: Literal["manual", "cluster", "action_rule"] = "manual"
    cluster_id: Optional[uuid.UUID] = None
    rule_id: Optional[uuid.UUID] = None
    action_rule_id: Optional[uuid.UUID] = None
    pattern_type: Optional[str] = None
    reason: Optional[str] = None


class DefenseActionCreate(BaseModel):
    action_type: ActionType
    target_value: str = Field(..., min_length=1, max_length=255)
    name: Optional[str] = Field(None, max_length=255)
    severity: int = Field(5, ge=1, le=10)
    expires_in_hours: Optional[float] = Field(None, gt=0)
    triggered_by: str = "manual"
    reason: Optional[str] = None


class DefenseActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    action_type: ActionType
    target_value: str
    severity: int
    is_active: bool
    expires_at: Optional[datetime] = None
    triggered_by: Optional[str] = None
    metadata: Optional[ActionMetadata] = Field(
        None, validation_alias=AliasChoices("action_metadata", "metadata")
    )
    created_at: datetime


class DefenseHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    action_id: Optional[uuid.UUID] = None
    cluster_id: Optional[uuid.UUID] = None
    rule_id: Optional[uuid.UUID] = None
    action_rule_id: Optional[uuid.UUID] = None
    result: str
    details: Optional[str] = None
    created_at: datetime


class DefenseStats(BaseModel):
    total_actions: int
    active_actions: int
    actions_by_type: Dict[str, int]
    total_rules: int
    active_rules: int
    active_action_rules: int
    history_last_24h: int


class ExpireResult(BaseModel):
    expired: int


class DeactivateResult(BaseModel):
    id: uuid.UUID
    deactivated: bool
