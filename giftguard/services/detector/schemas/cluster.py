# giftguard/services/detector/schemas/cluster.py
"""
Cluster schemas. Pattern details are a tagged union keyed by ``kind`` so the
JSON stored alongside a cluster is validated on the way in and out.
"""
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Annotated, Optional, List, Dict, Literal, Union
from datetime import datetime
import uuid

PatternType = Literal["ip_repeat", "device_repeat", "gan_targeting", "subnet_repeat", "velocity", "user_agent"]


class IpRepeatDetail(BaseModel):
    kind: Literal["ip_repeat"] = "ip_repeat"
    ip_address: str
    attempts: int


class SubnetDetail(BaseModel):
    kind: Literal["subnet"] = "subnet"
    subnet: str
    attempts: int
    unique_ips: int


class DeviceRepeatDetail(BaseModel):
    kind: Literal["device_repeat"] = "device_repeat"
    device_fingerprint: str
    attempts: int
    unique_ips: int


class GanTargetingDetail(BaseModel):
    kind: Literal["gan_targeting"] = "gan_targeting"
    gan: str
    failed_attempts: int
    unique_ips: int


class VelocityDetail(BaseModel):
    kind: Literal["velocity"] = "velocity"
    window_start: datetime
    window_seconds: int
    attempts: int
    unique_ips: int


class UserAgentDetail(BaseModel):
    kind: Literal["user_agent"] = "user_agent"
    signature: str
    sample_user_agent: str
    attempts: int
    unique_ips: int


PatternDetail = Annotated[
    Union[IpRepeatDetail, SubnetDetail, DeviceRepeatDetail, GanTargetingDetail, VelocityDetail, UserAgentDetail],
    Field(discriminator="kind"),
]


class ClusterMetadata(BaseModel):
    signal_ids: List[uuid.UUID]
    time_span_seconds: float
    unique_ips: int
    unique_devices: int
    blocked_ratio: float
    failure_reasons: List[str] = []
    primary_target: str


class ClusterPatternCreate(BaseModel):
    pattern_value: str
    description: str
    match_count: int = Field(..., ge=1)
    detail: PatternDetail


class ClusterPatternResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    cluster_id: uuid.UUID
    pattern_value: str
    description: str
    match_count: int
    pattern_detail: Optional[PatternDetail] = None
    created_at: datetime


class FraudClusterCreate(BaseModel):
    pattern_type: PatternType
    label: str
    severity: int = Field(..., ge=1, le=10)
    score: float
    threat_count: int = Field(..., ge=1)
    fingerprint: str
    metadata: ClusterMetadata
    patterns: List[ClusterPatternCreate] = Field(..., min_length=1)


class FraudClusterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    pattern_type: PatternType
    label: str
    severity: int
    score: float
    threat_count: int
    fingerprint: str
    # ORM attribute is cluster_metadata; Base.metadata would shadow "metadata".
    metadata: Optional[ClusterMetadata] = Field(
        None, validation_alias=AliasChoices("cluster_metadata", "metadata")
    )
    created_at: datetime


class FraudClusterDetail(BaseModel):
    cluster: FraudClusterResponse
    patterns: List[ClusterPatternResponse]


class ClusterAnalysisResult(BaseModel):
    clusters_found: int
    threats_analyzed: int
    actions_created: int = 0
    clusters: List[FraudClusterResponse] = []


class FraudClusterStats(BaseModel):
    total_clusters: int
    recent_clusters: int
    avg_severity: float
    pattern_types: Dict[str, int]
