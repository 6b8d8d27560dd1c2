# giftguard/services/detector/schemas/__init__.py

from .fraud import (
    BLOCKED_MESSAGE,
    RedemptionAttempt,
    RedemptionCheckRequest,
    RedemptionRequest,
    RedemptionCheckResponse,
    RedemptionResult,
    FraudCheckResult,
    FraudSignalCreate,
    FraudSignalResponse,
    FailureReasonCount,
    FraudStatistics,
)
from .defense import (
    ACTION_TYPES,
    AutoDefenseRuleCreate,
    AutoDefenseRuleResponse,
    DefenseRuleStats,
    ActionCondition,
    ActionRuleCreate,
    ActionRuleUpdate,
    ActionRuleResponse,
    ActionMetadata,
    DefenseActionCreate,
    DefenseActionResponse,
    DefenseHistoryResponse,
    DefenseStats,
    ExpireResult,
    DeactivateResult,
)
from .cluster import (
    IpRepeatDetail,
    SubnetDetail,
    DeviceRepeatDetail,
    GanTargetingDetail,
    VelocityDetail,
    UserAgentDetail,
    ClusterMetadata,
    ClusterPatternCreate,
    ClusterPatternResponse,
    FraudClusterCreate,
    FraudClusterResponse,
    FraudClusterDetail,
    ClusterAnalysisResult,
    FraudClusterStats,
)
from .replay import SuggestedRule, ThreatReplayReport, ReplaySummary, LearningResult, ThreatReplayResponse
