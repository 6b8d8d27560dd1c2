# giftguard/services/detector/api/admin.py

from fastapi import APIRouter, Depends, HTTPException, Query, status
from datetime import timedelta
import logging
import uuid
from typing import List

from giftguard.services.detector.schemas import (
    ActionMetadata,
    ActionRuleCreate,
    ActionRuleResponse,
    ActionRuleUpdate,
    AutoDefenseRuleCreate,
    AutoDefenseRuleResponse,
    ClusterAnalysisResult,
    ClusterPatternResponse,
    DeactivateResult,
    DefenseActionCreate,
    DefenseActionResponse,
    DefenseHistoryResponse,
    DefenseRuleStats,
    DefenseStats,
    ExpireResult,
    FraudClusterDetail,
    FraudClusterResponse,
    FraudClusterStats,
    FraudSignalResponse,
    FraudStatistics,
    ThreatReplayResponse,
)
from giftguard.common.errors import ConflictError
from giftguard.services.detector.dependencies import (
    get_api_key,
    get_detection_engine,
    get_pipeline,
    get_store,
)
from giftguard.services.detector.store import FraudStore
from giftguard.services.defense_worker.pipeline import DefensePipeline, MAX_REPLAY_LIMIT
from giftguard.services.fraud_engine.detection_engine import FraudDetectionEngine
from giftguard.services.auto_defense.action_rules import create_default_action_rules

LOG = logging.getLogger("giftguard.api.admin")

router = APIRouter(dependencies=[Depends(get_api_key)])

# ----------------------
# Fraud logs
# ----------------------
@router.get("/fraud-logs", response_model=List[FraudSignalResponse])
async def list_fraud_logs(limit: int = Query(100, ge=1, le=1000), store: FraudStore = Depends(get_store)):
    return await store.get_recent_fraud_logs(limit)

@router.get("/fraud-logs/statistics", response_model=FraudStatistics)
async def fraud_statistics(engine: FraudDetectionEngine = Depends(get_detection_engine)):
    return await engine.get_fraud_statistics()

# ----------------------
# Batch jobs
# ----------------------
@router.post("/threat-replay", response_model=ThreatReplayResponse)
async def run_threat_replay(
    limit: int = Query(100, ge=1, le=MAX_REPLAY_LIMIT),
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    """
    Replays recent fraud signals against the current rules, then feeds the
    still-missed ones to the learning loop.
    """
    return await pipeline.run_threat_replay(limit)

@router.post("/threat-analysis", response_model=ClusterAnalysisResult)
async def run_threat_analysis(pipeline: DefensePipeline = Depends(get_pipeline)):
    return await pipeline.run_cluster_analysis()

# ----------------------
# Clusters
# ----------------------
@router.get("/clusters", response_model=List[FraudClusterResponse])
async def list_clusters(limit: int = Query(50, ge=1, le=500), store: FraudStore = Depends(get_store)):
    return await store.get_fraud_clusters(limit)

@router.get("/clusters/stats", response_model=FraudClusterStats)
async def cluster_stats(store: FraudStore = Depends(get_store)):
    return await store.get_fraud_cluster_stats()

@router.get("/clusters/{cluster_id}", response_model=FraudClusterDetail)
async def get_cluster(cluster_id: uuid.UUID, store: FraudStore = Depends(get_store)):
    cluster = await store.get_fraud_cluster_by_id(cluster_id)
    if not cluster:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cluster not found")
    patterns = await store.get_cluster_patterns(cluster_id)
    return FraudClusterDetail(
        cluster=FraudClusterResponse.model_validate(cluster),
        patterns=[ClusterPatternResponse.model_validate(p) for p in patterns],
    )

# ----------------------
# Auto defense rules
# ----------------------
@router.get("/defense-rules", response_model=List[AutoDefenseRuleResponse])
async def list_defense_rules(active_only: bool = False, store: FraudStore = Depends(get_store)):
    return await store.get_auto_defense_rules(active_only)

@router.get("/defense-rules/stats", response_model=DefenseRuleStats)
async def defense_rule_stats(pipeline: DefensePipeline = Depends(get_pipeline)):
    return await pipeline.defense_engine.get_defense_statistics()

@router.post("/defense-rules", response_model=AutoDefenseRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_defense_rule(rule_data: AutoDefenseRuleCreate, store: FraudStore = Depends(get_store)):
    existing = await store.check_auto_defense_rule(rule_data.type, rule_data.value)
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="An active rule for this value already exists")
    rule = await store.create_auto_defense_rule(rule_data)
    LOG.info(f"Manual {rule.type} rule {rule.id} created for {rule.value}")
    return rule

@router.post("/defense-rules/{rule_id}/deactivate", response_model=DeactivateResult)
async def deactivate_defense_rule(rule_id: uuid.UUID, store: FraudStore = Depends(get_store)):
    if not await store.get_auto_defense_rule_by_id(rule_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    deactivated = await store.deactivate_auto_defense_rule(rule_id)
    return DeactivateResult(id=rule_id, deactivated=deactivated)

# ----------------------
# Defense actions
# ----------------------
@router.get("/defense-actions", response_model=List[DefenseActionResponse])
async def list_defense_actions(pipeline: DefensePipeline = Depends(get_pipeline)):
    return await pipeline.action_layer.get_active_defense_actions()

@router.post("/defense-actions", response_model=DefenseActionResponse, status_code=status.HTTP_201_CREATED)
async def create_defense_action(action_data: DefenseActionCreate, pipeline: DefensePipeline = Depends(get_pipeline)):
    expires_in = timedelta(hours=action_data.expires_in_hours) if action_data.expires_in_hours else None
    return await pipeline.action_layer.block_target(
        action_data.action_type,
        action_data.target_value,
        severity=action_data.severity,
        triggered_by=action_data.triggered_by,
        expires_in=expires_in,
        metadata=ActionMetadata(source="manual", reason=action_data.reason),
        name=action_data.name,
    )

@router.post("/defense-actions/expire", response_model=ExpireResult)
async def expire_defense_actions(pipeline: DefensePipeline = Depends(get_pipeline)):
    return ExpireResult(expired=await pipeline.sweep_expired_actions())

@router.post("/defense-actions/{action_id}/deactivate", response_model=DeactivateResult)
async def deactivate_defense_action(action_id: uuid.UUID, store: FraudStore = Depends(get_store),
                                    pipeline: DefensePipeline = Depends(get_pipeline)):
    if not await store.get_defense_action_by_id(action_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Defense action not found")
    return DeactivateResult(id=action_id, deactivated=await pipeline.action_layer.deactivate(action_id))

# ----------------------
# Action rules
# ----------------------
@router.get("/action-rules", response_model=List[ActionRuleResponse])
async def list_action_rules(store: FraudStore = Depends(get_store)):
    return await store.get_action_rules()

@router.post("/action-rules", response_model=ActionRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_action_rule(rule_data: ActionRuleCreate, store: FraudStore = Depends(get_store)):
    if await store.get_action_rule_by_name(rule_data.name):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Action rule name already in use")
    return await store.create_action_rule(rule_data)

@router.post("/action-rules/defaults", response_model=List[ActionRuleResponse])
async def seed_default_action_rules(store: FraudStore = Depends(get_store)):
    return await create_default_action_rules(store)

@router.patch("/action-rules/{rule_id}", response_model=ActionRuleResponse)
async def update_action_rule(rule_id: uuid.UUID, rule_data: ActionRuleUpdate,
                             store: FraudStore = Depends(get_store)):
    try:
        rule = await store.update_action_rule(rule_id, rule_data)
    except ConflictError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Action rule name already in use")
    if not rule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Action rule not found")
    return rule

@router.delete("/action-rules/{rule_id}", response_model=DeactivateResult)
async def delete_action_rule(rule_id: uuid.UUID, store: FraudStore = Depends(get_store)):
    if not await store.get_action_rule_by_id(rule_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Action rule not found")
    return DeactivateResult(id=rule_id, deactivated=await store.delete_action_rule(rule_id))

# ----------------------
# History and stats
# ----------------------
@router.get("/defense-history", response_model=List[DefenseHistoryResponse])
async def defense_history(limit: int = Query(100, ge=1, le=1000), store: FraudStore = Depends(get_store)):
    return await store.get_defense_history(limit)

@router.get("/defense-stats", response_model=DefenseStats)
async def defense_stats(store: FraudStore = Depends(get_store)):
    return await store.get_defense_stats()
