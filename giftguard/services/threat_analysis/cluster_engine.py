# giftguard/services/threat_analysis/cluster_engine.py
"""
Threat Cluster Engine.

Stateless batch job: reads the recent fraud-log window, groups signals that
share an IP, a /24 subnet, a device fingerprint, a targeted GAN or a
user-agent signature, plus bursts of failures from several IPs, and writes
one FraudCluster (plus its ClusterPattern rows) per qualifying group.

Runs do not dedupe against earlier clusters unless ``cluster_dedupe`` is set;
every cluster still carries a content fingerprint so duplicates can be found.
"""
import hashlib
import ipaddress
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from giftguard.common.config import DefenseConfig
from giftguard.common.errors import StorageError
from giftguard.models.base import utcnow
from giftguard.services.detector.schemas import (
    ClusterAnalysisResult,
    ClusterMetadata,
    ClusterPatternCreate,
    DeviceRepeatDetail,
    FraudClusterCreate,
    FraudClusterResponse,
    GanTargetingDetail,
    IpRepeatDetail,
    SubnetDetail,
    UserAgentDetail,
    VelocityDetail,
)
from giftguard.services.detector.store import FraudStore

logger = logging.getLogger(__name__)


@dataclass
class ClusterCandidate:
    pattern_type: str
    primary_target: str
    label: str
    signals: list
    patterns: List[ClusterPatternCreate] = field(default_factory=list)


def subnet_of(ip: str) -> Optional[str]:
    """The /24 network of an IPv4 address, or None for anything else."""
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return None
    if address.version != 4:
        return None
    return str(ipaddress.ip_network(f"{ip}/24", strict=False))


def user_agent_signature(user_agent: str) -> str:
    """Version numbers and spacing stripped, so one tool across releases hashes alike."""
    simplified = re.sub(r"\s+", " ", re.sub(r"[\d.]+", "X", user_agent)).strip().lower()
    return hashlib.md5(simplified.encode("utf-8")).hexdigest()[:12]


def known_ips(signals) -> set:
    return {s.ip_address for s in signals if s.ip_address and s.ip_address != "unknown"}


def is_failed(signal) -> bool:
    return bool(signal.blocked or signal.failure_reason)


def cluster_fingerprint(pattern_type: str, signal_ids) -> str:
    members = ",".join(sorted(str(signal_id) for signal_id in signal_ids))
    return hashlib.sha256(f"{pattern_type}:{members}".encode("utf-8")).hexdigest()


def severity_score(size: int, blocked_ratio: float, threshold: int) -> float:
    # Size saturates at four times the trigger threshold.
    size_factor = min(size / float(threshold * 4), 1.0)
    return 1.0 + 4.5 * size_factor + 4.5 * blocked_ratio


def severity_from_score(score: float) -> int:
    return max(1, min(10, int(round(score))))


class ThreatClusterEngine:
    def __init__(self, store: FraudStore, config: DefenseConfig, alert_publisher=None):
        self.store = store
        self.config = config
        self.alert_publisher = alert_publisher

    def _threshold_for(self, pattern_type: str) -> int:
        return {
            "ip_repeat": self.config.ip_cluster_threshold,
            "device_repeat": self.config.device_cluster_threshold,
            "gan_targeting": self.config.gan_cluster_threshold,
            "subnet_repeat": self.config.subnet_cluster_threshold,
            "velocity": self.config.velocity_cluster_threshold,
            "user_agent": self.config.user_agent_cluster_threshold,
        }[pattern_type]

    def find_candidates(self, signals) -> List[ClusterCandidate]:
        by_ip: Dict[str, list] = defaultdict(list)
        by_subnet: Dict[str, list] = defaultdict(list)
        by_device: Dict[str, list] = defaultdict(list)
        failed_by_gan: Dict[str, list] = defaultdict(list)
        failed_by_agent: Dict[str, list] = defaultdict(list)
        failed = []

        for signal in signals:
            if signal.ip_address and signal.ip_address != "unknown":
                by_ip[signal.ip_address].append(signal)
                subnet = subnet_of(signal.ip_address)
                if subnet:
                    by_subnet[subnet].append(signal)
            if signal.device_fingerprint:
                by_device[signal.device_fingerprint].append(signal)
            # Only failures count; a legitimate retry that succeeds is not targeting.
            if not is_failed(signal):
                continue
            failed.append(signal)
            if signal.gan:
                failed_by_gan[signal.gan].append(signal)
            if signal.user_agent:
                failed_by_agent[user_agent_signature(signal.user_agent)].append(signal)

        candidates = []
        for ip, group in by_ip.items():
            if len(group) < self.config.ip_cluster_threshold:
                continue
            patterns = [ClusterPatternCreate(
                pattern_value=ip,
                description=f"Repeated attempts from IP {ip}",
                match_count=len(group),
                detail=IpRepeatDetail(ip_address=ip, attempts=len(group)),
            )]
            subnet = subnet_of(ip)
            if subnet:
                subnet_members = by_subnet[subnet]
                patterns.append(ClusterPatternCreate(
                    pattern_value=subnet,
                    description=f"IP subnet {subnet}",
                    match_count=len(subnet_members),
                    detail=SubnetDetail(
                        subnet=subnet,
                        attempts=len(subnet_members),
                        unique_ips=len({s.ip_address for s in subnet_members}),
                    ),
                ))
            candidates.append(ClusterCandidate(
                pattern_type="ip_repeat",
                primary_target=ip,
                label=f"IP Repeat: {len(group)} attempts from {ip}",
                signals=group,
                patterns=patterns,
            ))

        for subnet, group in by_subnet.items():
            unique_ips = {s.ip_address for s in group}
            if len(group) < self.config.subnet_cluster_threshold or len(unique_ips) < 2:
                continue
            candidates.append(ClusterCandidate(
                pattern_type="subnet_repeat",
                primary_target=subnet,
                label=f"Subnet Activity: {len(group)} attempts from {len(unique_ips)} IPs in {subnet}",
                signals=group,
                patterns=[ClusterPatternCreate(
                    pattern_value=subnet,
                    description=f"IP subnet {subnet}",
                    match_count=len(group),
                    detail=SubnetDetail(subnet=subnet, attempts=len(group), unique_ips=len(unique_ips)),
                )],
            ))

        for device, group in by_device.items():
            if len(group) < self.config.device_cluster_threshold:
                continue
            unique_ips = len({s.ip_address for s in group})
            candidates.append(ClusterCandidate(
                pattern_type="device_repeat",
                primary_target=device,
                label=f"Device Repeat: {len(group)} attempts from one device across {unique_ips} IPs",
                signals=group,
                patterns=[ClusterPatternCreate(
                    pattern_value=device,
                    description=f"Repeated attempts from device {device}",
                    match_count=len(group),
                    detail=DeviceRepeatDetail(device_fingerprint=device, attempts=len(group), unique_ips=unique_ips),
                )],
            ))

        for gan, group in failed_by_gan.items():
            if len(group) < self.config.gan_cluster_threshold:
                continue
            unique_ips = len({s.ip_address for s in group})
            candidates.append(ClusterCandidate(
                pattern_type="gan_targeting",
                primary_target=gan,
                label=f"GAN Targeting: {len(group)} failed attempts on {gan}",
                signals=group,
                patterns=[ClusterPatternCreate(
                    pattern_value=gan,
                    description=f"Repeated failed attempts on gift card {gan}",
                    match_count=len(group),
                    detail=GanTargetingDetail(gan=gan, failed_attempts=len(group), unique_ips=unique_ips),
                )],
            ))

        for signature, group in failed_by_agent.items():
            if len(group) < self.config.user_agent_cluster_threshold:
                continue
            unique_ips = len({s.ip_address for s in group})
            sample = group[0].user_agent
            candidates.append(ClusterCandidate(
                pattern_type="user_agent",
                primary_target=signature,
                label=f"User Agent Pattern: {len(group)} failed attempts sharing agent {signature}",
                signals=group,
                patterns=[ClusterPatternCreate(
                    pattern_value=signature,
                    description=f"Repeated failed attempts from user agent {sample[:80]}",
                    match_count=len(group),
                    detail=UserAgentDetail(signature=signature, sample_user_agent=sample,
                                           attempts=len(group), unique_ips=unique_ips),
                )],
            ))

        candidates.extend(self._velocity_candidates(failed))
        return candidates

    def _velocity_candidates(self, failed) -> List[ClusterCandidate]:
        # Bursts from a single IP are already covered by ip_repeat.
        window = timedelta(minutes=self.config.velocity_cluster_window_minutes)
        window_minutes = self.config.velocity_cluster_window_minutes
        ordered = sorted(failed, key=lambda s: s.created_at)
        candidates = []
        i = 0
        while i < len(ordered):
            j = i
            while j + 1 < len(ordered) and ordered[j + 1].created_at - ordered[i].created_at <= window:
                j += 1
            group = ordered[i:j + 1]
            ips = known_ips(group)
            if len(group) < self.config.velocity_cluster_threshold or len(ips) < 2:
                i += 1
                continue
            start = group[0].created_at
            start_label = start.isoformat(timespec="seconds")
            candidates.append(ClusterCandidate(
                pattern_type="velocity",
                primary_target=start_label,
                label=f"Velocity Attack: {len(group)} failed attempts in {window_minutes}min from {len(ips)} IPs",
                signals=group,
                patterns=[ClusterPatternCreate(
                    pattern_value=f"{start_label}+{window_minutes}m",
                    description=f"Burst of failed attempts starting {start_label}",
                    match_count=len(group),
                    detail=VelocityDetail(window_start=start, window_seconds=window_minutes * 60,
                                          attempts=len(group), unique_ips=len(ips)),
                )],
            ))
            i = j + 1
        return candidates

    def build_cluster(self, candidate: ClusterCandidate) -> FraudClusterCreate:
        group = candidate.signals
        size = len(group)
        blocked_ratio = sum(1 for s in group if s.blocked) / size
        score = severity_score(size, blocked_ratio, self._threshold_for(candidate.pattern_type))
        timestamps = [s.created_at for s in group]
        metadata = ClusterMetadata(
            signal_ids=[s.id for s in group],
            time_span_seconds=(max(timestamps) - min(timestamps)).total_seconds(),
            unique_ips=len({s.ip_address for s in group}),
            unique_devices=len({s.device_fingerprint for s in group if s.device_fingerprint}),
            blocked_ratio=round(blocked_ratio, 4),
            failure_reasons=sorted({s.failure_reason for s in group if s.failure_reason}),
            primary_target=candidate.primary_target,
        )
        return FraudClusterCreate(
            pattern_type=candidate.pattern_type,
            label=candidate.label,
            severity=severity_from_score(score),
            score=round(score, 2),
            threat_count=size,
            fingerprint=cluster_fingerprint(candidate.pattern_type, metadata.signal_ids),
            metadata=metadata,
            patterns=candidate.patterns,
        )

    async def analyze_threats(self, now: Optional[datetime] = None) -> ClusterAnalysisResult:
        now = now or utcnow()
        since = now - timedelta(hours=self.config.cluster_window_hours)
        signals = await self.store.get_fraud_logs_since(since, self.config.cluster_candidate_limit)
        logger.info(f"Analyzing {len(signals)} fraud signals since {since.isoformat()}")

        created: List[FraudClusterResponse] = []
        for candidate in self.find_candidates(signals):
            cluster_data = self.build_cluster(candidate)
            try:
                if self.config.cluster_dedupe and await self.store.fraud_cluster_exists(cluster_data.fingerprint):
                    logger.debug(f"Skipping known cluster {cluster_data.fingerprint[:12]}")
                    continue
                cluster = await self.store.create_fraud_cluster(cluster_data)
            except StorageError as e:
                logger.error(f"Failed to persist {candidate.pattern_type} cluster for {candidate.primary_target}: {e}")
                continue

            response = FraudClusterResponse.model_validate(cluster)
            created.append(response)
            logger.info(f"Created fraud cluster {cluster.id}: {cluster.label} (severity {cluster.severity})")
            if self.alert_publisher is not None:
                await self.alert_publisher.publish("new-fraud-cluster", {
                    "cluster_id": str(cluster.id),
                    "pattern_type": cluster.pattern_type,
                    "label": cluster.label,
                    "severity": cluster.severity,
                    "threat_count": cluster.threat_count,
                })

        return ClusterAnalysisResult(
            clusters_found=len(created),
            threats_analyzed=len(signals),
            clusters=created,
        )

    async def get_fraud_cluster_stats(self):
        return await self.store.get_fraud_cluster_stats()
