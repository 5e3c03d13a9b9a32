"""
models.py - Cluster data model shared by the ring and spam detectors.

A cluster is a set of accounts a detector believes act together.  Collusion
rings and spam clusters have the same shape; only the detector, the
characteristics and the thresholds differ.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class RiskLevel(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.NONE: 0, RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3}


class ClusterKind(str, Enum):
    COLLUSION_RING = "COLLUSION_RING"
    SPAM_CLUSTER = "SPAM_CLUSTER"


class ClusterPattern(str, Enum):
    MULTI_ACCOUNT = "multi_account"
    SCAM_RING = "scam_ring"
    BOT_NETWORK = "bot_network"
    COORDINATED_SPAM = "coordinated_spam"


class ClusterStatus(str, Enum):
    DETECTED = "DETECTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    CONFIRMED = "CONFIRMED"
    FALSE_POSITIVE = "FALSE_POSITIVE"


# Allowed status moves; anything else is rejected by the case manager.
CLUSTER_TRANSITIONS: Dict[ClusterStatus, Tuple[ClusterStatus, ...]] = {
    ClusterStatus.DETECTED: (ClusterStatus.UNDER_REVIEW,),
    ClusterStatus.UNDER_REVIEW: (ClusterStatus.CONFIRMED, ClusterStatus.FALSE_POSITIVE),
    ClusterStatus.CONFIRMED: (),
    ClusterStatus.FALSE_POSITIVE: (),
}

_ID_PREFIX = {
    ClusterKind.COLLUSION_RING: "RING",
    ClusterKind.SPAM_CLUSTER: "SPAM",
}


@dataclass
class Cluster:
    """One detection of a group of accounts.

    ``member_ids`` is always a sorted tuple so that signatures, ids and any
    iteration over members are order-independent.
    """

    cluster_id: str
    kind: ClusterKind
    member_ids: Tuple[str, ...]
    signature: str
    probability: float
    risk_level: RiskLevel
    detected_at: datetime
    characteristics: Dict[str, Any] = field(default_factory=dict)
    signals: List[str] = field(default_factory=list)
    pattern: Optional[ClusterPattern] = None
    centroid: Optional[str] = None
    status: ClusterStatus = ClusterStatus.DETECTED
    supersedes: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.member_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "kind": self.kind.value,
            "member_ids": list(self.member_ids),
            "signature": self.signature,
            "probability": self.probability,
            "risk_level": self.risk_level.value,
            "detected_at": self.detected_at.isoformat(),
            "characteristics": dict(self.characteristics),
            "signals": list(self.signals),
            "pattern": self.pattern.value if self.pattern else None,
            "centroid": self.centroid,
            "status": self.status.value,
            "supersedes": self.supersedes,
        }


def cluster_signature(member_ids: Iterable[str]) -> str:
    """SHA-256 of the sorted, de-duplicated member ids."""
    joined = "\n".join(sorted(set(member_ids)))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def make_cluster_id(kind: ClusterKind, signature: str, detected_at: datetime) -> str:
    """Stable id for one detection: same snapshot time and members, same id."""
    return f"{_ID_PREFIX[kind]}_{signature[:12]}_{detected_at.strftime('%Y%m%dT%H%M%S')}"
