"""
models.py - Enforcement and moderation-case types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from detection.models import ClusterKind, RiskLevel


class RestrictionLevel(str, Enum):
    NONE = "NONE"
    VISIBILITY_REDUCED = "VISIBILITY_REDUCED"
    MONETIZATION_THROTTLED = "MONETIZATION_THROTTLED"
    MANUAL_REVIEW_REQUIRED = "MANUAL_REVIEW_REQUIRED"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def step_down(self) -> "RestrictionLevel":
        return _LEVEL_ORDER[max(self.rank - 1, 0)]


_LEVEL_ORDER = [
    RestrictionLevel.NONE,
    RestrictionLevel.VISIBILITY_REDUCED,
    RestrictionLevel.MONETIZATION_THROTTLED,
    RestrictionLevel.MANUAL_REVIEW_REQUIRED,
]

BAND_TO_LEVEL: Dict[RiskLevel, RestrictionLevel] = {
    RiskLevel.NONE: RestrictionLevel.NONE,
    RiskLevel.LOW: RestrictionLevel.VISIBILITY_REDUCED,
    RiskLevel.MEDIUM: RestrictionLevel.MONETIZATION_THROTTLED,
    RiskLevel.HIGH: RestrictionLevel.MANUAL_REVIEW_REQUIRED,
}


class EnforcementReason(str, Enum):
    COLLUSION_RING = "COLLUSION_RING"
    SPAM_CLUSTER = "SPAM_CLUSTER"
    DE_ESCALATION = "DE_ESCALATION"


REASON_FOR_KIND: Dict[ClusterKind, EnforcementReason] = {
    ClusterKind.COLLUSION_RING: EnforcementReason.COLLUSION_RING,
    ClusterKind.SPAM_CLUSTER: EnforcementReason.SPAM_CLUSTER,
}


class EndReason(str, Enum):
    ESCALATED = "ESCALATED"
    EXPIRED = "EXPIRED"
    DE_ESCALATED = "DE_ESCALATED"
    REVERSED = "REVERSED"


@dataclass
class EnforcementAction:
    action_id: str
    target_user_id: str
    level: RestrictionLevel
    reason: EnforcementReason
    reason_text: str
    applied_at: datetime
    expires_at: Optional[datetime]
    cluster_ids: List[str] = field(default_factory=list)
    refreshed_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[EndReason] = None

    @property
    def active(self) -> bool:
        return self.ended_at is None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "target_user_id": self.target_user_id,
            "level": self.level.value,
            "reason": self.reason.value,
            "reason_text": self.reason_text,
            "applied_at": self.applied_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "cluster_ids": list(self.cluster_ids),
            "refreshed_at": self.refreshed_at.isoformat() if self.refreshed_at else None,
            "reversed_at": self.reversed_at.isoformat() if self.reversed_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "end_reason": self.end_reason.value if self.end_reason else None,
        }


@dataclass(frozen=True)
class AccountTarget:
    """Highest restriction any current detection asks for on one account."""

    level: RestrictionLevel
    reason: EnforcementReason
    cluster_ids: Tuple[str, ...]
    probability: float = 0.0


@dataclass(frozen=True)
class RestrictionCheckResult:
    user_id: str
    level: RestrictionLevel
    discovery_multiplier: float
    hidden_from_discovery: bool
    monetization_allowed: bool
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "level": self.level.value,
            "discovery_multiplier": self.discovery_multiplier,
            "hidden_from_discovery": self.hidden_from_discovery,
            "monetization_allowed": self.monetization_allowed,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class EnforcementReport:
    applied: int = 0
    refreshed: int = 0
    escalated: int = 0
    de_escalated: int = 0
    expired: int = 0
    unchanged: int = 0
    failed: List[str] = field(default_factory=list)
    processed: List[str] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "refreshed": self.refreshed,
            "escalated": self.escalated,
            "de_escalated": self.de_escalated,
            "expired": self.expired,
            "unchanged": self.unchanged,
            "failed": list(self.failed),
            "processed": len(self.processed),
            "cancelled": self.cancelled,
        }


# ── Moderation cases ─────────────────────────────────────────────────────────

class CasePriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)


_PRIORITY_ORDER = [CasePriority.LOW, CasePriority.MEDIUM, CasePriority.HIGH, CasePriority.CRITICAL]

BAND_TO_PRIORITY: Dict[RiskLevel, CasePriority] = {
    RiskLevel.LOW: CasePriority.LOW,
    RiskLevel.MEDIUM: CasePriority.MEDIUM,
    RiskLevel.HIGH: CasePriority.HIGH,
}


class CaseStatus(str, Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class CaseResolution(str, Enum):
    CONFIRMED = "CONFIRMED"
    FALSE_POSITIVE = "FALSE_POSITIVE"

    @classmethod
    def parse(cls, value: "CaseResolution | str") -> "CaseResolution":
        if isinstance(value, CaseResolution):
            return value
        return cls(str(value).strip().upper())


@dataclass
class ModerationCase:
    case_id: str
    case_type: ClusterKind
    cluster_id: str
    cluster_signature: str
    linked_user_ids: Tuple[str, ...]
    priority: CasePriority
    status: CaseStatus
    evidence_summary: str
    created_at: datetime
    updated_at: datetime
    detection_count: int = 1
    previous_case_id: Optional[str] = None
    reviewer: Optional[str] = None
    resolution: Optional[CaseResolution] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    notes: List[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status != CaseStatus.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "case_type": self.case_type.value,
            "cluster_id": self.cluster_id,
            "cluster_signature": self.cluster_signature,
            "linked_user_ids": list(self.linked_user_ids),
            "priority": self.priority.value,
            "status": self.status.value,
            "evidence_summary": self.evidence_summary,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "detection_count": self.detection_count,
            "previous_case_id": self.previous_case_id,
            "reviewer": self.reviewer,
            "resolution": self.resolution.value if self.resolution else None,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "notes": list(self.notes),
        }
