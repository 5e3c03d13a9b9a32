"""
cases.py - Moderation cases: the single boundary to human review.

Detections are deduplicated by cluster signature (hash of the sorted member
ids), so one group of accounts has at most one open case however many runs
re-detect it.

Case lifecycle
--------------
OPEN / ESCALATED --start_review--> UNDER_REVIEW --resolve--> RESOLVED
OPEN / UNDER_REVIEW --escalate--> ESCALATED

Resolving a case as FALSE_POSITIVE is the only way to lift enforcement
before it expires; CONFIRMED members make any later cluster they appear in
CRITICAL.
"""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from detection.models import CLUSTER_TRANSITIONS, Cluster, ClusterKind, ClusterStatus
from enforcement.models import (
    BAND_TO_PRIORITY,
    CasePriority,
    CaseResolution,
    CaseStatus,
    ModerationCase,
)
from enforcement.notifications import Notifier
from utils.errors import CaseNotFoundError, InvalidTransitionError

logger = logging.getLogger(__name__)

MAX_EVIDENCE_SIGNALS = 3


class CaseManager:
    def __init__(self, engine=None, notifier: Optional[Notifier] = None) -> None:
        self._engine = engine
        self._notifier = notifier or Notifier()
        self._cases: Dict[str, ModerationCase] = {}
        self._clusters: Dict[str, Cluster] = {}
        self._case_clusters: Dict[str, List[str]] = {}
        self._open_by_signature: Dict[str, str] = {}
        self._last_case_by_signature: Dict[str, str] = {}
        self._latest_cluster_by_signature: Dict[str, str] = {}
        self._cleared: Set[Tuple[ClusterKind, str]] = set()
        self._confirmed_users: Set[str] = set()
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    # ── Detection intake ─────────────────────────────────────────────────────

    def register_detections(self, clusters: Iterable[Cluster], now: datetime) -> List[ModerationCase]:
        """Record a run's clusters; return only the cases newly opened."""
        created: List[ModerationCase] = []
        with self._lock:
            for cluster in sorted(clusters, key=lambda c: c.cluster_id):
                if cluster.cluster_id in self._clusters:
                    # same snapshot registered twice
                    continue
                case = self._register(cluster, now)
                if case is not None:
                    created.append(case)

        for case in created:
            try:
                self._notifier.on_case_created(
                    case.case_id, case.cluster_id, case.priority.value, case.evidence_summary
                )
            except Exception:
                logger.exception("Notifier failed for new case %s", case.case_id)
        if created:
            logger.info("Opened %d new moderation cases", len(created))
        return created

    def _register(self, cluster: Cluster, now: datetime) -> Optional[ModerationCase]:
        signature = cluster.signature
        previous_cluster = self._latest_cluster_by_signature.get(signature)
        if previous_cluster is not None:
            cluster.supersedes = previous_cluster
        self._clusters[cluster.cluster_id] = cluster
        self._latest_cluster_by_signature[signature] = cluster.cluster_id

        priority = self._priority(cluster)
        open_id = self._open_by_signature.get(signature)
        if open_id is not None:
            case = self._cases[open_id]
            case.cluster_id = cluster.cluster_id
            case.linked_user_ids = cluster.member_ids
            case.detection_count += 1
            case.evidence_summary = _evidence_summary(cluster)
            case.updated_at = now
            self._case_clusters[case.case_id].append(cluster.cluster_id)
            if case.status == CaseStatus.UNDER_REVIEW:
                self._move_cluster(cluster, ClusterStatus.UNDER_REVIEW)
            if priority.rank > case.priority.rank:
                logger.warning(
                    "Case %s re-detected at higher priority %s -> %s",
                    case.case_id, case.priority.value, priority.value,
                )
                case.priority = priority
                case.status = CaseStatus.ESCALATED
            return None

        case = ModerationCase(
            case_id=f"CASE_{next(self._ids):06d}",
            case_type=cluster.kind,
            cluster_id=cluster.cluster_id,
            cluster_signature=signature,
            linked_user_ids=cluster.member_ids,
            priority=priority,
            status=CaseStatus.OPEN,
            evidence_summary=_evidence_summary(cluster),
            created_at=now,
            updated_at=now,
            previous_case_id=self._last_case_by_signature.get(signature),
        )
        self._cases[case.case_id] = case
        self._case_clusters[case.case_id] = [cluster.cluster_id]
        self._open_by_signature[signature] = case.case_id
        self._last_case_by_signature[signature] = case.case_id
        return case

    def _priority(self, cluster: Cluster) -> CasePriority:
        if self._confirmed_users.intersection(cluster.member_ids):
            return CasePriority.CRITICAL
        return BAND_TO_PRIORITY.get(cluster.risk_level, CasePriority.LOW)

    # ── Human review ─────────────────────────────────────────────────────────

    def start_review(self, case_id: str, reviewer: str, now: datetime) -> ModerationCase:
        with self._lock:
            case = self._get(case_id)
            if case.status not in (CaseStatus.OPEN, CaseStatus.ESCALATED):
                raise InvalidTransitionError(
                    f"Case {case_id} cannot start review from {case.status.value}."
                )
            cluster = self._clusters[case.cluster_id]
            if cluster.status == ClusterStatus.DETECTED:
                self._move_cluster(cluster, ClusterStatus.UNDER_REVIEW)
            case.status = CaseStatus.UNDER_REVIEW
            case.reviewer = reviewer
            case.updated_at = now
            logger.info("Case %s under review by %s", case_id, reviewer)
            return case

    def escalate(self, case_id: str, now: datetime, note: str = "") -> ModerationCase:
        with self._lock:
            case = self._get(case_id)
            if case.status not in (CaseStatus.OPEN, CaseStatus.UNDER_REVIEW):
                raise InvalidTransitionError(f"Case {case_id} cannot be escalated from {case.status.value}.")
            if case.priority != CasePriority.CRITICAL:
                case.priority = list(CasePriority)[case.priority.rank + 1]
            case.status = CaseStatus.ESCALATED
            case.updated_at = now
            if note:
                case.notes.append(note)
            logger.warning("Case %s escalated to %s", case_id, case.priority.value)
            return case

    def resolve(
        self,
        case_id: str,
        outcome: CaseResolution | str,
        resolver: str,
        now: datetime,
        note: str = "",
    ) -> ModerationCase:
        """Close a case after review.

        FALSE_POSITIVE reverses the linked accounts' active enforcement and
        stops the same member set from being enforced again; CONFIRMED
        records the members for recidivism.
        """
        try:
            outcome = CaseResolution.parse(outcome)
        except ValueError:
            raise InvalidTransitionError(f"Unknown case resolution: {outcome!r}") from None

        target = ClusterStatus(outcome.value)
        with self._lock:
            case = self._get(case_id)
            cluster = self._clusters[case.cluster_id]
            if case.status == CaseStatus.RESOLVED or target not in CLUSTER_TRANSITIONS[cluster.status]:
                raise InvalidTransitionError(
                    f"Case {case_id} ({case.status.value}, cluster {cluster.status.value}) "
                    f"cannot be resolved as {outcome.value}; start review first."
                )
            for cid in self._case_clusters[case_id]:
                other = self._clusters[cid]
                if other.status == ClusterStatus.DETECTED:
                    self._move_cluster(other, ClusterStatus.UNDER_REVIEW)
                if other.status == ClusterStatus.UNDER_REVIEW:
                    self._move_cluster(other, target)

            case.status = CaseStatus.RESOLVED
            case.resolution = outcome
            case.resolved_by = resolver
            case.resolved_at = now
            case.updated_at = now
            if note:
                case.notes.append(note)
            self._open_by_signature.pop(case.cluster_signature, None)

            ruled = {(self._clusters[cid].kind, case.cluster_signature) for cid in self._case_clusters[case_id]}
            ruled.add((case.case_type, case.cluster_signature))
            if outcome == CaseResolution.CONFIRMED:
                self._confirmed_users.update(case.linked_user_ids)
                self._cleared -= ruled
            else:
                self._cleared |= ruled

        logger.info("Case %s resolved as %s by %s", case_id, outcome.value, resolver)
        if outcome == CaseResolution.FALSE_POSITIVE and self._engine is not None:
            for user_id in case.linked_user_ids:
                self._engine.reverse(user_id, now, case_id=case_id, reason_text=note or "false positive")
        return case

    # ── Lookups ──────────────────────────────────────────────────────────────

    def get_case(self, case_id: str) -> ModerationCase:
        with self._lock:
            return self._get(case_id)

    def get_cluster(self, cluster_id: str) -> Cluster:
        with self._lock:
            try:
                return self._clusters[cluster_id]
            except KeyError:
                raise CaseNotFoundError(f"Unknown cluster {cluster_id}") from None

    def open_cases(self) -> List[ModerationCase]:
        with self._lock:
            cases = [c for c in self._cases.values() if c.is_open]
        return sorted(cases, key=lambda c: (-c.priority.rank, c.created_at, c.case_id))

    def all_cases(self) -> List[ModerationCase]:
        with self._lock:
            return sorted(self._cases.values(), key=lambda c: c.case_id)

    def cases_for_user(self, user_id: str) -> List[ModerationCase]:
        with self._lock:
            return sorted(
                (c for c in self._cases.values() if user_id in c.linked_user_ids),
                key=lambda c: c.case_id,
            )

    def is_cleared(self, cluster: Cluster) -> bool:
        """True when reviewers ruled this member set a false positive for this kind of cluster."""
        with self._lock:
            return (cluster.kind, cluster.signature) in self._cleared

    def confirmed_users(self) -> Set[str]:
        with self._lock:
            return set(self._confirmed_users)

    # ── Internal helpers ─────────────────────────────────────────────────────

    def _get(self, case_id: str) -> ModerationCase:
        try:
            return self._cases[case_id]
        except KeyError:
            raise CaseNotFoundError(f"Unknown case {case_id}") from None

    @staticmethod
    def _move_cluster(cluster: Cluster, status: ClusterStatus) -> None:
        if status not in CLUSTER_TRANSITIONS[cluster.status]:
            raise InvalidTransitionError(
                f"Cluster {cluster.cluster_id} cannot move {cluster.status.value} -> {status.value}."
            )
        cluster.status = status


def _evidence_summary(cluster: Cluster) -> str:
    pattern = cluster.pattern.value if cluster.pattern else cluster.kind.value.lower()
    head = (
        f"{cluster.kind.value} ({pattern}) of {cluster.size} accounts, "
        f"p={cluster.probability:.2f} {cluster.risk_level.value}"
    )
    evidence = "; ".join(cluster.signals[:MAX_EVIDENCE_SIGNALS])
    return f"{head}: {evidence}" if evidence else head
