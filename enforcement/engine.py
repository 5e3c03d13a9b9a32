"""
engine.py - Graduated, reversible enforcement state machine.

Each account holds at most one active ``EnforcementAction``.  Its level is
driven by the highest risk band among the clusters the account belongs to:

Band    | Level
LOW     | VISIBILITY_REDUCED       (72h)
MEDIUM  | MONETIZATION_THROTTLED   (7d)
HIGH    | MANUAL_REVIEW_REQUIRED   (no expiry)

Per account, per run:
- higher target            -> escalate (old action ended, new action)
- equal target             -> refresh expiry in place
- lower / no target        -> unchanged, unless the action expired, in which
                              case it steps down exactly one level
- only the case manager may reverse an action before it expires

Enforcement is forward-looking.  The engine reads the settled ledger
through a read-only view and snapshots each account's settled entries
around the change; if an entry that was already settled moved, that
account is rolled back.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from detection.models import Cluster, ClusterStatus, RiskLevel
from enforcement.ledger import ReadOnlyLedgerView
from enforcement.models import (
    BAND_TO_LEVEL,
    REASON_FOR_KIND,
    AccountTarget,
    EndReason,
    EnforcementAction,
    EnforcementReason,
    EnforcementReport,
    RestrictionCheckResult,
    RestrictionLevel,
)
from enforcement.notifications import Notifier
from utils.config import EnforcementConfig
from utils.errors import EnforcementApplicationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    user_id: str
    event: str
    from_level: RestrictionLevel
    to_level: RestrictionLevel
    action_id: Optional[str]
    detail: str = ""

    def to_dict(self):
        return {
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "event": self.event,
            "from_level": self.from_level.value,
            "to_level": self.to_level.value,
            "action_id": self.action_id,
            "detail": self.detail,
        }


# ── Per-account targets ──────────────────────────────────────────────────────

def account_targets(clusters: Iterable[Cluster]) -> Dict[str, AccountTarget]:
    """Resolve the highest restriction each account's clusters call for.

    An account in several clusters takes the maximum level, never a sum.
    Clusters in the NONE band or already ruled FALSE_POSITIVE are ignored.
    """
    best: Dict[str, AccountTarget] = {}
    for cluster in sorted(clusters, key=lambda c: c.cluster_id):
        if cluster.risk_level == RiskLevel.NONE or cluster.status == ClusterStatus.FALSE_POSITIVE:
            continue
        level = BAND_TO_LEVEL[cluster.risk_level]
        reason = REASON_FOR_KIND[cluster.kind]
        for user_id in cluster.member_ids:
            current = best.get(user_id)
            if current is None or level.rank > current.level.rank:
                best[user_id] = AccountTarget(level, reason, (cluster.cluster_id,), cluster.probability)
            elif level == current.level:
                keep_reason = current.reason if current.probability >= cluster.probability else reason
                best[user_id] = AccountTarget(
                    level,
                    keep_reason,
                    tuple(sorted(set(current.cluster_ids) | {cluster.cluster_id})),
                    max(current.probability, cluster.probability),
                )
    return best


# ── Engine ───────────────────────────────────────────────────────────────────

class EnforcementEngine:
    def __init__(
        self,
        config: Optional[EnforcementConfig] = None,
        ledger=None,
        notifier: Optional[Notifier] = None,
        audit_sink: Optional[Callable[[AuditEntry], None]] = None,
    ) -> None:
        self.config = config or EnforcementConfig()
        self.config.validate()
        self._ledger = ReadOnlyLedgerView(ledger) if ledger is not None else None
        self._notifier = notifier or Notifier()
        self._audit_sink = audit_sink
        self._active: Dict[str, EnforcementAction] = {}
        self._actions: Dict[str, List[EnforcementAction]] = {}
        self._audit: List[AuditEntry] = []
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    # ── Public API ───────────────────────────────────────────────────────────

    def apply(
        self,
        targets: Mapping[str, AccountTarget],
        now: datetime,
        cancel_event: Optional[threading.Event] = None,
        hold: Iterable[str] = (),
    ) -> EnforcementReport:
        """Apply targets to every targeted or currently restricted account.

        Accounts are processed in sorted order, each in its own transaction.
        A failing account is logged, left untouched and retried next run;
        the others proceed.  Cancelling stops between accounts.  Accounts in
        *hold* never take an expiry step: without a target they are skipped,
        and with one they can only be escalated or refreshed.  The scheduler
        holds accounts whose action came from a detector that failed this run.
        """
        report = EnforcementReport()
        hold = set(hold)
        with self._lock:
            users = sorted(set(targets) | (set(self._active) - hold))

        for user_id in users:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.warning(
                    "Enforcement cancelled after %d/%d accounts", len(report.processed), len(users)
                )
                break
            try:
                outcome, events = self._apply_account(user_id, targets.get(user_id), now, user_id in hold)
            except EnforcementApplicationError as exc:
                report.failed.append(user_id)
                logger.error("Enforcement failed for %s, left unchanged: %s", user_id, exc)
                continue
            except Exception:
                report.failed.append(user_id)
                logger.exception("Unexpected enforcement failure for %s, left unchanged", user_id)
                continue

            report.processed.append(user_id)
            setattr(report, outcome, getattr(report, outcome) + 1)
            for action in events:
                self._notify(action)

        logger.info(
            "Enforcement: %d applied, %d escalated, %d refreshed, %d de-escalated, "
            "%d expired, %d unchanged, %d failed",
            report.applied, report.escalated, report.refreshed, report.de_escalated,
            report.expired, report.unchanged, len(report.failed),
        )
        return report

    def check_restriction(self, user_id: str, now: Optional[datetime] = None) -> RestrictionCheckResult:
        """Effects currently in force for *user_id*.

        Any lookup failure yields the unrestricted result.
        """
        try:
            action = self.current_action(user_id)
        except Exception:
            logger.exception("Restriction lookup failed for %s; treating as NONE", user_id)
            action = None

        level = action.level if action is not None else RestrictionLevel.NONE
        multiplier = self.config.discovery_multiplier
        if level == RestrictionLevel.NONE:
            return RestrictionCheckResult(user_id, level, 1.0, False, True)
        if level == RestrictionLevel.VISIBILITY_REDUCED:
            return RestrictionCheckResult(user_id, level, multiplier, False, True, action.expires_at)
        if level == RestrictionLevel.MONETIZATION_THROTTLED:
            return RestrictionCheckResult(user_id, level, multiplier, False, False, action.expires_at)
        return RestrictionCheckResult(user_id, level, 0.0, True, False, action.expires_at)

    def reverse(
        self,
        user_id: str,
        now: datetime,
        case_id: Optional[str] = None,
        reason_text: str = "",
    ) -> Optional[EnforcementAction]:
        """End the active action after human review; returns it, or None."""
        with self._lock:
            action = self._active.get(user_id)
            if action is None:
                return None
            ended = replace(action, ended_at=now, reversed_at=now, end_reason=EndReason.REVERSED)
            self._replace(user_id, action, ended)
            del self._active[user_id]
            detail = f"case={case_id} {reason_text}".strip()
            self._record(now, user_id, "REVERSED", action.level, RestrictionLevel.NONE, action.action_id, detail)

        logger.info("Reversed %s on %s (%s)", action.level.value, user_id, detail)
        self._notify_level(user_id, RestrictionLevel.NONE, "REVERSED", None)
        return ended

    def current_action(self, user_id: str) -> Optional[EnforcementAction]:
        with self._lock:
            action = self._active.get(user_id)
            return replace(action, cluster_ids=list(action.cluster_ids)) if action else None

    def active_actions(self) -> Dict[str, EnforcementAction]:
        with self._lock:
            return {u: replace(a, cluster_ids=list(a.cluster_ids)) for u, a in sorted(self._active.items())}

    def actions_for(self, user_id: str) -> List[EnforcementAction]:
        with self._lock:
            return [replace(a, cluster_ids=list(a.cluster_ids)) for a in self._actions.get(user_id, [])]

    def history(self, user_id: Optional[str] = None) -> List[AuditEntry]:
        with self._lock:
            return [e for e in self._audit if user_id is None or e.user_id == user_id]

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts = Counter(a.level.value for a in self._active.values())
            total_actions = sum(len(v) for v in self._actions.values())
        stats = {level.value: counts.get(level.value, 0) for level in RestrictionLevel if level != RestrictionLevel.NONE}
        stats["active_total"] = sum(counts.values())
        stats["actions_total"] = total_actions
        return stats

    # ── Internal helpers ─────────────────────────────────────────────────────

    def _apply_account(
        self, user_id: str, target: Optional[AccountTarget], now: datetime, held: bool = False
    ) -> Tuple[str, List[EnforcementAction]]:
        settled_before = self._settled_entries(user_id)

        with self._lock:
            saved_active = self._active.get(user_id)
            saved_actions = list(self._actions.get(user_id, []))
            saved_audit = len(self._audit)
            try:
                outcome, events = self._transition(user_id, target, now, held)
            except Exception as exc:
                self._restore(user_id, saved_active, saved_actions, saved_audit)
                raise EnforcementApplicationError(user_id, f"transition failed: {exc}") from exc

            settled_after = self._settled_entries(user_id)
            changed = sorted(e for e, amount in settled_before.items() if settled_after.get(e) != amount)
            if changed:
                self._restore(user_id, saved_active, saved_actions, saved_audit)
                raise EnforcementApplicationError(
                    user_id,
                    f"settled ledger entries changed during enforcement ({', '.join(changed)}); rolled back",
                )

        for entry in self._audit[saved_audit:]:
            self._emit_audit(entry)
        return outcome, events

    def _transition(
        self, user_id: str, target: Optional[AccountTarget], now: datetime, held: bool = False
    ) -> Tuple[str, List[EnforcementAction]]:
        current = self._active.get(user_id)
        current_level = current.level if current else RestrictionLevel.NONE
        target_level = target.level if target else RestrictionLevel.NONE

        expired = current is not None and not held and current.is_expired(now)
        if expired and target_level.rank < current_level.rank:
            return self._de_escalate(user_id, current, target, now)

        if target_level.rank > current_level.rank:
            if current is not None:
                self._end(user_id, current, now, EndReason.ESCALATED)
            action = self._create(user_id, target_level, target.reason, target.cluster_ids, now)
            event = "ESCALATED" if current is not None else "APPLIED"
            self._record(now, user_id, event, current_level, target_level, action.action_id,
                         ",".join(target.cluster_ids))
            return ("escalated" if current is not None else "applied"), [action]

        if current is not None and target_level == current_level:
            refreshed = replace(
                current,
                expires_at=self._expiry(current.level, now),
                refreshed_at=now,
                cluster_ids=sorted(set(current.cluster_ids) | set(target.cluster_ids)),
            )
            self._replace(user_id, current, refreshed)
            self._active[user_id] = refreshed
            self._record(now, user_id, "REFRESHED", current_level, current_level, current.action_id)
            return "refreshed", [refreshed]

        return "unchanged", []

    def _de_escalate(
        self, user_id: str, current: EnforcementAction, target: Optional[AccountTarget], now: datetime
    ) -> Tuple[str, List[EnforcementAction]]:
        stepped = current.level.step_down()
        target_level = target.level if target else RestrictionLevel.NONE
        new_level = stepped if stepped.rank >= target_level.rank else target_level

        if new_level == RestrictionLevel.NONE:
            self._end(user_id, current, now, EndReason.EXPIRED)
            self._record(now, user_id, "EXPIRED", current.level, new_level, current.action_id)
            logger.info("%s on %s expired; account unrestricted", current.level.value, user_id)
            return "expired", [self._placeholder(user_id, now)]

        self._end(user_id, current, now, EndReason.DE_ESCALATED)
        if target is not None and new_level == target_level:
            reason, cluster_ids = target.reason, target.cluster_ids
        else:
            reason, cluster_ids = EnforcementReason.DE_ESCALATION, tuple(current.cluster_ids)
        action = self._create(user_id, new_level, reason, cluster_ids, now)
        self._record(now, user_id, "DE_ESCALATED", current.level, new_level, action.action_id)
        logger.info("%s on %s expired; stepped down to %s", current.level.value, user_id, new_level.value)
        return "de_escalated", [action]

    def _create(
        self,
        user_id: str,
        level: RestrictionLevel,
        reason: EnforcementReason,
        cluster_ids: Iterable[str],
        now: datetime,
    ) -> EnforcementAction:
        action = EnforcementAction(
            action_id=f"ACT_{next(self._ids):06d}",
            target_user_id=user_id,
            level=level,
            reason=reason,
            reason_text=_reason_text(level, reason, cluster_ids),
            applied_at=now,
            expires_at=self._expiry(level, now),
            cluster_ids=sorted(cluster_ids),
        )
        self._actions.setdefault(user_id, []).append(action)
        self._active[user_id] = action
        return action

    def _end(self, user_id: str, action: EnforcementAction, now: datetime, reason: EndReason) -> None:
        self._replace(user_id, action, replace(action, ended_at=now, end_reason=reason))
        self._active.pop(user_id, None)

    def _replace(self, user_id: str, old: EnforcementAction, new: EnforcementAction) -> None:
        history = self._actions.setdefault(user_id, [])
        for i, action in enumerate(history):
            if action.action_id == old.action_id:
                history[i] = new
                return
        history.append(new)

    def _restore(self, user_id, saved_active, saved_actions, saved_audit) -> None:
        if saved_active is None:
            self._active.pop(user_id, None)
        else:
            self._active[user_id] = saved_active
        if saved_actions:
            self._actions[user_id] = saved_actions
        else:
            self._actions.pop(user_id, None)
        del self._audit[saved_audit:]

    def _expiry(self, level: RestrictionLevel, now: datetime) -> Optional[datetime]:
        ttl: Optional[timedelta] = {
            RestrictionLevel.VISIBILITY_REDUCED: self.config.visibility_reduced_ttl,
            RestrictionLevel.MONETIZATION_THROTTLED: self.config.monetization_throttled_ttl,
        }.get(level)
        return now + ttl if ttl is not None else None

    def _settled_entries(self, user_id: str) -> Dict[str, Decimal]:
        """Amounts of the entries already settled for *user_id*.

        Entries that settle while the account is processed are not a
        retroactive change; only a previously settled entry that moves is.
        """
        if self._ledger is None:
            return {}
        return {e.entry_id: e.amount for e in self._ledger.entries_for(user_id) if e.settled}

    def _record(self, now, user_id, event, from_level, to_level, action_id, detail="") -> None:
        self._audit.append(AuditEntry(now, user_id, event, from_level, to_level, action_id, detail))

    def _emit_audit(self, entry: AuditEntry) -> None:
        if self._audit_sink is None:
            return
        try:
            self._audit_sink(entry)
        except Exception:
            logger.exception("Audit sink failed for %s %s", entry.user_id, entry.event)

    def _placeholder(self, user_id: str, now: datetime) -> EnforcementAction:
        return EnforcementAction(
            action_id="",
            target_user_id=user_id,
            level=RestrictionLevel.NONE,
            reason=EnforcementReason.DE_ESCALATION,
            reason_text="restriction expired",
            applied_at=now,
            expires_at=None,
        )

    def _notify(self, action: EnforcementAction) -> None:
        self._notify_level(action.target_user_id, action.level, action.reason.value, action.expires_at)

    def _notify_level(self, user_id, level: RestrictionLevel, reason: str, expires_at) -> None:
        try:
            self._notifier.on_enforcement_applied(user_id, level.value, reason, expires_at)
        except Exception:
            logger.exception("Notifier failed for enforcement on %s", user_id)


def _reason_text(level: RestrictionLevel, reason: EnforcementReason, cluster_ids: Iterable[str]) -> str:
    ids = ", ".join(sorted(cluster_ids)) or "-"
    if reason == EnforcementReason.DE_ESCALATION:
        return f"{level.value} after expiry of a higher restriction (clusters: {ids})"
    return f"{level.value} for {reason.value.lower().replace('_', ' ')} (clusters: {ids})"
