"""
notifications.py - Outbound hooks for downstream collaborators.

The engine and case manager call a ``Notifier`` after their state change is
committed.  Delivery belongs to the collaborator; a failing notifier is
logged by the caller and never undoes enforcement or case creation.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional


logger = logging.getLogger(__name__)


class Notifier:
    """Interface for enforcement / case notifications (no-op by default)."""

    def on_enforcement_applied(
        self, user_id: str, level: str, reason: str, expires_at: Optional[datetime]
    ) -> None:
        pass

    def on_case_created(
        self, case_id: str, cluster_id: str, priority: str, evidence_summary: str
    ) -> None:
        pass


class LoggingNotifier(Notifier):
    def on_enforcement_applied(self, user_id, level, reason, expires_at):
        logger.info(
            "Enforcement applied: user=%s level=%s reason=%s expires_at=%s",
            user_id, level, reason, expires_at.isoformat() if expires_at else "never",
        )

    def on_case_created(self, case_id, cluster_id, priority, evidence_summary):
        logger.info("Case created: %s cluster=%s priority=%s", case_id, cluster_id, priority)


class QueueNotifier(Notifier):
    """Collects notifications in memory; ``review_queue`` feeds moderators.

    ``enforcement_events`` keeps the newest *max_events* entries until drained.
    """

    def __init__(self, max_events: Optional[int] = 10_000) -> None:
        self.enforcement_events: Deque[Dict[str, Any]] = deque(maxlen=max_events)
        self.review_queue: Deque[Dict[str, Any]] = deque()
        self._lock = threading.Lock()

    def on_enforcement_applied(self, user_id, level, reason, expires_at):
        with self._lock:
            self.enforcement_events.append(
                {"user_id": user_id, "level": level, "reason": reason, "expires_at": expires_at}
            )

    def on_case_created(self, case_id, cluster_id, priority, evidence_summary):
        with self._lock:
            self.review_queue.append(
                {
                    "case_id": case_id,
                    "cluster_id": cluster_id,
                    "priority": priority,
                    "evidence_summary": evidence_summary,
                }
            )

    def drain_review_queue(self) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self.review_queue)
            self.review_queue.clear()
        return items

    def drain_enforcement_events(self) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self.enforcement_events)
            self.enforcement_events.clear()
        return items
