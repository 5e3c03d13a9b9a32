"""
edge_store.py - Weighted, typed relationship graph with temporal decay.

The store holds one ``Edge`` per ``(user_a, user_b, edge_type)``.  Signal
ingestors upsert into it concurrently; the scheduler decays it once per run
and detectors read a point-in-time ``GraphSnapshot`` taken under the lock,
so ingestion never waits on detection.

Decay
-----
Each edge keeps a decay anchor (its last reinforcement, advanced as whole
periods are applied).  A pass computes

    periods = floor((now - anchor) / decay_period)
    weight *= (1 - decay_rate) ** periods

and moves the anchor forward by ``periods * decay_period``, so repeated
passes inside one period never decay twice.  Edges that fall below the
floor are removed.
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from graph.models import DecayResult, Edge, EdgeKey, EdgeType, GraphSnapshot, canonical_pair
from utils.config import EdgeStoreConfig
from utils.errors import SignalIngestionError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EdgeStore:
    """In-memory edge store guarded by a re-entrant lock."""

    def __init__(self, config: Optional[EdgeStoreConfig] = None) -> None:
        self.config = config or EdgeStoreConfig()
        self.config.validate()
        self._edges: Dict[EdgeKey, Edge] = {}
        self._lock = threading.RLock()

    # ── Public API ───────────────────────────────────────────────────────────

    def upsert_edge(
        self,
        user_a: str,
        user_b: str,
        edge_type: EdgeType | str,
        contribution: float,
        metadata: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Edge:
        """Create or reinforce an edge and return a copy of its new state.

        The stored weight becomes ``max(existing, min(contribution, ceiling))``
        so repeated observations never push it past the type ceiling.

        Raises
        ------
        SignalIngestionError
            Empty or identical ids, unknown edge type, a contribution
            outside [0, 1] or a time that is not a datetime.  Naive times
            are stored as UTC.
        """
        edge_type = self._parse_type(edge_type)
        user_a, user_b = self._validate_pair(user_a, user_b)
        contribution = self._validate_contribution(contribution)
        now = self._validate_time(now)

        ceiling = self.config.ceilings[edge_type.value]
        capped = min(contribution, ceiling)
        key = (user_a, user_b, edge_type)

        with self._lock:
            edge = self._edges.get(key)
            if edge is None:
                edge = Edge(
                    user_a=user_a,
                    user_b=user_b,
                    edge_type=edge_type,
                    weight=capped,
                    last_reinforced_at=now,
                    created_at=now,
                    decay_anchor=now,
                    metadata=dict(metadata or {}),
                )
                self._edges[key] = edge
                logger.debug("New %s edge %s-%s weight=%.3f", edge_type.value, user_a, user_b, capped)
            else:
                edge.weight = min(max(edge.weight, capped), ceiling)
                edge.observation_count += 1
                if now > edge.last_reinforced_at:
                    edge.last_reinforced_at = now
                if now > edge.decay_anchor:
                    edge.decay_anchor = now
                if metadata:
                    edge.metadata.update(metadata)
            return edge.copy()

    def decay_all(self, now: Optional[datetime] = None) -> DecayResult:
        """Apply whole-period decay to every edge and drop floored ones."""
        now = as_utc(now or utcnow())
        period = self.config.decay_period
        factor = 1.0 - self.config.decay_rate
        updated = removed = failed = 0

        with self._lock:
            for key in sorted(self._edges, key=_sort_key):
                edge = self._edges[key]
                try:
                    elapsed = now - edge.decay_anchor
                    periods = math.floor(elapsed / period)
                    if periods < 1:
                        continue
                    edge.weight = edge.weight * factor ** periods
                    edge.decay_anchor = edge.decay_anchor + periods * period
                    if edge.weight < self.config.weight_floor:
                        del self._edges[key]
                        removed += 1
                    else:
                        updated += 1
                except (TypeError, ValueError, OverflowError):
                    failed += 1
                    logger.exception("Decay failed for edge %s; retrying next pass", key)

        logger.info("Decay pass: %d updated, %d removed, %d failed", updated, removed, failed)
        return DecayResult(updated, removed, failed)

    def subgraph_above(self, min_weight: float, now: Optional[datetime] = None) -> GraphSnapshot:
        """Read-only copy of every edge with ``weight >= min_weight``."""
        with self._lock:
            edges = [e.copy() for e in self._edges.values() if e.weight >= min_weight]
        edges.sort(key=lambda e: _sort_key(e.key))
        return GraphSnapshot(taken_at=now or utcnow(), edges=tuple(edges), min_weight=min_weight)

    def snapshot(self, now: Optional[datetime] = None) -> GraphSnapshot:
        return self.subgraph_above(0.0, now=now)

    def get_edge(self, user_a: str, user_b: str, edge_type: EdgeType | str) -> Optional[Edge]:
        a, b = canonical_pair(user_a, user_b)
        with self._lock:
            edge = self._edges.get((a, b, EdgeType.parse(edge_type)))
            return edge.copy() if edge else None

    def edges_for(self, user_id: str) -> List[Edge]:
        with self._lock:
            found = [e.copy() for e in self._edges.values() if e.touches(user_id)]
        return sorted(found, key=lambda e: _sort_key(e.key))

    def remove_user(self, user_id: str) -> int:
        """Drop every edge touching *user_id*; returns the number removed."""
        with self._lock:
            doomed = [k for k, e in self._edges.items() if e.touches(user_id)]
            for key in doomed:
                del self._edges[key]
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._edges)

    # ── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _parse_type(edge_type: EdgeType | str) -> EdgeType:
        try:
            return EdgeType.parse(edge_type)
        except ValueError:
            raise SignalIngestionError(f"Unknown edge type: {edge_type!r}") from None

    @staticmethod
    def _validate_pair(user_a: str, user_b: str):
        if not isinstance(user_a, str) or not isinstance(user_b, str):
            raise SignalIngestionError("Account ids must be strings.")
        user_a, user_b = user_a.strip(), user_b.strip()
        if not user_a or not user_b:
            raise SignalIngestionError("Account ids must be non-empty.")
        if user_a == user_b:
            raise SignalIngestionError(f"Self-edge rejected for account {user_a}.")
        return canonical_pair(user_a, user_b)

    @staticmethod
    def _validate_contribution(contribution: float) -> float:
        try:
            value = float(contribution)
        except (TypeError, ValueError):
            raise SignalIngestionError(f"Contribution is not a number: {contribution!r}") from None
        if not math.isfinite(value) or value < 0.0 or value > 1.0:
            raise SignalIngestionError(f"Contribution must be within [0, 1], got {value}.")
        return value

    @staticmethod
    def _validate_time(now: Optional[datetime]) -> datetime:
        if now is None:
            return utcnow()
        if not isinstance(now, datetime):
            raise SignalIngestionError(f"Observation time is not a datetime: {now!r}")
        return as_utc(now)


def _sort_key(key: EdgeKey):
    return (key[0], key[1], key[2].value)
