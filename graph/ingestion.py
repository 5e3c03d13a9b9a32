"""
ingestion.py - Translate external signals into edge upserts.

Collaborators (payment system, device trust, network telemetry, behavior
similarity jobs) report ``(type, user_a, user_b, strength)`` observations.
Each type maps strength to an edge contribution:

Type         | Contribution
DEVICE       | 1.0 (fixed)
ENFORCEMENT  | 0.9 (fixed)
NETWORK      | 0.7 (fixed)
PAYMENT      | 0.9 * strength
BEHAVIOR     | 0.9 * strength
SOCIAL       | strength (audience-overlap fraction)

Batch ingestion is fail-isolated per row: a bad row is logged and counted,
never retried synchronously, and never blocks the rest of the batch.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from graph.edge_store import EdgeStore
from graph.models import Edge, EdgeType
from utils.errors import SignalIngestionError

logger = logging.getLogger(__name__)


# ── Contribution table ───────────────────────────────────────────────────────
FIXED_CONTRIBUTIONS: Dict[EdgeType, float] = {
    EdgeType.DEVICE: 1.0,
    EdgeType.ENFORCEMENT: 0.9,
    EdgeType.NETWORK: 0.7,
}
VARIABLE_SCALE: Dict[EdgeType, float] = {
    EdgeType.PAYMENT: 0.9,
    EdgeType.BEHAVIOR: 0.9,
    EdgeType.SOCIAL: 1.0,
}

SIGNAL_COLUMNS = ["edge_type", "user_a", "user_b", "strength", "observed_at"]


@dataclass
class IngestionReport:
    received: int = 0
    accepted: int = 0
    rejected: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "errors": list(self.errors),
        }


def contribution_for(edge_type: EdgeType | str, strength: float) -> float:
    """Map a raw signal strength in [0, 1] to an edge contribution."""
    try:
        edge_type = EdgeType.parse(edge_type)
    except ValueError:
        raise SignalIngestionError(f"Unknown edge type: {edge_type!r}") from None

    if edge_type in FIXED_CONTRIBUTIONS:
        return FIXED_CONTRIBUTIONS[edge_type]

    try:
        strength = float(strength)
    except (TypeError, ValueError):
        raise SignalIngestionError(f"Signal strength is not a number: {strength!r}") from None
    if not math.isfinite(strength) or strength < 0.0 or strength > 1.0:
        raise SignalIngestionError(f"Signal strength must be within [0, 1], got {strength}.")
    return VARIABLE_SCALE[edge_type] * strength


def record_signal(
    store: EdgeStore,
    edge_type: EdgeType | str,
    user_a: str,
    user_b: str,
    strength: float,
    observed_at: Optional[datetime] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Edge:
    """Record one observation; raises ``SignalIngestionError`` on bad input."""
    contribution = contribution_for(edge_type, strength)
    return store.upsert_edge(user_a, user_b, edge_type, contribution, metadata=metadata, now=observed_at)


def ingest_signals(store: EdgeStore, signals: pd.DataFrame) -> IngestionReport:
    """Ingest a batch of signals, one row at a time.

    Parameters
    ----------
    store : EdgeStore
        Target store.
    signals : pd.DataFrame
        Columns ``edge_type, user_a, user_b, strength, observed_at`` and an
        optional ``metadata`` column of dicts.

    Returns
    -------
    IngestionReport
    """
    report = IngestionReport(received=len(signals))
    missing = [c for c in SIGNAL_COLUMNS if c not in signals.columns]
    if missing:
        raise SignalIngestionError(f"Signal batch is missing columns: {', '.join(missing)}")

    has_metadata = "metadata" in signals.columns
    for idx, row in enumerate(signals.itertuples(index=False)):
        metadata = getattr(row, "metadata", None) if has_metadata else None
        if not isinstance(metadata, Mapping):
            metadata = None
        try:
            record_signal(
                store,
                row.edge_type,
                row.user_a,
                row.user_b,
                row.strength,
                observed_at=_to_datetime(row.observed_at),
                metadata=metadata,
            )
            report.accepted += 1
        except SignalIngestionError as exc:
            report.rejected += 1
            report.errors.append(f"row {idx}: {exc}")
            logger.warning("Rejected signal row %d: %s", idx, exc)

    logger.info(
        "Ingested %d/%d signals (%d rejected)", report.accepted, report.received, report.rejected
    )
    return report


def _to_datetime(value: Any) -> datetime:
    if value is None or (not isinstance(value, datetime) and pd.isna(value)):
        raise SignalIngestionError("Signal has no observation time.")
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError):
        raise SignalIngestionError(f"Unparsable observation time: {value!r}") from None
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.to_pydatetime()
