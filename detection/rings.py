"""
rings.py - Collusion ring detection.

Finds groups of accounts bound together by strong edges (shared devices,
payment loops, shared networks, ...) and scores how likely they are to be
one operator or a coordinated ring.

Algorithm
---------
1. Keep typed edges with ``weight >= strong_edge_threshold`` and collapse
   them into a simple graph.
2. Connected components of that graph; drop those smaller than
   ``min_ring_size``.
3. Per component, over *all* typed edges of the snapshot:
   - isolation_score   = internal edges / edges touching any member
   - shared_device_count, payment_loop_count (internal DEVICE / PAYMENT)
   - avg_internal_weight
4. Score with the shared risk scorer (+bonus when >= 2 edge types link the
   members).  Components in the NONE band are not reported.

Components are visited in sorted order and members are sorted, so the same
snapshot always yields the same clusters with the same probabilities.
"""

from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict
from typing import Dict, List, Optional, Sequence

import networkx as nx

from detection.models import (
    Cluster,
    ClusterKind,
    ClusterPattern,
    RiskLevel,
    cluster_signature,
    make_cluster_id,
)
from detection.scoring import saturate, score_components
from graph.models import Edge, EdgeType, GraphSnapshot
from utils.config import RingDetectorConfig
from utils.graph_builder import build_collapsed_graph

logger = logging.getLogger(__name__)


# ── Public API ───────────────────────────────────────────────────────────────

def detect_rings(
    snapshot: GraphSnapshot,
    config: Optional[RingDetectorConfig] = None,
) -> List[Cluster]:
    """Detect collusion rings in a graph snapshot.

    Parameters
    ----------
    snapshot : GraphSnapshot
        Point-in-time copy of the edge store (all weights).
    config : RingDetectorConfig or None
        Thresholds and weights; defaults when None.

    Returns
    -------
    list[Cluster]
        Rings in the LOW band or above, ordered by descending probability
        then signature.
    """
    config = config or RingDetectorConfig()
    strong = build_collapsed_graph(snapshot, min_weight=config.strong_edge_threshold)

    components = [
        tuple(sorted(c))
        for c in nx.connected_components(strong)
        if len(c) >= config.min_ring_size
    ]
    components.sort()

    incident = _index_incident_edges(snapshot)
    rings: List[Cluster] = []
    for members in components:
        ring = _score_component(members, incident, snapshot, config)
        if ring is not None:
            rings.append(ring)

    rings.sort(key=lambda c: (-c.probability, c.signature))
    logger.info(
        "Ring detection: %d strong components, %d rings reported", len(components), len(rings)
    )
    return rings


def ring_features(members: Sequence[str], snapshot: GraphSnapshot) -> Dict[str, object]:
    """Compute the ring characteristics of an arbitrary member set."""
    return _component_features(tuple(sorted(set(members))), _index_incident_edges(snapshot))


# ── Internal helpers ─────────────────────────────────────────────────────────

def _index_incident_edges(snapshot: GraphSnapshot) -> Dict[str, List[Edge]]:
    incident: Dict[str, List[Edge]] = defaultdict(list)
    for edge in snapshot:
        incident[edge.user_a].append(edge)
        incident[edge.user_b].append(edge)
    return incident


def _component_features(members: tuple, incident: Dict[str, List[Edge]]) -> Dict[str, object]:
    member_set = set(members)
    touching: Dict[tuple, Edge] = {}
    for member in members:
        for edge in incident.get(member, ()):
            touching[edge.key] = edge

    internal = [
        touching[k]
        for k in sorted(touching, key=lambda k: (k[0], k[1], k[2].value))
        if touching[k].user_a in member_set and touching[k].user_b in member_set
    ]
    type_counts = Counter(e.edge_type for e in internal)

    weighted_degree: Dict[str, float] = {m: 0.0 for m in members}
    for edge in internal:
        weighted_degree[edge.user_a] += edge.weight
        weighted_degree[edge.user_b] += edge.weight
    centroid = min(members, key=lambda m: (-weighted_degree[m], m))

    return {
        "member_count": len(members),
        "internal_edge_count": len(internal),
        "touching_edge_count": len(touching),
        "isolation_score": len(internal) / len(touching) if touching else 0.0,
        "shared_device_count": type_counts.get(EdgeType.DEVICE, 0),
        "payment_loop_count": type_counts.get(EdgeType.PAYMENT, 0),
        "avg_internal_weight": (
            math.fsum(e.weight for e in internal) / len(internal) if internal else 0.0
        ),
        "edge_types": sorted(t.value for t in type_counts),
        "edge_type_counts": {t.value: type_counts[t] for t in sorted(type_counts, key=lambda t: t.value)},
        "centroid": centroid,
    }


def _score_component(
    members: tuple,
    incident: Dict[str, List[Edge]],
    snapshot: GraphSnapshot,
    config: RingDetectorConfig,
) -> Optional[Cluster]:
    features = _component_features(members, incident)

    components = {
        "shared_devices": saturate(features["shared_device_count"], config.device_saturation),
        "payment_loops": saturate(features["payment_loop_count"], config.payment_saturation),
        "isolation": features["isolation_score"],
        "avg_internal_weight": features["avg_internal_weight"],
    }
    assessment = score_components(
        components,
        config.weights,
        config.bands,
        bonus=config.multi_signal_bonus,
        min_signals=config.min_signal_types,
        signals_present=features["edge_types"],
    )
    if assessment.risk_level == RiskLevel.NONE:
        logger.debug("Component %s below LOW band (p=%.3f)", members, assessment.probability)
        return None

    signature = cluster_signature(members)
    characteristics = dict(features)
    characteristics.pop("centroid")
    characteristics["components"] = assessment.contributions
    characteristics["base_probability"] = assessment.base_probability
    characteristics["bonus_applied"] = assessment.bonus_applied

    return Cluster(
        cluster_id=make_cluster_id(ClusterKind.COLLUSION_RING, signature, snapshot.taken_at),
        kind=ClusterKind.COLLUSION_RING,
        member_ids=members,
        signature=signature,
        probability=assessment.probability,
        risk_level=assessment.risk_level,
        detected_at=snapshot.taken_at,
        characteristics=characteristics,
        signals=_evidence(features, assessment.bonus_applied),
        pattern=_pattern(features),
        centroid=features["centroid"],
    )


def _pattern(features: Dict[str, object]) -> ClusterPattern:
    counts: Dict[str, int] = features["edge_type_counts"]
    payments = counts.get(EdgeType.PAYMENT.value, 0)
    others = max((n for t, n in counts.items() if t != EdgeType.PAYMENT.value), default=0)
    return ClusterPattern.SCAM_RING if payments > others else ClusterPattern.MULTI_ACCOUNT


def _evidence(features: Dict[str, object], bonus_applied: bool) -> List[str]:
    signals = []
    if features["shared_device_count"]:
        signals.append(f"shared_devices: {features['shared_device_count']} internal DEVICE edges")
    if features["payment_loop_count"]:
        signals.append(f"payment_loops: {features['payment_loop_count']} internal PAYMENT edges")
    signals.append(
        f"isolation: {features['internal_edge_count']}/{features['touching_edge_count']} "
        f"edges internal ({features['isolation_score']:.2f})"
    )
    signals.append(f"avg_internal_weight: {features['avg_internal_weight']:.2f}")
    if bonus_applied:
        signals.append(f"multi_signal: {', '.join(features['edge_types'])}")
    return signals
