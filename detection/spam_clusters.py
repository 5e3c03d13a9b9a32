"""
spam_clusters.py - Commercial spam / bot farm detection.

Farms register many look-alike accounts in a short time, blast outbound
messages that nobody answers, and never start identity verification.

Detection steps
---------------
1. Sort accounts by creation time and compare every pair created within
   ``max_creation_window`` of each other (sliding window).
2. Link a pair when bio similarity (token-sort ratio) >= 0.7 or profile
   similarity (fraction of matching non-empty attributes) >= 0.6.
3. Union linked accounts into candidates of at least ``min_cluster_size``.
4. Score: rapid creation, similarity, mass messaging, low reply rate and
   missing KYC progress, with the shared multi-signal bonus.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from rapidfuzz import fuzz
from rapidfuzz import utils as fuzz_utils

from detection.models import (
    Cluster,
    ClusterKind,
    ClusterPattern,
    RiskLevel,
    cluster_signature,
    make_cluster_id,
)
from detection.scoring import clip01, saturate, score_components
from graph.models import EdgeType, GraphSnapshot
from utils.config import SpamDetectorConfig
from utils.errors import DetectionError

logger = logging.getLogger(__name__)

REQUIRED_ACCOUNT_COLUMNS = [
    "user_id",
    "created_at",
    "bio",
    "outbound_messages",
    "inbound_replies",
    "kyc_progress",
]

# Snapshot edge types reported as shared infrastructure.
INFRASTRUCTURE_EDGE_TYPES = (EdgeType.DEVICE, EdgeType.NETWORK)


# ── Public API ───────────────────────────────────────────────────────────────

def detect_spam_clusters(
    accounts: pd.DataFrame,
    snapshot: Optional[GraphSnapshot] = None,
    config: Optional[SpamDetectorConfig] = None,
) -> List[Cluster]:
    """Detect spam clusters among account profiles.

    Parameters
    ----------
    accounts : pd.DataFrame
        One row per account (see ``REQUIRED_ACCOUNT_COLUMNS`` plus the
        configured profile attribute columns, which may be absent).
    snapshot : GraphSnapshot or None
        Used for shared-infrastructure evidence and the detection time.
    config : SpamDetectorConfig or None

    Returns
    -------
    list[Cluster]
        Clusters in the LOW band or above, by descending probability.

    Raises
    ------
    DetectionError
        If required columns are missing.
    """
    config = config or SpamDetectorConfig()
    missing = [c for c in REQUIRED_ACCOUNT_COLUMNS if c not in accounts.columns]
    if missing:
        raise DetectionError("spam", f"accounts missing columns: {', '.join(missing)}")

    if accounts.empty:
        return []

    df = _prepare(accounts, config)
    links, best_similarity = _similarity_links(df, config)
    groups = _group_linked(links)

    detected_at = snapshot.taken_at if snapshot is not None else pd.Timestamp.now(tz="UTC").to_pydatetime()
    infra = _infrastructure_pairs(snapshot)

    clusters: List[Cluster] = []
    candidates = 0
    for members in groups:
        if len(members) < config.min_cluster_size:
            continue
        candidates += 1
        cluster = _score_candidate(members, df, links, best_similarity, infra, detected_at, config)
        if cluster is not None:
            clusters.append(cluster)

    clusters.sort(key=lambda c: (-c.probability, c.signature))
    logger.info(
        "Spam detection: %d accounts, %d links, %d candidates, %d clusters reported",
        len(df), len(links), candidates, len(clusters),
    )
    return clusters


def bio_similarity(a: str, b: str) -> float:
    """Token-sort ratio of two bios in [0, 1]; empty bios never match."""
    if not a or not b:
        return 0.0
    return fuzz.token_sort_ratio(a, b, processor=fuzz_utils.default_process) / 100.0


def profile_similarity(a: Sequence[str], b: Sequence[str]) -> float:
    """Fraction of attributes that are non-empty and equal in both profiles.

    The denominator counts attributes present on at least one side, so two
    mostly-empty profiles do not look alike by default.
    """
    considered = matched = 0
    for x, y in zip(a, b):
        if not x and not y:
            continue
        considered += 1
        if x and y and x == y:
            matched += 1
    return matched / considered if considered else 0.0


# ── Internal helpers ─────────────────────────────────────────────────────────

def _prepare(accounts: pd.DataFrame, config: SpamDetectorConfig) -> pd.DataFrame:
    df = accounts.copy()
    df["user_id"] = df["user_id"].astype(str)
    df["created_at"] = pd.to_datetime(df["created_at"], utc=True)
    df["bio"] = df["bio"].fillna("").astype(str)
    for col in config.profile_fields:
        if col not in df.columns:
            df[col] = ""
        df[col] = df[col].fillna("").astype(str).str.strip().str.lower()
    for col in ("outbound_messages", "inbound_replies"):
        df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0).clip(lower=0)
    df["kyc_progress"] = pd.to_numeric(df["kyc_progress"], errors="coerce").fillna(0.0)
    df = df.drop_duplicates(subset="user_id", keep="last")
    return df.sort_values(["created_at", "user_id"]).reset_index(drop=True)


def _similarity_links(
    df: pd.DataFrame, config: SpamDetectorConfig
) -> Tuple[Dict[Tuple[str, str], float], Dict[str, float]]:
    """Compare pairs inside the creation window; return linked pairs."""
    ids = df["user_id"].tolist()
    bios = df["bio"].tolist()
    profiles = list(zip(*(df[c].tolist() for c in config.profile_fields)))
    created = df["created_at"].dt.tz_localize(None).to_numpy()

    window = np.timedelta64(int(config.max_creation_window.total_seconds()), "s")
    # last index (exclusive) whose creation time is within the window of i
    window_end = np.searchsorted(created, created + window, side="right")

    links: Dict[Tuple[str, str], float] = {}
    best: Dict[str, float] = defaultdict(float)
    for i in range(len(ids)):
        for j in range(i + 1, int(window_end[i])):
            bio = bio_similarity(bios[i], bios[j])
            profile = profile_similarity(profiles[i], profiles[j])
            if bio < config.bio_similarity_threshold and profile < config.profile_similarity_threshold:
                continue
            score = max(bio, profile)
            pair = (ids[i], ids[j]) if ids[i] < ids[j] else (ids[j], ids[i])
            links[pair] = score
            best[ids[i]] = max(best[ids[i]], score)
            best[ids[j]] = max(best[ids[j]], score)
    return links, best


def _group_linked(links: Dict[Tuple[str, str], float]) -> List[Tuple[str, ...]]:
    """Merge linked pairs into groups via Union-Find."""
    parent: Dict[str, str] = {}

    def find(x: str) -> str:
        while parent.get(x, x) != x:
            parent[x] = parent.get(parent[x], parent[x])  # path compression
            x = parent[x]
        return x

    def union(a: str, b: str) -> None:
        ra, rb = find(a), find(b)
        if ra != rb:
            # smaller id becomes the root so grouping is order-independent
            if ra < rb:
                parent[rb] = ra
            else:
                parent[ra] = rb

    for a, b in sorted(links):
        union(a, b)

    groups: Dict[str, List[str]] = defaultdict(list)
    for node in sorted({n for pair in links for n in pair}):
        groups[find(node)].append(node)
    return sorted(tuple(sorted(g)) for g in groups.values())


def _infrastructure_pairs(snapshot: Optional[GraphSnapshot]) -> Dict[Tuple[str, str], List[str]]:
    pairs: Dict[Tuple[str, str], List[str]] = defaultdict(list)
    if snapshot is None:
        return pairs
    for edge in snapshot:
        if edge.edge_type in INFRASTRUCTURE_EDGE_TYPES:
            pairs[(edge.user_a, edge.user_b)].append(edge.edge_type.value)
    return pairs


def _score_candidate(
    members: Tuple[str, ...],
    df: pd.DataFrame,
    links: Dict[Tuple[str, str], float],
    best_similarity: Dict[str, float],
    infra: Dict[Tuple[str, str], List[str]],
    detected_at,
    config: SpamDetectorConfig,
) -> Optional[Cluster]:
    rows = df[df["user_id"].isin(members)]
    member_set = set(members)

    window_hours = config.max_creation_window.total_seconds() / 3600.0
    span_hours = (rows["created_at"].max() - rows["created_at"].min()).total_seconds() / 3600.0
    similarity = math.fsum(best_similarity[m] for m in members) / len(members)
    outbound = float(rows["outbound_messages"].sum())
    inbound = float(rows["inbound_replies"].sum())
    reply_rate = clip01(inbound / outbound) if outbound > 0 else 0.0
    kyc_rate = float((rows["kyc_progress"] > 0).mean())

    internal_links = {p: s for p, s in links.items() if p[0] in member_set and p[1] in member_set}
    shared_infra = sum(len(types) for pair, types in infra.items() if pair[0] in member_set and pair[1] in member_set)

    components = {
        "rapid_creation": clip01(1.0 - span_hours / window_hours),
        "similarity": similarity,
        "mass_messaging": saturate(outbound, config.min_outbound_messages),
        # with nothing sent there is no reply rate to judge
        "low_reply_rate": 1.0 - reply_rate if outbound > 0 else 0.0,
        "no_kyc": 1.0 - kyc_rate,
    }
    assessment = score_components(
        components,
        config.weights,
        config.bands,
        bonus=config.multi_signal_bonus,
        min_signals=config.min_signal_types,
    )
    if assessment.risk_level == RiskLevel.NONE:
        logger.debug("Spam candidate %s below LOW band (p=%.3f)", members, assessment.probability)
        return None

    degree: Dict[str, int] = defaultdict(int)
    for a, b in internal_links:
        degree[a] += 1
        degree[b] += 1
    centroid = min(members, key=lambda m: (-degree[m], m))

    characteristics = {
        "member_count": len(members),
        "creation_window_hours": round(span_hours, 4),
        "similarity": round(similarity, 6),
        "similarity_links": len(internal_links),
        "outbound_message_count": int(outbound),
        "inbound_reply_count": int(inbound),
        "reply_rate": round(reply_rate, 6),
        "kyc_progress_rate": round(kyc_rate, 6),
        "shared_infrastructure_edges": shared_infra,
        "components": assessment.contributions,
        "base_probability": assessment.base_probability,
        "bonus_applied": assessment.bonus_applied,
    }

    signature = cluster_signature(members)
    bot_span_hours = config.bot_network_span.total_seconds() / 3600.0
    return Cluster(
        cluster_id=make_cluster_id(ClusterKind.SPAM_CLUSTER, signature, detected_at),
        kind=ClusterKind.SPAM_CLUSTER,
        member_ids=tuple(members),
        signature=signature,
        probability=assessment.probability,
        risk_level=assessment.risk_level,
        detected_at=detected_at,
        characteristics=characteristics,
        signals=_evidence(characteristics, assessment.signals_present),
        pattern=ClusterPattern.BOT_NETWORK if span_hours < bot_span_hours else ClusterPattern.COORDINATED_SPAM,
        centroid=centroid,
    )


def _evidence(characteristics: Dict[str, object], present: List[str]) -> List[str]:
    signals = [
        f"rapid_creation: {characteristics['member_count']} accounts within "
        f"{characteristics['creation_window_hours']:.1f}h",
        f"similarity: mean best match {characteristics['similarity']:.2f} "
        f"over {characteristics['similarity_links']} links",
        f"mass_messaging: {characteristics['outbound_message_count']} outbound messages",
        f"reply_rate: {characteristics['reply_rate']:.2%}",
        f"kyc_progress_rate: {characteristics['kyc_progress_rate']:.2%}",
    ]
    if characteristics["shared_infrastructure_edges"]:
        signals.append(f"shared_infrastructure: {characteristics['shared_infrastructure_edges']} edges")
    if len(present) >= 2:
        signals.append(f"multi_signal: {', '.join(present)}")
    return signals
