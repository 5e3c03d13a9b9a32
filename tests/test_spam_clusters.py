"""Tests for spam cluster detection."""

from __future__ import annotations

from datetime import timedelta

import pandas as pd
import pytest

from conftest import farm_accounts
from detection.models import ClusterKind, ClusterPattern, RiskLevel
from detection.spam_clusters import (
    REQUIRED_ACCOUNT_COLUMNS,
    bio_similarity,
    detect_spam_clusters,
    profile_similarity,
)
from utils.errors import DetectionError

LEGIT_BIOS = [
    "Marathon runner and amateur astronomer living near the coast",
    "Pastry chef who collects vinyl records from the seventies",
    "Civil engineer, dad of two, weekend fly fishing enthusiast",
    "Nurse on night shifts, learning Portuguese and oil painting",
]


def legit_accounts(start):
    return pd.DataFrame(
        [
            {
                "user_id": f"LEGIT_{i}",
                "created_at": start + timedelta(minutes=30 * i),
                "bio": bio,
                "photo_hash": f"img-own-{i}",
                "outbound_messages": 15,
                "inbound_replies": 9,
                "kyc_progress": 1.0,
            }
            for i, bio in enumerate(LEGIT_BIOS)
        ]
    )


def test_bot_farm_is_high_risk_bot_network(store, t0):
    accounts = farm_accounts(t0 - timedelta(days=1), n=10)
    # 6 replies over 200 messages is a 3% reply rate
    accounts.loc[:5, "inbound_replies"] = 1
    snapshot = store.snapshot(t0)

    clusters = detect_spam_clusters(accounts, snapshot)

    assert len(clusters) == 1
    cluster = clusters[0]
    assert cluster.kind == ClusterKind.SPAM_CLUSTER
    assert cluster.size == 10
    assert cluster.probability >= 0.85
    assert cluster.risk_level == RiskLevel.HIGH
    assert cluster.pattern == ClusterPattern.BOT_NETWORK
    assert cluster.detected_at == t0
    assert cluster.characteristics["outbound_message_count"] == 200
    assert cluster.characteristics["reply_rate"] == pytest.approx(0.03)
    assert cluster.characteristics["kyc_progress_rate"] == 0.0
    assert cluster.centroid == "BOT_00"


def test_unrelated_accounts_are_not_clustered(store, t0):
    clusters = detect_spam_clusters(legit_accounts(t0 - timedelta(days=2)), store.snapshot(t0))
    assert clusters == []


def test_accounts_outside_the_creation_window_are_not_compared(store, t0):
    early = farm_accounts(t0 - timedelta(days=10), n=5, prefix="EARLY")
    late = farm_accounts(t0 - timedelta(days=4), n=5, prefix="LATE")
    clusters = detect_spam_clusters(pd.concat([early, late], ignore_index=True), store.snapshot(t0))

    assert sorted(c.member_ids[0] for c in clusters) == ["EARLY_00", "LATE_00"]
    assert all(c.size == 5 for c in clusters)


def test_slow_coordinated_signups_are_coordinated_spam(store, t0):
    accounts = farm_accounts(t0 - timedelta(days=3), n=4, spacing=timedelta(hours=12), prefix="PROMO")

    clusters = detect_spam_clusters(accounts, store.snapshot(t0))

    assert len(clusters) == 1
    assert clusters[0].pattern == ClusterPattern.COORDINATED_SPAM
    assert clusters[0].risk_level == RiskLevel.MEDIUM


def test_shared_infrastructure_is_reported_as_evidence(store, t0):
    accounts = farm_accounts(t0 - timedelta(days=1), n=4)
    store.upsert_edge("BOT_00", "BOT_01", "DEVICE", 1.0, now=t0)
    store.upsert_edge("BOT_02", "BOT_03", "NETWORK", 1.0, now=t0)

    cluster = detect_spam_clusters(accounts, store.snapshot(t0))[0]

    assert cluster.characteristics["shared_infrastructure_edges"] == 2
    assert any(s.startswith("shared_infrastructure") for s in cluster.signals)


def test_detection_is_deterministic(store, t0):
    accounts = pd.concat(
        [farm_accounts(t0 - timedelta(days=1), n=6), legit_accounts(t0 - timedelta(days=1))],
        ignore_index=True,
    )
    shuffled = accounts.sample(frac=1.0, random_state=7).reset_index(drop=True)
    snapshot = store.snapshot(t0)

    first = detect_spam_clusters(accounts, snapshot)
    second = detect_spam_clusters(shuffled, snapshot)

    assert [(c.cluster_id, c.probability) for c in first] == [(c.cluster_id, c.probability) for c in second]


def test_missing_columns_raise_detection_error(store, t0):
    with pytest.raises(DetectionError) as excinfo:
        detect_spam_clusters(pd.DataFrame([{"user_id": "x"}]), store.snapshot(t0))
    assert excinfo.value.detector == "spam"


def test_empty_accounts_yield_no_clusters(store, t0):
    assert detect_spam_clusters(pd.DataFrame(columns=REQUIRED_ACCOUNT_COLUMNS), store.snapshot(t0)) == []


def test_similarity_helpers():
    assert bio_similarity("Earn money FAST from home", "from home earn money fast") == 1.0
    assert bio_similarity("", "anything") == 0.0
    assert profile_similarity(("a", "b", "", ""), ("a", "c", "", "")) == 0.5
    assert profile_similarity(("", ""), ("", "")) == 0.0
