"""Shared fixtures for the abuse-graph engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from detection.models import Cluster, ClusterKind, RiskLevel, cluster_signature, make_cluster_id
from enforcement.cases import CaseManager
from enforcement.engine import EnforcementEngine
from enforcement.ledger import InMemoryLedger
from enforcement.notifications import QueueNotifier
from graph.edge_store import EdgeStore
from pipeline.scheduler import PipelineScheduler
from utils.config import EngineConfig

T0 = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def store():
    return EdgeStore()


@pytest.fixture
def notifier():
    return QueueNotifier()


@pytest.fixture
def ledger():
    ledger = InMemoryLedger()
    ledger.add_entry("E1", "u1", "120.50", T0 - timedelta(days=10), settled=True)
    ledger.add_entry("E2", "u1", "30.00", T0 - timedelta(days=2))
    ledger.add_entry("E3", "u2", "75.25", T0 - timedelta(days=5), settled=True)
    return ledger


@pytest.fixture
def engine(notifier, ledger):
    return EnforcementEngine(ledger=ledger, notifier=notifier)


@pytest.fixture
def cases(engine, notifier):
    return CaseManager(engine=engine, notifier=notifier)


def make_cluster(
    members,
    risk_level=RiskLevel.HIGH,
    probability=0.9,
    kind=ClusterKind.COLLUSION_RING,
    detected_at=T0,
):
    """Hand-built cluster for enforcement and case tests."""
    members = tuple(sorted(members))
    signature = cluster_signature(members)
    return Cluster(
        cluster_id=make_cluster_id(kind, signature, detected_at),
        kind=kind,
        member_ids=members,
        signature=signature,
        probability=probability,
        risk_level=risk_level,
        detected_at=detected_at,
        signals=["shared_devices: 3 internal DEVICE edges"],
    )


def add_ring(store, members, now, payments=True):
    """Members share one device; optionally a payment chain between them."""
    for i, a in enumerate(members):
        for b in members[i + 1:]:
            store.upsert_edge(a, b, "DEVICE", 1.0, now=now)
    if payments:
        for a, b in zip(members, members[1:]):
            store.upsert_edge(a, b, "PAYMENT", 0.9, now=now)


def farm_accounts(start, n=10, spacing=timedelta(minutes=12), outbound=20, replies=0, kyc=0.0, prefix="BOT"):
    rows = []
    for i in range(n):
        rows.append({
            "user_id": f"{prefix}_{i:02d}",
            "created_at": start + spacing * i,
            "bio": "Earn 500 dollars a day from home DM me for crypto signals",
            "display_name_pattern": "firstname+4digits",
            "photo_hash": "img-stock-07",
            "location": "",
            "age_bracket": "18-24",
            "link_domain": "quick-cash.example",
            "outbound_messages": outbound,
            "inbound_replies": replies,
            "kyc_progress": kyc,
        })
    return pd.DataFrame(rows)


@pytest.fixture
def accounts_holder():
    return {"df": pd.DataFrame(columns=["user_id", "created_at", "bio", "outbound_messages",
                                        "inbound_replies", "kyc_progress"])}


@pytest.fixture
def scheduler(store, engine, cases, accounts_holder):
    return PipelineScheduler(
        store, engine, cases, accounts_provider=lambda: accounts_holder["df"], config=EngineConfig()
    )
