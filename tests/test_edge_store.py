"""Tests for the edge store: canonicalization, ceilings, decay."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from graph.edge_store import EdgeStore
from graph.ingestion import record_signal
from graph.models import EdgeType
from utils.config import EdgeStoreConfig
from utils.errors import ConfigurationError, SignalIngestionError


def test_edges_are_canonicalized(store, t0):
    store.upsert_edge("zed", "amy", EdgeType.DEVICE, 1.0, now=t0)
    store.upsert_edge("amy", "zed", "device", 1.0, now=t0)

    assert len(store) == 1
    edge = store.get_edge("zed", "amy", "DEVICE")
    assert (edge.user_a, edge.user_b) == ("amy", "zed")
    assert edge.observation_count == 2


def test_same_pair_keeps_one_edge_per_type(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0)
    store.upsert_edge("a", "b", "PAYMENT", 0.5, now=t0)

    assert len(store) == 2
    assert {e.edge_type for e in store.edges_for("a")} == {EdgeType.DEVICE, EdgeType.PAYMENT}


def test_upsert_takes_max_and_respects_ceiling(store, t0):
    store.upsert_edge("a", "b", "PAYMENT", 0.4, now=t0)
    store.upsert_edge("a", "b", "PAYMENT", 0.2, now=t0 + timedelta(hours=1))
    assert store.get_edge("a", "b", "PAYMENT").weight == pytest.approx(0.4)

    store.upsert_edge("a", "b", "PAYMENT", 1.0, now=t0 + timedelta(hours=2))
    assert store.get_edge("a", "b", "PAYMENT").weight == pytest.approx(0.9)

    store.upsert_edge("a", "c", "NETWORK", 1.0, now=t0)
    assert store.get_edge("a", "c", "NETWORK").weight == pytest.approx(0.7)


def test_reinforcement_refreshes_timestamp_and_merges_metadata(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, metadata={"device_id": "d1"}, now=t0)
    later = t0 + timedelta(days=3)
    edge = store.upsert_edge("a", "b", "DEVICE", 1.0, metadata={"ip": "10.0.0.1"}, now=later)

    assert edge.last_reinforced_at == later
    assert edge.created_at == t0
    assert edge.metadata == {"device_id": "d1", "ip": "10.0.0.1"}


def test_out_of_order_observation_does_not_move_timestamp_back(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0)
    edge = store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0 - timedelta(days=1))
    assert edge.last_reinforced_at == t0


@pytest.mark.parametrize(
    "user_a,user_b,edge_type,contribution",
    [
        ("", "b", "DEVICE", 1.0),
        ("a", "a", "DEVICE", 1.0),
        ("a", "b", "TELEPATHY", 1.0),
        ("a", "b", "PAYMENT", 1.5),
        ("a", "b", "PAYMENT", -0.1),
        ("a", "b", "PAYMENT", float("nan")),
        ("a", "b", "PAYMENT", "lots"),
    ],
)
def test_invalid_upserts_raise_ingestion_error(store, t0, user_a, user_b, edge_type, contribution):
    with pytest.raises(SignalIngestionError):
        store.upsert_edge(user_a, user_b, edge_type, contribution, now=t0)
    assert len(store) == 0


def test_returned_edge_is_a_copy(store, t0):
    edge = store.upsert_edge("a", "b", "DEVICE", 1.0, metadata={"k": 1}, now=t0)
    edge.weight = 0.0
    edge.metadata["k"] = 2
    stored = store.get_edge("a", "b", "DEVICE")
    assert stored.weight == 1.0
    assert stored.metadata == {"k": 1}


# ── Decay ────────────────────────────────────────────────────────────────────

def test_zero_elapsed_time_does_not_decay(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0)
    result = store.decay_all(t0)
    assert result.edges_updated == 0
    assert store.get_edge("a", "b", "DEVICE").weight == 1.0


def test_no_double_decay_within_a_period(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0)
    store.decay_all(t0 + timedelta(days=31))
    once = store.get_edge("a", "b", "DEVICE").weight
    store.decay_all(t0 + timedelta(days=32))
    store.decay_all(t0 + timedelta(days=45))
    assert store.get_edge("a", "b", "DEVICE").weight == once == pytest.approx(0.95)


def test_decay_applies_whole_elapsed_periods(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0)
    result = store.decay_all(t0 + timedelta(days=90))
    assert result.edges_updated == 1
    assert store.get_edge("a", "b", "DEVICE").weight == pytest.approx(0.95 ** 3)


def test_successive_decay_strictly_decreases_until_removal(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0)
    previous = 1.0
    now = t0
    for _ in range(200):
        now += timedelta(days=30)
        store.decay_all(now)
        edge = store.get_edge("a", "b", "DEVICE")
        if edge is None:
            break
        assert edge.weight < previous
        previous = edge.weight
    assert store.get_edge("a", "b", "DEVICE") is None
    assert previous >= 0.1


def test_weak_edges_are_removed(store, t0):
    store.upsert_edge("a", "b", "SOCIAL", 0.105, now=t0)
    result = store.decay_all(t0 + timedelta(days=30))
    assert result.edges_removed == 1
    assert len(store) == 0


def test_reinforcement_resets_decay_clock(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0)
    store.decay_all(t0 + timedelta(days=60))
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0 + timedelta(days=61))
    assert store.get_edge("a", "b", "DEVICE").weight == 1.0

    store.decay_all(t0 + timedelta(days=80))
    assert store.get_edge("a", "b", "DEVICE").weight == 1.0


def test_reinforcement_never_exceeds_ceiling_after_decay(store, t0):
    store.upsert_edge("a", "b", "PAYMENT", 0.9, now=t0)
    store.decay_all(t0 + timedelta(days=30))
    store.upsert_edge("a", "b", "PAYMENT", 1.0, now=t0 + timedelta(days=31))
    assert store.get_edge("a", "b", "PAYMENT").weight == pytest.approx(0.9)


def test_naive_observation_times_are_stored_as_utc_and_decay(store, t0):
    naive = t0.replace(tzinfo=None)
    edge = record_signal(store, "DEVICE", "a", "b", 1.0, observed_at=naive)
    assert edge.last_reinforced_at == t0

    for days, expected in ((30, 0.95), (60, 0.95 ** 2), (90, 0.95 ** 3)):
        result = store.decay_all(t0 + timedelta(days=days))
        assert result.edges_failed == 0
        assert store.get_edge("a", "b", "DEVICE").weight == pytest.approx(expected)

    later = record_signal(store, "DEVICE", "a", "b", 1.0, observed_at=t0 + timedelta(days=91))
    assert later.last_reinforced_at == t0 + timedelta(days=91)


def test_naive_decay_time_is_treated_as_utc(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0)
    result = store.decay_all((t0 + timedelta(days=30)).replace(tzinfo=None))
    assert result == (1, 0, 0)


def test_non_datetime_observation_time_is_rejected(store):
    with pytest.raises(SignalIngestionError):
        store.upsert_edge("a", "b", "DEVICE", 1.0, now="yesterday")


def test_decay_failures_are_counted_and_isolated(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0)
    store.upsert_edge("c", "d", "DEVICE", 1.0, now=t0)
    # corrupt one edge's anchor so the subtraction fails
    store._edges[("a", "b", EdgeType.DEVICE)].decay_anchor = None

    result = store.decay_all(t0 + timedelta(days=30))

    assert result.edges_failed == 1
    assert result.edges_updated == 1
    assert store.get_edge("c", "d", "DEVICE").weight == pytest.approx(0.95)


# ── Snapshots ────────────────────────────────────────────────────────────────

def test_subgraph_above_filters_and_is_isolated_from_writes(store, t0):
    store.upsert_edge("a", "b", "DEVICE", 1.0, now=t0)
    store.upsert_edge("a", "c", "SOCIAL", 0.3, now=t0)

    snap = store.subgraph_above(0.5, now=t0)
    store.upsert_edge("c", "d", "DEVICE", 1.0, now=t0)
    store.remove_user("a")

    assert [(e.user_a, e.user_b) for e in snap] == [("a", "b")]
    assert snap.nodes == ("a", "b")
    assert len(store) == 1


def test_snapshot_order_is_independent_of_insertion_order(t0):
    first, second = EdgeStore(), EdgeStore()
    pairs = [("c", "d", "PAYMENT"), ("a", "b", "DEVICE"), ("a", "b", "BEHAVIOR")]
    for a, b, kind in pairs:
        first.upsert_edge(a, b, kind, 0.8, now=t0)
    for a, b, kind in reversed(pairs):
        second.upsert_edge(b, a, kind, 0.8, now=t0)

    assert [e.key for e in first.snapshot(t0)] == [e.key for e in second.snapshot(t0)]


def test_concurrent_upserts_do_not_lose_edges(store, t0):
    def writer(offset):
        for i in range(200):
            store.upsert_edge(f"u{offset}", f"v{i}", "SOCIAL", 0.5, now=t0)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(store) == 800


def test_invalid_store_config_is_rejected():
    with pytest.raises(ConfigurationError):
        EdgeStore(EdgeStoreConfig(decay_rate=1.5))
