"""Tests for moderation case handling."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import make_cluster
from detection.models import ClusterKind, ClusterStatus, RiskLevel
from enforcement.engine import account_targets
from enforcement.models import CasePriority, CaseResolution, CaseStatus, RestrictionLevel
from utils.errors import CaseNotFoundError, InvalidTransitionError

MEMBERS = ["u1", "u2", "u3"]


def test_new_detection_opens_case_and_queues_review(cases, notifier, t0):
    cluster = make_cluster(MEMBERS, RiskLevel.MEDIUM, 0.7)

    created = cases.register_detections([cluster], t0)

    assert len(created) == 1
    case = created[0]
    assert case.case_id == "CASE_000001"
    assert case.status == CaseStatus.OPEN
    assert case.priority == CasePriority.MEDIUM
    assert case.case_type == ClusterKind.COLLUSION_RING
    assert case.linked_user_ids == ("u1", "u2", "u3")
    assert "shared_devices" in case.evidence_summary
    queued = notifier.drain_review_queue()
    assert [q["case_id"] for q in queued] == ["CASE_000001"]
    assert queued[0]["cluster_id"] == cluster.cluster_id
    assert notifier.drain_review_queue() == []


def test_re_detection_updates_the_open_case(cases, t0):
    first = make_cluster(MEMBERS, RiskLevel.MEDIUM, 0.7, detected_at=t0)
    second = make_cluster(list(reversed(MEMBERS)), RiskLevel.MEDIUM, 0.72, detected_at=t0 + timedelta(days=1))

    cases.register_detections([first], t0)
    created = cases.register_detections([second], t0 + timedelta(days=1))

    assert created == []
    assert len(cases.all_cases()) == 1
    case = cases.get_case("CASE_000001")
    assert case.detection_count == 2
    assert case.cluster_id == second.cluster_id
    assert second.supersedes == first.cluster_id


def test_same_cluster_registered_twice_is_ignored(cases, t0):
    cluster = make_cluster(MEMBERS)
    cases.register_detections([cluster], t0)
    cases.register_detections([cluster], t0)

    assert cases.get_case("CASE_000001").detection_count == 1


def test_higher_band_re_detection_escalates(cases, t0):
    cases.register_detections([make_cluster(MEMBERS, RiskLevel.LOW, 0.4)], t0)
    later = t0 + timedelta(days=1)
    cases.register_detections([make_cluster(MEMBERS, RiskLevel.HIGH, 0.9, detected_at=later)], later)

    case = cases.get_case("CASE_000001")
    assert case.priority == CasePriority.HIGH
    assert case.status == CaseStatus.ESCALATED


def test_resolution_requires_review_first(cases, t0):
    cases.register_detections([make_cluster(MEMBERS)], t0)

    with pytest.raises(InvalidTransitionError):
        cases.resolve("CASE_000001", "CONFIRMED", "mod_a", t0)

    case = cases.start_review("CASE_000001", "mod_a", t0)
    assert case.status == CaseStatus.UNDER_REVIEW
    assert cases.get_cluster(case.cluster_id).status == ClusterStatus.UNDER_REVIEW

    with pytest.raises(InvalidTransitionError):
        cases.start_review("CASE_000001", "mod_b", t0)


def test_confirmed_members_make_later_cases_critical(cases, t0):
    cluster = make_cluster(MEMBERS, RiskLevel.MEDIUM, 0.7)
    cases.register_detections([cluster], t0)
    cases.start_review("CASE_000001", "mod_a", t0)

    resolved = cases.resolve("CASE_000001", "confirmed", "mod_a", t0 + timedelta(hours=1), note="same operator")

    assert resolved.status == CaseStatus.RESOLVED
    assert resolved.resolution == CaseResolution.CONFIRMED
    assert resolved.notes == ["same operator"]
    assert cluster.status == ClusterStatus.CONFIRMED
    assert cases.confirmed_users() == {"u1", "u2", "u3"}

    later = t0 + timedelta(days=2)
    created = cases.register_detections([make_cluster(["u3", "u7", "u8"], RiskLevel.LOW, 0.4, detected_at=later)], later)
    assert created[0].priority == CasePriority.CRITICAL


def test_false_positive_reverses_enforcement_and_clears_signature(cases, engine, t0):
    cluster = make_cluster(MEMBERS)
    engine.apply(account_targets([cluster]), t0)
    cases.register_detections([cluster], t0)
    cases.start_review("CASE_000001", "mod_a", t0)

    cases.resolve("CASE_000001", CaseResolution.FALSE_POSITIVE, "mod_a", t0 + timedelta(hours=3))

    assert cluster.status == ClusterStatus.FALSE_POSITIVE
    assert all(engine.check_restriction(u).level == RestrictionLevel.NONE for u in MEMBERS)
    assert cases.is_cleared(cluster)

    later = t0 + timedelta(days=1)
    again = make_cluster(MEMBERS, detected_at=later)
    assert cases.is_cleared(again)
    created = cases.register_detections([again], later)
    assert created[0].previous_case_id == "CASE_000001"
    assert again.supersedes == cluster.cluster_id


def test_false_positive_only_clears_the_same_kind_of_cluster(cases, t0):
    spam = make_cluster(MEMBERS, RiskLevel.LOW, 0.4, kind=ClusterKind.SPAM_CLUSTER)
    cases.register_detections([spam], t0)
    cases.start_review("CASE_000001", "mod_a", t0)
    cases.resolve("CASE_000001", CaseResolution.FALSE_POSITIVE, "mod_a", t0)

    later = t0 + timedelta(days=1)
    ring = make_cluster(MEMBERS, detected_at=later)
    spam_again = make_cluster(MEMBERS, RiskLevel.LOW, 0.4, kind=ClusterKind.SPAM_CLUSTER, detected_at=later)

    assert ring.signature == spam.signature
    assert not cases.is_cleared(ring)
    assert cases.is_cleared(spam_again)


def test_resolving_twice_is_rejected(cases, t0):
    cases.register_detections([make_cluster(MEMBERS)], t0)
    cases.start_review("CASE_000001", "mod_a", t0)
    cases.resolve("CASE_000001", "FALSE_POSITIVE", "mod_a", t0)

    with pytest.raises(InvalidTransitionError):
        cases.resolve("CASE_000001", "CONFIRMED", "mod_a", t0)


def test_unknown_resolution_is_rejected(cases, t0):
    cases.register_detections([make_cluster(MEMBERS)], t0)
    cases.start_review("CASE_000001", "mod_a", t0)
    with pytest.raises(InvalidTransitionError):
        cases.resolve("CASE_000001", "MAYBE", "mod_a", t0)


def test_escalate_bumps_priority_one_step(cases, t0):
    cases.register_detections([make_cluster(MEMBERS, RiskLevel.LOW, 0.4)], t0)

    case = cases.escalate("CASE_000001", t0, note="reported by users")

    assert case.priority == CasePriority.MEDIUM
    assert case.status == CaseStatus.ESCALATED
    with pytest.raises(InvalidTransitionError):
        cases.escalate("CASE_000001", t0)


def test_unknown_ids_raise_case_not_found(cases):
    with pytest.raises(CaseNotFoundError):
        cases.get_case("CASE_999999")
    with pytest.raises(KeyError):
        cases.get_cluster("RING_nope")


def test_open_cases_are_ordered_by_priority(cases, t0):
    cases.register_detections(
        [
            make_cluster(["a1", "a2", "a3"], RiskLevel.LOW, 0.4),
            make_cluster(["b1", "b2", "b3"], RiskLevel.HIGH, 0.9),
            make_cluster(["c1", "c2", "c3"], RiskLevel.MEDIUM, 0.7, kind=ClusterKind.SPAM_CLUSTER),
        ],
        t0,
    )

    priorities = [c.priority for c in cases.open_cases()]
    assert priorities == [CasePriority.HIGH, CasePriority.MEDIUM, CasePriority.LOW]
    assert [c.case_id for c in cases.cases_for_user("b2")] == [cases.open_cases()[0].case_id]
