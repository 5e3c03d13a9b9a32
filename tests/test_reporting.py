"""Tests for graph views, the JSON report and the CLI runner."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

import run_local
from conftest import add_ring, farm_accounts
from utils.graph_builder import (
    build_collapsed_graph,
    build_relationship_graph,
    get_account_list,
    get_edge_summary,
)
from utils.json_export import build_cluster_summary_table, generate_report, report_to_json_string


def test_relationship_graph_keeps_one_edge_per_type(store, t0):
    add_ring(store, ["a", "b", "c"], t0)
    store.upsert_edge("a", "z", "SOCIAL", 0.2, now=t0)
    snapshot = store.snapshot(t0)

    multi = build_relationship_graph(snapshot)
    collapsed = build_collapsed_graph(snapshot)
    strong = build_collapsed_graph(snapshot, min_weight=0.7)

    assert multi.number_of_edges("a", "b") == 2
    assert set(multi["a"]["b"]) == {"DEVICE", "PAYMENT"}
    assert collapsed["a"]["b"]["edge_types"] == ["DEVICE", "PAYMENT"]
    assert collapsed["a"]["b"]["weight"] == 1.0
    assert get_account_list(collapsed) == ["a", "b", "c", "z"]
    assert get_account_list(strong) == ["a", "b", "c"]

    summary = get_edge_summary(snapshot)
    assert len(summary) == 6
    assert list(summary.columns[:3]) == ["user_a", "user_b", "edge_type"]


def test_report_lists_restrictions_clusters_and_cases(scheduler, store, accounts_holder, engine, t0):
    add_ring(store, ["a", "b", "c"], t0)
    accounts_holder["df"] = farm_accounts(t0 - timedelta(hours=6), n=4)
    result = scheduler.run_once(t0)

    report = generate_report(result, engine, processing_time=0.1234)

    assert [r["user_id"] for r in report["restricted_accounts"]][:3] == ["BOT_00", "BOT_01", "BOT_02"]
    assert len(report["restricted_accounts"]) == 7
    assert len(report["clusters"]) == 2
    assert report["clusters"][0]["probability"] >= report["clusters"][1]["probability"]
    assert report["summary"]["new_cases"] == 2
    assert report["summary"]["processing_time_seconds"] == 0.12
    assert json.loads(report_to_json_string(report))["summary"]["rings_detected"] == 1

    table = build_cluster_summary_table(report)
    assert {row["Members"] for row in table} == {3, 4}


def test_parse_args():
    assert run_local.parse_args([]) == (1, False)
    assert run_local.parse_args(["--days", "3", "--json"]) == (3, True)
    with pytest.raises(SystemExit):
        run_local.parse_args(["--days", "zero"])
    with pytest.raises(SystemExit):
        run_local.parse_args(["--days", "0"])


def test_cli_runs_sample_data(monkeypatch, tmp_path, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(run_local, "LOGS_FILE", str(tmp_path / "logs" / "run.log"))
    monkeypatch.setattr("sys.argv", ["run_local.py", "--days", "2", "--json"])

    run_local.main()

    out = capsys.readouterr().out
    assert "RUN 1" in out
    assert "RUN 2" in out
    assert "OPEN CASES" in out
    report = json.loads((tmp_path / "detection_report.json").read_text())
    assert report["summary"]["run_id"] == 2
    assert report["summary"]["new_cases"] == 0
