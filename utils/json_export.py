"""
json_export.py - Build the JSON run report.

Output Schema
-------------
{
  "restricted_accounts": [ ... ],
  "clusters": [ ... ],
  "new_cases": [ ... ],
  "summary": { ... }
}
"""

from __future__ import annotations

import json
from typing import Any, Dict, List


def generate_report(result, engine, processing_time: float) -> Dict[str, Any]:
    """Build the JSON-serialisable report for one pipeline run.

    Parameters
    ----------
    result : PipelineRunResult
        Output of ``PipelineScheduler.run_once``.
    engine : EnforcementEngine
        Engine whose active actions are listed.
    processing_time : float
        Wall-clock seconds for the run.
    """
    # ── 1. Restricted accounts ────────────────────────────────────────────
    restricted_accounts: List[Dict[str, Any]] = []
    for user_id, action in engine.active_actions().items():
        restricted_accounts.append(
            {
                "user_id": user_id,
                "level": action.level.value,
                "reason": action.reason.value,
                "expires_at": action.expires_at.isoformat() if action.expires_at else None,
                "cluster_ids": list(action.cluster_ids),
            }
        )

    # ── 2. Clusters (rings and spam merged) ───────────────────────────────
    clusters: List[Dict[str, Any]] = []
    for cluster in result.clusters:
        clusters.append(
            {
                "cluster_id": cluster.cluster_id,
                "kind": cluster.kind.value,
                "pattern": cluster.pattern.value if cluster.pattern else None,
                "member_ids": list(cluster.member_ids),
                "probability": round(cluster.probability, 4),
                "risk_level": cluster.risk_level.value,
                "centroid": cluster.centroid,
                "supersedes": cluster.supersedes,
                "signals": list(cluster.signals),
            }
        )
    clusters.sort(key=lambda c: (-c["probability"], c["cluster_id"]))

    # ── 3. Summary ────────────────────────────────────────────────────────
    enforcement = result.enforcement.to_dict() if result.enforcement else {}
    summary = {
        "run_id": result.run_id,
        "rings_detected": len(result.rings),
        "spam_clusters_detected": len(result.spam_clusters),
        "accounts_targeted": result.targets,
        "accounts_restricted": len(restricted_accounts),
        "new_cases": len(result.new_cases),
        "detector_errors": dict(result.detector_errors),
        "enforcement": enforcement,
        "restrictions_by_level": engine.stats(),
        "cancelled_phase": result.cancelled_phase,
        "processing_time_seconds": round(processing_time, 2),
    }

    return {
        "restricted_accounts": restricted_accounts,
        "clusters": clusters,
        "new_cases": [
            {
                "case_id": c.case_id,
                "cluster_id": c.cluster_id,
                "priority": c.priority.value,
                "evidence_summary": c.evidence_summary,
            }
            for c in result.new_cases
        ],
        "summary": summary,
    }


def report_to_json_string(report: Dict[str, Any], indent: int = 2) -> str:
    """Serialise the report dict to a pretty-printed JSON string."""
    return json.dumps(report, indent=indent, default=str)


def build_cluster_summary_table(report: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Rows for the cluster summary table printed by the CLI."""
    rows: List[Dict[str, Any]] = []
    for cluster in report.get("clusters", []):
        rows.append(
            {
                "Cluster ID": cluster["cluster_id"],
                "Pattern": cluster["pattern"],
                "Members": len(cluster["member_ids"]),
                "Probability": cluster["probability"],
                "Risk": cluster["risk_level"],
            }
        )
    return rows
