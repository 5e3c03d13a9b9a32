"""
run_local.py - Command-line runner for the abuse-graph engine.

Run with:  python run_local.py              (one pipeline run on sample data)
           python run_local.py --days 5     (simulate five daily runs)
           python run_local.py --json       (also write detection_report.json)
"""

import sys
import time
from datetime import timedelta
from pathlib import Path

from enforcement.notifications import LoggingNotifier
from graph.ingestion import ingest_signals
from pipeline.scheduler import build_pipeline
from utils.config import LOG_LEVEL, LOGS_FILE, load_config
from utils.errors import ConfigurationError
from utils.json_export import build_cluster_summary_table, generate_report, report_to_json_string
from utils.logging_config import setup_logging
from utils.sample_data import SAMPLE_NOW, generate_sample_accounts, generate_sample_signals
from utils.validation import quick_stats, validate_accounts, validate_signals


def print_separator(title: str = "") -> None:
    """Print a visual separator."""
    if title:
        print(f"\n{'='*60}\n  {title}\n{'='*60}")
    else:
        print("-" * 60)


def parse_args(argv):
    days = 1
    if "--days" in argv:
        idx = argv.index("--days")
        try:
            days = int(argv[idx + 1])
        except (IndexError, ValueError):
            print("[ERROR] --days expects a whole number")
            sys.exit(2)
        if days < 1:
            print("[ERROR] --days must be >= 1")
            sys.exit(2)
    return days, "--json" in argv


def print_run(result, engine) -> None:
    """Print one run's clusters, restrictions and cases."""
    print_separator(f"RUN {result.run_id} @ {result.started_at:%Y-%m-%d %H:%M}")

    if result.decay is not None:
        print(f"  Decay: {result.decay.edges_updated} updated, {result.decay.edges_removed} removed")
    for name, error in result.detector_errors.items():
        print(f"  [ERROR] {name} detector failed: {error}")

    if result.clusters:
        print(f"\n{'Cluster':<42} {'Pattern':<18} {'Size':>4} {'p':>6}  Risk")
        print("-" * 80)
        for c in result.clusters:
            pattern = c.pattern.value if c.pattern else "-"
            print(f"{c.cluster_id:<42} {pattern:<18} {c.size:>4} {c.probability:>6.3f}  {c.risk_level.value}")
            print(f"    Members: {', '.join(c.member_ids)}")
    else:
        print("  No clusters detected.")

    if result.enforcement is not None:
        e = result.enforcement
        print(
            f"\n  Enforcement: {e.applied} applied, {e.escalated} escalated, {e.refreshed} refreshed, "
            f"{e.de_escalated} de-escalated, {e.expired} expired, {len(e.failed)} failed"
        )
    stats = engine.stats()
    print(f"  Active restrictions: {stats['active_total']}")
    for level, count in stats.items():
        if level not in ("active_total", "actions_total") and count:
            print(f"    {level:<24} {count}")

    if result.new_cases:
        print("\n  New cases:")
        for case in result.new_cases:
            print(f"    {case.case_id} [{case.priority.value}] {case.evidence_summary}")
    if result.cancelled:
        print(f"\n  [WARN] Run cancelled before {result.cancelled_phase}")


def main():
    days, write_json = parse_args(sys.argv[1:])
    setup_logging(LOGS_FILE, LOG_LEVEL)
    print_separator("Abuse Graph Engine")

    try:
        config = load_config()
    except ConfigurationError as exc:
        print(f"[ERROR] Invalid configuration: {exc}")
        sys.exit(1)

    print("[INFO] Using built-in sample data with embedded rings and spam farms...")
    ok, errors, signals = validate_signals(generate_sample_signals(now=SAMPLE_NOW))
    if not ok:
        print("\n[ERROR] Invalid signal data:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    ok, errors, accounts = validate_accounts(generate_sample_accounts(now=SAMPLE_NOW))
    if not ok:
        print("\n[ERROR] Invalid account data:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)

    stats = quick_stats(signals)
    print(f"[OK] Loaded {stats['total_signals']} signals over {stats['unique_accounts']} accounts")
    print(f"[OK] Loaded {len(accounts)} account profiles")

    scheduler = build_pipeline(config, accounts_provider=lambda: accounts, notifier=LoggingNotifier())
    report = ingest_signals(scheduler.store, signals)
    print(f"[OK] Edge store: {len(scheduler.store)} edges ({report.rejected} signals rejected)")

    result = None
    elapsed = 0.0
    for day in range(days):
        start_time = time.time()
        result = scheduler.run_once(now=SAMPLE_NOW + timedelta(days=day))
        elapsed = time.time() - start_time
        print_run(result, scheduler.engine)

    print_separator("OPEN CASES")
    open_cases = scheduler.cases.open_cases()
    if open_cases:
        for case in open_cases:
            print(f"  {case.case_id} [{case.priority.value}] {case.status.value}: "
                  f"{len(case.linked_user_ids)} accounts, seen {case.detection_count}x")
    else:
        print("  No open cases.")

    if write_json and result is not None:
        report = generate_report(result, scheduler.engine, processing_time=elapsed)
        for row in build_cluster_summary_table(report):
            print(f"  {row['Cluster ID']:<42} {row['Risk']:<7} {row['Probability']:.3f}")
        output_path = Path("detection_report.json")
        output_path.write_text(report_to_json_string(report))
        print(f"\n[OK] JSON report saved to: {output_path}")

    print("\n" + "=" * 60)
    print("  Detection complete!")
    print("=" * 60 + "\n")


if __name__ == "__main__":
    main()
