"""
scheduler.py - Periodic batch pipeline.

Phases run strictly in order on one point-in-time snapshot:

1. decay            edge store decay pass
2. ring detection   } in parallel on the same read-only snapshot
3. spam detection   }
4. scoring          per-account highest risk across clusters
5. enforcement      per-account transactions (the only side effects)
6. cases            dedup detections into moderation cases

Ingestion keeps writing to the edge store while a run is in progress; those
edges are picked up by the next run.  A failed detector only loses its own
clusters for this run.  Cancelling stops between phases or between accounts
in phase 5, never inside one account.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from detection.models import Cluster, ClusterKind
from detection.rings import detect_rings
from detection.spam_clusters import REQUIRED_ACCOUNT_COLUMNS, detect_spam_clusters
from enforcement.cases import CaseManager
from enforcement.engine import EnforcementEngine, account_targets
from enforcement.models import REASON_FOR_KIND, EnforcementReason, EnforcementReport, ModerationCase
from graph.edge_store import EdgeStore, as_utc, utcnow
from graph.models import DecayResult
from utils.config import EngineConfig
from utils.errors import DetectionError, FraudEngineError, PipelineBusyError

logger = logging.getLogger(__name__)

PHASES = ["decay", "ring_detection", "spam_detection", "scoring", "enforcement", "cases"]


@dataclass
class PipelineRunResult:
    run_id: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    phases_completed: List[str] = field(default_factory=list)
    decay: Optional[DecayResult] = None
    rings: List[Cluster] = field(default_factory=list)
    spam_clusters: List[Cluster] = field(default_factory=list)
    detector_errors: Dict[str, str] = field(default_factory=dict)
    targets: int = 0
    suppressed_clusters: List[str] = field(default_factory=list)
    enforcement: Optional[EnforcementReport] = None
    new_cases: List[ModerationCase] = field(default_factory=list)
    cancelled: bool = False
    cancelled_phase: Optional[str] = None

    @property
    def clusters(self) -> List[Cluster]:
        return list(self.rings) + list(self.spam_clusters)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "phases_completed": list(self.phases_completed),
            "decay": self.decay._asdict() if self.decay else None,
            "rings": [c.to_dict() for c in self.rings],
            "spam_clusters": [c.to_dict() for c in self.spam_clusters],
            "detector_errors": dict(self.detector_errors),
            "targets": self.targets,
            "suppressed_clusters": list(self.suppressed_clusters),
            "enforcement": self.enforcement.to_dict() if self.enforcement else None,
            "new_cases": [c.to_dict() for c in self.new_cases],
            "cancelled": self.cancelled,
            "cancelled_phase": self.cancelled_phase,
        }


class PipelineScheduler:
    def __init__(
        self,
        store: EdgeStore,
        engine: EnforcementEngine,
        cases: CaseManager,
        accounts_provider: Optional[Callable[[], pd.DataFrame]] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.config = (config or EngineConfig()).validate()
        self.store = store
        self.engine = engine
        self.cases = cases
        self._accounts_provider = accounts_provider
        self._run_lock = threading.Lock()
        self._run_ids = itertools.count(1)
        self.last_result: Optional[PipelineRunResult] = None

    # ── Public API ───────────────────────────────────────────────────────────

    def run_once(
        self,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PipelineRunResult:
        """Run every phase once.

        Raises
        ------
        PipelineBusyError
            If another run is still in progress.
        """
        if not self._run_lock.acquire(blocking=False):
            raise PipelineBusyError("A pipeline run is already in progress.")
        try:
            result = self._run(as_utc(now or utcnow()), cancel_event)
        finally:
            self._run_lock.release()
        self.last_result = result
        return result

    def run_periodically(self, stop_event: threading.Event, interval: Optional[timedelta] = None) -> int:
        """Run until *stop_event* is set; returns the number of runs started."""
        interval = interval or self.config.run_interval
        runs = 0
        while not stop_event.is_set():
            runs += 1
            try:
                self.run_once(cancel_event=stop_event)
            except PipelineBusyError:
                logger.warning("Skipping scheduled run: previous run still in progress")
            except FraudEngineError:
                logger.exception("Scheduled pipeline run failed")
            stop_event.wait(interval.total_seconds())
        logger.info("Periodic pipeline stopped after %d runs", runs)
        return runs

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    # ── Phases ───────────────────────────────────────────────────────────────

    def _run(self, now: datetime, cancel_event: Optional[threading.Event]) -> PipelineRunResult:
        result = PipelineRunResult(run_id=next(self._run_ids), started_at=now)
        clock = time.perf_counter()
        logger.info("═══ Pipeline run %d at %s ═══", result.run_id, now.isoformat())

        # 1. decay
        result.decay = self.store.decay_all(now)
        result.phases_completed.append("decay")
        if self._cancelled(cancel_event, result, "ring_detection"):
            return self._finish(result, clock)

        # 2 + 3. detection on one snapshot
        snapshot = self.store.snapshot(now)
        with ThreadPoolExecutor(max_workers=self.config.detection_workers, thread_name_prefix="detector") as pool:
            ring_future = pool.submit(self._detect, "rings", lambda: detect_rings(snapshot, self.config.rings))
            spam_future = pool.submit(
                self._detect,
                "spam",
                lambda: detect_spam_clusters(self._load_accounts(), snapshot, self.config.spam),
            )
            rings, ring_error = ring_future.result()
            spam, spam_error = spam_future.result()

        result.rings, result.spam_clusters = rings, spam
        for name, error in (("rings", ring_error), ("spam", spam_error)):
            if error is not None:
                result.detector_errors[name] = str(error)
        if ring_error is None:
            result.phases_completed.append("ring_detection")
        if spam_error is None:
            result.phases_completed.append("spam_detection")
        if self._cancelled(cancel_event, result, "scoring"):
            return self._finish(result, clock)

        # 4. per-account risk
        enforceable = []
        for cluster in result.clusters:
            if self.cases.is_cleared(cluster):
                result.suppressed_clusters.append(cluster.cluster_id)
            else:
                enforceable.append(cluster)
        targets = account_targets(enforceable)
        result.targets = len(targets)
        result.phases_completed.append("scoring")
        if self._cancelled(cancel_event, result, "enforcement"):
            return self._finish(result, clock)

        # 5. enforcement
        hold = self._held_accounts(result)
        result.enforcement = self.engine.apply(targets, now, cancel_event=cancel_event, hold=hold)
        if result.enforcement.cancelled:
            result.cancelled = True
            result.cancelled_phase = "enforcement"
            return self._finish(result, clock)
        result.phases_completed.append("enforcement")
        if self._cancelled(cancel_event, result, "cases"):
            return self._finish(result, clock)

        # 6. cases
        result.new_cases = self.cases.register_detections(result.clusters, now)
        result.phases_completed.append("cases")
        return self._finish(result, clock)

    def _detect(self, name: str, run: Callable[[], List[Cluster]]):
        try:
            return run(), None
        except DetectionError as exc:
            logger.error("Detector %s failed, its results are discarded this run: %s", name, exc)
            return [], exc
        except Exception as exc:
            logger.exception("Detector %s raised unexpectedly", name)
            return [], DetectionError(name, f"{type(exc).__name__}: {exc}")

    def _load_accounts(self) -> pd.DataFrame:
        if self._accounts_provider is None:
            return pd.DataFrame(columns=REQUIRED_ACCOUNT_COLUMNS)
        try:
            return self._accounts_provider()
        except Exception as exc:
            raise DetectionError("spam", f"could not load account profiles: {exc}") from exc

    def _held_accounts(self, result: PipelineRunResult) -> List[str]:
        """Accounts whose action came from a detector that failed this run."""
        failed_reasons = {
            REASON_FOR_KIND[kind]
            for kind, name in ((ClusterKind.COLLUSION_RING, "rings"), (ClusterKind.SPAM_CLUSTER, "spam"))
            if name in result.detector_errors
        }
        if not failed_reasons:
            return []
        return [
            user_id
            for user_id, action in self.engine.active_actions().items()
            if action.reason in failed_reasons or action.reason == EnforcementReason.DE_ESCALATION
        ]

    @staticmethod
    def _cancelled(cancel_event, result: PipelineRunResult, next_phase: str) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            result.cancelled_phase = next_phase
            logger.warning("Pipeline run %d cancelled before %s", result.run_id, next_phase)
            return True
        return False

    @staticmethod
    def _finish(result: PipelineRunResult, clock: float) -> PipelineRunResult:
        elapsed = time.perf_counter() - clock
        result.finished_at = result.started_at + timedelta(seconds=elapsed)
        logger.info(
            "═══ Pipeline run %d done in %.2fs: %d rings, %d spam clusters, %d new cases%s ═══",
            result.run_id, elapsed, len(result.rings), len(result.spam_clusters), len(result.new_cases),
            f" (cancelled before {result.cancelled_phase})" if result.cancelled else "",
        )
        return result


def build_pipeline(
    config: Optional[EngineConfig] = None,
    accounts_provider: Optional[Callable[[], pd.DataFrame]] = None,
    notifier=None,
    ledger=None,
) -> PipelineScheduler:
    """Wire an edge store, engine and case manager into one scheduler."""
    config = (config or EngineConfig()).validate()
    store = EdgeStore(config.edge_store)
    engine = EnforcementEngine(config.enforcement, ledger=ledger, notifier=notifier)
    cases = CaseManager(engine=engine, notifier=notifier)
    return PipelineScheduler(store, engine, cases, accounts_provider=accounts_provider, config=config)
