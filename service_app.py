"""
service_app.py - Thin Flask integration surface for the abuse-graph engine.

Run with:  python service_app.py
Endpoints:
  GET  /healthcheck
  POST /signals                  record one signal or a batch ({"signals": [...]})
  POST /run                      trigger one pipeline run
  GET  /cases                    open moderation cases
  POST /cases/<case_id>/review   start review            {"reviewer": "..."}
  POST /cases/<case_id>/resolve  resolve a reviewed case {"outcome": "...", "resolver": "..."}
  GET  /restrictions/<user_id>   restriction effects currently in force
  POST /notifications/drain     hand over queued enforcement events and review items
"""

import logging
from datetime import datetime, timezone

import pandas as pd
from flask import Flask, jsonify, make_response, request

from detection.spam_clusters import REQUIRED_ACCOUNT_COLUMNS
from enforcement.notifications import QueueNotifier
from graph.ingestion import ingest_signals, record_signal
from pipeline.scheduler import build_pipeline
from utils.config import LOG_LEVEL, LOGS_FILE, SERVICE_HOST, SERVICE_PORT, load_config
from utils.errors import (
    CaseNotFoundError,
    InvalidTransitionError,
    PipelineBusyError,
    SignalIngestionError,
)
from utils.logging_config import setup_logging
from utils.validation import validate_accounts

logger = logging.getLogger(__name__)


def _parse_time(value):
    if value in (None, ""):
        return datetime.now(timezone.utc)
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.to_pydatetime()


def _error(message, status):
    return make_response(jsonify({"status": "error", "message": message}), status)


def create_app(scheduler=None, config=None):
    """Build the Flask app around a scheduler (a fresh one when None)."""
    app = Flask(__name__)
    if scheduler is None:
        notifier = QueueNotifier()
        accounts = {"df": pd.DataFrame(columns=REQUIRED_ACCOUNT_COLUMNS)}
        scheduler = build_pipeline(
            config or load_config(), accounts_provider=lambda: accounts["df"], notifier=notifier
        )
        app.config["ACCOUNTS"] = accounts
        app.config["NOTIFIER"] = notifier
    app.config["SCHEDULER"] = scheduler

    # -------------------------------------------------------------------------
    # Health Check Endpoint
    # -------------------------------------------------------------------------

    @app.route("/healthcheck", methods=["GET"])
    def healthcheck():
        return "Service is healthy", 200

    # -------------------------------------------------------------------------
    # Signal ingestion
    # -------------------------------------------------------------------------

    @app.route("/signals", methods=["POST"])
    def signals():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return _error("Expected a JSON object", 400)

        if "signals" in payload:
            try:
                batch = pd.DataFrame(payload["signals"])
            except (TypeError, ValueError) as exc:
                return _error(f"Invalid signal batch: {exc}", 400)
            try:
                report = ingest_signals(scheduler.store, batch)
            except SignalIngestionError as exc:
                return _error(str(exc), 400)
            return jsonify({"status": "success", **report.to_dict()})

        try:
            edge = record_signal(
                scheduler.store,
                payload.get("edge_type"),
                payload.get("user_a"),
                payload.get("user_b"),
                payload.get("strength", 1.0),
                observed_at=_parse_time(payload.get("observed_at")),
                metadata=payload.get("metadata"),
            )
        except SignalIngestionError as exc:
            logger.warning("Rejected signal: %s", exc)
            return _error(str(exc), 400)
        except (TypeError, ValueError) as exc:
            return _error(f"Invalid signal: {exc}", 400)
        return jsonify({"status": "success", "edge": edge.to_dict()})

    # -------------------------------------------------------------------------
    # Pipeline trigger
    # -------------------------------------------------------------------------

    @app.route("/run", methods=["POST"])
    def run():
        payload = request.get_json(silent=True) or {}
        if "accounts" in payload and "ACCOUNTS" in app.config:
            ok, errors, cleaned = validate_accounts(pd.DataFrame(payload["accounts"]))
            if not ok:
                return make_response(jsonify({"status": "error", "errors": errors}), 400)
            app.config["ACCOUNTS"]["df"] = cleaned
        try:
            now = _parse_time(payload.get("now"))
        except (TypeError, ValueError) as exc:
            return _error(f"Invalid 'now': {exc}", 400)

        logger.info("[POST] /run at %s", now.isoformat())
        try:
            result = scheduler.run_once(now=now)
        except PipelineBusyError as exc:
            return _error(str(exc), 409)
        return jsonify({"status": "success", **result.to_dict()})

    # -------------------------------------------------------------------------
    # Case review
    # -------------------------------------------------------------------------

    @app.route("/cases", methods=["GET"])
    def cases():
        return jsonify({"cases": [c.to_dict() for c in scheduler.cases.open_cases()]})

    @app.route("/cases/<case_id>/review", methods=["POST"])
    def review(case_id):
        payload = request.get_json(silent=True) or {}
        reviewer = payload.get("reviewer")
        if not reviewer:
            return _error("Missing 'reviewer'", 400)
        try:
            case = scheduler.cases.start_review(case_id, reviewer, _parse_time(payload.get("now")))
        except CaseNotFoundError:
            return _error(f"Unknown case {case_id}", 404)
        except InvalidTransitionError as exc:
            return _error(str(exc), 409)
        return jsonify({"status": "success", "case": case.to_dict()})

    @app.route("/cases/<case_id>/resolve", methods=["POST"])
    def resolve(case_id):
        payload = request.get_json(silent=True) or {}
        outcome, resolver = payload.get("outcome"), payload.get("resolver")
        if not outcome or not resolver:
            return _error("Missing 'outcome' or 'resolver'", 400)
        try:
            case = scheduler.cases.resolve(
                case_id, outcome, resolver, _parse_time(payload.get("now")), note=payload.get("note", "")
            )
        except CaseNotFoundError:
            return _error(f"Unknown case {case_id}", 404)
        except InvalidTransitionError as exc:
            return _error(str(exc), 409)
        return jsonify({"status": "success", "case": case.to_dict()})

    # -------------------------------------------------------------------------
    # Restriction lookup
    # -------------------------------------------------------------------------

    @app.route("/restrictions/<user_id>", methods=["GET"])
    def restrictions(user_id):
        result = scheduler.engine.check_restriction(user_id)
        return jsonify(result.to_dict())

    # -------------------------------------------------------------------------
    # Notification hand-off
    # -------------------------------------------------------------------------

    @app.route("/notifications/drain", methods=["POST"])
    def drain_notifications():
        notifier = app.config.get("NOTIFIER")
        if notifier is None:
            return _error("Notifications are not queued by this service", 404)
        events = [
            {**e, "expires_at": e["expires_at"].isoformat() if e["expires_at"] else None}
            for e in notifier.drain_enforcement_events()
        ]
        return jsonify({"enforcement_events": events, "review_queue": notifier.drain_review_queue()})

    return app


# -----------------------------------------------------------------------------
# Entrypoint
# -----------------------------------------------------------------------------

if __name__ == "__main__":
    setup_logging(LOGS_FILE, LOG_LEVEL)
    logger.info("Starting abuse-graph service on %s:%s", SERVICE_HOST, SERVICE_PORT)
    create_app().run(host=SERVICE_HOST, port=SERVICE_PORT)
