"""
errors.py - Error taxonomy for the abuse-graph engine.

Every error raised by the engine derives from ``FraudEngineError`` so callers
can catch the whole family.  The propagation policy is per item: an error in
one edge, account or cluster is logged and counted by the caller, and the rest
of the batch keeps going.

=============================  ==============================================
Error                          Scope
=============================  ==============================================
SignalIngestionError           one edge upsert, never retried synchronously
DetectionError                 one detector phase of the current run
EnforcementApplicationError    one account, fails closed, retried next cycle
ConfigurationError             fatal at startup, the pipeline refuses to run
=============================  ==============================================
"""

from __future__ import annotations


class FraudEngineError(Exception):
    """Base class for all engine errors."""


class SignalIngestionError(FraudEngineError):
    """A single signal could not be turned into an edge upsert."""


class DetectionError(FraudEngineError):
    """A detector pass failed; only that detector's results are discarded."""

    def __init__(self, detector: str, message: str) -> None:
        super().__init__(f"[{detector}] {message}")
        self.detector = detector


class EnforcementApplicationError(FraudEngineError):
    """Enforcement could not be applied to one account."""

    def __init__(self, user_id: str, message: str) -> None:
        super().__init__(f"[{user_id}] {message}")
        self.user_id = user_id


class ConfigurationError(FraudEngineError):
    """Invalid configuration, e.g. risk weights that do not sum to 1.0."""


class InvalidTransitionError(FraudEngineError):
    """A cluster or case status change that the state machine does not allow."""


class CaseNotFoundError(FraudEngineError, KeyError):
    """Unknown moderation case or cluster id."""


class PipelineBusyError(FraudEngineError):
    """A pipeline run was requested while another run is in progress."""
