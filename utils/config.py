"""
config.py - Environment and detection configuration.

Process-level settings (log file, service address, run interval) are read
from the environment once at import, after ``.env`` is loaded.  Detection
thresholds live in typed sections grouped by ``EngineConfig``; each section
validates itself and ``load_config`` raises ``ConfigurationError`` for
anything inconsistent, so the pipeline refuses to start instead of running
with wrong thresholds.

Overrides
---------
Every tunable can be overridden from the environment with a ``FRAUDGRAPH_``
variable (see ``ENV_OVERRIDES``) or from a nested ``overrides`` dict::

    load_config(overrides={"rings": {"strong_edge_threshold": 0.8}})

Weight vectors are given as JSON objects, e.g.
``FRAUDGRAPH_RING_WEIGHTS='{"shared_devices": 0.4, ...}'``.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from detection.scoring import RiskBands, RiskWeights
from utils.errors import ConfigurationError

load_dotenv()

# -----------------------------------------------------------------------------
# Process settings
# -----------------------------------------------------------------------------
LOGS_FILE = os.getenv("LOGS_FILE", "logs/fraudgraph.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SERVICE_HOST = os.getenv("SERVICE_HOST", "0.0.0.0")
SERVICE_PORT = int(os.getenv("SERVICE_PORT", "8000"))
PIPELINE_INTERVAL_HOURS = float(os.getenv("PIPELINE_INTERVAL_HOURS", "24"))

ENV_PREFIX = "FRAUDGRAPH_"

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_EDGE_CEILINGS: Dict[str, float] = {
    "DEVICE": 1.0,
    "ENFORCEMENT": 0.9,
    "NETWORK": 0.7,
    "PAYMENT": 0.9,
    "BEHAVIOR": 0.9,
    "SOCIAL": 1.0,
}

DEFAULT_RING_WEIGHTS: Dict[str, float] = {
    "shared_devices": 0.40,
    "payment_loops": 0.30,
    "isolation": 0.20,
    "avg_internal_weight": 0.10,
}

DEFAULT_SPAM_WEIGHTS: Dict[str, float] = {
    "rapid_creation": 0.30,
    "similarity": 0.25,
    "mass_messaging": 0.20,
    "low_reply_rate": 0.15,
    "no_kyc": 0.10,
}

DEFAULT_PROFILE_FIELDS: Tuple[str, ...] = (
    "display_name_pattern",
    "photo_hash",
    "location",
    "age_bracket",
    "link_domain",
)


def _check_unit(name: str, value: float, allow_zero: bool = True) -> None:
    low_ok = value >= 0 if allow_zero else value > 0
    if not (low_ok and value <= 1.0):
        raise ConfigurationError(f"{name} must be within [0, 1], got {value}.")


def _check_positive(name: str, value: float) -> None:
    if not value > 0:
        raise ConfigurationError(f"{name} must be > 0, got {value}.")


@dataclass(frozen=True)
class EdgeStoreConfig:
    decay_period: timedelta = timedelta(days=30)
    decay_rate: float = 0.05
    weight_floor: float = 0.1
    ceilings: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_EDGE_CEILINGS))

    def validate(self) -> None:
        if self.decay_period <= timedelta(0):
            raise ConfigurationError("decay_period must be positive.")
        if not 0 < self.decay_rate < 1:
            raise ConfigurationError(f"decay_rate must be in (0, 1), got {self.decay_rate}.")
        _check_unit("weight_floor", self.weight_floor)
        unknown = set(self.ceilings) - set(DEFAULT_EDGE_CEILINGS)
        if unknown:
            raise ConfigurationError(f"Unknown edge types in ceilings: {sorted(unknown)}")
        missing = set(DEFAULT_EDGE_CEILINGS) - set(self.ceilings)
        if missing:
            raise ConfigurationError(f"Missing ceilings for edge types: {sorted(missing)}")
        for edge_type, ceiling in self.ceilings.items():
            _check_unit(f"ceiling[{edge_type}]", ceiling, allow_zero=False)


@dataclass(frozen=True)
class RingDetectorConfig:
    strong_edge_threshold: float = 0.7
    min_ring_size: int = 3
    device_saturation: float = 2.0
    payment_saturation: float = 2.0
    multi_signal_bonus: float = 0.10
    min_signal_types: int = 2
    weights: RiskWeights = field(default_factory=lambda: RiskWeights(DEFAULT_RING_WEIGHTS))
    bands: RiskBands = field(default_factory=RiskBands)

    def validate(self) -> None:
        _check_unit("strong_edge_threshold", self.strong_edge_threshold, allow_zero=False)
        if self.min_ring_size < 2:
            raise ConfigurationError(f"min_ring_size must be >= 2, got {self.min_ring_size}.")
        _check_positive("device_saturation", self.device_saturation)
        _check_positive("payment_saturation", self.payment_saturation)
        _check_unit("multi_signal_bonus", self.multi_signal_bonus)
        if set(self.weights.names) != set(DEFAULT_RING_WEIGHTS):
            raise ConfigurationError(
                f"Ring weights must cover exactly {sorted(DEFAULT_RING_WEIGHTS)}, "
                f"got {sorted(self.weights.names)}."
            )


@dataclass(frozen=True)
class SpamDetectorConfig:
    max_creation_window: timedelta = timedelta(hours=48)
    bio_similarity_threshold: float = 0.7
    profile_similarity_threshold: float = 0.6
    min_outbound_messages: int = 100
    min_cluster_size: int = 3
    bot_network_span: timedelta = timedelta(hours=24)
    profile_fields: Tuple[str, ...] = DEFAULT_PROFILE_FIELDS
    multi_signal_bonus: float = 0.10
    min_signal_types: int = 2
    weights: RiskWeights = field(default_factory=lambda: RiskWeights(DEFAULT_SPAM_WEIGHTS))
    bands: RiskBands = field(default_factory=RiskBands)

    def validate(self) -> None:
        if self.max_creation_window <= timedelta(0):
            raise ConfigurationError("max_creation_window must be positive.")
        _check_unit("bio_similarity_threshold", self.bio_similarity_threshold, allow_zero=False)
        _check_unit("profile_similarity_threshold", self.profile_similarity_threshold, allow_zero=False)
        _check_positive("min_outbound_messages", self.min_outbound_messages)
        if self.min_cluster_size < 2:
            raise ConfigurationError(f"min_cluster_size must be >= 2, got {self.min_cluster_size}.")
        _check_unit("multi_signal_bonus", self.multi_signal_bonus)
        if set(self.weights.names) != set(DEFAULT_SPAM_WEIGHTS):
            raise ConfigurationError(
                f"Spam weights must cover exactly {sorted(DEFAULT_SPAM_WEIGHTS)}, "
                f"got {sorted(self.weights.names)}."
            )


@dataclass(frozen=True)
class EnforcementConfig:
    visibility_reduced_ttl: timedelta = timedelta(hours=72)
    monetization_throttled_ttl: timedelta = timedelta(days=7)
    discovery_multiplier: float = 0.5

    def validate(self) -> None:
        if self.visibility_reduced_ttl <= timedelta(0):
            raise ConfigurationError("visibility_reduced_ttl must be positive.")
        if self.monetization_throttled_ttl <= timedelta(0):
            raise ConfigurationError("monetization_throttled_ttl must be positive.")
        _check_unit("discovery_multiplier", self.discovery_multiplier)


@dataclass(frozen=True)
class EngineConfig:
    edge_store: EdgeStoreConfig = field(default_factory=EdgeStoreConfig)
    rings: RingDetectorConfig = field(default_factory=RingDetectorConfig)
    spam: SpamDetectorConfig = field(default_factory=SpamDetectorConfig)
    enforcement: EnforcementConfig = field(default_factory=EnforcementConfig)
    detection_workers: int = 2
    run_interval: timedelta = timedelta(hours=24)

    def validate(self) -> "EngineConfig":
        self.edge_store.validate()
        self.rings.validate()
        self.spam.validate()
        self.enforcement.validate()
        if self.detection_workers < 1:
            raise ConfigurationError("detection_workers must be >= 1.")
        if self.run_interval <= timedelta(0):
            raise ConfigurationError("run_interval must be positive.")
        return self


# ── Environment overrides ────────────────────────────────────────────────────

def _hours(value: str) -> timedelta:
    return timedelta(hours=float(value))


def _days(value: str) -> timedelta:
    return timedelta(days=float(value))


def _weights(value: str) -> RiskWeights:
    return RiskWeights(json.loads(value))


def _ceilings(value: str) -> Dict[str, float]:
    parsed = json.loads(value)
    return {**DEFAULT_EDGE_CEILINGS, **{str(k).upper(): float(v) for k, v in parsed.items()}}


# env suffix -> (section, attribute, parser)
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "DECAY_PERIOD_DAYS": ("edge_store", "decay_period", _days),
    "DECAY_RATE": ("edge_store", "decay_rate", float),
    "WEIGHT_FLOOR": ("edge_store", "weight_floor", float),
    "EDGE_CEILINGS": ("edge_store", "ceilings", _ceilings),
    "RING_STRONG_EDGE_THRESHOLD": ("rings", "strong_edge_threshold", float),
    "RING_MIN_SIZE": ("rings", "min_ring_size", int),
    "RING_DEVICE_SATURATION": ("rings", "device_saturation", float),
    "RING_PAYMENT_SATURATION": ("rings", "payment_saturation", float),
    "RING_MULTI_SIGNAL_BONUS": ("rings", "multi_signal_bonus", float),
    "RING_WEIGHTS": ("rings", "weights", _weights),
    "SPAM_CREATION_WINDOW_HOURS": ("spam", "max_creation_window", _hours),
    "SPAM_BIO_SIMILARITY": ("spam", "bio_similarity_threshold", float),
    "SPAM_PROFILE_SIMILARITY": ("spam", "profile_similarity_threshold", float),
    "SPAM_MIN_OUTBOUND_MESSAGES": ("spam", "min_outbound_messages", int),
    "SPAM_MIN_CLUSTER_SIZE": ("spam", "min_cluster_size", int),
    "SPAM_MULTI_SIGNAL_BONUS": ("spam", "multi_signal_bonus", float),
    "SPAM_WEIGHTS": ("spam", "weights", _weights),
    "VISIBILITY_REDUCED_TTL_HOURS": ("enforcement", "visibility_reduced_ttl", _hours),
    "MONETIZATION_THROTTLED_TTL_DAYS": ("enforcement", "monetization_throttled_ttl", _days),
    "DISCOVERY_MULTIPLIER": ("enforcement", "discovery_multiplier", float),
    "DETECTION_WORKERS": ("", "detection_workers", int),
    "RUN_INTERVAL_HOURS": ("", "run_interval", _hours),
}

_SECTIONS = ("edge_store", "rings", "spam", "enforcement")


def load_config(
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> EngineConfig:
    """Build and validate the engine configuration.

    Parameters
    ----------
    env : mapping or None
        Environment to read ``FRAUDGRAPH_*`` overrides from
        (``os.environ`` when None).
    overrides : mapping or None
        Nested overrides applied after the environment, keyed by section
        name (``edge_store``, ``rings``, ``spam``, ``enforcement``) or by a
        top-level ``EngineConfig`` field.

    Raises
    ------
    ConfigurationError
        On unparsable values, unknown keys or failed validation.
    """
    env = os.environ if env is None else env
    section_values: Dict[str, Dict[str, Any]] = {name: {} for name in _SECTIONS}
    top_values: Dict[str, Any] = {}

    for suffix, (section, attr, parser) in ENV_OVERRIDES.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is None or raw == "":
            continue
        try:
            value = parser(raw)
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{suffix}: {raw!r} ({exc})") from exc
        if section:
            section_values[section][attr] = value
        else:
            top_values[attr] = value

    for key, value in (overrides or {}).items():
        if key in _SECTIONS:
            if not isinstance(value, Mapping):
                raise ConfigurationError(f"Override for section '{key}' must be a mapping.")
            section_values[key].update(_coerce_section(key, value))
        else:
            top_values[key] = value

    config = EngineConfig()
    try:
        sections = {
            name: replace(getattr(config, name), **values)
            for name, values in section_values.items()
        }
        config = replace(config, **sections, **top_values)
    except TypeError as exc:
        raise ConfigurationError(f"Unknown configuration key: {exc}") from exc

    return config.validate()


def _coerce_section(section: str, values: Mapping[str, Any]) -> Dict[str, Any]:
    """Allow plain dicts for weights and plain numbers (hours) for windows."""
    coerced: Dict[str, Any] = {}
    known = {f.name for f in fields(type(getattr(EngineConfig(), section)))}
    for key, value in values.items():
        if key not in known:
            raise ConfigurationError(f"Unknown key '{key}' in section '{section}'.")
        if key == "weights" and isinstance(value, Mapping):
            value = RiskWeights(value)
        elif key == "bands" and isinstance(value, Mapping):
            value = RiskBands(**value)
        coerced[key] = value
    return coerced
