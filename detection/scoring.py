"""
scoring.py - Shared risk scorer (the "Brain").

Both detectors reduce a cluster to a vector of normalized component scores in
[0, 1] and hand it here.  The scorer combines them with a weight vector that
must sum to 1.0, optionally adds a flat multi-signal bonus, and maps the
resulting probability onto a risk band.

Default bands
-------------
Probability     | Band
< 0.30          | NONE (ignored)
[0.30, 0.60)    | LOW
[0.60, 0.85)    | MEDIUM
>= 0.85         | HIGH

The function is pure and monotone: raising any single component while the
others stay fixed never lowers the probability.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from detection.models import RiskLevel
from utils.errors import ConfigurationError


# ── Defaults ─────────────────────────────────────────────────────────────────
WEIGHT_SUM_EPSILON: float = 1e-6
DEFAULT_LOW_THRESHOLD: float = 0.30
DEFAULT_MEDIUM_THRESHOLD: float = 0.60
DEFAULT_HIGH_THRESHOLD: float = 0.85
SIGNAL_PRESENCE_THRESHOLD: float = 0.5   # component value that counts as "present"


class RiskWeights:
    """Immutable, validated weight vector.

    Raises
    ------
    ConfigurationError
        If any weight is negative / non-finite or the weights do not sum to
        1.0 within ``WEIGHT_SUM_EPSILON``.
    """

    def __init__(self, weights: Mapping[str, float]) -> None:
        if not weights:
            raise ConfigurationError("Risk weights must not be empty.")

        cleaned: Dict[str, float] = {}
        for name, value in weights.items():
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ConfigurationError(f"Weight '{name}' is not a number: {value!r}") from None
            if not math.isfinite(value) or value < 0:
                raise ConfigurationError(f"Weight '{name}' must be a finite value >= 0, got {value}.")
            cleaned[str(name)] = value

        total = math.fsum(cleaned.values())
        if abs(total - 1.0) > WEIGHT_SUM_EPSILON:
            raise ConfigurationError(
                f"Risk weights must sum to 1.0 (got {total:.6f}): {cleaned}"
            )
        self._weights = cleaned

    @property
    def names(self) -> List[str]:
        return list(self._weights)

    def items(self):
        return self._weights.items()

    def as_dict(self) -> Dict[str, float]:
        return dict(self._weights)

    def __getitem__(self, name: str) -> float:
        return self._weights[name]

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RiskWeights) and other._weights == self._weights

    def __repr__(self) -> str:
        return f"RiskWeights({self._weights})"


@dataclass(frozen=True)
class RiskBands:
    low: float = DEFAULT_LOW_THRESHOLD
    medium: float = DEFAULT_MEDIUM_THRESHOLD
    high: float = DEFAULT_HIGH_THRESHOLD

    def __post_init__(self) -> None:
        if not (0.0 < self.low < self.medium < self.high <= 1.0):
            raise ConfigurationError(
                "Risk band thresholds must satisfy 0 < low < medium < high <= 1, "
                f"got low={self.low}, medium={self.medium}, high={self.high}."
            )


@dataclass(frozen=True)
class RiskAssessment:
    probability: float
    risk_level: RiskLevel
    base_probability: float
    bonus_applied: bool
    contributions: Dict[str, float] = field(default_factory=dict)
    signals_present: List[str] = field(default_factory=list)


# ── Public API ───────────────────────────────────────────────────────────────

def classify(probability: float, bands: RiskBands) -> RiskLevel:
    """Map a probability onto its risk band."""
    if probability >= bands.high:
        return RiskLevel.HIGH
    if probability >= bands.medium:
        return RiskLevel.MEDIUM
    if probability >= bands.low:
        return RiskLevel.LOW
    return RiskLevel.NONE


def saturate(value: float, threshold: float) -> float:
    """Saturating normalization ``min(value / threshold, 1.0)`` clipped at 0."""
    if threshold <= 0:
        return 1.0 if value > 0 else 0.0
    return clip01(value / threshold)


def clip01(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return min(1.0, max(0.0, float(value)))


def score_components(
    components: Mapping[str, float],
    weights: RiskWeights,
    bands: RiskBands,
    bonus: float = 0.0,
    min_signals: int = 2,
    presence_threshold: float = SIGNAL_PRESENCE_THRESHOLD,
    signals_present: List[str] | None = None,
) -> RiskAssessment:
    """Combine normalized components into a probability and a band.

    Parameters
    ----------
    components : mapping
        Component name → score.  Values are clipped to [0, 1].  Every weight
        name must have a component.
    weights : RiskWeights
        Validated weight vector (sums to 1.0).
    bands : RiskBands
        Band thresholds.
    bonus : float
        Flat bonus added when at least ``min_signals`` distinct signals are
        present.  The final probability is capped at 1.0.
    min_signals : int
        Distinct signals required for the bonus.
    presence_threshold : float
        A component at or above this value counts as a present signal.  Used
        only when ``signals_present`` is not supplied.
    signals_present : list[str] or None
        Caller-determined signal types (e.g. distinct edge types in a ring).
    """
    missing = [name for name in weights.names if name not in components]
    if missing:
        raise ValueError(f"Missing risk components: {', '.join(missing)}")

    contributions: Dict[str, float] = {}
    for name, weight in weights.items():
        contributions[name] = weight * clip01(components[name])

    # fsum over a fixed key order keeps the result bit-for-bit reproducible
    base = clip01(math.fsum(contributions[name] for name in weights.names))

    if signals_present is None:
        signals_present = [
            name for name in weights.names if clip01(components[name]) >= presence_threshold
        ]
    bonus_applied = bonus > 0 and len(signals_present) >= min_signals
    probability = clip01(base + bonus) if bonus_applied else base

    return RiskAssessment(
        probability=probability,
        risk_level=classify(probability, bands),
        base_probability=base,
        bonus_applied=bonus_applied,
        contributions={k: round(v, 6) for k, v in contributions.items()},
        signals_present=sorted(signals_present),
    )
