"""Tests for the shared risk scorer."""

from __future__ import annotations

import pytest

from detection.models import RiskLevel
from detection.scoring import RiskBands, RiskWeights, classify, saturate, score_components
from utils.errors import ConfigurationError

WEIGHTS = RiskWeights({"a": 0.4, "b": 0.3, "c": 0.2, "d": 0.1})
BANDS = RiskBands()


def test_weights_must_sum_to_one():
    with pytest.raises(ConfigurationError):
        RiskWeights({"a": 0.5, "b": 0.4})


def test_weights_within_epsilon_are_accepted():
    weights = RiskWeights({"a": 0.3333333, "b": 0.3333333, "c": 0.3333334})
    assert weights.names == ["a", "b", "c"]


@pytest.mark.parametrize("bad", [{}, {"a": -0.5, "b": 1.5}, {"a": float("nan")}, {"a": "heavy"}])
def test_invalid_weights_are_rejected(bad):
    with pytest.raises(ConfigurationError):
        RiskWeights(bad)


@pytest.mark.parametrize("low,medium,high", [(0.6, 0.3, 0.85), (0.0, 0.5, 0.9), (0.3, 0.6, 1.2)])
def test_bands_must_increase(low, medium, high):
    with pytest.raises(ConfigurationError):
        RiskBands(low, medium, high)


@pytest.mark.parametrize(
    "p,expected",
    [
        (0.0, RiskLevel.NONE),
        (0.2999, RiskLevel.NONE),
        (0.30, RiskLevel.LOW),
        (0.5999, RiskLevel.LOW),
        (0.60, RiskLevel.MEDIUM),
        (0.85, RiskLevel.HIGH),
        (1.0, RiskLevel.HIGH),
    ],
)
def test_classify_band_edges(p, expected):
    assert classify(p, BANDS) == expected


def test_saturate():
    assert saturate(1, 2) == 0.5
    assert saturate(5, 2) == 1.0
    assert saturate(-1, 2) == 0.0


def test_weighted_sum_and_clipping():
    result = score_components({"a": 1.0, "b": 0.5, "c": 2.0, "d": -1.0}, WEIGHTS, BANDS)
    assert result.probability == pytest.approx(0.4 + 0.15 + 0.2)
    assert result.risk_level == RiskLevel.MEDIUM
    assert not result.bonus_applied


def test_bonus_requires_two_present_signals_and_caps_at_one():
    one_signal = score_components({"a": 1.0, "b": 0.0, "c": 0.0, "d": 0.0}, WEIGHTS, BANDS, bonus=0.1)
    assert not one_signal.bonus_applied
    assert one_signal.probability == pytest.approx(0.4)

    two_signals = score_components({"a": 1.0, "b": 0.5, "c": 0.0, "d": 0.0}, WEIGHTS, BANDS, bonus=0.1)
    assert two_signals.bonus_applied
    assert two_signals.probability == pytest.approx(0.65)

    everything = score_components({"a": 1, "b": 1, "c": 1, "d": 1}, WEIGHTS, BANDS, bonus=0.1)
    assert everything.probability == 1.0


def test_caller_supplied_signals_drive_the_bonus():
    result = score_components(
        {"a": 0.0, "b": 0.0, "c": 1.0, "d": 0.0}, WEIGHTS, BANDS, bonus=0.1,
        signals_present=["DEVICE", "NETWORK"],
    )
    assert result.bonus_applied
    assert result.probability == pytest.approx(0.3)


def test_missing_component_is_an_error():
    with pytest.raises(ValueError):
        score_components({"a": 1.0}, WEIGHTS, BANDS)


def test_scoring_is_monotone_in_every_component():
    base = {"a": 0.2, "b": 0.4, "c": 0.45, "d": 0.1}
    steps = [i / 20 for i in range(21)]
    for name in base:
        previous = -1.0
        for value in steps:
            components = dict(base, **{name: value})
            p = score_components(components, WEIGHTS, BANDS, bonus=0.1).probability
            assert p >= previous
            previous = p


def test_scoring_is_reproducible():
    components = {"a": 0.123456789, "b": 0.987654321, "c": 0.5, "d": 0.333333333}
    first = score_components(components, WEIGHTS, BANDS, bonus=0.1)
    second = score_components(dict(reversed(list(components.items()))), WEIGHTS, BANDS, bonus=0.1)
    assert first.probability == second.probability
