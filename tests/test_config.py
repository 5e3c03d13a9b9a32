"""Tests for configuration loading and logging setup."""

from __future__ import annotations

import logging
from datetime import timedelta

import pytest

from detection.scoring import RiskWeights
from utils.config import ENV_PREFIX, EngineConfig, load_config
from utils.errors import ConfigurationError
from utils.logging_config import setup_logging


def test_defaults_are_valid():
    config = load_config(env={})

    assert config == EngineConfig()
    assert config.edge_store.decay_period == timedelta(days=30)
    assert config.edge_store.decay_rate == 0.05
    assert config.rings.strong_edge_threshold == 0.7
    assert config.rings.weights["shared_devices"] == 0.40
    assert config.spam.max_creation_window == timedelta(hours=48)
    assert config.enforcement.visibility_reduced_ttl == timedelta(hours=72)
    assert config.enforcement.monetization_throttled_ttl == timedelta(days=7)


def test_environment_overrides():
    env = {
        ENV_PREFIX + "DECAY_RATE": "0.1",
        ENV_PREFIX + "SPAM_CREATION_WINDOW_HOURS": "24",
        ENV_PREFIX + "RING_WEIGHTS": '{"shared_devices": 0.25, "payment_loops": 0.25,'
                                     ' "isolation": 0.25, "avg_internal_weight": 0.25}',
        ENV_PREFIX + "EDGE_CEILINGS": '{"network": 0.8}',
        ENV_PREFIX + "DETECTION_WORKERS": "4",
        ENV_PREFIX + "RING_MIN_SIZE": "",
    }
    config = load_config(env=env)

    assert config.edge_store.decay_rate == 0.1
    assert config.edge_store.ceilings["NETWORK"] == 0.8
    assert config.edge_store.ceilings["DEVICE"] == 1.0
    assert config.spam.max_creation_window == timedelta(hours=24)
    assert config.rings.weights == RiskWeights(
        {"shared_devices": 0.25, "payment_loops": 0.25, "isolation": 0.25, "avg_internal_weight": 0.25}
    )
    assert config.detection_workers == 4
    assert config.rings.min_ring_size == 3


def test_nested_overrides_accept_plain_dicts():
    config = load_config(
        env={},
        overrides={
            "rings": {"bands": {"low": 0.2, "medium": 0.5, "high": 0.8}},
            "spam": {"min_cluster_size": 5},
            "run_interval": timedelta(hours=6),
        },
    )
    assert config.rings.bands.high == 0.8
    assert config.spam.min_cluster_size == 5
    assert config.run_interval == timedelta(hours=6)


@pytest.mark.parametrize(
    "env",
    [
        {ENV_PREFIX + "RING_WEIGHTS": '{"shared_devices": 0.9, "payment_loops": 0.9,'
                                      ' "isolation": 0.1, "avg_internal_weight": 0.1}'},
        {ENV_PREFIX + "SPAM_WEIGHTS": '{"rapid_creation": 1.0}'},
        {ENV_PREFIX + "DECAY_RATE": "fast"},
        {ENV_PREFIX + "DECAY_RATE": "1.5"},
        {ENV_PREFIX + "RING_WEIGHTS": "not json"},
        {ENV_PREFIX + "DETECTION_WORKERS": "0"},
        {ENV_PREFIX + "EDGE_CEILINGS": '{"carrier_pigeon": 0.5}'},
    ],
)
def test_invalid_environment_is_rejected(env):
    with pytest.raises(ConfigurationError):
        load_config(env=env)


def test_unknown_override_keys_are_rejected():
    with pytest.raises(ConfigurationError):
        load_config(env={}, overrides={"rings": {"cycle_length": 4}})
    with pytest.raises(ConfigurationError):
        load_config(env={}, overrides={"turbo": True})
    with pytest.raises(ConfigurationError):
        load_config(env={}, overrides={"spam": 3})


def test_setup_logging_writes_to_file(tmp_path):
    log_file = tmp_path / "logs" / "engine.log"
    setup_logging(str(log_file), "debug")

    logging.getLogger("tests.config").debug("hello from the test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    content = log_file.read_text(encoding="utf-8")
    assert "| DEBUG | tests.config | hello from the test" in content
    setup_logging()
