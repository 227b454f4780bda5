"""
Tests for robusta.config / robusta.validator
--------------------------------------------
Coverage:
- Unknown key detection (root and nested).
- Session / broker / run validation raising ConfigurationError.
- YAML loading with overrides.
"""

from dataclasses import dataclass, field

import pytest

from robusta.config import BrokerCfg, RunConfig, SessionCfg, load_config
from robusta.errors import ConfigurationError
from robusta.validator import validate_keys


@dataclass
class MockSubConfig:
    sub_param: int = 10


@dataclass
class MockConfig:
    main_param: int = 1
    nested: MockSubConfig = field(default_factory=MockSubConfig)


def test_validator_detects_unknown_keys_root():
    """
    Top-level typos must fail fast.
    """
    with pytest.raises(
        ConfigurationError, match=r"Unknown keys detected at 'root': \['fake_key'\]"
    ):
        validate_keys({"main_param": 1, "fake_key": 999}, MockConfig)


def test_validator_detects_unknown_keys_nested():
    """
    Typos inside a nested section report the dotted path.
    """
    bad = {"main_param": 1, "nested": {"sub_param": 10, "fake_nested_key": 999}}
    with pytest.raises(
        ValueError, match=r"Unknown keys detected at 'nested': \['fake_nested_key'\]"
    ):
        validate_keys(bad, MockConfig)


def test_validator_rejects_scalar_for_section():
    """
    A section given as a scalar instead of a mapping is an error.
    """
    with pytest.raises(ConfigurationError, match="expected a mapping"):
        validate_keys({"nested": 5}, MockConfig)


def test_validator_passes_valid_data():
    """
    Known keys at every level pass silently.
    """
    validate_keys({"main_param": 5, "nested": {"sub_param": 20}}, MockConfig)


def test_session_start_after_end_is_fatal():
    """
    Market open after market close cannot be a session.
    """
    with pytest.raises(ConfigurationError) as exc:
        SessionCfg(start_market=500, end_market=400)
    assert exc.value.field == "session.start_market"


def test_session_break_outside_market_is_fatal():
    """
    The midday break must sit inside the market hours.
    """
    with pytest.raises(ConfigurationError, match="break must lie inside"):
        SessionCfg(start_market=135, end_market=465, start_break=100, end_break=200)


def test_session_daily_flag():
    """
    Only the daily bar period marks a session as daily.
    """
    assert SessionCfg().is_daily
    assert not SessionCfg(bar_period=15).is_daily


def test_broker_fill_field_checked():
    """
    The fill field must name a bar field.
    """
    with pytest.raises(ConfigurationError, match="Invalid fill field"):
        BrokerCfg(fill_field="v")


def test_run_config_rejects_bad_values():
    """
    Each invalid RunConfig value names the offending field.
    """
    with pytest.raises(ConfigurationError, match="lookback"):
        RunConfig(lookback=-1)
    with pytest.raises(ConfigurationError, match="duplicate"):
        RunConfig(assets=("A", "A"))
    with pytest.raises(ConfigurationError, match="after end_date"):
        RunConfig(start_date="2024-02-01", end_date="2024-01-01")
    with pytest.raises(ConfigurationError, match="mode"):
        RunConfig(mode="paper")


def test_load_config_nested_and_overrides(config_yaml):
    """
    YAML sections become nested dataclasses; overrides win over the file.
    """
    cfg = load_config(config_yaml, {"end_date": "2024-02-01", "lookback": 3})
    assert cfg.assets == ("AAA", "BBB")
    assert cfg.lookback == 3
    assert cfg.end_date == "2024-02-01"
    assert cfg.broker.lot_size == 10
    assert cfg.broker.slippage.normal_ticks == 1
    assert cfg.params["window"] == 5
    assert isinstance(cfg.session, SessionCfg)


def test_load_config_yaml_dates_become_strings(tmp_path):
    """
    Bare YAML dates are kept as ISO strings.
    """
    p = tmp_path / "c.yaml"
    p.write_text("assets: [X]\nstart_date: 2024-01-02\n", encoding="utf-8")
    cfg = load_config(p)
    assert cfg.start_date == "2024-01-02"
    assert cfg.start_ts.year == 2024


def test_load_config_typo_is_fatal(tmp_path):
    """
    An unknown key in the file raises ConfigurationError.
    """
    p = tmp_path / "c.yaml"
    p.write_text("assets: [X]\nbroker:\n  lot_sise: 100\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="broker"):
        load_config(p)


def test_load_config_missing_file(tmp_path):
    """
    A missing config path raises FileNotFoundError.
    """
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")
