"""
Tests for Settings loading (env + YAML overrides) and the safety validator.
"""
import os
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from ladderbot.config.config import Settings
from ladderbot.config.overrides import load_overrides
from ladderbot.config.validator import ConfigValidator, ValidationIssue, ValidationSeverity, validate_and_log
from ladderbot.exchange.models import PositionSide

SEED = "AAECAwQFBgcICQoLDA0ODxAREhMUFRYXGBkaGxwdHh8="


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("LB_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("LB_CONFIG_FILE", str(tmp_path / "absent.yaml"))


def load(tmp_path, text=None):
    path = tmp_path / "ladderbot.yaml"
    if text is not None:
        path.write_text(text, encoding="utf-8")
    return Settings.load(str(path))


class TestSettingsLoad:

    def test_defaults(self, tmp_path):
        cfg = load(tmp_path)
        assert cfg.symbol == "SOL_USDC_PERP"
        assert cfg.side is PositionSide.LONG
        assert cfg.leverage == Decimal("5")
        assert cfg.rung_count == 5
        assert cfg.take_profit_percent == Decimal("0.5")
        assert cfg.close_on_stop is True
        assert cfg.auto_restart is False

    def test_env_values(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LB_SIDE", "short")
        monkeypatch.setenv("LB_TOTAL_AMOUNT", "250.5")
        monkeypatch.setenv("LB_AUTO_RESTART", "yes")
        monkeypatch.setenv("LB_RUNG_COUNT", "8")
        cfg = load(tmp_path)
        assert cfg.side is PositionSide.SHORT
        assert cfg.total_amount == Decimal("250.5")
        assert cfg.auto_restart is True
        assert cfg.rung_count == 8

    def test_bad_number_rejected(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LB_LEVERAGE", "lots")
        with pytest.raises(ValueError, match="LB_LEVERAGE"):
            load(tmp_path)

    def test_yaml_overrides_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LB_TAKE_PROFIT_PCT", "0.8")
        cfg = load(tmp_path, (
            "take_profit_percent: 1.2\n"
            "side: short\n"
            "trailing:\n"
            "  enabled: true\n"
            "  activation_percent: 0.8\n"
            "  distance_percent: 0.3\n"
        ))
        assert cfg.take_profit_percent == Decimal("1.2")
        assert cfg.side is PositionSide.SHORT
        assert cfg.trailing_enabled is True
        assert cfg.trailing_activation_percent == Decimal("0.8")

    def test_unknown_override_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown config keys: bogus"):
            load(tmp_path, "bogus: 1\n")

    @pytest.mark.parametrize("key,value", [
        ("LB_RUNG_COUNT", "0"),
        ("LB_TOTAL_AMOUNT", "0"),
        ("LB_STOP_LOSS_PCT", "100"),
        ("LB_MAX_MOVE_PCT", "0"),
        ("LB_ALERT_WEBHOOK_TYPE", "pager"),
    ])
    def test_impossible_values_rejected(self, tmp_path, monkeypatch, key, value):
        monkeypatch.setenv(key, value)
        with pytest.raises(ValueError):
            load(tmp_path)

    def test_dump_masks_secrets(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LB_API_KEY", "key")
        monkeypatch.setenv("LB_API_SECRET", SEED)
        dumped = load(tmp_path).dump()
        assert dumped["api_key"] == "***"
        assert dumped["api_secret"] == "***"
        assert dumped["alert_webhook_url"] is None

    def test_resolve_signer(self, tmp_path, monkeypatch):
        with pytest.raises(RuntimeError, match="Missing credentials"):
            load(tmp_path).resolve_signer()
        monkeypatch.setenv("LB_API_KEY", "key")
        monkeypatch.setenv("LB_API_SECRET", SEED)
        assert load(tmp_path).resolve_signer().public_key_b64


class TestOverrides:

    def test_missing_file_is_empty(self, tmp_path):
        assert load_overrides(str(tmp_path / "nope.yaml")) == {}

    def test_empty_file_is_empty(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_overrides(str(path)) == {}

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            load_overrides(str(path))

    def test_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("exits:\n  stop_loss_percent: 4\n", encoding="utf-8")
        monkeypatch.setenv("LB_CONFIG_FILE", str(path))
        assert load_overrides() == {"exits_stop_loss_percent": 4}


class TestValidator:

    def make(self, tmp_path, monkeypatch, **env):
        monkeypatch.setenv("LB_API_KEY", "key")
        monkeypatch.setenv("LB_API_SECRET", SEED)
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        return load(tmp_path)

    def test_defaults_with_credentials_are_valid(self, tmp_path, monkeypatch):
        result = ConfigValidator().validate(self.make(tmp_path, monkeypatch, LB_STOP_LOSS_PCT="5"))
        assert result.valid
        assert not result.has_warnings()

    def test_missing_credentials_is_error(self, tmp_path):
        result = ConfigValidator().validate(load(tmp_path))
        assert not result.valid
        assert [i.field for i in result.get_errors()] == ["api_key"]

    def test_stop_inside_ladder_warns(self, tmp_path, monkeypatch):
        result = ConfigValidator().validate(self.make(tmp_path, monkeypatch, LB_STOP_LOSS_PCT="2"))
        assert result.valid
        assert "stop_loss_percent" in [i.field for i in result.get_warnings()]

    def test_out_of_range_is_error(self, tmp_path, monkeypatch):
        result = ConfigValidator().validate(self.make(tmp_path, monkeypatch, LB_LEVERAGE="75", LB_STOP_LOSS_PCT="5"))
        assert not result.valid
        assert result.get_errors()[0].field == "leverage"

    def test_trailing_that_never_arms_warns(self, tmp_path, monkeypatch):
        cfg = self.make(
            tmp_path,
            monkeypatch,
            LB_STOP_LOSS_PCT="5",
            LB_TRAILING_ENABLED="true",
            LB_TRAILING_ACTIVATION_PCT="1",
            LB_TRAILING_DISTANCE_PCT="0.5",
        )
        fields = [i.field for i in ConfigValidator().validate(cfg).get_warnings()]
        assert fields == ["trailing_activation_percent"]

    def test_custom_validator(self, tmp_path, monkeypatch):
        validator = ConfigValidator()
        validator.register_validator(lambda cfg: [ValidationIssue("symbol", "no SOL", ValidationSeverity.ERROR)])
        assert not validator.validate(self.make(tmp_path, monkeypatch, LB_STOP_LOSS_PCT="5")).valid

    def test_validate_and_log(self, tmp_path):
        logger = MagicMock()
        assert validate_and_log(load(tmp_path), logger) is False
        messages = [c.args[0] for c in logger.error.call_args_list]
        assert messages[0].startswith("CONFIG ERROR: No authentication configured")
        assert "failed with 1 error(s)" in messages[-1]
