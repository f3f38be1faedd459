"""
test_config.py - Configuration defaults, YAML overlay and environment overrides
"""

import pytest
from decimal import Decimal

from crowdmarket import ConfigError, MarketConfig, load_config
from crowdmarket.config import config_from_mapping


class TestDefaults:

    def test_defaults(self):
        config = MarketConfig()
        assert config.total_shares == 1000
        assert config.participant_starting_cash == Decimal("500")
        assert config.pricing_policy == "additive"
        assert config.random_seed is None

    @pytest.mark.parametrize("overrides", [
        {"total_shares": 0},
        {"creator_allotment": 2000},
        {"creator_allotment": 0},
        {"initial_price_min": Decimal("50"), "initial_price_max": Decimal("30")},
        {"pricing_policy": "fibonacci"},
        {"currency_unit": Decimal("0")},
        {"price_pct_min": Decimal("0.5"), "price_pct_max": Decimal("0.1")},
        {"idle_expiry_seconds": 0},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ConfigError):
            MarketConfig(**overrides)


class TestOverlay:

    def test_mapping_coerces_types(self):
        config = config_from_mapping({"total_shares": "500", "min_price": 0.5, "random_seed": "3"})
        assert config.total_shares == 500
        assert config.min_price == Decimal("0.5")
        assert config.random_seed == 3

    def test_unknown_key(self):
        with pytest.raises(ConfigError):
            config_from_mapping({"bogus": 1})

    def test_uninterpretable_value(self):
        with pytest.raises(ConfigError):
            config_from_mapping({"total_shares": "lots"})

    def test_yaml_then_env(self, tmp_path):
        path = tmp_path / "market.yaml"
        path.write_text("total_shares: 2000\npricing_policy: multiplicative\nhistory_window: 10\n")
        config = load_config(path, env={"CROWDMARKET_HISTORY_WINDOW": "5"})
        assert config.total_shares == 2000
        assert config.pricing_policy == "multiplicative"
        assert config.history_window == 5

    def test_config_path_from_env(self, tmp_path):
        path = tmp_path / "market.yaml"
        path.write_text("leaderboard_limit: 3\n")
        config = load_config(env={"CROWDMARKET_CONFIG": str(path)})
        assert config.leaderboard_limit == 3

    def test_missing_yaml_falls_back(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml", env={})
        assert config == MarketConfig()

    def test_malformed_yaml_falls_back(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("total_shares: [unclosed\n")
        assert load_config(path, env={}) == MarketConfig()

    def test_bad_env_value(self):
        with pytest.raises(ConfigError):
            load_config(env={"CROWDMARKET_TOTAL_SHARES": "-5"})
