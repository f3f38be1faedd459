"""
config.py - Engine configuration

MarketConfig is a frozen dataclass with working defaults. load_config()
overlays an optional YAML file and then CROWDMARKET_* environment variables:

    total_shares: 1000
    pricing_policy: multiplicative
    snapshot_path: /var/lib/crowdmarket/state.json

    CROWDMARKET_IDLE_EXPIRY_SECONDS=900

A missing or unreadable YAML file falls back to the defaults.
"""

from __future__ import annotations
import logging
import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .pricing import POLICY_ADDITIVE, POLICY_MULTIPLICATIVE

logger = logging.getLogger(__name__)

ENV_PREFIX = "CROWDMARKET_"


class ConfigError(ValueError):
    """Raised when configuration values are missing, malformed or inconsistent."""


@dataclass(frozen=True)
class MarketConfig:
    """Tunable constants of the market engine and its runtime."""
    total_shares: int = 1000
    creator_allotment: int = 1
    initial_price_min: Decimal = Decimal("30.0")
    initial_price_max: Decimal = Decimal("50.0")
    participant_starting_cash: Decimal = Decimal("500")
    house_starting_cash: Decimal = Decimal("1000000")
    currency_unit: Decimal = Decimal("1")
    min_price: Decimal = Decimal("1.0")
    pricing_policy: str = POLICY_ADDITIVE
    price_step: Decimal = Decimal("1.0")
    price_pct_min: Decimal = Decimal("0.005")
    price_pct_max: Decimal = Decimal("0.02")
    history_length: int = 100
    history_window: int = 20
    idle_expiry_seconds: int = 3600
    snapshot_path: str = "state_backup.json"
    snapshot_interval_seconds: int = 300
    leaderboard_limit: int = 10
    random_seed: Optional[int] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check cross-field consistency.

        Raises:
            ConfigError: On the first inconsistent setting.
        """
        if self.total_shares <= 0:
            raise ConfigError("total_shares must be positive")
        if not 1 <= self.creator_allotment <= self.total_shares:
            raise ConfigError("creator_allotment must be within [1, total_shares]")
        if self.min_price <= 0:
            raise ConfigError("min_price must be positive")
        if not self.min_price <= self.initial_price_min < self.initial_price_max:
            raise ConfigError(
                "initial price range must satisfy min_price <= initial_price_min < initial_price_max"
            )
        if self.participant_starting_cash < 0 or self.house_starting_cash < 0:
            raise ConfigError("starting cash cannot be negative")
        if self.currency_unit <= 0:
            raise ConfigError("currency_unit must be positive")
        if self.pricing_policy not in (POLICY_ADDITIVE, POLICY_MULTIPLICATIVE):
            raise ConfigError(f"unknown pricing_policy {self.pricing_policy!r}")
        if self.price_step <= 0:
            raise ConfigError("price_step must be positive")
        if not 0 < self.price_pct_min <= self.price_pct_max < 1:
            raise ConfigError("price percentage range must satisfy 0 < min <= max < 1")
        if self.history_length <= 0 or self.history_window <= 0:
            raise ConfigError("history_length and history_window must be positive")
        if self.idle_expiry_seconds <= 0:
            raise ConfigError("idle_expiry_seconds must be positive")
        if self.snapshot_interval_seconds <= 0:
            raise ConfigError("snapshot_interval_seconds must be positive")
        if self.leaderboard_limit <= 0:
            raise ConfigError("leaderboard_limit must be positive")


_FIELD_TYPES: Dict[str, str] = {f.name: str(f.type) for f in fields(MarketConfig)}


def _coerce(name: str, raw: Any) -> Any:
    """Convert a YAML or environment value to the declared field type."""
    declared = _FIELD_TYPES[name]
    if raw is None:
        if declared.startswith("Optional"):
            return None
        raise ConfigError(f"{name} cannot be empty")
    try:
        if "int" in declared:
            if isinstance(raw, bool):
                raise ConfigError(f"{name} must be an integer, got {raw!r}")
            if isinstance(raw, str) and declared.startswith("Optional") and not raw.strip():
                return None
            return int(raw)
        if declared == "Decimal":
            if isinstance(raw, bool):
                raise ConfigError(f"{name} must be a number, got {raw!r}")
            value = Decimal(str(raw))
            if not value.is_finite():
                raise ConfigError(f"{name} must be finite, got {raw!r}")
            return value
        return str(raw)
    except (ValueError, InvalidOperation):
        raise ConfigError(f"{name}: cannot interpret {raw!r}") from None


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping. Returns an empty dict if the file is missing or unreadable."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Could not read config file %s (%s); using defaults", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config file %s is not a mapping; using defaults", path)
        return {}
    return data


def config_from_mapping(values: Mapping[str, Any], base: Optional[MarketConfig] = None) -> MarketConfig:
    """
    Overlay a plain mapping onto base (or the defaults).

    Raises:
        ConfigError: For unknown keys or uninterpretable values.
    """
    unknown = sorted(set(values) - set(_FIELD_TYPES))
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}")
    overrides = {name: _coerce(name, raw) for name, raw in values.items()}
    return replace(base or MarketConfig(), **overrides)


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> MarketConfig:
    """
    Build the effective configuration: defaults, then YAML, then environment.

    Args:
        path: Optional YAML file; CROWDMARKET_CONFIG names one if omitted
        env: Environment mapping (default: os.environ)
    """
    env = os.environ if env is None else env
    if path is None:
        path = env.get(f"{ENV_PREFIX}CONFIG")

    config = MarketConfig()
    if path:
        config = config_from_mapping(_load_yaml(Path(path)), config)

    env_values = {
        name: env[f"{ENV_PREFIX}{name.upper()}"]
        for name in _FIELD_TYPES
        if f"{ENV_PREFIX}{name.upper()}" in env
    }
    if env_values:
        config = config_from_mapping(env_values, config)
    return config
