"""
parameters.py - Parameter mapping and the default parameter catalog

map_ownership() is the single rule turning an ownership concentration ratio
into a gameplay value:

    value = min + (max - min) * ratio

clamped to [min, max] and rounded to two decimal places. A stock nobody
outside the house owns drives its parameter to the neutral midpoint.
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Optional, Tuple

from .core import ONE, ZERO, Parameter, round_parameter, to_decimal


def _clamp(value: Decimal, parameter: Parameter) -> Decimal:
    return min(max(value, parameter.min_value), parameter.max_value)


def map_ownership(parameter: Parameter, ratio: Decimal) -> Decimal:
    """
    Map a concentration ratio in [0, 1] onto the parameter's range.

    Raises:
        ValueError: If ratio is outside [0, 1].
    """
    ratio = to_decimal(ratio, "ratio")
    if not ZERO <= ratio <= ONE:
        raise ValueError(f"concentration ratio must be within [0, 1], got {ratio}")
    span = parameter.max_value - parameter.min_value
    raw = _clamp(parameter.min_value + span * ratio, parameter)
    return _clamp(round_parameter(raw), parameter)


def neutral_value(parameter: Parameter) -> Decimal:
    """The midpoint of the parameter's range, rounded like any mapped value."""
    return _clamp(round_parameter(parameter.midpoint), parameter)


def refresh_parameter(parameter: Parameter, ratio: Optional[Decimal]) -> Parameter:
    """Return the parameter re-derived from ratio (None means unowned)."""
    value = neutral_value(parameter) if ratio is None else map_ownership(parameter, ratio)
    if value == parameter.value:
        return parameter
    return replace(parameter, value=value)


def parameter_payload(parameter: Parameter) -> Dict[str, object]:
    return {
        "value": parameter.value,
        "min": parameter.min_value,
        "max": parameter.max_value,
        "unit": parameter.unit,
        "description": parameter.description,
    }


# ============================================================================
# DEFAULT CATALOG
# ============================================================================

# (key, start value, min, max, unit, description)
_CATALOG: Tuple[Tuple[str, str, str, str, str, str], ...] = (
    ("gravity", "9.8", "1.0", "20.0", "m/s²", "Controls the gravity level in the game world"),
    ("npcHealth", "100", "10", "1000", "HP", "Sets the maximum health for all NPCs"),
    ("vehicleSpeed", "1.0", "0.1", "5.0", "multiplier", "Multiplies vehicle acceleration and top speed"),
    ("wantedDifficulty", "1.0", "0.1", "3.0", "multiplier", "Adjusts police response difficulty"),
    ("rainIntensity", "0.0", "0.0", "1.0", "level", "Controls rainfall intensity"),
    ("tractionLoss", "1.0", "0.5", "2.0", "multiplier", "Affects vehicle tire traction"),
    ("playerArmor", "100", "50", "500", "points", "Sets maximum player armor capacity"),
    ("snowLevel", "0.0", "0.0", "1.0", "level", "Controls snow accumulation"),
    ("playerHealthRecharge", "1.0", "0.5", "2.0", "multiplier", "Player health recharge rate"),
    ("playerSprintMult", "1.0", "0.5", "2.0", "multiplier", "Player sprint speed"),
    ("playerSwimMult", "1.0", "0.5", "2.0", "multiplier", "Player swim speed"),
    ("playerWeaponDmg", "1.0", "0.5", "2.0", "multiplier", "Player weapon damage"),
    ("playerWeaponDef", "1.0", "0.5", "2.0", "multiplier", "Player weapon defense"),
    ("playerMeleeDmg", "1.0", "0.5", "2.0", "multiplier", "Player melee damage"),
    ("playerVehicleDmg", "1.0", "0.5", "2.0", "multiplier", "Player vehicle damage"),
    ("vehicleEnginePower", "1.0", "0.5", "2.0", "multiplier", "Vehicle engine power"),
    ("vehicleEngineTorque", "1.0", "0.5", "2.0", "multiplier", "Vehicle engine torque"),
    ("pedMaxHealth", "100", "50", "200", "HP", "Pedestrian max health"),
)


def default_parameters() -> Dict[str, Parameter]:
    """Fresh copy of the default catalog, keyed by parameter key."""
    return {
        key: Parameter(
            key=key,
            min_value=Decimal(low),
            max_value=Decimal(high),
            value=Decimal(start),
            unit=unit,
            description=description,
        )
        for key, start, low, high, unit, description in _CATALOG
    }
