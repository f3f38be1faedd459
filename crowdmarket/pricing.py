"""
pricing.py - Price movement policies

A pricing policy maps (current price, side, quantity) to the next price,
independently of who traded. Two shapes are supported:

- AdditivePricing: price moves a fixed step per share.
- MultiplicativePricing: price moves a percentage per share, the
  percentage drawn from a bounded range for every trade.

Random draws are never hidden inside next_price(). The caller asks the
policy to sample() from an injected generator and passes the draw back in,
so next_price() stays a pure function.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, ClassVar, Optional, Protocol, runtime_checkable

import numpy as np

from .core import ONE, Side, ZERO, round_price, to_decimal, validate_quantity


POLICY_ADDITIVE = "additive"
POLICY_MULTIPLICATIVE = "multiplicative"


@runtime_checkable
class PricingPolicy(Protocol):
    """
    Protocol for pricing policies.

    Implementations must be monotonic in quantity and never return a price
    below min_price.
    """
    name: ClassVar[str]
    min_price: Decimal

    def sample(self, rng: np.random.Generator) -> Optional[Decimal]:
        """Draw whatever randomness next_price() needs (None if none)."""
        ...

    def next_price(
        self,
        current: Decimal,
        side: Side,
        quantity: int,
        draw: Optional[Decimal] = None,
    ) -> Decimal:
        """Return the price after a trade of quantity shares on side."""
        ...


def floor_price(raw: Decimal, min_price: Decimal) -> Decimal:
    """Round to price precision and clamp at the configured floor."""
    return max(round_price(raw), min_price)


@dataclass(frozen=True)
class AdditivePricing:
    """
    Price moves by `step` per share: up on buys, down on sells.

    Example:
        policy = AdditivePricing(step=Decimal("1.0"))
        policy.next_price(Decimal("50"), Side.BUY, 2)   # Decimal("52.00")
    """
    step: Decimal = Decimal("1.0")
    min_price: Decimal = Decimal("1.0")

    name: ClassVar[str] = POLICY_ADDITIVE

    def __post_init__(self):
        object.__setattr__(self, 'step', to_decimal(self.step, "step"))
        object.__setattr__(self, 'min_price', to_decimal(self.min_price, "min_price"))
        if self.step <= ZERO:
            raise ValueError(f"step must be positive, got {self.step}")
        if self.min_price <= ZERO:
            raise ValueError(f"min_price must be positive, got {self.min_price}")

    def sample(self, rng: np.random.Generator) -> Optional[Decimal]:
        return None

    def next_price(
        self,
        current: Decimal,
        side: Side,
        quantity: int,
        draw: Optional[Decimal] = None,
    ) -> Decimal:
        quantity = validate_quantity(quantity)
        delta = self.step * quantity
        raw = current + delta if side is Side.BUY else current - delta
        return floor_price(raw, self.min_price)


@dataclass(frozen=True)
class MultiplicativePricing:
    """
    Price moves by `draw * quantity` percent of the current price.

    The per-share percentage is drawn uniformly from [pct_min, pct_max] for
    every trade so repeated identical trades do not walk a predictable ladder.
    """
    pct_min: Decimal = Decimal("0.005")
    pct_max: Decimal = Decimal("0.02")
    min_price: Decimal = Decimal("1.0")

    name: ClassVar[str] = POLICY_MULTIPLICATIVE

    # Draws are rounded to this many places before entering Decimal math.
    DRAW_DECIMAL_PLACES: ClassVar[int] = 6

    def __post_init__(self):
        object.__setattr__(self, 'pct_min', to_decimal(self.pct_min, "pct_min"))
        object.__setattr__(self, 'pct_max', to_decimal(self.pct_max, "pct_max"))
        object.__setattr__(self, 'min_price', to_decimal(self.min_price, "min_price"))
        if not ZERO < self.pct_min <= self.pct_max < ONE:
            raise ValueError(
                f"percentage range must satisfy 0 < min <= max < 1, "
                f"got [{self.pct_min}, {self.pct_max}]"
            )
        if self.min_price <= ZERO:
            raise ValueError(f"min_price must be positive, got {self.min_price}")

    def sample(self, rng: np.random.Generator) -> Decimal:
        value = rng.uniform(float(self.pct_min), float(self.pct_max))
        draw = Decimal(str(round(float(value), self.DRAW_DECIMAL_PLACES)))
        # Rounding can step just outside the range at either end.
        return min(max(draw, self.pct_min), self.pct_max)

    def next_price(
        self,
        current: Decimal,
        side: Side,
        quantity: int,
        draw: Optional[Decimal] = None,
    ) -> Decimal:
        quantity = validate_quantity(quantity)
        if draw is None:
            raise ValueError("multiplicative pricing requires a percentage draw")
        draw = to_decimal(draw, "draw")
        if not self.pct_min <= draw <= self.pct_max:
            raise ValueError(f"draw {draw} outside [{self.pct_min}, {self.pct_max}]")
        move = draw * quantity
        factor = ONE + move if side is Side.BUY else ONE - move
        return floor_price(current * factor, self.min_price)


def create_pricing_policy(config: Any) -> PricingPolicy:
    """
    Build the policy named by config.pricing_policy.

    Raises:
        ValueError: If the policy name is not recognised.
    """
    if config.pricing_policy == POLICY_ADDITIVE:
        return AdditivePricing(step=config.price_step, min_price=config.min_price)
    if config.pricing_policy == POLICY_MULTIPLICATIVE:
        return MultiplicativePricing(
            pct_min=config.price_pct_min,
            pct_max=config.price_pct_max,
            min_price=config.min_price,
        )
    raise ValueError(f"Unknown pricing policy {config.pricing_policy!r}")
