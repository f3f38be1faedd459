"""
ownership.py - Top holder and ownership concentration

Pure functions over a positions mapping {identity: shares}. The house
account never counts: it is neither a candidate top holder nor part of the
outstanding total the concentration ratio divides by.

Tie policy: a challenger must hold strictly more shares than the incumbent
to take over. Among new candidates with equal counts, the first one seen in
the positions mapping wins.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from .core import HOUSE_ACCOUNT, ZERO


@dataclass(frozen=True, slots=True)
class Ownership:
    """
    Ownership summary of one stock.

    Attributes:
        top_holder: Largest non-house holder, or None if nobody holds shares
        top_shares: Shares held by top_holder
        outstanding: Total non-house shares
        ratio: top_shares / outstanding, or None when outstanding is zero
    """
    top_holder: Optional[str]
    top_shares: int
    outstanding: int
    ratio: Optional[Decimal]

    @property
    def percentage(self) -> Decimal:
        return (self.ratio or ZERO) * 100


def resolve_top_holder(
    positions: Mapping[str, int],
    incumbent: Optional[str] = None,
) -> Optional[str]:
    """
    Return the identity with strictly the largest holding.

    Args:
        positions: Shares per identity; the house entry, zeros and
                   negatives are ignored
        incumbent: The currently recorded top holder, kept on a tie

    Returns:
        Identity of the top holder, or None if no non-house identity holds
        any shares.
    """
    best: Optional[str] = None
    best_shares = 0
    for identity, shares in positions.items():
        if identity == HOUSE_ACCOUNT:
            continue
        if shares > best_shares:
            best, best_shares = identity, shares

    if best is None:
        return None
    if incumbent is not None and incumbent != best and incumbent != HOUSE_ACCOUNT:
        if positions.get(incumbent, 0) == best_shares:
            return incumbent
    return best


def outstanding_shares(positions: Mapping[str, int]) -> int:
    return sum(
        shares for identity, shares in positions.items()
        if identity != HOUSE_ACCOUNT and shares > 0
    )


def concentration_ratio(
    positions: Mapping[str, int],
    top_holder: Optional[str],
) -> Optional[Decimal]:
    """
    Top holder's share of non-house outstanding shares, in [0, 1].

    Returns None when no non-house identity holds shares; callers map that
    to the parameter's neutral midpoint.
    """
    outstanding = outstanding_shares(positions)
    if outstanding == 0:
        return None
    if top_holder is None:
        return ZERO
    return Decimal(positions.get(top_holder, 0)) / Decimal(outstanding)


def resolve_ownership(
    positions: Mapping[str, int],
    incumbent: Optional[str] = None,
) -> Ownership:
    """Resolve top holder and concentration ratio in one pass of the rules."""
    top = resolve_top_holder(positions, incumbent)
    return Ownership(
        top_holder=top,
        top_shares=positions.get(top, 0) if top is not None else 0,
        outstanding=outstanding_shares(positions),
        ratio=concentration_ratio(positions, top),
    )
