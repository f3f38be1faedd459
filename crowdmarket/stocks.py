"""
stocks.py - Stock issuance and the default market

This module provides stock creation:
1. normalize_symbol() - canonical upper-case symbol, validated
2. draw_initial_price() - issuance price drawn from the configured range
3. compute_issuance() - pure function building the PendingChange for a new stock
4. default_ledger() - fresh state with the two house-owned seed stocks

A new stock starts with every share in house inventory. The creator is
granted a small allotment out of that inventory and pays the initial price
for it, so an issued stock always has a top holder and drives its parameter
off the midpoint straight away.
"""

from __future__ import annotations
import re
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .core import (
    MarketView, PendingChange, Portfolio, PortfolioKind, Stock, Parameter,
    HOUSE_ACCOUNT, ZERO,
    DuplicateSymbol, InsufficientFunds, MissingCashContext, ParameterAlreadyBound,
    InvalidSymbol, ReservedIdentity, ValidationFailure,
    kind_for_identity, open_portfolio, round_up_to_unit, to_decimal,
)
from .events import ChangeEvent, PARAMETER_UPDATED, STOCK_ISSUED
from .ledger import MarketLedger
from .ownership import resolve_ownership
from .parameters import default_parameters, refresh_parameter


SYMBOL_PATTERN = re.compile(r"^[A-Z0-9_$]{1,12}$")

# (symbol, name, parameter, price, history)
SEED_STOCKS: Tuple[Tuple[str, str, str, str, Tuple[str, ...]], ...] = (
    ("GRAVITY", "Gravity Control Inc", "gravity", "45.0", ("42.0", "43.0", "44.0", "45.0")),
    ("NPCLIFE", "NPC Life Corp", "npcHealth", "38.0", ("35.0", "36.0", "37.0", "38.0")),
)


@dataclass(frozen=True, slots=True)
class IssuedStock:
    """Result of a successful issuance."""
    symbol: str
    name: str
    parameter: str
    price: Decimal
    creator: str
    creator_shares: int
    cost: Decimal
    creator_cash: Decimal
    parameter_value: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "parameter": self.parameter,
            "price": self.price,
            "creator": self.creator,
            "creator_shares": self.creator_shares,
            "cost": self.cost,
            "creator_cash": self.creator_cash,
            "parameter_value": self.parameter_value,
        }


def normalize_symbol(symbol: Any) -> str:
    """
    Return the canonical (stripped, upper-case) form of a symbol.

    Raises:
        InvalidSymbol: If the symbol is empty, too long or has characters
                       outside A-Z, 0-9, '_' and '$'.
    """
    if not isinstance(symbol, str):
        raise InvalidSymbol(f"symbol must be text, got {symbol!r}")
    canonical = symbol.strip().upper()
    if not SYMBOL_PATTERN.match(canonical):
        raise InvalidSymbol(f"invalid symbol {symbol!r}")
    return canonical


def draw_initial_price(rng: np.random.Generator, low: Decimal, high: Decimal) -> Decimal:
    """Uniform price in [low, high], rounded to one decimal place."""
    value = Decimal(str(rng.uniform(float(low), float(high))))
    price = value.quantize(Decimal("0.1"), rounding=ROUND_HALF_EVEN)
    return min(max(price, low), high)


def create_stock(
    symbol: str,
    name: str,
    parameter: str,
    price: Decimal,
    total_shares: int,
    creator: str,
    history: Optional[Tuple[Decimal, ...]] = None,
) -> Stock:
    """
    Create a stock with every share in house inventory.

    Args:
        symbol: Canonical symbol (see normalize_symbol)
        name: Display name
        parameter: Key of the parameter the stock drives
        price: Initial price
        total_shares: Fixed share count
        creator: Issuing identity
        history: Optional price history; defaults to just the initial price
    """
    price = to_decimal(price, "price")
    return Stock(
        symbol=symbol,
        name=name,
        parameter=parameter,
        price=price,
        total_shares=total_shares,
        house_shares=total_shares,
        creator=creator,
        top_holder=None,
        history=tuple(history) if history else (price,),
    )


def compute_issuance(
    view: MarketView,
    creator: str,
    symbol: str,
    name: str,
    parameter_key: str,
    initial_price: Decimal,
    config: Any,
    now: datetime,
    cash_hint: Optional[Any] = None,
) -> Tuple[PendingChange, IssuedStock]:
    """
    Build the change that issues a new stock. Pure function.

    Checks, in order: symbol and name format, duplicate symbol, known
    parameter, parameter not already bound, creator identity, creator funds.

    Args:
        view: Read-only ledger
        creator: Issuing identity (must not be the house)
        symbol: Requested symbol, case-insensitive
        name: Display name
        parameter_key: Parameter the stock will drive
        initial_price: Price drawn by the caller (see draw_initial_price)
        config: MarketConfig (total_shares, creator_allotment, currency_unit,
                starting cash, history_length)
        now: Commit time for last_active stamps
        cash_hint: Live game cash; required when the creator is the player

    Returns:
        (PendingChange, IssuedStock)

    Raises:
        InvalidSymbol, ValidationFailure, DuplicateSymbol, UnknownParameter,
        ParameterAlreadyBound, ReservedIdentity, MissingCashContext,
        InsufficientFunds
    """
    canonical = normalize_symbol(symbol)
    if not isinstance(name, str) or not name.strip():
        raise ValidationFailure("stock name cannot be empty")
    name = name.strip()
    if view.has_stock(canonical):
        raise DuplicateSymbol(f"stock {canonical} already exists")

    parameter = view.get_parameter(parameter_key)
    for existing in view.list_stocks():
        if existing.parameter == parameter.key:
            raise ParameterAlreadyBound(
                f"parameter {parameter.key} is already driven by {existing.symbol}"
            )

    if not isinstance(creator, str) or not creator.strip():
        raise ValidationFailure("creator identity cannot be empty")
    kind = kind_for_identity(creator)
    if kind is PortfolioKind.HOUSE:
        raise ReservedIdentity("the house account cannot issue stocks")

    portfolio = view.get_portfolio(creator) or open_portfolio(
        creator, now, config.participant_starting_cash, config.house_starting_cash
    )
    if kind is PortfolioKind.PLAYER:
        if cash_hint is None:
            raise MissingCashContext("player issuance needs the live game cash")
        available = to_decimal(cash_hint, "cash")
        if available < ZERO:
            raise ValidationFailure("cash cannot be negative")
    else:
        available = portfolio.cash

    price = to_decimal(initial_price, "initial_price")
    allotment = config.creator_allotment
    cost = round_up_to_unit(price * allotment, config.currency_unit)
    if cost > available:
        raise InsufficientFunds(
            f"insufficient funds: issuing {canonical} costs {cost}, {creator} has {available}"
        )

    stock = create_stock(
        canonical, name, parameter.key, price, config.total_shares, creator,
    )
    creator_portfolio = replace(
        portfolio, cash=available - cost, last_active=now
    ).with_shares(canonical, allotment)
    stock = replace(stock, house_shares=stock.total_shares - allotment)

    positions = dict(view.positions(canonical))
    positions[creator] = allotment
    ownership = resolve_ownership(positions, None)
    stock = replace(stock, top_holder=ownership.top_holder)
    new_parameter = refresh_parameter(parameter, ownership.ratio)

    house = view.get_portfolio(HOUSE_ACCOUNT) or open_portfolio(
        HOUSE_ACCOUNT, now, config.participant_starting_cash, config.house_starting_cash
    )
    portfolios: Tuple[Portfolio, ...] = (creator_portfolio, replace(house, cash=house.cash + cost))

    events = [ChangeEvent(STOCK_ISSUED, {
        "symbol": canonical,
        "name": name,
        "price": price,
        "parameter": parameter.key,
        "creator": creator,
        "top_holder": ownership.top_holder,
        "total_shares": stock.total_shares,
        "house_shares": stock.house_shares,
        "parameter_value": new_parameter.value,
    })]
    changed_parameters: Tuple[Parameter, ...] = ()
    if new_parameter is not parameter:
        changed_parameters = (new_parameter,)
        events.append(ChangeEvent(PARAMETER_UPDATED, {
            "parameter": new_parameter.key,
            "value": new_parameter.value,
            "symbol": canonical,
            "top_holder": ownership.top_holder,
            "ownership_percentage": ownership.percentage,
        }))

    change = PendingChange(
        stocks=(stock,),
        portfolios=portfolios,
        parameters=changed_parameters,
        events=tuple(events),
    )
    issued = IssuedStock(
        symbol=canonical,
        name=name,
        parameter=parameter.key,
        price=price,
        creator=creator,
        creator_shares=allotment,
        cost=cost,
        creator_cash=creator_portfolio.cash,
        parameter_value=new_parameter.value,
    )
    return change, issued


def default_ledger(config: Any, now: datetime) -> MarketLedger:
    """
    Fresh market: default parameter catalog, the two seed stocks fully
    owned by the house, and a seeded house portfolio.

    Parameters bound to the seed stocks start at their neutral midpoint,
    since nobody outside the house owns any shares yet.
    """
    parameters: Dict[str, Parameter] = default_parameters()
    stocks = []
    for symbol, name, key, price, history in SEED_STOCKS:
        stocks.append(create_stock(
            symbol, name, key, Decimal(price), config.total_shares, HOUSE_ACCOUNT,
            history=tuple(Decimal(p) for p in history),
        ))
        parameters[key] = refresh_parameter(parameters[key], None)
    house = open_portfolio(
        HOUSE_ACCOUNT, now, config.participant_starting_cash, config.house_starting_cash
    )
    return MarketLedger(
        parameters=parameters.values(),
        stocks=stocks,
        portfolios=[house],
        start_time=None,
    )
