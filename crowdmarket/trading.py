"""
trading.py - Trade execution and portfolio maintenance

Pure compute functions. Each one reads a MarketView, validates, and returns
a PendingChange plus a result record; nothing is mutated here. The engine
applies the change in one step.

    compute_trade()          buy/sell against house inventory
    compute_cash_sync()      overwrite the live player's mirrored cash
    compute_portfolio_reset() liquidate one identity back to the house
    compute_reset_all()      remove every non-house portfolio
    compute_game_start()     new round: fresh prices, empty market
    compute_game_stop()      announce the end of a round, state untouched
    compute_idle_expiry()    drop idle, empty chat portfolios

Cash rules:
    - The house is the counterparty of every trade. Buys credit house cash,
      sells debit it, and a sell the house cannot pay for is rejected.
    - Buys execute at the pre-trade price. Sells execute at the price the
      sale itself produces, so a round trip never returns more than it cost
      under a symmetric price step.
    - The live player's cash is a mirror of the game's currency. Player
      trades must carry the live cash as a hint; the stored balance becomes
      hint - cost (buy) or hint + proceeds (sell).
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .core import (
    MarketView, PendingChange, Parameter, Portfolio, PortfolioKind, Stock, Side,
    HOUSE_ACCOUNT, PLAYER_ACCOUNT, ZERO,
    IdentityNotFound, InsufficientFunds, InsufficientHoldings, InsufficientInventory,
    MissingCashContext, ReservedIdentity, ValidationFailure,
    kind_for_identity, open_portfolio, parse_side, price_map,
    round_down_to_unit, round_up_to_unit, stock_value, to_decimal, validate_quantity,
)
from .events import (
    ChangeEvent, GAME_STARTED, GAME_STOPPED, PARAMETER_UPDATED, PLAYER_CASH_UPDATED,
    PORTFOLIO_RESET, STOCK_UPDATED,
)
from .ownership import Ownership, resolve_ownership
from .parameters import neutral_value, refresh_parameter
from .pricing import PricingPolicy


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class TradeResult:
    """Outcome of a committed trade."""
    identity: str
    symbol: str
    side: Side
    quantity: int
    execution_price: Decimal
    amount: Decimal
    new_price: Decimal
    new_cash: Decimal
    shares_owned: int
    top_holder: Optional[str]
    parameter: str
    parameter_value: Optional[Decimal]
    total_worth: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "execution_price": self.execution_price,
            "amount": self.amount,
            "new_price": self.new_price,
            "new_cash": self.new_cash,
            "shares_owned": self.shares_owned,
            "top_holder": self.top_holder,
            "parameter": self.parameter,
            "parameter_value": self.parameter_value,
            "total_worth": self.total_worth,
        }


@dataclass(frozen=True, slots=True)
class ResetResult:
    identity: str
    cleared_stock_count: int
    returned_shares: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "cleared_stock_count": self.cleared_stock_count,
            "returned_shares": self.returned_shares,
        }


# ============================================================================
# HELPERS
# ============================================================================

def _require_identity(identity: Any) -> str:
    if not isinstance(identity, str) or not identity.strip():
        raise ValidationFailure("identity cannot be empty")
    if identity == HOUSE_ACCOUNT:
        raise ReservedIdentity("the house account cannot trade")
    return identity


def _house(view: MarketView, config: Any, now: datetime) -> Portfolio:
    return view.get_portfolio(HOUSE_ACCOUNT) or open_portfolio(
        HOUSE_ACCOUNT, now, config.participant_starting_cash, config.house_starting_cash
    )


def _parameters(view: MarketView) -> Dict[str, Parameter]:
    return {p.key: p for p in view.list_parameters()}


def portfolio_worth(
    portfolio: Portfolio,
    prices: Mapping[str, Decimal],
) -> Tuple[Decimal, Decimal]:
    """Return (stock value, total worth) of a portfolio at the given prices."""
    value = stock_value(portfolio.holdings, prices)
    return value, portfolio.cash + value


def _rebind(
    stock: Stock,
    positions: Mapping[str, int],
    parameters: Mapping[str, Parameter],
    incumbent: Optional[str],
) -> Tuple[Stock, Optional[Parameter], Ownership]:
    """
    Re-run the ownership resolver and parameter mapper for one stock.

    Returns the stock with its refreshed top holder, the bound parameter if
    its value changed (else None), and the ownership summary.
    """
    ownership = resolve_ownership(positions, incumbent)
    stock = replace(stock, top_holder=ownership.top_holder)
    parameter = parameters.get(stock.parameter)
    if parameter is None:
        return stock, None, ownership
    refreshed = refresh_parameter(parameter, ownership.ratio)
    return stock, (refreshed if refreshed is not parameter else None), ownership


def _parameter_event(parameter: Parameter, stock: Stock, ownership: Ownership) -> ChangeEvent:
    return ChangeEvent(PARAMETER_UPDATED, {
        "parameter": parameter.key,
        "value": parameter.value,
        "symbol": stock.symbol,
        "top_holder": ownership.top_holder,
        "ownership_percentage": ownership.percentage,
    })


# ============================================================================
# TRADE
# ============================================================================

def compute_trade(
    view: MarketView,
    identity: str,
    symbol: str,
    side: Any,
    quantity: Any,
    pricing: PricingPolicy,
    draw: Optional[Decimal],
    config: Any,
    now: datetime,
    cash_hint: Optional[Any] = None,
) -> Tuple[PendingChange, TradeResult]:
    """
    Build the change for one buy or sell against house inventory.

    Steps:
        1. Validate identity, side and quantity; resolve the stock
        2. Resolve (or lazily open) the portfolio and its effective cash
        3. Check funds/inventory (buy) or holdings (sell)
        4. Move shares and cash, step the price through the pricing policy
        5. Refresh the top holder and the bound parameter

    Args:
        view: Read-only ledger
        identity: Trading identity
        symbol: Stock symbol, case-insensitive
        side: Side or "buy"/"sell"
        quantity: Positive integer share count
        pricing: Pricing policy
        draw: Random draw sampled from the policy (None for additive)
        config: MarketConfig
        now: Commit time
        cash_hint: Live game cash; required for the player identity

    Returns:
        (PendingChange, TradeResult)

    Raises:
        ValidationFailure, ReservedIdentity, InvalidSide, InvalidQuantity,
        StockNotFound, MissingCashContext, InsufficientFunds,
        InsufficientInventory, InsufficientHoldings
    """
    identity = _require_identity(identity)
    side = parse_side(side)
    quantity = validate_quantity(quantity)
    stock = view.find_stock(symbol)

    kind = kind_for_identity(identity)
    portfolio = view.get_portfolio(identity) or open_portfolio(
        identity, now, config.participant_starting_cash, config.house_starting_cash
    )
    if kind is PortfolioKind.PLAYER:
        if cash_hint is None:
            raise MissingCashContext("player trades need the live game cash")
        cash = to_decimal(cash_hint, "cash")
        if cash < ZERO:
            raise ValidationFailure("cash cannot be negative")
    else:
        cash = portfolio.cash

    held = portfolio.shares(stock.symbol)
    house = _house(view, config, now)
    new_price = pricing.next_price(stock.price, side, quantity, draw)

    if side is Side.BUY:
        execution_price = stock.price
        amount = round_up_to_unit(execution_price * quantity, config.currency_unit)
        if amount > cash:
            raise InsufficientFunds(
                f"insufficient funds: {quantity} {stock.symbol} costs {amount}, "
                f"{identity} has {cash}"
            )
        if stock.house_shares < quantity:
            raise InsufficientInventory(
                f"insufficient inventory: {stock.house_shares} {stock.symbol} available"
            )
        new_cash = cash - amount
        new_held = held + quantity
        house_shares = stock.house_shares - quantity
        house = replace(house, cash=house.cash + amount)
    else:
        if held < quantity:
            raise InsufficientHoldings(
                f"insufficient holdings: {identity} holds {held} {stock.symbol}"
            )
        # Sellers are paid at the price their own sale produces
        execution_price = new_price
        amount = round_down_to_unit(execution_price * quantity, config.currency_unit)
        if amount > house.cash:
            raise InsufficientFunds(
                f"insufficient funds: the house cannot pay {amount} for "
                f"{quantity} {stock.symbol}, it has {house.cash}"
            )
        new_cash = cash + amount
        new_held = held - quantity
        house_shares = stock.house_shares + quantity
        house = replace(house, cash=house.cash - amount)

    portfolio = replace(portfolio, cash=new_cash, last_active=now).with_shares(
        stock.symbol, new_held
    )

    positions = dict(view.positions(stock.symbol))
    if new_held:
        positions[identity] = new_held
    else:
        positions.pop(identity, None)

    updated = replace(stock, house_shares=house_shares).with_price(
        new_price, config.history_length
    )
    parameters = _parameters(view)
    updated, changed, ownership = _rebind(updated, positions, parameters, stock.top_holder)
    if changed is not None:
        parameter_value: Optional[Decimal] = changed.value
    elif stock.parameter in parameters:
        parameter_value = parameters[stock.parameter].value
    else:
        parameter_value = None

    prices = price_map(view.list_stocks())
    prices[stock.symbol] = new_price
    _, total_worth = portfolio_worth(portfolio, prices)

    events = [ChangeEvent(STOCK_UPDATED, {
        "symbol": stock.symbol,
        "price": new_price,
        "side": side.value,
        "quantity": quantity,
        "identity": identity,
        "top_holder": ownership.top_holder,
        "house_shares": house_shares,
        "parameter": stock.parameter,
        "parameter_value": parameter_value,
    })]
    if changed is not None:
        events.append(_parameter_event(changed, updated, ownership))

    change = PendingChange(
        stocks=(updated,),
        portfolios=(portfolio, house),
        parameters=(changed,) if changed else (),
        events=tuple(events),
    )
    result = TradeResult(
        identity=identity,
        symbol=stock.symbol,
        side=side,
        quantity=quantity,
        execution_price=execution_price,
        amount=amount,
        new_price=new_price,
        new_cash=new_cash,
        shares_owned=new_held,
        top_holder=ownership.top_holder,
        parameter=stock.parameter,
        parameter_value=parameter_value,
        total_worth=total_worth,
    )
    return change, result


# ============================================================================
# PLAYER CASH SYNC
# ============================================================================

def compute_cash_sync(
    view: MarketView,
    cash: Any,
    config: Any,
    now: datetime,
) -> Tuple[PendingChange, Dict[str, Decimal]]:
    """
    Overwrite the live player's cash with the game's current balance.

    Returns:
        (PendingChange, {"cash", "stock_value", "total_worth"})

    Raises:
        ValidationFailure: If cash is not a non-negative number.
    """
    cash = to_decimal(cash, "cash")
    if cash < ZERO:
        raise ValidationFailure("cash cannot be negative")
    player = view.get_portfolio(PLAYER_ACCOUNT) or open_portfolio(
        PLAYER_ACCOUNT, now, config.participant_starting_cash, config.house_starting_cash
    )
    player = replace(player, cash=cash, last_active=now)
    value, worth = portfolio_worth(player, price_map(view.list_stocks()))
    summary = {"cash": cash, "stock_value": value, "total_worth": worth}
    change = PendingChange(
        portfolios=(player,),
        events=(ChangeEvent(PLAYER_CASH_UPDATED, dict(summary)),),
    )
    return change, summary


# ============================================================================
# RESETS
# ============================================================================

def compute_portfolio_reset(
    view: MarketView,
    identity: str,
    config: Any,
    now: datetime,
) -> Tuple[PendingChange, ResetResult]:
    """
    Liquidate one identity's holdings back into house inventory and zero its cash.

    No cash changes hands: the shares simply return to the house. Every
    affected stock gets its top holder and parameter re-derived.

    Raises:
        ReservedIdentity: For the house account.
        IdentityNotFound: For an unknown identity other than the player,
                          which is opened lazily.
    """
    if not isinstance(identity, str) or not identity.strip():
        raise ValidationFailure("identity cannot be empty")
    if identity == HOUSE_ACCOUNT:
        raise ReservedIdentity("the house account cannot be reset")
    portfolio = view.get_portfolio(identity)
    if portfolio is None:
        if identity != PLAYER_ACCOUNT:
            raise IdentityNotFound(f"no portfolio for {identity!r}")
        portfolio = open_portfolio(
            identity, now, config.participant_starting_cash, config.house_starting_cash
        )

    parameters = _parameters(view)
    stocks: List[Stock] = []
    changed: List[Parameter] = []
    events: List[ChangeEvent] = []
    returned = 0
    for symbol, shares in portfolio.holdings.items():
        stock = view.find_stock(symbol)
        positions = dict(view.positions(symbol))
        positions.pop(identity, None)
        incumbent = stock.top_holder if stock.top_holder != identity else None
        stock = replace(stock, house_shares=stock.house_shares + shares)
        stock, parameter, ownership = _rebind(stock, positions, parameters, incumbent)
        stocks.append(stock)
        returned += shares
        if parameter is not None:
            changed.append(parameter)
            events.append(_parameter_event(parameter, stock, ownership))

    cleared = replace(portfolio, cash=ZERO, last_active=now).with_holdings({})
    result = ResetResult(identity, len(stocks), returned)
    events.insert(0, ChangeEvent(PORTFOLIO_RESET, result.to_dict()))
    if identity == PLAYER_ACCOUNT:
        events.insert(1, ChangeEvent(PLAYER_CASH_UPDATED, {
            "cash": ZERO, "stock_value": ZERO, "total_worth": ZERO,
        }))

    change = PendingChange(
        stocks=tuple(stocks),
        portfolios=(cleared,),
        parameters=tuple(changed),
        events=tuple(events),
    )
    return change, result


def compute_reset_all(view: MarketView) -> Tuple[PendingChange, Dict[str, int]]:
    """
    Remove every non-house portfolio and return all shares to the house.

    Returns:
        (PendingChange, {"removed_portfolios", "returned_shares"})
    """
    removed = tuple(
        p.identity for p in view.list_portfolios() if p.kind is not PortfolioKind.HOUSE
    )
    parameters = _parameters(view)
    stocks: List[Stock] = []
    changed: List[Parameter] = []
    events: List[ChangeEvent] = []
    returned = 0
    for stock in view.list_stocks():
        if stock.house_shares == stock.total_shares and stock.top_holder is None:
            continue
        returned += stock.outstanding_shares
        stock = replace(stock, house_shares=stock.total_shares)
        stock, parameter, ownership = _rebind(stock, {}, parameters, None)
        stocks.append(stock)
        if parameter is not None:
            changed.append(parameter)
            events.append(_parameter_event(parameter, stock, ownership))

    summary = {"removed_portfolios": len(removed), "returned_shares": returned}
    events.insert(0, ChangeEvent(PORTFOLIO_RESET, {"identity": None, **summary}))
    change = PendingChange(
        stocks=tuple(stocks),
        parameters=tuple(changed),
        removed_portfolios=removed,
        events=tuple(events),
    )
    return change, summary


def compute_game_start(
    view: MarketView,
    prices: Mapping[str, Decimal],
    now: datetime,
) -> PendingChange:
    """
    New round: every stock restarts at its freshly drawn price with all
    shares in house inventory, every non-house portfolio is removed and
    every parameter returns to its midpoint.

    Args:
        view: Read-only ledger
        prices: New price per stock symbol (drawn by the caller)
        now: Round start time
    """
    stocks = []
    for stock in view.list_stocks():
        price = to_decimal(prices[stock.symbol], "price")
        stocks.append(replace(
            stock,
            price=price,
            history=(price,),
            house_shares=stock.total_shares,
            top_holder=None,
        ))
    parameters = tuple(
        replace(p, value=neutral_value(p))
        for p in view.list_parameters()
        if p.value != neutral_value(p)
    )
    removed = tuple(
        p.identity for p in view.list_portfolios() if p.kind is not PortfolioKind.HOUSE
    )
    event = ChangeEvent(GAME_STARTED, {
        "start_time": now.isoformat(),
        "prices": {s.symbol: s.price for s in stocks},
        "removed_portfolios": len(removed),
    })
    return PendingChange(
        stocks=tuple(stocks),
        parameters=parameters,
        removed_portfolios=removed,
        events=(event,),
    )


def compute_game_stop(now: datetime, message: str = "Game stopped") -> PendingChange:
    """
    End of a round as an announcement only: the market keeps its state and
    stays open, subscribers just learn that the game side has stopped.
    """
    return PendingChange(events=(ChangeEvent(GAME_STOPPED, {
        "message": message,
        "stopped_at": now.isoformat(),
    }),))


def compute_idle_expiry(view: MarketView, now: datetime, window_seconds: int) -> PendingChange:
    """
    Remove chat-participant portfolios with no holdings and no activity
    for longer than window_seconds. Holders are never expired.
    """
    expired = tuple(
        p.identity for p in view.list_portfolios()
        if p.kind is PortfolioKind.PARTICIPANT
        and not p.holdings
        and (now - p.last_active).total_seconds() > window_seconds
    )
    return PendingChange(removed_portfolios=expired)
