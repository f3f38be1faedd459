"""
ledger.py - In-memory ledger store for the audience market

The MarketLedger holds the authoritative state: the stock registry, the
portfolio table and the parameter table. It is the only object that
mutates that state, and it does so through a single entry point, apply().

Key responsibilities:
    - Implements the MarketView protocol for read-only access by pure functions
    - Applies a PendingChange atomically (all records land or none do)
    - Verifies share conservation, cash non-negativity, parameter bounds and
      parameter binding uniqueness before anything is committed
"""

from __future__ import annotations
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .core import (
    # Types
    Stock, Portfolio, Parameter, PendingChange, PortfolioKind, Positions,
    # Constants
    HOUSE_ACCOUNT, ZERO,
    # Exceptions
    StockNotFound, UnknownParameter, InvariantViolation,
)

logger = logging.getLogger(__name__)


class MarketLedger:
    """
    Stock, portfolio and parameter tables with validated atomic updates.

    Implements the MarketView protocol, so the ledger itself can be handed
    to compute functions that only read.

    Thread Safety:
        Not thread-safe. The engine owns one ledger and is its only writer.

    Example:
        ledger = MarketLedger(parameters=default_parameters().values())
        change = compute_trade(ledger, "alice", "GRAVITY", Side.BUY, 2, ...)
        ledger.apply(change)
    """

    def __init__(
        self,
        parameters: Iterable[Parameter] = (),
        stocks: Iterable[Stock] = (),
        portfolios: Iterable[Portfolio] = (),
        start_time: Optional[datetime] = None,
    ):
        """
        Create a ledger pre-populated with records.

        Raises:
            InvariantViolation: If the initial records break a ledger invariant.
        """
        self.parameters: Dict[str, Parameter] = {p.key: p for p in parameters}
        self.stocks: Dict[str, Stock] = {s.symbol: s for s in stocks}
        self.portfolios: Dict[str, Portfolio] = {p.identity: p for p in portfolios}
        self.start_time = start_time
        problems = self._check(self.stocks, self.portfolios, self.parameters)
        if problems:
            raise InvariantViolation("; ".join(problems))

    # ========================================================================
    # MarketView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    def find_stock(self, symbol: str) -> Stock:
        """
        Look a stock up by symbol, ignoring case and surrounding whitespace.

        Raises:
            StockNotFound: If no stock has that symbol.
        """
        if not isinstance(symbol, str):
            raise StockNotFound(f"stock {symbol!r} not found")
        stock = self.stocks.get(symbol.strip().upper())
        if stock is None:
            raise StockNotFound(f"stock {symbol!r} not found")
        return stock

    def has_stock(self, symbol: str) -> bool:
        return isinstance(symbol, str) and symbol.strip().upper() in self.stocks

    def list_stocks(self) -> List[Stock]:
        return list(self.stocks.values())

    def get_portfolio(self, identity: str) -> Optional[Portfolio]:
        return self.portfolios.get(identity)

    def list_portfolios(self) -> List[Portfolio]:
        return list(self.portfolios.values())

    def get_parameter(self, key: str) -> Parameter:
        """
        Raises:
            UnknownParameter: If key is not in the parameter table.
        """
        parameter = self.parameters.get(key)
        if parameter is None:
            raise UnknownParameter(f"unknown parameter {key!r}")
        return parameter

    def list_parameters(self) -> List[Parameter]:
        return list(self.parameters.values())

    def positions(self, symbol: str) -> Positions:
        """
        Non-house holdings of a stock, in portfolio creation order.

        The order matters: it is the "first observed" order the ownership
        resolver uses to break ties between new candidates.
        """
        return self._positions(self.portfolios, symbol)

    def stock_for_parameter(self, key: str) -> Optional[Stock]:
        """Return the stock bound to a parameter key, if any."""
        for stock in self.stocks.values():
            if stock.parameter == key:
                return stock
        return None

    # ========================================================================
    # MUTATION
    # ========================================================================

    def apply(self, change: PendingChange) -> None:
        """
        Apply a PendingChange atomically.

        The change is staged on copies of the three tables, the staged state
        is checked against every ledger invariant touched by the change, and
        only then are the copies swapped in.

        Raises:
            InvariantViolation: If the staged state breaks an invariant. The
                ledger is left exactly as it was.
        """
        if change.is_empty():
            return

        stocks = dict(self.stocks)
        portfolios = dict(self.portfolios)
        parameters = dict(self.parameters)

        for stock in change.stocks:
            stocks[stock.symbol] = stock
        for identity in change.removed_portfolios:
            portfolios.pop(identity, None)
        for portfolio in change.portfolios:
            portfolios[portfolio.identity] = portfolio
        for parameter in change.parameters:
            if parameter.key not in parameters:
                raise InvariantViolation(f"unknown parameter {parameter.key!r} in change")
            parameters[parameter.key] = parameter

        problems = self._check(stocks, portfolios, parameters)
        if problems:
            logger.error("Rejected ledger change %r: %s", change, "; ".join(problems))
            raise InvariantViolation("; ".join(problems))

        self.stocks = stocks
        self.portfolios = portfolios
        self.parameters = parameters

    def replace_state(self, other: MarketLedger) -> None:
        """Adopt all tables of another ledger (snapshot restore, new game)."""
        self.stocks = dict(other.stocks)
        self.portfolios = dict(other.portfolios)
        self.parameters = dict(other.parameters)
        self.start_time = other.start_time

    # ========================================================================
    # INVARIANTS
    # ========================================================================

    @staticmethod
    def _positions(portfolios: Dict[str, Portfolio], symbol: str) -> Positions:
        positions: Positions = {}
        for identity, portfolio in portfolios.items():
            if portfolio.kind is PortfolioKind.HOUSE:
                continue
            shares = portfolio.shares(symbol)
            if shares:
                positions[identity] = shares
        return positions

    @classmethod
    def _check(
        cls,
        stocks: Dict[str, Stock],
        portfolios: Dict[str, Portfolio],
        parameters: Dict[str, Parameter],
    ) -> List[str]:
        """Return a list of invariant violations (empty when consistent)."""
        problems: List[str] = []

        held: Dict[str, int] = {}
        for identity, portfolio in portfolios.items():
            if portfolio.kind is not PortfolioKind.PLAYER and portfolio.cash < ZERO:
                problems.append(f"{identity}: cash {portfolio.cash} is negative")
            if portfolio.kind is PortfolioKind.HOUSE:
                if portfolio.holdings:
                    problems.append("house portfolio must not carry holdings")
                continue
            for symbol, shares in portfolio.holdings.items():
                if symbol not in stocks:
                    problems.append(f"{identity}: holds unknown stock {symbol}")
                held[symbol] = held.get(symbol, 0) + shares

        bound: Dict[str, str] = {}
        for symbol, stock in stocks.items():
            total = stock.house_shares + held.get(symbol, 0)
            if total != stock.total_shares:
                problems.append(
                    f"{symbol}: house {stock.house_shares} + held {held.get(symbol, 0)} "
                    f"!= total {stock.total_shares}"
                )
            if stock.top_holder is not None:
                holder = portfolios.get(stock.top_holder)
                if holder is None or holder.shares(symbol) == 0:
                    problems.append(f"{symbol}: top holder {stock.top_holder} holds no shares")
            if stock.parameter in bound:
                problems.append(
                    f"parameter {stock.parameter} bound to both {bound[stock.parameter]} and {symbol}"
                )
            bound[stock.parameter] = symbol

        for key, parameter in parameters.items():
            if not parameter.min_value <= parameter.value <= parameter.max_value:
                problems.append(f"parameter {key}: value {parameter.value} out of bounds")

        return problems

    def verify_conservation(self) -> Dict[str, Any]:
        """
        Verify share conservation for every stock.

        Returns:
            Dict with keys:
            - 'valid': bool - True if house + held == total for every stock
            - 'outstanding': Dict[str, int] - non-house shares per stock
            - 'discrepancies': List[Dict] - unit, expected, actual per violation

        Example:
            result = ledger.verify_conservation()
            assert result['valid'], result['discrepancies']
        """
        outstanding: Dict[str, int] = {}
        discrepancies = []
        for symbol, stock in self.stocks.items():
            held = sum(self.positions(symbol).values())
            outstanding[symbol] = held
            if stock.house_shares + held != stock.total_shares:
                discrepancies.append({
                    'stock': symbol,
                    'expected': stock.total_shares,
                    'actual': stock.house_shares + held,
                })
        return {
            'valid': not discrepancies,
            'outstanding': outstanding,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # COPIES
    # ========================================================================

    def clone(self) -> MarketLedger:
        """
        Independent copy of this ledger.

        Records are immutable, so copying the three tables is enough for
        modifications of either ledger to stay invisible to the other.
        """
        cloned = MarketLedger.__new__(MarketLedger)
        cloned.stocks = dict(self.stocks)
        cloned.portfolios = dict(self.portfolios)
        cloned.parameters = dict(self.parameters)
        cloned.start_time = self.start_time
        return cloned

    def house_cash(self) -> Decimal:
        house = self.portfolios.get(HOUSE_ACCOUNT)
        return house.cash if house else ZERO

    def __repr__(self) -> str:
        return (
            f"MarketLedger({len(self.stocks)} stocks, {len(self.portfolios)} portfolios, "
            f"{len(self.parameters)} parameters)"
        )
