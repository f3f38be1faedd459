"""
engine.py - Market State Engine

MarketEngine owns one MarketLedger and is its only writer. Every mutating
operation follows the same path:

    1. Read the clock and draw any randomness from the injected generator
    2. Call a pure compute function against the ledger (read-only)
    3. Apply the resulting PendingChange atomically
    4. Stamp the change events with a sequence number and publish them
    5. Sweep idle participant portfolios

A rejected operation raises a MarketError before step 3, so the ledger is
untouched. Operations are synchronous and never yield, which is what makes
them atomic with respect to each other under the asyncio service.
"""

from __future__ import annotations
import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar

import numpy as np

from .config import MarketConfig
from .core import (
    PendingChange, Portfolio, PortfolioKind, Stock,
    PLAYER_ACCOUNT,
    MarketError, ValidationFailure,
    open_portfolio, price_map, utc_now,
)
from .events import ChangeEvent, INITIAL_STATE
from .ledger import MarketLedger
from .parameters import parameter_payload
from .pricing import PricingPolicy, create_pricing_policy
from .stocks import IssuedStock, compute_issuance, default_ledger, draw_initial_price
from .trading import (
    ResetResult, TradeResult,
    compute_cash_sync, compute_game_start, compute_game_stop, compute_idle_expiry,
    compute_portfolio_reset, compute_reset_all, compute_trade, portfolio_worth,
)

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEvent], None]
T = TypeVar("T")


class MarketEngine:
    """
    Single-writer orchestration of trades, issuance and resets, plus the
    read API consumed by chat bots, overlays and the game client.

    Example:
        engine = MarketEngine(config=MarketConfig(random_seed=7))
        engine.trade("alice", "GRAVITY", "buy", 2)
        engine.get_parameters()["gravity"]["value"]
    """

    def __init__(
        self,
        ledger: Optional[MarketLedger] = None,
        config: Optional[MarketConfig] = None,
        pricing: Optional[PricingPolicy] = None,
        rng: Optional[np.random.Generator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or MarketConfig()
        self.clock = clock or utc_now
        self.rng = rng if rng is not None else np.random.default_rng(self.config.random_seed)
        self.pricing = pricing or create_pricing_policy(self.config)
        now = self.clock()
        self.ledger = ledger if ledger is not None else default_ledger(self.config, now)
        if self.ledger.start_time is None:
            self.ledger.start_time = now
        self._sequence = 0
        self._listeners: List[Listener] = []

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for committed events. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def sequence(self) -> int:
        """Sequence number of the last published event."""
        return self._sequence

    def _publish(self, events: List[ChangeEvent]) -> None:
        for event in events:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    # The mutation is already committed; a failing listener
                    # only loses its own copy of the event.
                    logger.exception("Listener %r failed on %r", listener, event)

    # ========================================================================
    # READS
    # ========================================================================

    def _stock_dict(self, stock: Stock) -> Dict[str, Any]:
        return {
            "symbol": stock.symbol,
            "name": stock.name,
            "price": stock.price,
            "parameter": stock.parameter,
            "history": list(stock.history[-self.config.history_window:]),
            "top_holder": stock.top_holder,
            "creator": stock.creator,
            "total_shares": stock.total_shares,
            "house_shares": stock.house_shares,
        }

    def get_stocks(self) -> List[Dict[str, Any]]:
        """All stocks, highest price first (symbol breaks ties)."""
        stocks = sorted(self.ledger.list_stocks(), key=lambda s: (-s.price, s.symbol))
        return [self._stock_dict(s) for s in stocks]

    def get_stock(self, symbol: str) -> Dict[str, Any]:
        return self._stock_dict(self.ledger.find_stock(symbol))

    def _portfolio_dict(self, portfolio: Portfolio) -> Dict[str, Any]:
        prices = price_map(self.ledger.list_stocks())
        holdings = portfolio.holdings
        if portfolio.kind is PortfolioKind.HOUSE:
            # House inventory lives on the stocks, not in the portfolio.
            holdings = {s.symbol: s.house_shares for s in self.ledger.list_stocks() if s.house_shares}
        positions = {
            symbol: {"shares": shares, "value": prices[symbol] * shares}
            for symbol, shares in sorted(holdings.items())
        }
        value = sum((p["value"] for p in positions.values()), Decimal("0"))
        return {
            "identity": portfolio.identity,
            "kind": portfolio.kind.value,
            "cash": portfolio.cash,
            "holdings": {symbol: p["shares"] for symbol, p in positions.items()},
            "positions": positions,
            "stock_value": value,
            "total_worth": portfolio.cash + value,
            "last_active": portfolio.last_active.isoformat(),
        }

    def peek_portfolio(self, identity: str) -> Dict[str, Any]:
        """Portfolio view without creating it; unknown identities show their seed state."""
        portfolio = self.ledger.get_portfolio(identity) or open_portfolio(
            identity, self.clock(),
            self.config.participant_starting_cash, self.config.house_starting_cash,
        )
        return self._portfolio_dict(portfolio)

    def get_portfolio(self, identity: str) -> Dict[str, Any]:
        """
        Portfolio view with per-symbol detail, opening the portfolio if unknown.

        Raises:
            ValidationFailure: If identity is empty.
        """
        if not isinstance(identity, str) or not identity.strip():
            raise ValidationFailure("identity cannot be empty")
        if self.ledger.get_portfolio(identity) is None:
            now = self.clock()
            portfolio = open_portfolio(
                identity, now,
                self.config.participant_starting_cash, self.config.house_starting_cash,
            )
            self.ledger.apply(PendingChange(portfolios=(portfolio,)))
            logger.info("Opened portfolio for %s (%s)", identity, portfolio.kind.value)
        return self._portfolio_dict(self.ledger.get_portfolio(identity))

    def get_parameters(self) -> Dict[str, Dict[str, Any]]:
        return {p.key: parameter_payload(p) for p in self.ledger.list_parameters()}

    def _ranked(self) -> List[Dict[str, Any]]:
        prices = price_map(self.ledger.list_stocks())
        rows = []
        for portfolio in self.ledger.list_portfolios():
            if portfolio.kind is PortfolioKind.HOUSE:
                continue
            value, worth = portfolio_worth(portfolio, prices)
            rows.append({
                "identity": portfolio.identity,
                "kind": portfolio.kind.value,
                "cash": portfolio.cash,
                "stock_value": value,
                "stock_count": len(portfolio.holdings),
                "total_worth": worth,
                "last_active": portfolio.last_active.isoformat(),
            })
        rows.sort(key=lambda r: (-r["total_worth"], r["identity"]))
        return rows

    def get_leaderboard(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Non-house portfolios by total worth.

        Raises:
            ValidationFailure: If limit is not a positive integer.
        """
        if limit is None:
            limit = self.config.leaderboard_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValidationFailure(f"limit must be a positive integer, got {limit!r}")
        rows = self._ranked()[:limit]
        for row in rows:
            del row["last_active"]
        return rows

    def list_users(self) -> List[Dict[str, Any]]:
        """Admin view of every non-house portfolio."""
        return self._ranked()

    def get_status(self) -> Dict[str, Any]:
        now = self.clock()
        start = self.ledger.start_time or now
        return {
            "start_time": start.isoformat(),
            "uptime_seconds": max(0, int((now - start).total_seconds())),
            "total_stocks": len(self.ledger.stocks),
            "total_participants": sum(
                1 for p in self.ledger.list_portfolios() if p.kind is not PortfolioKind.HOUSE
            ),
        }

    def initial_state(self) -> ChangeEvent:
        """Full-state event handed to a new subscriber before any incremental event."""
        return ChangeEvent(INITIAL_STATE, {
            "stocks": self.get_stocks(),
            "parameters": self.get_parameters(),
            "player": self.peek_portfolio(PLAYER_ACCOUNT),
            "leaderboard": self.get_leaderboard(),
        }, sequence=self._sequence, timestamp=self.clock())

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def _run(self, operation: str, compute: Callable[[], T]) -> T:
        try:
            return compute()
        except MarketError as err:
            logger.info("Rejected %s: %s (%s)", operation, err.reason, err.kind.value)
            raise

    def _commit(self, change: PendingChange, now: datetime) -> List[ChangeEvent]:
        self.ledger.apply(change)
        stamped = []
        for event in change.events:
            self._sequence += 1
            stamped.append(replace(event, sequence=self._sequence, timestamp=now))
        self._publish(stamped)
        self._sweep(now)
        return stamped

    def _sweep(self, now: datetime) -> None:
        try:
            change = compute_idle_expiry(self.ledger, now, self.config.idle_expiry_seconds)
            if change.is_empty():
                return
            self.ledger.apply(change)
        except MarketError:
            logger.exception("Idle portfolio sweep failed")
            return
        logger.info("Expired %d idle portfolios: %s",
                    len(change.removed_portfolios), ", ".join(change.removed_portfolios))

    def trade(
        self,
        identity: str,
        symbol: str,
        side: Any,
        quantity: Any,
        cash_hint: Optional[Any] = None,
    ) -> TradeResult:
        """
        Buy or sell shares against house inventory.

        Raises:
            MarketError: Any rejection; the ledger is unchanged.
        """
        def compute():
            now = self.clock()
            draw = self.pricing.sample(self.rng)
            change, result = compute_trade(
                self.ledger, identity, symbol, side, quantity,
                self.pricing, draw, self.config, now, cash_hint,
            )
            self._commit(change, now)
            return result

        result = self._run("trade", compute)
        logger.info(
            "trade %s %s %d %s @ %s -> %s (top holder %s)",
            result.identity, result.side.value, result.quantity, result.symbol,
            result.execution_price, result.new_price, result.top_holder,
        )
        return result

    def issue_stock(
        self,
        creator: str,
        symbol: str,
        name: str,
        parameter: str,
        cash_hint: Optional[Any] = None,
    ) -> IssuedStock:
        """Issue a new stock bound to an unbound parameter."""
        def compute():
            now = self.clock()
            price = draw_initial_price(
                self.rng, self.config.initial_price_min, self.config.initial_price_max
            )
            change, issued = compute_issuance(
                self.ledger, creator, symbol, name, parameter, price,
                self.config, now, cash_hint,
            )
            self._commit(change, now)
            return issued

        issued = self._run("issue", compute)
        logger.info("issue %s (%s) by %s at %s, drives %s",
                    issued.symbol, issued.name, issued.creator, issued.price, issued.parameter)
        return issued

    def sync_player_cash(self, cash: Any) -> Dict[str, Decimal]:
        """Mirror the live game's cash into the player portfolio."""
        def compute():
            now = self.clock()
            change, summary = compute_cash_sync(self.ledger, cash, self.config, now)
            self._commit(change, now)
            return summary

        return self._run("sync", compute)

    def reset_portfolio(self, identity: str) -> ResetResult:
        def compute():
            now = self.clock()
            change, result = compute_portfolio_reset(self.ledger, identity, self.config, now)
            self._commit(change, now)
            return result

        result = self._run("reset", compute)
        logger.info("reset %s: %d stocks, %d shares returned",
                    result.identity, result.cleared_stock_count, result.returned_shares)
        return result

    def reset_all_portfolios(self) -> Dict[str, int]:
        def compute():
            now = self.clock()
            change, summary = compute_reset_all(self.ledger)
            self._commit(change, now)
            return summary

        summary = self._run("reset-all", compute)
        logger.info("reset all portfolios: %d removed, %d shares returned",
                    summary["removed_portfolios"], summary["returned_shares"])
        return summary

    def start_game(self) -> Dict[str, Any]:
        """Start a new round: fresh prices, empty market, neutral parameters."""
        def compute():
            now = self.clock()
            prices = {
                stock.symbol: draw_initial_price(
                    self.rng, self.config.initial_price_min, self.config.initial_price_max
                )
                for stock in self.ledger.list_stocks()
            }
            self._commit(compute_game_start(self.ledger, prices, now), now)
            self.ledger.start_time = now
            return {"start_time": now.isoformat(), "prices": prices}

        result = self._run("start-game", compute)
        logger.info("game started at %s with %d stocks", result["start_time"], len(result["prices"]))
        return result

    def stop_game(self) -> Dict[str, Any]:
        """Tell subscribers the round is over. Prices, portfolios and parameters stay as they are."""
        now = self.clock()
        self._commit(compute_game_stop(now), now)
        logger.info("game stopped at %s", now.isoformat())
        return {"message": "Game stopped"}

    def expire_idle_portfolios(self) -> List[str]:
        """Run the idle sweep now. Returns the removed identities."""
        now = self.clock()
        change = compute_idle_expiry(self.ledger, now, self.config.idle_expiry_seconds)
        if not change.is_empty():
            self.ledger.apply(change)
            logger.info("expire %s", ", ".join(change.removed_portfolios))
        return list(change.removed_portfolios)

    def restore(self, ledger: MarketLedger) -> None:
        """Replace the whole state with another ledger (snapshot load)."""
        self.ledger.replace_state(ledger)
        if self.ledger.start_time is None:
            self.ledger.start_time = self.clock()
        logger.info("Restored %r", self.ledger)
