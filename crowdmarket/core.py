"""
Core types and pure functions for the audience market engine.

This module provides the foundational data structures and protocols:
1. Protocols: MarketView for read-only access to the ledger store
2. Immutable records: Stock, Portfolio, Parameter, PendingChange
3. Exceptions: MarketError and the error taxonomy every operation reports
4. Decimal helpers: price, parameter and currency rounding
5. Portfolio factories and valuation helpers

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import (
    Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_EVEN, ROUND_HALF_UP,
    InvalidOperation, getcontext,
)
from enum import Enum
from typing import (
    Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple,
    runtime_checkable,
)

from .events import ChangeEvent


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Prices, cash and parameter values are all Decimal. The global context is
# configured once at import; no other module touches it.
#
_MARKET_DECIMAL_CONTEXT = getcontext()
_MARKET_DECIMAL_CONTEXT.prec = 50
_MARKET_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved identity holding unsold inventory. Counterparty of every trade.
HOUSE_ACCOUNT = "System"

# Reserved identity mirroring the live game's currency.
PLAYER_ACCOUNT = "Player"

PRICE_DECIMAL_PLACES = 2
PARAMETER_DECIMAL_PLACES = 2

_PRICE_QUANTUM = Decimal(10) ** -PRICE_DECIMAL_PLACES
_PARAMETER_QUANTUM = Decimal(10) ** -PARAMETER_DECIMAL_PLACES

ZERO = Decimal("0")
ONE = Decimal("1")


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from identity to shares held of a single stock (house excluded).
Positions = Dict[str, int]

# Mapping from stock symbol to shares held by a single identity.
Holdings = Dict[str, int]


# ============================================================================
# ENUMS
# ============================================================================

class Side(Enum):
    """Direction of a trade from the participant's point of view."""
    BUY = "buy"
    SELL = "sell"


class PortfolioKind(Enum):
    """
    Classification of a portfolio.

    HOUSE: the reserved system account, exempt from balance checks.
    PLAYER: the live game player; cash mirrors the game's own currency.
    PARTICIPANT: chat viewers and bots; seeded with virtual cash, may expire.
    """
    HOUSE = "house"
    PLAYER = "player"
    PARTICIPANT = "participant"


class ErrorKind(Enum):
    """Machine-readable category carried by every MarketError."""
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    INSUFFICIENT_RESOURCES = "insufficient_resources"
    MISSING_CONTEXT = "missing_context"
    PERSISTENCE_FAILURE = "persistence_failure"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class MarketError(Exception):
    """
    Base exception for every rejected market operation.

    Attributes:
        kind: ErrorKind category
        code: short snake_case name of the concrete failure
        reason: one-line human readable explanation
    """
    kind: ErrorKind = ErrorKind.VALIDATION
    code: str = "market_error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "error": self.code, "reason": self.reason}


class NotFoundError(MarketError):
    kind = ErrorKind.NOT_FOUND
    code = "not_found"


class StockNotFound(NotFoundError):
    """Raised when a symbol does not resolve to a stock."""
    code = "stock_not_found"


class IdentityNotFound(NotFoundError):
    """Raised when an operation requires an existing portfolio."""
    code = "identity_not_found"


class SnapshotNotFound(NotFoundError):
    """Raised when no snapshot document exists at the configured path."""
    code = "snapshot_not_found"


class ValidationFailure(MarketError):
    """Raised when an input is malformed or breaks a uniqueness rule."""
    kind = ErrorKind.VALIDATION
    code = "validation"


class InvalidQuantity(ValidationFailure):
    code = "invalid_quantity"


class InvalidSide(ValidationFailure):
    code = "invalid_side"


class InvalidSymbol(ValidationFailure):
    code = "invalid_symbol"


class DuplicateSymbol(ValidationFailure):
    code = "duplicate_symbol"


class UnknownParameter(ValidationFailure):
    code = "unknown_parameter"


class ParameterAlreadyBound(ValidationFailure):
    code = "parameter_already_bound"


class ReservedIdentity(ValidationFailure):
    """Raised when a caller tries to act as the house account."""
    code = "reserved_identity"


class InvariantViolation(ValidationFailure):
    """Raised by the ledger store when a change would break a ledger invariant."""
    code = "invariant_violation"


class InsufficientResources(MarketError):
    kind = ErrorKind.INSUFFICIENT_RESOURCES
    code = "insufficient_resources"


class InsufficientFunds(InsufficientResources):
    code = "insufficient_funds"


class InsufficientInventory(InsufficientResources):
    code = "insufficient_inventory"


class InsufficientHoldings(InsufficientResources):
    code = "insufficient_holdings"


class MissingCashContext(MarketError):
    """Raised when the player trades without the live game's cash figure."""
    kind = ErrorKind.MISSING_CONTEXT
    code = "missing_cash_context"


class PersistenceFailure(MarketError):
    """Raised when a snapshot cannot be read, validated or written."""
    kind = ErrorKind.PERSISTENCE_FAILURE
    code = "persistence_failure"


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: Any, label: str = "value") -> Decimal:
    """
    Convert a boundary number to Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary
    expansion. Booleans, NaN and infinities are rejected.

    Raises:
        ValidationFailure: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValidationFailure(f"{label} must be a number, got {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationFailure(f"{label} must be a number, got {value!r}") from None
    if not result.is_finite():
        raise ValidationFailure(f"{label} must be finite, got {value!r}")
    return result


def round_price(value: Decimal) -> Decimal:
    """Quantize a price to PRICE_DECIMAL_PLACES (banker's rounding)."""
    return value.quantize(_PRICE_QUANTUM, rounding=ROUND_HALF_EVEN)


def round_parameter(value: Decimal) -> Decimal:
    """Quantize a parameter value to PARAMETER_DECIMAL_PLACES (half up)."""
    return value.quantize(_PARAMETER_QUANTUM, rounding=ROUND_HALF_UP)


def round_up_to_unit(value: Decimal, unit: Decimal) -> Decimal:
    """Round up to a whole multiple of the currency unit (buy cost)."""
    return (value / unit).to_integral_value(rounding=ROUND_CEILING) * unit


def round_down_to_unit(value: Decimal, unit: Decimal) -> Decimal:
    """Round down to a whole multiple of the currency unit (sell proceeds)."""
    return (value / unit).to_integral_value(rounding=ROUND_FLOOR) * unit


def validate_quantity(quantity: Any) -> int:
    """
    Return quantity as a positive int.

    Raises:
        InvalidQuantity: For bools, non-integers and values below one.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidQuantity(f"quantity must be a whole number of shares, got {quantity!r}")
    if quantity <= 0:
        raise InvalidQuantity(f"quantity must be positive, got {quantity}")
    return quantity


def parse_side(side: Any) -> Side:
    """Accept a Side or its string value ("buy"/"sell", any case)."""
    if isinstance(side, Side):
        return side
    if isinstance(side, str):
        try:
            return Side(side.strip().lower())
        except ValueError:
            pass
    raise InvalidSide(f"side must be 'buy' or 'sell', got {side!r}")


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Parameter:
    """
    A gameplay value driven by ownership of its bound stock.

    Attributes:
        key: Unique identifier (e.g., "gravity").
        min_value: Lower bound, strictly below max_value.
        max_value: Upper bound.
        value: Current value, always within [min_value, max_value].
        unit: Display unit for the game client and overlays.
        description: Free text.
    """
    key: str
    min_value: Decimal
    max_value: Decimal
    value: Decimal
    unit: str = ""
    description: str = ""

    def __post_init__(self):
        for name in ("min_value", "max_value", "value"):
            raw = getattr(self, name)
            if not isinstance(raw, Decimal):
                object.__setattr__(self, name, to_decimal(raw, name))
        if not self.key or not self.key.strip():
            raise ValueError("Parameter key cannot be empty")
        if self.min_value >= self.max_value:
            raise ValueError(
                f"Parameter {self.key}: min {self.min_value} must be below max {self.max_value}"
            )
        if not self.min_value <= self.value <= self.max_value:
            raise ValueError(
                f"Parameter {self.key}: value {self.value} outside "
                f"[{self.min_value}, {self.max_value}]"
            )

    @property
    def midpoint(self) -> Decimal:
        return (self.min_value + self.max_value) / 2


@dataclass(frozen=True, slots=True)
class Stock:
    """
    A synthetic stock whose ownership drives one parameter.

    Attributes:
        symbol: Upper-case identifier, immutable after issuance.
        name: Display name.
        parameter: Key of the bound Parameter.
        price: Current price, always positive.
        total_shares: Fixed share count set at issuance.
        house_shares: Unsold inventory held by the house account.
        creator: Identity that issued the stock.
        top_holder: Largest non-house holder, or None.
        history: Bounded past prices, oldest first.
    """
    symbol: str
    name: str
    parameter: str
    price: Decimal
    total_shares: int
    house_shares: int
    creator: str
    top_holder: Optional[str] = None
    history: Tuple[Decimal, ...] = ()

    def __post_init__(self):
        if not isinstance(self.price, Decimal):
            object.__setattr__(self, 'price', to_decimal(self.price, "price"))
        if any(not isinstance(p, Decimal) for p in self.history):
            object.__setattr__(
                self, 'history', tuple(to_decimal(p, "history") for p in self.history)
            )
        if not self.symbol or self.symbol != self.symbol.upper():
            raise ValueError(f"Stock symbol must be non-empty upper case, got {self.symbol!r}")
        if self.price <= ZERO:
            raise ValueError(f"Stock {self.symbol}: price must be positive, got {self.price}")
        if self.total_shares <= 0:
            raise ValueError(f"Stock {self.symbol}: total_shares must be positive")
        if not 0 <= self.house_shares <= self.total_shares:
            raise ValueError(
                f"Stock {self.symbol}: house_shares {self.house_shares} outside "
                f"[0, {self.total_shares}]"
            )

    @property
    def outstanding_shares(self) -> int:
        """Shares held by participants (total minus house inventory)."""
        return self.total_shares - self.house_shares

    def with_price(self, price: Decimal, history_length: int) -> Stock:
        """Return a copy at a new price with the history window advanced."""
        history = (self.history + (price,))[-history_length:]
        return replace(self, price=price, history=history)


def _freeze_holdings(holdings: Optional[Mapping[str, int]]) -> Tuple[Tuple[str, int], ...]:
    """Frozen, symbol-sorted representation of holdings with zeros dropped."""
    if not holdings:
        return ()
    return tuple(sorted((s, int(q)) for s, q in holdings.items() if q))


@dataclass(frozen=True, slots=True)
class Portfolio:
    """
    Cash and share holdings of one identity.

    Holdings never store zero; a position that reaches zero is removed.
    """
    identity: str
    kind: PortfolioKind
    cash: Decimal
    last_active: datetime
    _frozen_holdings: Tuple[Tuple[str, int], ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not isinstance(self.cash, Decimal):
            object.__setattr__(self, 'cash', to_decimal(self.cash, "cash"))
        if not self.identity or not self.identity.strip():
            raise ValueError("Portfolio identity cannot be empty")
        for symbol, shares in self._frozen_holdings:
            if shares <= 0:
                raise ValueError(f"Portfolio {self.identity}: holding {symbol}={shares} must be positive")

    @property
    def holdings(self) -> Holdings:
        """Holdings as a fresh dict; mutating it does not touch the record."""
        return dict(self._frozen_holdings)

    def shares(self, symbol: str) -> int:
        for held, qty in self._frozen_holdings:
            if held == symbol:
                return qty
        return 0

    def with_shares(self, symbol: str, shares: int) -> Portfolio:
        """Return a copy holding exactly `shares` of symbol (zero removes it)."""
        holdings = self.holdings
        if shares:
            holdings[symbol] = shares
        else:
            holdings.pop(symbol, None)
        return replace(self, _frozen_holdings=_freeze_holdings(holdings))

    def with_holdings(self, holdings: Mapping[str, int]) -> Portfolio:
        return replace(self, _frozen_holdings=_freeze_holdings(holdings))


def make_portfolio(
    identity: str,
    kind: PortfolioKind,
    cash: Decimal,
    last_active: datetime,
    holdings: Optional[Mapping[str, int]] = None,
) -> Portfolio:
    """Build a Portfolio from a plain holdings mapping."""
    return Portfolio(
        identity=identity,
        kind=kind,
        cash=cash,
        last_active=last_active,
        _frozen_holdings=_freeze_holdings(holdings),
    )


# ============================================================================
# PENDING CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class PendingChange:
    """
    Everything one operation wants to commit - represents INTENT.

    Compute functions build a PendingChange against a read-only view; the
    ledger store applies it in one step or not at all.

    Attributes:
        stocks: Stock records to insert or replace
        portfolios: Portfolio records to insert or replace
        parameters: Parameter records to replace
        removed_portfolios: Identities whose portfolios are deleted
        events: Change events to publish once the change is committed
    """
    stocks: Tuple[Stock, ...] = ()
    portfolios: Tuple[Portfolio, ...] = ()
    parameters: Tuple[Parameter, ...] = ()
    removed_portfolios: Tuple[str, ...] = ()
    events: Tuple[ChangeEvent, ...] = ()

    def is_empty(self) -> bool:
        return not (self.stocks or self.portfolios or self.parameters or self.removed_portfolios)

    def __repr__(self) -> str:
        return (
            f"PendingChange({len(self.stocks)} stocks, {len(self.portfolios)} portfolios, "
            f"{len(self.parameters)} parameters, {len(self.removed_portfolios)} removals)"
        )


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class MarketView(Protocol):
    """
    Read-only interface to the ledger store.

    Compute functions accept a MarketView to declare that they only observe
    state. MarketLedger implements this protocol and also owns the single
    mutation entry point, apply().
    """

    def find_stock(self, symbol: str) -> Stock:
        """Return the stock for symbol (case-insensitive) or raise StockNotFound."""
        ...

    def has_stock(self, symbol: str) -> bool:
        ...

    def list_stocks(self) -> List[Stock]:
        ...

    def get_portfolio(self, identity: str) -> Optional[Portfolio]:
        """Return the portfolio for identity, or None if it does not exist."""
        ...

    def list_portfolios(self) -> List[Portfolio]:
        ...

    def get_parameter(self, key: str) -> Parameter:
        """Return the parameter for key or raise UnknownParameter."""
        ...

    def list_parameters(self) -> List[Parameter]:
        ...

    def positions(self, symbol: str) -> Positions:
        """Non-house holdings of symbol, in portfolio creation order."""
        ...


# ============================================================================
# PORTFOLIO FACTORIES AND VALUATION
# ============================================================================

def kind_for_identity(identity: str) -> PortfolioKind:
    if identity == HOUSE_ACCOUNT:
        return PortfolioKind.HOUSE
    if identity == PLAYER_ACCOUNT:
        return PortfolioKind.PLAYER
    return PortfolioKind.PARTICIPANT


def open_portfolio(
    identity: str,
    now: datetime,
    participant_cash: Decimal,
    house_cash: Decimal,
) -> Portfolio:
    """
    Create the portfolio an unknown identity starts with.

    The house is seeded with house_cash, chat participants with
    participant_cash, and the player with zero (its cash only ever arrives
    through a sync from the live game).
    """
    kind = kind_for_identity(identity)
    if kind is PortfolioKind.HOUSE:
        cash = house_cash
    elif kind is PortfolioKind.PLAYER:
        cash = ZERO
    else:
        cash = participant_cash
    return make_portfolio(identity, kind, cash, now)


def stock_value(holdings: Mapping[str, int], prices: Mapping[str, Decimal]) -> Decimal:
    """Mark-to-market value of holdings; symbols without a price count as zero."""
    total = ZERO
    for symbol in sorted(holdings):
        price = prices.get(symbol)
        if price is not None:
            total += price * holdings[symbol]
    return total


def price_map(stocks: Iterable[Stock]) -> Dict[str, Decimal]:
    return {stock.symbol: stock.price for stock in stocks}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
