"""
crowdmarket - Audience-participation stock market engine

Chat participants, bots and the live game player trade shares in synthetic
stocks. Ownership concentration of each stock drives one gameplay parameter.

Usage:
    from crowdmarket import MarketEngine, MarketConfig

    engine = MarketEngine(config=MarketConfig(random_seed=7))

    engine.trade("alice", "GRAVITY", "buy", 2)
    engine.trade("Player", "NPCLIFE", "buy", 1, cash_hint=2500)
    engine.issue_stock("bob", "RAIN", "Rain Makers", "rainIntensity")

    engine.get_parameters()["gravity"]["value"]
    engine.get_leaderboard(5)

    # JSON request/response boundary
    from crowdmarket import dispatch
    dispatch(engine, {"op": "get_stocks"})
"""

# Core types
from .core import (
    MarketView,
    PendingChange,
    Stock,
    Portfolio,
    Parameter,
    Side,
    PortfolioKind,
    ErrorKind,
    MarketError,
    NotFoundError,
    StockNotFound,
    IdentityNotFound,
    SnapshotNotFound,
    ValidationFailure,
    InvalidQuantity,
    InvalidSide,
    InvalidSymbol,
    DuplicateSymbol,
    UnknownParameter,
    ParameterAlreadyBound,
    ReservedIdentity,
    InvariantViolation,
    InsufficientResources,
    InsufficientFunds,
    InsufficientInventory,
    InsufficientHoldings,
    MissingCashContext,
    PersistenceFailure,
    HOUSE_ACCOUNT,
    PLAYER_ACCOUNT,
)

# Ledger store
from .ledger import MarketLedger

# Rules
from .pricing import AdditivePricing, MultiplicativePricing, PricingPolicy, create_pricing_policy
from .ownership import Ownership, resolve_ownership, resolve_top_holder, concentration_ratio
from .parameters import map_ownership, default_parameters
from .stocks import IssuedStock, compute_issuance, default_ledger
from .trading import TradeResult, ResetResult, compute_trade
from .events import ChangeEvent

# Runtime
from .config import ConfigError, MarketConfig, load_config
from .engine import MarketEngine
from .snapshot import load_or_default, load_snapshot, save_snapshot
from .boundary import RequestValidationError, decode_request, dispatch
from .service import MarketService

__version__ = "0.1.0"

__all__ = [
    # Core
    'MarketView', 'PendingChange', 'Stock', 'Portfolio', 'Parameter',
    'Side', 'PortfolioKind', 'ErrorKind',
    'MarketError', 'NotFoundError', 'StockNotFound', 'IdentityNotFound', 'SnapshotNotFound',
    'ValidationFailure', 'InvalidQuantity', 'InvalidSide', 'InvalidSymbol',
    'DuplicateSymbol', 'UnknownParameter', 'ParameterAlreadyBound', 'ReservedIdentity',
    'InvariantViolation', 'InsufficientResources', 'InsufficientFunds',
    'InsufficientInventory', 'InsufficientHoldings', 'MissingCashContext',
    'PersistenceFailure', 'HOUSE_ACCOUNT', 'PLAYER_ACCOUNT',
    # Ledger
    'MarketLedger',
    # Rules
    'AdditivePricing', 'MultiplicativePricing', 'PricingPolicy', 'create_pricing_policy',
    'Ownership', 'resolve_ownership', 'resolve_top_holder', 'concentration_ratio',
    'map_ownership', 'default_parameters',
    'IssuedStock', 'compute_issuance', 'default_ledger',
    'TradeResult', 'ResetResult', 'compute_trade',
    'ChangeEvent',
    # Runtime
    'ConfigError', 'MarketConfig', 'load_config',
    'MarketEngine',
    'load_or_default', 'load_snapshot', 'save_snapshot',
    'RequestValidationError', 'decode_request', 'dispatch',
    'MarketService',
]
