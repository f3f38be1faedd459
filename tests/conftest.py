"""
conftest.py - Shared pytest fixtures for market tests

Provides common fixtures used across unit, conformance and functional tests:
- A controllable clock
- Default configuration and a fresh default ledger
- A seeded engine with additive pricing
- A single-stock ledger matching the documented trading scenarios
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional

import numpy as np

from crowdmarket import (
    MarketConfig, MarketEngine, MarketLedger, Stock,
    HOUSE_ACCOUNT, PortfolioKind,
    default_ledger, default_parameters,
)
from crowdmarket.core import make_portfolio


START = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# HELPERS
# =============================================================================

class FakeClock:
    """Deterministic clock; call it to read, advance() to move forward."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def single_stock_ledger(
    price: str = "50.0",
    total_shares: int = 1000,
    parameter: str = "gravity",
    holders: Optional[Dict[str, int]] = None,
    cash: Optional[Dict[str, str]] = None,
    house_cash: str = "1000000",
    now: datetime = START,
) -> MarketLedger:
    """
    Ledger with one stock X bound to `parameter` plus the house.

    holders: initial non-house positions in X (taken out of house inventory)
    cash: starting cash per identity (default 500 for each holder)
    house_cash: cash the house starts with
    """
    holders = holders or {}
    cash = cash or {}
    identities = list(dict.fromkeys(list(holders) + list(cash)))
    portfolios = [make_portfolio(HOUSE_ACCOUNT, PortfolioKind.HOUSE, Decimal(house_cash), now)]
    for identity in identities:
        kind = PortfolioKind.PLAYER if identity == "Player" else PortfolioKind.PARTICIPANT
        shares = holders.get(identity, 0)
        portfolios.append(make_portfolio(
            identity, kind, Decimal(cash.get(identity, "500")), now,
            {"X": shares} if shares else None,
        ))
    held = sum(holders.values())
    top = max(holders, key=holders.get) if holders else None
    stock = Stock(
        symbol="X", name="Example", parameter=parameter, price=Decimal(price),
        total_shares=total_shares, house_shares=total_shares - held,
        creator=HOUSE_ACCOUNT, top_holder=top, history=(Decimal(price),),
    )
    return MarketLedger(
        parameters=default_parameters().values(),
        stocks=[stock],
        portfolios=portfolios,
        start_time=now,
    )


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return MarketConfig(random_seed=7)


@pytest.fixture
def ledger(config, clock):
    """Fresh default market: GRAVITY and NPCLIFE, all shares with the house."""
    return default_ledger(config, clock())


@pytest.fixture
def engine(config, clock):
    """Engine on the default market with additive pricing and a seeded RNG."""
    return MarketEngine(config=config, clock=clock, rng=np.random.default_rng(7))


@pytest.fixture
def x_engine(config, clock):
    """Engine on a single stock X at 50.0 with 1000 house-owned shares."""
    return MarketEngine(
        ledger=single_stock_ledger(now=clock()),
        config=config,
        clock=clock,
        rng=np.random.default_rng(7),
    )


@pytest.fixture
def events(engine):
    """Committed events published by `engine`, in order."""
    received = []
    engine.subscribe(received.append)
    return received


@pytest.fixture
def stock_ledger():
    """Factory for single-stock ledgers (see single_stock_ledger)."""
    return single_stock_ledger
