"""
Conservation Law Conformance Tests

INVARIANT: For every stock s, at all times:
    house_shares(s) + Σ_{p ∈ portfolios} holdings(p, s) = total_shares(s)

Trades, issuance and resets move shares between the house and holders
but never create or destroy them. Alongside conservation these tests
check the bounds every committed state must respect:
- No portfolio's cash goes negative, the house included
- Every parameter value stays within [min, max]
- Prices never drop below the configured floor
- A bound parameter reflects its stock's ownership concentration
"""

import pytest
from hypothesis import given, settings, note
from hypothesis import strategies as st
from decimal import Decimal

import numpy as np

from crowdmarket import (
    MarketConfig, MarketEngine, MarketError, InsufficientFunds,
)
from crowdmarket.ownership import resolve_top_holder
from crowdmarket.parameters import map_ownership, neutral_value

from conftest import FakeClock


IDENTITIES = ["alice", "bob", "carol", "dave"]
SYMBOLS = ["GRAVITY", "NPCLIFE"]


# =============================================================================
# STRATEGIES FOR PROPERTY-BASED TESTING
# =============================================================================

@st.composite
def market_action(draw):
    """One participant-facing operation with arbitrary (possibly invalid) arguments."""
    kind = draw(st.sampled_from(["buy", "sell", "buy", "sell", "reset", "idle"]))
    identity = draw(st.sampled_from(IDENTITIES))
    if kind in ("buy", "sell"):
        symbol = draw(st.sampled_from(SYMBOLS))
        quantity = draw(st.integers(min_value=1, max_value=12))
        return (kind, identity, symbol, quantity)
    if kind == "idle":
        return (kind, identity, None, draw(st.integers(min_value=0, max_value=7200)))
    return (kind, identity, None, None)


def action_sequence(max_size=40):
    return st.lists(market_action(), min_size=1, max_size=max_size)


def run_action(engine, clock, action):
    """Apply one action; rejections are part of normal play."""
    kind, identity, symbol, value = action
    try:
        if kind in ("buy", "sell"):
            engine.trade(identity, symbol, kind, value)
        elif kind == "reset":
            engine.reset_portfolio(identity)
        else:
            clock.advance(value)
            engine.expire_idle_portfolios()
    except MarketError as err:
        note(f"{action} rejected: {err.code}")


def fresh_engine(pricing_policy="additive", seed=11, **config):
    clock = FakeClock()
    config = MarketConfig(pricing_policy=pricing_policy, random_seed=seed, **config)
    engine = MarketEngine(config=config, clock=clock, rng=np.random.default_rng(seed))
    return engine, clock


def assert_market_invariants(engine):
    ledger = engine.ledger
    result = ledger.verify_conservation()
    assert result['valid'], result['discrepancies']

    for portfolio in ledger.list_portfolios():
        assert portfolio.cash >= 0, portfolio
        assert all(shares > 0 for shares in portfolio.holdings.values())

    for stock in ledger.list_stocks():
        assert stock.price >= engine.config.min_price
        assert 0 <= stock.house_shares <= stock.total_shares

    for parameter in ledger.list_parameters():
        assert parameter.min_value <= parameter.value <= parameter.max_value


# =============================================================================
# CONSERVATION PROPERTIES
# =============================================================================

class TestConservationProperties:

    @given(action_sequence())
    @settings(max_examples=60, deadline=None)
    def test_shares_conserved_under_any_sequence(self, actions):
        """
        PROPERTY: Any sequence of trades, resets and idle sweeps conserves
        every stock's shares and keeps all bounds.
        """
        engine, clock = fresh_engine()
        for action in actions:
            run_action(engine, clock, action)
            assert_market_invariants(engine)

    @given(action_sequence())
    @settings(max_examples=40, deadline=None)
    def test_multiplicative_pricing_conserves(self, actions):
        engine, clock = fresh_engine("multiplicative")
        for action in actions:
            run_action(engine, clock, action)
        assert_market_invariants(engine)

    @given(action_sequence(), st.sampled_from(["additive", "multiplicative"]))
    @settings(max_examples=40, deadline=None)
    def test_house_without_reserves_never_overdraws(self, actions, policy):
        """
        PROPERTY: A house that starts with no cash can only pay sellers
        out of what buyers paid in, so its cash never goes negative.
        """
        engine, clock = fresh_engine(policy, house_starting_cash=Decimal("0"))
        for action in actions:
            run_action(engine, clock, action)
            assert engine.ledger.house_cash() >= 0
            assert_market_invariants(engine)

    @given(action_sequence())
    @settings(max_examples=40, deadline=None)
    def test_participant_cash_plus_house_cash_is_constant(self, actions):
        """
        PROPERTY: Cash moves between participants and the house; the sum
        only changes when a reset zeroes a participant's balance or an idle
        sweep removes an empty account.
        """
        engine, clock = fresh_engine()
        for action in actions:
            ledger = engine.ledger
            before = sum(p.cash for p in ledger.list_portfolios())
            kind, identity, _, _ = action
            existing = ledger.get_portfolio(identity)
            run_action(engine, clock, action)
            after = sum(p.cash for p in engine.ledger.list_portfolios())

            if kind in ("buy", "sell"):
                opened = Decimal("0") if existing else engine.config.participant_starting_cash
                if engine.ledger.get_portfolio(identity) is None:
                    opened = Decimal("0")
                assert after == before + opened
            else:
                assert after <= before

    @given(action_sequence())
    @settings(max_examples=40, deadline=None)
    def test_bound_parameters_track_concentration(self, actions):
        """
        PROPERTY: After every operation, each stock's top holder holds the
        most shares and its parameter equals the mapped concentration.
        """
        engine, clock = fresh_engine()
        for action in actions:
            run_action(engine, clock, action)

        ledger = engine.ledger
        for stock in ledger.list_stocks():
            positions = ledger.positions(stock.symbol)
            assert stock.top_holder == resolve_top_holder(positions, stock.top_holder)
            parameter = ledger.get_parameter(stock.parameter)
            outstanding = sum(positions.values())
            if outstanding == 0:
                assert stock.top_holder is None
                assert parameter.value == neutral_value(parameter)
            else:
                ratio = Decimal(positions[stock.top_holder]) / Decimal(outstanding)
                assert parameter.value == map_ownership(parameter, ratio)


class TestConservationExamples:

    def test_issue_conserves(self, engine):
        engine.issue_stock("alice", "SNOW", "Snow Co", "snowLevel")
        engine.trade("bob", "SNOW", "buy", 4)
        engine.trade("alice", "SNOW", "sell", 1)
        assert engine.ledger.verify_conservation()['valid']
        assert engine.ledger.verify_conservation()['outstanding']["SNOW"] == 4

    def test_reset_all_returns_everything(self, engine):
        engine.trade("alice", "GRAVITY", "buy", 5)
        engine.trade("bob", "NPCLIFE", "buy", 5)
        engine.reset_all_portfolios()
        outstanding = engine.ledger.verify_conservation()['outstanding']
        assert outstanding == {"GRAVITY": 0, "NPCLIFE": 0}

    def test_house_inventory_never_negative(self, x_engine):
        with pytest.raises(MarketError):
            x_engine.trade("alice", "X", "buy", 1001)
        assert x_engine.ledger.find_stock("X").house_shares == 1000

    def test_house_cash_never_negative(self, stock_ledger, config, clock):
        ledger = stock_ledger(holders={"alice": 3}, house_cash="20")
        engine = MarketEngine(ledger=ledger, config=config, clock=clock)
        with pytest.raises(InsufficientFunds):
            engine.trade("alice", "X", "sell", 3)
        assert engine.ledger.house_cash() == Decimal("20")
        assert engine.ledger.get_portfolio("alice").holdings == {"X": 3}
        assert engine.ledger.verify_conservation()['valid']
