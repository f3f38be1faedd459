"""
test_boundary.py - Request validation and dispatch
"""

import json
import pytest
from decimal import Decimal

from crowdmarket import RequestValidationError, decode_request, dispatch
from crowdmarket.boundary import event_to_wire, to_jsonable


class TestDecode:

    def test_valid_trade(self):
        request = decode_request(
            '{"op": "trade", "identity": "alice", "symbol": "GRAVITY", "side": "buy", "quantity": 2}'
        )
        assert request["quantity"] == 2

    @pytest.mark.parametrize("raw", [
        "{not json",
        "[1, 2]",
        {"op": "teleport"},
        {"identity": "alice"},
        {"op": "trade", "identity": "alice", "symbol": "X", "side": "hold", "quantity": 1},
        {"op": "trade", "identity": "alice", "symbol": "X", "side": "buy", "quantity": 0},
        {"op": "trade", "identity": "alice", "symbol": "X", "side": "buy", "quantity": "2"},
        {"op": "trade", "identity": "alice", "symbol": "X", "side": "buy"},
        {"op": "get_stocks", "extra": True},
        {"op": "sync_player_cash", "cash": -5},
    ])
    def test_rejected(self, raw):
        with pytest.raises(RequestValidationError):
            decode_request(raw)

    def test_error_kind(self):
        with pytest.raises(RequestValidationError) as info:
            decode_request({"op": "nope"})
        assert info.value.to_dict()["kind"] == "validation"
        assert info.value.to_dict()["error"] == "invalid_request"


class TestDispatch:

    def test_success_response_is_json(self, engine):
        response = dispatch(engine, {
            "op": "trade", "identity": "alice", "symbol": "GRAVITY", "side": "buy", "quantity": 2,
        })
        assert response["success"] is True
        assert response["op"] == "trade"
        assert response["data"]["new_cash"] == 410.0
        assert response["data"]["side"] == "buy"
        json.dumps(response)

    def test_market_error_response(self, engine):
        response = dispatch(engine, {
            "op": "trade", "identity": "alice", "symbol": "GRAVITY", "side": "sell", "quantity": 1,
        })
        assert response == {
            "success": False,
            "kind": "insufficient_resources",
            "error": "insufficient_holdings",
            "reason": response["reason"],
        }
        assert "GRAVITY" in response["reason"]

    def test_not_found(self, engine):
        response = dispatch(engine, {"op": "get_stock", "symbol": "NOPE"})
        assert response["kind"] == "not_found"

    def test_missing_cash_context(self, engine):
        response = dispatch(engine, {
            "op": "trade", "identity": "Player", "symbol": "GRAVITY", "side": "buy", "quantity": 1,
        })
        assert response["kind"] == "missing_context"

    def test_schema_error_response(self, engine):
        response = dispatch(engine, "{broken")
        assert response["success"] is False
        assert response["error"] == "invalid_request"

    @pytest.mark.parametrize("request_body", [
        {"op": "get_stocks"},
        {"op": "get_parameters"},
        {"op": "get_leaderboard", "limit": 3},
        {"op": "list_users"},
        {"op": "get_status"},
        {"op": "get_portfolio", "identity": "alice"},
        {"op": "sync_player_cash", "cash": 1500.5},
        {"op": "issue_stock", "creator": "bob", "symbol": "snow", "name": "Snow Co", "parameter": "snowLevel"},
        {"op": "reset_all_portfolios"},
        {"op": "start_game"},
        {"op": "stop_game"},
    ])
    def test_every_op_dispatches(self, engine, request_body):
        response = dispatch(engine, request_body)
        assert response["success"] is True, response
        json.dumps(response)

    def test_stop_game(self, engine):
        received = []
        engine.subscribe(received.append)
        response = dispatch(engine, '{"op": "stop_game"}')
        assert response == {"success": True, "op": "stop_game", "data": {"message": "Game stopped"}}
        assert [e.event_type for e in received] == ["game-stopped"]

    def test_reset_portfolio(self, engine):
        dispatch(engine, {"op": "get_portfolio", "identity": "alice"})
        response = dispatch(engine, {"op": "reset_portfolio", "identity": "alice"})
        assert response["data"] == {"identity": "alice", "cleared_stock_count": 0, "returned_shares": 0}

    def test_float_cash_is_exact(self, engine):
        dispatch(engine, {"op": "sync_player_cash", "cash": 0.1})
        assert str(engine.ledger.get_portfolio("Player").cash) == "0.1"


class TestWire:

    def test_event_to_wire(self, engine, events):
        engine.trade("alice", "GRAVITY", "buy", 1)
        wire = event_to_wire(events[0])
        assert wire["type"] == "stock-updated"
        assert wire["sequence"] == 1
        assert wire["data"]["price"] == 46.0
        json.dumps(wire)

    def test_to_jsonable_nested(self):
        assert to_jsonable({"a": (Decimal("1.5"), [Decimal("2")])}) == {"a": [1.5, [2.0]]}
