"""
boundary.py - Request decoding and dispatch

Collaborators (chat bot, trading bots, the game client, overlays) talk to
the engine with small JSON requests:

    {"op": "trade", "identity": "alice", "symbol": "GRAVITY",
     "side": "buy", "quantity": 2}

Every request is validated against the JSON Schema for its op before any
value reaches the engine, so the core only ever sees typed values.

dispatch() always returns a response mapping. Success:

    {"success": true, "op": "trade", "data": {...}}

Failure (any MarketError, including schema failures):

    {"success": false, "kind": "insufficient_resources",
     "error": "insufficient_funds", "reason": "insufficient funds: ..."}

Decimals are rendered as JSON numbers in responses and events.
"""

from __future__ import annotations
import json
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Union

from jsonschema import Draft202012Validator

from .core import ErrorKind, MarketError, ValidationFailure
from .engine import MarketEngine
from .events import ChangeEvent

logger = logging.getLogger(__name__)


class RequestValidationError(ValidationFailure):
    """Request body is not valid JSON or does not match its op's schema."""
    kind = ErrorKind.VALIDATION
    code = "invalid_request"


_IDENTITY = {"type": "string", "minLength": 1, "maxLength": 64}
_SYMBOL = {"type": "string", "minLength": 1, "maxLength": 12}
_CASH = {"type": "number", "minimum": 0}


def _request(required: Dict[str, Any], optional: Dict[str, Any] = None) -> Dict[str, Any]:
    properties = {"op": {"type": "string"}, **required, **(optional or {})}
    return {
        "type": "object",
        "required": ["op", *required],
        "properties": properties,
        "additionalProperties": False,
    }


REQUEST_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "get_stocks": _request({}),
    "get_stock": _request({"symbol": _SYMBOL}),
    "get_portfolio": _request({"identity": _IDENTITY}),
    "get_parameters": _request({}),
    "get_leaderboard": _request({}, {"limit": {"type": "integer", "minimum": 1, "maximum": 1000}}),
    "list_users": _request({}),
    "get_status": _request({}),
    "trade": _request(
        {
            "identity": _IDENTITY,
            "symbol": _SYMBOL,
            "side": {"enum": ["buy", "sell"]},
            "quantity": {"type": "integer", "minimum": 1},
        },
        {"cash_hint": _CASH},
    ),
    "issue_stock": _request(
        {
            "creator": _IDENTITY,
            "symbol": _SYMBOL,
            "name": {"type": "string", "minLength": 1, "maxLength": 80},
            "parameter": {"type": "string", "minLength": 1},
        },
        {"cash_hint": _CASH},
    ),
    "sync_player_cash": _request({"cash": _CASH}),
    "reset_portfolio": _request({"identity": _IDENTITY}),
    "reset_all_portfolios": _request({}),
    "start_game": _request({}),
    "stop_game": _request({}),
}

_VALIDATORS = {op: Draft202012Validator(schema) for op, schema in REQUEST_SCHEMAS.items()}


def to_jsonable(value: Any) -> Any:
    """Recursively convert Decimals, enums, datetimes and tuples for JSON output."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if hasattr(value, "to_dict"):
        return to_jsonable(value.to_dict())
    return value


def event_to_wire(event: ChangeEvent) -> Dict[str, Any]:
    return to_jsonable(event.to_dict())


def decode_request(raw: Union[str, bytes, Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Parse and validate one request.

    Raises:
        RequestValidationError: For malformed JSON, an unknown op, or a
                                schema violation.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise RequestValidationError(f"request is not valid JSON: {exc}") from None
    if not isinstance(raw, Mapping):
        raise RequestValidationError("request must be a JSON object")
    op = raw.get("op")
    validator = _VALIDATORS.get(op) if isinstance(op, str) else None
    if validator is None:
        raise RequestValidationError(f"unknown op {op!r}")
    errors = sorted(validator.iter_errors(dict(raw)), key=lambda e: list(e.path))
    if errors:
        error = errors[0]
        where = ".".join(str(p) for p in error.path) or "(request)"
        raise RequestValidationError(f"{op}: {where}: {error.message}")
    return dict(raw)


_HANDLERS: Dict[str, Callable[[MarketEngine, Dict[str, Any]], Any]] = {
    "get_stocks": lambda e, r: e.get_stocks(),
    "get_stock": lambda e, r: e.get_stock(r["symbol"]),
    "get_portfolio": lambda e, r: e.get_portfolio(r["identity"]),
    "get_parameters": lambda e, r: e.get_parameters(),
    "get_leaderboard": lambda e, r: e.get_leaderboard(r.get("limit")),
    "list_users": lambda e, r: e.list_users(),
    "get_status": lambda e, r: e.get_status(),
    "trade": lambda e, r: e.trade(
        r["identity"], r["symbol"], r["side"], r["quantity"], r.get("cash_hint")
    ),
    "issue_stock": lambda e, r: e.issue_stock(
        r["creator"], r["symbol"], r["name"], r["parameter"], r.get("cash_hint")
    ),
    "sync_player_cash": lambda e, r: e.sync_player_cash(r["cash"]),
    "reset_portfolio": lambda e, r: e.reset_portfolio(r["identity"]),
    "reset_all_portfolios": lambda e, r: e.reset_all_portfolios(),
    "start_game": lambda e, r: e.start_game(),
    "stop_game": lambda e, r: e.stop_game(),
}


def dispatch(engine: MarketEngine, raw: Union[str, bytes, Mapping[str, Any]]) -> Dict[str, Any]:
    """Decode one request, run it against the engine, and build the response."""
    try:
        request = decode_request(raw)
        result = _HANDLERS[request["op"]](engine, request)
    except MarketError as err:
        logger.debug("Request failed: %s", err.reason)
        return {"success": False, **err.to_dict()}
    return {"success": True, "op": request["op"], "data": to_jsonable(result)}
