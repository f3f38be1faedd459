"""
snapshot.py - Snapshot save/restore for crash recovery

The snapshot is a single JSON document:

    {
      "savedAt": "2024-05-01T12:00:00+00:00",
      "startTime": "2024-05-01T11:00:00+00:00",
      "stocks": [{"symbol": "GRAVITY", "price": "45.00", ...}],
      "portfolios": [{"identity": "alice", "cash": "400", "holdings": {...}}],
      "parameters": [{"key": "gravity", "min": "1.0", "value": "10.50", ...}]
    }

Decimals are written as strings so a save/load round trip is exact. Lists
keep ledger order, which the ownership tie-break depends on.

Loading validates the document against SNAPSHOT_SCHEMA and then rebuilds a
MarketLedger, whose constructor enforces the ledger invariants. Any failure
is a PersistenceFailure; load_or_default() turns that into a fresh market.
"""

from __future__ import annotations
import json
import logging
import os
import tempfile
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from jsonschema import Draft202012Validator

from .core import (
    MarketError, Parameter, PersistenceFailure, PortfolioKind, SnapshotNotFound, Stock,
    kind_for_identity, make_portfolio, utc_now,
)
from .ledger import MarketLedger
from .stocks import default_ledger

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_NUMBER = {"type": "string", "pattern": r"^-?[0-9]+(\.[0-9]+)?([eE][+-]?[0-9]+)?$"}
_TIMESTAMP = {"type": "string", "minLength": 1}

SNAPSHOT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["savedAt", "startTime", "stocks", "portfolios", "parameters"],
    "properties": {
        "savedAt": _TIMESTAMP,
        "startTime": {"anyOf": [_TIMESTAMP, {"type": "null"}]},
        "stocks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": [
                    "symbol", "name", "parameter", "price", "totalShares",
                    "houseShares", "creator", "topHolder", "history",
                ],
                "properties": {
                    "symbol": {"type": "string", "minLength": 1},
                    "name": {"type": "string"},
                    "parameter": {"type": "string", "minLength": 1},
                    "price": _NUMBER,
                    "totalShares": {"type": "integer", "minimum": 1},
                    "houseShares": {"type": "integer", "minimum": 0},
                    "creator": {"type": "string"},
                    "topHolder": {"type": ["string", "null"]},
                    "history": {"type": "array", "items": _NUMBER},
                },
                "additionalProperties": False,
            },
        },
        "portfolios": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["identity", "kind", "cash", "lastActive", "holdings"],
                "properties": {
                    "identity": {"type": "string", "minLength": 1},
                    "kind": {"enum": [k.value for k in PortfolioKind]},
                    "cash": _NUMBER,
                    "lastActive": _TIMESTAMP,
                    "holdings": {
                        "type": "object",
                        "additionalProperties": {"type": "integer", "minimum": 1},
                    },
                },
                "additionalProperties": False,
            },
        },
        "parameters": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["key", "min", "max", "value", "unit", "description"],
                "properties": {
                    "key": {"type": "string", "minLength": 1},
                    "min": _NUMBER,
                    "max": _NUMBER,
                    "value": _NUMBER,
                    "unit": {"type": "string"},
                    "description": {"type": "string"},
                },
                "additionalProperties": False,
            },
        },
    },
    "additionalProperties": False,
}

_VALIDATOR = Draft202012Validator(SNAPSHOT_SCHEMA)


# ============================================================================
# DOCUMENT <-> LEDGER
# ============================================================================

def snapshot_document(ledger: MarketLedger, saved_at: datetime) -> Dict[str, Any]:
    """Serialize the full ledger into a JSON-ready document."""
    return {
        "savedAt": saved_at.isoformat(),
        "startTime": ledger.start_time.isoformat() if ledger.start_time else None,
        "stocks": [
            {
                "symbol": s.symbol,
                "name": s.name,
                "parameter": s.parameter,
                "price": str(s.price),
                "totalShares": s.total_shares,
                "houseShares": s.house_shares,
                "creator": s.creator,
                "topHolder": s.top_holder,
                "history": [str(p) for p in s.history],
            }
            for s in ledger.list_stocks()
        ],
        "portfolios": [
            {
                "identity": p.identity,
                "kind": p.kind.value,
                "cash": str(p.cash),
                "lastActive": p.last_active.isoformat(),
                "holdings": p.holdings,
            }
            for p in ledger.list_portfolios()
        ],
        "parameters": [
            {
                "key": p.key,
                "min": str(p.min_value),
                "max": str(p.max_value),
                "value": str(p.value),
                "unit": p.unit,
                "description": p.description,
            }
            for p in ledger.list_parameters()
        ],
    }


def validate_document(document: Any) -> None:
    """
    Raises:
        PersistenceFailure: Listing every schema violation found.
    """
    errors = sorted(_VALIDATOR.iter_errors(document), key=lambda e: list(e.path))
    if errors:
        details = "; ".join(
            f"{'.'.join(str(p) for p in e.path) or '(root)'}: {e.message}" for e in errors[:5]
        )
        raise PersistenceFailure(f"snapshot does not match schema: {details}")


def _timestamp(text: str) -> datetime:
    """Parse an ISO timestamp; the engine clock is UTC-aware, so naive ones are rejected."""
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None or moment.utcoffset() is None:
        raise ValueError(f"timestamp {text!r} has no timezone")
    return moment


def restore_ledger(document: Any) -> MarketLedger:
    """
    Rebuild a MarketLedger from a snapshot document.

    Raises:
        PersistenceFailure: If the document is malformed or its records
                            break a ledger invariant.
    """
    validate_document(document)
    try:
        stocks = [
            Stock(
                symbol=s["symbol"],
                name=s["name"],
                parameter=s["parameter"],
                price=Decimal(s["price"]),
                total_shares=s["totalShares"],
                house_shares=s["houseShares"],
                creator=s["creator"],
                top_holder=s["topHolder"],
                history=tuple(Decimal(p) for p in s["history"]),
            )
            for s in document["stocks"]
        ]
        portfolios = []
        for p in document["portfolios"]:
            kind = PortfolioKind(p["kind"])
            if kind is not kind_for_identity(p["identity"]):
                raise ValueError(f"portfolio {p['identity']} has kind {kind.value}")
            portfolios.append(make_portfolio(
                p["identity"], kind, Decimal(p["cash"]),
                _timestamp(p["lastActive"]), p["holdings"],
            ))
        parameters = [
            Parameter(
                key=p["key"],
                min_value=Decimal(p["min"]),
                max_value=Decimal(p["max"]),
                value=Decimal(p["value"]),
                unit=p["unit"],
                description=p["description"],
            )
            for p in document["parameters"]
        ]
        start = document["startTime"]
        return MarketLedger(
            parameters=parameters,
            stocks=stocks,
            portfolios=portfolios,
            start_time=_timestamp(start) if start else None,
        )
    except (ValueError, MarketError) as exc:
        reason = exc.reason if isinstance(exc, MarketError) else str(exc)
        raise PersistenceFailure(f"snapshot rejected: {reason}") from exc


# ============================================================================
# FILE I/O
# ============================================================================

def write_snapshot(path: PathLike, document: Dict[str, Any]) -> None:
    """
    Write the document atomically (temp file in the same directory, then replace).

    Raises:
        PersistenceFailure: If the file cannot be written.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f"{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp, path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except (OSError, TypeError, ValueError) as exc:
        raise PersistenceFailure(f"cannot write snapshot {path}: {exc}") from exc


def save_snapshot(
    ledger: MarketLedger,
    path: PathLike,
    saved_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Serialize and write the ledger. Returns the document written."""
    document = snapshot_document(ledger, saved_at or utc_now())
    write_snapshot(path, document)
    logger.info("Saved snapshot to %s (%d stocks, %d portfolios)",
                path, len(document["stocks"]), len(document["portfolios"]))
    return document


def load_snapshot(path: PathLike) -> MarketLedger:
    """
    Raises:
        SnapshotNotFound: If there is no file at path.
        PersistenceFailure: If the file is unreadable or invalid.
    """
    path = Path(path)
    if not path.exists():
        raise SnapshotNotFound(f"no snapshot at {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
    except (OSError, ValueError) as exc:
        raise PersistenceFailure(f"cannot read snapshot {path}: {exc}") from exc
    return restore_ledger(document)


def load_or_default(path: PathLike, config: Any, now: datetime) -> Tuple[MarketLedger, bool]:
    """
    Load the snapshot at path, or fall back to a fresh default market.

    Returns:
        (ledger, restored) where restored is False for the fallback.
    """
    try:
        ledger = load_snapshot(path)
    except SnapshotNotFound:
        logger.info("No snapshot at %s; starting a fresh market", path)
        return default_ledger(config, now), False
    except PersistenceFailure as exc:
        logger.warning("Discarding snapshot %s (%s); starting a fresh market", path, exc.reason)
        return default_ledger(config, now), False
    logger.info("Restored %r from %s", ledger, path)
    return ledger, True
