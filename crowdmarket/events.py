"""
events.py - Change events published after committed mutations

Events are just data: a type name, a payload mapping, and the sequence
number and timestamp stamped on by the engine at commit time. Compute
functions create unstamped events; subscribers only ever see stamped ones.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional


STOCK_UPDATED = "stock-updated"
STOCK_ISSUED = "stock-issued"
PARAMETER_UPDATED = "parameter-updated"
PORTFOLIO_RESET = "portfolio-reset"
PLAYER_CASH_UPDATED = "player-cash-updated"
GAME_STARTED = "game-started"
GAME_STOPPED = "game-stopped"

# Sent once to each new subscriber before any incremental event.
INITIAL_STATE = "initial-state"

EVENT_TYPES = frozenset({
    STOCK_UPDATED, STOCK_ISSUED, PARAMETER_UPDATED, PORTFOLIO_RESET,
    PLAYER_CASH_UPDATED, GAME_STARTED, GAME_STOPPED, INITIAL_STATE,
})


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """
    Structured notification of a committed mutation.

    Attributes:
        event_type: One of EVENT_TYPES
        payload: Event-specific fields
        sequence: Monotonic commit order within an engine (0 = unstamped)
        timestamp: Commit time (None = unstamped)
    """
    event_type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    sequence: int = 0
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type {self.event_type!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "data": dict(self.payload),
        }

    def __repr__(self) -> str:
        return f"ChangeEvent(#{self.sequence} {self.event_type})"
