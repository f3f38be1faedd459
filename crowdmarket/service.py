"""
service.py - asyncio runtime around the engine

MarketService is what a transport (websocket server, chat bot process)
embeds. It owns one MarketEngine and adds:

    - subscriber fan-out: every committed event is put on each subscriber's
      asyncio.Queue without blocking; a subscriber that falls behind far
      enough to fill its queue has it cleared and refilled with a fresh
      initial-state event, so it resyncs instead of missing updates
    - an initial-state event delivered to each new subscriber first
    - periodic snapshots written off the event loop, plus a final save on stop()

Requests are handled synchronously inside handle(); there is no await
between reading and writing the ledger, so each mutation commits before the
loop can admit the next one.

Usage:
    service = MarketService.from_config(load_config())
    await service.start()
    queue = service.subscribe("overlay")
    response = await service.handle({"op": "get_stocks"})
    await service.stop()
"""

from __future__ import annotations
import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .boundary import dispatch, event_to_wire
from .config import MarketConfig
from .core import PersistenceFailure, utc_now
from .engine import MarketEngine
from .events import ChangeEvent
from .snapshot import load_or_default, snapshot_document, write_snapshot

logger = logging.getLogger(__name__)


class MarketService:
    """
    Event fan-out and snapshot scheduling for one engine.

    Attributes:
        engine: The engine being served
        snapshot_path: Where snapshots are written
        snapshot_interval: Seconds between periodic snapshots
        max_queue: Per-subscriber queue bound
    """

    def __init__(
        self,
        engine: MarketEngine,
        snapshot_path: Optional[Union[str, Path]] = None,
        snapshot_interval: Optional[float] = None,
        max_queue: int = 1000,
    ):
        self.engine = engine
        self.snapshot_path = Path(snapshot_path or engine.config.snapshot_path)
        self.snapshot_interval = (
            snapshot_interval if snapshot_interval is not None
            else engine.config.snapshot_interval_seconds
        )
        self.max_queue = max_queue
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._covered: Dict[str, int] = {}
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe_engine = engine.subscribe(self._fan_out)

    @classmethod
    def from_config(cls, config: Optional[MarketConfig] = None, **kwargs: Any) -> MarketService:
        """Restore the last snapshot (or a fresh market) and wrap it in a service."""
        config = config or MarketConfig()
        ledger, _ = load_or_default(config.snapshot_path, config, utc_now())
        return cls(MarketEngine(ledger=ledger, config=config), **kwargs)

    # ========================================================================
    # SUBSCRIBERS
    # ========================================================================

    def subscribe(self, name: str) -> asyncio.Queue:
        """
        Register a subscriber. Its queue starts with the initial-state event.

        Re-subscribing under the same name replaces the old queue.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._put_initial_state(name, queue)
        self._subscribers[name] = queue
        logger.info("Subscriber %s connected (%d total)", name, len(self._subscribers))
        return queue

    def unsubscribe(self, name: str) -> None:
        self._covered.pop(name, None)
        if self._subscribers.pop(name, None) is not None:
            logger.info("Subscriber %s disconnected", name)

    @property
    def subscribers(self) -> int:
        return len(self._subscribers)

    def _fan_out(self, event: ChangeEvent) -> None:
        message = event_to_wire(event)
        for name, queue in list(self._subscribers.items()):
            # Already contained in the initial state this queue last received
            if event.sequence <= self._covered.get(name, 0):
                continue
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Subscriber %s fell behind at event #%d; resyncing",
                               name, event.sequence)
                self._resync(name, queue)

    def _resync(self, name: str, queue: asyncio.Queue) -> None:
        """Replace a backed-up queue's contents with one current initial-state event."""
        while not queue.empty():
            queue.get_nowait()
        self._put_initial_state(name, queue)

    def _put_initial_state(self, name: str, queue: asyncio.Queue) -> None:
        state = self.engine.initial_state()
        queue.put_nowait(event_to_wire(state))
        self._covered[name] = state.sequence

    # ========================================================================
    # REQUESTS
    # ========================================================================

    async def handle(self, request: Union[str, bytes, Mapping[str, Any]]) -> Dict[str, Any]:
        """Run one request. Never raises for market errors; see boundary.dispatch()."""
        return dispatch(self.engine, request)

    # ========================================================================
    # SNAPSHOTS
    # ========================================================================

    async def save_snapshot(self) -> bool:
        """
        Capture the ledger on the loop and write it from a worker thread.

        Returns:
            True if written. Failures are logged and retried on the next tick.
        """
        document = snapshot_document(self.engine.ledger, utc_now())
        try:
            await asyncio.to_thread(write_snapshot, self.snapshot_path, document)
        except PersistenceFailure as exc:
            logger.error("Snapshot write failed: %s", exc.reason, exc_info=True)
            return False
        logger.info("Snapshot saved to %s", self.snapshot_path)
        return True

    async def _snapshot_loop(self) -> None:
        while True:
            await asyncio.sleep(self.snapshot_interval)
            await self.save_snapshot()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._snapshot_loop())
            logger.info("Market service started (snapshot every %ss to %s)",
                        self.snapshot_interval, self.snapshot_path)

    async def stop(self) -> bool:
        """Cancel the snapshot loop and write a final snapshot."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        saved = await self.save_snapshot()
        logger.info("Market service stopped")
        return saved
