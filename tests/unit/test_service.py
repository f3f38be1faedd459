"""
test_service.py - asyncio runtime: fan-out, snapshots, lifecycle

Coroutines are driven with asyncio.run().
"""

import asyncio
import json

from crowdmarket import MarketConfig, MarketService


def _drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class TestSubscribers:

    def test_initial_state_first(self, engine):
        async def scenario():
            service = MarketService(engine)
            queue = service.subscribe("overlay")
            await service.handle({
                "op": "trade", "identity": "alice", "symbol": "GRAVITY", "side": "buy", "quantity": 1,
            })
            return _drain(queue)

        messages = asyncio.run(scenario())
        assert [m["type"] for m in messages] == ["initial-state", "stock-updated", "parameter-updated"]
        assert messages[0]["data"]["stocks"][0]["symbol"] == "GRAVITY"
        json.dumps(messages)

    def test_every_subscriber_receives(self, engine):
        async def scenario():
            service = MarketService(engine)
            a = service.subscribe("a")
            b = service.subscribe("b")
            await service.handle({"op": "sync_player_cash", "cash": 10})
            return _drain(a), _drain(b)

        a, b = asyncio.run(scenario())
        assert a[1:] == b[1:]
        assert a[1]["type"] == "player-cash-updated"

    def test_rejected_request_publishes_nothing(self, engine):
        async def scenario():
            service = MarketService(engine)
            queue = service.subscribe("overlay")
            response = await service.handle({
                "op": "trade", "identity": "alice", "symbol": "NOPE", "side": "buy", "quantity": 1,
            })
            return response, _drain(queue)

        response, messages = asyncio.run(scenario())
        assert response["success"] is False
        assert [m["type"] for m in messages] == ["initial-state"]

    def test_full_queue_resyncs_subscriber(self, engine):
        async def scenario():
            service = MarketService(engine, max_queue=1)
            queue = service.subscribe("slow")
            await service.handle({"op": "sync_player_cash", "cash": 10})
            return service.subscribers, _drain(queue)

        subscribers, messages = asyncio.run(scenario())
        assert subscribers == 1
        assert [m["type"] for m in messages] == ["initial-state"]
        assert messages[0]["sequence"] == engine.sequence == 1
        assert messages[0]["data"]["player"]["cash"] == 10

    def test_resync_does_not_repeat_events_it_covers(self, engine):
        async def scenario():
            service = MarketService(engine, max_queue=1)
            queue = service.subscribe("slow")
            # One commit, two events: the resync on the first already holds the second
            await service.handle({
                "op": "trade", "identity": "alice", "symbol": "GRAVITY", "side": "buy", "quantity": 1,
            })
            return _drain(queue)

        messages = asyncio.run(scenario())
        assert [m["type"] for m in messages] == ["initial-state"]
        assert messages[0]["sequence"] == 2
        gravity = [s for s in messages[0]["data"]["stocks"] if s["symbol"] == "GRAVITY"][0]
        assert gravity["top_holder"] == "alice"

    def test_resynced_subscriber_keeps_receiving(self, engine):
        async def scenario():
            service = MarketService(engine, max_queue=2)
            queue = service.subscribe("slow")
            await service.handle({
                "op": "trade", "identity": "alice", "symbol": "GRAVITY", "side": "buy", "quantity": 1,
            })
            caught_up = _drain(queue)
            await service.handle({"op": "sync_player_cash", "cash": 10})
            return caught_up, _drain(queue)

        caught_up, later = asyncio.run(scenario())
        assert [(m["type"], m["sequence"]) for m in caught_up] == [("initial-state", 2)]
        assert [(m["type"], m["sequence"]) for m in later] == [("player-cash-updated", 3)]

    def test_unsubscribe(self, engine):
        async def scenario():
            service = MarketService(engine)
            queue = service.subscribe("overlay")
            service.unsubscribe("overlay")
            await service.handle({"op": "sync_player_cash", "cash": 10})
            return _drain(queue)

        assert len(asyncio.run(scenario())) == 1


class TestSnapshots:

    def test_save(self, engine, tmp_path):
        path = tmp_path / "state.json"

        async def scenario():
            service = MarketService(engine, snapshot_path=path)
            return await service.save_snapshot()

        assert asyncio.run(scenario()) is True
        assert json.loads(path.read_text())["stocks"]

    def test_save_failure_is_reported_not_raised(self, engine, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")

        async def scenario():
            service = MarketService(engine, snapshot_path=blocker / "state.json")
            return await service.save_snapshot()

        assert asyncio.run(scenario()) is False

    def test_periodic_and_final_save(self, engine, tmp_path):
        path = tmp_path / "state.json"

        async def scenario():
            service = MarketService(engine, snapshot_path=path, snapshot_interval=0.01)
            await service.start()
            await asyncio.sleep(0.05)
            periodic = path.exists()
            await service.handle({
                "op": "trade", "identity": "alice", "symbol": "GRAVITY", "side": "buy", "quantity": 1,
            })
            saved = await service.stop()
            return periodic, saved

        periodic, saved = asyncio.run(scenario())
        assert periodic
        assert saved
        document = json.loads(path.read_text())
        assert any(p["identity"] == "alice" for p in document["portfolios"])

    def test_from_config_restores(self, engine, tmp_path):
        path = tmp_path / "state.json"
        engine.issue_stock("carol", "SNOW", "Snow Co", "snowLevel")

        async def scenario():
            await MarketService(engine, snapshot_path=path).save_snapshot()
            service = MarketService.from_config(MarketConfig(snapshot_path=str(path)))
            return service.engine.ledger.has_stock("SNOW")

        assert asyncio.run(scenario())

    def test_from_config_without_snapshot(self, tmp_path):
        config = MarketConfig(snapshot_path=str(tmp_path / "absent.json"))
        service = MarketService.from_config(config)
        assert sorted(service.engine.ledger.stocks) == ["GRAVITY", "NPCLIFE"]
