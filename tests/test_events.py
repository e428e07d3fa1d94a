import asyncio
import json

from conftest import FakeLauncher

from agentcanvas.sessions.registry import SessionRegistry, SessionSpec
from agentcanvas.web.events import EventHub, sse_stream
from agentcanvas.web.protocol import envelope, format_sse


def test_publish_and_replay() -> None:
    async def main() -> None:
        hub = EventHub(max_events=3)
        for i in range(4):
            await hub.publish("s1" if i % 2 else "s2", "status", {"revision": i})

        assert hub.latest_id == 4
        assert [e["id"] for e in hub.get_since()] == [2, 3, 4]
        assert [e["id"] for e in hub.get_since("s1", 1)] == [2, 4]
        assert hub.get_since(since_id=4) == []

    asyncio.run(main())


def test_wait_for_new() -> None:
    async def main() -> None:
        hub = EventHub()
        assert await hub.wait_for_new(timeout_s=0.01) is False

        waiter = asyncio.create_task(hub.wait_for_new(timeout_s=1.0))
        await asyncio.sleep(0)
        await hub.publish("s1", "output", {"data": "x"})
        assert await waiter is True

    asyncio.run(main())


def test_sse_framing() -> None:
    event = envelope("status", session_id="s1", payload={"status": "running"}, id=7)
    frame = format_sse(event)

    assert frame.startswith("id: 7\nevent: status\ndata: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame.split("data: ", 1)[1])["payload"] == {"status": "running"}
    assert format_sse(envelope("heartbeat")).startswith("event: heartbeat\n")


class _Client:
    async def is_disconnected(self) -> bool:
        return False


def _frame(text: str) -> dict:
    return json.loads(text.split("data: ", 1)[1])


async def _next(stream) -> dict:
    return _frame(await asyncio.wait_for(stream.__anext__(), timeout=1.0))


def _registry(store, hub: EventHub) -> SessionRegistry:
    return SessionRegistry(store=store, launcher=FakeLauncher(greeting=""), hub=hub)


def _spec(cwd) -> SessionSpec:
    return SessionSpec(agent_id="claude", agent_name="Claude Code", command="claude", cwd=str(cwd))


def test_stream_opens_with_connected_and_snapshots(store, workdir) -> None:
    async def main() -> None:
        hub = EventHub()
        registry = _registry(store, hub)
        a = await registry.create(_spec(workdir), launch=False)
        b = await registry.create(_spec(workdir), launch=False)

        stream = sse_stream(_Client(), hub, registry.snapshots, poll_s=0.01, heartbeat_s=60.0)
        connected = await _next(stream)
        assert connected["type"] == "connected"
        assert connected["payload"]["latest_id"] == hub.latest_id

        first, second = await _next(stream), await _next(stream)
        assert [first["session_id"], second["session_id"]] == [a.session_id, b.session_id]
        assert first["payload"]["revision"] == a.revision
        await stream.aclose()

    asyncio.run(main())


def test_stream_resends_missed_revision_once(store, workdir) -> None:
    async def main() -> None:
        hub = EventHub()
        registry = _registry(store, hub)
        session = await registry.create(_spec(workdir), launch=False)
        sid = session.session_id

        stream = sse_stream(_Client(), hub, registry.snapshots, since=0, poll_s=0.01, heartbeat_s=0.0)
        assert (await _next(stream))["type"] == "connected"
        replayed = await _next(stream)
        assert replayed["type"] == "status" and replayed["id"] > 0
        assert replayed["payload"]["revision"] == session.revision

        # the snapshot for the replayed revision is not sent again
        assert (await _next(stream))["type"] == "heartbeat"

        session.touch()
        resent = await _next(stream)
        assert resent["type"] == "status" and resent["id"] == 0
        assert resent["payload"]["revision"] == session.revision
        assert (await _next(stream))["type"] == "heartbeat"

        await hub.publish(sid, "status", session.status_snapshot())
        assert (await _next(stream))["type"] == "heartbeat"

        session.touch()
        await hub.publish(sid, "status", session.status_snapshot())
        pushed = await _next(stream)
        assert pushed["id"] == hub.latest_id
        assert pushed["payload"]["revision"] == session.revision
        assert (await _next(stream))["type"] == "heartbeat"
        await stream.aclose()

    asyncio.run(main())
