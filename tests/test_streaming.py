import asyncio
import json

from groupscraper.events import ProgressBus
from groupscraper.models import DoneEvent, InfoEvent, LogEvent, ProgressEvent
from groupscraper.streaming import KEEPALIVE_FRAME, format_event, stream_job_events


def _parse(frame):
    lines = frame.strip("\n").split("\n")
    assert lines[0].startswith("event: ")
    assert lines[1].startswith("data: ")
    return lines[0][len("event: "):], json.loads(lines[1][len("data: "):])


def test_frames_use_wire_names():
    name, data = _parse(format_event(ProgressEvent(i=2, total=5, found_posts=3, found_numbers=4)))
    assert name == "progress"
    assert data == {"i": 2, "total": 5, "foundPosts": 3, "foundNumbers": 4}

    name, data = _parse(format_event(DoneEvent(download_url="/download/1", file="a.csv")))
    assert name == "done"
    assert data == {"downloadUrl": "/download/1", "file": "a.csv"}


def test_stream_relays_events_and_ends_after_terminal():
    async def scenario():
        bus = ProgressBus("job-1")
        sub = bus.subscribe()
        stream = stream_job_events("job-1", InfoEvent(status="running"), sub, keepalive_s=5)

        assert _parse(await stream.__anext__()) == ("info", {"status": "running"})

        bus.publish(LogEvent(msg="Scrolling 2 times..."))
        bus.publish(DoneEvent(download_url="/download/job-1", file="a.csv"))

        assert _parse(await stream.__anext__()) == ("log", {"msg": "Scrolling 2 times..."})
        name, _ = _parse(await stream.__anext__())
        assert name == "done"

        rest = [frame async for frame in stream]
        assert rest == []
        assert bus.subscriber_count == 0

    asyncio.run(scenario())


def test_keepalive_when_idle():
    async def scenario():
        bus = ProgressBus("job-1")
        sub = bus.subscribe()
        stream = stream_job_events("job-1", InfoEvent(status="running"), sub, keepalive_s=0.01)

        await stream.__anext__()
        assert await stream.__anext__() == KEEPALIVE_FRAME
        await stream.aclose()

    asyncio.run(scenario())


def test_keepalive_runs_on_a_fixed_schedule_despite_traffic():
    async def scenario():
        bus = ProgressBus("job-1")
        sub = bus.subscribe()
        stream = stream_job_events("job-1", InfoEvent(status="running"), sub, keepalive_s=0.3)

        await stream.__anext__()
        await asyncio.sleep(0.2)
        bus.publish(LogEvent(msg="Scroll 1/5"))
        assert _parse(await stream.__anext__()) == ("log", {"msg": "Scroll 1/5"})

        # the log event must not restart the 0.3s interval
        frame = await asyncio.wait_for(stream.__anext__(), timeout=0.25)
        assert frame == KEEPALIVE_FRAME
        await stream.aclose()

    asyncio.run(scenario())


def test_disconnect_unsubscribes():
    async def scenario():
        bus = ProgressBus("job-1")
        streams = []
        for _ in range(3):
            stream = stream_job_events("job-1", InfoEvent(status="running"), bus.subscribe(), keepalive_s=5)
            await stream.__anext__()
            streams.append(stream)
        assert bus.subscriber_count == 3

        for stream in streams:
            await stream.aclose()
        assert bus.subscriber_count == 0

    asyncio.run(scenario())


def test_snapshot_only_when_no_subscription():
    async def scenario():
        stream = stream_job_events("job-1", InfoEvent(status="done"), None, keepalive_s=5)
        frames = [frame async for frame in stream]
        assert len(frames) == 1
        assert _parse(frames[0]) == ("info", {"status": "done"})

    asyncio.run(scenario())
