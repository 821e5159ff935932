import asyncio

from groupscraper.events import ProgressBus
from groupscraper.models import DoneEvent, ErrorEvent, LogEvent, ProgressEvent


def _drain(sub):
    out = []
    while True:
        evt = sub.get_nowait()
        if evt is None:
            return out
        out.append(evt)


def test_events_reach_every_subscriber_in_order():
    async def scenario():
        bus = ProgressBus("job-1")
        a = bus.subscribe()
        b = bus.subscribe()

        bus.publish(LogEvent(msg="one"))
        bus.publish(ProgressEvent(i=1, total=2, found_posts=0, found_numbers=0))
        bus.publish(LogEvent(msg="two"))

        for sub in (a, b):
            got = [await sub.get() for _ in range(3)]
            assert [e.type for e in got] == ["log", "progress", "log"]
            assert got[0].msg == "one"
            assert got[2].msg == "two"

    asyncio.run(scenario())


def test_late_subscriber_gets_no_replay():
    async def scenario():
        bus = ProgressBus("job-1")
        bus.publish(LogEvent(msg="before"))
        late = bus.subscribe()
        bus.publish(LogEvent(msg="after"))
        assert [e.msg for e in _drain(late)] == ["after"]

    asyncio.run(scenario())


def test_unsubscribe_is_idempotent():
    async def scenario():
        bus = ProgressBus("job-1")
        sub = bus.subscribe()
        assert sub.active
        bus.unsubscribe(sub)
        bus.unsubscribe(sub)
        sub.close()
        assert not sub.active
        assert bus.subscriber_count == 0

        bus.publish(LogEvent(msg="ignored"))
        assert _drain(sub) == []

    asyncio.run(scenario())


def test_bus_closes_after_first_terminal_event():
    async def scenario():
        bus = ProgressBus("job-1")
        sub = bus.subscribe()

        assert bus.publish(DoneEvent(download_url="/download/job-1", file="a.csv"))
        assert bus.closed
        assert not bus.publish(ErrorEvent(message="late", kind="canceled"))
        assert not bus.publish(LogEvent(msg="late"))

        got = _drain(sub)
        assert len(got) == 1
        assert got[0].type == "done"

    asyncio.run(scenario())


def test_full_queue_drops_business_events_but_keeps_terminal():
    async def scenario():
        bus = ProgressBus("job-1", queue_size=2)
        sub = bus.subscribe()

        for n in range(3):
            bus.publish(LogEvent(msg=f"m{n}"))
        assert sub.pending() == 2

        bus.publish(ErrorEvent(message="boom"))
        got = _drain(sub)
        assert [e.type for e in got] == ["log", "error"]
        assert got[0].msg == "m1"

    asyncio.run(scenario())
