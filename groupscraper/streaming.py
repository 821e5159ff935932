from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from groupscraper.events import Subscription
from groupscraper.models import Event, InfoEvent, event_payload, is_terminal

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ":keepalive\n\n"

SSE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_event(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


def format_event(evt: Event) -> str:
    return sse_event(evt.type, event_payload(evt))


async def stream_job_events(
    job_id: str,
    snapshot: InfoEvent,
    sub: Optional[Subscription],
    *,
    keepalive_s: float,
) -> AsyncIterator[str]:
    """
    Server-Sent-Events body for one subscriber: the status snapshot, then each
    bus event as it arrives, plus a keep-alive comment every `keepalive_s`
    seconds on a fixed schedule (events do not push it back). Ends after the
    terminal event.

    When the client goes away the server closes/cancels this generator and the
    finally block drops the subscription.
    """
    loop = asyncio.get_running_loop()
    next_ping = loop.time() + keepalive_s
    try:
        yield format_event(snapshot)
        if sub is None:
            return

        while True:
            try:
                evt = await asyncio.wait_for(sub.get(), timeout=max(0.0, next_ping - loop.time()))
            except asyncio.TimeoutError:
                next_ping += keepalive_s
                yield KEEPALIVE_FRAME
                continue

            yield format_event(evt)
            if is_terminal(evt):
                return
    except (asyncio.CancelledError, GeneratorExit):
        logger.debug("job %s: event stream subscriber disconnected", job_id)
        raise
    finally:
        if sub is not None:
            sub.close()
