from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from groupscraper.browser import Renderer
from groupscraper.config import Settings
from groupscraper.events import ProgressBus, Subscription
from groupscraper.models import DoneEvent, ErrorEvent, InfoEvent, ScrapeRequest
from groupscraper.scraper import (
    ERROR_KIND_CANCELED,
    ERROR_KIND_TIMEOUT,
    Artifact,
    GroupScraper,
    RunOutcome,
)

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_CANCELED = "canceled"
TERMINAL_STATUSES = frozenset({STATUS_DONE, STATUS_FAILED, STATUS_CANCELED})

CANCELED_MESSAGE = "Canceled by user"


# -----------------------------
# Job record
# -----------------------------

@dataclass
class JobRecord:
    job_id: str
    request: ScrapeRequest
    bus: ProgressBus
    created_at: float
    updated_at: float
    status: str = STATUS_RUNNING
    artifact: Optional[Artifact] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: str) -> bool:
        """Move out of `running` exactly once; terminal states are final."""
        if self.terminal or status not in TERMINAL_STATUSES:
            return False
        self.status = status
        self.updated_at = time.time()
        return True

    def snapshot(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "error": self.error,
            "error_kind": self.error_kind,
            "has_artifact": self.artifact is not None,
            "rows": self.artifact.rows if self.artifact else 0,
        }


# -----------------------------
# Expiring store
# -----------------------------

class JobStore:
    """
    In-memory map of job_id -> JobRecord with optional per-entry deadlines.

    An entry is visible up to and including its deadline and gone strictly
    after it; expired entries are dropped lazily on access and by sweep().
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, JobRecord] = {}
        self._deadlines: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, job_id: object) -> bool:
        return isinstance(job_id, str) and self.get(job_id) is not None

    def put(self, rec: JobRecord) -> None:
        self._entries[rec.job_id] = rec
        self._deadlines.pop(rec.job_id, None)

    def get(self, job_id: str) -> Optional[JobRecord]:
        rec = self._entries.get(job_id)
        if rec is None:
            return None
        deadline = self._deadlines.get(job_id)
        if deadline is not None and self._clock() > deadline:
            self.delete(job_id)
            return None
        return rec

    def delete(self, job_id: str) -> bool:
        self._deadlines.pop(job_id, None)
        return self._entries.pop(job_id, None) is not None

    def expire_in(self, job_id: str, seconds: float) -> None:
        if job_id in self._entries:
            self._deadlines[job_id] = self._clock() + max(0.0, float(seconds))

    def deadline(self, job_id: str) -> Optional[float]:
        return self._deadlines.get(job_id)

    def sweep(self) -> List[str]:
        now = self._clock()
        expired = [jid for jid, dl in self._deadlines.items() if now > dl]
        for jid in expired:
            self.delete(jid)
        return expired


# -----------------------------
# Manager
# -----------------------------

class JobManager:
    """
    Creates jobs, runs the scraper for each one as a background task, and
    owns cancellation and artifact hand-off.
    Public API used by main.py:
      - create(...)
      - cancel(...)
      - get(...) / status(...)
      - artifact(...)
      - open_stream(...)
      - start() / aclose()
    """

    def __init__(
        self,
        renderer: Renderer,
        settings: Settings,
        *,
        store: Optional[JobStore] = None,
    ) -> None:
        self.settings = settings
        self._renderer = renderer
        self._store = store if store is not None else JobStore()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._last_id = 0

    @property
    def store(self) -> JobStore:
        return self._store

    def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def aclose(self) -> None:
        tasks: Set[asyncio.Task] = set(self._tasks.values())
        if self._sweep_task is not None:
            tasks.add(self._sweep_task)
            self._sweep_task = None
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self._renderer.aclose()

    def _new_job_id(self) -> str:
        # time-based, strictly increasing even when the clock does not advance
        candidate = time.time_ns()
        if candidate <= self._last_id:
            candidate = self._last_id + 1
        self._last_id = candidate
        return str(candidate)

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def create(self, request: ScrapeRequest) -> str:
        job_id = self._new_job_id()
        now = time.time()
        rec = JobRecord(
            job_id=job_id,
            request=request,
            bus=ProgressBus(job_id, queue_size=self.settings.event_queue_size),
            created_at=now,
            updated_at=now,
        )
        self._store.put(rec)

        task = asyncio.create_task(self._run_job(rec))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._tasks.pop(jid, None))

        logger.info("Starting scrape job %s: %s", job_id, request.group_url)
        return job_id

    def cancel(self, job_id: str) -> bool:
        rec = self._store.get(job_id)
        if rec is None or not rec.transition(STATUS_CANCELED):
            return False
        rec.cancel_event.set()
        rec.error = CANCELED_MESSAGE
        rec.error_kind = ERROR_KIND_CANCELED
        rec.bus.publish(ErrorEvent(message=CANCELED_MESSAGE, kind=ERROR_KIND_CANCELED))
        self._store.delete(job_id)
        logger.info("Job %s canceled by user", job_id)
        return True

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self._store.get(job_id)

    def status(self, job_id: str) -> Optional[Dict[str, Any]]:
        rec = self._store.get(job_id)
        return rec.snapshot() if rec else None

    def artifact(self, job_id: str) -> Optional[Artifact]:
        rec = self._store.get(job_id)
        if rec is None or rec.status != STATUS_DONE:
            return None
        return rec.artifact

    def open_stream(self, job_id: str) -> Optional[Tuple[InfoEvent, Optional[Subscription]]]:
        """
        Status snapshot plus a live subscription, taken together so no event
        falls between them. The subscription is None when the job has already
        reached a terminal state.
        """
        rec = self._store.get(job_id)
        if rec is None:
            return None
        snapshot = InfoEvent(status=rec.status)
        if rec.terminal or rec.bus.closed:
            return snapshot, None
        return snapshot, rec.bus.subscribe()

    # -----------------------------
    # Background work
    # -----------------------------

    async def _run_job(self, rec: JobRecord) -> None:
        scraper = GroupScraper(
            self._renderer,
            self.settings,
            bus=rec.bus,
            cancel_event=rec.cancel_event,
        )
        req = rec.request
        scroll_limit = req.scroll_limit or self.settings.default_scroll_limit
        run = scraper.run(req.group_url, scroll_limit, req.cookies)

        timeout = self.settings.job_timeout_s
        try:
            if timeout > 0:
                outcome = await asyncio.wait_for(run, timeout=timeout)
            else:
                outcome = await run
        except asyncio.TimeoutError:
            outcome = RunOutcome.failure(
                f"Job exceeded the {timeout:g}s deadline", kind=ERROR_KIND_TIMEOUT
            )

        self._complete(rec, outcome)

    def _complete(self, rec: JobRecord, outcome: RunOutcome) -> None:
        """Single completion path: status, artifact, terminal event, retention."""
        if outcome.canceled:
            return

        if outcome.artifact is not None:
            if not rec.transition(STATUS_DONE):
                return
            rec.artifact = outcome.artifact
            rec.bus.publish(
                DoneEvent(download_url=f"/download/{rec.job_id}", file=outcome.artifact.filename)
            )
            logger.info(
                "Job %s completed. CSV ready (%s, %d rows)",
                rec.job_id,
                outcome.artifact.filename,
                outcome.artifact.rows,
            )
        else:
            if not rec.transition(STATUS_FAILED):
                return
            rec.error = outcome.error or "Scraper error"
            rec.error_kind = outcome.kind
            rec.bus.publish(ErrorEvent(message=rec.error, kind=rec.error_kind))
            logger.error("Scraper failed for job %s: %s", rec.job_id, rec.error)

        self._store.expire_in(rec.job_id, self.settings.retention_s)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_s)
            for jid in self._store.sweep():
                logger.info("Cleaned memory for job %s", jid)
