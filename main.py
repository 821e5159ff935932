from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from groupscraper.browser import PlaywrightRenderer, Renderer
from groupscraper.config import Settings, get_settings
from groupscraper.jobs import JobManager
from groupscraper.logging import configure_logging
from groupscraper.models import (
    JobCancelResponse,
    JobStatusResponse,
    JobSubmitResponse,
    ScrapeRequest,
)
from groupscraper.streaming import SSE_HEADERS, stream_job_events

logger = logging.getLogger(__name__)


def get_manager(request: Request) -> JobManager:
    return request.app.state.jobs


def create_app(
    settings: Optional[Settings] = None,
    renderer: Optional[Renderer] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = JobManager(renderer or PlaywrightRenderer(settings), settings)
        manager.start()
        app.state.jobs = manager
        try:
            yield
        finally:
            await manager.aclose()

    app = FastAPI(title="group-phone-scraper", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(_request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Rejected request: %s", exc.errors())
        return JSONResponse(status_code=400, content={"error": "Valid groupUrl is required"})

    # -----------------------
    # Basic endpoints
    # -----------------------

    @app.get("/")
    def home() -> Dict[str, str]:
        return {"status": "ok", "message": "Scraper API running"}

    # -----------------------
    # Jobs
    # -----------------------

    @app.post("/scrape", response_model=JobSubmitResponse)
    async def create_job(
        payload: ScrapeRequest, jobs: JobManager = Depends(get_manager)
    ) -> JobSubmitResponse:
        """
        Start a scrape job and return its id immediately; progress is streamed
        from /events/{job_id}.
        """
        return JobSubmitResponse(job_id=jobs.create(payload))

    @app.get("/events/{job_id}")
    async def job_events(job_id: str, jobs: JobManager = Depends(get_manager)) -> StreamingResponse:
        opened = jobs.open_stream(job_id)
        if opened is None:
            raise HTTPException(status_code=404, detail="Unknown job ID")
        snapshot, sub = opened
        return StreamingResponse(
            stream_job_events(job_id, snapshot, sub, keepalive_s=jobs.settings.keepalive_s),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.get("/jobs/{job_id}", response_model=JobStatusResponse)
    async def job_status(job_id: str, jobs: JobManager = Depends(get_manager)) -> JobStatusResponse:
        st = jobs.status(job_id)
        if st is None:
            raise HTTPException(status_code=404, detail="Unknown job")
        return JobStatusResponse(**st)

    @app.get("/download/{job_id}")
    async def download(job_id: str, jobs: JobManager = Depends(get_manager)) -> Response:
        rec = jobs.get(job_id)
        if rec is None:
            return JSONResponse(status_code=404, content={"error": "Unknown job"})
        artifact = jobs.artifact(job_id)
        if artifact is None:
            return JSONResponse(status_code=400, content={"error": "Data not ready yet"})

        return Response(
            content=artifact.data,
            media_type=artifact.media_type,
            headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
        )

    @app.post("/cancel/{job_id}", response_model=JobCancelResponse)
    async def cancel(job_id: str, jobs: JobManager = Depends(get_manager)):
        if not jobs.cancel(job_id):
            return JSONResponse(status_code=404, content={"error": "Unknown job"})
        return JobCancelResponse(ok=True)

    return app


app = create_app()
