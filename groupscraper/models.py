from __future__ import annotations

from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionCookie(BaseModel):
    """
    One browser cookie as exported by a cookie-editor extension.
    Unknown attributes are kept so they can be forwarded to the browser.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    value: str
    domain: Optional[str] = None
    path: Optional[str] = None
    expires: Optional[float] = Field(default=None, alias="expirationDate")
    http_only: Optional[bool] = Field(default=None, alias="httpOnly")
    secure: Optional[bool] = None


class ScrapeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    group_url: str = Field(alias="groupUrl", min_length=1)
    scroll_limit: Optional[int] = Field(
        default=None,
        alias="scrollLimit",
        description="Number of scroll iterations; absent or invalid values use the server default.",
    )
    cookies: List[SessionCookie] = Field(default_factory=list)

    @field_validator("group_url")
    @classmethod
    def _strip_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("groupUrl must not be blank")
        return v

    @field_validator("scroll_limit", mode="before")
    @classmethod
    def _coerce_scroll_limit(cls, v: Any) -> Optional[int]:
        if isinstance(v, bool):
            return None
        try:
            n = int(v)
        except (TypeError, ValueError):
            return None
        return n if n > 0 else None

    @field_validator("cookies", mode="before")
    @classmethod
    def _drop_unusable_cookies(cls, v: Any) -> List[Any]:
        if not isinstance(v, list):
            return []
        kept: List[Any] = []
        for c in v:
            if not isinstance(c, dict):
                continue
            name, value = c.get("name"), c.get("value")
            if not name or not value or not isinstance(value, str):
                continue
            # logged-out sessions leave "deleted" placeholders behind
            if "deleted" in value:
                continue
            kept.append(c)
        return kept


class JobSubmitResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(serialization_alias="jobId")


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    created_at: float
    updated_at: float
    error: Optional[str] = None
    error_kind: Optional[str] = None
    has_artifact: bool = False
    rows: int = 0


class JobCancelResponse(BaseModel):
    ok: bool = True


# -----------------------------
# Progress events
# -----------------------------

class InfoEvent(BaseModel):
    type: Literal["info"] = "info"
    status: str


class LogEvent(BaseModel):
    type: Literal["log"] = "log"
    msg: str


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    i: int
    total: int
    found_posts: int = Field(serialization_alias="foundPosts")
    found_numbers: int = Field(serialization_alias="foundNumbers")


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    download_url: str = Field(serialization_alias="downloadUrl")
    file: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    kind: Optional[str] = None


Event = Union[InfoEvent, LogEvent, ProgressEvent, DoneEvent, ErrorEvent]

TERMINAL_EVENT_TYPES = ("done", "error")


def is_terminal(evt: Event) -> bool:
    return evt.type in TERMINAL_EVENT_TYPES


def event_payload(evt: Event) -> dict:
    """Wire payload for an event (without the discriminator)."""
    return evt.model_dump(by_alias=True, exclude={"type"})
