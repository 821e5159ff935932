from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Set

from groupscraper.browser import PageSession, Renderer
from groupscraper.config import Settings
from groupscraper.events import ProgressBus
from groupscraper.extract import (
    FINGERPRINT_CHARS,
    MIN_PHONE_DIGITS,
    ResultRow,
    artifact_filename,
    build_csv,
    extract_phones,
    fingerprint,
    join_phones,
    looks_logged_out,
    pick_author,
)
from groupscraper.models import LogEvent, ProgressEvent, SessionCookie

logger = logging.getLogger(__name__)

ERROR_KIND_SESSION_EXPIRED = "session-expired"
ERROR_KIND_NAVIGATION = "navigation-failed"
ERROR_KIND_ENGINE = "engine-error"
ERROR_KIND_CANCELED = "canceled"
ERROR_KIND_TIMEOUT = "timeout"

SESSION_EXPIRED_MESSAGE = "Session cookies expired - please update them from a logged-in session."


# -----------------------------
# In-page scripts
# -----------------------------

SCROLL_SCRIPT = "() => window.scrollBy(0, window.innerHeight * 2)"

EXPAND_SCRIPT = """
() => {
  const patterns = [
    "see more", "show more", "read more", "load more",
    "show full post", "see translation", "और देखें",
  ];
  document
    .querySelectorAll('div[role="button"], span[role="button"]')
    .forEach((btn) => {
      const txt = (btn.innerText || "").toLowerCase();
      const aria = (btn.getAttribute("aria-label") || "").toLowerCase();
      if (patterns.some((p) => txt.includes(p) || aria.includes(p))) {
        try { btn.click(); } catch (e) {}
      }
    });
}
"""

# Blocks whose fingerprint is already in `seen` are skipped in the page, and
# markup is only shipped for blocks with enough digits to hold a phone number.
COLLECT_SCRIPT = """
({ seen, size, minDigits }) => {
  const known = new Set(seen);
  const out = [];
  document
    .querySelectorAll('div[role="article"], div[data-ad-preview="message"]')
    .forEach((node) => {
      const text = node.innerText || "";
      if (known.has(Array.from(text).slice(0, size).join(""))) return;
      const digits = text.replace(/\\D/g, "").length;
      out.push({ text, html: digits >= minDigits ? node.outerHTML || "" : "" });
    });
  return out;
}
"""


# -----------------------------
# Errors / results
# -----------------------------

class ScrapeError(Exception):
    kind: str = ERROR_KIND_ENGINE

    def __init__(self, message: str, *, kind: Optional[str] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class SessionExpiredError(ScrapeError):
    kind = ERROR_KIND_SESSION_EXPIRED


class NavigationError(ScrapeError):
    kind = ERROR_KIND_NAVIGATION


class JobCancelled(Exception):
    """Raised at a checkpoint once the job's cancel event is set."""


@dataclass(frozen=True)
class Artifact:
    data: bytes
    filename: str
    rows: int = 0
    media_type: str = "text/csv"


@dataclass(frozen=True)
class RunOutcome:
    artifact: Optional[Artifact] = None
    error: Optional[str] = None
    kind: Optional[str] = None
    canceled: bool = False

    @classmethod
    def success(cls, artifact: Artifact) -> "RunOutcome":
        return cls(artifact=artifact)

    @classmethod
    def failure(cls, message: str, *, kind: Optional[str] = None) -> "RunOutcome":
        return cls(error=message, kind=kind or ERROR_KIND_ENGINE)

    @classmethod
    def cancelled(cls) -> "RunOutcome":
        return cls(canceled=True)


@dataclass
class ExtractionState:
    seen_posts: Set[str] = field(default_factory=set)
    seen_phones: Set[str] = field(default_factory=set)
    rows: List[ResultRow] = field(default_factory=list)
    total_phones: int = 0


def collect_args(state: ExtractionState, *, fingerprint_chars: int = FINGERPRINT_CHARS) -> dict:
    """Argument for COLLECT_SCRIPT: what the page may leave out of the next batch."""
    return {
        "seen": sorted(state.seen_posts),
        "size": fingerprint_chars,
        "minDigits": MIN_PHONE_DIGITS,
    }


def absorb_blocks(
    state: ExtractionState,
    blocks: Iterable[Any],
    *,
    fingerprint_chars: int = FINGERPRINT_CHARS,
) -> int:
    """
    Fold one batch of rendered content blocks into `state`.
    Returns the number of result rows added.
    """
    added = 0
    for block in blocks or ():
        if not isinstance(block, dict):
            continue
        text = str(block.get("text") or "")
        key = fingerprint(text, fingerprint_chars)
        if key in state.seen_posts:
            continue
        state.seen_posts.add(key)

        phones = extract_phones(text)
        if not phones:
            continue
        fresh = [p for p in phones if p not in state.seen_phones]
        state.seen_phones.update(fresh)
        if not fresh:
            continue

        author = pick_author(str(block.get("html") or ""), text)
        state.rows.append(ResultRow(author=author, phones=join_phones(fresh)))
        state.total_phones += len(fresh)
        added += 1
    return added


# -----------------------------
# GroupScraper
# -----------------------------

class GroupScraper:
    """
    Runs one scrape: open a browser session, apply cookies, open the group,
    then scroll/extract/dedup until the scroll budget or the number ceiling is
    reached. Never raises for run failures; they come back as a RunOutcome.
    """

    def __init__(
        self,
        renderer: Renderer,
        settings: Settings,
        *,
        bus: ProgressBus,
        cancel_event: asyncio.Event,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._renderer = renderer
        self.settings = settings
        self._bus = bus
        self._cancel = cancel_event
        self._sleep = sleep

    # -----------------------------
    # Events / checkpoints
    # -----------------------------

    def _log(self, msg: str) -> None:
        logger.info("job %s: %s", self._bus.job_id, msg)
        if not self._cancel.is_set():
            self._bus.publish(LogEvent(msg=msg))

    def _progress(self, i: int, total: int, state: ExtractionState) -> None:
        if self._cancel.is_set():
            return
        self._bus.publish(
            ProgressEvent(
                i=i,
                total=total,
                found_posts=len(state.rows),
                found_numbers=state.total_phones,
            )
        )

    def _checkpoint(self) -> None:
        if self._cancel.is_set():
            raise JobCancelled()

    async def _pause(self, ms: int) -> None:
        if ms > 0:
            await self._sleep(ms / 1000.0)
        self._checkpoint()

    # -----------------------------
    # Run
    # -----------------------------

    async def run(
        self,
        group_url: str,
        scroll_limit: int,
        cookies: Sequence[SessionCookie] = (),
    ) -> RunOutcome:
        self._log("Launching browser...")
        try:
            async with self._renderer.session() as page:
                return await self._scrape(page, group_url, max(1, int(scroll_limit)), cookies)
        except JobCancelled:
            logger.info("job %s: cancellation observed, stopping", self._bus.job_id)
            return RunOutcome.cancelled()
        except SessionExpiredError as e:
            self._log("Cookies expired - please update them from a logged-in session.")
            return RunOutcome.failure(str(e), kind=e.kind)
        except ScrapeError as e:
            self._log(f"Scraper crashed: {e}")
            return RunOutcome.failure(str(e), kind=e.kind)
        except Exception as e:
            logger.exception("job %s: unexpected rendering engine failure", self._bus.job_id)
            self._log(f"Scraper crashed: {e}")
            return RunOutcome.failure(str(e) or type(e).__name__, kind=ERROR_KIND_ENGINE)
        finally:
            self._log("Browser closed.")

    async def _scrape(
        self,
        page: PageSession,
        group_url: str,
        scroll_limit: int,
        cookies: Sequence[SessionCookie],
    ) -> RunOutcome:
        self._checkpoint()
        if cookies:
            await self._apply_cookies(page, cookies)

        self._log(f"Opening group: {group_url}")
        await self._goto_with_retries(page, group_url)
        await self._pause(self.settings.post_nav_settle_ms)
        await self._verify_login(page)

        state = ExtractionState()
        self._log(f"Scrolling {scroll_limit} times...")
        for i in range(1, scroll_limit + 1):
            self._checkpoint()
            await page.evaluate(SCROLL_SCRIPT)
            await self._pause(self.settings.scroll_settle_ms)
            await page.evaluate(EXPAND_SCRIPT)
            await self._pause(self.settings.expand_settle_ms)

            blocks = await page.evaluate(COLLECT_SCRIPT, collect_args(state))
            self._checkpoint()
            absorb_blocks(state, blocks)

            self._progress(i, scroll_limit, state)
            self._log(
                f"Scroll {i}/{scroll_limit} - {len(state.rows)} posts, "
                f"{state.total_phones} total numbers."
            )

            ceiling = self.settings.max_numbers
            if ceiling and state.total_phones >= ceiling:
                self._log("Enough numbers found, stopping early.")
                break

        self._checkpoint()
        artifact = Artifact(
            data=build_csv(state.rows),
            filename=artifact_filename(),
            rows=len(state.rows),
        )
        self._log(f"Finished: {len(state.rows)} unique posts, {state.total_phones} phone numbers.")
        self._log("CSV created in memory (not saved to disk).")
        return RunOutcome.success(artifact)

    async def _apply_cookies(self, page: PageSession, cookies: Sequence[SessionCookie]) -> None:
        self._log(f"Applying {len(cookies)} cookies...")
        applied = 0
        for c in cookies:
            try:
                await page.add_cookie(c)
                applied += 1
            except Exception as e:
                logger.warning("job %s: failed to set cookie %s: %s", self._bus.job_id, c.name, e)
            self._checkpoint()
        self._log(f"Cookies applied ({applied}/{len(cookies)}).")

    async def _goto_with_retries(self, page: PageSession, url: str) -> None:
        retries = max(1, self.settings.nav_retries)
        for attempt in range(1, retries + 1):
            try:
                await page.goto(url, timeout_ms=self.settings.nav_timeout_ms)
                self._checkpoint()
                return
            except JobCancelled:
                raise
            except Exception as e:
                self._checkpoint()
                if attempt == retries:
                    raise NavigationError(
                        f"Could not open {url} after {retries} attempts: {e}"
                    ) from e
                logger.warning(
                    "job %s: navigation attempt %d/%d failed: %s",
                    self._bus.job_id,
                    attempt,
                    retries,
                    e,
                )
                await self._pause(int(self.settings.nav_backoff_s * 1000))

    async def _verify_login(self, page: PageSession) -> None:
        html = await page.content()
        self._checkpoint()
        if looks_logged_out(page.url, html):
            raise SessionExpiredError(SESSION_EXPIRED_MESSAGE)
