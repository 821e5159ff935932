import asyncio

import pytest

from groupscraper.browser import PlaywrightPage, to_playwright_cookie
from groupscraper.config import Settings, load_settings
from groupscraper.models import SessionCookie

COOKIE_URL = "https://www.facebook.com"


class _StubPage:
    url = "about:blank"

    def __init__(self):
        self.goto_calls = []
        self.evaluate_calls = []

    async def goto(self, url, **kwargs):
        self.goto_calls.append((url, kwargs))

    async def evaluate(self, script, arg=None):
        self.evaluate_calls.append((script, arg))
        return []


class _StubContext:
    def __init__(self):
        self.cookies = []

    async def add_cookies(self, cookies):
        self.cookies.extend(cookies)


class TestPlaywrightPage:

    def test_navigation_waits_for_load_by_default(self):
        page = _StubPage()
        session = PlaywrightPage(_StubContext(), page, COOKIE_URL)
        asyncio.run(session.goto("https://www.facebook.com/groups/x", timeout_ms=5000))

        assert page.goto_calls == [
            ("https://www.facebook.com/groups/x", {"wait_until": "load", "timeout": 5000})
        ]

    def test_navigation_wait_condition_is_configurable(self):
        page = _StubPage()
        session = PlaywrightPage(_StubContext(), page, COOKIE_URL, wait_until="domcontentloaded")
        asyncio.run(session.goto("https://www.facebook.com/groups/x", timeout_ms=5000))
        assert page.goto_calls[0][1]["wait_until"] == "domcontentloaded"

    def test_evaluate_forwards_the_argument(self):
        page = _StubPage()
        session = PlaywrightPage(_StubContext(), page, COOKIE_URL)
        asyncio.run(session.evaluate("(x) => x", {"seen": []}))
        assert page.evaluate_calls == [("(x) => x", {"seen": []})]

    def test_add_cookie_maps_to_playwright_shape(self):
        ctx = _StubContext()
        session = PlaywrightPage(ctx, _StubPage(), COOKIE_URL)
        asyncio.run(session.add_cookie(SessionCookie(name="c_user", value="1", domain=".facebook.com")))
        assert ctx.cookies == [{"name": "c_user", "value": "1", "domain": ".facebook.com", "path": "/"}]


class TestCookieMapping:

    def test_cookie_without_domain_falls_back_to_url(self):
        out = to_playwright_cookie(SessionCookie(name="xs", value="abc"), COOKIE_URL)
        assert out == {"name": "xs", "value": "abc", "url": COOKIE_URL}

    def test_exported_attributes_are_mapped(self):
        cookie = SessionCookie.model_validate(
            {
                "name": "xs",
                "value": "abc",
                "domain": ".facebook.com",
                "path": "/groups",
                "expirationDate": 1893456000.5,
                "httpOnly": True,
                "secure": True,
                "sameSite": "no_restriction",
            }
        )
        out = to_playwright_cookie(cookie, COOKIE_URL)
        assert out == {
            "name": "xs",
            "value": "abc",
            "domain": ".facebook.com",
            "path": "/groups",
            "expires": 1893456000.5,
            "httpOnly": True,
            "secure": True,
        }


class TestNavWaitSetting:

    def test_default(self):
        assert Settings().nav_wait_until == "load"

    @pytest.mark.parametrize(
        "raw, expected",
        [("domcontentloaded", "domcontentloaded"), (" NetworkIdle ", "networkidle"), ("bogus", "load")],
    )
    def test_env_override(self, monkeypatch, raw, expected):
        monkeypatch.setenv("SCRAPER_SKIP_DOTENV", "1")
        monkeypatch.setenv("SCRAPER_NAV_WAIT_UNTIL", raw)
        assert load_settings().nav_wait_until == expected
