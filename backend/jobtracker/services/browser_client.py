"""
Headless-browser session bootstrapper.

Some career platforms (Workday, Eightfold tenants on custom domains) only
answer their JSON APIs for a live browser session. This module opens the
careers page once in Chromium, watches outgoing requests for an anti-CSRF
header and a ``domain`` query parameter, then hands back the cookie jar so
the bulk of the scrape can be done with plain HTTP calls.

Every bootstrap gets its own browser process, closed on every exit path.
"""

import logging
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from playwright.async_api import async_playwright
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_VIEWPORT = {"width": 1920, "height": 1080}
LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process",
]
CSRF_COOKIE_NAME = "CALYPSO_CSRF_TOKEN"


class BrowserSession(BaseModel):
    base_url: str
    cookies: str
    csrf_token: Optional[str] = None
    domain: Optional[str] = None


class RequestCapture:
    """Collects the first CSRF header and ``domain`` param seen on API requests."""

    def __init__(self, csrf_header_name: str, api_path_pattern: str):
        self.csrf_header_name = csrf_header_name.lower()
        self.api_path_pattern = api_path_pattern
        self.csrf_token: Optional[str] = None
        self.domain: Optional[str] = None

    def observe(self, url: str, headers: Dict[str, str]):
        token = headers.get(self.csrf_header_name)
        if token and not self.csrf_token:
            self.csrf_token = token

        if self.api_path_pattern in url and not self.domain:
            values = parse_qs(urlparse(url).query).get("domain")
            if values and values[0]:
                self.domain = values[0]


def build_session(final_url: str, cookies: List[Dict[str, str]], capture: RequestCapture) -> BrowserSession:
    parsed = urlparse(final_url)
    csrf_token = capture.csrf_token
    if not csrf_token:
        csrf_token = next(
            (c["value"] for c in cookies if c.get("name") == CSRF_COOKIE_NAME),
            None,
        )
    return BrowserSession(
        base_url=f"{parsed.scheme}://{parsed.netloc}",
        cookies="; ".join(f"{c['name']}={c['value']}" for c in cookies),
        csrf_token=csrf_token,
        domain=capture.domain,
    )


class BrowserClient:
    def __init__(
        self,
        headless: bool = True,
        timeout_ms: int = 60000,
        wait_for_ms: int = 3000,
        csrf_header_name: str = "x-calypso-csrf-token",
        api_path_pattern: str = "/api/",
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.wait_for_ms = wait_for_ms
        self.csrf_header_name = csrf_header_name
        self.api_path_pattern = api_path_pattern
        self.user_agent = user_agent

    async def bootstrap(self, url: str) -> Optional[BrowserSession]:
        """
        Open ``url`` in a fresh headless browser and harvest session artifacts.

        Returns:
            BrowserSession, or None if the browser failed to launch or navigate.
        """
        if not urlparse(url).scheme:
            return None

        capture = RequestCapture(self.csrf_header_name, self.api_path_pattern)

        try:
            async with async_playwright() as p:
                browser = await p.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
                try:
                    context = await browser.new_context(
                        user_agent=self.user_agent,
                        viewport=DEFAULT_VIEWPORT,
                        locale="en-US",
                    )
                    page = await context.new_page()
                    page.on("request", lambda request: capture.observe(request.url, request.headers))

                    await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
                    await page.wait_for_timeout(self.wait_for_ms)

                    cookies = await context.cookies()
                    session = build_session(page.url, cookies, capture)
                finally:
                    await browser.close()
        except Exception as e:
            logger.warning(f"Browser bootstrap failed for {url}: {e}")
            return None

        logger.info(
            f"Bootstrapped session for {session.base_url} "
            f"(csrf={'yes' if session.csrf_token else 'no'}, domain={session.domain or '-'})"
        )
        return session
