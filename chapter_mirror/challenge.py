"""Anti-bot interstitial detection and a Playwright-backed solver.

Playwright is imported lazily so the rest of the package (and the test suite)
works without a browser install. When it is missing the solver raises
``BrowserUnavailable`` and the transport hands the challenge response back.
"""

import logging
import time
from typing import Dict, List, Optional

import httpx

from .errors import BrowserUnavailable, ChallengeBypassFailure

logger = logging.getLogger("chapter_mirror")

SERVER_SIGNATURES = ("cloudflare-nginx", "cloudflare")
CLEARANCE_COOKIE = "cf_clearance"

# Headers the browser sets on its own
_BROWSER_MANAGED_HEADERS = {
    "host", "cookie", "user-agent", "content-length", "accept-encoding", "connection",
}


def is_challenge(response: httpx.Response) -> bool:
    server = response.headers.get("server", "").strip().lower()
    return response.status_code == 503 and server in SERVER_SIGNATURES


class PlaywrightSolver:
    """Loads the challenged URL in headless Chromium until a fresh clearance cookie shows up."""

    def __init__(self, timeout: float = 12.0, headless: bool = True, poll_interval: float = 0.25):
        self.timeout = timeout
        self.headless = headless
        self.poll_interval = poll_interval

    def solve(self, url: str, headers: Dict[str, str],
              old_clearance: Optional[str] = None) -> List[dict]:
        """Return the browser's cookies for ``url`` once the clearance cookie changes.

        Raises BrowserUnavailable if Chromium can't be started and
        ChallengeBypassFailure on timeout or a terminal load error.
        """
        try:
            from playwright.sync_api import Error as PlaywrightError
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise BrowserUnavailable(
                "Playwright is not installed. Install with: pip install playwright && playwright install chromium"
            ) from e

        deadline = time.monotonic() + self.timeout
        extra_headers = {k: v for k, v in headers.items() if k.lower() not in _BROWSER_MANAGED_HEADERS}

        with sync_playwright() as p:
            try:
                browser = p.chromium.launch(headless=self.headless)
            except PlaywrightError as e:
                raise BrowserUnavailable(f"Chromium could not be launched: {e}") from e

            try:
                context = browser.new_context(
                    user_agent=headers.get("user-agent") or None,
                    extra_http_headers=extra_headers,
                )
                page = context.new_page()

                load_error = None
                try:
                    page.goto(url, timeout=int(self.timeout * 1000), wait_until="domcontentloaded")
                except PlaywrightError as e:
                    load_error = e

                while time.monotonic() < deadline:
                    cookies = context.cookies(url)
                    clearance = next((c for c in cookies if c["name"] == CLEARANCE_COOKIE), None)
                    if clearance is not None and clearance["value"] != old_clearance:
                        logger.info(f"Challenge solved for {url}")
                        return cookies
                    if load_error is not None:
                        raise ChallengeBypassFailure(url, f"browser load error: {load_error}")
                    page.wait_for_timeout(int(self.poll_interval * 1000))

                raise ChallengeBypassFailure(url, f"no clearance cookie after {self.timeout:.0f}s")
            finally:
                browser.close()
