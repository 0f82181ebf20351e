"""HTTP client wired through the resilience chain, plus the reachability probe."""

import logging
import socket
import threading
import time
from typing import Callable, Optional

import httpx

from .challenge import PlaywrightSolver
from .config import AppConfig
from .ratelimit import TokenBucket
from .transports import (
    CANCEL_EXTENSION,
    STREAM_EXTENSION,
    ChallengeBypassTransport,
    DeduplicatingTransport,
    RateLimitedTransport,
    RetryTransport,
)

logger = logging.getLogger("chapter_mirror")


def is_network_available(host: str = "1.1.1.1", port: int = 53, timeout: float = 3.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def mark_uncacheable(response: httpx.Response):
    """Only 200 responses may be cached by anything downstream."""
    if response.status_code != 200:
        response.headers["Cache-Control"] = "no-store"


class Downloader:
    def __init__(self, config: AppConfig, solver=None,
                 transport: Optional[httpx.BaseTransport] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.solver = solver
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.Client] = None
        self._lock = threading.Lock()
        self.bucket = TokenBucket(config.resilience.max_requests_per_second)
        self.challenge: Optional[ChallengeBypassTransport] = None

    @property
    def client(self) -> httpx.Client:
        with self._lock:
            if self._client is None or self._client.is_closed:
                self._client = self._build_client()
            return self._client

    def _build_client(self) -> httpx.Client:
        rs = self.config.resilience
        self.challenge = ChallengeBypassTransport(
            self._transport or httpx.HTTPTransport(),
            solver=self.solver or PlaywrightSolver(timeout=rs.challenge_timeout),
            enabled=rs.challenge_enabled,
        )
        chain = DeduplicatingTransport(
            RateLimitedTransport(
                RetryTransport(
                    self.challenge,
                    max_retries=rs.max_retries,
                    base_delay=rs.base_delay,
                    cap_delay=rs.cap_delay,
                    sleep=self._sleep,
                ),
                self.bucket,
            ),
            ttl=rs.dedup_ttl,
            cleanup_delay=rs.dedup_cleanup_delay,
        )
        client = httpx.Client(
            transport=chain,
            timeout=httpx.Timeout(self.config.download.timeout, connect=30),
            follow_redirects=True,
            headers={"User-Agent": self.config.download.user_agent},
            event_hooks={"response": [mark_uncacheable]},
        )
        # The client copies cookies on construction; solved cookies must go into its own jar
        self.challenge.cookies = client.cookies
        return client

    def close(self):
        if self._client and not self._client.is_closed:
            self._client.close()
        self.bucket.close()

    def is_network_available(self) -> bool:
        dl = self.config.download
        return is_network_available(dl.probe_host, dl.probe_port, dl.probe_timeout)

    def fetch(self, url: str, cancel_event: Optional[threading.Event] = None,
              user_agent: Optional[str] = None) -> httpx.Response:
        """GET a page through the chain. Redirects are followed; status is not checked."""
        headers = {"User-Agent": user_agent} if user_agent else None
        extensions = {CANCEL_EXTENSION: cancel_event} if cancel_event is not None else None
        return self.client.get(url, headers=headers, extensions=extensions)

    def fetch_text(self, url: str, cancel_event: Optional[threading.Event] = None) -> str:
        resp = self.fetch(url, cancel_event=cancel_event)
        resp.raise_for_status()
        return resp.text

    def fetch_bytes(self, url: str, cancel_event: Optional[threading.Event] = None) -> bytes:
        """Fetch a page asset (stylesheet, image) under the asset user agent."""
        max_size = self.config.download.max_asset_size
        extensions = {STREAM_EXTENSION: True}
        if cancel_event is not None:
            extensions[CANCEL_EXTENSION] = cancel_event
        chunks = []
        size = 0
        with self.client.stream(
            "GET", url,
            headers={"User-Agent": self.config.download.asset_user_agent},
            extensions=extensions,
        ) as resp:
            resp.raise_for_status()

            content_length = resp.headers.get("content-length")
            if content_length and int(content_length) > max_size:
                raise ValueError(f"Asset too large: {content_length} bytes")

            for chunk in resp.iter_bytes(chunk_size=65536):
                chunks.append(chunk)
                size += len(chunk)
                if size > max_size:
                    raise ValueError(f"Asset exceeded max size during download: {size} bytes")

        return b"".join(chunks)
