"""Resilience stages, each an httpx transport wrapping the next one.

The Downloader composes them outermost first::

    DeduplicatingTransport
      -> RateLimitedTransport
        -> RetryTransport
          -> ChallengeBypassTransport
            -> httpx.HTTPTransport

A job's cancel flag travels in ``request.extensions["cancel_event"]`` and is
checked before every stage forwards the request.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

import httpx

from .challenge import CLEARANCE_COOKIE, PlaywrightSolver, is_challenge
from .errors import BrowserUnavailable, FetchCancelled
from .ratelimit import TokenBucket

logger = logging.getLogger("chapter_mirror")

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
CANCEL_EXTENSION = "cancel_event"
CHALLENGE_NOTICE = "challenge_bypass"
STREAM_EXTENSION = "stream_body"

_KEPT_EXTENSIONS = ("http_version", "reason_phrase", CHALLENGE_NOTICE)


def check_cancelled(request: httpx.Request):
    event = request.extensions.get(CANCEL_EXTENSION)
    if event is not None and event.is_set():
        raise FetchCancelled(f"{request.method} {request.url} cancelled")


def buffer_response(response: httpx.Response, request: httpx.Request) -> httpx.Response:
    """Read the raw body and close the network stream, returning a replayable copy.

    The body is kept content-encoded; the client decodes it as usual.
    """
    try:
        raw = b"".join(response.stream)
    finally:
        response.close()
    return httpx.Response(
        response.status_code,
        headers=response.headers,
        stream=httpx.ByteStream(raw),
        request=request,
        extensions={k: v for k, v in response.extensions.items() if k in _KEPT_EXTENSIONS},
    )


class _InFlight:
    """One shared outbound request and the outcome every caller observes."""

    def __init__(self):
        self.created_at = time.monotonic()
        self.done = threading.Event()
        self.response: Optional[httpx.Response] = None
        self.error: Optional[BaseException] = None
        self.abandoned = False

    def expired(self, ttl: float) -> bool:
        return time.monotonic() - self.created_at > ttl

    def replay(self, request: httpx.Request) -> httpx.Response:
        if self.error is not None:
            raise self.error
        shared = self.response
        return httpx.Response(
            shared.status_code,
            headers=shared.headers,
            stream=shared.stream,
            request=request,
            extensions=dict(shared.extensions),
        )


class DeduplicatingTransport(httpx.BaseTransport):
    """Collapses concurrent identical requests into a single outbound call.

    Requests flagged with ``STREAM_EXTENSION`` bypass the table and keep their
    network stream, so the caller can stop reading part way through.
    """

    def __init__(self, transport: httpx.BaseTransport, ttl: float = 5.0, cleanup_delay: float = 1.0):
        self._transport = transport
        self.ttl = ttl
        self.cleanup_delay = cleanup_delay
        self._lock = threading.Lock()
        self._in_flight: Dict[str, _InFlight] = {}

    @staticmethod
    def cache_key(request: httpx.Request) -> str:
        headers = sorted((k.lower(), v) for k, v in request.headers.multi_items())
        return f"{request.method} {request.url} {headers}"

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        check_cancelled(request)
        if request.extensions.get(STREAM_EXTENSION):
            return self._transport.handle_request(request)

        key = self.cache_key(request)
        while True:
            with self._lock:
                entry = self._in_flight.get(key)
                owner = entry is None or entry.expired(self.ttl)
                if owner:
                    entry = _InFlight()
                    self._in_flight[key] = entry

            if owner:
                return self._forward(key, entry, request)

            logger.debug(f"Joining in-flight request: {request.method} {request.url}")
            while not entry.done.wait(0.1):
                check_cancelled(request)
            if not entry.abandoned:
                return entry.replay(request)
            # The owner was cancelled; the next caller through takes over
            check_cancelled(request)

    def _forward(self, key: str, entry: _InFlight, request: httpx.Request) -> httpx.Response:
        try:
            response = self._transport.handle_request(request)
            entry.response = buffer_response(response, request)
        except FetchCancelled:
            with self._lock:
                if self._in_flight.get(key) is entry:
                    del self._in_flight[key]
            entry.abandoned = True
            entry.done.set()
            raise
        except BaseException as e:
            entry.error = e
            entry.done.set()
            self._schedule_cleanup(key, entry)
            raise
        entry.done.set()
        self._schedule_cleanup(key, entry)
        return entry.replay(request)

    def _schedule_cleanup(self, key: str, entry: _InFlight):
        timer = threading.Timer(self.cleanup_delay, self._evict, (key, entry))
        timer.daemon = True
        timer.start()

    def _evict(self, key: str, entry: _InFlight):
        with self._lock:
            if self._in_flight.get(key) is entry:
                del self._in_flight[key]

    def close(self):
        self._transport.close()


class RateLimitedTransport(httpx.BaseTransport):
    def __init__(self, transport: httpx.BaseTransport, bucket: TokenBucket):
        self._transport = transport
        self.bucket = bucket

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        check_cancelled(request)
        self.bucket.acquire(cancel_event=request.extensions.get(CANCEL_EXTENSION))
        return self._transport.handle_request(request)

    def close(self):
        self._transport.close()


class RetryTransport(httpx.BaseTransport):
    """Retries idempotent requests on transport errors and 5xx responses.

    Attempt n (1-based) waits ``min(base_delay * 2**(n-1), cap_delay)`` first.
    Once retries run out the last transport error is raised, or the last 5xx
    response is returned. A challenge the bypass stage could not solve is
    returned at once.
    """

    def __init__(self, transport: httpx.BaseTransport, max_retries: int = 3,
                 base_delay: float = 0.5, cap_delay: float = 5.0,
                 sleep: Callable[[float], None] = time.sleep):
        self._transport = transport
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.cap_delay = cap_delay
        self._sleep = sleep

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * 2 ** (attempt - 1), self.cap_delay)

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        if request.method.upper() not in IDEMPOTENT_METHODS:
            check_cancelled(request)
            return self._transport.handle_request(request)

        attempt = 0
        while True:
            check_cancelled(request)
            try:
                response = self._transport.handle_request(request)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                self._wait(request, attempt, repr(e))
                continue

            if (response.status_code < 500 or attempt >= self.max_retries
                    or CHALLENGE_NOTICE in response.extensions):
                return response
            response.close()
            attempt += 1
            self._wait(request, attempt, f"HTTP {response.status_code}")

    def _wait(self, request: httpx.Request, attempt: int, reason: str):
        delay = self.backoff(attempt)
        logger.warning(
            f"Retry {attempt}/{self.max_retries} for {request.url}: {reason} (wait {delay:.2f}s)"
        )
        self._sleep(delay)

    def close(self):
        self._transport.close()


class ChallengeBypassTransport(httpx.BaseTransport):
    """Solves anti-bot interstitials with a browser and re-issues the request once.

    ``cookies`` must be the owning client's jar; solved cookies land there so
    later requests carry them.
    """

    def __init__(self, transport: httpx.BaseTransport, solver=None,
                 cookies: Optional[httpx.Cookies] = None, enabled: bool = True):
        self._transport = transport
        self.solver = solver or PlaywrightSolver()
        self.cookies = cookies if cookies is not None else httpx.Cookies()
        self.enabled = enabled
        self._lock = threading.Lock()

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        check_cancelled(request)
        response = self._transport.handle_request(request)
        if not self.enabled or not is_challenge(response):
            return response

        challenged = buffer_response(response, request)
        logger.info(f"Challenge page from {request.url.host}, attempting bypass")

        # One browser at a time
        with self._lock:
            check_cancelled(request)
            old_clearance = self._drop_clearance(request.url.host)
            headers = {k.lower(): v for k, v in request.headers.items()}
            try:
                solved = self.solver.solve(str(request.url), headers, old_clearance)
            except BrowserUnavailable as e:
                logger.warning(f"Cannot bypass challenge for {request.url}: {e}")
                challenged.extensions[CHALLENGE_NOTICE] = "unavailable"
                return challenged

            for cookie in solved:
                self.cookies.set(
                    cookie["name"], cookie["value"],
                    domain=cookie.get("domain", ""), path=cookie.get("path", "/"),
                )

        retry = httpx.Request(
            request.method,
            request.url,
            headers=[(k, v) for k, v in request.headers.multi_items() if k.lower() != "cookie"],
            stream=request.stream,
            extensions=request.extensions,
        )
        self.cookies.set_cookie_header(retry)
        return self._transport.handle_request(retry)

    def _drop_clearance(self, host: str) -> Optional[str]:
        old_value = None
        for cookie in list(self.cookies.jar):
            domain = cookie.domain.lstrip(".")
            if cookie.name == CLEARANCE_COOKIE and (host == domain or host.endswith("." + domain)):
                old_value = cookie.value
                self.cookies.jar.clear(cookie.domain, cookie.path, cookie.name)
        return old_value

    def close(self):
        self._transport.close()
