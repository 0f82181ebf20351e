"""Exception types raised by the fetch pipeline.

Transport failures are plain ``httpx.TransportError`` and are retried by the
resilience chain. A task or job that disappears from the queue store mid-run is
not an error at all; the scheduler just stops scanning.
"""


class ChapterMirrorError(Exception):
    """Base class for pipeline errors."""


class NetworkUnavailable(ChapterMirrorError):
    """No network route; the whole job run stops and can be resumed later."""


class ChallengeBypassFailure(ChapterMirrorError):
    """The anti-bot interstitial could not be solved for a single request."""

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        self.reason = reason
        message = f"Challenge bypass failed for {url}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class BrowserUnavailable(ChapterMirrorError):
    """No embedded browser engine on this platform; challenges cannot be solved."""


class LocalizationFailure(ChapterMirrorError):
    """A fetched chapter could not be rewritten or written to disk."""


class FetchCancelled(ChapterMirrorError):
    """The job owning a request was cancelled before the request went out."""
