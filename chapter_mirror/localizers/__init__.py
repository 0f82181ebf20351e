"""Localizer registry: hostname -> SiteLocalizer."""

import threading
from typing import Callable, Dict, List, Optional, Tuple, Union

from ..config import SiteConfig
from .base import SiteLocalizer
from .sites import BUILTIN_LOCALIZERS

DEFAULT_LOCALIZER = SiteLocalizer()

HostMatcher = Union[str, Callable[[str], bool]]


class LocalizerRegistry:
    """First registered match wins; unmatched hosts get the baseline localizer."""

    def __init__(self, default: SiteLocalizer = DEFAULT_LOCALIZER):
        self.default = default
        self._entries: List[Tuple[HostMatcher, SiteLocalizer]] = []
        self._lock = threading.Lock()

    def register_localizer(self, matcher: HostMatcher, localizer: SiteLocalizer):
        """Match on a hostname substring or on a predicate taking the hostname."""
        with self._lock:
            self._entries.append((matcher, localizer))

    def resolve(self, hostname: Optional[str]) -> SiteLocalizer:
        host = (hostname or "").lower()
        with self._lock:
            entries = list(self._entries)
        for matcher, localizer in entries:
            if callable(matcher):
                if matcher(host):
                    return localizer
            elif matcher.lower() in host:
                return localizer
        return self.default


def default_registry(sites: Optional[Dict[str, SiteConfig]] = None) -> LocalizerRegistry:
    """Registry with configured sites ahead of the built-in ones."""
    registry = LocalizerRegistry()
    for host, site in (sites or {}).items():
        registry.register_localizer(host, SiteLocalizer(
            name=host,
            content_selector=site.content_selector,
            remove_selectors=tuple(site.remove_selectors),
            prepend_title=site.prepend_title,
            remove_directional_links=site.remove_directional_links,
        ))
    for host, localizer in BUILTIN_LOCALIZERS.items():
        registry.register_localizer(host, localizer)
    return registry
