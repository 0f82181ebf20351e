"""Built-in per-site localizers, keyed by hostname substring."""

from .base import SiteLocalizer

ROYAL_ROAD = SiteLocalizer(
    name="royalroad",
    content_selector="div.chapter-content",
    remove_selectors=("div.author-note-portlet", "div.portlet.solid.author-note-portlet"),
    skip_image_patterns=("uploads/avatars", "rrl-avatar"),
)

WORDPRESS_ENTRY = SiteLocalizer(
    name="wordpress-entry",
    content_selector="div.entry-content",
    remove_selectors=("div.sharedaddy", "div.wpcnt", "div#jp-post-flair", "div.wpa"),
    remove_directional_links=True,
)

BAKA_TSUKI = SiteLocalizer(
    name="baka-tsuki",
    content_selector="div#content",
    remove_selectors=("div#toc", "span.mw-editsection", "div.printfooter", "div#catlinks"),
)

SCRIBBLE_HUB = SiteLocalizer(
    name="scribblehub",
    content_selector="div#chp_raw",
    remove_selectors=("div.wi_authornotes",),
)

WUXIAWORLD = SiteLocalizer(
    name="wuxiaworld",
    content_selector="div.chapter-content",
    remove_directional_links=True,
)

BUILTIN_LOCALIZERS = {
    "royalroad.com": ROYAL_ROAD,
    "kobatochan.com": WORDPRESS_ENTRY,
    "moonbunnycafe.com": WORDPRESS_ENTRY,
    "bluesilvertranslations.wordpress.com": WORDPRESS_ENTRY,
    "baka-tsuki.org": BAKA_TSUKI,
    "scribblehub.com": SCRIBBLE_HUB,
    "wuxiaworld.com": WUXIAWORLD,
}
