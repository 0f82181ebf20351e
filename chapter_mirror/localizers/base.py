"""Rewrites a fetched chapter into a self-contained offline document.

Baseline for every site: scripts are dropped, stylesheets are saved once per
host and images once per item, and every reference is rewritten to a relative
path. Site localizers additionally narrow the page down to the chapter body.
"""

import hashlib
import io
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup, Tag
from PIL import Image

from ..errors import ChallengeBypassFailure
from ..models import LocalizedPage

logger = logging.getLogger("chapter_mirror")

MAX_FILE_NAME = 150

# Lazy-loading attributes, checked in order
IMAGE_ATTRIBUTES = (
    "data-orig-file", "data-large-file", "lazy-src", "src", "data-lazy-src",
    "data-medium-file", "data-small-file", "data-srcset", "srcset",
)

DIRECTIONAL_LINK_TEXT = frozenset({
    "previous chapter", "next chapter", "[previous chapter]", "[next chapter]",
    "previous", "next", "prev", "toc", "[toc]", "table of contents", "[table of contents]",
    "index", "project page", "chapter index",
})

# Failures that leave a reference unlocalized instead of failing the chapter
ASSET_ERRORS = (httpx.HTTPError, ChallengeBypassFailure, OSError, ValueError)


def writable_file_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "", name)[:MAX_FILE_NAME]


def asset_file_name(url: str, default_ext: str = "") -> str:
    """File name for an asset URL: last path segment plus query, made writable."""
    parsed = urlparse(url)
    name = writable_file_name(os.path.basename(parsed.path) + parsed.query)
    if not name.strip("."):
        name = hashlib.sha1(url.encode()).hexdigest()[:16] + default_ext
    return name


def image_file_name(url: str) -> str:
    stem, _ = os.path.splitext(asset_file_name(url))
    return f"{stem}.jpg"


def chapter_file_name(order_id: int, title: str) -> str:
    stem = writable_file_name(f"{order_id}-{title}")[:MAX_FILE_NAME - len(".html")]
    return f"{stem}.html"


def save_document(html: str, path: Path) -> bool:
    """Write the document unless the file already exists. Returns True if written."""
    if path.exists():
        logger.debug(f"Already on disk, not overwriting: {path}")
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(html, encoding="utf-8")
    return True


def save_as_jpeg(data: bytes, path: Path):
    with Image.open(io.BytesIO(data)) as image:
        if image.mode != "RGB":
            image = image.convert("RGB")
        image.save(path, format="JPEG", quality=90)


@dataclass(frozen=True)
class SiteLocalizer:
    name: str = "default"
    content_selector: str = ""
    remove_selectors: Tuple[str, ...] = ()
    prepend_title: bool = True
    remove_directional_links: bool = False
    skip_image_patterns: Tuple[str, ...] = ("uploads/avatars",)
    keep_stylesheets: bool = True

    def localize(self, document: str, url: str, host_dir: Path, item_dir: Path,
                 fetcher) -> LocalizedPage:
        """Clean ``document`` and pull its assets to disk.

        ``fetcher`` needs a ``fetch_bytes(url)`` method. Stylesheets go into
        ``host_dir`` (shared by every item from the host), images into
        ``item_dir`` next to the chapter file.
        """
        host_dir = Path(host_dir)
        item_dir = Path(item_dir)
        item_dir.mkdir(parents=True, exist_ok=True)

        soup = BeautifulSoup(document, "html.parser")
        title = self.extract_title(soup)

        for tag in soup.find_all(["script", "noscript"]):
            tag.decompose()

        if self.content_selector:
            self.isolate_content(soup, title)

        if self.keep_stylesheets:
            assets = self.localize_stylesheets(soup, url, host_dir, fetcher)
        else:
            for link in soup.find_all("link", rel="stylesheet"):
                link.decompose()
            assets = []
        assets += self.localize_images(soup, url, item_dir, fetcher)
        return LocalizedPage(html=str(soup), title=title, assets=assets)

    @staticmethod
    def extract_title(soup: BeautifulSoup) -> str:
        head = soup.head
        tag = head.find("title") if head else None
        return tag.get_text(strip=True) if tag else ""

    def isolate_content(self, soup: BeautifulSoup, title: str):
        content = soup.select_one(self.content_selector)
        if content is None:
            logger.debug(f"[{self.name}] No element matches {self.content_selector!r}, keeping full page")
            return

        for selector in self.remove_selectors:
            for tag in content.select(selector):
                tag.decompose()

        if self.remove_directional_links:
            for link in content.find_all("a"):
                if link.get_text(" ", strip=True).lower() in DIRECTIONAL_LINK_TEXT:
                    link.decompose()

        if self.prepend_title and title:
            heading = soup.new_tag("h4")
            heading.string = title
            content.insert(0, heading)

        node: Optional[Tag] = content
        while node is not None and node.name not in ("body", "html", "[document]"):
            for sibling in node.find_previous_siblings() + node.find_next_siblings():
                sibling.decompose()
            node = node.parent

    def localize_stylesheets(self, soup: BeautifulSoup, base_url: str, host_dir: Path,
                             fetcher) -> List[str]:
        saved = []
        for link in soup.find_all("link", rel="stylesheet"):
            href = link.get("href")
            if not href:
                continue
            css_url = urljoin(base_url, href)
            if urlparse(css_url).scheme not in ("http", "https"):
                continue

            name = asset_file_name(css_url, ".css")
            path = host_dir / name
            if not path.exists():
                try:
                    data = fetcher.fetch_bytes(css_url)
                    host_dir.mkdir(parents=True, exist_ok=True)
                    path.write_bytes(data)
                except ASSET_ERRORS as e:
                    logger.warning(f"Stylesheet fetch failed, dropping link {css_url}: {e}")
                    link.decompose()
                    continue

            link["href"] = f"../{name}"
            saved.append(str(path))
        return saved

    def localize_images(self, soup: BeautifulSoup, base_url: str, item_dir: Path,
                        fetcher) -> List[str]:
        saved = []
        for img in soup.find_all("img"):
            src = self.image_url(img, base_url)
            if not src:
                continue
            if any(pattern in src for pattern in self.skip_image_patterns):
                continue

            name = image_file_name(src)
            path = item_dir / name
            if not path.exists():
                try:
                    save_as_jpeg(fetcher.fetch_bytes(src), path)
                except ASSET_ERRORS as e:
                    logger.warning(f"Image fetch failed, keeping remote reference {src}: {e}")
                    continue

            for attr in IMAGE_ATTRIBUTES:
                if attr in img.attrs:
                    del img[attr]
            img["src"] = f"./{name}"
            saved.append(str(path))
        return saved

    @staticmethod
    def image_url(img: Tag, base_url: str) -> Optional[str]:
        for attr in IMAGE_ATTRIBUTES:
            value = img.get(attr)
            if not value:
                continue
            if attr.endswith("srcset"):
                # Widest candidate is listed last
                value = value.split(",")[-1].strip().split(" ")[0]
            url = urljoin(base_url, value.strip())
            if urlparse(url).scheme in ("http", "https"):
                return url
        return None
