"""Shared fixtures: a throwaway queue store, fast config, and a fake asset fetcher."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Dict, Generator, List

import httpx
import pytest
from PIL import Image

from chapter_mirror.config import AppConfig, DownloadConfig, ResilienceConfig
from chapter_mirror.db import QueueStore


@pytest.fixture()
def store(tmp_path: Path) -> Generator[QueueStore, None, None]:
    s = QueueStore(str(tmp_path / "chapters.db"))
    yield s
    s.close()


@pytest.fixture()
def config(tmp_path: Path) -> AppConfig:
    """Defaults, but writing under tmp_path and without long waits."""
    return AppConfig(
        data_dir=str(tmp_path / "data"),
        db_path=str(tmp_path / "chapters.db"),
        log_dir=str(tmp_path / "logs"),
        download=DownloadConfig(max_concurrency=10),
        resilience=ResilienceConfig(
            max_requests_per_second=100,
            base_delay=0.01,
            cap_delay=0.05,
            dedup_cleanup_delay=0.01,
            challenge_enabled=False,
        ),
    )


def make_png(color=(200, 30, 30, 128), size=(4, 4)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_png()


class FakeFetcher:
    """Stands in for Downloader.fetch_bytes; unknown URLs fail like a dead host."""

    def __init__(self, assets: Dict[str, bytes]):
        self.assets = assets
        self.calls: List[str] = []

    def fetch_bytes(self, url: str, cancel_event=None) -> bytes:
        self.calls.append(url)
        if url not in self.assets:
            raise httpx.ConnectError(f"unreachable: {url}")
        return self.assets[url]
